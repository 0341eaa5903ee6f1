"""Exception hierarchy for Jira Viewer."""

from http import HTTPStatus


class JiraViewerError(Exception):
    """Base exception for Jira Viewer errors."""

    pass


class ConfigNotFoundError(JiraViewerError):
    """Configuration file not found."""

    pass


class InvalidConfigError(JiraViewerError):
    """Configuration is invalid."""

    pass


class ConfigurationError(JiraViewerError):
    """A required setting is missing or blank.

    ``reason`` names the setting: "base_url", "credential", "project_key",
    "api_key" or "oauth".
    """

    MESSAGES = {
        "base_url": "Jira base URL is not configured.",
        "credential": "Jira credentials are not configured. Sign in or set an API token.",
        "project_key": "Jira project key is not configured.",
        "api_key": "Anthropic API key is not configured.",
        "oauth": "OAuth client settings are not configured.",
    }

    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or self.MESSAGES.get(reason, f"Missing setting: {reason}"))


class TransportError(JiraViewerError):
    """Network, DNS or TLS failure before an HTTP response was received."""

    pass


class InvalidResponseError(JiraViewerError):
    """The server answered with something that is not a usable response."""

    pass


class HttpError(JiraViewerError):
    """Non-2xx HTTP response."""

    def __init__(self, status_code: int, message: str | None = None) -> None:
        self.status_code = status_code
        if not message:
            try:
                message = HTTPStatus(status_code).phrase
            except ValueError:
                message = "Unexpected HTTP status"
        self.message = message
        super().__init__(f"HTTP {status_code}: {message}")


class RateLimitError(HttpError):
    """Rate limit hit (HTTP 429)."""

    pass


class DecodeError(JiraViewerError):
    """Malformed JSON or a payload that does not match the expected shape."""

    pass


class BoardNotFoundError(JiraViewerError):
    """No agile board exists for the configured project."""

    pass


class SecretStoreError(JiraViewerError):
    """The secret store could not be read or written."""

    pass


class AuthError(JiraViewerError):
    """Base class for OAuth flow errors."""

    pass


class InvalidCallbackError(AuthError):
    """Redirect callback could not be parsed or carries no authorization code."""

    pass


class CsrfMismatchError(AuthError):
    """Callback state does not match the state issued by start_flow."""

    pass


class MissingVerifierError(AuthError):
    """No PKCE code verifier is held for the current flow."""

    pass


class TokenExchangeError(AuthError):
    """Token endpoint rejected the authorization code."""

    def __init__(self, server_body: str) -> None:
        self.server_body = server_body
        super().__init__(f"Token exchange failed: {server_body or 'empty response'}")


class NoRefreshTokenError(AuthError):
    """A refresh was requested but no refresh token is stored."""

    pass


class RefreshFailedError(AuthError):
    """Refreshing the access token failed; the user must sign in again."""

    pass


def user_message(error: Exception) -> str:
    """Convert an error into a single human-readable message for display."""
    if isinstance(error, HttpError):
        if error.status_code == 401:
            return "Authentication failed. Check your credentials or sign in again."
        if error.status_code == 403:
            return f"Access denied: {error.message}"
        return f"Jira returned HTTP {error.status_code}: {error.message}"
    if isinstance(error, TransportError):
        return f"Cannot reach the server: {error}"
    if isinstance(error, CsrfMismatchError):
        return "Invalid state parameter - possible CSRF attack. Please sign in again."
    if isinstance(error, JiraViewerError):
        return str(error)
    return f"Unexpected error: {error}"
