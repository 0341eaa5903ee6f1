"""OAuth2 Authorization Code flow with PKCE and the token lifecycle.

Tokens live in a SecretStore between runs and in a TokenState while the
application runs. The verifier and state of an authorization attempt are kept
in memory only and are dropped as soon as the callback has been handled.
"""

import base64
import binascii
import dataclasses
import json
import logging
import secrets
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable
from urllib.parse import parse_qs, quote, urlencode, urlsplit

import requests

from jira_viewer.config import OAuthConfig
from jira_viewer.exceptions import (
    AuthError,
    ConfigurationError,
    CsrfMismatchError,
    DecodeError,
    InvalidCallbackError,
    JiraViewerError,
    MissingVerifierError,
    NoRefreshTokenError,
    RefreshFailedError,
    TokenExchangeError,
    TransportError,
)
from jira_viewer.models import FlowContext, TokenResponse, TokenState
from jira_viewer.pkce import generate_code_challenge, generate_code_verifier, generate_state
from jira_viewer.secret_store import (
    ACCESS_TOKEN,
    REFRESH_TOKEN,
    TOKEN_EXPIRATION,
    USER_EMAIL,
    SecretStore,
)

logger = logging.getLogger(__name__)

# Tokens expiring sooner than this are refreshed before use.
REFRESH_MARGIN = timedelta(minutes=5)


class FlowState(Enum):
    IDLE = "idle"
    FLOW_STARTED = "flow_started"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    UNAUTHENTICATED = "unauthenticated"
    ERROR = "error"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def decode_jwt_claims(token: str) -> dict | None:
    """Decode the claims segment of a JWT without verifying its signature.

    Returns None when the token is not a readable JWT.
    """
    segments = token.split(".")
    if len(segments) < 2:
        return None

    payload = segments[1].replace("-", "+").replace("_", "/")
    remainder = len(payload) % 4
    if remainder:
        payload += "=" * (4 - remainder)

    try:
        claims = json.loads(base64.b64decode(payload, validate=True))
    except (binascii.Error, ValueError):
        return None
    return claims if isinstance(claims, dict) else None


def parse_token_response(payload: object) -> TokenResponse:
    """Validate a token endpoint JSON body.

    Raises:
        DecodeError: If access_token or expires_in is missing or malformed
    """
    if not isinstance(payload, dict):
        raise DecodeError("Token response is not a JSON object")

    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise DecodeError("Token response has no access_token")

    try:
        expires_in = int(payload["expires_in"])
    except (KeyError, TypeError, ValueError) as e:
        raise DecodeError("Token response has no valid expires_in") from e

    return TokenResponse(
        access_token=access_token,
        expires_in=expires_in,
        token_type=payload.get("token_type") or "Bearer",
        refresh_token=payload.get("refresh_token") or None,
        scope=payload.get("scope"),
        id_token=payload.get("id_token") or None,
    )


class OAuthManager:
    """Drives sign-in against the identity provider and keeps tokens fresh."""

    def __init__(
        self,
        config: OAuthConfig,
        secret_store: SecretStore,
        session: requests.Session | None = None,
        clock: Callable[[], datetime] = _utcnow,
        timeout: float = 15,
        load: bool = True,
    ) -> None:
        self.config = config
        self.secret_store = secret_store
        self.session = session or requests.Session()
        self.clock = clock
        self.timeout = timeout

        self.state = FlowState.IDLE
        self.last_error: JiraViewerError | None = None
        self._tokens = TokenState()
        self._flow: FlowContext | None = None

        if load:
            self.load_stored_tokens()

    @property
    def is_authenticated(self) -> bool:
        return self._tokens.is_authenticated

    @property
    def user_email(self) -> str | None:
        return self._tokens.user_email

    @property
    def tokens(self) -> TokenState:
        """A copy of the tokens currently held."""
        return dataclasses.replace(self._tokens)

    @property
    def flow_in_progress(self) -> bool:
        return self._flow is not None

    def load_stored_tokens(self) -> TokenState:
        """Read tokens saved by a previous run, refreshing them if they expired."""
        store = self.secret_store
        expires_at = None
        raw_expiration = store.retrieve(TOKEN_EXPIRATION)
        if raw_expiration:
            try:
                expires_at = datetime.fromtimestamp(float(raw_expiration), tz=timezone.utc)
            except (ValueError, OverflowError, OSError):
                logger.warning("Ignoring unreadable stored token expiration")

        self._tokens = TokenState(
            access_token=store.retrieve(ACCESS_TOKEN),
            refresh_token=store.retrieve(REFRESH_TOKEN),
            expires_at=expires_at,
            user_email=store.retrieve(USER_EMAIL),
        )
        self.state = FlowState.AUTHENTICATED if self.is_authenticated else FlowState.IDLE

        if expires_at is not None and expires_at < self.clock():
            logger.info("Stored access token has expired, refreshing")
            try:
                self.refresh_access_token()
            except AuthError as e:
                logger.warning("Startup token refresh failed: %s", e)

        return self.tokens

    def start_flow(self) -> str | None:
        """Begin an authorization attempt and return the provider URL to open.

        Raises:
            ConfigurationError: If the OAuth client settings are incomplete
        """
        if not self.config.is_configured():
            raise ConfigurationError("oauth")

        self.state = FlowState.FLOW_STARTED
        verifier = generate_code_verifier()
        if not verifier:
            self._flow = None
            self.state = FlowState.ERROR
            return None

        self._flow = FlowContext(code_verifier=verifier, state=generate_state())

        params = {
            "client_id": self.config.client_id,
            "response_type": "code",
            "redirect_uri": self.config.redirect_uri,
            "scope": " ".join(self.config.scopes),
            "code_challenge": generate_code_challenge(verifier),
            "code_challenge_method": "S256",
            "state": self._flow.state,
        }
        endpoint = self.config.authorization_endpoint
        separator = "&" if urlsplit(endpoint).query else "?"

        self.state = FlowState.AWAITING_CALLBACK
        logger.info("Started authorization flow against %s", urlsplit(endpoint).netloc)
        return f"{endpoint}{separator}{urlencode(params, quote_via=quote)}"

    def cancel_flow(self) -> None:
        """Abandon the current authorization attempt."""
        self._flow = None
        if self.state in (FlowState.FLOW_STARTED, FlowState.AWAITING_CALLBACK):
            self.state = FlowState.AUTHENTICATED if self.is_authenticated else FlowState.IDLE

    def handle_callback(self, url: str) -> TokenState:
        """Validate the redirect back from the provider and exchange its code.

        The flow context is consumed whatever the outcome.

        Raises:
            InvalidCallbackError: If the URL is unreadable or carries no code
            CsrfMismatchError: If the state does not match the one issued
        """
        try:
            try:
                params = parse_qs(urlsplit(url).query)
            except (TypeError, ValueError, AttributeError) as e:
                raise self._fail(InvalidCallbackError("Invalid callback URL")) from e

            code = params.get("code", [None])[0]
            if not code:
                provider_error = params.get("error_description") or params.get("error")
                message = "Authorization code not found"
                if provider_error:
                    message = f"{message}: {provider_error[0]}"
                raise self._fail(InvalidCallbackError(message))

            returned_state = params.get("state", [None])[0]
            expected_state = self._flow.state if self._flow else None
            if (
                returned_state is None
                or expected_state is None
                or not secrets.compare_digest(returned_state, expected_state)
            ):
                raise self._fail(
                    CsrfMismatchError("Invalid state parameter - possible CSRF attack")
                )

            return self.exchange_code(code)
        finally:
            self._flow = None

    def exchange_code(self, code: str) -> TokenState:
        """Trade an authorization code for tokens and persist them.

        Raises:
            MissingVerifierError: If no flow is in progress
            TokenExchangeError: If the token endpoint answers non-2xx
            TransportError: If the token endpoint cannot be reached
            DecodeError: If the token response is malformed
        """
        if self._flow is None or not self._flow.code_verifier:
            raise self._fail(MissingVerifierError("Code verifier missing"))

        self.state = FlowState.EXCHANGING
        data = {
            "grant_type": "authorization_code",
            "client_id": self.config.client_id,
            "code": code,
            "redirect_uri": self.config.redirect_uri,
            "code_verifier": self._flow.code_verifier,
        }

        try:
            response = self._post_token(data)
        except requests.RequestException as e:
            raise self._fail(TransportError(f"Token exchange error: {e}")) from e

        if not 200 <= response.status_code < 300:
            raise self._fail(TokenExchangeError(response.text))

        try:
            token_response = parse_token_response(response.json())
        except ValueError as e:
            raise self._fail(DecodeError(f"Token response is not valid JSON: {e}")) from e
        except DecodeError as e:
            raise self._fail(e)

        return self.persist_tokens(token_response)

    def persist_tokens(self, token_response: TokenResponse) -> TokenState:
        """Save tokens to the secret store and make them current.

        The identity token is read on a best-effort basis: an unreadable token
        only means no email is captured.
        """
        store = self.secret_store
        expires_at = self.clock() + timedelta(seconds=token_response.expires_in)

        try:
            store.save(ACCESS_TOKEN, token_response.access_token)

            refresh_token = self._tokens.refresh_token
            if token_response.refresh_token:
                store.save(REFRESH_TOKEN, token_response.refresh_token)
                refresh_token = token_response.refresh_token

            store.save(TOKEN_EXPIRATION, str(expires_at.timestamp()))

            user_email = self._tokens.user_email
            if token_response.id_token:
                claims = decode_jwt_claims(token_response.id_token) or {}
                email = claims.get("email")
                if isinstance(email, str) and email:
                    store.save(USER_EMAIL, email)
                    user_email = email
                else:
                    logger.debug("Identity token carried no readable email claim")
        except JiraViewerError as e:
            raise self._fail(e)

        self._tokens = TokenState(
            access_token=token_response.access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            user_email=user_email,
        )
        self.state = FlowState.AUTHENTICATED
        self.last_error = None
        logger.info("Signed in%s", f" as {user_email}" if user_email else "")
        return self.tokens

    def refresh_access_token(self) -> TokenState:
        """Obtain a new access token with the stored refresh token.

        There is no retry: on failure the user has to sign in again.

        Raises:
            NoRefreshTokenError: If no refresh token is stored
            RefreshFailedError: If the provider cannot be reached or refuses
        """
        refresh_token = self._tokens.refresh_token
        if not refresh_token:
            self._drop_access_token()
            raise self._fail(
                NoRefreshTokenError("No refresh token available"),
                FlowState.UNAUTHENTICATED,
            )

        self.state = FlowState.REFRESHING
        data = {
            "grant_type": "refresh_token",
            "client_id": self.config.client_id,
            "refresh_token": refresh_token,
        }

        try:
            response = self._post_token(data)
        except requests.RequestException as e:
            raise self._refresh_failed(str(e)) from e

        if not 200 <= response.status_code < 300:
            raise self._refresh_failed(f"HTTP {response.status_code}: {response.text}")

        try:
            token_response = parse_token_response(response.json())
        except (ValueError, DecodeError) as e:
            raise self._refresh_failed(str(e)) from e

        logger.info("Refreshed access token")
        return self.persist_tokens(token_response)

    def get_valid_access_token(self) -> str | None:
        """Return an access token, refreshing it first when it is about to expire.

        A token with exactly REFRESH_MARGIN left is used as is.
        """
        expires_at = self._tokens.expires_at
        if expires_at is not None and expires_at - self.clock() < REFRESH_MARGIN:
            try:
                self.refresh_access_token()
            except AuthError as e:
                logger.warning("Could not refresh access token: %s", e)

        return self._tokens.access_token or None

    def logout(self) -> None:
        """Forget every stored and in-memory credential."""
        self.secret_store.delete_all()
        self._tokens = TokenState()
        self._flow = None
        self.state = FlowState.IDLE
        self.last_error = None
        logger.info("Signed out")

    def _post_token(self, data: dict) -> requests.Response:
        return self.session.post(
            self.config.token_endpoint,
            data=data,
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )

    def _drop_access_token(self) -> None:
        self._tokens.access_token = None
        self._tokens.expires_at = None

    def _refresh_failed(self, detail: str) -> RefreshFailedError:
        self._drop_access_token()
        return self._fail(
            RefreshFailedError(f"Token refresh failed: {detail}"),
            FlowState.UNAUTHENTICATED,
        )

    def _fail(self, error: JiraViewerError, state: FlowState = FlowState.ERROR):
        self.state = state
        self.last_error = error
        logger.warning("OAuth error: %s", error)
        return error
