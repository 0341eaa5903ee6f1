"""Configuration management for Jira Viewer."""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

import tomli_w

AUTH_METHODS = ("basic", "oauth")
SUMMARY_BACKENDS = ("local", "anthropic")

DEFAULT_SCOPES = ["openid", "profile", "email", "offline_access"]
DEFAULT_REDIRECT_URI = "http://127.0.0.1:5000/oauth/callback"
DEFAULT_MODEL = "claude-3-5-sonnet-20241022"


@dataclass
class OAuthConfig:
    """OAuth2 client settings for the identity provider."""

    client_id: str = ""
    authorization_endpoint: str = ""
    token_endpoint: str = ""
    redirect_uri: str = DEFAULT_REDIRECT_URI
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))

    def is_configured(self) -> bool:
        return bool(self.client_id and self.authorization_endpoint and self.token_endpoint)


@dataclass
class ReportThresholds:
    """Percentages that drive the wording of sprint reviews."""

    low_completion: int = 60
    critical_completion: int = 40
    high_completion: int = 80
    overrun_accuracy: int = 120
    underrun_accuracy: int = 80
    wip_ratio: float = 1 / 3


@dataclass
class Config:
    """Configuration for the Jira connection, sign-in and summaries."""

    jira_url: str
    project_key: str
    username: str = ""
    api_token: str = ""
    auth_method: str = "basic"
    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    summary_backend: str = "local"
    anthropic_api_key: str = ""
    model: str = DEFAULT_MODEL
    max_tokens: int = 300
    thresholds: ReportThresholds = field(default_factory=ReportThresholds)

    def validate(self) -> list[str]:
        """Validate configuration values. Returns list of error messages."""
        errors: list[str] = []

        if not self.jira_url:
            errors.append("Jira URL is required")
        else:
            parsed = urlparse(self.jira_url)
            if parsed.scheme not in ("http", "https"):
                errors.append("Jira URL must start with http:// or https://")
            if not parsed.netloc:
                errors.append("Jira URL must include a domain")

        if not self.project_key:
            errors.append("Jira project key is required")

        if self.auth_method not in AUTH_METHODS:
            errors.append(f"auth_method must be one of: {', '.join(AUTH_METHODS)}")
        elif self.auth_method == "oauth" and not self.oauth.is_configured():
            errors.append(
                "OAuth sign-in requires client_id, authorization_endpoint and token_endpoint"
            )

        if self.summary_backend not in SUMMARY_BACKENDS:
            errors.append(f"summary backend must be one of: {', '.join(SUMMARY_BACKENDS)}")

        if self.max_tokens <= 0:
            errors.append("max_tokens must be positive")

        return errors


def get_config_dir() -> Path:
    """Get the configuration directory path."""
    override = os.environ.get("JIRA_VIEWER_CONFIG_DIR")
    if override:
        return Path(override)
    return Path.home() / ".jira-viewer"


def get_config_path() -> Path:
    """Get the configuration file path."""
    return get_config_dir() / "config.toml"


def config_exists() -> bool:
    """Check if configuration file exists."""
    return get_config_path().exists()


def _thresholds_from(section: dict) -> ReportThresholds:
    defaults = ReportThresholds()
    return ReportThresholds(
        low_completion=int(section.get("low_completion", defaults.low_completion)),
        critical_completion=int(section.get("critical_completion", defaults.critical_completion)),
        high_completion=int(section.get("high_completion", defaults.high_completion)),
        overrun_accuracy=int(section.get("overrun_accuracy", defaults.overrun_accuracy)),
        underrun_accuracy=int(section.get("underrun_accuracy", defaults.underrun_accuracy)),
        wip_ratio=float(section.get("wip_ratio", defaults.wip_ratio)),
    )


def config_from_dict(data: dict) -> Config:
    """Build a Config from parsed TOML data without validating it."""
    jira_section = data.get("jira", {})
    oauth_section = data.get("oauth", {})
    summaries_section = data.get("summaries", {})

    oauth = OAuthConfig(
        client_id=oauth_section.get("client_id", ""),
        authorization_endpoint=oauth_section.get("authorization_endpoint", ""),
        token_endpoint=oauth_section.get("token_endpoint", ""),
        redirect_uri=oauth_section.get("redirect_uri", DEFAULT_REDIRECT_URI),
        scopes=list(oauth_section.get("scopes", DEFAULT_SCOPES)),
    )

    return Config(
        jira_url=jira_section.get("url", ""),
        project_key=jira_section.get("project_key", ""),
        username=jira_section.get("username", ""),
        api_token=jira_section.get("api_token", ""),
        auth_method=jira_section.get("auth_method", "basic"),
        oauth=oauth,
        summary_backend=summaries_section.get("backend", "local"),
        anthropic_api_key=summaries_section.get("anthropic_api_key", ""),
        model=summaries_section.get("model", DEFAULT_MODEL),
        max_tokens=int(summaries_section.get("max_tokens", 300)),
        thresholds=_thresholds_from(data.get("report", {})),
    )


def load_config() -> Config:
    """Load configuration from TOML file.

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config is invalid
    """
    config_path = get_config_path()

    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration not found at {config_path}. "
            "Create ~/.jira-viewer/config.toml to set up."
        )

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    config = config_from_dict(data)

    errors = config.validate()
    if errors:
        raise ValueError(f"Invalid configuration: {'; '.join(errors)}")

    return config


def save_config(config: Config) -> None:
    """Save configuration to TOML file."""
    config_dir = get_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)

    config_path = get_config_path()

    data: dict = {
        "jira": {
            "url": config.jira_url,
            "project_key": config.project_key,
            "username": config.username,
            "api_token": config.api_token,
            "auth_method": config.auth_method,
        },
        "summaries": {
            "backend": config.summary_backend,
            "model": config.model,
            "max_tokens": config.max_tokens,
        },
    }

    if config.anthropic_api_key:
        data["summaries"]["anthropic_api_key"] = config.anthropic_api_key

    if config.oauth.is_configured():
        data["oauth"] = {
            "client_id": config.oauth.client_id,
            "authorization_endpoint": config.oauth.authorization_endpoint,
            "token_endpoint": config.oauth.token_endpoint,
            "redirect_uri": config.oauth.redirect_uri,
            "scopes": list(config.oauth.scopes),
        }

    t = config.thresholds
    data["report"] = {
        "low_completion": t.low_completion,
        "critical_completion": t.critical_completion,
        "high_completion": t.high_completion,
        "overrun_accuracy": t.overrun_accuracy,
        "underrun_accuracy": t.underrun_accuracy,
        "wip_ratio": t.wip_ratio,
    }

    with open(config_path, "wb") as f:
        tomli_w.dump(data, f)
