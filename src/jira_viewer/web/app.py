"""Flask application factory for the Jira Viewer web interface."""

import logging
import os
import secrets
from dataclasses import dataclass

import requests
from flask import Flask

from jira_viewer.config import Config, config_exists, load_config
from jira_viewer.exceptions import ConfigNotFoundError, InvalidConfigError
from jira_viewer.jira_client import JiraClient
from jira_viewer.oauth import OAuthManager
from jira_viewer.secret_store import FileSecretStore, SecretStore
from jira_viewer.store import ViewerStore
from jira_viewer.summarizer import build_summarizer

logger = logging.getLogger(__name__)

EXTENSION_KEY = "jira_viewer"


@dataclass
class ViewerServices:
    """Everything the routes need, built once from the configuration."""

    config: Config
    client: JiraClient
    store: ViewerStore
    oauth: OAuthManager | None = None


def load_viewer_config() -> Config:
    """Load the configuration file.

    Raises:
        ConfigNotFoundError: If config file doesn't exist
        InvalidConfigError: If config is invalid
    """
    if not config_exists():
        raise ConfigNotFoundError(
            "No configuration found. Create ~/.jira-viewer/config.toml to set up."
        )
    try:
        return load_config()
    except FileNotFoundError as e:
        raise ConfigNotFoundError(str(e)) from e
    except ValueError as e:
        raise InvalidConfigError(str(e)) from e


def build_services(
    config: Config,
    secret_store: SecretStore | None = None,
    session: requests.Session | None = None,
) -> ViewerServices:
    oauth = None
    if config.auth_method == "oauth":
        oauth = OAuthManager(config.oauth, secret_store or FileSecretStore(), session=session)

    client = JiraClient(config, token_provider=oauth.get_valid_access_token if oauth else None)
    store = ViewerStore(client, build_summarizer(config, session=session))
    return ViewerServices(config=config, client=client, store=store, oauth=oauth)


def create_app(
    config: Config | None = None,
    secret_store: SecretStore | None = None,
    session: requests.Session | None = None,
) -> Flask:
    """Create and configure the Flask application.

    Without an explicit config the one in ~/.jira-viewer is loaded; when it is
    missing or invalid the app still starts and explains how to set it up.
    """
    app = Flask(__name__)

    app.config["SECRET_KEY"] = os.environ.get("JIRA_VIEWER_SECRET_KEY") or secrets.token_hex(16)

    if config is None:
        try:
            config = load_viewer_config()
        except (ConfigNotFoundError, InvalidConfigError) as e:
            app.config["CONFIG_ERROR"] = str(e)
            logger.warning("Configuration not loaded: %s", e)

    app.extensions[EXTENSION_KEY] = (
        build_services(config, secret_store, session) if config else None
    )

    from jira_viewer.web.routes import bp
    app.register_blueprint(bp)

    return app


def main() -> None:
    """Run the local development server."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.environ.get("JIRA_VIEWER_HOST", "127.0.0.1")
    port = int(os.environ.get("JIRA_VIEWER_PORT", "5000"))
    create_app().run(host=host, port=port)


if __name__ == "__main__":
    main()
