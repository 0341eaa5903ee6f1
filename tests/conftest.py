"""Shared fixtures for Jira Viewer tests."""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from jira_viewer.config import Config, OAuthConfig
from jira_viewer.models import Issue, Sprint
from jira_viewer.secret_store import MemorySecretStore

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def make_response(status_code=200, body=None, text=None):
    """Build a mock requests.Response."""
    response = MagicMock()
    response.status_code = status_code
    if body is None:
        response.json.side_effect = ValueError("No JSON object could be decoded")
        response.text = text or ""
    else:
        response.json.return_value = body
        response.text = text if text is not None else json.dumps(body)
    return response


def make_issue(key="PROJ-1", status="To Do", issue_type="Story", **kwargs):
    """Build an Issue with sensible defaults."""
    return Issue(
        id=kwargs.pop("id", key.split("-")[-1]),
        key=key,
        summary=kwargs.pop("summary", f"Summary of {key}"),
        status=status,
        issue_type=issue_type,
        **kwargs,
    )


def make_sprint(sprint_id=1, state="active", start="2026-01-05T09:00:00.000+0000", **kwargs):
    """Build a Sprint with sensible defaults."""
    return Sprint(
        id=sprint_id,
        name=kwargs.pop("name", f"Sprint {sprint_id}"),
        state=state,
        start_date=start,
        **kwargs,
    )


@pytest.fixture
def oauth_config():
    return OAuthConfig(
        client_id="viewer-client",
        authorization_endpoint="https://idp.example.com/oauth2/default/v1/authorize",
        token_endpoint="https://idp.example.com/oauth2/default/v1/token",
        redirect_uri="jiraviewer://oauth-callback",
    )


@pytest.fixture
def basic_config():
    return Config(
        jira_url="https://jira.example.com",
        project_key="PROJ",
        username="alice",
        api_token="secret-token",
    )


@pytest.fixture
def oauth_app_config(oauth_config):
    return Config(
        jira_url="https://jira.example.com",
        project_key="PROJ",
        auth_method="oauth",
        oauth=oauth_config,
    )


@pytest.fixture
def secret_store():
    return MemorySecretStore()


@pytest.fixture
def session():
    return MagicMock()
