"""Data models for Jira Viewer."""

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class Issue:
    """A Jira issue as fetched by a search query."""

    id: str
    key: str
    summary: str
    status: str
    issue_type: str
    description: str | None = None
    assignee: str | None = None
    priority: str | None = None
    created: datetime | None = None
    updated: datetime | None = None
    resolved: datetime | None = None
    original_estimate: int | None = None  # seconds
    remaining_estimate: int | None = None  # seconds
    time_spent: int | None = None  # seconds


@dataclass(frozen=True)
class Sprint:
    """A sprint on the project's agile board."""

    id: int
    name: str
    state: str  # "active" | "closed" | "future" | anything else Jira sends
    start_date: str | None = None
    end_date: str | None = None
    goal: str | None = None

    @property
    def is_active(self) -> bool:
        return self.state.lower() == "active"


@dataclass(frozen=True)
class Report:
    """Generated summary text for an issue or a sprint."""

    key: str
    text: str
    generated_at: datetime


def sprint_report_key(sprint_id: int) -> str:
    """Cache key for a sprint review."""
    return f"SPRINT-{sprint_id}"


@dataclass(frozen=True)
class TokenResponse:
    """Decoded token endpoint response."""

    access_token: str
    expires_in: int
    token_type: str = "Bearer"
    refresh_token: str | None = None
    scope: str | None = None
    id_token: str | None = None


@dataclass
class TokenState:
    """OAuth tokens currently held in memory."""

    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    user_email: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.access_token)


@dataclass
class FlowContext:
    """Per-attempt PKCE verifier and anti-CSRF state, never persisted."""

    code_verifier: str
    state: str
