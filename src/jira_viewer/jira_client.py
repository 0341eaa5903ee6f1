"""Jira API client for sprints and issues."""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator

import requests
from jira import JIRA, JIRAError

from jira_viewer.config import Config
from jira_viewer.exceptions import (
    BoardNotFoundError,
    ConfigurationError,
    DecodeError,
    HttpError,
    InvalidResponseError,
    RateLimitError,
    TransportError,
)
from jira_viewer.models import Issue, Sprint

logger = logging.getLogger(__name__)

JIRA_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S.%f%z"
MAX_RESULTS = 100
ISSUE_FIELDS = [
    "summary",
    "description",
    "status",
    "assignee",
    "priority",
    "issuetype",
    "created",
    "updated",
    "resolutiondate",
    "timetracking",
    "timeoriginalestimate",
    "timeestimate",
    "timespent",
]


def parse_jira_datetime(value: object) -> datetime | None:
    """Parse a Jira timestamp such as "2024-01-15T10:30:00.000+0000".

    Falls back to ISO-8601. Naive values are taken as UTC.
    """
    if not value:
        return None
    text = str(value)
    try:
        parsed = datetime.strptime(text, JIRA_DATE_FORMAT)
    except ValueError:
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _name_of(value: object, attr: str = "name") -> str | None:
    if isinstance(value, dict):
        name = value.get(attr)
        return str(name) if name else None
    return None


def _seconds(*candidates: object) -> int | None:
    for value in candidates:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
    return None


def parse_issue(raw: dict) -> Issue:
    """Convert a raw search result entry into an Issue."""
    if not isinstance(raw, dict) or not raw.get("key"):
        raise DecodeError("Issue entry has no key")

    fields = raw.get("fields") or {}
    tracking = fields.get("timetracking") or {}

    return Issue(
        id=str(raw.get("id", "")),
        key=raw["key"],
        summary=fields.get("summary") or "",
        description=fields.get("description") or None,
        status=_name_of(fields.get("status")) or "",
        assignee=_name_of(fields.get("assignee"), "displayName"),
        priority=_name_of(fields.get("priority")),
        issue_type=_name_of(fields.get("issuetype")) or "",
        created=parse_jira_datetime(fields.get("created")),
        updated=parse_jira_datetime(fields.get("updated")),
        resolved=parse_jira_datetime(fields.get("resolutiondate")),
        original_estimate=_seconds(
            tracking.get("originalEstimateSeconds"), fields.get("timeoriginalestimate")
        ),
        remaining_estimate=_seconds(
            tracking.get("remainingEstimateSeconds"), fields.get("timeestimate")
        ),
        time_spent=_seconds(tracking.get("timeSpentSeconds"), fields.get("timespent")),
    )


def parse_sprint(raw: dict) -> Sprint:
    """Convert a raw board sprint into a Sprint."""
    try:
        sprint_id = int(raw["id"])
    except (KeyError, TypeError, ValueError) as e:
        raise DecodeError("Sprint entry has no numeric id") from e

    return Sprint(
        id=sprint_id,
        name=raw.get("name") or f"Sprint {sprint_id}",
        state=raw.get("state") or "",
        start_date=raw.get("startDate"),
        end_date=raw.get("endDate"),
        goal=raw.get("goal") or None,
    )


def sort_sprints(sprints: list[Sprint]) -> list[Sprint]:
    """Active sprints first, then latest start date, then highest id.

    Sprints without a readable start date come after dated ones.
    """

    def sort_key(sprint: Sprint) -> tuple:
        start = parse_jira_datetime(sprint.start_date)
        return (
            not sprint.is_active,
            start is None,
            -start.timestamp() if start else 0.0,
            -sprint.id,
        )

    return sorted(sprints, key=sort_key)


def build_jql(project_key: str, sprint_id: int | None = None) -> str:
    """Build the issue query for a project, optionally limited to one sprint."""
    clauses = [f"project = {project_key}"]
    if sprint_id is not None:
        clauses.append(f"sprint = {sprint_id}")
    return " AND ".join(clauses) + " ORDER BY created DESC"


def extract_error_message(response: requests.Response | None) -> str | None:
    """Pull a readable message out of a Jira error body.

    Jira answers with {"errorMessages": [...]} or {"errors": {field: message}}.
    """
    if response is None:
        return None
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None

    messages = [str(m) for m in body.get("errorMessages") or [] if m]
    if messages:
        return "; ".join(messages)

    errors = body.get("errors")
    if isinstance(errors, dict) and errors:
        return "; ".join(f"{field}: {message}" for field, message in errors.items())
    return None


@contextmanager
def _translate_errors() -> Iterator[None]:
    """Map jira/requests failures onto the Jira Viewer error taxonomy."""
    try:
        yield
    except JIRAError as e:
        if e.status_code is None:
            raise InvalidResponseError(e.text or str(e)) from e
        message = extract_error_message(e.response)
        if e.status_code == 429:
            raise RateLimitError(429, message or "Rate limited by Jira") from e
        raise HttpError(e.status_code, message) from e
    except requests.JSONDecodeError as e:
        raise InvalidResponseError(f"Unreadable response from Jira: {e}") from e
    except requests.RequestException as e:
        raise TransportError(str(e)) from e
    except ValueError as e:
        raise InvalidResponseError(f"Unreadable response from Jira: {e}") from e


class JiraClient:
    """Client for the Jira agile and search APIs.

    Uses HTTP Basic auth with the configured username and API token, or a
    Bearer token obtained from ``token_provider`` when signing in with OAuth.
    """

    def __init__(
        self,
        config: Config,
        token_provider: Callable[[], str | None] | None = None,
    ) -> None:
        self.config = config
        self.token_provider = token_provider
        self._client: JIRA | None = None
        self._client_token: str | None = None

    @property
    def base_url(self) -> str:
        return self.config.jira_url.rstrip("/")

    def validate_request(self) -> None:
        """Fail fast on missing settings before any network call.

        Raises:
            ConfigurationError: With reason "base_url", "credential" or "project_key"
        """
        if not self.config.jira_url.strip():
            raise ConfigurationError("base_url")
        if self.config.auth_method == "oauth":
            if self.token_provider is None:
                raise ConfigurationError("credential")
        elif not (self.config.username.strip() and self.config.api_token.strip()):
            raise ConfigurationError("credential")
        if not self.config.project_key.strip():
            raise ConfigurationError("project_key")

    def _connect(self, **auth) -> JIRA:
        with _translate_errors():
            return JIRA(server=self.base_url, timeout=15, **auth)

    def _get_client(self) -> JIRA:
        """Get or create the JIRA instance for the current credentials."""
        if self.config.auth_method == "oauth":
            token = self.token_provider() if self.token_provider else None
            if not token:
                raise ConfigurationError("credential", "Not signed in. Sign in to continue.")
            if self._client is None or token != self._client_token:
                self._client = self._connect(token_auth=token)
                self._client_token = token
        elif self._client is None:
            self._client = self._connect(
                basic_auth=(self.config.username, self.config.api_token)
            )
        return self._client

    def find_board_id(self) -> int:
        """Return the id of the first board of the configured project.

        Raises:
            BoardNotFoundError: If the project has no board
        """
        client = self._get_client()
        project_key = self.config.project_key
        try:
            with _translate_errors():
                boards = client.boards(projectKeyOrID=project_key)
        except HttpError as e:
            if e.status_code in (400, 404):
                raise BoardNotFoundError(
                    f"Could not find board for project {project_key}"
                ) from e
            raise

        if not boards:
            raise BoardNotFoundError(f"Could not find board for project {project_key}")
        return int(boards[0].id)

    def list_sprints(self) -> list[Sprint]:
        """Fetch the sprints of the project's board, active first.

        Raises:
            ConfigurationError: If a required setting is missing
            BoardNotFoundError: If the project has no board
            RateLimitError: If Jira answers 429
            HttpError: For other non-2xx responses
            TransportError: If Jira cannot be reached
        """
        self.validate_request()
        board_id = self.find_board_id()
        client = self._get_client()

        with _translate_errors():
            raw_sprints = client.sprints(board_id, maxResults=False)

        sprints = [parse_sprint(getattr(s, "raw", s)) for s in raw_sprints]
        logger.debug("Fetched %d sprints for board %s", len(sprints), board_id)
        return sort_sprints(sprints)

    def list_issues(self, sprint: Sprint | None = None) -> list[Issue]:
        """Fetch up to 100 issues of the project, newest first.

        Raises:
            ConfigurationError: If a required setting is missing
            RateLimitError: If Jira answers 429
            HttpError: For other non-2xx responses
            InvalidResponseError: If the search result is not usable
            TransportError: If Jira cannot be reached
        """
        self.validate_request()
        client = self._get_client()
        jql = build_jql(self.config.project_key, sprint.id if sprint else None)

        with _translate_errors():
            result = client.search_issues(
                jql,
                maxResults=MAX_RESULTS,
                fields=",".join(ISSUE_FIELDS),
                json_result=True,
            )

        if not isinstance(result, dict) or not isinstance(result.get("issues"), list):
            raise InvalidResponseError("Search result has no issues list")

        issues = [parse_issue(raw) for raw in result["issues"]]
        logger.debug("Fetched %d issues for %s", len(issues), jql)
        return issues

    def browse_url(self, issue_key: str) -> str:
        """Link to the issue in the Jira web UI."""
        return f"{self.base_url}/browse/{issue_key}"
