"""Observable viewer state: sprints, issues, reports and errors.

Every change replaces the frozen ViewerState snapshot and notifies the
subscribers with the new snapshot. Failed operations keep the structured
exception in ``last_error`` next to the display message.
"""

import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Callable, Mapping

from jira_viewer.exceptions import BoardNotFoundError, JiraViewerError, user_message
from jira_viewer.jira_client import JiraClient
from jira_viewer.models import Issue, Report, Sprint, sprint_report_key

logger = logging.getLogger(__name__)

Subscriber = Callable[["ViewerState"], None]


@dataclass(frozen=True)
class ViewerState:
    issues: tuple[Issue, ...] = ()
    sprints: tuple[Sprint, ...] = ()
    selected_sprint: Sprint | None = None
    is_loading: bool = False
    error_message: str | None = None
    last_error: JiraViewerError | None = None
    reports: Mapping[str, Report] = field(default_factory=lambda: MappingProxyType({}))
    loaded_at: datetime | None = None

    def find_issue(self, key: str) -> Issue | None:
        return next((issue for issue in self.issues if issue.key == key), None)

    def find_sprint(self, sprint_id: int) -> Sprint | None:
        return next((sprint for sprint in self.sprints if sprint.id == sprint_id), None)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ViewerStore:
    """Runs fetches and summaries and publishes the resulting state."""

    def __init__(self, client: JiraClient, summarizer, clock: Callable[[], datetime] = _utcnow):
        self.client = client
        self.summarizer = summarizer
        self.clock = clock
        self._state = ViewerState()
        self._lock = threading.Lock()
        self._subscribers: list[Subscriber] = []

    @property
    def state(self) -> ViewerState:
        return self._state

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _update(
        self,
        derive: Callable[[ViewerState], dict] | None = None,
        **changes,
    ) -> ViewerState:
        """Replace the snapshot, then notify subscribers outside the lock.

        ``derive`` maps the current snapshot to further changes and runs under
        the lock.
        """
        with self._lock:
            if derive is not None:
                changes = {**derive(self._state), **changes}
            self._state = dataclasses.replace(self._state, **changes)
            snapshot = self._state
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(snapshot)
        return snapshot

    def _fail(self, error: JiraViewerError, **changes) -> ViewerState:
        logger.warning("%s: %s", type(error).__name__, error)
        return self._update(
            is_loading=False,
            error_message=user_message(error),
            last_error=error,
            **changes,
        )

    def clear_error(self) -> ViewerState:
        return self._update(error_message=None, last_error=None)

    def refresh_sprints(self) -> ViewerState:
        """Reload sprints, keep or auto-select a sprint, then load its issues.

        A project without a board falls back to all project issues.
        """
        self._update(is_loading=True, error_message=None, last_error=None)
        try:
            sprints = self.client.list_sprints()
        except BoardNotFoundError as e:
            logger.info("%s, showing all project issues", e)
            self._update(sprints=(), selected_sprint=None)
            return self.load_issues(None)
        except JiraViewerError as e:
            return self._fail(e, loaded_at=self.clock())

        def keep_selection(state: ViewerState) -> dict:
            selected = state.selected_sprint
            if selected is not None:
                selected = next((s for s in sprints if s.id == selected.id), None)
            if selected is None:
                selected = next((s for s in sprints if s.is_active), None)
            return {"selected_sprint": selected}

        state = self._update(keep_selection, sprints=tuple(sprints))
        return self.load_issues(state.selected_sprint)

    def select_sprint(self, sprint: Sprint | None) -> ViewerState:
        self._update(selected_sprint=sprint)
        return self.load_issues(sprint)

    def load_issues(self, sprint: Sprint | None) -> ViewerState:
        """Replace the issue list; on failure the previous issues stay."""
        self._update(is_loading=True, error_message=None, last_error=None)
        try:
            issues = self.client.list_issues(sprint)
        except JiraViewerError as e:
            return self._fail(e, loaded_at=self.clock())
        return self._update(issues=tuple(issues), is_loading=False, loaded_at=self.clock())

    def _save_report(self, key: str, text: str) -> Report:
        report = Report(key=key, text=text, generated_at=self.clock())

        def add_report(state: ViewerState) -> dict:
            reports = dict(state.reports)
            reports[key] = report
            return {"reports": MappingProxyType(reports)}

        self._update(add_report)
        return report

    def summarize_issue(self, issue: Issue) -> Report | None:
        """Generate (or regenerate) the summary of one issue."""
        try:
            text = self.summarizer.summarize_issue(issue)
        except JiraViewerError as e:
            self._fail(e)
            return None
        return self._save_report(issue.key, text)

    def review_sprint(self, sprint: Sprint, issues: list[Issue] | None = None) -> Report | None:
        """Generate the review of a sprint from its fetched issues."""
        if issues is None:
            issues = list(self._state.issues)
        try:
            text = self.summarizer.review_sprint(sprint, issues)
        except JiraViewerError as e:
            self._fail(e)
            return None
        return self._save_report(sprint_report_key(sprint.id), text)


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def state_to_dict(state: ViewerState) -> dict:
    """Convert a ViewerState to a JSON-serializable dict."""

    def _issue(issue: Issue) -> dict:
        return {
            "id": issue.id,
            "key": issue.key,
            "summary": issue.summary,
            "description": issue.description,
            "status": issue.status,
            "assignee": issue.assignee,
            "priority": issue.priority,
            "issue_type": issue.issue_type,
            "created": _dt(issue.created),
            "updated": _dt(issue.updated),
            "resolved": _dt(issue.resolved),
            "original_estimate": issue.original_estimate,
            "remaining_estimate": issue.remaining_estimate,
            "time_spent": issue.time_spent,
        }

    def _sprint(sprint: Sprint) -> dict:
        return {
            "id": sprint.id,
            "name": sprint.name,
            "state": sprint.state,
            "start_date": sprint.start_date,
            "end_date": sprint.end_date,
            "goal": sprint.goal,
        }

    return {
        "issues": [_issue(i) for i in state.issues],
        "sprints": [_sprint(s) for s in state.sprints],
        "selected_sprint_id": state.selected_sprint.id if state.selected_sprint else None,
        "is_loading": state.is_loading,
        "error_message": state.error_message,
        "reports": {
            key: {"text": r.text, "generated_at": _dt(r.generated_at)}
            for key, r in state.reports.items()
        },
        "loaded_at": _dt(state.loaded_at),
    }
