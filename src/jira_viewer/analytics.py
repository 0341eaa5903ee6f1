"""Sprint statistics computed from an in-memory issue list."""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from jira_viewer.config import ReportThresholds
from jira_viewer.models import Issue

HOURS_PER_DAY = 8
SECONDS_PER_DAY = 86400

# Substring heuristics over status names, English and French. Custom workflows
# with ambiguous names (e.g. "Not done") land in the wrong bucket.
DONE_MARKERS = ("done", "terminé", "closed")
IN_PROGRESS_MARKERS = ("progress", "cours")


class StatusBucket(Enum):
    DONE = "done"
    IN_PROGRESS = "in_progress"
    TODO = "todo"


def classify_status(status: str) -> StatusBucket:
    """Put a status name into exactly one of three buckets."""
    name = (status or "").lower()
    if any(marker in name for marker in DONE_MARKERS):
        return StatusBucket.DONE
    if any(marker in name for marker in IN_PROGRESS_MARKERS):
        return StatusBucket.IN_PROGRESS
    return StatusBucket.TODO


def resolution_time(issue: Issue) -> datetime | None:
    """When the issue was resolved.

    Done issues without a resolution date use their last update instead.
    """
    if issue.resolved is not None:
        return issue.resolved
    if classify_status(issue.status) is StatusBucket.DONE:
        return issue.updated
    return None


def completion_rate(done: int, total: int) -> int:
    """Percentage of done issues, halves rounded up (12.5 gives 13)."""
    if total == 0:
        return 0
    return (200 * done + total) // (2 * total)


@dataclass
class TimeTracking:
    """Aggregated Jira time tracking."""

    time_spent: int  # seconds
    original_estimate: int  # seconds
    accuracy: float | None  # percent of the estimate actually spent
    verdict: str | None  # "over" | "under" | "accurate"

    @property
    def spent_hours(self) -> float:
        return self.time_spent / 3600

    @property
    def spent_days(self) -> float:
        return self.spent_hours / HOURS_PER_DAY

    @property
    def estimate_hours(self) -> float:
        return self.original_estimate / 3600

    @property
    def estimate_days(self) -> float:
        return self.estimate_hours / HOURS_PER_DAY


@dataclass
class CycleTime:
    """Creation-to-resolution durations of completed issues."""

    average_days: float
    longest_key: str
    longest_days: float
    sample_size: int


@dataclass
class SprintStats:
    total: int = 0
    done: int = 0
    in_progress: int = 0
    todo: int = 0
    completion_rate: int = 0
    types: dict[str, int] = field(default_factory=dict)
    done_types: dict[str, int] = field(default_factory=dict)
    time_tracking: TimeTracking | None = None
    cycle_time: CycleTime | None = None


def estimation_verdict(accuracy: float | None, thresholds: ReportThresholds) -> str | None:
    if accuracy is None:
        return None
    if accuracy > thresholds.overrun_accuracy:
        return "over"
    if accuracy < thresholds.underrun_accuracy:
        return "under"
    return "accurate"


def _time_tracking(issues: list[Issue], thresholds: ReportThresholds) -> TimeTracking | None:
    if not any(issue.time_spent is not None for issue in issues):
        return None

    spent = sum(issue.time_spent or 0 for issue in issues)
    estimate = sum(issue.original_estimate or 0 for issue in issues)
    accuracy = 100 * spent / estimate if estimate else None
    return TimeTracking(
        time_spent=spent,
        original_estimate=estimate,
        accuracy=accuracy,
        verdict=estimation_verdict(accuracy, thresholds),
    )


def _cycle_time(done_issues: list[Issue]) -> CycleTime | None:
    durations: list[tuple[str, float]] = []
    for issue in done_issues:
        resolved = resolution_time(issue)
        if issue.created is None or resolved is None:
            continue
        days = max((resolved - issue.created).total_seconds(), 0) / SECONDS_PER_DAY
        durations.append((issue.key, days))

    if not durations:
        return None

    longest_key, longest_days = max(durations, key=lambda item: item[1])
    return CycleTime(
        average_days=sum(days for _, days in durations) / len(durations),
        longest_key=longest_key,
        longest_days=longest_days,
        sample_size=len(durations),
    )


def compute_sprint_stats(
    issues: list[Issue], thresholds: ReportThresholds | None = None
) -> SprintStats:
    """Completion, per-type counts and either time tracking or cycle time."""
    thresholds = thresholds or ReportThresholds()
    buckets = Counter(classify_status(issue.status) for issue in issues)
    done_issues = [i for i in issues if classify_status(i.status) is StatusBucket.DONE]

    stats = SprintStats(
        total=len(issues),
        done=buckets[StatusBucket.DONE],
        in_progress=buckets[StatusBucket.IN_PROGRESS],
        todo=buckets[StatusBucket.TODO],
        completion_rate=completion_rate(buckets[StatusBucket.DONE], len(issues)),
        types=dict(Counter(issue.issue_type or "Other" for issue in issues)),
        done_types=dict(Counter(issue.issue_type or "Other" for issue in done_issues)),
    )

    stats.time_tracking = _time_tracking(issues, thresholds)
    if stats.time_tracking is None:
        stats.cycle_time = _cycle_time(done_issues)
    return stats
