"""Rule-based text for sprint reviews and issue summaries.

Nothing here touches the network: the same issues always give the same text.
"""

from jira_viewer.analytics import SprintStats, compute_sprint_stats
from jira_viewer.config import ReportThresholds
from jira_viewer.models import Issue, Sprint

DESCRIPTION_PREVIEW = 240

VERDICT_TEXT = {
    "over": "over-run, more time spent than estimated",
    "under": "under-run, less time spent than estimated",
    "accurate": "accurate",
}


def _format_counts(counts: dict[str, int]) -> list[tuple[str, int]]:
    return sorted(counts.items(), key=lambda item: (-item[1], item[0]))


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def _header(sprint: Sprint | None) -> list[str]:
    if sprint is None:
        return ["Review: all project issues"]

    lines = [f"Sprint review: {sprint.name} ({sprint.state or 'unknown'})"]
    if sprint.goal:
        lines.append(f"Goal: {sprint.goal}")
    if sprint.start_date or sprint.end_date:
        start = (sprint.start_date or "?")[:10]
        end = (sprint.end_date or "?")[:10]
        lines.append(f"Dates: {start} to {end}")
    return lines


def _overview(stats: SprintStats) -> list[str]:
    return [
        "OVERVIEW",
        f"- {_plural(stats.total, 'issue')}: {stats.done} done, "
        f"{stats.in_progress} in progress, {stats.todo} to do",
        f"- Completion rate: {stats.completion_rate}%",
    ]


def _time_and_effort(stats: SprintStats) -> list[str]:
    lines = ["TIME & EFFORT"]
    tracking = stats.time_tracking
    cycle = stats.cycle_time

    if tracking is not None:
        lines.append(
            f"- Time spent: {tracking.spent_hours:.1f} h ({tracking.spent_days:.1f} days)"
        )
        lines.append(
            f"- Original estimate: {tracking.estimate_hours:.1f} h "
            f"({tracking.estimate_days:.1f} days)"
        )
        if tracking.accuracy is not None:
            lines.append(
                f"- Estimation accuracy: {tracking.accuracy:.0f}% "
                f"({VERDICT_TEXT[tracking.verdict]})"
            )
        else:
            lines.append("- Estimation accuracy: no original estimates recorded")
    elif cycle is not None:
        lines.append(
            f"- Average cycle time: {cycle.average_days:.1f} days "
            f"over {_plural(cycle.sample_size, 'completed issue')}"
        )
        lines.append(f"- Longest cycle: {cycle.longest_key} ({cycle.longest_days:.1f} days)")
    else:
        lines.append("- No time tracking or resolution data available")
    return lines


def _positives(stats: SprintStats, thresholds: ReportThresholds) -> list[str]:
    items = []
    if stats.total and stats.completion_rate >= thresholds.high_completion:
        items.append(f"High completion rate ({stats.completion_rate}%)")
    if stats.time_tracking and stats.time_tracking.verdict == "accurate":
        items.append("Estimates matched the time actually spent")
    if stats.total and stats.in_progress == 0:
        items.append("No work left in progress")
    if stats.done_types:
        delivered = ", ".join(f"{count} {name}" for name, count in _format_counts(stats.done_types))
        items.append(f"Delivered: {delivered}")
    return ["POSITIVES"] + [f"- {item}" for item in items or ["Nothing stands out yet"]]


def _wip_exceeded(stats: SprintStats, thresholds: ReportThresholds) -> bool:
    return stats.in_progress > stats.total * thresholds.wip_ratio


def _concerns(stats: SprintStats, sprint: Sprint | None, thresholds: ReportThresholds) -> list[str]:
    items = []
    if stats.total:
        if stats.completion_rate < thresholds.critical_completion:
            items.append(f"Critical: only {stats.completion_rate}% of issues completed")
        elif stats.completion_rate < thresholds.low_completion:
            items.append(
                f"Completion rate below {thresholds.low_completion}% ({stats.completion_rate}%)"
            )
    if _wip_exceeded(stats, thresholds):
        items.append(f"{_plural(stats.in_progress, 'issue')} still in progress")

    tracking = stats.time_tracking
    if tracking and tracking.verdict == "over":
        items.append(f"Time spent exceeded estimates ({tracking.accuracy:.0f}%)")
    elif tracking and tracking.verdict == "under":
        items.append(f"Time spent well under estimates ({tracking.accuracy:.0f}%)")

    if sprint is not None and sprint.state.lower() == "closed" and stats.todo:
        items.append(f"{_plural(stats.todo, 'issue')} never started")
    return ["CONCERNS"] + [f"- {item}" for item in items or ["No major concerns"]]


def _breakdown(stats: SprintStats) -> list[str]:
    lines = ["BREAKDOWN BY TYPE"]
    if not stats.types:
        return lines + ["- No issues"]
    for name, count in _format_counts(stats.types):
        lines.append(f"- {name}: {stats.done_types.get(name, 0)}/{count} done")
    return lines


def _recommendations(
    stats: SprintStats, sprint: Sprint | None, thresholds: ReportThresholds
) -> list[str]:
    items = []
    if stats.total and stats.completion_rate < thresholds.low_completion:
        items.append("Review team capacity and reduce the sprint commitment")
    if _wip_exceeded(stats, thresholds):
        items.append("Set a work-in-progress limit and finish started work before pulling more")

    tracking = stats.time_tracking
    if tracking and tracking.verdict == "over":
        items.append("Refine estimation, for example by splitting large items")
    elif tracking and tracking.verdict == "under":
        items.append("Revisit estimates, the team may have room for more work")

    if sprint is not None and sprint.state.lower() == "closed" and stats.todo:
        items.append("Groom the backlog and re-plan the unstarted items")
    return ["RECOMMENDATIONS"] + [f"- {item}" for item in items or ["Keep the current pace"]]


def generate_sprint_review(
    sprint: Sprint | None,
    issues: list[Issue],
    thresholds: ReportThresholds | None = None,
) -> str:
    """Build the multi-section sprint review text."""
    thresholds = thresholds or ReportThresholds()
    stats = compute_sprint_stats(issues, thresholds)

    sections = [
        _header(sprint),
        _overview(stats),
        _time_and_effort(stats),
        _positives(stats, thresholds),
        _concerns(stats, sprint, thresholds),
        _breakdown(stats),
        _recommendations(stats, sprint, thresholds),
    ]
    return "\n\n".join("\n".join(section) for section in sections)


def _preview(text: str, limit: int = DESCRIPTION_PREVIEW) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    cut = text[:limit].rsplit(" ", 1)[0]
    return f"{cut}..."


def generate_issue_summary(issue: Issue) -> str:
    """A few sentences describing one issue."""
    kind = issue.issue_type or "issue"
    article = "an" if kind[0].lower() in "aeiou" else "a"
    status = issue.status or "unknown"
    sentences = [f'{issue.key} is {article} {kind} with status "{status}": '
                 f"{issue.summary.rstrip('.')}."]

    if issue.assignee:
        sentences.append(f"It is assigned to {issue.assignee}.")
    else:
        sentences.append("It is not assigned yet.")
    if issue.priority:
        sentences.append(f"Priority is {issue.priority}.")
    if issue.time_spent:
        sentences.append(f"{issue.time_spent / 3600:.1f} h have been logged.")
    if issue.description:
        sentences.append(f"Details: {_preview(issue.description)}")
    return " ".join(sentences)
