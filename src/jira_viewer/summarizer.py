"""Issue and sprint summaries, generated locally or by the Anthropic API."""

import logging

import requests

from jira_viewer.config import Config, ReportThresholds
from jira_viewer.exceptions import (
    ConfigurationError,
    HttpError,
    InvalidResponseError,
    RateLimitError,
    TransportError,
)
from jira_viewer.models import Issue, Sprint
from jira_viewer.report import generate_issue_summary, generate_sprint_review

logger = logging.getLogger(__name__)

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"

ISSUE_PROMPT = """Write a concise, clear summary of this Jira issue.

Title: {summary}
Type: {issue_type}
Status: {status}
Description: {description}

Keep it to 2-3 sentences and highlight the key points."""

SPRINT_PROMPT = """Write a short sprint review for the team based on these statistics.
Cover the overall result, what went well, concerns and recommendations.

{review}"""


class LocalSummarizer:
    """Rule-based summaries; no data leaves the machine."""

    name = "local"

    def __init__(self, thresholds: ReportThresholds | None = None) -> None:
        self.thresholds = thresholds or ReportThresholds()

    def summarize_issue(self, issue: Issue) -> str:
        return generate_issue_summary(issue)

    def review_sprint(self, sprint: Sprint | None, issues: list[Issue]) -> str:
        return generate_sprint_review(sprint, issues, self.thresholds)


class AnthropicSummarizer:
    """Summaries written by Claude through the Messages API.

    Sprint reviews are grounded on the local statistics so the model works
    from the same numbers the local report shows.
    """

    name = "anthropic"

    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 300,
        thresholds: ReportThresholds | None = None,
        session: requests.Session | None = None,
        timeout: float = 60,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.thresholds = thresholds or ReportThresholds()
        self.session = session or requests.Session()
        self.timeout = timeout

    def summarize_issue(self, issue: Issue) -> str:
        prompt = ISSUE_PROMPT.format(
            summary=issue.summary,
            issue_type=issue.issue_type,
            status=issue.status,
            description=issue.description or "No description",
        )
        return self.complete(prompt)

    def review_sprint(self, sprint: Sprint | None, issues: list[Issue]) -> str:
        review = generate_sprint_review(sprint, issues, self.thresholds)
        return self.complete(SPRINT_PROMPT.format(review=review))

    def complete(self, prompt: str) -> str:
        """Send a single user message and return the first text block.

        Raises:
            ConfigurationError: If no API key is configured
            HttpError: For non-2xx responses
            TransportError: If the API cannot be reached
            InvalidResponseError: If the reply has no text content
        """
        if not self.api_key:
            raise ConfigurationError("api_key")

        try:
            response = self.session.post(
                ANTHROPIC_URL,
                headers={
                    "x-api-key": self.api_key,
                    "anthropic-version": ANTHROPIC_VERSION,
                    "content-type": "application/json",
                },
                json={
                    "model": self.model,
                    "max_tokens": self.max_tokens,
                    "messages": [{"role": "user", "content": prompt}],
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"Cannot reach the Anthropic API: {e}") from e

        if not 200 <= response.status_code < 300:
            message = _error_message(response)
            if response.status_code == 429:
                raise RateLimitError(429, message)
            raise HttpError(response.status_code, message)

        try:
            body = response.json()
            text = body["content"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise InvalidResponseError("Anthropic response has no text content") from e

        logger.debug("Generated %d characters with %s", len(text), self.model)
        return text


def _error_message(response: requests.Response) -> str | None:
    """Anthropic errors look like {"type": "error", "error": {"message": ...}}."""
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"].get("message")
    return None


def build_summarizer(config: Config, session: requests.Session | None = None):
    """Pick the summarizer the configuration asks for.

    The Anthropic backend without an API key falls back to local summaries.
    """
    if config.summary_backend == "anthropic":
        if not config.anthropic_api_key:
            logger.warning("Anthropic summaries selected but no API key set, using local")
            return LocalSummarizer(config.thresholds)
        return AnthropicSummarizer(
            api_key=config.anthropic_api_key,
            model=config.model,
            max_tokens=config.max_tokens,
            thresholds=config.thresholds,
            session=session,
        )
    return LocalSummarizer(config.thresholds)
