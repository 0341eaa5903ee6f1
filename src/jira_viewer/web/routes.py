"""HTTP route handlers for the Jira Viewer web interface."""

from flask import (
    Blueprint,
    abort,
    current_app,
    jsonify,
    redirect,
    render_template,
    request,
    url_for,
)

from jira_viewer.exceptions import (
    AuthError,
    ConfigurationError,
    CsrfMismatchError,
    HttpError,
    InvalidCallbackError,
    JiraViewerError,
    RateLimitError,
    TransportError,
    user_message,
)
from jira_viewer.models import sprint_report_key
from jira_viewer.store import state_to_dict
from jira_viewer.web.app import EXTENSION_KEY, ViewerServices

bp = Blueprint("main", __name__, template_folder="templates")


def _services() -> ViewerServices | None:
    return current_app.extensions.get(EXTENSION_KEY)


def _require_services() -> ViewerServices:
    services = _services()
    if services is None:
        abort(503)
    return services


def _status_for(error: JiraViewerError | None) -> int:
    """HTTP status for a page rendered after an error."""
    if error is None:
        return 200
    if isinstance(error, ConfigurationError):
        return 503
    if isinstance(error, RateLimitError):
        return 429
    if isinstance(error, HttpError):
        return 401 if error.status_code == 401 else 502
    if isinstance(error, TransportError):
        return 503
    if isinstance(error, (CsrfMismatchError, InvalidCallbackError)):
        return 400
    if isinstance(error, AuthError):
        return 401
    return 500


def _needs_sign_in(services: ViewerServices) -> bool:
    return services.oauth is not None and not services.oauth.is_authenticated


def _render_setup():
    return render_template(
        "index.html",
        has_config=False,
        error=current_app.config.get("CONFIG_ERROR"),
    ), 503


@bp.route("/health")
def health():
    """Health check endpoint."""
    if _services() is not None:
        return jsonify({"status": "ok", "config_loaded": True})
    else:
        return jsonify({
            "status": "error",
            "config_loaded": False,
            "message": current_app.config.get("CONFIG_ERROR") or "Configuration not found",
        }), 503


@bp.route("/")
def index():
    """Sprints, issues of the selected sprint and its review."""
    services = _services()
    if services is None:
        return _render_setup()

    if _needs_sign_in(services):
        return render_template(
            "index.html",
            has_config=True,
            needs_sign_in=True,
            flow_in_progress=services.oauth.flow_in_progress,
            error=user_message(services.oauth.last_error) if services.oauth.last_error else None,
        ), 401

    store = services.store
    if store.state.loaded_at is None:
        store.refresh_sprints()

    state = store.state
    sprint = state.selected_sprint
    review = state.reports.get(sprint_report_key(sprint.id)) if sprint else None
    return render_template(
        "index.html",
        has_config=True,
        state=state,
        review=review,
        user_email=services.oauth.user_email if services.oauth else None,
        error=state.error_message,
    ), _status_for(state.last_error)


@bp.route("/refresh", methods=["POST"])
def refresh():
    """Reload sprints and issues."""
    services = _require_services()
    services.store.refresh_sprints()
    return redirect(url_for("main.index"))


@bp.route("/sprints/<int:sprint_id>")
def select_sprint(sprint_id: int):
    """Show the issues of another sprint."""
    services = _require_services()
    sprint = services.store.state.find_sprint(sprint_id)
    if sprint is None:
        abort(404)
    services.store.select_sprint(sprint)
    return redirect(url_for("main.index"))


@bp.route("/sprints/<int:sprint_id>/review", methods=["POST"])
def review_sprint(sprint_id: int):
    """Generate the sprint review from the issues currently shown."""
    services = _require_services()
    store = services.store
    sprint = store.state.find_sprint(sprint_id)
    if sprint is None:
        abort(404)
    if store.state.selected_sprint != sprint:
        store.select_sprint(sprint)
    store.review_sprint(sprint)
    return redirect(url_for("main.index"))


@bp.route("/issues/<key>")
def issue_detail(key: str):
    """Issue detail with its summary."""
    services = _require_services()
    state = services.store.state
    issue = state.find_issue(key)
    if issue is None:
        abort(404)
    return render_template(
        "issue.html",
        issue=issue,
        report=state.reports.get(issue.key),
        browse_url=services.client.browse_url(issue.key),
        summarizer=services.store.summarizer.name,
        error=state.error_message,
    )


@bp.route("/issues/<key>/summary", methods=["POST"])
def summarize_issue(key: str):
    """Generate or regenerate the summary of an issue."""
    services = _require_services()
    issue = services.store.state.find_issue(key)
    if issue is None:
        abort(404)
    services.store.summarize_issue(issue)
    return redirect(url_for("main.issue_detail", key=key))


@bp.route("/login")
def login():
    """Send the browser to the identity provider."""
    services = _require_services()
    if services.oauth is None:
        abort(404)
    try:
        url = services.oauth.start_flow()
    except ConfigurationError as e:
        return render_template("index.html", has_config=True, error=str(e)), 503
    if url is None:
        return render_template(
            "index.html", has_config=True, needs_sign_in=True,
            error="Could not start sign-in.",
        ), 500
    return redirect(url)


@bp.route("/login/cancel", methods=["POST"])
def cancel_login():
    """Abandon a sign-in attempt that has not come back yet."""
    services = _require_services()
    if services.oauth is None:
        abort(404)
    services.oauth.cancel_flow()
    return redirect(url_for("main.index"))


@bp.route("/oauth/callback")
def oauth_callback():
    """Redirect target of the identity provider."""
    services = _require_services()
    if services.oauth is None:
        abort(404)
    try:
        services.oauth.handle_callback(request.url)
    except JiraViewerError as e:
        return render_template(
            "index.html", has_config=True, needs_sign_in=True, error=user_message(e),
        ), _status_for(e)

    services.store.refresh_sprints()
    return redirect(url_for("main.index"))


@bp.route("/logout", methods=["POST"])
def logout():
    """Forget the stored tokens."""
    services = _require_services()
    if services.oauth is not None:
        services.oauth.logout()
    return redirect(url_for("main.index"))


@bp.route("/api/state")
def api_state():
    """Return the current viewer state as JSON."""
    services = _services()
    if services is None:
        return jsonify({"error": "Configuration not found"}), 503
    state = services.store.state
    return jsonify(state_to_dict(state)), _status_for(state.last_error)
