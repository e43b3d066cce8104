# mediatrack/web.py
from dataclasses import dataclass, asdict, is_dataclass
import logging

from flask import Blueprint, current_app, jsonify, request

from mediatrack.admin import AdminService, DashboardService
from mediatrack.aggregation import group_pending_by_friend
from mediatrack.cache import QueryCache, RecommendationQueries, query_keys
from mediatrack.friends import FriendService
from mediatrack.invites import AuthService, InviteService
from mediatrack.lists import MediaListService
from mediatrack.media import MOVIES_TV
from mediatrack.repo import RepoError
from mediatrack.service import (AuthError, ConfigurationError, ForbiddenError, NotFoundError, RateLimitError,
                                RecommendationService, ValidationError)
from mediatrack.tasks import TaskService
from mediatrack.throttle import SlidingWindowThrottle

logger = logging.getLogger(__name__)

bp = Blueprint("main", __name__, url_prefix="")  # blueprint name = 'main'

@dataclass
class Services:
    """Every service the endpoints use, built over one repo."""
    recommendations: RecommendationService
    queries: RecommendationQueries
    tasks: TaskService
    lists: MediaListService
    friends: FriendService
    invites: InviteService
    auth: AuthService
    admin: AdminService
    dashboard: DashboardService

    @property
    def cache(self) -> QueryCache:
        return self.queries.cache

    @classmethod
    def build(cls, repo, stale_time: float = 30.0, retry: int = 1, admin_workers: int = 8,
              signin_limit: int = 5, signin_window: float = 15 * 60) -> "Services":
        recs = RecommendationService(repo)
        invites = InviteService(repo)
        return cls(
            recommendations=recs,
            queries=RecommendationQueries(recs, QueryCache(stale_time=stale_time, retry=retry)),
            tasks=TaskService(repo),
            lists=MediaListService(repo),
            friends=FriendService(repo),
            invites=invites,
            auth=AuthService(repo, invites, SlidingWindowThrottle(signin_limit, signin_window)),
            admin=AdminService(repo, max_workers=admin_workers),
            dashboard=DashboardService(repo, max_workers=admin_workers),
        )

def register_routes(app, services: Services):
    """
    Register blueprint and ensure SERVICE is in app.config.
    Call this once during app creation (run.create_app does this).
    """
    if "SERVICE" not in app.config:
        app.config["SERVICE"] = services
    app.register_blueprint(bp)
    logger.debug("Registered blueprint 'main' and injected SERVICE")

def _error(message, status, **extra):
    return jsonify({"error": message, **extra}), status

# RepoError kinds that map to something more precise than a bad gateway
REPO_STATUS = {"forbidden": 403, "not_found": 404, "validation": 400, "auth": 401}

def register_error_handlers(app):
    """Centralized handlers for service exceptions."""
    @app.errorhandler(ValidationError)
    def handle_validation_error(e):
        logger.warning("ValidationError: %s", e)
        return _error(str(e), 400)

    @app.errorhandler(RateLimitError)
    def handle_rate_limit(e):
        logger.warning("RateLimitError: %s", e)
        resp, status = _error(str(e), 429)
        if e.retry_after:
            resp.headers["Retry-After"] = str(int(e.retry_after) + 1)
        return resp, status

    @app.errorhandler(AuthError)
    def handle_auth_error(e):
        logger.info("AuthError: %s", e)
        return _error(str(e), 401)

    @app.errorhandler(ForbiddenError)
    def handle_forbidden(e):
        logger.warning("ForbiddenError: %s", e)
        return _error(str(e), 403)

    @app.errorhandler(NotFoundError)
    def handle_not_found(e):
        logger.info("NotFoundError: %s", e)
        return _error(str(e), 404)

    @app.errorhandler(ConfigurationError)
    def handle_configuration_error(e):
        logger.error("ConfigurationError: %s", e)
        return _error(str(e), 503)

    @app.errorhandler(RepoError)
    def handle_repo_error(e):
        logger.error("RepoError (%s, code=%s): %s", e.kind, e.code, e)
        return _error(str(e), REPO_STATUS.get(e.kind, 502), kind=e.kind)

# helper to get the services bundle
def current_service() -> Services:
    return current_app.config["SERVICE"]

@bp.before_request
def require_configuration():
    problem = current_app.config.get("CONFIG_ERROR")
    if problem:
        raise ConfigurationError(problem)

def to_json(obj):
    if is_dataclass(obj):
        return asdict(obj)
    if isinstance(obj, (list, tuple)):
        return [to_json(o) for o in obj]
    if isinstance(obj, dict):
        return {k: to_json(v) for k, v in obj.items()}
    return obj

def ok(obj, status=200):
    return jsonify(to_json(obj)), status

def body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("JSON object body required")
    return data

def int_arg(name, default):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")

# -----------------------
# Auth
# -----------------------
@bp.route("/auth/signup", methods=["POST"])
def signup():
    data = body()
    user_id = current_service().auth.sign_up(data.get("email"), data.get("password"), data.get("invite_code"))
    current_service().cache.clear()
    return ok({"user_id": user_id}, 201)

@bp.route("/auth/signin", methods=["POST"])
def signin():
    data = body()
    session = current_service().auth.sign_in(data.get("email"), data.get("password"))
    current_service().cache.clear()
    return ok(session)

@bp.route("/auth/signout", methods=["POST"])
def signout():
    current_service().auth.sign_out()
    current_service().cache.clear()
    return ok({"signed_out": True})

@bp.route("/auth/me")
def me():
    uid = current_service().auth.current_user_id()
    if not uid:
        raise AuthError("not authenticated")
    return ok({"user_id": uid})

# -----------------------
# Recommendations
# -----------------------
@bp.route("/recommendations/<kind>")
def recommendations(kind):
    view = request.args.get("view", "queue")
    friend_id = request.args.get("friend_id")
    return ok(current_service().queries.recommendations(view, friend_id, kind))

@bp.route("/recommendations/<kind>/overview")
def recommendations_overview(kind):
    return ok(current_service().queries.recommendations_data(kind))

@bp.route("/recommendations/<kind>/friends")
def recommendations_friends(kind):
    return ok(current_service().queries.friends_with_recs(kind))

@bp.route("/recommendations/<kind>/stats")
def recommendations_stats(kind):
    return ok(current_service().queries.quick_stats(kind))

@bp.route("/recommendations/<kind>", methods=["POST"])
def recommendation_send(kind):
    data = body()
    created = current_service().queries.send(data.get("to_user_ids") or [], data.get("item") or {}, kind,
                                             data.get("message"))
    return ok(created, 201)

@bp.route("/recommendations/<kind>/<rec_id>/status", methods=["PATCH"])
def recommendation_status(kind, rec_id):
    data = body()
    if not data.get("status"):
        raise ValidationError("status required")
    return ok(current_service().queries.update_status(rec_id, data["status"], kind, data.get("note")))

@bp.route("/recommendations/<kind>/<rec_id>/sender-note", methods=["PATCH"])
def recommendation_sender_note(kind, rec_id):
    current_service().queries.update_sender_note(rec_id, body().get("note") or "", kind)
    return ok({"updated": True})

@bp.route("/recommendations/<kind>/<rec_id>/recipient-note", methods=["PATCH"])
def recommendation_recipient_note(kind, rec_id):
    current_service().queries.update_recipient_note(rec_id, body().get("note") or "", kind)
    return ok({"updated": True})

@bp.route("/recommendations/<kind>/<rec_id>", methods=["DELETE"])
def recommendation_delete(kind, rec_id):
    return ok({"deleted": current_service().queries.delete(rec_id, kind)})

@bp.route("/recommendations/<kind>/opened", methods=["POST"])
def recommendations_opened(kind):
    return ok({"marked": current_service().queries.mark_opened(kind)})

# -----------------------
# Dashboard
# -----------------------
@bp.route("/dashboard/stats")
def dashboard_stats():
    svc = current_service()
    return ok(svc.cache.fetch(query_keys.dashboard_stats(), svc.dashboard.stats))

@bp.route("/dashboard/recommendations")
def dashboard_recommendations():
    queries = current_service().queries
    pending = queries.recommendations("queue", None, MOVIES_TV)
    names = {f.user_id: f.display_name for f in queries.friends_with_recs(MOVIES_TV)}
    return ok(group_pending_by_friend(pending, names))

# -----------------------
# Watchlist
# -----------------------
@bp.route("/watchlist")
def watchlist():
    return ok(current_service().recommendations.get_watchlist())

@bp.route("/watchlist", methods=["POST"])
def watchlist_add():
    return ok(current_service().recommendations.add_to_watchlist(body()), 201)

@bp.route("/watchlist/<item_id>/toggle", methods=["POST"])
def watchlist_toggle(item_id):
    return ok(current_service().recommendations.toggle_watched(item_id))

@bp.route("/watchlist/<item_id>", methods=["PATCH"])
def watchlist_update(item_id):
    return ok(current_service().recommendations.update_watchlist_item(item_id, body()))

@bp.route("/watchlist/<item_id>", methods=["DELETE"])
def watchlist_delete(item_id):
    return ok({"deleted": current_service().recommendations.delete_from_watchlist(item_id)})

# -----------------------
# Boards, sections, tasks
# -----------------------
@bp.route("/boards")
def boards():
    return ok(current_service().tasks.list_boards())

@bp.route("/boards", methods=["POST"])
def board_new():
    data = body()
    return ok(current_service().tasks.create_board(data.get("name"), data,
                                                   bool(data.get("with_default_sections", True))), 201)

@bp.route("/boards/starter", methods=["POST"])
def boards_starter():
    return ok(current_service().tasks.ensure_starter_boards())

@bp.route("/boards/reorder", methods=["POST"])
def boards_reorder():
    current_service().tasks.reorder_boards(body().get("board_ids") or [])
    return ok({"reordered": True})

@bp.route("/boards/<board_id>")
def board_get(board_id):
    return ok(current_service().tasks.get_board(board_id))

@bp.route("/boards/<board_id>", methods=["PATCH"])
def board_update(board_id):
    return ok(current_service().tasks.update_board(board_id, body()))

@bp.route("/boards/<board_id>", methods=["DELETE"])
def board_delete(board_id):
    current_service().tasks.delete_board(board_id)
    return ok({"deleted": True})

@bp.route("/boards/<board_id>/sections")
def sections(board_id):
    return ok(current_service().tasks.list_sections(board_id))

@bp.route("/boards/<board_id>/sections", methods=["POST"])
def section_new(board_id):
    data = body()
    return ok(current_service().tasks.create_section(board_id, data.get("name"), data.get("display_order")), 201)

@bp.route("/boards/<board_id>/sections/reorder", methods=["POST"])
def sections_reorder(board_id):
    current_service().tasks.reorder_sections(board_id, body().get("section_ids") or [])
    return ok({"reordered": True})

@bp.route("/sections/<section_id>", methods=["PATCH"])
def section_update(section_id):
    data = body()
    return ok(current_service().tasks.update_section(section_id, data.get("name"), data.get("display_order")))

@bp.route("/sections/<section_id>", methods=["DELETE"])
def section_delete(section_id):
    current_service().tasks.delete_section(section_id)
    return ok({"deleted": True})

@bp.route("/tasks")
def tasks():
    a = request.args
    return ok(current_service().tasks.list_tasks(
        board_id=a.get("board_id"), status=a.get("status"), priority=a.get("priority"),
        tags=a.getlist("tag") or None, due_before=a.get("due_before"), due_after=a.get("due_after"),
        unassigned=a.get("unassigned") in ("1", "true"),
    ))

@bp.route("/tasks", methods=["POST"])
def task_new():
    return ok(current_service().tasks.create_task(body()), 201)

@bp.route("/tasks/today")
def tasks_today():
    return ok(current_service().tasks.today_tasks())

@bp.route("/tasks/archived")
def tasks_archived():
    return ok(current_service().tasks.archived_tasks())

@bp.route("/tasks/reorder", methods=["POST"])
def tasks_reorder():
    current_service().tasks.reorder_tasks(body().get("task_ids") or [])
    return ok({"reordered": True})

@bp.route("/tasks/<task_id>")
def task_get(task_id):
    return ok(current_service().tasks.get_task(task_id))

@bp.route("/tasks/<task_id>", methods=["PATCH"])
def task_update(task_id):
    return ok(current_service().tasks.update_task(task_id, body()))

@bp.route("/tasks/<task_id>", methods=["DELETE"])
def task_delete(task_id):
    current_service().tasks.delete_task(task_id)
    return ok({"deleted": True})

@bp.route("/tasks/<task_id>/toggle", methods=["POST"])
def task_toggle(task_id):
    return ok(current_service().tasks.toggle_task_status(task_id))

@bp.route("/tasks/<task_id>/archive", methods=["POST"])
def task_archive(task_id):
    return ok(current_service().tasks.archive_task(task_id))

@bp.route("/tasks/<task_id>/move", methods=["POST"])
def task_move(task_id):
    data = body()
    try:
        order = int(data.get("display_order", 0))
    except (TypeError, ValueError):
        raise ValidationError("display_order must be an integer")
    return ok(current_service().tasks.move_task(task_id, data.get("section_id"), order))

# -----------------------
# Media lists
# -----------------------
@bp.route("/lists")
def lists():
    return ok(current_service().lists.get_lists(request.args.get("domain", MOVIES_TV)))

@bp.route("/lists", methods=["POST"])
def list_new():
    data = body()
    return ok(current_service().lists.create_list(data.get("name"), data.get("domain", MOVIES_TV),
                                                  data.get("description"), bool(data.get("is_public"))), 201)

@bp.route("/lists/<list_id>")
def list_get(list_id):
    return ok(current_service().lists.get_list(list_id))

@bp.route("/lists/<list_id>", methods=["PATCH"])
def list_update(list_id):
    return ok(current_service().lists.update_list(list_id, body()))

@bp.route("/lists/<list_id>", methods=["DELETE"])
def list_delete(list_id):
    current_service().lists.delete_list(list_id)
    return ok({"deleted": True})

@bp.route("/lists/<list_id>/items")
def list_items(list_id):
    return ok(current_service().lists.get_items(list_id))

@bp.route("/lists/<list_id>/items", methods=["POST"])
def list_item_add(list_id):
    data = body()
    return ok(current_service().lists.add_item(list_id, data.get("domain", MOVIES_TV), data.get("item") or {}), 201)

@bp.route("/lists/<list_id>/items/<item_id>", methods=["DELETE"])
def list_item_remove(list_id, item_id):
    return ok({"deleted": current_service().lists.remove_item(list_id, item_id)})

@bp.route("/lists/<list_id>/role")
def list_role(list_id):
    return ok({"role": current_service().lists.my_role(list_id)})

@bp.route("/lists/<list_id>/members")
def list_members(list_id):
    return ok(current_service().lists.get_members(list_id))

@bp.route("/lists/<list_id>/members", methods=["POST"])
def list_share(list_id):
    data = body()
    shared = current_service().lists.share(list_id, data.get("user_ids") or [], data.get("role", "viewer"))
    return ok({"shared": shared})

@bp.route("/lists/<list_id>/members/<user_id>", methods=["PATCH"])
def list_member_role(list_id, user_id):
    current_service().lists.update_member_role(list_id, user_id, body().get("role"))
    return ok({"updated": True})

@bp.route("/lists/<list_id>/members/<user_id>", methods=["DELETE"])
def list_unshare(list_id, user_id):
    return ok({"deleted": current_service().lists.unshare(list_id, user_id)})

# -----------------------
# Friends
# -----------------------
@bp.route("/friends")
def friends():
    return ok(current_service().friends.list_friends())

@bp.route("/friends", methods=["POST"])
def friend_add():
    current_service().friends.create_connection(body().get("user_id"))
    return ok({"connected": True}, 201)

@bp.route("/friends/<user_id>", methods=["DELETE"])
def friend_remove(user_id):
    current_service().friends.remove_connection(user_id)
    return ok({"deleted": True})

@bp.route("/users/search")
def users_search():
    return ok(current_service().friends.search_users(request.args.get("q", ""), int_arg("page", 1),
                                                     int_arg("page_size", 20)))

# -----------------------
# Invite codes
# -----------------------
@bp.route("/invites/validate", methods=["POST"])
def invite_validate():
    return ok({"valid": current_service().invites.validate(body().get("code") or "")})

@bp.route("/invites")
def invites():
    return ok(current_service().invites.list_all())

@bp.route("/invites/mine")
def invites_mine():
    return ok(current_service().invites.list_mine())

@bp.route("/invites/stats")
def invites_stats():
    return ok(current_service().invites.stats())

@bp.route("/invites", methods=["POST"])
def invite_new():
    data = body()
    svc = current_service().invites
    try:
        count = int(data.get("count", 1))
        max_uses = int(data.get("max_uses", 1))
        days = data.get("expires_in_days")
        days = int(days) if days not in (None, "") else None
    except (TypeError, ValueError):
        raise ValidationError("count, max_uses and expires_in_days must be integers")
    if count == 1:
        return ok(svc.create(data.get("notes"), max_uses, days), 201)
    return ok(svc.batch_create(count, data.get("notes"), max_uses, days), 201)

@bp.route("/invites/<code_id>/revoke", methods=["POST"])
def invite_revoke(code_id):
    current_service().invites.revoke(code_id)
    return ok({"revoked": True})

@bp.route("/invites/<code_id>", methods=["DELETE"])
def invite_delete(code_id):
    return ok({"deleted": current_service().invites.delete(code_id)})

# -----------------------
# Admin
# -----------------------
@bp.route("/admin/stats")
def admin_stats():
    return ok(current_service().admin.stats())

@bp.route("/admin/users")
def admin_users():
    return ok(current_service().admin.users(int_arg("page", 0), int_arg("per_page", 20),
                                            request.args.get("search", "")))

@bp.route("/admin/popular")
def admin_popular():
    return ok(current_service().admin.popular_media(int_arg("limit", 10)))

@bp.route("/admin/activity")
def admin_activity():
    return ok(current_service().admin.recent_activity(int_arg("limit", 10)))

@bp.route("/admin/users/<user_id>/role", methods=["PATCH"])
def admin_user_role(user_id):
    return ok(current_service().admin.update_user_role(user_id, body().get("role")))
