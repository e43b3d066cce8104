import pytest
from mediatrack.admin import AdminService
from mediatrack.friends import FriendService
from mediatrack.invites import AuthService, InviteService
from mediatrack.lists import MediaListService
from mediatrack.repo import InMemoryRepo, RepoError
from mediatrack.service import (AuthError, ForbiddenError, NotFoundError, RateLimitError, RecommendationService,
                                ValidationError)
from mediatrack.tasks import TaskService
from mediatrack.throttle import SlidingWindowThrottle

MOVIE = {"external_id": "603", "title": "The Matrix", "media_type": "movie"}

@pytest.fixture
def repo():
    r = InMemoryRepo()
    r.add_user("Alice", "alice@example.com", user_id="alice", password="secret-a")
    r.add_user("Bob", "bob@example.com", user_id="bob", password="secret-b")
    r.set_session("alice")
    return r

@pytest.fixture
def svc(repo):
    return RecommendationService(repo)

# ---------- Recommendations ----------
def test_reads_require_session(repo, svc):
    repo.set_session(None)
    with pytest.raises(AuthError, match="not authenticated"):
        svc.get_recommendations("received")

def test_unknown_media_kind_is_validation_error(svc):
    with pytest.raises(ValidationError, match="unknown media kind"):
        svc.get_recommendations("received", media_kind="podcasts")

def test_invalid_direction(svc):
    with pytest.raises(ValidationError, match="invalid direction"):
        svc.get_recommendations("sideways")

def test_media_type_must_belong_to_kind(svc):
    with pytest.raises(ValidationError, match="does not belong"):
        svc.get_recommendations("received", media_kind="music", media_type="movie")

def test_update_status_rejects_unknown_status(svc):
    with pytest.raises(ValidationError, match="invalid status"):
        svc.update_status("r1", "bogus", "movies-tv")

def test_update_status_only_for_recipient(repo, svc):
    # alice sent this one, so she cannot rate it
    row = repo.insert("movie_recommendations", {"from_user_id": "alice", "to_user_id": "bob", **MOVIE})[0]
    with pytest.raises(NotFoundError, match="recommendation not found"):
        svc.update_status(row["id"], "hit", "movies-tv")

def test_sender_note_only_for_sender(repo, svc):
    row = repo.insert("movie_recommendations", {"from_user_id": "bob", "to_user_id": "alice", **MOVIE})[0]
    with pytest.raises(NotFoundError):
        svc.update_sender_note(row["id"], "you will love it", "movies-tv")

def test_send_to_self_only_is_rejected(svc):
    with pytest.raises(ValidationError, match="at least one recipient required"):
        svc.send_recommendation(["alice"], MOVIE, "movies-tv")

def test_send_requires_title(svc):
    with pytest.raises(ValidationError, match="external_id and title required"):
        svc.send_recommendation(["bob"], {"external_id": "1", "title": " ", "media_type": "movie"}, "movies-tv")

def test_watchlist_media_type(svc):
    with pytest.raises(ValidationError, match="media_type must be movie or tv"):
        svc.add_to_watchlist({"external_id": "1", "title": "Dune", "media_type": "book"})

def test_toggle_missing_watchlist_item(svc):
    with pytest.raises(NotFoundError, match="watchlist item not found"):
        svc.toggle_watched("nope")

# ---------- Tasks ----------
@pytest.fixture
def tasks(repo):
    return TaskService(repo)

def test_task_title_required(tasks):
    with pytest.raises(ValidationError, match="task title is required"):
        tasks.create_task({"title": "   "})

def test_task_title_too_long(tasks):
    with pytest.raises(ValidationError, match="too long"):
        tasks.create_task({"title": "x" * 501})

def test_task_tag_limits(tasks):
    with pytest.raises(ValidationError, match="too many tags"):
        tasks.create_task({"title": "t", "tags": [f"t{i}" for i in range(21)]})
    with pytest.raises(ValidationError, match="at most 50"):
        tasks.create_task({"title": "t", "tags": ["x" * 51]})

def test_task_invalid_priority(tasks):
    with pytest.raises(ValidationError, match="invalid priority"):
        tasks.create_task({"title": "t", "priority": "urgent"})

def test_missing_task(tasks):
    with pytest.raises(NotFoundError, match="task not found"):
        tasks.get_task("missing")

def test_board_of_other_user_is_not_found(repo, tasks):
    repo.set_session("bob")
    board = tasks.create_board("Bob's board")
    repo.set_session("alice")
    with pytest.raises(NotFoundError, match="board not found"):
        tasks.get_board(board.id)
    with pytest.raises(NotFoundError):
        tasks.create_task({"title": "sneaky", "board_id": board.id})

# ---------- Lists and friends ----------
def test_only_owner_updates_list(repo):
    lists = MediaListService(repo)
    lst = lists.create_list("Favourites", "movies-tv", is_public=True)
    repo.set_session("bob")
    with pytest.raises(ForbiddenError, match="only the list owner"):
        lists.update_list(lst.id, {"name": "Mine now"})

def test_share_only_with_connected_users(repo):
    lists = MediaListService(repo)
    lst = lists.create_list("Favourites", "movies-tv")
    with pytest.raises(ValidationError, match="Can only invite connected users"):
        lists.share(lst.id, ["bob"])
    with pytest.raises(ValidationError, match="invalid role"):
        lists.share(lst.id, ["bob"], role="owner")

def test_unknown_list_domain(repo):
    with pytest.raises(ValidationError, match="unknown media domain"):
        MediaListService(repo).create_list("x", "podcasts")

def test_cannot_connect_to_self(repo):
    with pytest.raises(ValidationError, match="cannot connect to yourself"):
        FriendService(repo).create_connection("alice")

# ---------- Invites, auth and admin ----------
def test_invite_management_is_admin_only(repo):
    with pytest.raises(ForbiddenError, match="admin access required"):
        InviteService(repo).create()

def test_batch_count_bounds(repo):
    invites = InviteService(repo)
    for count in (0, 101):
        with pytest.raises(ValidationError, match="count must be between 1 and 100"):
            invites.batch_create(count)

def test_sign_up_with_bad_invite_code(repo):
    auth = AuthService(repo, InviteService(repo))
    with pytest.raises(ValidationError, match="Invalid or expired invite code"):
        auth.sign_up("carol@example.com", "secret-c", "AAA-BBB-CCC-DDD")

def test_sign_up_short_password(repo):
    auth = AuthService(repo, InviteService(repo))
    with pytest.raises(ValidationError, match="at least 6 characters"):
        auth.sign_up("carol@example.com", "123", "AAA-BBB-CCC-DDD")

def test_sign_in_wrong_password(repo):
    auth = AuthService(repo, InviteService(repo))
    with pytest.raises(AuthError, match="Invalid login credentials"):
        auth.sign_in("alice@example.com", "wrong-password")

def test_sign_in_local_throttle(repo):
    auth = AuthService(repo, InviteService(repo), SlidingWindowThrottle(2, 60))
    for _ in range(2):
        with pytest.raises(AuthError):
            auth.sign_in("alice@example.com", "wrong-password")
    with pytest.raises(RateLimitError) as exc:
        auth.sign_in("Alice@Example.com ", "secret-a")
    assert exc.value.retry_after > 0

def test_sign_in_server_rate_limit(repo):
    auth = AuthService(repo, InviteService(repo), SlidingWindowThrottle(100, 60))
    for _ in range(5):
        with pytest.raises(AuthError):
            auth.sign_in("alice@example.com", "wrong-password")
    with pytest.raises(RateLimitError, match="Too many login attempts"):
        auth.sign_in("alice@example.com", "secret-a")

def test_sign_up_server_rate_limit(repo):
    repo.insert("invite_codes", {"code": "AAA-BBB-CCC-DDD", "max_uses": 10})
    auth = AuthService(repo, InviteService(repo))
    auth.sign_up("carol@example.com", "secret-c", "aaa-bbb-ccc-ddd")
    for _ in range(2):
        with pytest.raises(ValidationError, match="already registered"):
            auth.sign_up("carol@example.com", "secret-c", "AAA-BBB-CCC-DDD")
    with pytest.raises(RateLimitError, match="Too many signup attempts"):
        auth.sign_up("carol@example.com", "secret-c", "AAA-BBB-CCC-DDD")

def test_admin_stats_forbidden_for_users(repo):
    with pytest.raises(ForbiddenError):
        AdminService(repo).stats()

def test_admin_role_changes(repo):
    repo.add_user("Root", user_id="root", role="admin")
    repo.set_session("root")
    admin = AdminService(repo)
    with pytest.raises(ValidationError, match="cannot change your own role"):
        admin.update_user_role("root", "user")
    with pytest.raises(ValidationError, match="invalid role"):
        admin.update_user_role("bob", "super_admin")
    with pytest.raises(NotFoundError, match="user not found"):
        admin.update_user_role("ghost", "admin")

def test_unknown_rpc_is_setup_error(repo):
    with pytest.raises(RepoError) as exc:
        repo.rpc("does_not_exist", {})
    assert exc.value.kind == "setup"
