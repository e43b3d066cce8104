from types import SimpleNamespace

import httpx
import pytest
from postgrest.exceptions import APIError
from supabase_auth.errors import AuthError as SupabaseAuthError

from mediatrack.repo import InMemoryRepo, RepoError, SupabaseRepo

# --- Fake supabase client ------------------------------------------------
# Records every builder call so tests can check the query a repo method built.

class FakeQuery:
    def __init__(self, client, table):
        self.client = client
        self.calls = [("table", (table,), {})]

    def __getattr__(self, name):
        def method(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self
        return method

    def execute(self):
        self.client.executed.append(self.calls)
        if self.client.error is not None:
            raise self.client.error
        return self.client.response

class FakeAuth:
    def __init__(self, error=None):
        self.error = error

    def _maybe_fail(self):
        if self.error is not None:
            raise self.error

    def sign_up(self, credentials):
        self._maybe_fail()
        return SimpleNamespace(user=SimpleNamespace(id="new-user"), session=None)

    def sign_in_with_password(self, credentials):
        self._maybe_fail()
        return SimpleNamespace(user=SimpleNamespace(id="u1"), session=SimpleNamespace(access_token="tok"))

    def sign_out(self):
        self._maybe_fail()

    def get_user(self):
        self._maybe_fail()
        return SimpleNamespace(user=SimpleNamespace(id="u1"))

class FakeClient:
    def __init__(self, data=None, count=None, error=None, auth_error=None):
        self.response = SimpleNamespace(data=data, count=count)
        self.error = error
        self.executed = []
        self.auth = FakeAuth(auth_error)

    def table(self, name):
        return FakeQuery(self, name)

    def rpc(self, name, params):
        q = FakeQuery(self, "rpc")
        q.calls = [("rpc", (name, params), {})]
        return q

def api_error(code, message="boom"):
    return APIError({"message": message, "code": code, "hint": None, "details": None})

# --- SupabaseRepo --------------------------------------------------------

def test_select_builds_filtered_ordered_page():
    client = FakeClient(data=[{"id": "t1"}])
    repo = SupabaseRepo(client)
    rows = repo.select("tasks", "id,title", [
        ("eq", "user_id", "u1"),
        ("is", "board_id", None),
        ("in", "status", ("todo", "done")),
        ("ov", "tags", ["work"]),
    ], order=[("created_at", True)], limit=10, offset=20)
    assert rows == [{"id": "t1"}]
    assert client.executed[0] == [
        ("table", ("tasks",), {}),
        ("select", ("id,title",), {}),
        ("eq", ("user_id", "u1"), {}),
        ("is_", ("board_id", "null"), {}),
        ("in_", ("status", ["todo", "done"]), {}),
        ("ov", ("tags", ["work"]), {}),
        ("order", ("created_at",), {"desc": True}),
        ("range", (20, 29), {}),
    ]

def test_select_limit_without_offset_and_or_filter():
    client = FakeClient(data=None)
    repo = SupabaseRepo(client)
    assert repo.select("movie_recommendations", filters=[("or", None, "a.eq.1,b.eq.1")], limit=5) == []
    calls = client.executed[0]
    assert ("or_", ("a.eq.1,b.eq.1",), {}) in calls
    assert calls[-1] == ("limit", (5,), {})

def test_count_uses_exact_head_request():
    client = FakeClient(count=7)
    assert SupabaseRepo(client).count("user_profiles", [("gte", "created_at", "2025-01-01")]) == 7
    assert client.executed[0][1] == ("select", ("*",), {"count": "exact", "head": True})

def test_upsert_passes_conflict_columns():
    client = FakeClient(data=[{"list_id": "l1", "user_id": "u2"}])
    SupabaseRepo(client).upsert("media_list_members", [{"list_id": "l1", "user_id": "u2"}], "list_id,user_id")
    assert client.executed[0][1] == ("upsert", ([{"list_id": "l1", "user_id": "u2"}],),
                                     {"on_conflict": "list_id,user_id"})

def test_rpc_returns_data():
    client = FakeClient(data=True)
    assert SupabaseRepo(client).rpc("validate_invite_code", {"code_to_check": "ABC"}) is True
    assert client.executed[0] == [("rpc", ("validate_invite_code", {"code_to_check": "ABC"}), {})]

def test_unsupported_filter_op():
    with pytest.raises(ValueError, match="unsupported filter op"):
        SupabaseRepo(FakeClient()).select("tasks", filters=[("like", "title", "x")])

@pytest.mark.parametrize("code,kind", [
    ("42501", "forbidden"),
    ("PGRST116", "not_found"),
    ("23505", "validation"),
    ("42P01", "setup"),
    ("PGRST202", "setup"),
    ("57014", "unknown"),
])
def test_api_errors_become_repo_errors(code, kind):
    repo = SupabaseRepo(FakeClient(error=api_error(code, "query failed")))
    with pytest.raises(RepoError, match="query failed") as exc:
        repo.update("tasks", {"title": "x"}, [("eq", "id", "t1")])
    assert exc.value.kind == kind
    assert exc.value.code == code

def test_network_errors_become_repo_errors():
    repo = SupabaseRepo(FakeClient(error=httpx.ConnectError("connection refused")))
    with pytest.raises(RepoError) as exc:
        repo.delete("tasks", [("eq", "id", "t1")])
    assert exc.value.kind == "network"

def test_auth_calls():
    repo = SupabaseRepo(FakeClient())
    assert repo.sign_up("a@example.com", "secret1") == "new-user"
    assert repo.sign_in("a@example.com", "secret1") == {"user_id": "u1", "access_token": "tok"}
    assert repo.current_user_id() == "u1"

def test_auth_failures_are_auth_kind():
    error = SupabaseAuthError("Invalid login credentials", "invalid_credentials")
    repo = SupabaseRepo(FakeClient(auth_error=error))
    with pytest.raises(RepoError, match="Invalid login credentials") as exc:
        repo.sign_in("a@example.com", "nope")
    assert exc.value.kind == "auth"

def test_auth_network_failures_are_network_kind():
    repo = SupabaseRepo(FakeClient(auth_error=httpx.ConnectError("connection refused")))
    with pytest.raises(RepoError) as exc:
        repo.current_user_id()
    assert exc.value.kind == "network"

def test_auth_programming_errors_propagate():
    repo = SupabaseRepo(FakeClient(auth_error=KeyError("user")))
    with pytest.raises(KeyError):
        repo.sign_out()

# --- InMemoryRepo --------------------------------------------------------

@pytest.fixture
def repo():
    r = InMemoryRepo()
    r.add_user("Alice", "alice@example.com", user_id="alice", password="secret-a")
    r.add_user("Bob", "bob@example.com", user_id="bob", password="secret-b")
    r.set_session("alice")
    return r

def test_memory_filters(repo):
    repo.insert("tasks", [
        {"user_id": "alice", "title": "Write report", "tags": ["work"], "due_date": "2025-03-01"},
        {"user_id": "alice", "title": "Buy milk", "tags": ["home"], "due_date": None},
        {"user_id": "bob", "title": "Report bug", "tags": ["work"]},
    ])
    titles = lambda rows: sorted(r["title"] for r in rows)
    assert titles(repo.select("tasks", filters=[("ilike", "title", "%report%")])) == ["Report bug", "Write report"]
    assert titles(repo.select("tasks", filters=[("ov", "tags", ["home", "x"])])) == ["Buy milk"]
    assert titles(repo.select("tasks", filters=[("or", None, "user_id.eq.bob,title.eq.Buy milk")])) == [
        "Buy milk", "Report bug"]
    assert titles(repo.select("tasks", filters=[("lte", "due_date", "2025-12-31")])) == ["Write report"]
    assert repo.count("tasks", [("is", "due_date", None)]) == 2

def test_memory_or_filter_keeps_quoted_commas(repo):
    repo.add_user("Smith, Jane", user_id="jane")
    repo.add_user("Jane Smith", user_id="jsmith")
    expr = 'display_name.ilike."%Smith, J%",bio.ilike."%Smith, J%"'
    assert [r["user_id"] for r in repo.select("user_profiles", filters=[("or", None, expr)])] == ["jane"]
    quoted = 'display_name.eq."say \\"hi\\"",display_name.eq.Alice'
    assert [r["user_id"] for r in repo.select("user_profiles", filters=[("or", None, quoted)])] == ["alice"]

def test_memory_order_puts_nulls_last_and_pages(repo):
    repo.insert("tasks", [{"user_id": "alice", "title": t, "display_order": o}
                          for t, o in (("b", 2), ("none", None), ("a", 1), ("c", 3))])
    rows = repo.select("tasks", "title", order=[("display_order", False)])
    assert [r["title"] for r in rows] == ["a", "b", "c", "none"]
    page = repo.select("tasks", "title", order=[("display_order", False)], limit=2, offset=1)
    assert [r["title"] for r in page] == ["b", "c"]

def test_memory_views_join_names_and_counts(repo):
    repo.insert("movie_recommendations", {"from_user_id": "bob", "to_user_id": "alice", "external_id": "1",
                                          "title": "Heat", "media_type": "movie"})
    row = repo.select("movie_recommendations_with_users")[0]
    assert (row["sender_name"], row["recipient_name"]) == ("Bob", "Alice")

    board = repo.insert("task_boards", {"user_id": "alice", "name": "B"})[0]
    repo.insert("tasks", [{"user_id": "alice", "title": "x", "board_id": board["id"], "status": "done"},
                          {"user_id": "alice", "title": "y", "board_id": board["id"]}])
    stats = repo.select("task_boards_with_stats", filters=[("eq", "id", board["id"])])[0]
    assert (stats["task_count"], stats["completed_count"]) == (2, 1)

def test_memory_list_visibility(repo):
    private = repo.insert("media_lists", {"owner_id": "bob", "name": "Secret", "is_public": False})[0]
    public = repo.insert("media_lists", {"owner_id": "bob", "name": "Open", "is_public": True})[0]
    visible = {r["id"] for r in repo.select("media_lists_with_counts")}
    assert visible == {public["id"]}
    repo.insert("media_list_members", {"list_id": private["id"], "user_id": "alice", "role": "viewer"})
    assert private["id"] in {r["id"] for r in repo.select("media_lists_with_counts")}

def test_memory_connection_rpc_is_bidirectional_and_idempotent(repo):
    repo.rpc("create_bidirectional_connection", {"user_a": "alice", "user_b": "bob"})
    repo.rpc("create_bidirectional_connection", {"user_a": "bob", "user_b": "alice"})
    pairs = sorted((c["user_id"], c["friend_id"]) for c in repo.select("connections"))
    assert pairs == [("alice", "bob"), ("bob", "alice")]

def test_memory_invite_rpcs(repo):
    repo.insert("invite_codes", {"code": "ABC-DEF-GHJ-KMN"})
    assert repo.rpc("validate_invite_code", {"code_to_check": "ABC-DEF-GHJ-KMN"}) is True
    assert repo.rpc("consume_invite_code", {"code_to_use": "ABC-DEF-GHJ-KMN", "user_id": "bob"}) is True
    # single use
    assert repo.rpc("validate_invite_code", {"code_to_check": "ABC-DEF-GHJ-KMN"}) is False
    assert repo.rpc("consume_invite_code", {"code_to_use": "ABC-DEF-GHJ-KMN", "user_id": "alice"}) is False
    code = repo.select("invite_codes")[0]
    assert (code["current_uses"], code["used_by"]) == (1, "bob")

def test_memory_rate_limit_keys_are_normalized(repo):
    for _ in range(5):
        assert repo.rpc("check_signin_rate_limit", {"user_email": "Alice@Example.com"})["allowed"]
    assert not repo.rpc("check_signin_rate_limit", {"user_email": " alice@example.com "})["allowed"]
    # sign-up attempts are counted separately
    assert repo.rpc("check_signup_rate_limit", {"user_email": "alice@example.com"})["allowed"]
    repo.rpc("reset_auth_rate_limit", {"user_email": "alice@example.com", "auth_type": "signin"})
    assert repo.rpc("check_signin_rate_limit", {"user_email": "alice@example.com"})["allowed"]

def test_memory_auth(repo):
    assert repo.sign_in("ALICE@example.com", "secret-a")["user_id"] == "alice"
    with pytest.raises(RepoError, match="Invalid login credentials"):
        repo.sign_in("alice@example.com", "nope")
    uid = repo.sign_up("carol@example.com", "secret-c")
    assert repo.current_user_id() == uid
    with pytest.raises(RepoError, match="already registered"):
        repo.sign_up("Carol@example.com", "secret-c")
    repo.sign_out()
    assert repo.current_user_id() is None
