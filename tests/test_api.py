import pytest
from run import create_app
from mediatrack.repo import InMemoryRepo, RepoError
from mediatrack.web import Services

MOVIE = {"external_id": "603", "title": "The Matrix", "media_type": "movie"}

@pytest.fixture
def repo():
    r = InMemoryRepo()
    r.add_user("Alice", "alice@example.com", user_id="alice", password="secret-a")
    r.add_user("Bob", "bob@example.com", user_id="bob", password="secret-b")
    r.set_session("alice")
    return r

@pytest.fixture
def app(repo):
    app = create_app(repo=repo)
    app.testing = True
    return app

@pytest.fixture
def client(app):
    """Flask test client over an InMemoryRepo with Alice signed in."""
    with app.test_client() as c:
        yield c

# ---------- Auth ----------
def test_me_and_signout(client):
    assert client.get("/auth/me").get_json() == {"user_id": "alice"}
    assert client.post("/auth/signout").status_code == 200
    resp = client.get("/auth/me")
    assert resp.status_code == 401
    assert resp.get_json() == {"error": "not authenticated"}
    assert client.get("/boards").status_code == 401

def test_signin_and_wrong_password(client):
    resp = client.post("/auth/signin", json={"email": "bob@example.com", "password": "secret-b"})
    assert resp.status_code == 200
    assert resp.get_json()["user_id"] == "bob"
    assert client.get("/auth/me").get_json() == {"user_id": "bob"}
    bad = client.post("/auth/signin", json={"email": "bob@example.com", "password": "nope-nope"})
    assert bad.status_code == 401
    assert bad.get_json()["error"] == "Invalid login credentials"

def test_signin_throttled_with_retry_after(app, repo):
    app.config["SERVICE"] = Services.build(repo, signin_limit=1, signin_window=60)
    with app.test_client() as c:
        assert c.post("/auth/signin", json={"email": "bob@example.com", "password": "nope-nope"}).status_code == 401
        resp = c.post("/auth/signin", json={"email": "bob@example.com", "password": "secret-b"})
        assert resp.status_code == 429
        assert int(resp.headers["Retry-After"]) > 0

def test_signup_with_invite(client, repo):
    repo.insert("invite_codes", {"code": "ABC-DEF-GHJ-KMN"})
    resp = client.post("/auth/signup", json={"email": "dave@example.com", "password": "secret-d",
                                             "invite_code": "ABC-DEF-GHJ-KMN"})
    assert resp.status_code == 201
    again = client.post("/auth/signup", json={"email": "erin@example.com", "password": "secret-e",
                                              "invite_code": "ABC-DEF-GHJ-KMN"})
    assert again.status_code == 400
    assert again.get_json()["error"] == "Invalid or expired invite code"

# ---------- Recommendations ----------
def test_unknown_kind_is_bad_request(client):
    resp = client.get("/recommendations/podcasts")
    assert resp.status_code == 400
    assert "unknown media kind" in resp.get_json()["error"]

def test_unknown_view_is_bad_request(client):
    assert client.get("/recommendations/movies-tv?view=bogus").status_code == 400

def test_send_and_rate_recommendation(client, repo):
    resp = client.post("/recommendations/movies-tv", json={"to_user_ids": ["bob", "alice"], "item": MOVIE,
                                                           "message": "must see"})
    assert resp.status_code == 201
    sent = resp.get_json()
    assert [r["to_user_id"] for r in sent] == ["bob"]
    rec_id = sent[0]["id"]

    # only the recipient can rate it
    assert client.patch(f"/recommendations/movies-tv/{rec_id}/status", json={"status": "hit"}).status_code == 404
    repo.set_session("bob")
    resp = client.patch(f"/recommendations/movies-tv/{rec_id}/status", json={"status": "hit", "note": "wow"})
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "hit"
    assert resp.get_json()["recipient_note"] == "wow"
    hits = client.get("/recommendations/movies-tv?view=hits").get_json()
    assert [h["id"] for h in hits] == [rec_id]

def test_status_required(client):
    resp = client.patch("/recommendations/movies-tv/r1/status", json={})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "status required"

def test_delete_is_idempotent(client, repo):
    row = repo.insert("movie_recommendations", {"from_user_id": "bob", "to_user_id": "alice", **MOVIE})[0]
    assert client.delete(f"/recommendations/movies-tv/{row['id']}").get_json() == {"deleted": True}
    assert client.delete(f"/recommendations/movies-tv/{row['id']}").get_json() == {"deleted": False}

def test_overview_stats_and_opened(client, repo):
    repo.insert("movie_recommendations", [{"from_user_id": "bob", "to_user_id": "alice", **MOVIE},
                                          {"from_user_id": "bob", "to_user_id": "alice", **MOVIE}])
    overview = client.get("/recommendations/movies-tv/overview").get_json()
    assert list(overview["friend_recommendations"]) == ["bob"]
    assert overview["quick_stats"]["queue"] == 2
    assert overview["user_name_map"] == {"bob": "Bob"}
    assert client.get("/recommendations/movies-tv/stats").get_json()["queue"] == 2
    assert client.get("/recommendations/movies-tv/friends").get_json()[0]["pending_count"] == 2
    assert client.post("/recommendations/movies-tv/opened").get_json() == {"marked": 2}

def test_notes_endpoints(client, repo):
    row = repo.insert("movie_recommendations", {"from_user_id": "alice", "to_user_id": "bob", **MOVIE})[0]
    resp = client.patch(f"/recommendations/movies-tv/{row['id']}/sender-note", json={"note": "popcorn"})
    assert resp.get_json() == {"updated": True}
    assert client.patch(f"/recommendations/movies-tv/{row['id']}/recipient-note",
                        json={"note": "x"}).status_code == 404

# ---------- Dashboard and watchlist ----------
def test_dashboard_endpoints(client, repo):
    repo.insert("movie_recommendations", {"from_user_id": "bob", "to_user_id": "alice", **MOVIE})
    stats = client.get("/dashboard/stats").get_json()
    assert stats["pending_recommendations"] == 1
    groups = client.get("/dashboard/recommendations").get_json()
    assert [(g["user_id"], g["display_name"], len(g["recommendations"])) for g in groups] == [("bob", "Bob", 1)]

def test_watchlist_endpoints(client):
    resp = client.post("/watchlist", json={"external_id": "1", "title": "Heat", "media_type": "movie"})
    assert resp.status_code == 201
    item_id = resp.get_json()["id"]
    assert client.post(f"/watchlist/{item_id}/toggle").get_json()["watched"] is True
    assert client.patch(f"/watchlist/{item_id}", json={"notes": "again"}).get_json()["notes"] == "again"
    assert len(client.get("/watchlist").get_json()) == 1
    assert client.delete(f"/watchlist/{item_id}").get_json() == {"deleted": True}
    assert client.post("/watchlist/missing/toggle").status_code == 404

# ---------- Tasks ----------
def test_board_and_task_endpoints(client):
    resp = client.post("/boards", json={"name": "Work", "color": "#fff"})
    assert resp.status_code == 201
    board_id = resp.get_json()["id"]
    sections = client.get(f"/boards/{board_id}/sections").get_json()
    assert [s["name"] for s in sections] == ["To Do", "In Progress", "Done"]

    resp = client.post("/tasks", json={"title": "Write tests", "board_id": board_id, "tags": ["dev"]})
    assert resp.status_code == 201
    task_id = resp.get_json()["id"]
    assert client.post(f"/tasks/{task_id}/toggle").get_json()["status"] == "done"
    assert [t["id"] for t in client.get("/tasks?status=done").get_json()] == [task_id]
    assert [t["id"] for t in client.get("/tasks?tag=dev&tag=other").get_json()] == [task_id]
    moved = client.post(f"/tasks/{task_id}/move", json={"section_id": sections[2]["id"], "display_order": 0})
    assert moved.get_json()["section_id"] == sections[2]["id"]
    assert client.get("/boards").get_json()[0]["completed_count"] == 1
    assert client.delete(f"/boards/{board_id}").get_json() == {"deleted": True}
    assert client.get(f"/tasks/{task_id}").status_code == 404

def test_task_validation_errors(client):
    assert client.post("/tasks", json={"title": ""}).status_code == 400
    resp = client.post("/tasks", json=[1, 2])
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "JSON object body required"
    task_id = client.post("/tasks", json={"title": "ok"}).get_json()["id"]
    assert client.post(f"/tasks/{task_id}/move", json={"display_order": "first"}).status_code == 400

def test_section_display_order_is_coerced(client):
    board_id = client.post("/boards", json={"name": "Work"}).get_json()["id"]
    resp = client.post(f"/boards/{board_id}/sections", json={"name": "Later", "display_order": "5"})
    assert resp.status_code == 201
    assert resp.get_json()["display_order"] == 5
    section_id = resp.get_json()["id"]
    resp = client.post(f"/boards/{board_id}/sections", json={"name": "Bad", "display_order": "soon"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "display_order must be an integer"
    assert client.patch(f"/sections/{section_id}", json={"display_order": -1}).status_code == 400
    assert client.patch(f"/sections/{section_id}", json={"display_order": "2"}).get_json()["display_order"] == 2

def test_body_keys_cannot_override_path_ids(client):
    board_id = client.post("/boards", json={"name": "Work", "self": 1}).get_json()["id"]
    resp = client.patch(f"/boards/{board_id}", json={"board_id": "other", "name": "Renamed"})
    assert resp.get_json()["name"] == "Renamed"
    task_id = client.post("/tasks", json={"title": "T", "self": 1}).get_json()["id"]
    resp = client.patch(f"/tasks/{task_id}", json={"task_id": "x", "title": "U"})
    assert (resp.status_code, resp.get_json()["id"], resp.get_json()["title"]) == (200, task_id, "U")
    list_id = client.post("/lists", json={"name": "Faves"}).get_json()["id"]
    resp = client.patch(f"/lists/{list_id}", json={"list_id": "x", "name": "Best"})
    assert resp.get_json()["name"] == "Best"

def test_starter_boards_endpoint(client):
    boards = client.post("/boards/starter").get_json()
    assert [b["name"] for b in boards] == ["Job Applications", "Recipe Collection"]

# ---------- Lists and friends ----------
def test_list_sharing_requires_connection(client):
    list_id = client.post("/lists", json={"name": "Favourites", "domain": "movies-tv"}).get_json()["id"]
    resp = client.post(f"/lists/{list_id}/members", json={"user_ids": ["bob"]})
    assert resp.status_code == 400
    assert client.post("/friends", json={"user_id": "bob"}).status_code == 201
    assert client.post(f"/lists/{list_id}/members", json={"user_ids": ["bob"]}).get_json() == {"shared": 1}
    assert client.get(f"/lists/{list_id}/members").get_json()[0]["display_name"] == "Bob"
    item = client.post(f"/lists/{list_id}/items", json={"domain": "movies-tv", "item": MOVIE})
    assert item.status_code == 201
    assert client.get(f"/lists/{list_id}").get_json()["item_count"] == 1
    assert client.get(f"/lists/{list_id}/role").get_json() == {"role": None}

def test_friends_and_search(client):
    client.post("/friends", json={"user_id": "bob"})
    assert [f["display_name"] for f in client.get("/friends").get_json()] == ["Bob"]
    found = client.get("/users/search?q=bo").get_json()
    assert found["users"][0]["is_connected"] is True
    assert client.get("/users/search?page=abc").status_code == 400
    assert client.delete("/friends/bob").get_json() == {"deleted": True}
    assert client.get("/friends").get_json() == []

# ---------- Invites and admin ----------
def test_admin_endpoints_forbidden_for_users(client):
    for path in ("/invites", "/invites/stats", "/admin/stats", "/admin/users"):
        resp = client.get(path)
        assert resp.status_code == 403
        assert resp.get_json() == {"error": "admin access required"}

def test_admin_invite_endpoints(client, repo):
    repo.add_user("Root", user_id="root", role="admin")
    repo.set_session("root")
    one = client.post("/invites", json={"notes": "single"})
    assert one.status_code == 201
    batch = client.post("/invites", json={"count": 3, "expires_in_days": 7})
    assert len(batch.get_json()) == 3
    assert client.get("/invites/stats").get_json()["total"] == 4
    code = one.get_json()
    assert client.post("/invites/validate", json={"code": code["code"]}).get_json() == {"valid": True}
    client.post(f"/invites/{code['id']}/revoke")
    assert client.post("/invites/validate", json={"code": code["code"]}).get_json() == {"valid": False}
    assert client.post("/invites", json={"count": "many"}).status_code == 400

def test_admin_user_endpoints(client, repo):
    repo.add_user("Root", user_id="root", role="admin")
    repo.set_session("root")
    users = client.get("/admin/users?per_page=2").get_json()
    assert users["total_pages"] == 2
    resp = client.patch("/admin/users/bob/role", json={"role": "admin"})
    assert resp.get_json()["role"] == "admin"
    assert client.patch("/admin/users/root/role", json={"role": "user"}).status_code == 400
    assert client.get("/admin/stats").get_json()["total_users"] == 3

def test_admin_user_search_with_comma(client, repo):
    repo.add_user("Root", user_id="root", role="admin")
    repo.add_user("Smith, Jane", user_id="jane")
    repo.set_session("root")
    resp = client.get("/admin/users?search=Smith,%20J")
    assert resp.status_code == 200
    assert [u["display_name"] for u in resp.get_json()["users"]] == ["Smith, Jane"]

# ---------- Backend failures and configuration ----------
@pytest.mark.parametrize("kind,status", [
    ("forbidden", 403),
    ("not_found", 404),
    ("validation", 400),
    ("setup", 502),
    ("network", 502),
])
def test_repo_errors_map_to_status(client, repo, monkeypatch, kind, status):
    def failing(*args, **kwargs):
        raise RepoError("backend said no", kind=kind)
    monkeypatch.setattr(repo, "select", failing)
    resp = client.get("/boards")
    assert resp.status_code == status
    assert resp.get_json() == {"error": "backend said no", "kind": kind}

def test_missing_backend_configuration(monkeypatch):
    for name in ("MEDIATRACK_BACKEND", "SUPABASE_URL", "SUPABASE_ANON_KEY"):
        monkeypatch.delenv(name, raising=False)
    app = create_app()
    app.testing = True
    with app.test_client() as c:
        resp = c.get("/auth/me")
    assert resp.status_code == 503
    assert "SUPABASE_URL" in resp.get_json()["error"]

def test_memory_backend_from_environment(monkeypatch):
    monkeypatch.setenv("MEDIATRACK_BACKEND", "memory")
    app = create_app()
    app.testing = True
    with app.test_client() as c:
        assert c.get("/auth/me").status_code == 401
        assert c.post("/invites/validate", json={"code": "NOPE"}).get_json() == {"valid": False}
