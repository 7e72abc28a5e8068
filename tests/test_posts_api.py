"""Tests for the /api/posts CRUD routes."""
import pytest

from app.stackkit import create_app
from app.stackkit.db import session_scope
from app.stackkit.identity import create_session
from app.stackkit.models import AuditEvent, Base, User
from app.stackkit.modules.posts.models import Post

CSRF = "test-csrf-token"
HEADERS = {"X-CSRF-Token": CSRF}


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    return app


def _make_user(app, email: str, name: str = "Test User") -> tuple[int, str]:
    with session_scope(app) as s:
        u = User(email=email, name=name, is_active=True)
        s.add(u)
        s.flush()
        sess = create_session(s, u, max_age=3600)
        return u.id, sess.session_token


def _client_for(app, token: str | None = None):
    c = app.test_client()
    with c.session_transaction() as sess:
        sess["csrf_token"] = CSRF
        if token:
            sess["session_token"] = token
    return c


@pytest.fixture()
def alice(app):
    user_id, token = _make_user(app, "alice@example.com", "Alice")
    return user_id, _client_for(app, token)


@pytest.fixture()
def bob(app):
    user_id, token = _make_user(app, "bob@example.com", "Bob")
    return user_id, _client_for(app, token)


def _create(client, **payload):
    body = {"title": "Hello", "content": "First post", "published": True}
    body.update(payload)
    return client.post("/api/posts", json=body, headers=HEADERS)


def test_create_requires_auth(app):
    r = _client_for(app).post("/api/posts", json={"title": "x"}, headers=HEADERS)
    assert r.status_code == 401
    assert r.json["error"] == "Authentication required."


def test_create_requires_csrf(alice):
    _, c = alice
    r = c.post("/api/posts", json={"title": "x"})
    assert r.status_code == 400
    assert "CSRF" in r.json["error"]


def test_csrf_accepted_in_json_body(alice):
    _, c = alice
    r = c.post("/api/posts", json={"title": "x", "csrf_token": CSRF})
    assert r.status_code == 201


def test_create_and_fetch(app, alice):
    user_id, c = alice
    r = _create(c, title="  Hello  ")
    assert r.status_code == 201
    post = r.json
    assert post["title"] == "Hello"
    assert post["published"] is True
    assert post["author"] == {"id": user_id, "name": "Alice", "image": None}

    r = _client_for(app).get(f"/api/posts/{post['id']}")
    assert r.status_code == 200
    assert r.json["content"] == "First post"

    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "post.create").one()
        assert ev.actor_user_id == user_id
        assert ev.entity_id == str(post["id"])


@pytest.mark.parametrize(
    "payload,message",
    [
        ({"title": ""}, "Title is required."),
        ({"title": "x" * 201}, "Title must be at most 200 characters."),
        ({"title": 5}, "Title must be a string."),
        ({"title": "ok", "published": "yes"}, "Published must be true or false."),
        ({"title": "ok", "content": "x" * 20_001}, "Content must be at most 20000 characters."),
        ({"title": "ok", "author_id": 99}, "Unknown field(s): author_id"),
    ],
)
def test_create_validation(alice, payload, message):
    _, c = alice
    r = c.post("/api/posts", json=payload, headers=HEADERS)
    assert r.status_code == 400
    assert message in r.json["errors"]


def test_create_rejects_non_object_body(alice):
    _, c = alice
    r = c.post("/api/posts", json=["title"], headers=HEADERS)
    assert r.status_code == 400
    assert r.json["error"] == "Request body must be a JSON object."


def test_drafts_hidden_from_others(app, alice, bob):
    _, a = alice
    _, b = bob
    draft_id = _create(a, title="Secret", published=False).json["id"]

    assert a.get(f"/api/posts/{draft_id}").status_code == 200
    assert b.get(f"/api/posts/{draft_id}").status_code == 404
    assert _client_for(app).get(f"/api/posts/{draft_id}").status_code == 404


def test_list_visibility_and_mine(app, alice, bob):
    _, a = alice
    _, b = bob
    _create(a, title="A public")
    _create(a, title="A draft", published=False)
    _create(b, title="B public")
    _create(b, title="B draft", published=False)

    titles = lambda r: sorted(p["title"] for p in r.json["items"])  # noqa: E731
    assert titles(_client_for(app).get("/api/posts")) == ["A public", "B public"]
    assert titles(a.get("/api/posts")) == ["A draft", "A public", "B public"]
    assert titles(a.get("/api/posts?mine=1")) == ["A draft", "A public"]
    assert titles(a.get("/api/posts?mine=true")) == ["A draft", "A public"]


def test_list_mine_for_anonymous_is_empty(app, alice):
    _, a = alice
    _create(a, title="A public")
    r = _client_for(app).get("/api/posts?mine=1")
    assert r.status_code == 200
    assert r.json["total"] == 0
    assert r.json["items"] == []


def test_list_search_and_pagination(alice):
    _, c = alice
    for i in range(5):
        _create(c, title=f"Post {i}", content="needle" if i % 2 == 0 else "hay")

    r = c.get("/api/posts?per_page=2&page=2")
    assert r.json["total"] == 5
    assert r.json["pages"] == 3
    assert r.json["page"] == 2
    # Newest first.
    assert [p["title"] for p in r.json["items"]] == ["Post 2", "Post 1"]

    r = c.get("/api/posts?q=needle")
    assert r.json["total"] == 3


def test_list_search_matches_wildcards_literally(alice):
    _, c = alice
    _create(c, title="Half off", content="50% discount")
    _create(c, title="snake_case names")
    _create(c, title="Plain", content="nothing special")

    r = c.get("/api/posts", query_string={"q": "%"})
    assert [p["title"] for p in r.json["items"]] == ["Half off"]
    r = c.get("/api/posts", query_string={"q": "_"})
    assert [p["title"] for p in r.json["items"]] == ["snake_case names"]
    r = c.get("/api/posts", query_string={"q": "50%"})
    assert r.json["total"] == 1


def test_list_paging_args_are_clamped(alice):
    _, c = alice
    r = c.get("/api/posts?per_page=1000&page=-3")
    assert r.json["per_page"] == 100
    assert r.json["page"] == 1
    r = c.get("/api/posts?per_page=abc")
    assert r.json["per_page"] == 20


def test_update_partial(app, alice):
    _, c = alice
    post_id = _create(c, published=False).json["id"]
    r = c.patch(f"/api/posts/{post_id}", json={"published": True}, headers=HEADERS)
    assert r.status_code == 200
    assert r.json["published"] is True
    assert r.json["title"] == "Hello"

    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "post.edit").one()
        assert '"published"' in ev.metadata_json


def test_update_with_put(alice):
    _, c = alice
    post_id = _create(c).json["id"]
    r = c.put(f"/api/posts/{post_id}", json={"title": "Renamed", "content": ""}, headers=HEADERS)
    assert r.status_code == 200
    assert r.json["title"] == "Renamed"
    assert r.json["content"] is None


def test_update_validation(alice):
    _, c = alice
    post_id = _create(c).json["id"]
    r = c.patch(f"/api/posts/{post_id}", json={"title": "   "}, headers=HEADERS)
    assert r.status_code == 400
    assert r.json["errors"] == ["Title is required."]


def test_update_by_non_owner_forbidden(alice, bob):
    _, a = alice
    _, b = bob
    post_id = _create(a).json["id"]
    r = b.patch(f"/api/posts/{post_id}", json={"title": "Hijacked"}, headers=HEADERS)
    assert r.status_code == 403
    assert a.get(f"/api/posts/{post_id}").json["title"] == "Hello"


def test_missing_post_404(alice):
    _, c = alice
    assert c.get("/api/posts/999").status_code == 404
    assert c.patch("/api/posts/999", json={"title": "x"}, headers=HEADERS).status_code == 404
    assert c.delete("/api/posts/999", headers=HEADERS).status_code == 404


def test_delete(app, alice, bob):
    _, a = alice
    _, b = bob
    post_id = _create(a).json["id"]

    assert b.delete(f"/api/posts/{post_id}", headers=HEADERS).status_code == 403
    r = a.delete(f"/api/posts/{post_id}", headers=HEADERS)
    assert r.status_code == 204
    assert a.get(f"/api/posts/{post_id}").status_code == 404
    with session_scope(app) as s:
        assert s.query(Post).count() == 0
