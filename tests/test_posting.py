"""
tests/test_posting.py
"""
from __future__ import annotations

import itertools
import re
from typing import Any

from inkwell.blog import create_user, get_db

CSRF = "test-token"
_ids = itertools.count(1)


def _user(prefix: str = "writer") -> int:
    name = f"{prefix}{next(_ids)}"
    return create_user(
        db=get_db(), username=name, email=f"{name}@example.com", password="secret1"
    )


def _login(client, uid: int) -> None:
    with client.session_transaction() as sess:
        sess["logged_in"] = True
        sess["user_id"] = uid
        sess["csrf"] = CSRF


def _logout(client) -> None:
    with client.session_transaction() as sess:
        sess.clear()


def _create(client, **fields: Any) -> str:
    """POST the new-post form and return the slug it redirected to."""
    data = {
        "title": f"Post {next(_ids)}",
        "content": "Some **body** text",
        "status": "published",
        "csrf": CSRF,
        **fields,
    }
    rv = client.post("/create-post", data=data)
    assert rv.status_code == 302, rv.data.decode()
    return rv.headers["Location"].rstrip("/").rsplit("/", 1)[-1]


def _slugs(html: bytes) -> set[str]:
    return set(re.findall(r'href="/blogs/([^"/?#]+)"', html.decode()))


# ───────────────────────── create & read ─────────────────────────────
def test_create_post_renders_markdown(client):
    _login(client, _user())
    slug = _create(client, title="Hello World", content="Some **body** text")
    assert slug.startswith("hello-world")

    resp = client.get(f"/blogs/{slug}")
    assert resp.status_code == 200
    assert b"Hello World" in resp.data
    assert b"<strong>body</strong>" in resp.data


def test_duplicate_titles_get_numbered_slugs(client):
    _login(client, _user())
    title = f"Same Title {next(_ids)}"
    first = _create(client, title=title)
    second = _create(client, title=title)
    third = _create(client, title=title)
    assert second == f"{first}-2"
    assert third == f"{first}-3"


def test_excerpt_defaults_to_title(client):
    _login(client, _user())
    title = "A" * 200
    slug = _create(client, title=title)
    row = get_db().execute("SELECT excerpt FROM post WHERE slug=?", (slug,)).fetchone()
    assert row["excerpt"] == "A" * 150 + "..."


def test_explicit_excerpt_is_kept(client):
    _login(client, _user())
    slug = _create(client, excerpt="Short teaser")
    row = get_db().execute("SELECT excerpt FROM post WHERE slug=?", (slug,)).fetchone()
    assert row["excerpt"] == "Short teaser"


def test_missing_title_is_rejected(client):
    _login(client, _user())
    rv = client.post(
        "/create-post", data={"title": "", "content": "x", "csrf": CSRF}
    )
    assert rv.status_code == 200
    assert b"Title is required." in rv.data


def test_anonymous_cannot_open_the_form(client):
    _logout(client)
    assert client.get("/create-post").status_code == 403


# ───────────────────────── drafts & scheduling ───────────────────────
def test_drafts_are_private(client):
    _login(client, _user())
    slug = _create(client, status="draft")
    assert client.get(f"/blogs/{slug}").status_code == 200   # author sees it

    _logout(client)
    assert client.get(f"/blogs/{slug}").status_code == 404
    assert slug not in _slugs(client.get("/blogs").data)


def test_schedule_must_be_in_the_future(client):
    _login(client, _user())
    rv = client.post(
        "/create-post",
        data={
            "title": "Too late",
            "content": "x",
            "status": "scheduled",
            "scheduled_publish_date": "2000-01-01T09:00",
            "csrf": CSRF,
        },
    )
    assert rv.status_code == 200
    assert b"must be in the future" in rv.data


def test_scheduled_post_is_published_once_due(client):
    _login(client, _user())
    word = f"zeppelin{next(_ids)}"
    slug = _create(
        client,
        title=word,
        status="scheduled",
        scheduled_publish_date="2100-01-01T09:00",
    )
    _logout(client)
    assert slug not in _slugs(client.get(f"/blogs?q={word}").data)

    db = get_db()
    db.execute(
        "UPDATE post SET scheduled_publish_date='2000-01-01T09:00:00+00:00' WHERE slug=?",
        (slug,),
    )
    db.commit()

    assert slug in _slugs(client.get(f"/blogs?q={word}").data)
    row = db.execute("SELECT status FROM post WHERE slug=?", (slug,)).fetchone()
    assert row["status"] == "published"


# ───────────────────────── ownership ─────────────────────────────────
def test_only_the_author_can_edit_or_delete(client):
    _login(client, _user())
    slug = _create(client)

    _login(client, _user("intruder"))
    assert client.get(f"/edit-post/{slug}").status_code == 403
    assert client.post(f"/blogs/{slug}/delete", data={"csrf": CSRF}).status_code == 403


def test_edit_updates_content_and_slug(client):
    _login(client, _user())
    slug = _create(client, title=f"Before {next(_ids)}")

    new_title = f"After {next(_ids)}"
    rv = client.post(
        f"/edit-post/{slug}",
        data={"title": new_title, "content": "*changed*", "status": "published",
              "csrf": CSRF},
    )
    assert rv.status_code == 302
    new_slug = rv.headers["Location"].rsplit("/", 1)[-1]
    assert new_slug.startswith("after-")
    assert b"<em>changed</em>" in client.get(f"/blogs/{new_slug}").data


def test_delete_removes_reactions(client):
    author = _user()
    _login(client, author)
    slug = _create(client)
    post_id = get_db().execute("SELECT id FROM post WHERE slug=?", (slug,)).fetchone()["id"]

    client.post(f"/blogs/{slug}/comments", data={"content": "nice", "csrf": CSRF})
    client.post(f"/blogs/{slug}/like", data={"csrf": CSRF})
    client.post(f"/blogs/{slug}/bookmark", data={"csrf": CSRF})

    rv = client.post(f"/blogs/{slug}/delete", data={"csrf": CSRF})
    assert rv.status_code == 302
    db = get_db()
    for table in ("post", "comment", "post_like", "bookmark", "post_category"):
        col = "id" if table == "post" else "post_id"
        n = db.execute(f"SELECT COUNT(*) FROM {table} WHERE {col}=?", (post_id,)).fetchone()[0]
        assert n == 0, table


# ───────────────────────── listings ──────────────────────────────────
def test_category_and_tag_filters(client):
    _login(client, _user())
    db = get_db()
    tech = db.execute("SELECT id FROM category WHERE slug='technology'").fetchone()["id"]
    css = db.execute("SELECT id FROM tag WHERE slug='css'").fetchone()["id"]
    slug = _create(client, categories=[str(tech)], tags=[str(css)])

    assert slug in _slugs(client.get("/category/technology").data)
    assert slug in _slugs(client.get("/tag/css").data)
    assert slug not in _slugs(client.get("/category/health").data)
    assert slug in _slugs(client.get("/blogs?category=technology&tag=css").data)
    assert client.get("/category/nope").status_code == 404


def test_search_is_case_insensitive(client):
    _login(client, _user())
    word = f"Marmalade{next(_ids)}"
    slug = _create(client, content=f"I like {word} a lot")
    assert slug in _slugs(client.get(f"/blogs?q={word.lower()}").data)


def test_author_filter(client):
    uid = _user("solo")
    _login(client, uid)
    slug = _create(client)
    name = get_db().execute("SELECT username FROM user WHERE id=?", (uid,)).fetchone()[0]
    assert _slugs(client.get(f"/blogs?author={name}").data) == {slug}
    assert client.get("/blogs?author=nobody-here").status_code == 404


def test_listing_pages_hold_ten_posts(client):
    _login(client, _user())
    word = f"pagination{next(_ids)}"
    made = {_create(client, title=f"{word} {i}") for i in range(12)}

    first = _slugs(client.get(f"/blogs?q={word}").data)
    second = _slugs(client.get(f"/blogs?q={word}&page=2").data)
    assert len(first) == 10
    assert len(second) == 2
    assert first | second == made
    assert client.get(f"/blogs?q={word}&page=3").status_code == 404
