"""
tests/test_editor_api.py
"""
from __future__ import annotations

import io
import itertools

import pytest
from botocore.exceptions import ClientError
from PIL import Image

from inkwell import blog
from inkwell.blog import create_user, get_db
from inkwell.images import MSG_NOT_IMAGE, MSG_TOO_BIG, PLACEHOLDER_COVER, PLACEHOLDER_PROFILE

CSRF = "editor-csrf"
MB = 1024 * 1024
_ids = itertools.count(1)


# ───────────────────────── helpers ────────────────────────────────────
@pytest.fixture
def author(client):
    name = f"editor{next(_ids)}"
    uid = create_user(
        db=get_db(), username=name, email=f"{name}@example.com", password="secret1"
    )
    with client.session_transaction() as sess:
        sess["logged_in"] = True
        sess["user_id"] = uid
        sess["csrf"] = CSRF
    return uid


def _post_json(client, url: str, body: dict):
    return client.post(url, json=body, headers={"X-CSRFToken": CSRF})


def _png(w: int = 40, h: int = 30) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (w, h), (10, 120, 200)).save(buf, format="PNG")
    return buf.getvalue()


def _upload(client, raw: bytes, *, name="pic.png", mimetype="image/png", field="content"):
    return client.post(
        "/upload-image",
        data={"file": (io.BytesIO(raw), name, mimetype), "field": field},
        headers={"X-CSRFToken": CSRF},
        content_type="multipart/form-data",
    )


# ───────────────────────── /editor/preview ────────────────────────────
def test_preview_renders_markdown(client, author):
    rv = _post_json(client, "/editor/preview", {"content": "# Hi\n**there**"})
    assert rv.status_code == 200
    html = rv.get_json()["html"]
    assert '<h1 class="md-h1">Hi</h1>' in html
    assert "<strong>there</strong>" in html


def test_preview_needs_login(client):
    assert client.post("/editor/preview", json={"content": "x"}).status_code == 403


# ───────────────────────── /editor/apply ──────────────────────────────
def test_apply_bold_to_selection(client, author):
    rv = _post_json(client, "/editor/apply",
                    {"content": "hello world", "start": 0, "end": 5, "op": "bold"})
    assert rv.status_code == 200
    data = rv.get_json()
    assert data["content"] == "**hello** world"
    assert data["selection"] == [9, 9]
    assert "<strong>hello</strong>" in data["html"]


def test_apply_without_selection_selects_placeholder(client, author):
    data = _post_json(client, "/editor/apply",
                      {"content": "", "start": 0, "end": 0, "op": "link"}).get_json()
    assert data["content"] == "[text](https://example.com)"
    assert data["selection"] == [1, 5]


def test_apply_heading_level(client, author):
    data = _post_json(client, "/editor/apply",
                      {"content": "Intro", "start": 0, "end": 5, "op": "heading",
                       "level": 2}).get_json()
    assert data["content"] == "\n## Intro"


def test_apply_inserts_uploaded_image(client, author):
    data = _post_json(client, "/editor/apply",
                      {"content": "", "start": 0, "end": 0, "op": "image",
                       "src": "/images/placeholder-cover.svg", "alt": "cover"}).get_json()
    assert data["content"] == "![cover](/images/placeholder-cover.svg)"


@pytest.mark.parametrize("body", [
    {"content": "abc", "start": 2, "end": 1, "op": "bold"},
    {"content": "abc", "start": 0, "end": 9, "op": "bold"},
    {"content": "abc", "start": 0, "end": 0, "op": "strikethrough"},
    {"content": "abc", "start": 0, "end": 0, "op": "heading", "level": 5},
    {"content": "abc", "start": "x", "end": 0, "op": "bold"},
    {"content": "", "start": 0, "end": 0, "op": "image", "src": "javascript:alert(1)"},
    {"content": 42, "op": "bold"},
])
def test_apply_rejects_bad_requests(client, author, body):
    rv = _post_json(client, "/editor/apply", body)
    assert rv.status_code == 400
    assert rv.get_json()["error"]


def test_apply_needs_csrf(client, author):
    rv = client.post("/editor/apply", json={"content": "", "op": "bold"})
    assert rv.status_code == 403


# ───────────────────────── /upload-image ──────────────────────────────
def test_upload_returns_data_uri_without_storage(client, author, monkeypatch):
    monkeypatch.setattr(blog, "r2_config", lambda: {})
    rv = _upload(client, _png(40, 30))
    assert rv.status_code == 201
    data = rv.get_json()
    assert data["url"].startswith("data:image/png;base64,")
    assert (data["width"], data["height"]) == (40, 30)


def test_upload_rejects_non_image(client, author):
    rv = _upload(client, b"plain words", name="notes.txt", mimetype="text/plain")
    assert rv.status_code == 415
    assert rv.get_json()["error"] == MSG_NOT_IMAGE


def test_upload_rejects_oversized_file(client, author):
    rv = _upload(client, b"\0" * (3 * MB), name="huge.png")
    assert rv.status_code == 413
    assert rv.get_json()["error"] == MSG_TOO_BIG


@pytest.mark.parametrize("field,placeholder", [
    ("cover", PLACEHOLDER_COVER),
    ("avatar", PLACEHOLDER_PROFILE),
])
def test_corrupt_upload_returns_placeholder(client, author, field, placeholder):
    rv = _upload(client, b"\x89PNG definitely broken", field=field)
    assert rv.status_code == 422
    body = rv.get_json()
    assert body["url"] == placeholder
    assert body["error"]


def test_upload_rejects_unknown_field(client, author):
    assert _upload(client, _png(), field="banner").status_code == 400


def test_upload_needs_login(client):
    rv = client.post(
        "/upload-image",
        data={"file": (io.BytesIO(_png()), "a.png", "image/png")},
        content_type="multipart/form-data",
    )
    assert rv.status_code == 403


# ───────────────────────── R2 storage ─────────────────────────────────
R2_CFG = {
    "R2_ACCOUNT_ID": "acct",
    "R2_ACCESS_KEY_ID": "key",
    "R2_SECRET_ACCESS_KEY": "secret",
    "R2_BUCKET": "bucket",
    "R2_PUBLIC_BASE": "https://cdn.example.com/",
}


class _FakeS3:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[tuple[str, str, dict]] = []

    def upload_fileobj(self, fileobj, bucket, key, ExtraArgs=None):
        if self.fail:
            raise ClientError({"Error": {"Code": "500", "Message": "boom"}}, "PutObject")
        self.calls.append((bucket, key, ExtraArgs or {}))


def test_upload_goes_to_r2_when_configured(client, author, monkeypatch):
    s3 = _FakeS3()
    monkeypatch.setattr(blog, "r2_config", lambda: dict(R2_CFG))
    monkeypatch.setattr(blog, "_r2_client", lambda cfg: s3)

    rv = _upload(client, _png(), field="cover")
    assert rv.status_code == 201
    url = rv.get_json()["url"]

    (bucket, key, extra), = s3.calls
    assert bucket == "bucket"
    assert key.startswith("cover/2099/01/01/") and key.endswith(".png")
    assert extra == {"ContentType": "image/png"}
    assert url == f"https://cdn.example.com/{key}"


def test_r2_failure_keeps_inline_image(client, author, monkeypatch):
    monkeypatch.setattr(blog, "r2_config", lambda: dict(R2_CFG))
    monkeypatch.setattr(blog, "_r2_client", lambda cfg: _FakeS3(fail=True))

    rv = _upload(client, _png())
    assert rv.status_code == 201
    assert rv.get_json()["url"].startswith("data:image/png;base64,")


# ───────────────────────── cover image via form ───────────────────────
def test_plain_form_cover_upload(client, author, monkeypatch):
    monkeypatch.setattr(blog, "r2_config", lambda: {})
    rv = client.post(
        "/create-post",
        data={
            "title": f"With cover {next(_ids)}",
            "content": "body",
            "csrf": CSRF,
            "cover_image_file": (io.BytesIO(_png(1600, 800)), "c.png", "image/png"),
        },
        content_type="multipart/form-data",
    )
    assert rv.status_code == 302
    slug = rv.headers["Location"].rsplit("/", 1)[-1]
    row = get_db().execute("SELECT cover_image FROM post WHERE slug=?", (slug,)).fetchone()
    assert row["cover_image"].startswith("data:image/png;base64,")


def test_widget_payload_is_kept_and_can_be_removed(client, author):
    rv = client.post(
        "/create-post",
        data={"title": f"Widget {next(_ids)}", "content": "body", "csrf": CSRF,
              "cover_image": "https://cdn.example.com/covers/x.png"},
    )
    slug = rv.headers["Location"].rsplit("/", 1)[-1]
    db = get_db()
    row = db.execute("SELECT title, cover_image FROM post WHERE slug=?", (slug,)).fetchone()
    assert row["cover_image"] == "https://cdn.example.com/covers/x.png"

    client.post(
        f"/edit-post/{slug}",
        data={"title": row["title"], "content": "body", "csrf": CSRF,
              "remove_cover_image": "1"},
    )
    row = db.execute("SELECT cover_image FROM post WHERE slug=?", (slug,)).fetchone()
    assert row["cover_image"] is None


def test_bogus_widget_payload_is_dropped(client, author):
    rv = client.post(
        "/create-post",
        data={"title": f"Bogus {next(_ids)}", "content": "body", "csrf": CSRF,
              "cover_image": "javascript:alert(1)"},
    )
    slug = rv.headers["Location"].rsplit("/", 1)[-1]
    row = get_db().execute("SELECT cover_image FROM post WHERE slug=?", (slug,)).fetchone()
    assert row["cover_image"] is None


# ───────────────────────── placeholder assets ─────────────────────────
@pytest.mark.parametrize("path", [PLACEHOLDER_COVER, PLACEHOLDER_PROFILE])
def test_placeholder_svgs_are_served(client, path):
    rv = client.get(path)
    assert rv.status_code == 200
    assert rv.mimetype == "image/svg+xml"
    assert rv.data.startswith(b"<svg")


def test_unknown_svg_is_404(client):
    assert client.get("/images/nope.svg").status_code == 404
