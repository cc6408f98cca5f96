#!/usr/bin/env python3
"""
A single-file multi-author blog with a Markdown editor.
"""

import io
import os
import re
import secrets
import sqlite3
import unicodedata
import uuid
from collections import defaultdict, deque
from datetime import datetime, timezone
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict

import boto3
import click
from botocore.exceptions import BotoCoreError, ClientError
from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash, generate_password_hash

from inkwell.editor import Selection
from inkwell.editor import apply as apply_edit
from inkwell.images import (
    MAX_PAYLOAD_BYTES,
    MAX_UPLOAD_BYTES,
    PLACEHOLDER_COVER,
    PLACEHOLDER_PROFILE,
    ImageFile,
    ImageRejected,
    ImageUploader,
    IngestResult,
    image_url,
    ingest,
)
from inkwell.render import render

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = Path(os.environ.get("INKWELL_DB") or ROOT / "blog.sqlite3")

ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)
reset_signer = TimestampSigner(SECRET_KEY, salt="password-reset")
RESET_MAX_AGE = 60 * 60

SITE_NAME = os.environ.get("INKWELL_SITE_NAME", "Inkwell")
PER_PAGE = 10
EXCERPT_LEN = 150
MIN_PASSWORD_LEN = 6
STATUSES = ("published", "draft", "scheduled")
USERNAME_RE = re.compile(r"^[A-Za-z0-9_-]{3,30}$")

DEFAULT_CATEGORIES = (
    ("Technology", "technology", "Tech-related posts"),
    ("Design", "design", "Design-related posts"),
    ("Business", "business", "Business-related posts"),
    ("Health", "health", "Health-related posts"),
    ("Productivity", "productivity", "Productivity tips and tricks"),
)
DEFAULT_TAGS = (
    ("JavaScript", "javascript"),
    ("React", "react"),
    ("CSS", "css"),
    ("Web Development", "web-development"),
    ("UI/UX", "ui-ux"),
    ("Productivity", "productivity"),
    ("Career", "career"),
    ("Health", "health"),
    ("Fitness", "fitness"),
    ("Business", "business"),
)

R2_ENV_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
    "R2_PUBLIC_BASE",
    "R2_ENDPOINT",
)
R2_REQUIRED_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
)
# request bodies above this never reach the ingestion gate
REQUEST_MAX_BYTES = int(os.environ.get("UPLOAD_MAX_BYTES", 8 * 1024 * 1024))
IMAGE_EXTS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
}
IMAGE_FIELDS = ("content", "cover", "avatar")

try:
    __version__ = version("inkwell")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(SECRET_KEY=SECRET_KEY, DATABASE=str(DB_FILE))
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=os.environ.get("INKWELL_INSECURE_COOKIES") != "1",
    MAX_CONTENT_LENGTH=REQUEST_MAX_BYTES,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    """Markdown → HTML through the editor's conversion engine."""
    return Markup(render(text))


@app.template_filter("ts")
def ts_filter(iso: str | None) -> str:
    if not iso:
        return ""
    try:
        dt = datetime.fromisoformat(iso)
    except ValueError:
        return iso
    return dt.strftime("%b %d, %Y")


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.execute("PRAGMA foreign_keys = ON;")
        g.db.row_factory = sqlite3.Row
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(
        """
        ------------------------------------------------------------
        -- 1.  Accounts
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS user (
            id            INTEGER PRIMARY KEY,
            username      TEXT UNIQUE NOT NULL,
            email         TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            full_name     TEXT NOT NULL DEFAULT '',
            bio           TEXT NOT NULL DEFAULT '',
            avatar_url    TEXT,
            website       TEXT NOT NULL DEFAULT '',
            location      TEXT NOT NULL DEFAULT '',
            created_at    TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS follow (
            follower_id  INTEGER NOT NULL REFERENCES user(id) ON DELETE CASCADE,
            following_id INTEGER NOT NULL REFERENCES user(id) ON DELETE CASCADE,
            created_at   TEXT NOT NULL,
            PRIMARY KEY (follower_id, following_id),
            CHECK (follower_id <> following_id)
        );

        ------------------------------------------------------------
        -- 2.  Taxonomy
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS category (
            id          INTEGER PRIMARY KEY,
            name        TEXT UNIQUE NOT NULL,
            slug        TEXT UNIQUE NOT NULL,
            description TEXT NOT NULL DEFAULT ''
        );

        CREATE TABLE IF NOT EXISTS tag (
            id   INTEGER PRIMARY KEY,
            name TEXT UNIQUE NOT NULL,
            slug TEXT UNIQUE NOT NULL
        );

        ------------------------------------------------------------
        -- 3.  Posts
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS post (
            id                     INTEGER PRIMARY KEY,
            title                  TEXT NOT NULL,
            slug                   TEXT UNIQUE NOT NULL,
            content                TEXT NOT NULL DEFAULT '',
            excerpt                TEXT NOT NULL DEFAULT '',
            cover_image            TEXT,
            author_id              INTEGER NOT NULL REFERENCES user(id) ON DELETE CASCADE,
            status                 TEXT NOT NULL DEFAULT 'published'
                                   CHECK (status IN ('published','draft','scheduled')),
            scheduled_publish_date TEXT,
            published_at           TEXT,
            created_at             TEXT NOT NULL,
            updated_at             TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_post_status ON post(status, published_at);
        CREATE INDEX IF NOT EXISTS idx_post_author ON post(author_id);

        CREATE TABLE IF NOT EXISTS post_category (
            post_id     INTEGER NOT NULL REFERENCES post(id) ON DELETE CASCADE,
            category_id INTEGER NOT NULL REFERENCES category(id) ON DELETE CASCADE,
            PRIMARY KEY (post_id, category_id)
        );

        CREATE TABLE IF NOT EXISTS post_tag (
            post_id INTEGER NOT NULL REFERENCES post(id) ON DELETE CASCADE,
            tag_id  INTEGER NOT NULL REFERENCES tag(id) ON DELETE CASCADE,
            PRIMARY KEY (post_id, tag_id)
        );

        ------------------------------------------------------------
        -- 4.  Reactions
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS comment (
            id         INTEGER PRIMARY KEY,
            post_id    INTEGER NOT NULL REFERENCES post(id) ON DELETE CASCADE,
            author_id  INTEGER NOT NULL REFERENCES user(id) ON DELETE CASCADE,
            content    TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_comment_post ON comment(post_id);

        CREATE TABLE IF NOT EXISTS post_like (
            post_id    INTEGER NOT NULL REFERENCES post(id) ON DELETE CASCADE,
            user_id    INTEGER NOT NULL REFERENCES user(id) ON DELETE CASCADE,
            created_at TEXT NOT NULL,
            PRIMARY KEY (post_id, user_id)
        );

        CREATE TABLE IF NOT EXISTS bookmark (
            post_id    INTEGER NOT NULL REFERENCES post(id) ON DELETE CASCADE,
            user_id    INTEGER NOT NULL REFERENCES user(id) ON DELETE CASCADE,
            created_at TEXT NOT NULL,
            PRIMARY KEY (post_id, user_id)
        );
        """
    )
    seed_taxonomy(db=db)
    db.commit()


def seed_taxonomy(*, db) -> None:
    db.executemany(
        "INSERT OR IGNORE INTO category (name, slug, description) VALUES (?,?,?)",
        DEFAULT_CATEGORIES,
    )
    db.executemany("INSERT OR IGNORE INTO tag (name, slug) VALUES (?,?)", DEFAULT_TAGS)


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utc_now().isoformat(timespec="seconds")


def parse_schedule(value: str | None) -> datetime | None:
    """
    Parse the ``datetime-local`` form value.  Naive values are taken as UTC.
    Raises ``ValueError`` for garbage.
    """
    value = (value or "").strip()
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


###############################################################################
# Users
###############################################################################
def get_user(*, db, user_id=None, username=None, email=None):
    if user_id is not None:
        return db.execute("SELECT * FROM user WHERE id=?", (user_id,)).fetchone()
    if username is not None:
        return db.execute(
            "SELECT * FROM user WHERE username=? COLLATE NOCASE", (username,)
        ).fetchone()
    if email is not None:
        return db.execute(
            "SELECT * FROM user WHERE email=? COLLATE NOCASE", (email.strip(),)
        ).fetchone()
    return None


def validate_account(*, db, username: str, email: str, password: str | None,
                     user_id: int | None = None) -> list[str]:
    """Collect human-readable problems with a registration/profile form."""
    errors = []
    if not USERNAME_RE.match(username):
        errors.append(
            "Username must be 3–30 characters: letters, digits, '-' or '_'."
        )
    elif (u := get_user(db=db, username=username)) and u["id"] != user_id:
        errors.append("That username is already taken.")
    if "@" not in email or "." not in email.rsplit("@", 1)[-1]:
        errors.append("Please enter a valid email address.")
    elif (u := get_user(db=db, email=email)) and u["id"] != user_id:
        errors.append("An account with that email already exists.")
    if password is not None and len(password) < MIN_PASSWORD_LEN:
        errors.append(f"Password must be at least {MIN_PASSWORD_LEN} characters.")
    return errors


def create_user(*, db, username: str, email: str, password: str,
                full_name: str = "") -> int:
    cur = db.execute(
        "INSERT INTO user (username, email, password_hash, full_name, created_at)"
        " VALUES (?,?,?,?,?)",
        (
            username.strip(),
            email.strip().lower(),
            generate_password_hash(password),
            full_name.strip(),
            now_iso(),
        ),
    )
    db.commit()
    return cur.lastrowid


def authenticate(login: str, password: str, *, db):
    """Return the user row for *login* (email or username) + *password*."""
    login = (login or "").strip()
    user = get_user(db=db, email=login) if "@" in login else get_user(db=db, username=login)
    if user is None or not check_password_hash(user["password_hash"], password or ""):
        return None
    return user


def make_reset_token(user) -> str:
    """
    Signed ``<id>:<hash tail>``.  Changing the password changes the tail, so
    a link works once.
    """
    return reset_signer.sign(f"{user['id']}:{user['password_hash'][-16:]}").decode()


def user_for_reset_token(token: str, *, db, max_age: int = RESET_MAX_AGE):
    try:
        handle = reset_signer.unsign(token, max_age=max_age).decode()
    except SignatureExpired:
        return None
    except BadSignature:
        return None

    uid, _, tail = handle.partition(":")
    if not uid.isdigit():
        return None
    user = get_user(db=db, user_id=int(uid))
    if user is None or not secrets.compare_digest(user["password_hash"][-16:], tail):
        return None
    return user


def reset_link(user) -> str:
    return url_for("reset_password", token=make_reset_token(user), _external=True)


def set_password(user_id: int, password: str, *, db) -> None:
    db.execute(
        "UPDATE user SET password_hash=? WHERE id=?",
        (generate_password_hash(password), user_id),
    )
    db.commit()


def current_user():
    uid = session.get("user_id")
    if not session.get("logged_in") or uid is None:
        return None
    return get_user(db=get_db(), user_id=uid)


def follow_counts(user_id: int, *, db) -> tuple[int, int]:
    followers = db.execute(
        "SELECT COUNT(*) FROM follow WHERE following_id=?", (user_id,)
    ).fetchone()[0]
    following = db.execute(
        "SELECT COUNT(*) FROM follow WHERE follower_id=?", (user_id,)
    ).fetchone()[0]
    return followers, following


def is_following(follower_id: int, following_id: int, *, db) -> bool:
    return bool(
        db.execute(
            "SELECT 1 FROM follow WHERE follower_id=? AND following_id=?",
            (follower_id, following_id),
        ).fetchone()
    )


def toggle_follow(follower_id: int, following_id: int, *, db) -> bool:
    """Follow or unfollow; return ``True`` when now following."""
    if follower_id == following_id:
        raise ValueError("You cannot follow yourself.")
    if is_following(follower_id, following_id, db=db):
        db.execute(
            "DELETE FROM follow WHERE follower_id=? AND following_id=?",
            (follower_id, following_id),
        )
        db.commit()
        return False
    db.execute(
        "INSERT INTO follow (follower_id, following_id, created_at) VALUES (?,?,?)",
        (follower_id, following_id, now_iso()),
    )
    db.commit()
    return True


###############################################################################
# CLI
###############################################################################
@app.cli.command("init")
def cli_init():
    """Create the schema and seed the default categories and tags."""
    init_db()
    click.secho("\n✅  Database ready.", fg="green")
    click.echo(f"\n{app.config['DATABASE']}\n")


@app.cli.command("create-user")
@click.option("--username", prompt=True)
@click.option("--email", prompt=True)
@click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
@click.option("--full-name", default="")
def cli_create_user(username: str, email: str, password: str, full_name: str):
    """Create an account from the command line."""
    init_db()
    db = get_db()
    errors = validate_account(db=db, username=username.strip(), email=email.strip(),
                              password=password)
    if errors:
        raise click.ClickException(" ".join(errors))
    uid = create_user(db=db, username=username, email=email, password=password,
                      full_name=full_name)
    click.secho(f"\n✅  User #{uid} ({username}) created.", fg="green")


@app.cli.command("reset-link")
@click.option("--email", prompt=True)
@click.option("--base-url", default="http://localhost:5000", show_default=True)
def cli_reset_link(email: str, base_url: str):
    """Print a one-hour password-reset link for *email*."""
    with app.test_request_context(base_url=base_url):
        user = get_user(db=get_db(), email=email)
        if user is None:
            raise click.ClickException(f"No account for {email}.")
        click.secho("\n🔑  Reset link (valid for 1 hour):\n", fg="yellow")
        click.echo(f"{reset_link(user)}\n")


###############################################################################
# Posts, taxonomy & reactions
###############################################################################
POST_SELECT = """
    SELECT p.*,
           u.username   AS author_username,
           u.full_name  AS author_name,
           u.avatar_url AS author_avatar,
           (SELECT COUNT(*) FROM post_like l WHERE l.post_id = p.id) AS like_count,
           (SELECT COUNT(*) FROM comment c   WHERE c.post_id = p.id) AS comment_count
      FROM post p
      JOIN user u ON u.id = p.author_id
"""


def generate_slug(title: str) -> str:
    text = unicodedata.normalize("NFKD", title or "").encode("ascii", "ignore").decode()
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:80].rstrip("-") or "post"


def unique_slug(base: str, *, db, post_id: int | None = None) -> str:
    """``base``, ``base-2``, ``base-3`` … whichever is free (ignoring *post_id*)."""
    slug, n = base, 1
    while True:
        row = db.execute("SELECT id FROM post WHERE slug=?", (slug,)).fetchone()
        if row is None or row["id"] == post_id:
            return slug
        n += 1
        slug = f"{base}-{n}"


def default_excerpt(title: str) -> str:
    return title[:EXCERPT_LEN] + "..."


def paginate(base_sql: str, params: tuple, *, page: int, per_page: int, db):
    total = db.execute(f"SELECT COUNT(*) FROM ({base_sql})", params).fetchone()[0]
    pages = (total + per_page - 1) // per_page
    rows = db.execute(
        f"{base_sql} LIMIT ? OFFSET ?", params + (per_page, (page - 1) * per_page)
    ).fetchall()
    return rows, pages


def promote_scheduled(*, db) -> int:
    """Publish every scheduled post whose date has passed."""
    now = now_iso()
    cur = db.execute(
        "UPDATE post SET status='published', published_at=scheduled_publish_date"
        " WHERE status='scheduled' AND scheduled_publish_date <= ?",
        (now,),
    )
    if cur.rowcount:
        db.commit()
        app.logger.info("Published %d scheduled post(s)", cur.rowcount)
    return cur.rowcount


def _like_escape(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def query_posts(*, db, page: int = 1, per_page: int = PER_PAGE,
                category: str | None = None, tag: str | None = None,
                search: str | None = None, author_id: int | None = None,
                statuses: tuple[str, ...] = ("published",)):
    where = [f"p.status IN ({','.join('?' * len(statuses))})"]
    params: list = list(statuses)
    if category:
        where.append(
            "EXISTS (SELECT 1 FROM post_category pc JOIN category c ON c.id = pc.category_id"
            " WHERE pc.post_id = p.id AND c.slug = ?)"
        )
        params.append(category)
    if tag:
        where.append(
            "EXISTS (SELECT 1 FROM post_tag pt JOIN tag t ON t.id = pt.tag_id"
            " WHERE pt.post_id = p.id AND t.slug = ?)"
        )
        params.append(tag)
    if search:
        like = f"%{_like_escape(search.strip())}%"
        where.append(
            "(p.title LIKE ? ESCAPE '\\' OR p.content LIKE ? ESCAPE '\\'"
            " OR p.excerpt LIKE ? ESCAPE '\\')"
        )
        params += [like, like, like]
    if author_id is not None:
        where.append("p.author_id = ?")
        params.append(author_id)

    sql = (
        POST_SELECT
        + " WHERE " + " AND ".join(where)
        + " ORDER BY COALESCE(p.published_at, p.created_at) DESC, p.id DESC"
    )
    return paginate(sql, tuple(params), page=page, per_page=per_page, db=db)


def get_post(slug: str, *, db):
    return db.execute(POST_SELECT + " WHERE p.slug = ?", (slug,)).fetchone()


def post_categories(post_id: int, *, db):
    return db.execute(
        "SELECT c.* FROM category c JOIN post_category pc ON pc.category_id = c.id"
        " WHERE pc.post_id = ? ORDER BY c.name",
        (post_id,),
    ).fetchall()


def post_tags(post_id: int, *, db):
    return db.execute(
        "SELECT t.* FROM tag t JOIN post_tag pt ON pt.tag_id = t.id"
        " WHERE pt.post_id = ? ORDER BY t.name",
        (post_id,),
    ).fetchall()


def sync_terms(post_id: int, ids: list[int], *, table: str, db) -> None:
    """Replace the post's rows in ``post_category`` / ``post_tag``."""
    column = {"post_category": "category_id", "post_tag": "tag_id"}[table]
    ref = {"post_category": "category", "post_tag": "tag"}[table]
    db.execute(f"DELETE FROM {table} WHERE post_id=?", (post_id,))
    for term_id in ids:
        if db.execute(f"SELECT 1 FROM {ref} WHERE id=?", (term_id,)).fetchone():
            db.execute(
                f"INSERT OR IGNORE INTO {table} (post_id, {column}) VALUES (?,?)",
                (post_id, term_id),
            )


def save_post(data: dict, *, db, author_id: int, post=None) -> str:
    """Insert or update a post from cleaned form *data*; return its slug."""
    now = now_iso()
    base = generate_slug(data["title"])
    if post is not None and post["title"] == data["title"]:
        slug = post["slug"]
    else:
        slug = unique_slug(base, db=db, post_id=post["id"] if post else None)

    scheduled = data["scheduled"].isoformat(timespec="seconds") if data["scheduled"] else None
    published_at = None
    if data["status"] == "published":
        published_at = (post["published_at"] if post and post["published_at"] else now)

    fields = (
        data["title"],
        slug,
        data["content"],
        data["excerpt"] or default_excerpt(data["title"]),
        data["cover_image"],
        data["status"],
        scheduled,
        published_at,
    )
    if post is None:
        cur = db.execute(
            """INSERT INTO post (title, slug, content, excerpt, cover_image, status,
                                 scheduled_publish_date, published_at, author_id,
                                 created_at, updated_at)
               VALUES (?,?,?,?,?,?,?,?,?,?,?)""",
            fields + (author_id, now, now),
        )
        post_id = cur.lastrowid
    else:
        post_id = post["id"]
        db.execute(
            """UPDATE post SET title=?, slug=?, content=?, excerpt=?, cover_image=?,
                               status=?, scheduled_publish_date=?, published_at=?,
                               updated_at=?
                WHERE id=?""",
            fields + (now, post_id),
        )

    sync_terms(post_id, data["categories"], table="post_category", db=db)
    sync_terms(post_id, data["tags"], table="post_tag", db=db)
    db.commit()
    return slug


def delete_post(post_id: int, *, db) -> None:
    # comments, likes, bookmarks and term links go with it (ON DELETE CASCADE)
    db.execute("DELETE FROM post WHERE id=?", (post_id,))
    db.commit()


def toggle_reaction(table: str, post_id: int, user_id: int, *, db) -> bool:
    """Flip a like/bookmark; return ``True`` when it is now set."""
    if table not in ("post_like", "bookmark"):
        raise ValueError(table)
    row = db.execute(
        f"SELECT 1 FROM {table} WHERE post_id=? AND user_id=?", (post_id, user_id)
    ).fetchone()
    if row:
        db.execute(f"DELETE FROM {table} WHERE post_id=? AND user_id=?", (post_id, user_id))
    else:
        db.execute(
            f"INSERT INTO {table} (post_id, user_id, created_at) VALUES (?,?,?)",
            (post_id, user_id, now_iso()),
        )
    db.commit()
    return not row


def has_reaction(table: str, post_id: int, user_id: int | None, *, db) -> bool:
    if user_id is None or table not in ("post_like", "bookmark"):
        return False
    return bool(
        db.execute(
            f"SELECT 1 FROM {table} WHERE post_id=? AND user_id=?", (post_id, user_id)
        ).fetchone()
    )


def bookmarked_posts(user_id: int, *, db):
    return db.execute(
        POST_SELECT
        + " JOIN bookmark b ON b.post_id = p.id"
        " WHERE b.user_id = ? AND p.status = 'published'"
        " ORDER BY b.created_at DESC",
        (user_id,),
    ).fetchall()


def post_visible(post, user) -> bool:
    return post["status"] == "published" or (
        user is not None and post["author_id"] == user["id"]
    )


def page_arg(name: str = "page") -> int:
    return max(request.args.get(name, 1, type=int) or 1, 1)


def page_url(page: int, name: str = "page") -> str:
    """Current URL with ``?page=`` swapped, other filters kept."""
    args = request.args.to_dict()
    args[name] = page
    return url_for(request.endpoint, **(request.view_args or {}), **args)


###############################################################################
# Image storage
###############################################################################
def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def r2_config() -> dict[str, str]:
    env_file = _read_env_file()
    cfg = {k: (os.environ.get(k) or env_file.get(k) or "").strip() for k in R2_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def r2_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg or r2_config()
    return all(cfg.get(k) for k in R2_REQUIRED_KEYS)


def _r2_client(cfg: dict[str, str]):
    endpoint = (
        cfg.get("R2_ENDPOINT")
        or f"https://{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com"
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        region_name="auto",
        aws_access_key_id=cfg["R2_ACCESS_KEY_ID"],
        aws_secret_access_key=cfg["R2_SECRET_ACCESS_KEY"],
    )


def r2_object_url(cfg: dict[str, str], key: str) -> str:
    base = cfg.get("R2_PUBLIC_BASE")
    if base:
        base = base.rstrip("/")
        return f"{base}/{key.lstrip('/')}"
    return f"https://{cfg['R2_BUCKET']}.{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com/{key.lstrip('/')}"


def store_payload(result: IngestResult, *, folder: str = "content") -> str:
    """
    Upload an ingested image to R2 and return its URL.  Without R2 (or when
    the upload fails) the inline data URI is kept.
    """
    cfg = r2_config()
    if result.placeholder or not r2_is_configured(cfg):
        return result.payload

    ext = IMAGE_EXTS.get(result.mimetype, ".png")
    key = f"{folder}/{utc_now().strftime('%Y/%m/%d')}/{uuid.uuid4().hex}{ext}"
    try:
        _r2_client(cfg).upload_fileobj(
            io.BytesIO(result.data),
            cfg["R2_BUCKET"],
            key,
            ExtraArgs={"ContentType": result.mimetype},
        )
    except (BotoCoreError, ClientError):
        app.logger.exception("R2 upload failed, keeping the inline image")
        return result.payload
    return r2_object_url(cfg, key)


def ingest_and_store(file: ImageFile, *, placeholder: str = PLACEHOLDER_COVER,
                     folder: str = "content") -> IngestResult:
    result = ingest(file, placeholder=placeholder)
    if result.placeholder:
        app.logger.warning("Image %r fell back to the placeholder: %s",
                           file.filename, result.error)
        return result
    result.payload = store_payload(result, folder=folder)
    return result


def _clean_payload(value: str) -> str | None:
    """Accept a payload sent back by the upload widget, drop anything else."""
    value = (value or "").strip()
    if not value or len(value) > MAX_PAYLOAD_BYTES:
        return None
    if value.startswith(("data:image/", "http://", "https://", "/")):
        return value
    return None


def image_field(name: str, current: str | None, *, placeholder: str, folder: str):
    """
    Resolve an image form field: removal flag, a plain file upload (no JS),
    or the payload the upload widget already produced.
    """
    if request.form.get(f"remove_{name}"):
        return None

    upload = request.files.get(f"{name}_file")
    if upload and upload.filename:
        picked = {"payload": current}
        uploader = ImageUploader(
            on_image_select=lambda payload: picked.update(payload=payload),
            initial_image=current,
            placeholder=placeholder,
            ingest_fn=lambda f, placeholder: ingest_and_store(
                f, placeholder=placeholder, folder=folder
            ),
        )
        uploader.handle_file(ImageFile.from_storage(upload))
        if uploader.error:
            flash(uploader.error)
        return picked["payload"]

    return _clean_payload(request.form.get(name, "")) or current


def _csrf_token() -> str:
    """One token per session (rotates when the cookie does)."""
    return session.get("csrf", "")


# Expose helpers to templates
app.jinja_env.globals.update(
    csrf_token=_csrf_token,
    current_user=current_user,
    image_url=image_url,
    page_url=page_url,
    site_name=SITE_NAME,
    version=__version__,
    statuses=STATUSES,
    placeholder_cover=PLACEHOLDER_COVER,
    placeholder_profile=PLACEHOLDER_PROFILE,
    max_upload_bytes=MAX_UPLOAD_BYTES,
)
app.jinja_env.globals["post_categories"] = lambda pid: post_categories(pid, db=get_db())
app.jinja_env.globals["post_tags"] = lambda pid: post_tags(pid, db=get_db())
app.jinja_env.globals["all_categories"] = lambda: get_db().execute(
    "SELECT * FROM category ORDER BY name"
).fetchall()


###############################################################################
# Templates + Views
###############################################################################


def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title ~ ' · ' if title }}{{ site_name }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<meta name="description" content="{{ site_name }} – write, share, discuss">
<style>
html{font-size:62.5%;font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,sans-serif}body{font-size:1.7rem;line-height:1.6;color:#1f2937;background:#f9fafb;margin:0}a{color:#4f46e5;text-decoration:none}a:hover{text-decoration:underline}h1,h2,h3{line-height:1.2;color:#111827}hr{border:0;border-top:1px solid #e5e7eb;margin:2rem 0}
.container{max-width:72rem;margin:0 auto;padding:0 1.6rem}
.site-nav{background:#fff;border-bottom:1px solid #e5e7eb;margin-bottom:2.4rem}.site-nav .container{display:flex;align-items:center;gap:1.6rem;flex-wrap:wrap;min-height:5.6rem}.site-nav .brand{font-weight:800;font-size:2rem;color:#111827}.site-nav .grow{flex:1}.site-nav form{margin:0}.site-nav input{width:16rem}
input,textarea,select{font:inherit;font-size:1.5rem;padding:.6rem 1rem;border:1px solid #d1d5db;border-radius:.6rem;background:#fff;color:inherit;box-sizing:border-box}textarea{width:100%}input:focus,textarea:focus,select:focus{outline:2px solid #c7d2fe;border-color:#6366f1}
label{display:block;font-weight:600;margin:1.2rem 0 .4rem}.field input[type=text],.field input[type=email],.field input[type=password],.field input[type=url]{width:100%}
button,.button{font:inherit;font-size:1.5rem;display:inline-block;padding:.6rem 1.4rem;border-radius:.6rem;border:1px solid #4f46e5;background:#4f46e5;color:#fff;cursor:pointer}button.ghost,.button.ghost{background:#fff;color:#4f46e5}button.danger{background:#dc2626;border-color:#dc2626}
.toast{position:fixed;top:1rem;right:1rem;background:#111827;color:#fff;padding:.9rem 1.2rem;border-radius:.6rem;font-size:1.4rem;max-width:32rem;z-index:999}
.cards{display:grid;gap:2rem;grid-template-columns:repeat(auto-fill,minmax(28rem,1fr))}.card{background:#fff;border:1px solid #e5e7eb;border-radius:1rem;overflow:hidden;display:flex;flex-direction:column}.card img.cover{width:100%;height:16rem;object-fit:cover;background:#eef2ff}.card .body{padding:1.4rem;flex:1}.card h3{margin:.4rem 0 .8rem;font-size:1.9rem}.meta{color:#6b7280;font-size:1.3rem}.pill{display:inline-block;padding:.1rem .8rem;border-radius:1rem;background:#eef2ff;color:#4338ca;font-size:1.2rem;margin:0 .3rem .3rem 0}.pill.tag{background:#f3f4f6;color:#374151}.status{text-transform:uppercase;font-size:1.1rem;letter-spacing:.05em;color:#b45309}
.avatar{width:3.2rem;height:3.2rem;border-radius:50%;object-fit:cover;vertical-align:middle;background:#e5e7eb}.avatar.lg{width:9.6rem;height:9.6rem}
.pager{display:flex;gap:.6rem;justify-content:center;margin:2.4rem 0}.pager a,.pager span{padding:.3rem .9rem;border:1px solid #e5e7eb;border-radius:.4rem}.pager span{background:#4f46e5;color:#fff}
.post-cover{width:100%;max-height:42rem;object-fit:cover;border-radius:1rem}.post-body{background:#fff;border:1px solid #e5e7eb;border-radius:1rem;padding:2.4rem;margin:2rem 0}
.md-h1{font-size:2.6rem}.md-h2{font-size:2.2rem}.md-h3{font-size:1.9rem}.md-quote{display:block;border-left:4px solid #c7d2fe;padding:.4rem 1.2rem;color:#4b5563;margin:.8rem 0}.md-pre{background:#111827;color:#f9fafb;padding:1.2rem;border-radius:.6rem;overflow-x:auto}.md-code{background:#f3f4f6;padding:0 .4rem;border-radius:.3rem}.md-ul,.md-ol{margin:.2rem 0}
.editor{border:1px solid #d1d5db;border-radius:.8rem;background:#fff}.editor-tabs{display:flex;border-bottom:1px solid #e5e7eb}.editor-tabs button{background:none;border:0;color:#6b7280;border-radius:0;padding:.8rem 1.6rem}.editor-tabs button[aria-pressed=true]{color:#4f46e5;border-bottom:2px solid #4f46e5}.editor-toolbar{display:flex;flex-wrap:wrap;gap:.3rem;padding:.6rem;border-bottom:1px solid #e5e7eb;background:#f9fafb}.editor-toolbar button{background:#fff;color:#374151;border:1px solid #e5e7eb;padding:.2rem .8rem;font-size:1.4rem}.editor textarea{border:0;border-radius:0 0 .8rem .8rem;min-height:32rem;font-family:ui-monospace,SFMono-Regular,Menlo,monospace;font-size:1.4rem}.editor-preview{padding:1.6rem;min-height:32rem}.editor-status,.img-status{color:#6b7280;font-size:1.3rem;min-height:1.8rem;margin:.4rem 0}
.image-field img{max-width:100%;max-height:24rem;border-radius:.6rem;display:block;margin-bottom:.6rem}.comment{border-top:1px solid #e5e7eb;padding:1.2rem 0}.inline{display:inline}
</style>
<body>
<nav class="site-nav" aria-label="Primary">
  <div class="container">
    <a class="brand" href="{{ url_for('index') }}">{{ site_name }}</a>
    <a href="{{ url_for('blogs') }}">Blogs</a>
    {% for c in all_categories() %}
      <a href="{{ url_for('category', slug=c['slug']) }}">{{ c['name'] }}</a>
    {% endfor %}
    <span class="grow"></span>
    <form action="{{ url_for('blogs') }}" method="get">
      <input type="search" name="q" placeholder="Search" aria-label="Search posts"
             value="{{ request.args.get('q','') }}">
    </form>
    {% set me = current_user() %}
    {% if me %}
      <a href="{{ url_for('create_post') }}">Write</a>
      <a href="{{ url_for('profile', username=me['username']) }}">
        <img class="avatar" src="{{ image_url(me['avatar_url'], placeholder_profile) }}" alt="">
      </a>
      <a href="{{ url_for('logout') }}">Log out</a>
    {% else %}
      <a href="{{ url_for('login') }}">Log in</a>
      <a class="button" href="{{ url_for('register') }}">Sign up</a>
    {% endif %}
  </div>
</nav>
{% with msgs = get_flashed_messages() %}
{% if msgs %}
  <div class="toast" role="status" aria-live="polite">{{ msgs|join('<br>'|safe) }}</div>
{% endif %}
{% endwith %}
<main class="container" id="main-content">
{% macro post_card(p) -%}
  <article class="card">
    <a href="{{ url_for('post_detail', slug=p['slug']) }}">
      <img class="cover" src="{{ image_url(p['cover_image'], placeholder_cover) }}" alt="">
    </a>
    <div class="body">
      {% for c in post_categories(p['id']) %}
        <a class="pill" href="{{ url_for('category', slug=c['slug']) }}">{{ c['name'] }}</a>
      {% endfor %}
      {% if p['status'] != 'published' %}<span class="status">{{ p['status'] }}</span>{% endif %}
      <h3><a href="{{ url_for('post_detail', slug=p['slug']) }}">{{ p['title'] }}</a></h3>
      <p>{{ p['excerpt'] }}</p>
      <div class="meta">
        <a href="{{ url_for('profile', username=p['author_username']) }}">{{ p['author_name'] or p['author_username'] }}</a>
        · {{ (p['published_at'] or p['created_at'])|ts }}
        · ♥ {{ p['like_count'] }} · 💬 {{ p['comment_count'] }}
      </div>
    </div>
  </article>
{%- endmacro %}
{% macro pager(page, pages, name='page') -%}
  {% if pages > 1 %}
  <nav class="pager" aria-label="Pagination">
    {% if page > 1 %}<a href="{{ page_url(page - 1, name) }}">‹ Prev</a>{% endif %}
    {% for n in range(1, pages + 1) %}
      {% if n == page %}<span>{{ n }}</span>{% else %}<a href="{{ page_url(n, name) }}">{{ n }}</a>{% endif %}
    {% endfor %}
    {% if page < pages %}<a href="{{ page_url(page + 1, name) }}">Next ›</a>{% endif %}
  </nav>
  {% endif %}
{%- endmacro %}
{% macro image_input(name, label, current, placeholder, field, pending=None) -%}
  {% set shown = pending or current %}
  <div class="image-field" data-image-field="{{ field }}">
    <label for="{{ name }}_file">{{ label }}</label>
    <img src="{{ image_url(shown, placeholder) }}" alt="" {% if not shown %}hidden{% endif %}>
    <input type="hidden" name="{{ name }}" value="{{ pending or '' }}">
    <input type="file" id="{{ name }}_file" name="{{ name }}_file" accept="image/*">
    {% if current %}
    <label style="font-weight:normal"><input type="checkbox" class="img-remove-flag" name="remove_{{ name }}" value="1"> Remove image</label>
    {% endif %}
    <p class="img-status" aria-live="polite"></p>
  </div>
{%- endmacro %}
"""

TEMPL_EPILOG = """
</main>
<footer class="container meta" style="margin:4rem auto 2rem;border-top:1px solid #e5e7eb;padding-top:1.2rem;">
  {{ site_name }} · v{{ version }}
</footer>
{% if session.get('logged_in') %}
<script>
(() => {
    const csrf = document.querySelector('input[name="csrf"]')?.value || '';
    const raf = window.requestAnimationFrame || ((fn) => setTimeout(fn, 16));
    const MAX_UPLOAD = {{ max_upload_bytes }};

    const readJSON = async (res) => {
        const data = await res.json().catch(() => ({}));
        return {ok: res.ok, status: res.status, data};
    };
    const postJSON = (url, body) => fetch(url, {
        method: 'POST',
        headers: {'Content-Type': 'application/json', 'X-CSRFToken': csrf},
        body: JSON.stringify(body),
    }).then(readJSON);
    const uploadImage = (file, field) => {
        const fd = new FormData();
        fd.append('file', file);
        fd.append('field', field);
        return fetch('{{ url_for("upload_image") }}', {
            method: 'POST',
            headers: {'X-CSRFToken': csrf},
            body: fd,
        }).then(readJSON);
    };
    const precheck = (file) => {
        if (!file.type || !file.type.startsWith('image/')) {
            return 'Please select an image file (PNG, JPG, JPEG, GIF)';
        }
        if (file.size > MAX_UPLOAD) {
            return 'Image size should be less than 2MB for better compatibility';
        }
        return '';
    };

    document.querySelectorAll('[data-editor]').forEach((box) => {
        const ta = box.querySelector('textarea');
        const toolbar = box.querySelector('.editor-toolbar');
        const pane = box.querySelector('.editor-preview');
        const status = box.querySelector('.editor-status');
        const picker = box.querySelector('.img-upload-input');
        const say = (msg) => { if (status) status.textContent = msg || ''; };

        async function run(op, extra = {}) {
            const {ok, data} = await postJSON('{{ url_for("editor_apply") }}', {
                content: ta.value,
                start: ta.selectionStart,
                end: ta.selectionEnd,
                op,
                ...extra,
            });
            if (!ok) {
                say(data.error || 'Formatting failed.');
                return;
            }
            ta.value = data.content;
            ta.dispatchEvent(new Event('input'));
            // restore the range only once the new value has been painted
            raf(() => {
                ta.focus();
                ta.setSelectionRange(data.selection[0], data.selection[1]);
            });
        }

        toolbar.querySelectorAll('[data-op]').forEach((btn) => {
            btn.addEventListener('click', () => {
                const extra = btn.dataset.level ? {level: Number(btn.dataset.level)} : {};
                run(btn.dataset.op, extra);
            });
        });

        ta.addEventListener('keydown', (ev) => {
            if (!(ev.ctrlKey || ev.metaKey)) return;
            const op = {b: 'bold', i: 'italic', k: 'link'}[ev.key.toLowerCase()];
            if (!op) return;
            ev.preventDefault();
            run(op);
        });

        async function insertImages(files) {
            for (const file of files) {
                const problem = precheck(file);
                if (problem) {
                    say(problem);
                    return;
                }
                say(`Processing ${file.name}...`);
                const {data} = await uploadImage(file, 'content');
                if (!data.url) {
                    say(data.error || 'Upload failed.');
                    return;
                }
                const alt = (file.name || 'Image').replace(/\\.[^.]+$/, '') || 'Image';
                await run('image', {src: data.url, alt});
                say(data.error || 'Image inserted.');
            }
        }

        box.querySelector('.img-upload-btn')?.addEventListener('click', () => picker?.click());
        picker?.addEventListener('change', async () => {
            const files = [...(picker.files || [])];
            picker.value = '';
            if (files.length) await insertImages(files);
        });
        ta.addEventListener('dragover', (ev) => ev.preventDefault());
        ta.addEventListener('drop', async (ev) => {
            if (!ev.dataTransfer?.files?.length) return;
            ev.preventDefault();
            await insertImages([...ev.dataTransfer.files]);
        });

        box.querySelectorAll('[data-tab]').forEach((tab) => {
            tab.addEventListener('click', async () => {
                const preview = tab.dataset.tab === 'preview';
                box.querySelectorAll('[data-tab]').forEach(
                    (t) => t.setAttribute('aria-pressed', String(t === tab)));
                if (preview) {
                    const {ok, data} = await postJSON('{{ url_for("editor_preview") }}', {content: ta.value});
                    pane.innerHTML = ok ? data.html : '';
                }
                pane.hidden = !preview;
                ta.hidden = preview;
                toolbar.hidden = preview;
            });
        });
    });

    document.querySelectorAll('[data-image-field]').forEach((box) => {
        const field = box.dataset.imageField;
        const input = box.querySelector('input[type=file]');
        const hidden = box.querySelector('input[type=hidden]');
        const img = box.querySelector('img');
        const removeFlag = box.querySelector('.img-remove-flag');
        const status = box.querySelector('.img-status');
        let latest = 0;  // only the newest pick may touch the field

        async function handle(file) {
            const ticket = ++latest;
            const problem = precheck(file);
            if (problem) {
                status.textContent = problem;
                return;
            }
            status.textContent = 'Processing...';
            const {data} = await uploadImage(file, field);
            if (ticket !== latest) return;
            status.textContent = data.error || '';
            if (!data.url) return;
            hidden.value = data.url;
            if (removeFlag) removeFlag.checked = false;
            img.src = data.url;
            img.hidden = false;
        }

        input.addEventListener('change', async () => {
            const file = input.files?.[0];
            input.value = '';
            if (file) await handle(file);
        });
        box.addEventListener('dragover', (ev) => ev.preventDefault());
        box.addEventListener('drop', async (ev) => {
            const file = ev.dataTransfer?.files?.[0];
            if (!file) return;
            ev.preventDefault();
            await handle(file);
        });
        removeFlag?.addEventListener('change', () => {
            if (!removeFlag.checked) return;
            latest++;
            hidden.value = '';
            img.hidden = true;
            status.textContent = '';
        });
    });
})();
</script>
{% endif %}
</body>
</html>
"""


###############################################################################
# Authentication
###############################################################################
def login_required():
    user = current_user()
    if user is None:
        abort(403)
    return user


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


def _start_session(user_id: int) -> None:
    session.clear()
    session.permanent = True
    session["logged_in"] = True
    session["user_id"] = user_id
    session["csrf"] = secrets.token_hex(16)


def _safe_next(target: str | None) -> str:
    if target and target.startswith("/") and not target.startswith("//"):
        return target
    return url_for("index")


@app.route("/register", methods=["GET", "POST"])
@rate_limit(max_requests=10, window=60)
def register():
    if current_user():
        return redirect(url_for("index"))

    form = {k: request.form.get(k, "").strip() for k in ("username", "email", "full_name")}
    if request.method == "POST":
        db = get_db()
        password = request.form.get("password", "")
        errors = validate_account(
            db=db, username=form["username"], email=form["email"], password=password
        )
        if password != request.form.get("confirm_password", password):
            errors.append("Passwords do not match.")
        if not errors:
            uid = create_user(db=db, password=password, **form)
            app.logger.info("New account %s (#%d)", form["username"], uid)
            _start_session(uid)
            flash("Welcome aboard!")
            return redirect(url_for("index"))
        for e in errors:
            flash(e)

    return render_template_string(TEMPL_REGISTER, title="Sign up", form=form)


TEMPL_REGISTER = wrap("""
{% block body %}
<h1>Create an account</h1>
<form method="post" style="max-width:42rem">
  <div class="field"><label for="username">Username</label>
    <input id="username" name="username" type="text" required value="{{ form.username }}"></div>
  <div class="field"><label for="full_name">Full name</label>
    <input id="full_name" name="full_name" type="text" value="{{ form.full_name }}"></div>
  <div class="field"><label for="email">Email</label>
    <input id="email" name="email" type="email" required value="{{ form.email }}"></div>
  <div class="field"><label for="password">Password</label>
    <input id="password" name="password" type="password" required minlength="6" autocomplete="new-password"></div>
  <div class="field"><label for="confirm_password">Confirm password</label>
    <input id="confirm_password" name="confirm_password" type="password" required autocomplete="new-password"></div>
  <p><button type="submit">Sign up</button></p>
  <p class="meta">Already have an account? <a href="{{ url_for('login') }}">Log in</a></p>
</form>
{% endblock %}
""")


@app.route("/login", methods=["GET", "POST"])
@rate_limit(max_requests=10, window=60)
def login():
    login_value = request.form.get("email", "").strip()
    if request.method == "POST":
        user = authenticate(login_value, request.form.get("password", ""), db=get_db())
        if user is not None:
            _start_session(user["id"])
            return redirect(_safe_next(request.args.get("next")))
        flash("Invalid email or password.")

    return render_template_string(TEMPL_LOGIN, title="Log in", login_value=login_value)


TEMPL_LOGIN = wrap("""
{% block body %}
<h1>Log in</h1>
<form method="post" style="max-width:42rem">
  <div class="field"><label for="email">Email or username</label>
    <input id="email" name="email" type="text" required autocomplete="username" value="{{ login_value }}"></div>
  <div class="field"><label for="password">Password</label>
    <input id="password" name="password" type="password" required autocomplete="current-password"></div>
  <p><button type="submit">Log in</button>
     <a style="margin-left:1rem" href="{{ url_for('forgot_password') }}">Forgot password?</a></p>
  <p class="meta">New here? <a href="{{ url_for('register') }}">Create an account</a></p>
</form>
{% endblock %}
""")


@app.route("/logout")
def logout():
    session.clear()
    return redirect(url_for("index"))


@app.route("/forgot-password", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def forgot_password():
    if request.method == "POST":
        email = request.form.get("email", "").strip()
        user = get_user(db=get_db(), email=email) if email else None
        if user is not None:
            # no mailer: the operator relays the link
            app.logger.info("Password reset link for %s: %s", user["email"], reset_link(user))
        flash("If an account exists for that email, a reset link has been sent.")
        return redirect(url_for("login"))

    return render_template_string(TEMPL_FORGOT, title="Forgot password")


TEMPL_FORGOT = wrap("""
{% block body %}
<h1>Reset your password</h1>
<form method="post" style="max-width:42rem">
  <div class="field"><label for="email">Email</label>
    <input id="email" name="email" type="email" required></div>
  <p><button type="submit">Send reset link</button></p>
</form>
{% endblock %}
""")


@app.route("/reset-password/<token>", methods=["GET", "POST"])
@rate_limit(max_requests=10, window=60)
def reset_password(token):
    db = get_db()
    user = user_for_reset_token(token, db=db)
    if user is None:
        flash("That reset link is invalid or has expired.")
        return redirect(url_for("forgot_password"))

    if request.method == "POST":
        password = request.form.get("password", "")
        if len(password) < MIN_PASSWORD_LEN:
            flash(f"Password must be at least {MIN_PASSWORD_LEN} characters.")
        elif password != request.form.get("confirm_password", ""):
            flash("Passwords do not match.")
        else:
            set_password(user["id"], password, db=db)
            flash("Password updated. You can log in now.")
            return redirect(url_for("login"))

    return render_template_string(TEMPL_RESET, title="New password")


TEMPL_RESET = wrap("""
{% block body %}
<h1>Choose a new password</h1>
<form method="post" style="max-width:42rem">
  <div class="field"><label for="password">New password</label>
    <input id="password" name="password" type="password" required minlength="6" autocomplete="new-password"></div>
  <div class="field"><label for="confirm_password">Confirm password</label>
    <input id="confirm_password" name="confirm_password" type="password" required autocomplete="new-password"></div>
  <p><button type="submit">Update password</button></p>
</form>
{% endblock %}
""")


###############################################################################
# CSRF + security headers
###############################################################################
SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@app.before_request
def csrf_protect():
    # ➊ read-only verbs ⇒ always allowed
    if request.method in SAFE_METHODS:
        return

    # ➋ anonymous ⇒ allow (covers /login and /register POST)
    if not session.get("logged_in"):
        return

    # ➌ for authenticated users we REQUIRE a valid token
    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Permissions-Policy": "interest-cohort=()",
        }
    )
    return resp


###############################################################################
# Listings
###############################################################################
def _listing(template: str, *, heading: str, **filters):
    db = get_db()
    promote_scheduled(db=db)
    page = page_arg()
    posts, pages = query_posts(db=db, page=page, **filters)
    if page > 1 and page > pages:
        abort(404)
    return render_template_string(
        template,
        title=heading,
        heading=heading,
        posts=posts,
        page=page,
        pages=pages,
        filters=filters,
    )


TEMPL_LIST = wrap("""
{% block body %}
<h1>{{ heading }}</h1>
{% if filters.get('search') %}
  <p class="meta">Results for “{{ filters['search'] }}”</p>
{% endif %}
{% if posts %}
  <div class="cards">
    {% for p in posts %}{{ post_card(p) }}{% endfor %}
  </div>
  {{ pager(page, pages) }}
{% else %}
  <p>No posts yet.</p>
{% endif %}
{% endblock %}
""")


@app.route("/")
def index():
    return _listing(TEMPL_LIST, heading="Latest posts")


@app.route("/blogs")
def blogs():
    author_id = None
    if author := request.args.get("author", "").strip():
        user = get_user(db=get_db(), username=author)
        if user is None:
            abort(404)
        author_id = user["id"]
    search = request.args.get("q", "").strip() or None
    return _listing(
        TEMPL_LIST,
        heading="Search" if search else "All posts",
        category=request.args.get("category") or None,
        tag=request.args.get("tag") or None,
        search=search,
        author_id=author_id,
    )


@app.route("/category/<slug>")
def category(slug):
    row = get_db().execute("SELECT * FROM category WHERE slug=?", (slug,)).fetchone()
    if row is None:
        abort(404)
    return _listing(TEMPL_LIST, heading=row["name"], category=slug)


@app.route("/tag/<slug>")
def tag(slug):
    row = get_db().execute("SELECT * FROM tag WHERE slug=?", (slug,)).fetchone()
    if row is None:
        abort(404)
    return _listing(TEMPL_LIST, heading=f"#{row['name']}", tag=slug)


###############################################################################
# Post detail + reactions
###############################################################################
def _visible_post_or_404(slug: str):
    db = get_db()
    promote_scheduled(db=db)
    post = get_post(slug, db=db)
    if post is None or not post_visible(post, current_user()):
        abort(404)
    return post


@app.route("/blogs/<slug>")
def post_detail(slug):
    db = get_db()
    post = _visible_post_or_404(slug)
    me = current_user()
    uid = me["id"] if me else None

    cpage = page_arg("cpage")
    comments, cpages = paginate(
        """SELECT c.*, u.username, u.full_name, u.avatar_url
             FROM comment c JOIN user u ON u.id = c.author_id
            WHERE c.post_id = ?
            ORDER BY c.created_at DESC, c.id DESC""",
        (post["id"],),
        page=cpage,
        per_page=PER_PAGE,
        db=db,
    )
    return render_template_string(
        TEMPL_POST,
        title=post["title"],
        post=post,
        categories=post_categories(post["id"], db=db),
        tags=post_tags(post["id"], db=db),
        liked=has_reaction("post_like", post["id"], uid, db=db),
        bookmarked=has_reaction("bookmark", post["id"], uid, db=db),
        comments=comments,
        cpage=cpage,
        cpages=cpages,
        edit_comment=request.args.get("edit_comment", type=int),
    )


TEMPL_POST = wrap("""
{% block body %}
{% set me = current_user() %}
<article>
  {% if post['cover_image'] %}
    <img class="post-cover" src="{{ image_url(post['cover_image'], placeholder_cover) }}" alt="">
  {% endif %}
  <p>
    {% for c in categories %}<a class="pill" href="{{ url_for('category', slug=c['slug']) }}">{{ c['name'] }}</a>{% endfor %}
    {% if post['status'] != 'published' %}<span class="status">{{ post['status'] }}</span>{% endif %}
  </p>
  <h1>{{ post['title'] }}</h1>
  <div class="meta">
    <a href="{{ url_for('profile', username=post['author_username']) }}">
      <img class="avatar" src="{{ image_url(post['author_avatar'], placeholder_profile) }}" alt="">
      {{ post['author_name'] or post['author_username'] }}</a>
    · {{ (post['published_at'] or post['created_at'])|ts }}
    {% if post['status'] == 'scheduled' %}· publishes {{ post['scheduled_publish_date']|ts }}{% endif %}
  </div>
  <div class="post-body">{{ post['content']|md }}</div>
  <p>
    {% for t in tags %}<a class="pill tag" href="{{ url_for('tag', slug=t['slug']) }}">#{{ t['name'] }}</a>{% endfor %}
  </p>
  <p>
    {% if me %}
      <form class="inline" method="post" action="{{ url_for('like_post', slug=post['slug']) }}">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <button class="{{ '' if liked else 'ghost' }}" type="submit">♥ {{ post['like_count'] }}</button>
      </form>
      <form class="inline" method="post" action="{{ url_for('bookmark_post', slug=post['slug']) }}">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <button class="{{ '' if bookmarked else 'ghost' }}" type="submit">{{ 'Bookmarked' if bookmarked else 'Bookmark' }}</button>
      </form>
      {% if me['id'] == post['author_id'] %}
        <a class="button ghost" href="{{ url_for('edit_post', slug=post['slug']) }}">Edit</a>
        <form class="inline" method="post" action="{{ url_for('delete_post_view', slug=post['slug']) }}"
              onsubmit="return confirm('Delete this post?');">
          <input type="hidden" name="csrf" value="{{ csrf_token() }}">
          <button class="danger" type="submit">Delete</button>
        </form>
      {% endif %}
    {% else %}
      <span class="meta">♥ {{ post['like_count'] }} · <a href="{{ url_for('login', next=request.path) }}">Log in</a> to like, bookmark or comment.</span>
    {% endif %}
  </p>
</article>
<hr>
<section id="comments">
  <h2>Comments ({{ post['comment_count'] }})</h2>
  {% if me %}
  <form method="post" action="{{ url_for('add_comment', slug=post['slug']) }}">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <textarea name="content" rows="3" required placeholder="Add a comment"></textarea>
    <p><button type="submit">Comment</button></p>
  </form>
  {% endif %}
  {% for c in comments %}
  <div class="comment" id="comment-{{ c['id'] }}">
    <div class="meta">
      <a href="{{ url_for('profile', username=c['username']) }}">
        <img class="avatar" src="{{ image_url(c['avatar_url'], placeholder_profile) }}" alt="">
        {{ c['full_name'] or c['username'] }}</a>
      · {{ c['created_at']|ts }}{% if c['updated_at'] != c['created_at'] %} (edited){% endif %}
    </div>
    {% if me and me['id'] == c['author_id'] and edit_comment == c['id'] %}
      <form method="post" action="{{ url_for('edit_comment', comment_id=c['id']) }}">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <textarea name="content" rows="3" required>{{ c['content'] }}</textarea>
        <button type="submit">Save</button>
        <a href="{{ url_for('post_detail', slug=post['slug']) }}#comment-{{ c['id'] }}">Cancel</a>
      </form>
    {% else %}
      <p style="white-space:pre-wrap">{{ c['content'] }}</p>
      {% if me and me['id'] == c['author_id'] %}
        <a href="{{ url_for('post_detail', slug=post['slug'], edit_comment=c['id']) }}#comment-{{ c['id'] }}">Edit</a>
        <form class="inline" method="post" action="{{ url_for('delete_comment', comment_id=c['id']) }}">
          <input type="hidden" name="csrf" value="{{ csrf_token() }}">
          <button class="ghost" type="submit">Delete</button>
        </form>
      {% endif %}
    {% endif %}
  </div>
  {% else %}
  <p class="meta">No comments yet.</p>
  {% endfor %}
  {{ pager(cpage, cpages, 'cpage') }}
</section>
{% endblock %}
""")


@app.route("/blogs/<slug>/like", methods=["POST"])
def like_post(slug):
    me = login_required()
    post = _visible_post_or_404(slug)
    toggle_reaction("post_like", post["id"], me["id"], db=get_db())
    return redirect(url_for("post_detail", slug=slug))


@app.route("/blogs/<slug>/bookmark", methods=["POST"])
def bookmark_post(slug):
    me = login_required()
    post = _visible_post_or_404(slug)
    on = toggle_reaction("bookmark", post["id"], me["id"], db=get_db())
    flash("Saved to your bookmarks." if on else "Removed from your bookmarks.")
    return redirect(url_for("post_detail", slug=slug))


@app.route("/blogs/<slug>/comments", methods=["POST"])
def add_comment(slug):
    me = login_required()
    post = _visible_post_or_404(slug)
    content = request.form.get("content", "").strip()
    if not content:
        flash("Comment cannot be empty.")
        return redirect(url_for("post_detail", slug=slug))

    db = get_db()
    now = now_iso()
    cur = db.execute(
        "INSERT INTO comment (post_id, author_id, content, created_at, updated_at)"
        " VALUES (?,?,?,?,?)",
        (post["id"], me["id"], content, now, now),
    )
    db.commit()
    return redirect(url_for("post_detail", slug=slug) + f"#comment-{cur.lastrowid}")


def _own_comment_or_abort(comment_id: int, me):
    row = get_db().execute(
        "SELECT c.*, p.slug AS post_slug FROM comment c JOIN post p ON p.id = c.post_id"
        " WHERE c.id = ?",
        (comment_id,),
    ).fetchone()
    if row is None:
        abort(404)
    if row["author_id"] != me["id"]:
        abort(403)
    return row


@app.route("/comments/<int:comment_id>/edit", methods=["POST"])
def edit_comment(comment_id):
    me = login_required()
    row = _own_comment_or_abort(comment_id, me)
    content = request.form.get("content", "").strip()
    if not content:
        flash("Comment cannot be empty.")
    else:
        db = get_db()
        db.execute(
            "UPDATE comment SET content=?, updated_at=? WHERE id=?",
            (content, now_iso(), comment_id),
        )
        db.commit()
    return redirect(url_for("post_detail", slug=row["post_slug"]) + f"#comment-{comment_id}")


@app.route("/comments/<int:comment_id>/delete", methods=["POST"])
def delete_comment(comment_id):
    me = login_required()
    row = _own_comment_or_abort(comment_id, me)
    db = get_db()
    db.execute("DELETE FROM comment WHERE id=?", (comment_id,))
    db.commit()
    return redirect(url_for("post_detail", slug=row["post_slug"]) + "#comments")


###############################################################################
# Create / edit / delete posts
###############################################################################
def _form_ids(name: str) -> list[int]:
    return [int(v) for v in request.form.getlist(name) if v.isdigit()]


def _read_post_form(post=None) -> tuple[dict, list[str]]:
    data = {
        "title": request.form.get("title", "").strip(),
        "content": request.form.get("content", "").replace("\r\n", "\n"),
        "excerpt": request.form.get("excerpt", "").strip(),
        "status": request.form.get("status", "published"),
        "categories": _form_ids("categories"),
        "tags": _form_ids("tags"),
        "scheduled": None,
        "scheduled_raw": request.form.get("scheduled_publish_date", "").strip(),
    }
    errors = []
    if not data["title"]:
        errors.append("Title is required.")
    if not data["content"].strip():
        errors.append("Content is required.")
    if data["status"] not in STATUSES:
        errors.append("Unknown status.")
    if data["status"] == "scheduled":
        try:
            data["scheduled"] = parse_schedule(data["scheduled_raw"])
        except ValueError:
            errors.append("Scheduled publish date is not a valid date.")
        else:
            if data["scheduled"] is None:
                errors.append("Scheduled posts need a publish date.")
            elif data["scheduled"] <= utc_now():
                errors.append("Scheduled publish date must be in the future.")

    data["cover_image"] = image_field(
        "cover_image",
        post["cover_image"] if post else None,
        placeholder=PLACEHOLDER_COVER,
        folder="covers",
    )
    return data, errors


def _post_form_view(post=None):
    me = login_required()
    if post is not None and post["author_id"] != me["id"]:
        abort(403)
    db = get_db()
    pending = None

    if request.method == "POST":
        data, errors = _read_post_form(post)
        if not errors:
            slug = save_post(data, db=db, author_id=me["id"], post=post)
            flash({"published": "Post published.", "draft": "Draft saved.",
                   "scheduled": "Post scheduled."}[data["status"]])
            return redirect(url_for("post_detail", slug=slug))
        for e in errors:
            flash(e)
        form = data
        if data["cover_image"] != (post["cover_image"] if post else None):
            pending = data["cover_image"]
    elif post is not None:
        form = {
            "title": post["title"],
            "content": post["content"],
            "excerpt": post["excerpt"],
            "status": post["status"],
            "categories": [c["id"] for c in post_categories(post["id"], db=db)],
            "tags": [t["id"] for t in post_tags(post["id"], db=db)],
            "scheduled_raw": (post["scheduled_publish_date"] or "")[:16],
            "cover_image": post["cover_image"],
        }
    else:
        form = {"title": "", "content": "", "excerpt": "", "status": "published",
                "categories": [], "tags": [], "scheduled_raw": "", "cover_image": None}

    return render_template_string(
        TEMPL_POST_FORM,
        title="Edit post" if post else "New post",
        post=post,
        form=form,
        categories=db.execute("SELECT * FROM category ORDER BY name").fetchall(),
        tags=db.execute("SELECT * FROM tag ORDER BY name").fetchall(),
        pending=pending,
    )


TEMPL_POST_FORM = wrap("""
{% block body %}
<h1>{{ 'Edit post' if post else 'Create a new post' }}</h1>
<form method="post" enctype="multipart/form-data">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <div class="field"><label for="title">Title</label>
    <input id="title" name="title" type="text" required value="{{ form.title }}"></div>

  {{ image_input('cover_image', 'Cover image', post['cover_image'] if post else None, placeholder_cover, 'cover', pending) }}

  <label for="content">Content</label>
  <div class="editor" data-editor>
    <div class="editor-tabs" role="tablist">
      <button type="button" data-tab="write" aria-pressed="true">Write</button>
      <button type="button" data-tab="preview" aria-pressed="false">Preview</button>
    </div>
    <div class="editor-toolbar">
      <button type="button" data-op="bold" title="Bold (Ctrl+B)"><b>B</b></button>
      <button type="button" data-op="italic" title="Italic (Ctrl+I)"><i>I</i></button>
      <button type="button" data-op="heading" data-level="1" title="Heading 1">H1</button>
      <button type="button" data-op="heading" data-level="2" title="Heading 2">H2</button>
      <button type="button" data-op="heading" data-level="3" title="Heading 3">H3</button>
      <button type="button" data-op="bulleted-list" title="Bulleted list">• List</button>
      <button type="button" data-op="numbered-list" title="Numbered list">1. List</button>
      <button type="button" data-op="link" title="Link (Ctrl+K)">Link</button>
      <button type="button" class="img-upload-btn" title="Insert image">Image</button>
      <input type="file" class="img-upload-input" accept="image/*" multiple hidden>
      <button type="button" data-op="blockquote" title="Quote">❝</button>
      <button type="button" data-op="inline-code" title="Inline code">&lt;/&gt;</button>
      <button type="button" data-op="code-block" title="Code block">{ }</button>
      <button type="button" data-op="horizontal-rule" title="Horizontal rule">―</button>
    </div>
    <textarea id="content" name="content" rows="16" placeholder="Write your post content here...">{{ form.content }}</textarea>
    <div class="editor-preview" hidden></div>
  </div>
  <p class="editor-status" aria-live="polite"></p>

  <div class="field"><label for="excerpt">Excerpt</label>
    <textarea id="excerpt" name="excerpt" rows="2" placeholder="Leave empty to use the title">{{ form.excerpt }}</textarea></div>

  <fieldset style="border:0;padding:0"><legend><b>Categories</b></legend>
    {% for c in categories %}
      <label style="display:inline-block;font-weight:normal;margin-right:1rem">
        <input type="checkbox" name="categories" value="{{ c['id'] }}" {% if c['id'] in form.categories %}checked{% endif %}> {{ c['name'] }}</label>
    {% endfor %}
  </fieldset>
  <fieldset style="border:0;padding:0"><legend><b>Tags</b></legend>
    {% for t in tags %}
      <label style="display:inline-block;font-weight:normal;margin-right:1rem">
        <input type="checkbox" name="tags" value="{{ t['id'] }}" {% if t['id'] in form.tags %}checked{% endif %}> {{ t['name'] }}</label>
    {% endfor %}
  </fieldset>

  <div class="field"><label for="status">Status</label>
    <select id="status" name="status">
      {% for s in statuses %}<option value="{{ s }}" {% if form.status == s %}selected{% endif %}>{{ s|capitalize }}</option>{% endfor %}
    </select>
    <input type="datetime-local" name="scheduled_publish_date" aria-label="Publish at (UTC)"
           value="{{ form.scheduled_raw }}">
  </div>
  <p><button type="submit">{{ 'Update post' if post else 'Create post' }}</button>
     {% if post %}<a style="margin-left:1rem" href="{{ url_for('post_detail', slug=post['slug']) }}">Cancel</a>{% endif %}</p>
</form>
{% endblock %}
""")


@app.route("/create-post", methods=["GET", "POST"])
def create_post():
    return _post_form_view()


@app.route("/edit-post/<slug>", methods=["GET", "POST"])
def edit_post(slug):
    post = get_post(slug, db=get_db())
    if post is None:
        abort(404)
    return _post_form_view(post)


@app.route("/blogs/<slug>/delete", methods=["POST"])
def delete_post_view(slug):
    me = login_required()
    db = get_db()
    post = get_post(slug, db=db)
    if post is None:
        abort(404)
    if post["author_id"] != me["id"]:
        abort(403)
    delete_post(post["id"], db=db)
    flash("Post deleted.")
    return redirect(url_for("profile", username=me["username"]))


###############################################################################
# Profiles & follows
###############################################################################
def _user_or_404(username: str):
    user = get_user(db=get_db(), username=username)
    if user is None:
        abort(404)
    return user


@app.route("/user/<username>")
def profile(username):
    db = get_db()
    promote_scheduled(db=db)
    user = _user_or_404(username)
    me = current_user()
    own = me is not None and me["id"] == user["id"]

    page = page_arg()
    posts, pages = query_posts(
        db=db,
        page=page,
        author_id=user["id"],
        statuses=STATUSES if own else ("published",),
    )
    followers, following = follow_counts(user["id"], db=db)
    return render_template_string(
        TEMPL_PROFILE,
        title=user["full_name"] or user["username"],
        user=user,
        own=own,
        posts=posts,
        page=page,
        pages=pages,
        followers=followers,
        following=following,
        is_following=bool(me) and not own and is_following(me["id"], user["id"], db=db),
        bookmarks=bookmarked_posts(user["id"], db=db) if own else [],
    )


TEMPL_PROFILE = wrap("""
{% block body %}
<section style="display:flex;gap:2rem;align-items:center;flex-wrap:wrap">
  <img class="avatar lg" src="{{ image_url(user['avatar_url'], placeholder_profile) }}" alt="">
  <div style="flex:1">
    <h1 style="margin:0">{{ user['full_name'] or user['username'] }}</h1>
    <div class="meta">@{{ user['username'] }}{% if user['location'] %} · {{ user['location'] }}{% endif %}
      {% if user['website'] %} · <a href="{{ user['website'] }}" rel="nofollow noopener" target="_blank">{{ user['website'] }}</a>{% endif %}</div>
    {% if user['bio'] %}<p>{{ user['bio'] }}</p>{% endif %}
    <div class="meta">
      <a href="{{ url_for('followers', username=user['username']) }}">{{ followers }} followers</a> ·
      <a href="{{ url_for('following', username=user['username']) }}">{{ following }} following</a>
    </div>
  </div>
  {% if own %}
    <a class="button ghost" href="{{ url_for('edit_profile') }}">Edit profile</a>
  {% elif current_user() %}
    <form method="post" action="{{ url_for('follow', username=user['username']) }}">
      <input type="hidden" name="csrf" value="{{ csrf_token() }}">
      <button class="{{ 'ghost' if is_following else '' }}" type="submit">{{ 'Unfollow' if is_following else 'Follow' }}</button>
    </form>
  {% endif %}
</section>
<hr>
<h2>Posts</h2>
{% if posts %}
  <div class="cards">{% for p in posts %}{{ post_card(p) }}{% endfor %}</div>
  {{ pager(page, pages) }}
{% else %}
  <p class="meta">No posts yet.</p>
{% endif %}
{% if own %}
  <h2>Bookmarks</h2>
  {% if bookmarks %}
    <div class="cards">{% for p in bookmarks %}{{ post_card(p) }}{% endfor %}</div>
  {% else %}
    <p class="meta">Nothing bookmarked yet.</p>
  {% endif %}
{% endif %}
{% endblock %}
""")


@app.route("/profile/edit", methods=["GET", "POST"])
def edit_profile():
    me = login_required()
    db = get_db()
    form = {k: me[k] for k in ("username", "email", "full_name", "bio", "website", "location")}
    pending = None

    if request.method == "POST":
        form = {k: request.form.get(k, "").strip() for k in form}
        errors = validate_account(
            db=db, username=form["username"], email=form["email"], password=None,
            user_id=me["id"],
        )
        if form["website"] and not form["website"].startswith(("http://", "https://")):
            errors.append("Website must start with http:// or https://.")
        avatar = image_field(
            "avatar_url", me["avatar_url"], placeholder=PLACEHOLDER_PROFILE, folder="avatars"
        )
        if not errors:
            db.execute(
                """UPDATE user SET username=?, email=?, full_name=?, bio=?, website=?,
                                   location=?, avatar_url=?
                    WHERE id=?""",
                (form["username"], form["email"].lower(), form["full_name"], form["bio"],
                 form["website"], form["location"], avatar, me["id"]),
            )
            db.commit()
            flash("Profile updated.")
            return redirect(url_for("profile", username=form["username"]))
        for e in errors:
            flash(e)
        if avatar != me["avatar_url"]:
            pending = avatar

    return render_template_string(
        TEMPL_EDIT_PROFILE, title="Edit profile", form=form, me=me, pending=pending
    )


TEMPL_EDIT_PROFILE = wrap("""
{% block body %}
<h1>Edit profile</h1>
<form method="post" enctype="multipart/form-data" style="max-width:56rem">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  {{ image_input('avatar_url', 'Avatar', me['avatar_url'], placeholder_profile, 'avatar', pending) }}
  <div class="field"><label for="username">Username</label>
    <input id="username" name="username" type="text" required value="{{ form.username }}"></div>
  <div class="field"><label for="full_name">Full name</label>
    <input id="full_name" name="full_name" type="text" value="{{ form.full_name }}"></div>
  <div class="field"><label for="email">Email</label>
    <input id="email" name="email" type="email" required value="{{ form.email }}"></div>
  <div class="field"><label for="bio">Bio</label>
    <textarea id="bio" name="bio" rows="3">{{ form.bio }}</textarea></div>
  <div class="field"><label for="website">Website</label>
    <input id="website" name="website" type="url" value="{{ form.website }}"></div>
  <div class="field"><label for="location">Location</label>
    <input id="location" name="location" type="text" value="{{ form.location }}"></div>
  <p><button type="submit">Save</button></p>
</form>
{% endblock %}
""")


@app.route("/user/<username>/follow", methods=["POST"])
def follow(username):
    me = login_required()
    user = _user_or_404(username)
    try:
        on = toggle_follow(me["id"], user["id"], db=get_db())
    except ValueError as exc:
        flash(str(exc))
    else:
        flash(f"Following {user['username']}." if on else f"Unfollowed {user['username']}.")
    return redirect(url_for("profile", username=user["username"]))


def _follow_list(username: str, *, direction: str):
    db = get_db()
    user = _user_or_404(username)
    if direction == "followers":
        sql = """SELECT u.* FROM user u JOIN follow f ON f.follower_id = u.id
                  WHERE f.following_id = ? ORDER BY f.created_at DESC"""
    else:
        sql = """SELECT u.* FROM user u JOIN follow f ON f.following_id = u.id
                  WHERE f.follower_id = ? ORDER BY f.created_at DESC"""
    page = page_arg()
    people, pages = paginate(sql, (user["id"],), page=page, per_page=PER_PAGE * 2, db=db)
    return render_template_string(
        TEMPL_PEOPLE,
        title=f"{user['username']} · {direction}",
        user=user,
        direction=direction,
        people=people,
        page=page,
        pages=pages,
    )


TEMPL_PEOPLE = wrap("""
{% block body %}
<h1><a href="{{ url_for('profile', username=user['username']) }}">@{{ user['username'] }}</a> · {{ direction|capitalize }}</h1>
{% for u in people %}
  <p><a href="{{ url_for('profile', username=u['username']) }}">
    <img class="avatar" src="{{ image_url(u['avatar_url'], placeholder_profile) }}" alt="">
    {{ u['full_name'] or u['username'] }}</a> <span class="meta">@{{ u['username'] }}</span></p>
{% else %}
  <p class="meta">Nobody here yet.</p>
{% endfor %}
{{ pager(page, pages) }}
{% endblock %}
""")


@app.route("/user/<username>/followers")
def followers(username):
    return _follow_list(username, direction="followers")


@app.route("/user/<username>/following")
def following(username):
    return _follow_list(username, direction="following")


###############################################################################
# Editor + image endpoints
###############################################################################
def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else request.form.to_dict()


@app.route("/editor/preview", methods=["POST"])
def editor_preview():
    login_required()
    content = _json_body().get("content") or ""
    if not isinstance(content, str):
        return {"error": "content must be a string"}, 400
    return {"html": render(content)}


@app.route("/editor/apply", methods=["POST"])
def editor_apply():
    login_required()
    data = _json_body()
    content = data.get("content") or ""
    op = data.get("op") or ""
    if not isinstance(content, str) or not isinstance(op, str):
        return {"error": "content and op must be strings"}, 400

    kw = {}
    if op == "heading":
        kw["level"] = data.get("level", 1)
    elif op == "image":
        kw["src"] = data.get("src") or ""
        kw["alt"] = data.get("alt") or "Image"
        if not _clean_payload(kw["src"]):
            return {"error": "image source must be an uploaded image or URL"}, 400

    try:
        start = int(data.get("start", len(content)))
        end = int(data.get("end", start))
        edit = apply_edit(op, content, Selection(start, end), **kw)
    except (TypeError, ValueError) as exc:
        return {"error": str(exc)}, 400

    return {
        "content": edit.buffer,
        "selection": [edit.selection.start, edit.selection.end],
        "html": render(edit.buffer),
    }


@app.route("/upload-image", methods=["POST"])
def upload_image():
    login_required()

    if "file" not in request.files:
        return {"error": "No file received."}, 400

    f = request.files["file"]
    if not f.filename:
        return {"error": "No file selected."}, 400

    field = request.form.get("field", "content")
    if field not in IMAGE_FIELDS:
        return {"error": f"Unknown image field {field!r}."}, 400
    placeholder = PLACEHOLDER_PROFILE if field == "avatar" else PLACEHOLDER_COVER

    try:
        result = ingest_and_store(
            ImageFile.from_storage(f), placeholder=placeholder, folder=field
        )
    except ImageRejected as exc:
        app.logger.info("Rejected upload %r: %s", f.filename, exc.message)
        return {"error": exc.message}, exc.status

    if result.placeholder:
        return {"url": result.payload, "error": result.error}, 422
    return {"url": result.payload, "width": result.width, "height": result.height}, 201


PLACEHOLDER_SVGS = {
    "placeholder-cover": (
        '<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 1200 600">'
        '<rect width="1200" height="600" fill="#eef2ff"/>'
        '<path d="M480 380l90-110 70 80 50-60 110 90z" fill="#c7d2fe"/>'
        '<circle cx="720" cy="230" r="34" fill="#c7d2fe"/></svg>'
    ),
    "placeholder-profile": (
        '<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 96 96">'
        '<rect width="96" height="96" fill="#e5e7eb"/>'
        '<circle cx="48" cy="38" r="18" fill="#9ca3af"/>'
        '<path d="M14 92c4-20 18-30 34-30s30 10 34 30z" fill="#9ca3af"/></svg>'
    ),
}


@app.route("/images/<name>.svg")
def placeholder_image(name):
    svg = PLACEHOLDER_SVGS.get(name)
    if svg is None:
        abort(404)
    return Response(
        svg,
        mimetype="image/svg+xml",
        headers={"Cache-Control": "public, max-age=31536000, immutable"},
    )


###############################################################################
# Errors
###############################################################################
@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return render_template_string(TEMPL_404, title="Not found"), 404


@app.errorhandler(413)
def too_large(exc):
    return {"error": "Upload too large."}, 413


@app.errorhandler(500)
def internal_error(exc):
    """Generic 500 page; the debugger still wins while ``debug`` is on."""
    app.logger.error("Unhandled error on %s: %s", request.path, exc)
    return render_template_string(TEMPL_500, title="Error"), 500


TEMPL_404 = wrap("""
{% block body %}
  <h2>Page not found</h2>
  <p>The URL you asked for doesn’t exist.
     <a href="{{ url_for('index') }}">Back to the front page</a>.</p>
{% endblock %}
""")

TEMPL_500 = wrap("""
{% block body %}
  <h2>Internal Server Error</h2>
  <p>Our fault, not yours. Please try again in a minute.</p>
{% endblock %}
""")


if __name__ == "__main__":
    app.run(debug=True)
