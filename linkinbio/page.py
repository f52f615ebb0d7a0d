#!/usr/bin/env python3
"""
A single-file link-in-bio page with a visual editor.
"""

import copy
import io
import json
import os
import re
import secrets
import sqlite3
import tempfile
import threading
from collections import Counter, defaultdict, deque
from datetime import datetime, timedelta, timezone
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict

import boto3
import click
import requests
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
    send_from_directory,
    session,
    url_for,
)
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner
from markupsafe import Markup, escape
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash as verify_token
from werkzeug.security import generate_password_hash as hash_token

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = ROOT / "linkinbio.sqlite3"

ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)
TOKEN_LEN = 48
signer = TimestampSigner(SECRET_KEY, salt="login-token")

try:
    __version__ = version("linkinbio")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"

DOC_ID = "main"
STORE_BACKENDS = ("sqlite", "file", "kv")

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
KV_ENV_KEYS = ("KV_REST_API_URL", "KV_REST_API_TOKEN")

IMAGE_MIMES = {"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"}
UPLOAD_MAX_BYTES = 5 * 1024 * 1024
UPLOAD_FOLDERS = ("uploads", "avatars", "covers", "icons", "favicons")
_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9.-]")

AUTOSAVE_DELAY_MS = 1200
ANALYTICS_RANGES = {"7d": 7, "30d": 30, "90d": 90, "180d": 180, "all": None}

ITEM_TYPES = ("link", "text", "ad")
BUTTON_STYLES = ("rounded", "square", "pill")
PROFILE_LAYOUTS = ("avatar", "cover", "both")
LINK_LAYOUTS = ("small", "medium", "large")

# key → (title, url prefix, brand colour, glyph)
SNS_PRESETS = {
    "instagram": ("Instagram", "https://instagram.com/", "#E4405F", "IG"),
    "youtube": ("YouTube", "https://youtube.com/@", "#FF0000", "▶"),
    "tiktok": ("TikTok", "https://tiktok.com/@", "#000000", "♪"),
    "x": ("X", "https://x.com/", "#000000", "X"),
    "threads": ("Threads", "https://threads.net/@", "#000000", "@"),
    "naverclip": ("Naver Clip", "https://tv.naver.com/", "#03C75A", "N"),
    "facebook": ("Facebook", "https://facebook.com/", "#1877F2", "f"),
    "homepage": ("Homepage", "https://", "#555555", "⌂"),
    "email": ("Email", "mailto:", "#EA4335", "@"),
    "phone": ("Phone", "tel:", "#34A853", "☎"),
}

DEFAULT_THEME = {
    "backgroundColor": "#ffffff",
    "textColor": "#222222",
    "buttonColor": "#222222",
    "buttonTextColor": "#ffffff",
    "buttonStyle": "rounded",
    "buttonBorderColor": "",
    "textBorderColor": "",
    "fontFamily": "",
}

DEFAULT_BANNER = {
    "text": "",
    "background": "#111111",
    "textColor": "#ffffff",
    "enabled": False,
    "scroll": True,
}

DEFAULT_DOCUMENT = {
    "profile": {
        "name": "Your Name",
        "description": "A short line about you.",
        "avatar": "",
        "coverImage": "",
        "profileLayout": "avatar",
        "theme": DEFAULT_THEME,
    },
    "links": [
        {
            "id": "1",
            "type": "link",
            "title": "My website",
            "url": "https://example.com",
            "icon": "sns:homepage",
            "enabled": True,
            "layout": "medium",
        }
    ],
    "adBanner": DEFAULT_BANNER,
    "searchEnabled": False,
    "searchPlaceholder": "Search links",
    "siteTitle": "My links",
    "faviconUrl": "",
    "customHeadCode": "",
    "customBodyCode": "",
    "profileEnabled": True,
}

ITEM_DEFAULTS = {
    "link": {"title": "", "url": "", "icon": "", "enabled": True, "layout": "medium"},
    "text": {"content": "", "enabled": True},
    "ad": {"adHtml": "", "enabled": True},
}
# placeholder copy for freshly added items
NEW_ITEM_TEXT = {
    "link": {"title": "New link", "url": "https://"},
    "text": {"content": "New text"},
    "ad": {},
}


class DocumentError(ValueError):
    """The settings document (or a patch) failed validation."""


class StoreError(RuntimeError):
    """The storage backend rejected or failed an operation."""


class ItemNotFound(LookupError):
    pass


class UploadError(Exception):
    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.status = status


################################################################################
# App + config
################################################################################
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


def _env(key: str, default: str = "") -> str:
    return (os.environ.get(key) or _read_env_file().get(key) or default).strip()


app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(SECRET_KEY=SECRET_KEY, DATABASE=str(DB_FILE))
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=True,
    STORE_BACKEND=_env("STORE_BACKEND", "sqlite").lower(),
    DATA_FILE=_env("DATA_FILE", str(ROOT / "settings.json")),
    KV_REST_API_URL=_env("KV_REST_API_URL"),
    KV_REST_API_TOKEN=_env("KV_REST_API_TOKEN"),
    KV_DOC_KEY=_env("KV_DOC_KEY", "linkinbio:settings"),
    KV_ANALYTICS_KEY=_env("KV_ANALYTICS_KEY", "linkinbio:analytics"),
    UPLOAD_DIR=_env("UPLOAD_DIR"),
    UPLOAD_MAX_BYTES=int(_env("UPLOAD_MAX_BYTES", str(UPLOAD_MAX_BYTES))),
    AUTOSAVE_DELAY_MS=int(_env("AUTOSAVE_DELAY_MS", str(AUTOSAVE_DELAY_MS))),
    VISITS_LOG_DIR=_env("VISITS_LOG_DIR", str(ROOT / "visits")),
    KV_TIMEOUT=5,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

_warned: set[str] = set()


def warn_once(key: str, msg: str, *args) -> None:
    """Log a configuration problem the first time it shows up."""
    if key in _warned:
        return
    _warned.add(key)
    app.logger.warning(msg, *args)


###############################################################################
# Database helpers
###############################################################################
SCHEMA = """
CREATE TABLE IF NOT EXISTS user (
    id          INTEGER PRIMARY KEY,
    username    TEXT UNIQUE NOT NULL,
    token_hash  TEXT
);

CREATE TABLE IF NOT EXISTS settings_doc (
    id          TEXT PRIMARY KEY,
    data        TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS analytics (
    id          INTEGER PRIMARY KEY,
    created_at  TEXT NOT NULL,
    source      TEXT NOT NULL DEFAULT 'direct',
    path        TEXT NOT NULL DEFAULT '/',
    user_agent  TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_analytics_created ON analytics(created_at);
"""

_SCHEMA_READY: set[str] = set()


def get_db():
    if "db" not in g:
        path = app.config["DATABASE"]
        g.db = sqlite3.connect(path)
        g.db.row_factory = sqlite3.Row
        if path not in _SCHEMA_READY:
            g.db.executescript(SCHEMA)
            _SCHEMA_READY.add(path)
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(SCHEMA)
    db.commit()


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def timestamp_ms() -> int:
    return int(utc_now().timestamp() * 1000)


###############################################################################
# CLI – admin token + document import/export
###############################################################################
def _create_admin(db, *, username: str) -> str:
    handle = secrets.token_urlsafe(TOKEN_LEN)
    token = signer.sign(handle).decode()
    db.execute(
        "INSERT INTO user (username, token_hash) VALUES (?,?)",
        (username, hash_token(handle)),
    )
    db.commit()
    return token


def _rotate_token(db) -> str:
    """Generate + store a *new* one-time token, return it for display."""
    handle = secrets.token_urlsafe(TOKEN_LEN)
    token = signer.sign(handle).decode()
    db.execute("UPDATE user SET token_hash=? WHERE id=1", (hash_token(handle),))
    db.commit()
    return token


@app.cli.command("init")
@click.option("--username", prompt=True, help="Admin username")
def cli_init(username: str):
    """Initialise DB *and* create the admin account."""
    init_db()
    db = get_db()
    if db.execute("SELECT 1 FROM user LIMIT 1").fetchone():
        raise click.ClickException("Admin already exists; use `flask token`.")
    token = _create_admin(db, username=username.strip())

    click.secho("\n✅  Admin created.", fg="green")
    click.echo(f"\nOne-time login token:\n\n{token}\n")
    click.echo("Paste it into the login form at /login within 1 minute.")


@app.cli.command("token")
def cli_token():
    """Rotate the admin’s one-time login token."""
    db = get_db()
    if not db.execute("SELECT 1 FROM user LIMIT 1").fetchone():
        raise click.ClickException("No admin yet; run `flask init` first.")
    token = _rotate_token(db)

    click.secho("\n🔑  Fresh login token generated.\n", fg="yellow")
    click.echo(f"{token}\n")
    click.echo("Paste it into the login form at /login within 1 minute.")


@app.cli.command("export-doc")
@click.argument("path", required=False, type=click.Path(dir_okay=False))
def cli_export_doc(path: str | None):
    """Dump the current page document as JSON (stdout when no PATH)."""
    data = json.dumps(get_store().load(), ensure_ascii=False, indent=2)
    if path:
        Path(path).write_text(data + "\n", encoding="utf-8")
        click.secho(f"Document written to {path}", fg="green")
    else:
        click.echo(data)


@app.cli.command("import-doc")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def cli_import_doc(path: str):
    """Replace the page document with the JSON in PATH."""
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"Invalid JSON: {exc}") from exc
    try:
        get_store().save(raw)
    except (DocumentError, StoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.secho("Document imported.", fg="green")


###############################################################################
# Document model
###############################################################################
_COLOR_RE = re.compile(r"^#(?:[0-9a-fA-F]{3,4}|[0-9a-fA-F]{6}|[0-9a-fA-F]{8})$")
_URL_PREFIXES = ("http://", "https://", "//", "/", "mailto:", "tel:", "#")


def _text_field(limit: int | None = None):
    def coerce(value):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = str(value)
        if not isinstance(value, str):
            raise DocumentError("must be a string")
        if limit is not None and len(value) > limit:
            raise DocumentError(f"must be at most {limit} characters")
        return value

    return coerce


def _url_field(value):
    if not isinstance(value, str):
        raise DocumentError("must be a URL string")
    value = value.strip()
    if not value or value.lower().startswith(_URL_PREFIXES):
        return value
    head = value.split("/", 1)[0]
    if ":" in head:
        raise DocumentError(f"unsupported URL scheme: {head.split(':', 1)[0]}")
    return "https://" + value  # bare host like example.com/me


def _icon_field(value):
    if not isinstance(value, str):
        raise DocumentError("must be a string")
    value = value.strip()
    if value.startswith("sns:"):
        if value[4:] not in SNS_PRESETS:
            raise DocumentError(f"unknown SNS preset: {value[4:]}")
        return value
    return _url_field(value)


def _color_field(optional: bool = False):
    def coerce(value):
        if not isinstance(value, str):
            raise DocumentError("must be a colour string")
        value = value.strip()
        if not value and optional:
            return ""
        if not value.startswith("#"):
            value = "#" + value
        if not _COLOR_RE.match(value):
            raise DocumentError(f"not a hex colour: {value}")
        return value

    return coerce


def _choice_field(choices):
    def coerce(value):
        if value not in choices:
            raise DocumentError(f"must be one of {', '.join(choices)}")
        return value

    return coerce


def _flag_field(value):
    if isinstance(value, bool):
        return value
    if value in (0, 1):
        return bool(value)
    raise DocumentError("must be true or false")


BANNER_FIELDS = {
    "text": _text_field(500),
    "background": _color_field(),
    "textColor": _color_field(),
    "enabled": _flag_field,
    "scroll": _flag_field,
}


def _as_banner(value):
    if isinstance(value, str):  # legacy: plain banner text
        value = {"text": value, "enabled": bool(value.strip())}
    if not isinstance(value, dict):
        raise DocumentError("must be an object")
    return _coerce_fields(
        value, BANNER_FIELDS, DEFAULT_BANNER, strict=True, where="adBanner"
    )


PROFILE_FIELDS = {
    "name": _text_field(120),
    "description": _text_field(1000),
    "avatar": _url_field,
    "coverImage": _url_field,
    "profileLayout": _choice_field(PROFILE_LAYOUTS),
}

THEME_FIELDS = {
    "backgroundColor": _color_field(),
    "textColor": _color_field(),
    "buttonColor": _color_field(),
    "buttonTextColor": _color_field(),
    "buttonStyle": _choice_field(BUTTON_STYLES),
    "buttonBorderColor": _color_field(optional=True),
    "textBorderColor": _color_field(optional=True),
    "fontFamily": _text_field(200),
}

SITE_FIELDS = {
    "adBanner": _as_banner,
    "searchEnabled": _flag_field,
    "searchPlaceholder": _text_field(120),
    "siteTitle": _text_field(200),
    "faviconUrl": _url_field,
    "customHeadCode": _text_field(),
    "customBodyCode": _text_field(),
    "profileEnabled": _flag_field,
}

ITEM_FIELDS = {
    "link": {
        "title": _text_field(200),
        "url": _url_field,
        "icon": _icon_field,
        "enabled": _flag_field,
        "layout": _choice_field(LINK_LAYOUTS),
    },
    "text": {"content": _text_field(5000), "enabled": _flag_field},
    "ad": {"adHtml": _text_field(), "enabled": _flag_field},
}


def _coerce_fields(raw: dict, fields: dict, defaults: dict, *, strict: bool, where: str):
    """
    Run every coercer in *fields* over *raw*.
    Missing keys take the default; bad values raise in strict mode and
    fall back to the default otherwise.
    """
    out = {}
    for name, coerce in fields.items():
        value = raw.get(name)
        if value is None:
            out[name] = copy.deepcopy(defaults[name])
            continue
        try:
            out[name] = coerce(value)
        except DocumentError as exc:
            if strict:
                raise DocumentError(f"{where}.{name}: {exc}") from None
            out[name] = copy.deepcopy(defaults[name])
    return out


def _migrate_legacy(raw: dict) -> dict:
    raw = dict(raw)
    if raw.get("faviconUrl") is None and "faviconPngUrl" in raw:
        raw["faviconUrl"] = raw["faviconPngUrl"]
    if raw.get("customBodyCode") is None and "adCode" in raw:
        raw["customBodyCode"] = raw["adCode"]
    banner = raw.get("adBanner")
    if isinstance(banner, str):  # text plus sibling adBanner* fields
        raw["adBanner"] = {
            "text": banner,
            "enabled": raw.get("adBannerEnabled") is not False and bool(banner.strip()),
        }
        if raw.get("adBannerBackground"):
            raw["adBanner"]["background"] = raw["adBannerBackground"]
        if raw.get("adBannerTextColor"):
            raw["adBanner"]["textColor"] = raw["adBannerTextColor"]
    return raw


def normalize_item(raw, index: int, *, strict: bool = False) -> dict | None:
    where = f"links[{index}]"
    if not isinstance(raw, dict):
        if strict:
            raise DocumentError(f"{where}: must be an object")
        return None

    kind = raw.get("type") or "link"
    if kind not in ITEM_TYPES:
        if strict:
            raise DocumentError(f"{where}: unknown item type {kind!r}")
        return None

    item_id = raw.get("id")
    if isinstance(item_id, int) and not isinstance(item_id, bool):
        item_id = str(item_id)
    if not isinstance(item_id, str) or not item_id:
        if strict:
            raise DocumentError(f"{where}: missing id")
        item_id = f"item-{index}"

    fields = _coerce_fields(
        raw, ITEM_FIELDS[kind], ITEM_DEFAULTS[kind], strict=strict, where=where
    )
    return {"id": item_id, "type": kind, **fields}


def normalize_document(raw, *, strict: bool = False) -> dict:
    """
    Return a complete, well-typed copy of *raw*.

    strict=True is the save path: structural problems raise DocumentError.
    strict=False is the load path: anything unusable is replaced with the
    default so the page always renders.
    """
    if not isinstance(raw, dict):
        if strict:
            raise DocumentError("document must be a JSON object")
        raw = {}
    if strict:
        for key in ("profile", "links"):
            if key not in raw:
                raise DocumentError(f"missing required field: {key}")

    raw = _migrate_legacy(raw)

    profile_raw = raw.get("profile", DEFAULT_DOCUMENT["profile"])
    if not isinstance(profile_raw, dict):
        if strict:
            raise DocumentError("profile must be an object")
        profile_raw = {}
    profile = _coerce_fields(
        profile_raw,
        PROFILE_FIELDS,
        DEFAULT_DOCUMENT["profile"],
        strict=strict,
        where="profile",
    )
    theme_raw = profile_raw.get("theme") or {}
    if not isinstance(theme_raw, dict):
        if strict:
            raise DocumentError("profile.theme must be an object")
        theme_raw = {}
    profile["theme"] = _coerce_fields(
        theme_raw, THEME_FIELDS, DEFAULT_THEME, strict=strict, where="profile.theme"
    )

    links_raw = raw.get("links", DEFAULT_DOCUMENT["links"])
    if not isinstance(links_raw, list):
        if strict:
            raise DocumentError("links must be a list")
        links_raw = []
    links = []
    for i, item in enumerate(links_raw):
        norm = normalize_item(item, i, strict=strict)
        if norm is not None:
            links.append(norm)

    site = _coerce_fields(
        raw, SITE_FIELDS, DEFAULT_DOCUMENT, strict=strict, where="document"
    )
    return {"profile": profile, "links": links, **site}


def default_document() -> dict:
    return normalize_document(DEFAULT_DOCUMENT)


def apply_patch(target: dict, patch, fields: dict, *, where: str = "patch") -> dict:
    """Validate every field of *patch* first, then merge into a copy of *target*."""
    if not isinstance(patch, dict):
        raise DocumentError(f"{where}: must be a JSON object")
    unknown = sorted(set(patch) - set(fields))
    if unknown:
        raise DocumentError(f"{where}: unknown field(s): {', '.join(unknown)}")
    clean = {}
    for name, value in patch.items():
        if value is None:
            raise DocumentError(f"{where}.{name}: must not be null")
        try:
            clean[name] = fields[name](value)
        except DocumentError as exc:
            raise DocumentError(f"{where}.{name}: {exc}") from None
    merged = copy.deepcopy(target)
    merged.update(clean)
    return merged


# -------------------------------------------------------------------------
# Item list operations (pure: each returns a new list)
# -------------------------------------------------------------------------
def _index_of(items: list[dict], item_id: str) -> int:
    for i, item in enumerate(items):
        if item.get("id") == item_id:
            return i
    raise ItemNotFound(item_id)


def reorder_items(items: list[dict], source_id: str, target_id: str) -> list[dict]:
    """Move *source_id* so it lands where *target_id* was."""
    src = _index_of(items, source_id)
    dst = _index_of(items, target_id)
    out = list(items)
    if src != dst:
        out.insert(dst, out.pop(src))
    return out


def move_item(items: list[dict], index: int, direction) -> list[dict]:
    step = None
    if isinstance(direction, (str, int)) and not isinstance(direction, bool):
        step = {"up": -1, "down": 1, -1: -1, 1: 1}.get(direction)
    if step is None:
        raise DocumentError("direction must be 'up' or 'down'")
    out = list(items)
    other = index + step
    if 0 <= index < len(out) and 0 <= other < len(out):
        out[index], out[other] = out[other], out[index]
    return out


def new_item(kind: str, *, now_ms: int | None = None) -> dict:
    if kind not in ITEM_TYPES:
        raise DocumentError(f"unknown item type {kind!r}")
    item = {"id": str(now_ms or timestamp_ms()), "type": kind}
    item.update(copy.deepcopy(ITEM_DEFAULTS[kind]))
    item.update(NEW_ITEM_TEXT[kind])
    return item


def remove_item(items: list[dict], item_id: str) -> list[dict]:
    idx = _index_of(items, item_id)
    return items[:idx] + items[idx + 1 :]


def update_item(items: list[dict], item_id: str, patch) -> list[dict]:
    idx = _index_of(items, item_id)
    item = items[idx]
    merged = apply_patch(
        item, patch, ITEM_FIELDS[item["type"]], where=f"links[{idx}]"
    )
    out = list(items)
    out[idx] = merged
    return out


###############################################################################
# Storage backends
###############################################################################
def _iso(dt: datetime) -> str:
    """Fixed-width UTC timestamp; sorts lexically."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _parse_ts(value: str) -> datetime | None:
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _in_range(dt: datetime, start: datetime | None, end: datetime | None) -> bool:
    return (start is None or dt >= start) and (end is None or dt <= end)


def bucket_visits(records, start=None, end=None) -> dict:
    """
    Fold ``(created_at, source)`` pairs into the dashboard shape.
    Days are UTC dates; referrers are sorted by count.
    """
    daily: Counter = Counter()
    sources: Counter = Counter()
    for created_at, source in records:
        if created_at is None or not _in_range(created_at, start, end):
            continue
        daily[created_at.strftime("%Y-%m-%d")] += 1
        sources[source or "direct"] += 1
    return {
        "totalVisits": sum(daily.values()),
        "dailyVisits": dict(sorted(daily.items())),
        "referrers": dict(sources.most_common()),
    }


class Store:
    """Singleton page document plus the visit log, behind one backend."""

    name = "base"

    def load(self) -> dict:
        """Never raises: any read problem degrades to the default document."""
        try:
            raw = self._read()
        except StoreError as exc:
            app.logger.warning("%s store unreadable, using defaults: %s", self.name, exc)
            return default_document()
        if raw is None:
            return default_document()
        return normalize_document(raw)

    def save(self, doc) -> None:
        clean = normalize_document(doc, strict=True)
        self._write(clean)
        app.logger.info("Page document saved to %s store", self.name)

    def aggregate_visits(self, start=None, end=None) -> dict:
        return bucket_visits(self.iter_visits(start, end), start, end)

    def _read(self):
        raise NotImplementedError

    def _write(self, doc: dict) -> None:
        raise NotImplementedError

    def append_visit(self, record: dict) -> None:
        raise NotImplementedError

    def iter_visits(self, start=None, end=None):
        raise NotImplementedError


class SQLiteStore(Store):
    name = "sqlite"

    def _read(self):
        try:
            row = (
                get_db()
                .execute("SELECT data FROM settings_doc WHERE id=?", (DOC_ID,))
                .fetchone()
            )
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        if row is None:
            return None
        try:
            return json.loads(row["data"])
        except json.JSONDecodeError as exc:
            raise StoreError(f"stored document is not valid JSON: {exc}") from exc

    def _write(self, doc: dict) -> None:
        db = get_db()
        try:
            db.execute(
                """INSERT INTO settings_doc (id, data, updated_at) VALUES (?,?,?)
                   ON CONFLICT(id) DO UPDATE SET data=excluded.data,
                                                 updated_at=excluded.updated_at""",
                (DOC_ID, json.dumps(doc, ensure_ascii=False), _iso(utc_now())),
            )
            db.commit()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    def append_visit(self, record: dict) -> None:
        db = get_db()
        try:
            db.execute(
                "INSERT INTO analytics (created_at, source, path, user_agent) "
                "VALUES (?,?,?,?)",
                (
                    record["created_at"],
                    record["source"],
                    record["path"],
                    record["user_agent"],
                ),
            )
            db.commit()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    def iter_visits(self, start=None, end=None):
        sql = "SELECT created_at, source FROM analytics"
        where, params = [], []
        if start is not None:
            where.append("created_at >= ?")
            params.append(_iso(start))
        if end is not None:
            where.append("created_at <= ?")
            params.append(_iso(end))
        if where:
            sql += " WHERE " + " AND ".join(where)
        try:
            rows = get_db().execute(sql + " ORDER BY created_at", params).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        for row in rows:
            yield _parse_ts(row["created_at"]), row["source"]


class FileStore(Store):
    name = "file"

    @property
    def path(self) -> Path:
        return Path(app.config["DATA_FILE"])

    @property
    def log_dir(self) -> Path:
        return Path(app.config["VISITS_LOG_DIR"])

    def _read(self):
        if not self.path.exists():
            return None
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise StoreError(f"{self.path}: {exc}") from exc

    def _write(self, doc: dict) -> None:
        path = self.path
        tmp = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(
                dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(doc, fh, ensure_ascii=False, indent=2)
            os.replace(tmp, path)
        except OSError as exc:
            if tmp and os.path.exists(tmp):
                os.unlink(tmp)
            raise StoreError(f"{path}: {exc}") from exc

    def _log_path(self, day: datetime) -> Path:
        return self.log_dir / f"visits-{day.strftime('%Y%m%d')}.log"

    def append_visit(self, record: dict) -> None:
        day = _parse_ts(record["created_at"]) or utc_now()
        path = self._log_path(day)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(record, ensure_ascii=False) + "\n")
        except OSError as exc:
            raise StoreError(f"{path}: {exc}") from exc

    def iter_visits(self, start=None, end=None):
        if not self.log_dir.is_dir():
            return
        lo = start.strftime("%Y%m%d") if start else None
        hi = end.strftime("%Y%m%d") if end else None
        for path in sorted(self.log_dir.glob("visits-*.log")):
            stamp = path.stem.split("-", 1)[1]
            if (lo and stamp < lo) or (hi and stamp > hi):
                continue
            try:
                lines = path.read_text(encoding="utf-8").splitlines()
            except OSError as exc:
                raise StoreError(f"{path}: {exc}") from exc
            for ln in lines:
                try:
                    rec = json.loads(ln)
                except json.JSONDecodeError:
                    continue  # torn write
                yield _parse_ts(rec.get("created_at", "")), rec.get("source")


class KVStore(Store):
    """Upstash / Vercel KV over its REST API."""

    name = "kv"

    def _config(self) -> tuple[str, str]:
        url = (app.config.get("KV_REST_API_URL") or "").rstrip("/")
        token = app.config.get("KV_REST_API_TOKEN") or ""
        if not url or not token:
            warn_once(
                "kv-config", "KV backend selected but KV_REST_API_URL/TOKEN missing"
            )
            raise StoreError("KV store is not configured")
        return url, token

    def _command(self, method: str, path: str, data: str | None = None):
        url, token = self._config()
        try:
            resp = requests.request(
                method,
                f"{url}/{path}",
                data=data,
                headers={"Authorization": f"Bearer {token}"},
                timeout=app.config.get("KV_TIMEOUT", 5),
            )
            resp.raise_for_status()
            payload = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise StoreError(str(exc)) from exc
        if isinstance(payload, dict) and payload.get("error"):
            raise StoreError(str(payload["error"]))
        return payload.get("result") if isinstance(payload, dict) else None

    def _get_json(self, key: str):
        result = self._command("GET", f"get/{key}")
        if result is None or isinstance(result, dict):
            return result
        try:
            return json.loads(result)
        except (TypeError, json.JSONDecodeError) as exc:
            raise StoreError(f"{key}: stored value is not JSON") from exc

    def _set_json(self, key: str, value) -> None:
        self._command("POST", f"set/{key}", json.dumps(value, ensure_ascii=False))

    def _read(self):
        return self._get_json(app.config["KV_DOC_KEY"])

    def _write(self, doc: dict) -> None:
        self._set_json(app.config["KV_DOC_KEY"], doc)

    # visits are kept pre-aggregated: no per-visit records in KV
    def _counters(self) -> dict:
        key = app.config["KV_ANALYTICS_KEY"]
        data = self._get_json(key) or {}
        try:
            if not isinstance(data, dict):
                raise TypeError(type(data).__name__)
            return {
                "totalVisits": int(data.get("totalVisits", 0)),
                "dailyVisits": dict(data.get("dailyVisits") or {}),
                "referrers": dict(data.get("referrers") or {}),
            }
        except (TypeError, ValueError) as exc:
            raise StoreError(f"{key}: malformed analytics counters ({exc})") from exc

    def append_visit(self, record: dict) -> None:
        day = (_parse_ts(record["created_at"]) or utc_now()).strftime("%Y-%m-%d")
        data = self._counters()
        data["totalVisits"] += 1
        data["dailyVisits"][day] = data["dailyVisits"].get(day, 0) + 1
        src = record["source"]
        data["referrers"][src] = data["referrers"].get(src, 0) + 1
        self._set_json(app.config["KV_ANALYTICS_KEY"], data)

    def iter_visits(self, start=None, end=None):
        raise NotImplementedError("KV keeps counters only")

    def aggregate_visits(self, start=None, end=None) -> dict:
        data = self._counters()
        lo = start.strftime("%Y-%m-%d") if start else None
        hi = end.strftime("%Y-%m-%d") if end else None
        daily = {
            day: n
            for day, n in sorted(data["dailyVisits"].items())
            if (lo is None or day >= lo) and (hi is None or day <= hi)
        }
        referrers = sorted(data["referrers"].items(), key=lambda kv: -kv[1])
        return {
            "totalVisits": sum(daily.values()),
            "dailyVisits": daily,
            "referrers": dict(referrers),
        }


STORES = {"sqlite": SQLiteStore, "file": FileStore, "kv": KVStore}


def get_store() -> Store:
    backend = (app.config.get("STORE_BACKEND") or "sqlite").lower()
    cls = STORES.get(backend)
    if cls is None:
        warn_once(f"backend-{backend}", "Unknown STORE_BACKEND %r, using sqlite", backend)
        cls = SQLiteStore
    return cls()


###############################################################################
# Analytics
###############################################################################
def _clean_source(source) -> str:
    source = (source or "").strip() if isinstance(source, str) else ""
    return source[:100] or "direct"


def record_visit(source=None, path: str = "/", user_agent: str = "", *, store=None):
    """Append one visit. Raises StoreError; callers at the HTTP edge swallow it."""
    record = {
        "created_at": _iso(utc_now()),
        "source": _clean_source(source),
        "path": (path or "/")[:500],
        "user_agent": (user_agent or "")[:500],
    }
    (store or get_store()).append_visit(record)
    return record


def _parse_day(value) -> datetime:
    if not value:
        raise ValueError("custom range needs start and end (YYYY-MM-DD)")
    return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)


def resolve_range(range_key="all", start=None, end=None, now=None):
    """Map a preset or custom range to inclusive ``(start, end)`` datetimes."""
    now = now or utc_now()
    if range_key == "custom":
        lo = _parse_day(start)
        hi = _parse_day(end) + timedelta(days=1) - timedelta(microseconds=1)
        if lo > hi:
            raise ValueError("start must not be after end")
        return lo, hi
    if range_key not in ANALYTICS_RANGES:
        raise ValueError(f"unknown range: {range_key}")
    days = ANALYTICS_RANGES[range_key]
    if days is None:
        return None, None
    first = (now - timedelta(days=days - 1)).date()
    lo = datetime(first.year, first.month, first.day, tzinfo=timezone.utc)
    return lo, None


def aggregate(range_key="all", start=None, end=None, now=None, *, store=None) -> dict:
    lo, hi = resolve_range(range_key, start, end, now)
    result = (store or get_store()).aggregate_visits(lo, hi)
    result["range"] = range_key
    return result


###############################################################################
# Uploads
###############################################################################
def r2_config() -> dict[str, str]:
    env_file = _read_env_file()
    cfg = {
        k: (app.config.get(k) or os.environ.get(k) or env_file.get(k) or "").strip()
        for k in R2_ENV_KEYS
    }
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
        return f"{base.rstrip('/')}/{key.lstrip('/')}"
    return f"https://{cfg['R2_BUCKET']}.{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com/{key.lstrip('/')}"


def upload_key(filename: str, folder: str = "uploads", now_ms: int | None = None) -> str:
    name = _UNSAFE_NAME_RE.sub("_", Path(filename or "").name) or "file"
    if folder not in UPLOAD_FOLDERS:
        folder = "uploads"
    return f"{folder}/{now_ms or timestamp_ms()}_{name}"


def store_upload(file, folder: str = "uploads") -> str:
    """
    Validate an uploaded image and put it in R2 (or UPLOAD_DIR).
    Returns the public URL; raises UploadError before writing anything
    when the file is rejected.
    """
    cfg = r2_config()
    upload_dir = app.config.get("UPLOAD_DIR")
    if not r2_is_configured(cfg) and not upload_dir:
        warn_once("upload-config", "Uploads requested but no R2_* or UPLOAD_DIR set")
        raise UploadError(
            "Image uploads are not configured (set R2 credentials or UPLOAD_DIR).",
            400,
        )
    if file is None or not file.filename:
        raise UploadError("No file selected.", 400)

    mime = (file.mimetype or "").lower()
    if mime not in IMAGE_MIMES:
        raise UploadError("Only JPEG, PNG, GIF or WebP images are allowed.", 415)

    limit = int(app.config.get("UPLOAD_MAX_BYTES", UPLOAD_MAX_BYTES))
    data = file.read(limit + 1)
    if len(data) > limit:
        raise UploadError(f"File too large ({limit // (1024 * 1024)} MiB max).", 413)
    if not data:
        raise UploadError("Empty file.", 400)

    key = upload_key(file.filename, folder)

    if r2_is_configured(cfg):
        try:
            _r2_client(cfg).upload_fileobj(
                io.BytesIO(data),
                cfg["R2_BUCKET"],
                key,
                ExtraArgs={"ContentType": mime},
            )
        except (BotoCoreError, ClientError):
            app.logger.exception("R2 upload failed")
            raise UploadError("Upload failed – check R2 credentials.", 502)
        return r2_object_url(cfg, key)

    dest = Path(upload_dir) / key
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(data)
    except OSError:
        app.logger.exception("Local upload failed")
        raise UploadError("Could not write the upload.", 500)
    return url_for("uploaded_file", key=key)


###############################################################################
# Editor session (debounced autosave)
###############################################################################
class Debouncer:
    """
    Re-armable delayed call. Every trigger() restarts the countdown;
    only the last one fires.
    """

    def __init__(self, delay: float, fn, *, timer_factory=threading.Timer):
        self.delay = delay
        self.fn = fn
        self._timer_factory = timer_factory
        self._timer = None
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def trigger(self) -> None:
        with self._lock:
            self._stop()
            self._generation += 1
            timer = self._timer_factory(self.delay, self._fire, args=(self._generation,))
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._timer is None:
                return  # re-armed or cancelled meanwhile
            self._timer = None
        self.fn()

    def cancel(self) -> None:
        with self._lock:
            self._stop()
            self._generation += 1

    def flush(self) -> bool:
        """Run a pending call right now. Returns whether one was pending."""
        with self._lock:
            was_pending = self._timer is not None
            self._stop()
            self._generation += 1
        if was_pending:
            self.fn()
        return was_pending


class EditorSession:
    """
    Working copy of the page document.

    idle → editing (mutation applied) → pending (autosave armed)
         → saving → persisted | error
    """

    def __init__(
        self,
        store: Store,
        doc=None,
        *,
        delay: float | None = None,
        autosave: bool = True,
        timer_factory=threading.Timer,
    ):
        self.store = store
        self.doc = normalize_document(store.load() if doc is None else doc)
        self.state = "idle"
        self.last_error: str | None = None
        self.last_exception: Exception | None = None
        self.autosave = autosave
        if delay is None:
            delay = AUTOSAVE_DELAY_MS / 1000
        self._debouncer = Debouncer(delay, self._autosave, timer_factory=timer_factory)
        self._save_lock = threading.Lock()

    @property
    def pending(self) -> bool:
        return self._debouncer.pending

    @property
    def saving(self) -> bool:
        return self._save_lock.locked()

    def _commit(self, doc: dict) -> dict:
        self.doc = doc
        self.state = "editing"
        if self.autosave:
            self._debouncer.trigger()
            self.state = "pending"
        return doc

    # mutations: validate first, the working copy only changes on success
    def replace(self, doc) -> dict:
        return self._commit(normalize_document(doc, strict=True))

    def update_profile(self, patch) -> dict:
        doc = copy.deepcopy(self.doc)
        theme = doc["profile"].pop("theme")
        doc["profile"] = apply_patch(doc["profile"], patch, PROFILE_FIELDS, where="profile")
        doc["profile"]["theme"] = theme
        return self._commit(doc)

    def update_theme(self, patch) -> dict:
        doc = copy.deepcopy(self.doc)
        doc["profile"]["theme"] = apply_patch(
            doc["profile"]["theme"], patch, THEME_FIELDS, where="theme"
        )
        return self._commit(doc)

    def update_site(self, patch) -> dict:
        site = {k: self.doc[k] for k in SITE_FIELDS}
        merged = apply_patch(site, patch, SITE_FIELDS, where="site")
        return self._commit({**copy.deepcopy(self.doc), **merged})

    def add_item(self, kind: str, fields=None) -> dict:
        item = new_item(kind)
        if fields:
            item = apply_patch(item, fields, ITEM_FIELDS[kind], where="item")
        doc = copy.deepcopy(self.doc)
        doc["links"].append(item)
        self._commit(doc)
        return item

    def update_item(self, item_id: str, patch) -> dict:
        doc = copy.deepcopy(self.doc)
        doc["links"] = update_item(doc["links"], item_id, patch)
        return self._commit(doc)

    def remove_item(self, item_id: str) -> dict:
        doc = copy.deepcopy(self.doc)
        doc["links"] = remove_item(doc["links"], item_id)
        return self._commit(doc)

    def reorder(self, source_id: str, target_id: str) -> dict:
        doc = copy.deepcopy(self.doc)
        doc["links"] = reorder_items(doc["links"], source_id, target_id)
        return self._commit(doc)

    def move(self, item_id: str, direction) -> dict:
        doc = copy.deepcopy(self.doc)
        idx = _index_of(doc["links"], item_id)
        doc["links"] = move_item(doc["links"], idx, direction)
        return self._commit(doc)

    def save_now(self) -> bool:
        """
        Persist the working copy immediately.
        Returns False if a save is already running or the save failed
        (see ``last_error``). Edits made while the save runs are picked up
        by a fresh autosave once it finishes.
        """
        if not self._save_lock.acquire(blocking=False):
            return False
        doc = self.doc
        try:
            self._debouncer.cancel()
            self.state = "saving"
            try:
                self.store.save(doc)
            except (DocumentError, StoreError) as exc:
                self.state = "error"
                self.last_error = str(exc)
                self.last_exception = exc
                app.logger.warning("Saving page document failed: %s", exc)
                return False
            if self.doc is doc:
                self.state = "persisted"
            self.last_error = None
            self.last_exception = None
            return True
        finally:
            self._save_lock.release()
            # an autosave that fired mid-save was refused above
            if self.autosave and self.doc is not doc and not self.pending:
                self._debouncer.trigger()

    def _autosave(self) -> None:
        # runs on the timer thread
        with app.app_context():
            self.save_now()

    def close(self) -> None:
        self._debouncer.cancel()


###############################################################################
# Public page rendering
###############################################################################
BUTTON_RADIUS = {"rounded": "12px", "square": "0", "pill": "999px"}


def trusted_markup(value) -> Markup:
    """
    The one place operator-supplied HTML (head/body code, ad slots)
    bypasses autoescaping.
    """
    return Markup(value or "")


def icon_src(icon: str | None) -> str:
    if not icon:
        return ""
    if icon.startswith("sns:"):
        return url_for("sns_icon", key=icon[4:])
    return icon


def _csrf_token() -> str:
    """One token per session (rotates when the cookie does)."""
    return session.get("csrf", "")


app.jinja_env.globals.update(
    trusted_markup=trusted_markup,
    icon_src=icon_src,
    csrf_token=_csrf_token,
    version=__version__,
)


def _matches(item: dict, needle: str) -> bool:
    if item["type"] == "ad":
        return True
    hay = item.get("title", "") if item["type"] == "link" else item.get("content", "")
    return needle in hay.lower()


def visible_items(doc: dict, query: str = "") -> list[dict]:
    """Enabled items in display order, narrowed by *query* when search is on."""
    items = [it for it in doc.get("links", []) if it.get("enabled", True)]
    needle = (query or "").strip().lower()
    if not needle or not doc.get("searchEnabled"):
        return items
    return [it for it in items if _matches(it, needle)]


def render_page(doc, query: str = "", *, preview: bool = False) -> str:
    """
    Full public page, or (preview=True) just the page fragment used by
    the editor's live preview.
    """
    doc = normalize_document(doc)
    theme = doc["profile"]["theme"]
    items = visible_items(doc, query)
    ctx = dict(
        doc=doc,
        p=doc["profile"],
        t=theme,
        banner=doc["adBanner"],
        items=items,
        no_matches=bool((query or "").strip())
        and not any(it["type"] != "ad" for it in items),
        query=query or "",
        radius=BUTTON_RADIUS[theme["buttonStyle"]],
        preview=preview,
    )
    fragment = render_template_string(TEMPL_FRAGMENT, **ctx)
    if preview:
        return fragment
    return render_template_string(TEMPL_PUBLIC, fragment=Markup(fragment), **ctx)


def _badge_svg(glyph: str, color: str) -> str:
    size = 30 if len(glyph) < 2 else 24
    return (
        '<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 64 64">'
        f'<rect width="64" height="64" rx="14" fill="{escape(color)}"/>'
        f'<text x="32" y="{32 + size // 3}" font-family="Arial,Helvetica,sans-serif" '
        f'font-size="{size}" font-weight="700" text-anchor="middle" fill="#fff">'
        f"{escape(glyph)}</text></svg>"
    )


def sns_svg(key: str) -> str | None:
    preset = SNS_PRESETS.get(key)
    if preset is None:
        return None
    _title, _prefix, color, glyph = preset
    return _badge_svg(glyph, color)


def favicon_svg(doc: dict) -> str:
    title = (doc.get("siteTitle") or doc["profile"].get("name") or "L").strip()
    return _badge_svg((title[:1] or "L").upper(), doc["profile"]["theme"]["buttonColor"])


TEMPL_FRAGMENT = """
<style>
.lb-page{min-height:100vh;margin:0;box-sizing:border-box;background:var(--lb-bg);color:var(--lb-fg);font-family:var(--lb-font);line-height:1.5}
.lb-page *{box-sizing:border-box}
.lb-wrap{max-width:580px;margin:0 auto;padding:24px 16px 48px}
.lb-banner{overflow:hidden;white-space:nowrap;padding:8px 0;font-size:14px;background:var(--lb-banner-bg);color:var(--lb-banner-fg)}
.lb-marquee{display:inline-block;padding-left:100%;animation:lb-scroll 18s linear infinite}
.lb-banner--static .lb-marquee{display:block;padding:0 12px;text-align:center;animation:none;white-space:normal}
@keyframes lb-scroll{from{transform:translateX(0)}to{transform:translateX(-100%)}}
.lb-profile{text-align:center;margin-bottom:24px}
.lb-cover{display:block;width:100%;height:180px;object-fit:cover;border-radius:var(--lb-radius)}
.lb-avatar{width:96px;height:96px;border-radius:50%;object-fit:cover}
.lb-avatar--initial{display:inline-flex;align-items:center;justify-content:center;font-size:2em;font-weight:700;background:#e2e8f0;color:#64748b}
.lb-profile--both .lb-avatar{margin-top:-48px;border:4px solid var(--lb-bg);position:relative}
.lb-name{font-size:1.4em;font-weight:700;margin:12px 0 4px}
.lb-desc{white-space:pre-wrap;opacity:.85;margin:0}
.lb-search{margin-bottom:20px}
.lb-search input{width:100%;padding:12px 16px;font-size:15px;border:1px solid var(--lb-btn);border-radius:var(--lb-radius);background:transparent;color:inherit}
.lb-items{display:flex;flex-direction:column;gap:12px}
.lb-link{display:flex;align-items:center;gap:12px;text-decoration:none;background:var(--lb-btn);color:var(--lb-btn-fg);border:2px solid var(--lb-btn-border);border-radius:var(--lb-radius);padding:14px 18px;font-weight:600;transition:transform .1s ease}
.lb-link:hover{transform:scale(1.02)}
.lb-link span{flex:1;text-align:center;overflow-wrap:anywhere}
.lb-link img,.lb-link .lb-spacer{width:28px;height:28px;flex:none;border-radius:6px;object-fit:cover}
.lb-link--small{padding:8px 14px;font-size:.9em}
.lb-link--small img,.lb-link--small .lb-spacer{width:20px;height:20px}
.lb-link--large{padding:20px 22px;font-size:1.1em;min-height:72px}
.lb-link--large img,.lb-link--large .lb-spacer{width:44px;height:44px}
.lb-text{white-space:pre-wrap;text-align:center;margin:4px 0;padding:8px 12px;overflow-wrap:anywhere}
.lb-link--outlined span{text-shadow:-1px -1px 0 var(--lb-label-outline),1px -1px 0 var(--lb-label-outline),-1px 1px 0 var(--lb-label-outline),1px 1px 0 var(--lb-label-outline)}
.lb-ad{text-align:center;overflow:hidden}
.lb-empty{text-align:center;opacity:.6;margin:16px 0}
.lb-page [hidden]{display:none !important}
</style>
<div class="lb-page" style="--lb-bg:{{ t.backgroundColor }};--lb-fg:{{ t.textColor }};--lb-btn:{{ t.buttonColor }};--lb-btn-fg:{{ t.buttonTextColor }};--lb-btn-border:{{ t.buttonBorderColor or t.buttonColor }};--lb-label-outline:{{ t.textBorderColor or 'transparent' }};--lb-radius:{{ radius }};--lb-banner-bg:{{ banner.background }};--lb-banner-fg:{{ banner.textColor }};--lb-font:{{ t.fontFamily or '-apple-system,BlinkMacSystemFont,&quot;Segoe UI&quot;,Roboto,&quot;Noto Sans&quot;,sans-serif'|safe }}">
{% if banner.enabled and banner.text.strip() %}
<div class="lb-banner{% if not banner.scroll %} lb-banner--static{% endif %}" role="marquee">
  <span class="lb-marquee">{{ banner.text }}{% if banner.scroll %}&emsp;&emsp;&emsp;{{ banner.text }}{% endif %}</span>
</div>
{% endif %}
{{ trusted_markup(doc.customBodyCode) }}
<main class="lb-wrap">
  {% if doc.profileEnabled %}
  <header class="lb-profile lb-profile--{{ p.profileLayout }}">
    {% if p.profileLayout in ('cover', 'both') and p.coverImage %}
    <img class="lb-cover" src="{{ p.coverImage }}" alt="">
    {% endif %}
    {% if p.profileLayout in ('avatar', 'both') %}
      {% if p.avatar %}
    <img class="lb-avatar" src="{{ p.avatar }}" alt="{{ p.name }}">
      {% else %}
    <span class="lb-avatar lb-avatar--initial" aria-hidden="true">{{ (p.name or 'N')[:1]|upper }}</span>
      {% endif %}
    {% endif %}
    {% if p.name %}<h1 class="lb-name">{{ p.name }}</h1>{% endif %}
    {% if p.description %}<p class="lb-desc">{{ p.description }}</p>{% endif %}
  </header>
  {% endif %}

  {% if doc.searchEnabled %}
  <form class="lb-search" method="get" action="{{ url_for('index') }}" role="search"
        onsubmit="return false">
    <input id="lb-q" type="search" name="q" value="{{ query }}"
           placeholder="{{ doc.searchPlaceholder }}" aria-label="{{ doc.searchPlaceholder }}">
  </form>
  {% endif %}

  <section class="lb-items">
    {% for item in items %}
      {% if item.type == 'link' %}
      <a class="lb-link lb-link--{{ item.layout }}{% if t.textBorderColor %} lb-link--outlined{% endif %}" href="{{ item.url or '#' }}"
         {% if item.url.startswith(('http://', 'https://', '//')) %}target="_blank" rel="noopener"{% endif %}
         data-id="{{ item.id }}" data-search="{{ item.title|lower }}">
        {% if item.icon %}<img src="{{ icon_src(item.icon) }}" alt="" loading="lazy">{% endif %}
        <span>{{ item.title }}</span>
        {% if item.icon %}<i class="lb-spacer"></i>{% endif %}
      </a>
      {% elif item.type == 'text' %}
      <p class="lb-text"
         data-id="{{ item.id }}" data-search="{{ item.content|lower }}">{{ item.content }}</p>
      {% else %}
      <div class="lb-ad" data-id="{{ item.id }}">{{ trusted_markup(item.adHtml or doc.customBodyCode) }}</div>
      {% endif %}
    {% endfor %}
    {% if doc.searchEnabled %}
    <p class="lb-empty" data-lb-empty {% if not no_matches %}hidden{% endif %}>No matching links.</p>
    {% endif %}
  </section>
</main>
{% if doc.searchEnabled %}
<script>
(function () {
  var input = document.getElementById("lb-q");
  if (!input) return;
  var rows = [].slice.call(document.querySelectorAll(".lb-page [data-search]"));
  var empty = document.querySelector(".lb-page [data-lb-empty]");
  function apply() {
    var q = input.value.trim().toLowerCase(), shown = 0;
    rows.forEach(function (el) {
      var hit = !q || el.getAttribute("data-search").indexOf(q) !== -1;
      el.hidden = !hit;
      if (hit) shown++;
    });
    if (empty) empty.hidden = !(q && shown === 0);
  }
  input.addEventListener("input", apply);
  apply();
})();
</script>
{% endif %}
</div>
"""

TEMPL_PUBLIC = """<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>{{ doc.siteTitle or p.name }}</title>
{% if p.description %}<meta name="description" content="{{ p.description }}">{% endif %}
<link rel="icon" href="{{ doc.faviconUrl or url_for('favicon') }}">
<style>html,body{margin:0;padding:0;background:{{ t.backgroundColor }}}</style>
{{ trusted_markup(doc.customHeadCode) }}
</head>
<body>
{{ fragment }}
<script>
(function () {
  if (window.__lbVisitSent) return;
  window.__lbVisitSent = true;
  var source = new URLSearchParams(location.search).get("source") || "direct";
  setTimeout(function () {
    var headers = {"Content-Type": "application/json"};
    {% if csrf_token() %}headers["X-CSRFToken"] = {{ csrf_token()|tojson }};{% endif %}
    fetch({{ url_for('api_analytics')|tojson }}, {
      method: "POST",
      headers: headers,
      credentials: "same-origin",
      keepalive: true,
      body: JSON.stringify({source: source, path: location.pathname})
    }).catch(function () {});
  }, 1000);
})();
</script>
</body>
</html>
"""


###############################################################################
# Templates (operator pages)
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or 'linkinbio' }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<meta name="robots" content="noindex">
<link rel="icon" type="image/svg+xml" href="/favicon.svg">
<style>
html{font-size:62.5%;font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,"Noto Sans",sans-serif}
body{font-size:1.6rem;line-height:1.5;max-width:38em;margin:auto;color:#c9c9c9;background:#222;padding:13px}
body.wide{max-width:none;padding:0}
a{color:#fff}
h1,h2,h3{color:#fff;line-height:1.15}
hr{border:0;border-top:1px solid #444}
label{display:block;margin:.6rem 0 .25rem;font-weight:600;font-size:.85em;color:#aaa}
input,select,textarea{width:100%;color:#e0e0e0;padding:6px 10px;margin-bottom:6px;background:#2b2b2b;border:1px solid #555;border-radius:6px;box-sizing:border-box;font:inherit}
input[type=checkbox]{width:auto;margin-right:.4rem}
input[type=color]{height:3.2rem;padding:2px}
input:focus,select:focus,textarea:focus{border-color:#fff;outline:0}
button,.button{display:inline-block;padding:5px 12px;background:#fff;color:#222;border:1px solid #fff;border-radius:4px;cursor:pointer;font:inherit;text-decoration:none}
button:hover,.button:hover{background:#c9c9c9}
button.ghost{background:transparent;color:#c9c9c9;border-color:#555}
button.danger{background:transparent;color:#f88;border-color:#844}
button[disabled]{opacity:.5;cursor:default}
.flash{padding:.6rem 1rem;background:#3a1f1f;border-left:4px solid #d55;margin:1rem 0}
</style>
<body class="{{ body_class or '' }}">
"""

TEMPL_EPILOG = """
{% if not body_class %}
<footer style="margin-top:2em;padding-top:1em;font-size:.8em;color:#888;border-top:1px solid #444;">
  linkinbio <span style="color:#aaa;">v{{ version }}</span>
</footer>
{% endif %}
</body>
</html>
"""

TEMPL_LOGIN = wrap("""
{% block body %}
<h1>Sign in</h1>
<hr>
{% for msg in get_flashed_messages() %}<div class="flash">{{ msg }}</div>{% endfor %}
<form method="post" id="token-form">
  {% if csrf_token() %}
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  {% endif %}
  <label for="token">One-time token</label>
  <input id="token" name="token" type="password" autocomplete="current-password" autofocus>
  <button type="submit">Sign in</button>
</form>
<p style="font-size:.8em;color:#888;">Run <code>flask --app linkinbio.page token</code> to get a fresh token.</p>
{% endblock %}
""")

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
  <p>Something broke on our side. Please try again in a minute.</p>
{% endblock %}
""")

TEMPL_403 = wrap("""
{% block body %}
  <h2>Forbidden</h2>
  <p>You need to <a href="{{ url_for('login') }}">sign in</a> for that.</p>
{% endblock %}
""")


###############################################################################
# Authentication
###############################################################################
def validate_token(token: str, max_age: int = 60) -> bool:
    """
    • Unsign + age-check in one step (`max_age` seconds).
    • Compare the payload (“handle”) against the hashed copy in the DB.
    """
    try:
        handle = signer.unsign(token, max_age=max_age).decode()
    except SignatureExpired:
        return False
    except BadSignature:
        return False

    row = get_db().execute("SELECT token_hash FROM user LIMIT 1").fetchone()
    return bool(row and row["token_hash"] and verify_token(row["token_hash"], handle))


def login_required() -> None:
    if not session.get("logged_in"):
        abort(403)


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            now = time()
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

        wrapped.hits = hits
        return wrapped

    return decorator


@app.route("/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def login():
    token = request.form.get("token", "").strip()

    if request.method == "POST":
        if token and validate_token(token):
            # burn the token right away
            db = get_db()
            db.execute(
                "UPDATE user SET token_hash=? WHERE id=1",
                (hash_token(secrets.token_hex(16)),),
            )
            db.commit()

            session.clear()
            session.permanent = True
            session["logged_in"] = True
            session["csrf"] = secrets.token_hex(16)
            return redirect(url_for("admin"))
        app.logger.warning("Failed login attempt from %s", request.remote_addr)
        flash("Invalid or expired token.")

    return render_template_string(TEMPL_LOGIN, title="Sign in")


@app.route("/logout")
def logout():
    session.clear()
    return redirect(url_for("index"))


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@app.before_request
def csrf_protect():
    if request.method in SAFE_METHODS:
        return

    # anonymous POSTs (login, visit beacons) carry no session token
    if not session.get("logged_in"):
        return

    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "SAMEORIGIN",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Permissions-Policy": "interest-cohort=()",
        }
    )
    return resp


###############################################################################
# Public routes
###############################################################################
@app.route("/")
def index():
    doc = get_store().load()
    return render_page(doc, request.args.get("q", ""))


@app.route("/uploads/<path:key>")
def uploaded_file(key):
    upload_dir = app.config.get("UPLOAD_DIR")
    if not upload_dir:
        abort(404)
    return send_from_directory(upload_dir, key, max_age=31536000)


@app.route("/sns/<key>.svg")
def sns_icon(key):
    svg = sns_svg(key)
    if svg is None:
        abort(404)
    return Response(
        svg,
        mimetype="image/svg+xml",
        headers={"Cache-Control": "public, max-age=604800"},
    )


@app.route("/favicon.svg")
def favicon():
    doc = get_store().load()
    if doc["faviconUrl"]:
        return redirect(doc["faviconUrl"])
    return Response(
        favicon_svg(doc),
        mimetype="image/svg+xml",
        headers={"Cache-Control": "public, max-age=3600"},
    )


@app.route("/robots.txt")
def robots():
    rules = "User-agent: *\nAllow: /\nDisallow: /admin\nDisallow: /api/\n"
    return (
        Response(rules, mimetype="text/plain"),
        200,
        {"Cache-Control": "public, max-age=86400"},
    )


###############################################################################
# Editor + JSON API
###############################################################################
@app.route("/admin")
def admin():
    if not session.get("logged_in"):
        return redirect(url_for("login"))
    doc = get_store().load()
    return render_template_string(
        TEMPL_ADMIN,
        title=f"Edit · {doc['siteTitle'] or 'linkinbio'}",
        body_class="wide",
        doc=doc,
        autosave_ms=app.config.get("AUTOSAVE_DELAY_MS", AUTOSAVE_DELAY_MS),
        ranges=list(ANALYTICS_RANGES) + ["custom"],
        upload_ready=r2_is_configured() or bool(app.config.get("UPLOAD_DIR")),
        presets={k: {"title": v[0], "url": v[1]} for k, v in SNS_PRESETS.items()},
        new_items={k: {**ITEM_DEFAULTS[k], **NEW_ITEM_TEXT[k]} for k in ITEM_TYPES},
    )


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise DocumentError("Request body must be a JSON object.")
    return data


def _edit(mutate, *, status: int = 200, key: str | None = None):
    """Apply *mutate* to a fresh editor session and persist immediately."""
    login_required()
    editor = EditorSession(get_store(), autosave=False)
    try:
        result = mutate(editor)
    except DocumentError as exc:
        return {"error": str(exc)}, 400
    except ItemNotFound as exc:
        return {"error": f"No item with id {exc.args[0]!r}."}, 404

    if not editor.save_now():
        code = 400 if isinstance(editor.last_exception, DocumentError) else 500
        return {"error": editor.last_error or "Save failed."}, code

    payload = {"success": True, "document": editor.doc}
    if key:
        payload[key] = result
    return payload, status


@app.route("/api/document")
def api_document():
    login_required()
    return get_store().load()


@app.route("/api/save", methods=["POST"])
def api_save():
    login_required()
    data = request.get_json(silent=True)
    if data is None:
        return {"error": "Request body must be JSON."}, 400
    try:
        get_store().save(data)
    except DocumentError as exc:
        return {"error": str(exc)}, 400
    except StoreError as exc:
        app.logger.exception("Saving page document failed")
        return {"error": str(exc)}, 500
    return {"success": True}


@app.route("/api/preview", methods=["POST"])
def api_preview():
    login_required()
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return {"error": "Request body must be a JSON object."}, 400
    html = render_page(data, preview=True)
    return Response(html, mimetype="text/html")


@app.route("/api/profile", methods=["PATCH"])
def api_profile():
    return _edit(lambda ed: ed.update_profile(_json_body()))


@app.route("/api/theme", methods=["PATCH"])
def api_theme():
    return _edit(lambda ed: ed.update_theme(_json_body()))


@app.route("/api/site", methods=["PATCH"])
def api_site():
    return _edit(lambda ed: ed.update_site(_json_body()))


@app.route("/api/links", methods=["POST"])
def api_add_item():
    def mutate(ed):
        fields = _json_body()
        kind = fields.pop("type", "link")
        return ed.add_item(kind, fields or None)

    return _edit(mutate, status=201, key="item")


@app.route("/api/links/<item_id>", methods=["PATCH", "DELETE"])
def api_item(item_id):
    if request.method == "DELETE":
        return _edit(lambda ed: ed.remove_item(item_id))
    return _edit(lambda ed: ed.update_item(item_id, _json_body()))


@app.route("/api/links/reorder", methods=["POST"])
def api_reorder():
    def mutate(ed):
        body = _json_body()
        source, target = body.get("source"), body.get("target")
        if not isinstance(source, str) or not isinstance(target, str):
            raise DocumentError("source and target must be item ids.")
        return ed.reorder(source, target)

    return _edit(mutate)


@app.route("/api/links/<item_id>/move", methods=["POST"])
def api_move(item_id):
    return _edit(lambda ed: ed.move(item_id, _json_body().get("direction")))


@app.route("/api/upload", methods=["POST"])
def api_upload():
    login_required()
    try:
        url = store_upload(
            request.files.get("file"), request.form.get("folder", "uploads")
        )
    except UploadError as exc:
        return {"error": str(exc)}, exc.status
    return {"url": url}, 201


@app.route("/api/analytics", methods=["POST"])
@rate_limit(max_requests=30, window=60)
def api_analytics():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}
    source = data.get("source") or request.args.get("source")
    path = data.get("path") if isinstance(data.get("path"), str) else "/"
    try:
        record_visit(source, path, request.user_agent.string)
    except StoreError:
        app.logger.exception("Recording visit failed")
        return {"error": "Could not record visit."}, 500
    return {"success": True}


@app.route("/api/analytics", methods=["GET"])
def api_analytics_stats():
    login_required()
    try:
        return aggregate(
            request.args.get("range", "all"),
            request.args.get("start"),
            request.args.get("end"),
        )
    except ValueError as exc:
        return {"error": str(exc)}, 400
    except StoreError:
        app.logger.exception("Reading analytics failed")
        return {"error": "Analytics store unavailable."}, 500


TEMPL_ADMIN = wrap("""
{% block body %}
<style>
.ed{display:grid;grid-template-columns:minmax(320px,1fr) minmax(360px,520px);height:100vh}
.ed-preview{overflow:auto;background:#111;display:flex;justify-content:center;padding:24px}
.ed-phone{width:390px;max-width:100%;min-height:700px;border:10px solid #333;border-radius:36px;overflow:hidden;background:#fff;align-self:flex-start}
.ed-panel{overflow:auto;border-left:1px solid #333;padding:0 16px 48px;background:#222}
.ed-bar{position:sticky;top:0;z-index:5;background:#222;display:flex;align-items:center;gap:8px;padding:12px 0;border-bottom:1px solid #333}
.ed-bar .spacer{flex:1}
.ed-status{font-size:.8em;color:#999}
.ed-status.ok{color:#8c8}.ed-status.err{color:#f88}
.ed-tabs{display:flex;gap:4px;margin:12px 0}
.ed-tabs button{background:transparent;color:#aaa;border-color:#444}
.ed-tabs button[aria-selected=true]{background:#fff;color:#222}
.ed-card{border:1px solid #444;border-radius:8px;padding:10px 12px;margin-bottom:10px;background:#2a2a2a}
.ed-card.dragging{opacity:.4}.ed-card.over{border-color:#fff}
.ed-card-head{display:flex;align-items:center;gap:6px;margin-bottom:6px}
.ed-card-head .grip{cursor:grab;user-select:none;color:#888;padding:0 4px}
.ed-card-head .kind{flex:1;font-size:.75em;text-transform:uppercase;letter-spacing:.05em;color:#999}
.ed-row{display:flex;gap:8px}.ed-row>*{flex:1}
.ed-stats .big{font-size:2.2em;color:#fff;font-weight:700}
.ed-bars div{display:flex;gap:6px;align-items:center;font-size:.8em}
.ed-bars span.bar{display:inline-block;height:8px;background:#8ab4f8;border-radius:2px}
[hidden]{display:none !important}
@media (max-width:900px){.ed{grid-template-columns:1fr;height:auto}.ed-preview{order:2}}
</style>

<div class="ed">
  <section class="ed-preview"><div class="ed-phone" id="preview" aria-label="Live preview"></div></section>

  <section class="ed-panel">
    <div class="ed-bar">
      <strong>Editor</strong>
      <span class="ed-status" id="status">All changes saved</span>
      <span class="spacer"></span>
      <a class="button ghost" href="{{ url_for('index') }}" target="_blank">View</a>
      <button type="button" id="save-now">Save now</button>
      <a class="button ghost" href="{{ url_for('logout') }}">Sign out</a>
    </div>

    <div class="ed-tabs" role="tablist">
      <button type="button" role="tab" data-tab="page" aria-selected="true">Page</button>
      <button type="button" role="tab" data-tab="design" aria-selected="false">Design</button>
      <button type="button" role="tab" data-tab="site" aria-selected="false">Site</button>
      <button type="button" role="tab" data-tab="stats" aria-selected="false">Stats</button>
    </div>

    <div data-pane="page">
      <label><input type="checkbox" data-bind="profileEnabled"> Show profile</label>
      <label for="f-name">Name</label>
      <input id="f-name" data-bind="profile.name">
      <label for="f-desc">Description</label>
      <textarea id="f-desc" rows="3" data-bind="profile.description"></textarea>
      <label for="f-layout">Profile layout</label>
      <select id="f-layout" data-bind="profile.profileLayout">
        <option value="avatar">Avatar</option>
        <option value="cover">Cover image</option>
        <option value="both">Cover + avatar</option>
      </select>
      <div class="ed-row">
        <div>
          <label for="f-avatar">Avatar URL</label>
          <input id="f-avatar" data-bind="profile.avatar">
          {% if upload_ready %}<input type="file" accept="image/*" data-upload="profile.avatar" data-folder="avatars">{% endif %}
        </div>
        <div>
          <label for="f-cover">Cover URL</label>
          <input id="f-cover" data-bind="profile.coverImage">
          {% if upload_ready %}<input type="file" accept="image/*" data-upload="profile.coverImage" data-folder="covers">{% endif %}
        </div>
      </div>
      <hr>
      <div class="ed-row" style="margin-bottom:10px;">
        <button type="button" class="ghost" data-add="link">+ Link</button>
        <button type="button" class="ghost" data-add="text">+ Text</button>
        <button type="button" class="ghost" data-add="ad">+ Ad slot</button>
      </div>
      <div id="items"></div>
    </div>

    <div data-pane="design" hidden>
      <div class="ed-row">
        <div><label>Background</label><input type="color" data-bind="profile.theme.backgroundColor"></div>
        <div><label>Text</label><input type="color" data-bind="profile.theme.textColor"></div>
      </div>
      <div class="ed-row">
        <div><label>Button</label><input type="color" data-bind="profile.theme.buttonColor"></div>
        <div><label>Button text</label><input type="color" data-bind="profile.theme.buttonTextColor"></div>
      </div>
      <label for="f-bstyle">Button style</label>
      <select id="f-bstyle" data-bind="profile.theme.buttonStyle">
        <option value="rounded">Rounded</option>
        <option value="square">Square</option>
        <option value="pill">Pill</option>
      </select>
      <div class="ed-row">
        <div><label>Button border (optional)</label><input placeholder="#000000" data-bind="profile.theme.buttonBorderColor"></div>
        <div><label>Text border (optional)</label><input placeholder="#000000" data-bind="profile.theme.textBorderColor"></div>
      </div>
      <label for="f-font">Font family</label>
      <input id="f-font" placeholder="system default" data-bind="profile.theme.fontFamily">
    </div>

    <div data-pane="site" hidden>
      <label for="f-title">Site title</label>
      <input id="f-title" data-bind="siteTitle">
      <label for="f-fav">Favicon URL</label>
      <input id="f-fav" data-bind="faviconUrl">
      {% if upload_ready %}<input type="file" accept="image/*" data-upload="faviconUrl" data-folder="favicons">{% endif %}
      <hr>
      <label><input type="checkbox" data-bind="searchEnabled"> Show search box</label>
      <label for="f-ph">Search placeholder</label>
      <input id="f-ph" data-bind="searchPlaceholder">
      <hr>
      <label><input type="checkbox" data-bind="adBanner.enabled"> Show banner</label>
      <label><input type="checkbox" data-bind="adBanner.scroll"> Scroll banner text</label>
      <label for="f-banner">Banner text</label>
      <input id="f-banner" data-bind="adBanner.text">
      <div class="ed-row">
        <div><label>Banner background</label><input type="color" data-bind="adBanner.background"></div>
        <div><label>Banner text colour</label><input type="color" data-bind="adBanner.textColor"></div>
      </div>
      <hr>
      <label for="f-head">Custom &lt;head&gt; code</label>
      <textarea id="f-head" rows="4" spellcheck="false" data-bind="customHeadCode"></textarea>
      <label for="f-body">Custom body code (also the default ad slot markup)</label>
      <textarea id="f-body" rows="4" spellcheck="false" data-bind="customBodyCode"></textarea>
    </div>

    <div data-pane="stats" class="ed-stats" hidden>
      <div class="ed-row">
        <select id="st-range">
          {% for r in ranges %}<option value="{{ r }}"{% if r == '30d' %} selected{% endif %}>{{ r }}</option>{% endfor %}
        </select>
        <input type="date" id="st-start" hidden>
        <input type="date" id="st-end" hidden>
        <button type="button" class="ghost" id="st-load">Refresh</button>
      </div>
      <div class="ed-row">
        <div><label>Total</label><div class="big" id="st-total">–</div></div>
        <div><label>Today</label><div class="big" id="st-today">–</div></div>
      </div>
      <label>Top sources</label>
      <div class="ed-bars" id="st-sources"></div>
      <label>Daily visits</label>
      <div class="ed-bars" id="st-daily"></div>
    </div>
  </section>
</div>

<script type="application/json" id="doc-json">{{ doc|tojson }}</script>
<script>
(function () {
  "use strict";
  const CSRF = {{ csrf_token()|tojson }};
  const AUTOSAVE_MS = {{ autosave_ms|int }};
  const PRESETS = {{ presets|tojson }};
  const NEW_ITEMS = {{ new_items|tojson }};
  const UPLOAD_READY = {{ upload_ready|tojson }};
  let doc = JSON.parse(document.getElementById("doc-json").textContent);
  let timer = null, previewTimer = null, saving = false, queued = false, dirty = false, edits = 0;
  const statusEl = document.getElementById("status");

  function setStatus(text, cls) {
    statusEl.textContent = text;
    statusEl.className = "ed-status" + (cls ? " " + cls : "");
  }

  function api(url, opts) {
    opts = opts || {};
    opts.headers = Object.assign({"X-CSRFToken": CSRF}, opts.headers || {});
    opts.credentials = "same-origin";
    return fetch(url, opts);
  }

  function postJSON(url, data) {
    return api(url, {
      method: "POST",
      headers: {"Content-Type": "application/json"},
      body: JSON.stringify(data)
    });
  }

  // ---- saving -------------------------------------------------------
  function schedule() {
    dirty = true;
    edits += 1;
    setStatus("Unsaved changes…");
    clearTimeout(timer);
    timer = setTimeout(save, AUTOSAVE_MS);
    schedulePreview();
  }

  async function save() {
    clearTimeout(timer);
    timer = null;
    if (saving) { queued = true; return; }
    saving = true;
    const sent = edits;
    setStatus("Saving…");
    try {
      const res = await postJSON("{{ url_for('api_save') }}", doc);
      const body = await res.json().catch(function () { return {}; });
      if (!res.ok) throw new Error(body.error || res.statusText);
      if (edits === sent) {
        dirty = false;
        setStatus("All changes saved", "ok");
      } else {
        setStatus("Unsaved changes…");
      }
    } catch (err) {
      setStatus("Save failed: " + err.message, "err");
    } finally {
      saving = false;
      if (queued) { queued = false; save(); }
    }
  }

  document.getElementById("save-now").addEventListener("click", save);
  document.addEventListener("keydown", function (e) {
    if ((e.ctrlKey || e.metaKey) && e.key === "s") { e.preventDefault(); save(); }
  });
  window.addEventListener("beforeunload", function (e) {
    if (dirty || saving) { e.preventDefault(); e.returnValue = ""; }
  });

  // ---- preview ------------------------------------------------------
  function activateScripts(root) {
    root.querySelectorAll("script").forEach(function (old) {
      const s = document.createElement("script");
      for (const a of old.attributes) s.setAttribute(a.name, a.value);
      s.textContent = old.textContent;
      old.replaceWith(s);
    });
  }

  async function renderPreview() {
    const res = await postJSON("{{ url_for('api_preview') }}", doc);
    if (!res.ok) return;
    const box = document.getElementById("preview");
    box.innerHTML = await res.text();
    activateScripts(box);
  }

  function schedulePreview() {
    clearTimeout(previewTimer);
    previewTimer = setTimeout(renderPreview, 250);
  }

  // ---- bound fields -------------------------------------------------
  function getPath(obj, path) {
    return path.split(".").reduce(function (o, k) { return o == null ? o : o[k]; }, obj);
  }

  function setPath(obj, path, value) {
    const keys = path.split(".");
    const last = keys.pop();
    const target = keys.reduce(function (o, k) { return (o[k] = o[k] || {}); }, obj);
    target[last] = value;
  }

  function fillBound() {
    document.querySelectorAll("[data-bind]").forEach(function (el) {
      const v = getPath(doc, el.dataset.bind);
      if (el.type === "checkbox") el.checked = !!v;
      else el.value = v == null ? "" : v;
    });
  }

  document.querySelectorAll("[data-bind]").forEach(function (el) {
    const ev = el.type === "checkbox" || el.tagName === "SELECT" ? "change" : "input";
    el.addEventListener(ev, function () {
      setPath(doc, el.dataset.bind, el.type === "checkbox" ? el.checked : el.value);
      schedule();
    });
  });

  // ---- uploads ------------------------------------------------------
  async function upload(file, folder) {
    const fd = new FormData();
    fd.append("file", file);
    fd.append("folder", folder || "uploads");
    setStatus("Uploading…");
    const res = await api("{{ url_for('api_upload') }}", {method: "POST", body: fd});
    const body = await res.json().catch(function () { return {}; });
    if (!res.ok) { setStatus("Upload failed: " + (body.error || res.statusText), "err"); return null; }
    return body.url;
  }

  document.querySelectorAll("[data-upload]").forEach(function (el) {
    el.addEventListener("change", async function () {
      if (!el.files.length) return;
      const url = await upload(el.files[0], el.dataset.folder);
      el.value = "";
      if (!url) return;
      setPath(doc, el.dataset.upload, url);
      fillBound();
      schedule();
    });
  });

  // ---- items --------------------------------------------------------
  let dragId = null;

  function indexOf(id) {
    return doc.links.findIndex(function (it) { return it.id === id; });
  }

  function reorder(sourceId, targetId) {
    const src = indexOf(sourceId), dst = indexOf(targetId);
    if (src < 0 || dst < 0 || src === dst) return;
    const moved = doc.links.splice(src, 1)[0];
    doc.links.splice(dst, 0, moved);
    renderItems();
    schedule();
  }

  function move(idx, step) {
    const other = idx + step;
    if (other < 0 || other >= doc.links.length) return;
    const tmp = doc.links[idx];
    doc.links[idx] = doc.links[other];
    doc.links[other] = tmp;
    renderItems();
    schedule();
  }

  function el(tag, attrs, children) {
    const node = document.createElement(tag);
    Object.keys(attrs || {}).forEach(function (k) {
      if (k === "text") node.textContent = attrs[k];
      else if (k.startsWith("on")) node.addEventListener(k.slice(2), attrs[k]);
      else node.setAttribute(k, attrs[k]);
    });
    (children || []).forEach(function (c) { if (c) node.appendChild(c); });
    return node;
  }

  function field(item, key, label, multiline) {
    const input = el(multiline ? "textarea" : "input", {
      oninput: function () { item[key] = input.value; schedule(); }
    });
    if (multiline) input.rows = 3;
    input.value = item[key] || "";
    return el("div", {}, [el("label", {text: label}), input]);
  }

  function presetPicker(item) {
    const sel = el("select", {
      onchange: function () {
        const key = sel.value;
        if (!key) {
          item.icon = "";
        } else {
          const p = PRESETS[key];
          item.icon = "sns:" + key;
          if (!item.title || item.title === NEW_ITEMS.link.title) item.title = p.title;
          if (!item.url || item.url === NEW_ITEMS.link.url) item.url = p.url;
        }
        renderItems();
        schedule();
      }
    }, [el("option", {value: "", text: "No preset icon"})]);
    Object.keys(PRESETS).forEach(function (key) {
      sel.appendChild(el("option", {value: key, text: PRESETS[key].title}));
    });
    sel.value = (item.icon || "").startsWith("sns:") ? item.icon.slice(4) : "";
    return el("div", {}, [el("label", {text: "Icon preset"}), sel]);
  }

  function card(item, idx) {
    const enabled = el("input", {
      type: "checkbox",
      title: "Visible",
      onchange: function () { item.enabled = enabled.checked; schedule(); }
    });
    enabled.checked = item.enabled !== false;

    const head = el("div", {class: "ed-card-head"}, [
      el("span", {class: "grip", text: "⠿", title: "Drag to reorder"}),
      el("span", {class: "kind", text: item.type}),
      enabled,
      el("button", {type: "button", class: "ghost", text: "↑", title: "Move up", onclick: function () { move(idx, -1); }}),
      el("button", {type: "button", class: "ghost", text: "↓", title: "Move down", onclick: function () { move(idx, 1); }}),
      el("button", {type: "button", class: "danger", text: "✕", title: "Delete", onclick: function () {
        if (!confirm("Delete this item?")) return;
        doc.links.splice(indexOf(item.id), 1);
        renderItems();
        schedule();
      }})
    ]);

    const body = el("div");
    if (item.type === "link") {
      body.appendChild(field(item, "title", "Title"));
      body.appendChild(field(item, "url", "URL"));
      const layout = el("select", {
        onchange: function () { item.layout = layout.value; schedule(); }
      }, ["small", "medium", "large"].map(function (v) {
        return el("option", {value: v, text: v});
      }));
      layout.value = item.layout || "medium";
      body.appendChild(el("div", {class: "ed-row"}, [
        presetPicker(item),
        el("div", {}, [el("label", {text: "Size"}), layout])
      ]));
      body.appendChild(field(item, "icon", "Icon URL"));
      if (UPLOAD_READY) {
        const file = el("input", {type: "file", accept: "image/*", onchange: async function () {
          if (!file.files.length) return;
          const url = await upload(file.files[0], "icons");
          if (!url) return;
          item.icon = url;
          renderItems();
          schedule();
        }});
        body.appendChild(file);
      }
    } else if (item.type === "text") {
      body.appendChild(field(item, "content", "Text", true));
    } else {
      body.appendChild(field(item, "adHtml", "Ad markup (empty = custom body code)", true));
    }

    const node = el("div", {class: "ed-card", "data-id": item.id}, [head, body]);
    head.querySelector(".grip").addEventListener("mousedown", function () { node.draggable = true; });
    node.addEventListener("dragstart", function (e) {
      dragId = item.id;
      node.classList.add("dragging");
      e.dataTransfer.effectAllowed = "move";
    });
    node.addEventListener("dragend", function () {
      node.draggable = false;
      node.classList.remove("dragging");
    });
    node.addEventListener("dragover", function (e) { e.preventDefault(); node.classList.add("over"); });
    node.addEventListener("dragleave", function () { node.classList.remove("over"); });
    node.addEventListener("drop", function (e) {
      e.preventDefault();
      node.classList.remove("over");
      if (dragId && dragId !== item.id) reorder(dragId, item.id);
      dragId = null;
    });
    return node;
  }

  function renderItems() {
    const box = document.getElementById("items");
    box.replaceChildren.apply(box, doc.links.map(card));
  }

  document.querySelectorAll("[data-add]").forEach(function (btn) {
    btn.addEventListener("click", function () {
      const kind = btn.dataset.add;
      doc.links.push(Object.assign({id: String(Date.now()), type: kind}, NEW_ITEMS[kind]));
      renderItems();
      schedule();
    });
  });

  // ---- tabs ---------------------------------------------------------
  document.querySelectorAll("[data-tab]").forEach(function (tab) {
    tab.addEventListener("click", function () {
      document.querySelectorAll("[data-tab]").forEach(function (t) {
        t.setAttribute("aria-selected", t === tab ? "true" : "false");
      });
      document.querySelectorAll("[data-pane]").forEach(function (p) {
        p.hidden = p.dataset.pane !== tab.dataset.tab;
      });
      if (tab.dataset.tab === "stats") loadStats();
    });
  });

  // ---- stats --------------------------------------------------------
  const rangeSel = document.getElementById("st-range");
  const startIn = document.getElementById("st-start");
  const endIn = document.getElementById("st-end");

  function bars(box, pairs) {
    const max = Math.max.apply(null, pairs.map(function (p) { return p[1]; }).concat([1]));
    box.replaceChildren.apply(box, pairs.map(function (p) {
      const bar = el("span", {class: "bar"});
      bar.style.width = Math.max(2, Math.round(160 * p[1] / max)) + "px";
      return el("div", {}, [el("span", {text: p[0], style: "min-width:9em"}), bar, el("span", {text: String(p[1])})]);
    }));
  }

  async function loadStats() {
    const params = new URLSearchParams({range: rangeSel.value});
    if (rangeSel.value === "custom") {
      if (!startIn.value || !endIn.value) return;
      params.set("start", startIn.value);
      params.set("end", endIn.value);
    }
    const res = await api("{{ url_for('api_analytics_stats') }}?" + params.toString());
    const data = await res.json().catch(function () { return {}; });
    if (!res.ok) { setStatus("Stats: " + (data.error || res.statusText), "err"); return; }
    const today = new Date().toISOString().slice(0, 10);
    document.getElementById("st-total").textContent = data.totalVisits;
    document.getElementById("st-today").textContent = data.dailyVisits[today] || 0;
    bars(document.getElementById("st-sources"), Object.entries(data.referrers).slice(0, 5));
    bars(document.getElementById("st-daily"), Object.entries(data.dailyVisits));
  }

  rangeSel.addEventListener("change", function () {
    const custom = rangeSel.value === "custom";
    startIn.hidden = endIn.hidden = !custom;
    loadStats();
  });
  startIn.addEventListener("change", loadStats);
  endIn.addEventListener("change", loadStats);
  document.getElementById("st-load").addEventListener("click", loadStats);

  fillBound();
  renderItems();
  renderPreview();
})();
</script>
{% endblock %}
""")


###############################################################################
# Errors
###############################################################################
def _wants_json() -> bool:
    return request.path.startswith("/api/")


@app.errorhandler(403)
def forbidden(exc):
    if _wants_json():
        return {"error": "Forbidden."}, 403
    return render_template_string(TEMPL_403, title="Forbidden"), 403


@app.errorhandler(404)
def not_found(exc):
    if _wants_json():
        return {"error": "Not found."}, 404
    return render_template_string(TEMPL_404, title="Not found"), 404


@app.errorhandler(500)
def internal_error(exc):
    if _wants_json():
        return {"error": "Internal server error."}, 500
    return render_template_string(TEMPL_500, title="Server error"), 500


if __name__ == "__main__":
    app.run(debug=True)
