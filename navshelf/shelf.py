#!/usr/bin/env python3
"""
A single-file personal link directory.
"""

import json
import os
import re
import secrets
import sqlite3
import tempfile
import threading
import uuid
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from html import escape
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import Callable, DefaultDict, Iterable
from urllib.parse import quote, urlparse

import click
import markdown
import requests
from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    jsonify,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from itsdangerous import (
    BadData,
    BadSignature,
    SignatureExpired,
    TimestampSigner,
    URLSafeSerializer,
)
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash as verify_token
from werkzeug.security import generate_password_hash as hash_token

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = Path(os.environ.get("NAVSHELF_DB", str(ROOT / "navshelf.sqlite3")))
CACHE_DIR_DEFAULT = Path(
    os.environ.get(
        "NAVSHELF_CACHE_DIR", str(Path(tempfile.gettempdir()) / "navshelf-cache")
    )
)

SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = os.environ.get("NAVSHELF_SECRET_KEY") or (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
if not SECRET_FILE.exists():
    SECRET_FILE.write_text(SECRET_KEY)
TOKEN_LEN = 48
signer = TimestampSigner(SECRET_KEY, salt="login-token")
gate_signer = URLSafeSerializer(SECRET_KEY, salt="privacy-gate")

SITE_NAME = os.environ.get("NAVSHELF_SITE_NAME", "navshelf")
PASSPHRASE = os.environ.get("NAVSHELF_PASSPHRASE", "开门")

CACHE_SCHEMA_VERSION = "1.0"
PUBLIC_CACHE_KEY = "navshelf_cache"
ADMIN_CACHE_KEY = "navshelf_admin_cache"
PUBLIC_CACHE_TTL = int(os.environ.get("PUBLIC_CACHE_TTL", "300"))  # 5 min
ADMIN_CACHE_TTL = int(os.environ.get("ADMIN_CACHE_TTL", "120"))  # admin writes more
REFRESH_DEBOUNCE = float(os.environ.get("REFRESH_DEBOUNCE", "1.0"))
BACKGROUND_REFRESH = os.environ.get("BACKGROUND_REFRESH", "1") != "0"
REVEAL_CLEAR_DELAY_MS = 100

AUX_ENABLED = os.environ.get("AUX_ENABLED", "1") != "0"
AUX_TIMEOUT = float(os.environ.get("AUX_TIMEOUT", "3"))
AUX_CACHE_TTL = 24 * 60 * 60
AUX_RETRY_TTL = int(os.environ.get("AUX_RETRY_TTL", "600"))  # after a failed lookup
QUOTE_URL = os.environ.get("QUOTE_URL", "https://v.api.aa1.cn/api/yiyan/index.php")
WALLPAPER_URL = os.environ.get(
    "WALLPAPER_URL", "https://uapis.cn/api/v1/image/bing-daily"
)
QUOTE_CACHE_KEY = "daily_quote_cache"
WALLPAPER_CACHE_KEY = "wallpaper_cache"
FAVICON_CACHE_KEY = "favicon_cache"
QUOTE_FALLBACK = "Life gives you the answers, just never all of them at once."

TABLES = ("category", "link")
_TAG_RE = re.compile(r"<[^>]*>")
_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")

try:
    __version__ = version("navshelf")
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
    SESSION_COOKIE_SECURE=True,
    CACHE_DIR=str(CACHE_DIR_DEFAULT),
    PASSPHRASE=PASSPHRASE,
    PUBLIC_CACHE_TTL=PUBLIC_CACHE_TTL,
    ADMIN_CACHE_TTL=ADMIN_CACHE_TTL,
    REFRESH_DEBOUNCE=REFRESH_DEBOUNCE,
    BACKGROUND_REFRESH=BACKGROUND_REFRESH,
    AUX_ENABLED=AUX_ENABLED,
    AUX_TIMEOUT=AUX_TIMEOUT,
    QUOTE_URL=QUOTE_URL,
    WALLPAPER_URL=WALLPAPER_URL,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


@app.template_filter("mdinline")
def md_inline_filter(text: str | None) -> Markup:
    """Render a one-line description; raw HTML is escaped first."""
    html = markdown.markdown(escape(text or ""))
    if html.startswith("<p>") and html.endswith("</p>") and html.count("<p>") == 1:
        html = html[3:-4]
    return Markup(html)


def is_urlish(val: str | None) -> bool:
    return bool(val) and val.startswith(("http://", "https://", "/"))


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


###############################################################################
# Records
###############################################################################
def _field(raw: dict, key: str, kind, *, optional: bool = False):
    """Pull *key* out of *raw* and insist on its type (bool is not an int)."""
    if key not in raw:
        raise ValueError(f"missing field {key!r}")
    val = raw[key]
    if optional and val is None:
        return None
    if kind is int and isinstance(val, bool):
        raise ValueError(f"field {key!r} must be an integer")
    if not isinstance(val, kind):
        raise ValueError(f"field {key!r} has the wrong type")
    return val


@dataclass(frozen=True)
class Category:
    id: str
    name: str
    icon: str = ""
    sort_order: int = 0
    is_private: bool = False

    @classmethod
    def from_dict(cls, raw) -> "Category":
        if not isinstance(raw, dict):
            raise ValueError("category record must be an object")
        return cls(
            id=_field(raw, "id", str),
            name=_field(raw, "name", str),
            icon=_field(raw, "icon", str),
            sort_order=_field(raw, "sort_order", int),
            is_private=_field(raw, "is_private", bool),
        )


@dataclass(frozen=True)
class Link:
    id: str
    category_id: str
    title: str
    url: str
    description: str = ""
    icon: str | None = None
    sort_order: int = 0
    is_private: bool = False

    @classmethod
    def from_dict(cls, raw) -> "Link":
        if not isinstance(raw, dict):
            raise ValueError("link record must be an object")
        return cls(
            id=_field(raw, "id", str),
            category_id=_field(raw, "category_id", str),
            title=_field(raw, "title", str),
            url=_field(raw, "url", str),
            description=_field(raw, "description", str),
            icon=_field(raw, "icon", str, optional=True),
            sort_order=_field(raw, "sort_order", int),
            is_private=_field(raw, "is_private", bool),
        )


@dataclass(frozen=True)
class ViewCategory:
    """A category plus the links that survived filtering. Render-only."""

    category: Category
    links: tuple[Link, ...] = ()

    @property
    def id(self) -> str:
        return self.category.id

    @property
    def name(self) -> str:
        return self.category.name

    @property
    def icon(self) -> str:
        return self.category.icon

    @property
    def is_private(self) -> bool:
        return self.category.is_private


@dataclass(frozen=True)
class Dataset:
    """One self-consistent snapshot of every category and link."""

    categories: tuple[Category, ...] = ()
    links: tuple[Link, ...] = ()

    def nested(self) -> list[ViewCategory]:
        """Group links under their category; links without one are dropped."""
        by_cat: DefaultDict[str, list[Link]] = defaultdict(list)
        for link in self.links:
            by_cat[link.category_id].append(link)
        return [ViewCategory(c, tuple(by_cat.get(c.id, ()))) for c in self.categories]


###############################################################################
# Remote store (SQLite)
###############################################################################
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS user (
    id          INTEGER PRIMARY KEY,
    username    TEXT UNIQUE NOT NULL,
    token_hash  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS category (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL,
    icon        TEXT NOT NULL DEFAULT '',
    sort_order  INTEGER NOT NULL DEFAULT 0,
    created_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS link (
    id          TEXT PRIMARY KEY,
    category_id TEXT NOT NULL REFERENCES category(id) ON DELETE CASCADE,
    title       TEXT NOT NULL,
    url         TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    icon        TEXT,
    sort_order  INTEGER NOT NULL DEFAULT 0,
    created_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_category_order ON category(sort_order);
CREATE INDEX IF NOT EXISTS idx_link_category ON link(category_id);
CREATE INDEX IF NOT EXISTS idx_link_order ON link(sort_order);
"""


class StoreError(RuntimeError):
    """The store could not complete a read or a write."""


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    kind: str  # insert | update | delete
    record_id: str


def ensure_private_columns(db) -> None:
    """Add the is_private flag to category/link if missing (older DBs)."""
    for tbl in TABLES:
        cols = {row["name"] for row in db.execute(f"PRAGMA table_info({tbl})")}
        if "is_private" not in cols:
            db.execute(
                f"ALTER TABLE {tbl} ADD COLUMN is_private INTEGER NOT NULL DEFAULT 0"
            )
    db.commit()


def _row_to_category(row) -> Category:
    return Category(
        id=row["id"],
        name=row["name"],
        icon=row["icon"] or "",
        sort_order=row["sort_order"],
        is_private=bool(row["is_private"]),
    )


def _row_to_link(row) -> Link:
    return Link(
        id=row["id"],
        category_id=row["category_id"],
        title=row["title"],
        url=row["url"],
        description=row["description"] or "",
        icon=row["icon"] or None,
        sort_order=row["sort_order"],
        is_private=bool(row["is_private"]),
    )


class SqliteStore:
    """
    Authoritative copy of the directory.

    Every call opens its own connection, so the store can be used from the
    request thread and from background refresh threads alike.  Subscribers
    registered with `subscribe()` are told about each committed write.
    """

    def __init__(self, path: str | Path):
        self.path = str(path)
        self._subscribers: DefaultDict[str, list[Callable]] = defaultdict(list)
        self._lock = threading.Lock()

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path)
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _session(self):
        try:
            conn = self.connect()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StoreError(str(exc)) from exc
        finally:
            conn.close()

    def init_schema(self) -> None:
        with self._session() as db:
            db.executescript(SCHEMA_SQL)
            ensure_private_columns(db)

    # ── reads ──────────────────────────────────────────────────────────
    def list_categories(self) -> list[Category]:
        with self._session() as db:
            rows = db.execute(
                "SELECT * FROM category ORDER BY sort_order, created_at, id"
            ).fetchall()
        return [_row_to_category(r) for r in rows]

    def list_links(self) -> list[Link]:
        with self._session() as db:
            rows = db.execute(
                "SELECT * FROM link ORDER BY sort_order, created_at, id"
            ).fetchall()
        return [_row_to_link(r) for r in rows]

    def get_category(self, category_id: str) -> Category | None:
        with self._session() as db:
            row = db.execute(
                "SELECT * FROM category WHERE id=?", (category_id,)
            ).fetchone()
        return _row_to_category(row) if row else None

    def get_link(self, link_id: str) -> Link | None:
        with self._session() as db:
            row = db.execute("SELECT * FROM link WHERE id=?", (link_id,)).fetchone()
        return _row_to_link(row) if row else None

    # ── writes ─────────────────────────────────────────────────────────
    def insert_category(self, cat: Category) -> Category:
        cat = cat if cat.id else replace(cat, id=uuid.uuid4().hex)
        with self._session() as db:
            db.execute(
                """INSERT INTO category (id, name, icon, sort_order, is_private, created_at)
                        VALUES (?,?,?,?,?,?)""",
                (
                    cat.id,
                    cat.name,
                    cat.icon,
                    cat.sort_order,
                    int(cat.is_private),
                    utc_now().isoformat(timespec="seconds"),
                ),
            )
        self._emit(ChangeEvent("category", "insert", cat.id))
        return cat

    def update_category(self, cat: Category) -> bool:
        with self._session() as db:
            cur = db.execute(
                """UPDATE category SET name=?, icon=?, sort_order=?, is_private=?
                    WHERE id=?""",
                (cat.name, cat.icon, cat.sort_order, int(cat.is_private), cat.id),
            )
        if cur.rowcount:
            self._emit(ChangeEvent("category", "update", cat.id))
        return bool(cur.rowcount)

    def delete_category(self, category_id: str) -> bool:
        """Delete a category; its links go with it (ON DELETE CASCADE)."""
        with self._session() as db:
            cur = db.execute("DELETE FROM category WHERE id=?", (category_id,))
        if cur.rowcount:
            self._emit(ChangeEvent("category", "delete", category_id))
        return bool(cur.rowcount)

    def insert_link(self, link: Link) -> Link:
        link = link if link.id else replace(link, id=uuid.uuid4().hex)
        with self._session() as db:
            db.execute(
                """INSERT INTO link (id, category_id, title, url, description, icon,
                                     sort_order, is_private, created_at)
                        VALUES (?,?,?,?,?,?,?,?,?)""",
                (
                    link.id,
                    link.category_id,
                    link.title,
                    link.url,
                    link.description,
                    link.icon,
                    link.sort_order,
                    int(link.is_private),
                    utc_now().isoformat(timespec="seconds"),
                ),
            )
        self._emit(ChangeEvent("link", "insert", link.id))
        return link

    def update_link(self, link: Link) -> bool:
        with self._session() as db:
            cur = db.execute(
                """UPDATE link SET category_id=?, title=?, url=?, description=?,
                                   icon=?, sort_order=?, is_private=?
                    WHERE id=?""",
                (
                    link.category_id,
                    link.title,
                    link.url,
                    link.description,
                    link.icon,
                    link.sort_order,
                    int(link.is_private),
                    link.id,
                ),
            )
        if cur.rowcount:
            self._emit(ChangeEvent("link", "update", link.id))
        return bool(cur.rowcount)

    def delete_link(self, link_id: str) -> bool:
        with self._session() as db:
            cur = db.execute("DELETE FROM link WHERE id=?", (link_id,))
        if cur.rowcount:
            self._emit(ChangeEvent("link", "delete", link_id))
        return bool(cur.rowcount)

    # ── change notifications ───────────────────────────────────────────
    def subscribe(self, table: str, callback: Callable) -> Callable[[], None]:
        """Call *callback(event)* after each write to *table*."""
        if table not in TABLES:
            raise ValueError(f"unknown table {table!r}")
        with self._lock:
            self._subscribers[table].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers[table]:
                    self._subscribers[table].remove(callback)

        return unsubscribe

    def _emit(self, event: ChangeEvent) -> None:
        with self._lock:
            callbacks = list(self._subscribers[event.table])
        for cb in callbacks:
            cb(event)


###############################################################################
# Local storage + snapshot cache
###############################################################################
class MemoryStorage:
    """Process-local key/value storage (lives as long as the process)."""

    def __init__(self):
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class FileStorage:
    """
    Key/value storage backed by one JSON file per key in *directory*.

    Shared by every process on the machine.  Writes land in a temp file
    first and are swapped in with `os.replace`, so a reader sees either
    the old value or the new one, never a mix.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            raise ValueError(f"bad storage key {key!r}")
        return self.directory / f"{key}.json"

    def get_item(self, key: str) -> str | None:
        try:
            return self._path(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set_item(self, key: str, value: str) -> None:
        target = self._path(key)
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(value)
            os.replace(tmp, target)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise

    def remove_item(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


@dataclass(frozen=True)
class CacheConfig:
    key: str
    ttl: float  # seconds
    schema_version: str = CACHE_SCHEMA_VERSION


PUBLIC_CACHE = CacheConfig(PUBLIC_CACHE_KEY, PUBLIC_CACHE_TTL)
ADMIN_CACHE = CacheConfig(ADMIN_CACHE_KEY, ADMIN_CACHE_TTL)


class SnapshotCache:
    """
    Versioned, time-limited copy of the whole dataset.

    A snapshot is used whole or not at all: wrong version, too old, or
    any record that fails to deserialize and the entry is dropped.
    Storage trouble is logged and otherwise ignored; the caller simply
    sees a cache miss.
    """

    def __init__(self, config: CacheConfig, storage, *, clock: Callable[[], float] | None = None):
        self.config = config
        self.storage = storage
        self.clock = clock

    def _now(self) -> float:
        return self.clock() if self.clock is not None else time()

    def save(self, categories: Iterable[Category], links: Iterable[Link]) -> None:
        payload = {
            "schema_version": self.config.schema_version,
            "timestamp": self._now(),
            "categories": [asdict(c) for c in categories],
            "links": [asdict(ln) for ln in links],
        }
        try:
            self.storage.set_item(self.config.key, json.dumps(payload, ensure_ascii=False))
        except (OSError, TypeError, ValueError):
            app.logger.warning("Saving cache %s failed", self.config.key, exc_info=True)

    def load(self) -> Dataset | None:
        raw = self._read()
        if raw is None:
            return None
        if not self._is_current(raw):
            app.logger.info("Cache %s is stale, dropping it", self.config.key)
            self.clear()
            return None
        try:
            categories = tuple(Category.from_dict(c) for c in raw["categories"])
            links = tuple(Link.from_dict(ln) for ln in raw["links"])
        except (KeyError, TypeError, ValueError) as exc:
            app.logger.warning("Cache %s has a bad shape (%s)", self.config.key, exc)
            self.clear()
            return None
        return Dataset(categories, links)

    def is_valid(self) -> bool:
        raw = self._read()
        return raw is not None and self._is_current(raw)

    def clear(self) -> None:
        try:
            self.storage.remove_item(self.config.key)
        except OSError:
            app.logger.warning("Clearing cache %s failed", self.config.key, exc_info=True)

    def _read(self) -> dict | None:
        try:
            text = self.storage.get_item(self.config.key)
        except OSError:
            app.logger.warning("Reading cache %s failed", self.config.key, exc_info=True)
            return None
        if not text:
            return None
        try:
            raw = json.loads(text)
        except ValueError:
            self.clear()
            return None
        if not isinstance(raw, dict):
            self.clear()
            return None
        return raw

    def _is_current(self, raw: dict) -> bool:
        ts = raw.get("timestamp")
        if isinstance(ts, bool) or not isinstance(ts, (int, float)):
            return False
        return (
            raw.get("schema_version") == self.config.schema_version
            and self._now() - ts <= self.config.ttl
        )


###############################################################################
# Freshness controller
###############################################################################
class Debouncer:
    """
    Trailing-edge debounce: `fn()` runs once, `delay` seconds after the
    *last* `call()`.  Each call restarts the window.
    """

    def __init__(self, delay: float, fn: Callable[[], None], *, timer_factory=threading.Timer):
        self.delay = delay
        self.fn = fn
        self.timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timer = None
        self._generation = 0

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def call(self) -> None:
        with self._lock:
            self._cancel_locked()
            self._generation += 1
            timer = self.timer_factory(self.delay, self._fire, args=(self._generation,))
            timer.daemon = True
            self._timer = timer
        timer.start()

    def cancel(self) -> None:
        with self._lock:
            self._cancel_locked()
            self._generation += 1

    def _cancel_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self, generation: int) -> None:
        with self._lock:
            # a timer that was cancelled after it started waiting
            if generation != self._generation:
                return
            self._timer = None
        self.fn()


class FeedState(str, Enum):
    EMPTY = "empty"
    CACHED = "cached"
    REVALIDATING = "revalidating"
    FRESH = "fresh"
    FALLBACK = "fallback"


def _spawn_thread(fn: Callable[[], object]) -> None:
    threading.Thread(target=fn, name="navshelf-refresh", daemon=True).start()


def _run_inline(fn: Callable[[], object]) -> None:
    fn()


class FreshnessController:
    """
    Keeps one in-memory dataset current for a data domain.

    `mount()` paints from the local cache when it can and revalidates in
    the background; with no cache it blocks on the store.  Change
    notifications are debounced into a single background refresh.  Every
    fetch replaces the whole dataset, so overlapping fetches are harmless:
    the last one to finish wins.
    """

    def __init__(
        self,
        store,
        cache: SnapshotCache,
        *,
        name: str = "public",
        debounce: float = REFRESH_DEBOUNCE,
        fallback: Callable[[], Dataset] | None = None,
        spawn: Callable[[Callable[[], object]], None] = _spawn_thread,
        timer_factory=threading.Timer,
    ):
        self.store = store
        self.cache = cache
        self.name = name
        self.fallback = fallback or builtin_dataset
        self.state = FeedState.EMPTY
        self.generation = 0
        self._dataset: Dataset | None = None
        self._settled = FeedState.EMPTY
        self._spawn = spawn
        self._debouncer = Debouncer(debounce, self._on_quiet, timer_factory=timer_factory)
        self._unsubscribe: list[Callable[[], None]] = []

    @property
    def dataset(self) -> Dataset:
        return self._dataset if self._dataset is not None else Dataset()

    @property
    def has_data(self) -> bool:
        return self._dataset is not None

    @property
    def refresh_pending(self) -> bool:
        return self._debouncer.pending

    def mount(self) -> None:
        if self.state is not FeedState.EMPTY:
            return
        cached = self.cache.load()
        if cached is not None:
            app.logger.info("%s feed painted from cache", self.name)
            self._swap(cached, FeedState.CACHED)
            self.revalidate()
        else:
            self.refresh()

    def revalidate(self) -> None:
        """Fetch in the background, keep showing what we have meanwhile."""
        if self.state is not FeedState.REVALIDATING:
            self._settled = self.state
            if self.has_data:
                self.state = FeedState.REVALIDATING
        self._spawn(self._fetch)

    def ensure_fresh(self) -> bool:
        """
        Revalidate when the snapshot has outlived its TTL or we are still
        on the built-in links.  Other workers and the CLI write to the
        store without notifying us; this is what bounds their staleness.
        """
        if self.state in (FeedState.EMPTY, FeedState.REVALIDATING):
            return False
        if self.state is not FeedState.FALLBACK and self.cache.is_valid():
            return False
        app.logger.info("%s feed is stale (%s), revalidating", self.name, self.state.value)
        self.revalidate()
        return True

    def refresh(self) -> bool:
        """Blocking fetch. Returns False when the store could not be read."""
        if self.state is not FeedState.REVALIDATING:
            self._settled = self.state
        return self._fetch()

    def on_remote_change(self, event: ChangeEvent | None = None) -> None:
        self._debouncer.call()

    def subscribe(self, transport) -> None:
        for table in TABLES:
            self._unsubscribe.append(transport.subscribe(table, self.on_remote_change))

    def close(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()
        self._debouncer.cancel()

    def _on_quiet(self) -> None:
        app.logger.info("%s feed: remote changed, refreshing", self.name)
        self.revalidate()

    def _fetch(self) -> bool:
        try:
            categories = tuple(self.store.list_categories())
            links = tuple(self.store.list_links())
        except Exception:
            app.logger.exception("Fetching the %s dataset failed", self.name)
            if self._dataset is None:
                self._swap(self.fallback(), FeedState.FALLBACK)
            elif self.state is FeedState.REVALIDATING:
                self.state = self._settled
            return False
        self.cache.save(categories, links)
        self._swap(Dataset(categories, links), FeedState.FRESH)
        return True

    def _swap(self, dataset: Dataset, state: FeedState) -> None:
        self._dataset = dataset
        self.generation += 1
        self.state = state


###############################################################################
# View derivation + privacy gate
###############################################################################
class PrivacyGate:
    """
    Hidden switch for private records.

    Typing the passphrase into the search box opens it; `close()` shuts it
    and runs *on_close* (used to drop the local cache).
    """

    def __init__(self, passphrase: str = PASSPHRASE, *, is_open: bool = False, on_close=None):
        self.passphrase = passphrase
        self.is_open = is_open
        self.on_close = on_close

    def is_trigger(self, text: str | None) -> bool:
        return bool(self.passphrase) and (text or "").strip() == self.passphrase

    def observe(self, text: str | None) -> bool:
        if not self.is_trigger(text):
            return False
        self.is_open = True
        return True

    def close(self) -> None:
        self.is_open = False
        if self.on_close is not None:
            self.on_close()


def apply_privacy(categories: Iterable[ViewCategory], revealed: bool) -> list[ViewCategory]:
    if revealed:
        return list(categories)
    return [
        replace(vc, links=tuple(ln for ln in vc.links if not ln.is_private))
        for vc in categories
        if not vc.is_private
    ]


def reveal_view(categories: Iterable[ViewCategory]) -> list[ViewCategory]:
    """
    Private categories with all their links, plus public categories that
    hold private links (only those links shown).
    """
    out = []
    for vc in categories:
        if vc.is_private:
            out.append(vc)
            continue
        hidden = tuple(ln for ln in vc.links if ln.is_private)
        if hidden:
            out.append(replace(vc, links=hidden))
    return out


def select_category(categories: Iterable[ViewCategory], category_id: str | None) -> list[ViewCategory]:
    if not category_id:
        return list(categories)
    return [vc for vc in categories if vc.id == category_id]


def _link_matches(link: Link, needle: str) -> bool:
    return needle in link.title.lower() or needle in link.description.lower()


def search_links(categories: Iterable[ViewCategory], query: str | None) -> list[ViewCategory]:
    needle = (query or "").strip().lower()
    if not needle:
        return list(categories)
    out = []
    for vc in categories:
        hits = tuple(ln for ln in vc.links if _link_matches(ln, needle))
        if hits:
            out.append(replace(vc, links=hits))
    return out


def search_categories(categories: Iterable[Category], query: str | None) -> list[Category]:
    """Admin list search: category name only."""
    needle = (query or "").strip().lower()
    return [c for c in categories if needle in c.name.lower()]


def filter_links(links: Iterable[Link], query: str | None = "", category_id: str | None = None) -> list[Link]:
    """Admin link list: title/description search plus an optional category."""
    needle = (query or "").strip().lower()
    return [
        ln
        for ln in links
        if (not category_id or ln.category_id == category_id)
        and (not needle or _link_matches(ln, needle))
    ]


@dataclass
class PageView:
    sidebar: list[ViewCategory]
    main: list[ViewCategory]
    search: str = ""
    selected: str | None = None
    revealed: bool = False
    reveal_triggered: bool = False
    clear_search: bool = False

    @property
    def filters_active(self) -> bool:
        return bool(self.search.strip() or self.selected)

    @property
    def empty_state(self) -> str | None:
        """None when there is something to show, else 'no-results' / 'no-data'."""
        if self.main:
            return None
        if self.sidebar and self.filters_active:
            return "no-results"
        return "no-data"


def derive_view(
    dataset: Dataset,
    gate: PrivacyGate,
    *,
    search: str | None = "",
    selected: str | None = None,
) -> PageView:
    search = search or ""
    nested = dataset.nested()
    # passphrase is checked before anything else looks at the search text
    triggered = gate.observe(search)
    sidebar = apply_privacy(nested, gate.is_open)

    if triggered:
        return PageView(
            sidebar=sidebar,
            main=reveal_view(nested),
            search="",
            selected=None,
            revealed=True,
            reveal_triggered=True,
            clear_search=True,
        )

    main = search_links(select_category(sidebar, selected), search)
    return PageView(
        sidebar=sidebar,
        main=main,
        search=search,
        selected=selected,
        revealed=gate.is_open,
    )


def dataset_stats(dataset: Dataset) -> dict[str, int]:
    cats, links = dataset.categories, dataset.links
    private_cats = sum(1 for c in cats if c.is_private)
    private_links = sum(1 for ln in links if ln.is_private)
    return {
        "total_categories": len(cats),
        "total_links": len(links),
        "public_categories": len(cats) - private_cats,
        "private_categories": private_cats,
        "public_links": len(links) - private_links,
        "private_links": private_links,
    }


def view_payload(vc: ViewCategory) -> dict:
    return {**asdict(vc.category), "links": [asdict(ln) for ln in vc.links]}


###############################################################################
# Built-in dataset (shown when the store has never answered)
###############################################################################
BUILTIN_CATEGORIES = [
    {
        "id": "dev-tools",
        "name": "Developer tools",
        "icon": "🛠️",
        "links": [
            ("GitHub", "https://github.com", "The largest code hosting platform"),
            ("VS Code", "https://code.visualstudio.com", "A capable code editor"),
            ("Stack Overflow", "https://stackoverflow.com", "Q&A for developers"),
            ("CodePen", "https://codepen.io", "Front-end playground"),
        ],
    },
    {
        "id": "design",
        "name": "Design",
        "icon": "🎨",
        "links": [
            ("Figma", "https://www.figma.com", "Collaborative design tool"),
            ("Dribbble", "https://dribbble.com", "Designer showcase"),
            ("Unsplash", "https://unsplash.com", "Free high-quality photos"),
        ],
    },
    {
        "id": "learning",
        "name": "Learning",
        "icon": "📚",
        "links": [
            ("MDN Web Docs", "https://developer.mozilla.org", "Web platform reference"),
            ("Python docs", "https://docs.python.org/3/", "The Python documentation"),
            ("freeCodeCamp", "https://www.freecodecamp.org", "Learn to code for free"),
        ],
    },
]


def builtin_dataset() -> Dataset:
    categories, links = [], []
    for order, cat in enumerate(BUILTIN_CATEGORIES):
        categories.append(
            Category(id=cat["id"], name=cat["name"], icon=cat["icon"], sort_order=order)
        )
        for pos, (title, url, desc) in enumerate(cat["links"]):
            links.append(
                Link(
                    id=f"{cat['id']}-{pos}",
                    category_id=cat["id"],
                    title=title,
                    url=url,
                    description=desc,
                    sort_order=pos,
                )
            )
    return Dataset(tuple(categories), tuple(links))


###############################################################################
# Auxiliary content: quote, wallpaper, favicons
###############################################################################
def _aux_get(storage, key: str, *, clock=time) -> str | None:
    """Cached value ("" is a cached miss), or None when absent or expired."""
    try:
        raw = storage.get_item(key)
        item = json.loads(raw) if raw else None
    except (OSError, ValueError):
        return None
    if not isinstance(item, dict) or not isinstance(item.get("timestamp"), (int, float)):
        return None
    ttl = item.get("ttl", AUX_CACHE_TTL)
    if not isinstance(ttl, (int, float)) or clock() - item["timestamp"] > ttl:
        return None
    data = item.get("data")
    return data if isinstance(data, str) else None


def _aux_put(storage, key: str, data: str, *, ttl: float = AUX_CACHE_TTL, clock=time) -> None:
    try:
        storage.set_item(key, json.dumps({"data": data, "timestamp": clock(), "ttl": ttl}))
    except OSError:
        app.logger.warning("Saving %s failed", key, exc_info=True)


def load_daily_quote(storage, *, clock=time) -> str:
    """Quote of the day; cached for a day, static text on any failure."""
    cached = _aux_get(storage, QUOTE_CACHE_KEY, clock=clock)
    if cached is not None:
        return cached
    url = app.config["QUOTE_URL"]
    if not app.config["AUX_ENABLED"] or not url:
        return QUOTE_FALLBACK
    try:
        resp = requests.get(url, timeout=app.config["AUX_TIMEOUT"])
        resp.raise_for_status()
        text = _TAG_RE.sub("", resp.text).strip()
    except requests.RequestException as exc:
        app.logger.warning("Quote of the day unavailable: %s", exc)
        text = ""
    if not text:
        # one timeout per retry window, not one per page view
        _aux_put(storage, QUOTE_CACHE_KEY, QUOTE_FALLBACK, ttl=AUX_RETRY_TTL, clock=clock)
        return QUOTE_FALLBACK
    _aux_put(storage, QUOTE_CACHE_KEY, text, clock=clock)
    return text


def load_wallpaper(storage, *, clock=time) -> str:
    """Resolved wallpaper image URL, or "" when it cannot be reached."""
    cached = _aux_get(storage, WALLPAPER_CACHE_KEY, clock=clock)
    if cached is not None:
        return cached
    url = app.config["WALLPAPER_URL"]
    if not app.config["AUX_ENABLED"] or not url:
        return ""
    try:
        resp = requests.head(url, timeout=app.config["AUX_TIMEOUT"], allow_redirects=True)
        resp.raise_for_status()
    except requests.RequestException as exc:
        app.logger.warning("Wallpaper unavailable: %s", exc)
        resp = None
    if resp is None or not resp.headers.get("Content-Type", "").startswith("image/"):
        _aux_put(storage, WALLPAPER_CACHE_KEY, "", ttl=AUX_RETRY_TTL, clock=clock)
        return ""
    _aux_put(storage, WALLPAPER_CACHE_KEY, resp.url, clock=clock)
    return resp.url


def extract_domain(url: str | None) -> str:
    try:
        return urlparse(url or "").hostname or ""
    except ValueError:
        return ""


def favicon_url(url: str | None) -> str:
    domain = extract_domain(url)
    if not domain:
        return ""
    return f"https://www.faviconextractor.com/favicon/{domain}?larger=true"


def fallback_favicon_url(url: str | None) -> str:
    domain = extract_domain(url)
    if not domain:
        return ""
    return f"https://www.google.com/s2/favicons?domain={quote(domain)}&sz=128"


class FaviconCache:
    """hostname → icon URL, read once per page and written back by `flush()`."""

    def __init__(self, storage):
        self.storage = storage
        self._icons: dict[str, str] | None = None
        self._dirty = False

    def _load(self) -> dict[str, str]:
        if self._icons is None:
            try:
                raw = self.storage.get_item(FAVICON_CACHE_KEY)
                icons = json.loads(raw) if raw else {}
            except (OSError, ValueError):
                icons = {}
            self._icons = icons if isinstance(icons, dict) else {}
        return self._icons

    def resolve(self, link: Link) -> str:
        if is_urlish(link.icon):
            return link.icon
        host = extract_domain(link.url)
        if not host:
            return ""
        icons = self._load()
        if host not in icons:
            icons[host] = favicon_url(link.url)
            self._dirty = True
        return icons[host]

    def flush(self) -> None:
        if not self._dirty:
            return
        try:
            self.storage.set_item(FAVICON_CACHE_KEY, json.dumps(self._icons))
        except OSError:
            app.logger.warning("Saving favicon cache failed", exc_info=True)
        self._dirty = False


###############################################################################
# Database helpers + feeds
###############################################################################
_STATE_LOCK = threading.Lock()


def _state() -> dict:
    return app.extensions.setdefault("navshelf", {})


def get_store() -> SqliteStore:
    st = _state()
    with _STATE_LOCK:
        if "store" not in st:
            st["store"] = SqliteStore(app.config["DATABASE"])
        return st["store"]


def local_storage() -> FileStorage:
    return FileStorage(app.config["CACHE_DIR"])


def _session_storage() -> MemoryStorage:
    return _state().setdefault("session_storage", MemoryStorage())


def _make_feed(name: str, cache: SnapshotCache) -> FreshnessController:
    store = get_store()
    feed = FreshnessController(
        store,
        cache,
        name=name,
        debounce=app.config["REFRESH_DEBOUNCE"],
        spawn=_spawn_thread if app.config["BACKGROUND_REFRESH"] else _run_inline,
    )
    feed.subscribe(store)
    feed.mount()
    return feed


def _feed(name: str, build_cache: Callable[[], SnapshotCache]) -> FreshnessController:
    st = _state()
    with _STATE_LOCK:
        feed = st.get(name)
    if feed is not None:
        return feed
    fresh = _make_feed(name, build_cache())
    with _STATE_LOCK:
        feed = st.setdefault(name, fresh)
    if feed is not fresh:  # lost the race to another request
        fresh.close()
    return feed


def public_feed() -> FreshnessController:
    return _feed(
        "public",
        lambda: SnapshotCache(
            replace(PUBLIC_CACHE, ttl=app.config["PUBLIC_CACHE_TTL"]), local_storage()
        ),
    )


def admin_feed() -> FreshnessController:
    return _feed(
        "admin",
        lambda: SnapshotCache(
            replace(ADMIN_CACHE, ttl=app.config["ADMIN_CACHE_TTL"]), _session_storage()
        ),
    )


def reset_feeds() -> None:
    """Drop both feeds (and the store handle); they are rebuilt on next use."""
    st = _state()
    with _STATE_LOCK:
        feeds = [st.pop(k, None) for k in ("public", "admin")]
        st.pop("store", None)
        st.pop("session_storage", None)
    for feed in feeds:
        if feed is not None:
            feed.close()


def get_db():
    if "db" not in g:
        g.db = get_store().connect()
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    get_store().init_schema()


###############################################################################
# CLI – create admin + token, seed, export
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
    """Store a *new* one-time token hash, return the token for display."""
    handle = secrets.token_urlsafe(TOKEN_LEN)
    token = signer.sign(handle).decode()
    db.execute("UPDATE user SET token_hash=? WHERE id=1", (hash_token(handle),))
    db.commit()
    return token


@app.cli.command("init")
@click.option("--username", prompt=True, help="Admin username")
def cli_init(username: str):
    """Create the schema *and* the admin account."""
    init_db()
    token = _create_admin(get_db(), username=username.strip())

    click.secho("\n✅  Admin created.", fg="green")
    click.echo(f"\nOne-time login token:\n\n{token}\n")
    click.echo("Paste it into the login form at /login within 1 minute.")


@app.cli.command("token")
def cli_token():
    """Rotate the admin’s one-time login token."""
    token = _rotate_token(get_db())

    click.secho("\n🔑  Fresh login token generated.\n", fg="yellow")
    click.echo(f"{token}\n")
    click.echo("Paste it into the login form at /login within 1 minute.")


@app.cli.command("seed")
@click.option("--force", is_flag=True, help="Seed even if categories exist")
def cli_seed(force: bool):
    """Load the built-in starter links into the database."""
    init_db()
    store = get_store()
    if store.list_categories() and not force:
        raise click.ClickException("Database already has categories (use --force).")
    data = builtin_dataset()
    # builtin ids are only stable inside the built-in dataset
    new_ids = {c.id: store.insert_category(replace(c, id="")).id for c in data.categories}
    for ln in data.links:
        store.insert_link(replace(ln, id="", category_id=new_ids[ln.category_id]))
    click.secho(
        f"🌱  Seeded {len(data.categories)} categories, {len(data.links)} links.",
        fg="green",
    )


@app.cli.command("export")
def cli_export():
    """Dump every category and link as JSON on stdout."""
    store = get_store()
    payload = {
        "categories": [asdict(c) for c in store.list_categories()],
        "links": [asdict(ln) for ln in store.list_links()],
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


###############################################################################
# Templates
###############################################################################
def _csrf_token() -> str:
    """One token per session (rotates when the cookie does)."""
    return session.get("csrf", "")


app.jinja_env.globals["csrf_token"] = _csrf_token
app.jinja_env.globals["version"] = __version__
app.jinja_env.globals["site_name"] = SITE_NAME
app.jinja_env.globals["is_urlish"] = is_urlish
app.jinja_env.globals["fallback_icon"] = fallback_favicon_url


def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or site_name }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<link rel="icon" type="image/svg+xml" href="/favicon.svg">
<style>
html{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Noto Sans",sans-serif;font-size:62.5%}
body{font-size:1.6rem;line-height:1.5;margin:0;color:#c9c9c9;background:#1f1f1f}
a{color:#fff;text-decoration:none}a:hover{color:#9fd3ff}
.topbar{display:flex;justify-content:space-between;align-items:center;padding:1rem 2rem;border-bottom:1px solid #333}
.topbar h1{margin:0;font-size:2.2rem}.topbar nav a{margin-left:1.2rem;font-size:.9em}
.wrap{max-width:120rem;margin:0 auto;padding:2rem}
.shelf{display:grid;grid-template-columns:22rem 1fr;gap:2rem}
.sidebar a{display:flex;justify-content:space-between;padding:.5rem .8rem;border-radius:6px}
.sidebar a[aria-current=page]{background:#333}
.sidebar small{color:#888}
.hero{padding:2rem;border-radius:10px;background:#2a2a2a center/cover no-repeat;text-align:center;margin-bottom:2rem}
.hero input[type=search]{width:100%;max-width:42rem;padding:.8rem 1.2rem;border-radius:20px;border:1px solid #555;background:#262626;color:#eee}
.quote{font-size:.8em;color:#aaa;margin:1rem 0 0}
.cards{display:grid;grid-template-columns:repeat(auto-fill,minmax(24rem,1fr));gap:1.2rem}
.card{display:flex;gap:1rem;padding:1.2rem;border:1px solid #333;border-radius:10px;background:#262626}
.card img{width:3.2rem;height:3.2rem;border-radius:6px}.card .glyph{font-size:2.4rem}
.desc{display:block;font-size:.85em;color:#999}
.pill{display:inline-block;padding:0 .6em;border-radius:1em;background:#553;color:#fe9;font-size:.6em;vertical-align:middle}
.empty{text-align:center;padding:6rem 0;color:#888}
.flash{position:fixed;top:1rem;right:1rem;background:#323232;color:#fff;padding:.75rem 1rem;border-radius:.4rem}
table{width:100%;border-collapse:collapse}td,th{padding:.5rem;border-bottom:1px solid #333;text-align:left}
input,select,textarea{color:#ddd;background:#2b2b2b;border:1px solid #555;border-radius:4px;padding:6px 10px;margin-bottom:10px}
button{padding:5px 12px;border-radius:4px;border:1px solid #fff;background:#fff;color:#222;cursor:pointer}
button.danger{background:#a33;border-color:#a33;color:#fff}
.tabs a{margin-right:1.5rem}.tabs a[aria-current=page]{border-bottom:2px solid #fff}
.stats{display:grid;grid-template-columns:repeat(3,1fr);gap:1rem}.stats div{padding:1rem;background:#262626;border-radius:8px}
@media (max-width:720px){.shelf{grid-template-columns:1fr}}
</style>
<body>
<header class="topbar">
    <h1><a href="{{ url_for('index') }}">{{ site_name }}</a></h1>
    <nav aria-label="Primary">
        {% if session.get('logged_in') %}
            <a href="{{ url_for('admin') }}">Admin</a>
            <a href="{{ url_for('logout') }}">Logout</a>
        {% else %}
            <a href="{{ url_for('login') }}">Login</a>
        {% endif %}
    </nav>
</header>
{% with msgs = get_flashed_messages() %}
{% if msgs %}
    <div role="status" aria-live="polite" class="flash">{{ msgs|join('<br>') }}</div>
{% endif %}
{% endwith %}
<main id="main-content" class="wrap">
"""

TEMPL_EPILOG = """
</main>
<footer class="wrap" style="font-size:.8em;color:#777;border-top:1px solid #333;">
    {{ site_name }} · v{{ version }}
</footer>
</body>
</html>
"""

TEMPL_INDEX = wrap("""
{% block body %}
<div class="shelf">
  <aside class="sidebar" aria-label="Categories">
    <a href="{{ url_for('index', g=gate) }}" {% if not view.selected %}aria-current="page"{% endif %}>All</a>
    {% for cat in view.sidebar %}
      <a href="{{ url_for('index', c=cat.id, g=gate) }}"
         {% if view.selected == cat.id %}aria-current="page"{% endif %}>
        <span>{{ cat.icon }} {{ cat.name }}</span><small>{{ cat.links|length }}</small>
      </a>
    {% endfor %}
    {% if view.revealed %}
      <a href="{{ url_for('lock') }}" class="lock">🔒 Hide private</a>
    {% endif %}
  </aside>

  <section>
    <div class="hero" {% if wallpaper %}style="background-image:url('{{ wallpaper }}')"{% endif %}>
      <form action="{{ url_for('index') }}" method="get" role="search">
        {% if gate %}<input type="hidden" name="g" value="{{ gate }}">{% endif %}
        {% if view.selected %}<input type="hidden" name="c" value="{{ view.selected }}">{% endif %}
        <input type="search" name="q" value="{{ view.search }}"
               aria-label="Search links" placeholder="Search links" autocomplete="off">
      </form>
      <p class="quote">{{ quote }}</p>
    </div>

    {% for cat in view.main %}
      <section class="category" id="cat-{{ cat.id }}">
        <h2>{{ cat.icon }} {{ cat.name }}
          {% if cat.is_private %}<span class="pill">private</span>{% endif %}</h2>
        <div class="cards">
        {% for link in cat.links %}
          <div class="card">
            {% if link.icon and not is_urlish(link.icon) %}
              <span class="glyph">{{ link.icon }}</span>
            {% elif icon_for(link) %}
              <img src="{{ icon_for(link) }}" alt="" loading="lazy"
                   onerror="this.onerror=null;this.src='{{ fallback_icon(link.url) }}'">
            {% endif %}
            <div>
              <a href="{{ link.url }}" target="_blank" rel="noopener noreferrer"><strong>{{ link.title }}</strong></a>
              {% if link.is_private %}<span class="pill">private</span>{% endif %}
              <span class="desc">{{ link.description|mdinline }}</span>
            </div>
          </div>
        {% endfor %}
        </div>
      </section>
    {% else %}
      {% if view.empty_state == 'no-results' %}
        <div class="empty" data-empty="no-results">
          <p>No matching links.</p>
          <p>Try another keyword or pick a different category.</p>
        </div>
      {% else %}
        <div class="empty" data-empty="no-data"><p>Nothing here yet.</p></div>
      {% endif %}
    {% endfor %}
  </section>
</div>
{% if view.clear_search %}
<script>
setTimeout(() => history.replaceState(null, "", "{{ url_for('index', g=gate) }}"), {{ clear_after_ms }});
</script>
{% endif %}
{% endblock %}
""")


###############################################################################
# Authentication
###############################################################################
def validate_token(token: str, max_age: int = 60) -> bool:
    """Check the signature age, then the payload against the stored hash."""
    try:
        handle = signer.unsign(token, max_age=max_age).decode()
    except SignatureExpired:
        return False
    except BadSignature:
        return False

    row = get_db().execute("SELECT token_hash FROM user LIMIT 1").fetchone()
    return bool(row) and verify_token(row["token_hash"], handle)


def current_user() -> str | None:
    if not session.get("logged_in"):
        return None
    row = get_db().execute("SELECT username FROM user LIMIT 1").fetchone()
    return row["username"] if row else "admin"


def login_required() -> None:
    if not session.get("logged_in"):
        abort(redirect(url_for("login")))


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

        return wrapped

    return decorator


@app.route("/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def login():
    token = request.form.get("token", "").strip()

    if request.method == "POST" and token and validate_token(token):
        # one-time token: burn it
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

    return render_template_string(TEMPL_LOGIN, title="Login")


TEMPL_LOGIN = wrap("""
{% block body %}
<form method="post" style="max-width:36rem;">
  <label for="token">Login token</label>
  <input id="token" name="token" type="password" autocomplete="current-password" style="width:100%;">
  <button type="submit">Sign in</button>
</form>
{% endblock %}
""")


@app.route("/logout")
def logout():
    session.clear()
    return redirect(url_for("index"))


###############################################################################
# Resources + request hooks
###############################################################################
@app.route("/favicon.svg")
def favicon():
    letter = (SITE_NAME or "N")[0].upper()
    svg = f"""<svg xmlns="http://www.w3.org/2000/svg" width="64" height="64" viewBox="0 0 64 64">
      <rect width="64" height="64" rx="8" ry="8" fill="#2f6f9f"/>
      <text x="32" y="46" text-anchor="middle" font-family="Arial,Helvetica,sans-serif"
            font-size="42" font-weight="800" fill="#FFFFFF">{escape(letter)}</text>
    </svg>"""
    return Response(
        svg,
        mimetype="image/svg+xml",
        headers={"Cache-Control": "public, max-age=86400"},
    )


@app.route("/robots.txt")
def robots():
    rules = "User-agent: *\nDisallow: /admin\nDisallow: /login\n"
    return Response(
        rules, mimetype="text/plain", headers={"Cache-Control": "public, max-age=86400"}
    )


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@app.before_request
def csrf_protect():
    if request.method in SAFE_METHODS:
        return
    # not logged in ⇒ nothing to protect (covers /login POST)
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
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


###############################################################################
# Public page
###############################################################################
def request_gate() -> PrivacyGate:
    """
    Open only when this URL carries the token minted by the passphrase.
    Nothing is stored, so a plain load of / starts closed.
    """
    is_open = False
    token = request.args.get("g", "")
    if token:
        try:
            is_open = gate_signer.loads(token) == "open"
        except BadData:
            is_open = False
    return PrivacyGate(
        app.config["PASSPHRASE"],
        is_open=is_open,
        on_close=lambda: public_feed().cache.clear(),
    )


def gate_param(gate: PrivacyGate) -> str | None:
    """Query value that keeps the gate open on the page's own links."""
    return gate_signer.dumps("open") if gate.is_open else None


def _page_view() -> tuple[FreshnessController, PageView, str | None]:
    feed = public_feed()
    feed.ensure_fresh()
    gate = request_gate()
    view = derive_view(
        feed.dataset,
        gate,
        search=request.args.get("q", ""),
        selected=request.args.get("c") or None,
    )
    return feed, view, gate_param(gate)


@app.route("/")
def index():
    _, view, gate = _page_view()
    storage = local_storage()
    icons = FaviconCache(storage)
    html = render_template_string(
        TEMPL_INDEX,
        view=view,
        gate=gate,
        quote=load_daily_quote(storage),
        wallpaper=load_wallpaper(storage),
        icon_for=icons.resolve,
        clear_after_ms=REVEAL_CLEAR_DELAY_MS,
    )
    icons.flush()
    return html


@app.route("/api/view")
def api_view():
    feed, view, gate = _page_view()
    resp = jsonify(
        {
            "state": feed.state.value,
            "generation": feed.generation,
            "revealed": view.revealed,
            "gate": gate,
            "reveal_triggered": view.reveal_triggered,
            "clear_search": view.clear_search,
            "clear_after_ms": REVEAL_CLEAR_DELAY_MS if view.clear_search else 0,
            "search": view.search,
            "selected": view.selected,
            "empty_state": view.empty_state,
            "sidebar": [view_payload(vc) for vc in view.sidebar],
            "main": [view_payload(vc) for vc in view.main],
        }
    )
    resp.set_etag(f"g{feed.generation}-{'open' if view.revealed else 'closed'}")
    return resp.make_conditional(request)


@app.route("/lock")
def lock():
    request_gate().close()
    return redirect(url_for("index"))


###############################################################################
# Admin
###############################################################################
def _form_int(raw: str | None, label: str) -> int:
    raw = (raw or "").strip()
    if not raw:
        return 0
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{label} must be a whole number") from None


def category_from_form(form, category_id: str = "") -> Category:
    name = form.get("name", "").strip()
    if not name:
        raise ValueError("Name is required")
    return Category(
        id=category_id,
        name=name,
        icon=form.get("icon", "").strip(),
        sort_order=_form_int(form.get("sort_order"), "Order"),
        is_private=bool(form.get("is_private")),
    )


def link_from_form(form, link_id: str = "") -> Link:
    title = form.get("title", "").strip()
    url = form.get("url", "").strip()
    category_id = form.get("category_id", "").strip()
    if not title:
        raise ValueError("Title is required")
    if urlparse(url).scheme not in {"http", "https"}:
        raise ValueError("URL must start with http:// or https://")
    if not category_id:
        raise ValueError("Pick a category")
    return Link(
        id=link_id,
        category_id=category_id,
        title=title,
        url=url,
        description=form.get("description", "").strip(),
        icon=form.get("icon", "").strip() or None,
        sort_order=_form_int(form.get("sort_order"), "Order"),
        is_private=bool(form.get("is_private")),
    )


def _after_write() -> None:
    """Admin sees its own write immediately; the public feed is debounced."""
    admin_feed().refresh()


@app.route("/admin")
def admin():
    login_required()
    data = admin_feed().dataset
    tab = request.args.get("tab", "categories")
    q = request.args.get("q", "")
    cat_filter = request.args.get("c") or None
    names = {c.id: c.name for c in data.categories}
    return render_template_string(
        TEMPL_ADMIN,
        title="Admin",
        tab=tab,
        q=q,
        cat_filter=cat_filter,
        user=current_user(),
        categories=search_categories(data.categories, q),
        all_categories=data.categories,
        links=filter_links(data.links, q, cat_filter),
        names=names,
        stats=dataset_stats(data),
        state=admin_feed().state.value,
    )


TEMPL_ADMIN = wrap("""
{% block body %}
<p style="color:#888;">Signed in as {{ user }} · data {{ state }}</p>
<nav class="tabs" aria-label="Admin">
  {% for t, label in [('categories','Categories'),('links','Links'),('stats','Stats')] %}
    <a href="{{ url_for('admin', tab=t) }}" {% if tab==t %}aria-current="page"{% endif %}>{{ label }}</a>
  {% endfor %}
  <form method="post" action="{{ url_for('admin_refresh') }}" style="display:inline;">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <button type="submit">Refresh</button>
  </form>
</nav>

{% if tab == 'stats' %}
<div class="stats">
  <div>Categories<br><strong>{{ stats.total_categories }}</strong></div>
  <div>Public categories<br><strong>{{ stats.public_categories }}</strong></div>
  <div>Private categories<br><strong>{{ stats.private_categories }}</strong></div>
  <div>Links<br><strong>{{ stats.total_links }}</strong></div>
  <div>Public links<br><strong>{{ stats.public_links }}</strong></div>
  <div>Private links<br><strong>{{ stats.private_links }}</strong></div>
</div>
{% else %}
<form method="get" action="{{ url_for('admin') }}">
  <input type="hidden" name="tab" value="{{ tab }}">
  <input type="search" name="q" value="{{ q }}" placeholder="Search {{ tab }}">
  {% if tab == 'links' %}
  <select name="c">
    <option value="">All categories</option>
    {% for c in all_categories %}
      <option value="{{ c.id }}" {% if cat_filter == c.id %}selected{% endif %}>{{ c.name }}</option>
    {% endfor %}
  </select>
  {% endif %}
  <button type="submit">Filter</button>
</form>
{% endif %}

{% if tab == 'categories' %}
<p><a href="{{ url_for('category_form') }}">+ New category</a></p>
<table>
  <tr><th>Order</th><th>Name</th><th>Private</th><th></th></tr>
  {% for c in categories %}
  <tr>
    <td>{{ c.sort_order }}</td>
    <td>{{ c.icon }} {{ c.name }}</td>
    <td>{{ 'yes' if c.is_private else '' }}</td>
    <td>
      <a href="{{ url_for('admin', tab='links', c=c.id) }}">Links</a>
      <a href="{{ url_for('category_form', category_id=c.id) }}">Edit</a>
      <form method="post" action="{{ url_for('delete_category', category_id=c.id) }}" style="display:inline;">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <button class="danger" type="submit">Delete</button>
      </form>
    </td>
  </tr>
  {% else %}
  <tr><td colspan="4">No categories.</td></tr>
  {% endfor %}
</table>
{% elif tab == 'links' %}
<p><a href="{{ url_for('link_form', c=cat_filter) }}">+ New link</a></p>
<table>
  <tr><th>Order</th><th>Title</th><th>Category</th><th>Private</th><th></th></tr>
  {% for ln in links %}
  <tr>
    <td>{{ ln.sort_order }}</td>
    <td><a href="{{ ln.url }}" rel="noopener noreferrer">{{ ln.title }}</a></td>
    <td>{{ names.get(ln.category_id, '?') }}</td>
    <td>{{ 'yes' if ln.is_private else '' }}</td>
    <td>
      <a href="{{ url_for('link_form', link_id=ln.id) }}">Edit</a>
      <form method="post" action="{{ url_for('delete_link', link_id=ln.id) }}" style="display:inline;">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <button class="danger" type="submit">Delete</button>
      </form>
    </td>
  </tr>
  {% else %}
  <tr><td colspan="5">No links.</td></tr>
  {% endfor %}
</table>
{% endif %}
{% endblock %}
""")


@app.route("/admin/category/new", methods=["GET", "POST"], defaults={"category_id": None})
@app.route("/admin/category/<category_id>", methods=["GET", "POST"])
def category_form(category_id):
    login_required()
    store = get_store()
    current = None
    if category_id:
        current = store.get_category(category_id)
        if current is None:
            abort(404)

    if request.method == "POST":
        try:
            cat = category_from_form(request.form, category_id or "")
            if current is None:
                store.insert_category(cat)
            else:
                store.update_category(cat)
        except (ValueError, StoreError) as exc:
            flash(f"Could not save category: {exc}")
        else:
            _after_write()
            flash("Category saved.")
            return redirect(url_for("admin", tab="categories"))
        form = request.form
    else:
        form = asdict(current) if current else {}

    return render_template_string(
        TEMPL_CATEGORY_FORM, title="Category", form=form, editing=bool(category_id)
    )


TEMPL_CATEGORY_FORM = wrap("""
{% block body %}
<h2>{{ 'Edit' if editing else 'New' }} category</h2>
<form method="post" style="max-width:40rem;">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <label for="name">Name</label>
  <input id="name" name="name" value="{{ form.get('name', '') }}" required style="width:100%;">
  <label for="icon">Icon</label>
  <input id="icon" name="icon" value="{{ form.get('icon', '') }}" style="width:100%;">
  <label for="sort_order">Order</label>
  <input id="sort_order" name="sort_order" type="number" value="{{ form.get('sort_order', 0) }}">
  <label><input type="checkbox" name="is_private" value="1"
         {% if form.get('is_private') %}checked{% endif %}> Private</label>
  <button type="submit">Save</button>
  <a href="{{ url_for('admin', tab='categories') }}">Cancel</a>
</form>
{% endblock %}
""")


@app.route("/admin/category/<category_id>/delete", methods=["POST"])
def delete_category(category_id):
    login_required()
    try:
        deleted = get_store().delete_category(category_id)
    except StoreError as exc:
        flash(f"Delete failed: {exc}")
        return redirect(url_for("admin", tab="categories"))
    if not deleted:
        abort(404)
    _after_write()
    flash("Category and its links deleted.")
    return redirect(url_for("admin", tab="categories"))


@app.route("/admin/link/new", methods=["GET", "POST"], defaults={"link_id": None})
@app.route("/admin/link/<link_id>", methods=["GET", "POST"])
def link_form(link_id):
    login_required()
    store = get_store()
    current = None
    if link_id:
        current = store.get_link(link_id)
        if current is None:
            abort(404)

    if request.method == "POST":
        try:
            ln = link_from_form(request.form, link_id or "")
            if current is None:
                store.insert_link(ln)
            else:
                store.update_link(ln)
        except (ValueError, StoreError) as exc:
            flash(f"Could not save link: {exc}")
        else:
            _after_write()
            flash("Link saved.")
            return redirect(url_for("admin", tab="links", c=ln.category_id))
        form = request.form
    elif current:
        form = {**asdict(current), "icon": current.icon or ""}
    else:
        form = {"category_id": request.args.get("c", "")}

    return render_template_string(
        TEMPL_LINK_FORM,
        title="Link",
        form=form,
        editing=bool(link_id),
        categories=store.list_categories(),
    )


TEMPL_LINK_FORM = wrap("""
{% block body %}
<h2>{{ 'Edit' if editing else 'New' }} link</h2>
<form method="post" style="max-width:40rem;">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <label for="category_id">Category</label>
  <select id="category_id" name="category_id" required>
    {% for c in categories %}
      <option value="{{ c.id }}" {% if form.get('category_id') == c.id %}selected{% endif %}>{{ c.icon }} {{ c.name }}</option>
    {% endfor %}
  </select>
  <label for="title">Title</label>
  <input id="title" name="title" value="{{ form.get('title', '') }}" required style="width:100%;">
  <label for="url">URL</label>
  <input id="url" name="url" type="url" value="{{ form.get('url', '') }}" required style="width:100%;">
  <label for="description">Description</label>
  <textarea id="description" name="description" rows="3">{{ form.get('description', '') }}</textarea>
  <label for="icon">Icon (glyph or image URL, optional)</label>
  <input id="icon" name="icon" value="{{ form.get('icon', '') }}" style="width:100%;">
  <label for="sort_order">Order</label>
  <input id="sort_order" name="sort_order" type="number" value="{{ form.get('sort_order', 0) }}">
  <label><input type="checkbox" name="is_private" value="1"
         {% if form.get('is_private') %}checked{% endif %}> Private</label>
  <button type="submit">Save</button>
  <a href="{{ url_for('admin', tab='links') }}">Cancel</a>
</form>
{% endblock %}
""")


@app.route("/admin/link/<link_id>/delete", methods=["POST"])
def delete_link(link_id):
    login_required()
    try:
        deleted = get_store().delete_link(link_id)
    except StoreError as exc:
        flash(f"Delete failed: {exc}")
        return redirect(url_for("admin", tab="links"))
    if not deleted:
        abort(404)
    _after_write()
    flash("Link deleted.")
    return redirect(url_for("admin", tab="links"))


@app.route("/admin/refresh", methods=["POST"])
def admin_refresh():
    login_required()
    results = [admin_feed().refresh(), public_feed().refresh()]
    ok = all(results)
    flash("Data refreshed." if ok else "Refresh failed, showing the last good data.")
    return redirect(request.referrer or url_for("admin"))


###############################################################################
# Error pages
###############################################################################
@app.errorhandler(404)
def not_found(exc):
    return render_template_string(TEMPL_404, title="Not found"), 404


@app.errorhandler(500)
def internal_error(exc):
    app.logger.error("Unhandled error: %s", exc)
    return render_template_string(TEMPL_500, title="Error"), 500


TEMPL_404 = wrap("""
{% block body %}
  <h2>Page not found</h2>
  <p>The URL you asked for doesn’t exist.
     <a href="{{ url_for('index') }}">Back to the links</a>.</p>
{% endblock %}
""")

TEMPL_500 = wrap("""
{% block body %}
  <h2>Internal Server Error</h2>
  <p>Something broke on our side. Please try again in a minute.</p>
{% endblock %}
""")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    with app.app_context():
        init_db()
    app.run(debug=True)
