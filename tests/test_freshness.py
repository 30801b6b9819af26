"""
tests/test_freshness.py
"""
from __future__ import annotations

import threading
import time

import pytest

from navshelf.shelf import (
    CacheConfig,
    Category,
    Dataset,
    Debouncer,
    FeedState,
    FreshnessController,
    Link,
    MemoryStorage,
    SnapshotCache,
    SqliteStore,
    StoreError,
    builtin_dataset,
)


# ───────────────────────── fakes ──────────────────────────────────────
class FakeTimer:
    """Stands in for threading.Timer; fires only when the test says so."""

    created: list["FakeTimer"] = []

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.cancelled = False
        self.started = False
        self.daemon = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function(*self.args)


class FakeStore:
    def __init__(self, categories=(), links=(), fail=False):
        self.categories = list(categories)
        self.links = list(links)
        self.fail = fail
        self.reads = 0
        self.subscriptions: dict[str, list] = {}

    def list_categories(self):
        self.reads += 1
        if self.fail:
            raise StoreError("network down")
        return list(self.categories)

    def list_links(self):
        if self.fail:
            raise StoreError("network down")
        return list(self.links)

    def subscribe(self, table, callback):
        self.subscriptions.setdefault(table, []).append(callback)
        return lambda: self.subscriptions[table].remove(callback)


class Spawner:
    """Collects background jobs instead of starting threads."""

    def __init__(self):
        self.jobs = []

    def __call__(self, fn):
        self.jobs.append(fn)

    def run_all(self):
        jobs, self.jobs = self.jobs, []
        for job in jobs:
            job()


CAT = Category(id="c1", name="Tools", icon="🛠️")
LINK = Link(id="l1", category_id="c1", title="GitHub", url="https://github.com")


@pytest.fixture(autouse=True)
def _reset_timers():
    FakeTimer.created.clear()


def _controller(store, cache=None, spawner=None):
    cache = cache or SnapshotCache(CacheConfig("feed", 300), MemoryStorage())
    return FreshnessController(
        store,
        cache,
        debounce=1.0,
        spawn=spawner or Spawner(),
        timer_factory=FakeTimer,
    )


# ───────────────────────── debouncer ──────────────────────────────────
def test_debouncer_coalesces_a_burst_into_one_call():
    calls = []
    deb = Debouncer(1.0, lambda: calls.append("x"), timer_factory=FakeTimer)

    for _ in range(5):
        deb.call()

    assert len(FakeTimer.created) == 5
    assert [t.cancelled for t in FakeTimer.created] == [True] * 4 + [False]
    assert all(t.interval == 1.0 and t.daemon for t in FakeTimer.created)

    for t in FakeTimer.created:
        t.fire()
    assert calls == ["x"]
    assert not deb.pending


def test_debouncer_ignores_a_stale_timer_that_slipped_through():
    calls = []
    deb = Debouncer(1.0, lambda: calls.append("x"), timer_factory=FakeTimer)
    deb.call()
    first = FakeTimer.created[0]
    deb.call()

    # the first timer was already running its callback when it got cancelled
    first.function(*first.args)
    assert calls == []

    FakeTimer.created[1].fire()
    assert calls == ["x"]


def test_debouncer_cancel():
    calls = []
    deb = Debouncer(1.0, lambda: calls.append("x"), timer_factory=FakeTimer)
    deb.call()
    deb.cancel()
    FakeTimer.created[0].function(*FakeTimer.created[0].args)
    assert calls == []


def test_debouncer_with_real_timer():
    done = threading.Event()
    calls = []

    def _hit():
        calls.append(1)
        done.set()

    deb = Debouncer(0.05, _hit)
    for _ in range(3):
        deb.call()
    assert done.wait(2)
    assert calls == [1]


# ───────────────────────── controller ─────────────────────────────────
def test_mount_with_cache_miss_blocks_and_saves():
    store = FakeStore([CAT], [LINK])
    storage = MemoryStorage()
    cache = SnapshotCache(CacheConfig("feed", 300), storage)
    feed = _controller(store, cache)

    feed.mount()

    assert feed.state is FeedState.FRESH
    assert feed.dataset == Dataset((CAT,), (LINK,))
    assert cache.load() == feed.dataset
    assert feed.generation == 1


def test_mount_with_cache_hit_paints_then_revalidates():
    cache = SnapshotCache(CacheConfig("feed", 300), MemoryStorage())
    cache.save([CAT], [])
    newer = Category(id="c2", name="Docs")
    store = FakeStore([CAT, newer], [LINK])
    spawner = Spawner()
    feed = _controller(store, cache, spawner)

    feed.mount()
    # painted from cache, network not touched yet
    assert store.reads == 0
    assert feed.state is FeedState.REVALIDATING
    assert feed.dataset.categories == (CAT,)
    assert len(spawner.jobs) == 1

    spawner.run_all()
    assert feed.state is FeedState.FRESH
    assert feed.dataset.categories == (CAT, newer)
    assert feed.generation == 2


def test_mount_is_idempotent():
    store = FakeStore([CAT])
    feed = _controller(store)
    feed.mount()
    feed.mount()
    assert store.reads == 1


def test_failure_with_nothing_loaded_falls_back_to_builtin():
    feed = _controller(FakeStore(fail=True))
    feed.mount()

    assert feed.state is FeedState.FALLBACK
    assert feed.dataset == builtin_dataset()
    assert feed.dataset.categories


def test_failed_revalidation_keeps_cached_data():
    cache = SnapshotCache(CacheConfig("feed", 300), MemoryStorage())
    cache.save([CAT], [LINK])
    spawner = Spawner()
    feed = _controller(FakeStore(fail=True), cache, spawner)

    feed.mount()
    spawner.run_all()

    assert feed.state is FeedState.CACHED
    assert feed.dataset == Dataset((CAT,), (LINK,))


def test_failed_refresh_after_fresh_stays_fresh():
    store = FakeStore([CAT], [LINK])
    feed = _controller(store)
    feed.mount()

    store.fail = True
    assert feed.refresh() is False
    assert feed.state is FeedState.FRESH
    assert feed.dataset.links == (LINK,)


def test_change_notifications_are_debounced_into_one_fetch():
    store = FakeStore([CAT])
    spawner = Spawner()
    feed = _controller(store, spawner=spawner)
    feed.mount()
    reads_after_mount = store.reads

    feed.subscribe(store)
    for _ in range(4):
        store.subscriptions["link"][0]()
    store.subscriptions["category"][0]()

    assert feed.refresh_pending
    assert spawner.jobs == []          # nothing until the quiet period ends

    store.categories.append(Category(id="c9", name="New"))
    for t in FakeTimer.created:
        t.fire()
    assert len(spawner.jobs) == 1
    spawner.run_all()

    assert store.reads == reads_after_mount + 1
    assert [c.id for c in feed.dataset.categories] == ["c1", "c9"]


def test_close_unsubscribes_and_cancels_pending_refresh():
    store = FakeStore([CAT])
    spawner = Spawner()
    feed = _controller(store, spawner=spawner)
    feed.mount()
    feed.subscribe(store)
    feed.on_remote_change()

    feed.close()

    assert store.subscriptions == {"category": [], "link": []}
    FakeTimer.created[-1].function(*FakeTimer.created[-1].args)
    assert spawner.jobs == []


# ───────────────────────── with the real store ────────────────────────
@pytest.fixture
def sqlite_store(tmp_path) -> SqliteStore:
    s = SqliteStore(tmp_path / "shelf.sqlite3")
    s.init_schema()
    return s


def test_store_notifies_subscribers_after_writes(sqlite_store):
    events = []
    unsubscribe = sqlite_store.subscribe("category", events.append)

    cat = sqlite_store.insert_category(Category(id="", name="Tools"))
    sqlite_store.update_category(Category(id=cat.id, name="Tooling"))
    sqlite_store.delete_category(cat.id)
    sqlite_store.delete_category(cat.id)       # nothing deleted, no event
    unsubscribe()
    sqlite_store.insert_category(Category(id="", name="Ignored"))

    assert [(e.table, e.kind) for e in events] == [
        ("category", "insert"),
        ("category", "update"),
        ("category", "delete"),
    ]


def test_store_rejects_unknown_table(sqlite_store):
    with pytest.raises(ValueError):
        sqlite_store.subscribe("users", lambda e: None)


def test_store_wraps_sqlite_errors(sqlite_store):
    orphan = Link(id="", category_id="missing", title="x", url="https://x.example")
    with pytest.raises(StoreError):
        sqlite_store.insert_link(orphan)


def test_deleting_a_category_leaves_no_orphans_after_refresh(sqlite_store):
    tools = sqlite_store.insert_category(Category(id="", name="Tools", sort_order=0))
    docs = sqlite_store.insert_category(Category(id="", name="Docs", sort_order=1))
    for i in range(3):
        sqlite_store.insert_link(
            Link(id="", category_id=tools.id, title=f"t{i}", url="https://t.example", sort_order=i)
        )
    sqlite_store.insert_link(Link(id="", category_id=docs.id, title="d", url="https://d.example"))

    feed = _controller(sqlite_store)
    feed.mount()
    assert len(feed.dataset.links) == 4

    sqlite_store.delete_category(tools.id)
    feed.refresh()

    assert [c.id for c in feed.dataset.categories] == [docs.id]
    assert all(ln.category_id == docs.id for ln in feed.dataset.links)
    nested = feed.dataset.nested()
    assert [(vc.id, len(vc.links)) for vc in nested] == [(docs.id, 1)]


def test_store_orders_by_sort_order(sqlite_store):
    sqlite_store.insert_category(Category(id="b", name="B", sort_order=2))
    sqlite_store.insert_category(Category(id="a", name="A", sort_order=1))
    assert [c.id for c in sqlite_store.list_categories()] == ["a", "b"]


# ───────────────────────── over HTTP ──────────────────────────────────
def test_page_picks_up_other_writers_once_the_snapshot_expires(client, store, monkeypatch):
    from navshelf import shelf

    cat = store.insert_category(Category(id="", name="Tools"))
    assert client.get("/").status_code == 200          # mounts + caches

    # another worker (or the CLI) writes without notifying this process
    other = SqliteStore(shelf.app.config["DATABASE"])
    other.insert_link(Link(id="", category_id=cat.id, title="NewLink", url="https://new.example"))
    assert b"NewLink" not in client.get("/").data      # snapshot still within its TTL

    later = time.time() + 3600
    monkeypatch.setattr(shelf, "time", lambda: later)
    rv = client.get("/")
    assert b"NewLink" in rv.data
    assert shelf.public_feed().state is FeedState.FRESH


def test_fallback_recovers_once_the_store_answers(client, store, monkeypatch):
    from navshelf import shelf

    down = [True]
    real = store.list_categories

    def _flaky():
        if down[0]:
            raise StoreError("database is locked")
        return real()

    monkeypatch.setattr(store, "list_categories", _flaky)
    assert b"Developer tools" in client.get("/").data
    assert shelf.public_feed().state is FeedState.FALLBACK

    store.insert_category(Category(id="", name="Reading"))
    down[0] = False
    rv = client.get("/")
    assert b"Reading" in rv.data
    assert b"Developer tools" not in rv.data
    assert shelf.public_feed().state is FeedState.FRESH


def test_ensure_fresh_leaves_a_valid_snapshot_alone():
    store = FakeStore([CAT])
    spawner = Spawner()
    feed = _controller(store, spawner=spawner)
    feed.mount()

    assert feed.ensure_fresh() is False
    assert spawner.jobs == []

    feed.cache.clear()
    assert feed.ensure_fresh() is True
    assert feed.state is FeedState.REVALIDATING
    # already revalidating: no second job
    assert feed.ensure_fresh() is False
    assert len(spawner.jobs) == 1
