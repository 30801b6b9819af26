"""
tests/test_errors.py
"""
from __future__ import annotations

from navshelf.shelf import FeedState, StoreError, app, public_feed


def test_404_custom_page(client):
    """
    Any unknown URL yields the themed “Page not found” template.
    """
    resp = client.get("/this/route/does/not/exist")
    assert resp.status_code == 404
    assert b"Page not found" in resp.data
    # site title appears in the header
    assert b"navshelf" in resp.data


def test_500_handler_renders_friendly_page(client, monkeypatch):
    """
    Temporarily replace ``index`` with a view that crashes, but disable
    exception propagation so the global 500-handler can render the page.
    """
    def _boom():
        raise RuntimeError("kaboom!")

    monkeypatch.setitem(app.view_functions, "index", _boom)
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)

    resp = client.get("/")
    assert resp.status_code == 500
    assert b"Internal Server Error" in resp.data


def test_unreachable_store_serves_builtin_links(client, store, monkeypatch):
    """With the store down and no cache, the public page still has content."""
    def _down():
        raise StoreError("database is locked")

    monkeypatch.setattr(store, "list_categories", _down)

    resp = client.get("/")
    assert resp.status_code == 200
    assert public_feed().state is FeedState.FALLBACK
    assert b"GitHub" in resp.data
    assert b"Developer tools" in resp.data
