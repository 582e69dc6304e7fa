"""
tests/test_errors.py
"""
from __future__ import annotations

import microlight.blog as blog
from microlight.db import DataCorruption, StorageUnavailable
from microlight.sql import InvalidIdentifier


# ───────────────────────── helpers ──────────────────────────────────
def _boom(exc: Exception):
    def _raise(*a, **kw):
        raise exc

    return _raise


# ─────────────────────────■  tests  ■────────────────────────────────
def test_404_is_json(client):
    resp = client.get("/this/route/does/not/exist")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "not_found"


def test_405_is_json(client):
    resp = client.put("/micropub")
    assert resp.status_code == 405
    assert resp.get_json()["error"] == "Method Not Allowed"


def test_storage_failures_become_server_error(client, monkeypatch):
    for exc in (
        StorageUnavailable("disk gone"),
        DataCorruption("bad row"),
        InvalidIdentifier("post;"),
    ):
        monkeypatch.setattr(blog, "find_posts", _boom(exc))
        resp = client.get("/micropub?q=source")
        assert resp.status_code == 500
        body = resp.get_json()
        assert body["error"] == "server_error"
        # internals stay in the log, not in the payload
        assert str(exc) not in body["error_description"]


def test_500_handler(client, monkeypatch):
    """
    Temporarily replace the query view with one that crashes, but disable
    exception propagation so the global 500-handler renders the payload.
    """
    monkeypatch.setitem(
        blog.app.view_functions, "micropub_query", _boom(RuntimeError("kaboom!"))
    )
    monkeypatch.setitem(blog.app.config, "PROPAGATE_EXCEPTIONS", False)

    resp = client.get("/micropub?q=config")
    assert resp.status_code == 500
    assert resp.get_json()["error"] == "server_error"
