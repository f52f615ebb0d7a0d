"""
tests/test_errors.py
"""
from __future__ import annotations

import pytest

from linkinbio.page import app

CSRF = "test-token"


def _login(client) -> None:
    with client.session_transaction() as sess:
        sess["logged_in"] = True
        sess["csrf"] = CSRF


def test_html_404(client):
    rv = client.get("/does/not/exist")
    assert rv.status_code == 404
    assert b"Page not found" in rv.data


def test_api_404_is_json(client):
    rv = client.get("/api/nothing-here")
    assert rv.status_code == 404
    assert rv.get_json() == {"error": "Not found."}


def test_csrf_failure_is_403(client):
    _login(client)
    rv = client.post("/api/save", json={})  # logged in, no CSRF header
    assert rv.status_code == 403
    assert rv.get_json() == {"error": "Forbidden."}


@pytest.mark.parametrize(
    "endpoint, path, is_json",
    [("api_document", "/api/document", True), ("robots", "/robots.txt", False)],
)
def test_500_handler(client, monkeypatch, endpoint, path, is_json):
    """Unhandled errors render the themed page (or JSON under /api/)."""

    def boom():
        raise RuntimeError("kaboom")

    monkeypatch.setitem(app.view_functions, endpoint, boom)
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)
    rv = client.get(path)
    assert rv.status_code == 500
    if is_json:
        assert rv.get_json() == {"error": "Internal server error."}
    else:
        assert b"Internal Server Error" in rv.data


def test_security_headers(client):
    rv = client.get("/")
    assert rv.headers["X-Frame-Options"] == "SAMEORIGIN"
    assert rv.headers["X-Content-Type-Options"] == "nosniff"
    assert rv.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
