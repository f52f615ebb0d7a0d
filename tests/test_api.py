"""
tests/test_api.py
"""
from __future__ import annotations

import copy

import pytest

from linkinbio import page
from linkinbio.page import DEFAULT_DOCUMENT, SQLiteStore, StoreError, app

CSRF = "test-token"          # shared constant so the token matches the session
HDR = {"X-CSRFToken": CSRF}


def _login(client) -> None:
    with client.session_transaction() as sess:
        sess["logged_in"] = True
        sess["csrf"] = CSRF


def _doc(*links) -> dict:
    doc = copy.deepcopy(DEFAULT_DOCUMENT)
    doc["links"] = list(links)
    return doc


def _link(id_, title, enabled=True):
    return {"id": id_, "type": "link", "title": title, "url": f"https://{id_}.example", "enabled": enabled}


# ───────────────────────── auth + csrf ────────────────────────────────
@pytest.mark.parametrize(
    "method, path",
    [
        ("GET", "/api/document"),
        ("POST", "/api/save"),
        ("POST", "/api/preview"),
        ("POST", "/api/upload"),
        ("GET", "/api/analytics"),
        ("PATCH", "/api/profile"),
        ("PATCH", "/api/theme"),
        ("PATCH", "/api/site"),
        ("POST", "/api/links"),
        ("DELETE", "/api/links/1"),
        ("POST", "/api/links/reorder"),
    ],
)
def test_api_requires_login(client, method, path):
    rv = client.open(path, method=method, json={})
    assert rv.status_code == 403
    assert rv.get_json() == {"error": "Forbidden."}


def test_save_rejects_missing_csrf(client):
    _login(client)
    rv = client.post("/api/save", json=_doc())
    assert rv.status_code == 403


# ───────────────────────── /api/save ──────────────────────────────────
def test_save_and_read_back(client):
    _login(client)
    rv = client.post("/api/save", json=_doc(_link("1", "A")), headers=HDR)
    assert rv.status_code == 200
    assert rv.get_json() == {"success": True}

    rv = client.get("/api/document")
    assert rv.get_json()["links"][0]["title"] == "A"


def test_save_validation_error(client):
    _login(client)
    rv = client.post("/api/save", json={"profile": {}}, headers=HDR)
    assert rv.status_code == 400
    assert "links" in rv.get_json()["error"]

    rv = client.post("/api/save", data="not json", headers=HDR)
    assert rv.status_code == 400


def test_save_backend_error_is_500_with_message(client, monkeypatch):
    _login(client)

    def broken(self, doc):
        raise StoreError("backend on fire")

    monkeypatch.setattr(SQLiteStore, "_write", broken)
    rv = client.post("/api/save", json=_doc(), headers=HDR)
    assert rv.status_code == 500
    assert rv.get_json() == {"error": "backend on fire"}


# ───────────────────────── patch API ──────────────────────────────────
def test_patch_profile_theme_site(client):
    _login(client)
    rv = client.patch("/api/profile", json={"name": "Grace", "profileLayout": "cover"}, headers=HDR)
    assert rv.status_code == 200
    assert rv.get_json()["document"]["profile"]["name"] == "Grace"

    rv = client.patch("/api/theme", json={"buttonStyle": "pill", "buttonColor": "#123456"}, headers=HDR)
    assert rv.status_code == 200

    rv = client.patch("/api/site", json={"searchEnabled": True, "adBanner": "Hello"}, headers=HDR)
    assert rv.status_code == 200

    saved = SQLiteStore().load()
    assert saved["profile"]["name"] == "Grace"
    assert saved["profile"]["profileLayout"] == "cover"
    assert saved["profile"]["theme"]["buttonStyle"] == "pill"
    assert saved["searchEnabled"] is True
    assert saved["adBanner"]["text"] == "Hello"


@pytest.mark.parametrize(
    "path, body",
    [
        ("/api/profile", {"theme": {}}),
        ("/api/profile", {"profileLayout": "sideways"}),
        ("/api/theme", {"buttonColor": "blue-ish"}),
        ("/api/site", {"faviconUrl": "javascript:alert(1)"}),
        ("/api/site", ["not", "an", "object"]),
    ],
)
def test_patch_rejects_bad_input(client, path, body):
    _login(client)
    rv = client.patch(path, json=body, headers=HDR)
    assert rv.status_code == 400
    assert "error" in rv.get_json()


def test_links_crud(client):
    _login(client)
    client.post("/api/save", json=_doc(), headers=HDR)

    rv = client.post("/api/links", json={"type": "link", "title": "Shop", "url": "https://shop.example"}, headers=HDR)
    assert rv.status_code == 201
    shop = rv.get_json()["item"]
    assert shop["title"] == "Shop"

    rv = client.post("/api/links", json={"type": "text"}, headers=HDR)
    note = rv.get_json()["item"]

    rv = client.patch(f"/api/links/{shop['id']}", json={"enabled": False}, headers=HDR)
    assert rv.status_code == 200

    rv = client.post("/api/links/reorder", json={"source": note["id"], "target": shop["id"]}, headers=HDR)
    ids = [it["id"] for it in rv.get_json()["document"]["links"]]
    assert ids == [note["id"], shop["id"]]

    rv = client.post(f"/api/links/{note['id']}/move", json={"direction": "down"}, headers=HDR)
    ids = [it["id"] for it in rv.get_json()["document"]["links"]]
    assert ids == [shop["id"], note["id"]]

    rv = client.delete(f"/api/links/{shop['id']}", headers=HDR)
    assert rv.status_code == 200
    assert [it["id"] for it in SQLiteStore().load()["links"]] == [note["id"]]


def test_links_errors(client):
    _login(client)
    client.post("/api/save", json=_doc(_link("1", "A")), headers=HDR)

    assert client.delete("/api/links/nope", headers=HDR).status_code == 404
    assert client.patch("/api/links/1", json={"url": "ftp:x"}, headers=HDR).status_code == 400
    assert client.post("/api/links", json={"type": "poll"}, headers=HDR).status_code == 400
    rv = client.post("/api/links/reorder", json={"source": 1}, headers=HDR)
    assert rv.status_code == 400
    rv = client.post("/api/links/1/move", json={"direction": "left"}, headers=HDR)
    assert rv.status_code == 400
    for bad in (["up"], {"to": "up"}, None, True):
        rv = client.post("/api/links/1/move", json={"direction": bad}, headers=HDR)
        assert rv.status_code == 400


def test_patch_save_failure_surfaces(client, monkeypatch):
    _login(client)

    def broken(self, doc):
        raise StoreError("quota exceeded")

    monkeypatch.setattr(SQLiteStore, "_write", broken)
    rv = client.patch("/api/profile", json={"name": "X"}, headers=HDR)
    assert rv.status_code == 500
    assert rv.get_json()["error"] == "quota exceeded"


# ───────────────────────── preview + admin page ───────────────────────
def test_preview_renders_fragment(client):
    _login(client)
    rv = client.post("/api/preview", json=_doc(_link("1", "Preview me")), headers=HDR)
    assert rv.status_code == 200
    html = rv.data.decode()
    assert "Preview me" in html
    assert "<html" not in html
    assert "__lbVisitSent" not in html


def test_admin_requires_login(client):
    rv = client.get("/admin")
    assert rv.status_code == 302
    assert rv.headers["Location"].endswith("/login")


def test_admin_page_embeds_document(client):
    _login(client)
    client.post("/api/save", json=_doc(_link("1", "Embedded")), headers=HDR)
    rv = client.get("/admin")
    assert rv.status_code == 200
    html = rv.data.decode()
    assert 'id="doc-json"' in html
    assert "Embedded" in html
    assert f"const AUTOSAVE_MS = {app.config['AUTOSAVE_DELAY_MS']};" in html
    for tab in ("Page", "Design", "Site", "Stats"):
        assert f'>{tab}</button>' in html


def test_admin_script_keeps_dirty_flag_for_edits_made_while_saving(client):
    _login(client)
    html = client.get("/admin").data.decode()
    assert "const sent = edits;" in html
    assert "if (edits === sent) {" in html
    assert html.index("edits += 1;") < html.index("async function save()")


# ───────────────────────── end-to-end scenario ────────────────────────
def test_disable_link_scenario(client):
    """Save A → visible; disable A → gone from page and search."""
    _login(client)
    doc = _doc(_link("1", "Alpha link"))
    doc["searchEnabled"] = True
    assert client.post("/api/save", json=doc, headers=HDR).status_code == 200
    assert client.get("/api/document").get_json()["links"][0]["title"] == "Alpha link"
    assert b"Alpha link" in client.get("/").data

    doc["links"][0]["enabled"] = False
    assert client.post("/api/save", json=doc, headers=HDR).status_code == 200
    assert b"Alpha link" not in client.get("/").data

    rv = client.get("/?q=alph")
    assert b"Alpha link" not in rv.data
    assert b"No matching links." in rv.data
    assert page.visible_items(SQLiteStore().load(), "alph") == []
