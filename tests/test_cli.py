"""
tests/test_cli.py
"""
from __future__ import annotations

import copy
import json

from linkinbio.page import DEFAULT_DOCUMENT, SQLiteStore, app, get_db, validate_token


def test_token_and_init(client):
    runner = app.test_cli_runner()
    db = get_db()
    had_admin = db.execute("SELECT 1 FROM user LIMIT 1").fetchone() is not None

    result = runner.invoke(args=["init", "--username", "admin"])
    if had_admin:
        assert result.exit_code != 0
        assert "already exists" in result.output
    else:
        assert result.exit_code == 0, result.output
        assert "One-time login token" in result.output

    result = runner.invoke(args=["token"])
    assert result.exit_code == 0, result.output
    token = result.output.strip().splitlines()[2].strip()
    assert validate_token(token)


def test_export_and_import(client, tmp_path):
    runner = app.test_cli_runner()
    doc = copy.deepcopy(DEFAULT_DOCUMENT)
    doc["profile"]["name"] = "Imported"
    src = tmp_path / "in.json"
    src.write_text(json.dumps(doc))

    result = runner.invoke(args=["import-doc", str(src)])
    assert result.exit_code == 0, result.output
    assert SQLiteStore().load()["profile"]["name"] == "Imported"

    out = tmp_path / "out.json"
    result = runner.invoke(args=["export-doc", str(out)])
    assert result.exit_code == 0, result.output
    assert json.loads(out.read_text())["profile"]["name"] == "Imported"

    result = runner.invoke(args=["export-doc"])
    assert json.loads(result.output)["profile"]["name"] == "Imported"


def test_import_rejects_invalid(client, tmp_path):
    runner = app.test_cli_runner()
    bad = tmp_path / "bad.json"
    bad.write_text('{"profile": {}}')
    result = runner.invoke(args=["import-doc", str(bad)])
    assert result.exit_code != 0
    assert "links" in result.output

    bad.write_text("{nope")
    result = runner.invoke(args=["import-doc", str(bad)])
    assert result.exit_code != 0
    assert "Invalid JSON" in result.output
