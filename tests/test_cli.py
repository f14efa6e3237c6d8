"""CLI tests: each command runs against a temp database."""

import json

import pytest

from memrefine.cli import build_parser, main


@pytest.fixture
def db(tmp_path, monkeypatch):
    monkeypatch.delenv("MEMREFINE_DB_PATH", raising=False)
    monkeypatch.delenv("MEMREFINE_THRESHOLD", raising=False)
    return str(tmp_path / "cli.db")


def _run(capsys, db, *argv):
    main(["--db", db, *argv])
    return capsys.readouterr().out


def _run_json(capsys, db, *argv):
    return json.loads(_run(capsys, db, *argv, "--json"))


def test_parser_knows_every_command():
    parser = build_parser()
    args = parser.parse_args(["tool", "abc", "consolidate", "--ids", "1,2", "--content", "merged"])
    assert args.command == "tool"
    assert args.ids == "1,2"


def test_no_command_prints_help(capsys):
    with pytest.raises(SystemExit) as exc:
        main([])
    assert exc.value.code == 0
    assert "memrefine" in capsys.readouterr().out


def test_add_list_search(capsys, db):
    added = _run_json(capsys, db, "add", "prefers short answers", "--owner", "a1")
    assert added["token_estimate"] == 6

    listing = _run(capsys, db, "list", "--owner", "a1")
    assert f"#{added['id']}" in listing
    assert "~6 core tokens" in listing

    results = _run_json(capsys, db, "search", "SHORT", "--owner", "a1")
    assert [r["id"] for r in results] == [added["id"]]


def test_refinement_session_flow(capsys, db):
    first = _run_json(capsys, db, "add", "likes tea", "--owner", "a1")
    second = _run_json(capsys, db, "add", "enjoys tea", "--owner", "a1")
    _run_json(capsys, db, "add", "works in UTC", "--owner", "a1")

    session = _run_json(capsys, db, "open", "--owner", "a1", "--threshold", "0.5")
    sid = session["session_id"]

    merged = json.loads(_run(
        capsys, db, "tool", sid, "consolidate", "--ids", f"{first['id']},{second['id']}", "--content", "likes tea",
    ))
    assert merged["type"] == "consolidated"

    done = json.loads(_run(capsys, db, "tool", sid, "complete", "--summary", "merged tea"))
    assert done["type"] == "refinement_complete"

    sessions = _run_json(capsys, db, "sessions", "--owner", "a1")
    assert sessions[0]["status"] == "completed"

    audit = _run_json(capsys, db, "audit", sid)
    assert [e["operation"] for e in audit] == ["consolidate", "complete"]

    journal = _run_json(capsys, db, "list", "--owner", "a1", "--type", "journal")
    assert journal["memories"][0]["content"] == "Refinement session: merged tea"


def test_refused_tool_call_exits_nonzero(capsys, db):
    session = _run_json(capsys, db, "open", "--owner", "a1")
    with pytest.raises(SystemExit) as exc:
        main(["--db", db, "tool", session["session_id"], "delete", "--id", "4242"])
    assert exc.value.code == 1
    assert json.loads(capsys.readouterr().out)["code"] == "record_not_found"


def test_rollback_command(capsys, db):
    record = _run_json(capsys, db, "add", "x" * 40, "--owner", "a1")
    _run_json(capsys, db, "add", "y" * 40, "--owner", "a1")
    sid = _run_json(capsys, db, "open", "--owner", "a1", "--threshold", "0.1")["session_id"]
    _run(capsys, db, "tool", sid, "delete", "--id", str(record["id"]))

    out = _run(capsys, db, "rollback", sid, "--dry-run")
    assert "Would reverse 1 operation(s)" in out

    outcome = _run_json(capsys, db, "rollback", sid, "--reason", "operator")
    assert outcome["trigger"] == "manual"
    assert outcome["post_mass"] == 20


def test_errors_exit_with_message(capsys, db):
    with pytest.raises(SystemExit) as exc:
        main(["--db", db, "protect", "99"])
    assert exc.value.code == 1
    assert "Error:" in capsys.readouterr().err


def test_settings_reap_due_stats(capsys, db):
    _run_json(capsys, db, "add", "z" * 400, "--owner", "a1")
    settings = _run_json(capsys, db, "settings", "--owner", "a1", "--token-budget", "50")
    assert settings["effective_token_budget"] == 50

    due = _run_json(capsys, db, "due")
    assert due == [{"owner_id": "a1", "mass": 100, "token_budget": 50}]

    _run_json(capsys, db, "open", "--owner", "a1")
    reaped = _run_json(capsys, db, "reap", "--older-than", "0")
    assert len(reaped["reaped"]) == 1

    stats = _run_json(capsys, db, "stats")
    assert stats["sessions"]["abandoned"] == 1

    status = _run_json(capsys, db, "status")
    assert status["db_path"] == db
    assert status["agents"] == ["a1"]


def test_discard_and_restore(capsys, db):
    record = _run_json(capsys, db, "add", "obsolete fact", "--owner", "a1")
    keeper = _run_json(capsys, db, "add", "core identity", "--owner", "a1", "--protected")

    discarded = _run_json(capsys, db, "discard", str(record["id"]))
    assert discarded["discarded_at"] is not None
    assert _run_json(capsys, db, "list", "--owner", "a1")["mass"] == 4

    with pytest.raises(SystemExit) as exc:
        main(["--db", db, "discard", str(keeper["id"])])
    assert exc.value.code == 1
    assert "constitutional" in capsys.readouterr().err

    out = _run(capsys, db, "restore", str(record["id"]))
    assert f"Restored memory #{record['id']}" in out
    listing = _run_json(capsys, db, "list", "--owner", "a1")
    assert {m["id"] for m in listing["memories"]} == {record["id"], keeper["id"]}


def test_settings_refinement_prompt(capsys, db):
    settings = _run_json(capsys, db, "settings", "--owner", "a1", "--refinement-prompt", "Keep names.")
    assert settings["refinement_prompt"] == "Keep names."
    assert "Instructions: Keep names." in _run(capsys, db, "settings", "--owner", "a1")

    cleared = _run_json(capsys, db, "settings", "--owner", "a1", "--refinement-prompt", "")
    assert cleared["refinement_prompt"] is None
