import json
from unittest.mock import patch

import pytest

from clip_queue.cli import main
from clip_queue.config import DB_ENV_VAR
from clip_queue.queue import ArtifactReference, JobStatus, SQLiteJobStore


def make_test_pipeline(conf):
    """Pipeline factory loaded by the worker command in these tests."""
    return lambda job: ArtifactReference(uri=f"cdn://{job.lookup_hash}")


@pytest.fixture(autouse=True)
def no_db_env(monkeypatch):
    monkeypatch.delenv(DB_ENV_VAR, raising=False)


@pytest.fixture
def payload_file(tmp_path, make_payload):
    path = tmp_path / "clip.json"
    path.write_text(json.dumps(make_payload()))
    return str(path)


def run_cli(*args):
    with patch("sys.argv", ["clip-queue", *args]):
        main()


def test_cli_help_displays():
    """Test --help works without errors."""
    with patch("sys.argv", ["clip-queue", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_worker_help():
    with patch("sys.argv", ["clip-queue", "worker", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_no_command_shows_help(capsys):
    """Test running with no command shows help."""
    run_cli()
    captured = capsys.readouterr()
    assert "usage:" in captured.out.lower()


def test_submit_and_status(capsys, temp_db, payload_file):
    run_cli("submit", "--payload", payload_file, "--lookup-hash", "H1", "--db", temp_db)
    assert "Job H1: queued" in capsys.readouterr().out

    run_cli("status", "H1", "--db", temp_db)
    out = capsys.readouterr().out
    assert "queued (Queue position: 1)" in out
    assert "Attempts:   0/3" in out


def test_submit_computes_lookup_hash(capsys, temp_db, payload_file, make_payload):
    from clip_queue.queue import compute_lookup_hash

    run_cli("submit", "-p", payload_file, "--db", temp_db)

    expected = compute_lookup_hash(make_payload())
    assert f"Job {expected}: queued" in capsys.readouterr().out


def test_submit_from_stdin(capsys, temp_db, make_payload):
    with patch("sys.stdin") as stdin:
        stdin.read.return_value = json.dumps(make_payload())
        run_cli("submit", "--lookup-hash", "stdin-job", "--db", temp_db)

    assert "Job stdin-job: queued" in capsys.readouterr().out


def test_submit_invalid_payload_exits(capsys, temp_db, tmp_path):
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"kind": "clip", "timestamps": [1]}))

    with pytest.raises(SystemExit) as exc_info:
        run_cli("submit", "-p", str(bad), "--lookup-hash", "bad", "--db", temp_db)

    assert exc_info.value.code == 1
    assert "invalid payload" in capsys.readouterr().out.lower()


def test_submit_unreadable_payload_exits(temp_db, tmp_path):
    with pytest.raises(SystemExit) as exc_info:
        run_cli("submit", "-p", str(tmp_path / "missing.json"), "--db", temp_db)
    assert exc_info.value.code == 1


def test_status_unknown_job_exits(capsys, temp_db):
    with pytest.raises(SystemExit) as exc_info:
        run_cli("status", "nope", "--db", temp_db)
    assert exc_info.value.code == 1
    assert "not found" in capsys.readouterr().out


def test_stats(capsys, temp_db, payload_file):
    run_cli("submit", "-p", payload_file, "--lookup-hash", "H1", "--db", temp_db)
    run_cli("stats", "--db", temp_db)

    out = capsys.readouterr().out
    assert "QUEUE STATUS" in out
    assert "Queued:               1" in out
    assert "Total:                1" in out


def test_history(capsys, temp_db, payload_file):
    run_cli("submit", "-p", payload_file, "--lookup-hash", "H1", "--db", temp_db)
    run_cli("history", "H1", "--db", temp_db)

    assert "-> queued" in capsys.readouterr().out


def test_reclaim(capsys, temp_db, payload_file):
    run_cli("submit", "-p", payload_file, "--lookup-hash", "H1", "--db", temp_db)
    store = SQLiteJobStore(temp_db)
    store.db.conn.execute(
        "UPDATE jobs SET status = 'processing', instance_id = 'dead', attempts = 1, "
        "claimed_at = '2000-01-01T00:00:00.000000+00:00', heartbeat_at = NULL"
    )

    run_cli("reclaim", "--db", temp_db)

    out = capsys.readouterr().out
    assert "Reclaimed 1 orphaned jobs" in out
    assert store.get("H1").status == JobStatus.QUEUED
    store.close()


def test_worker_bad_pipeline_exits(capsys, temp_db):
    with pytest.raises(SystemExit) as exc_info:
        run_cli("worker", "--pipeline", "not-a-target", "--db", temp_db)
    assert exc_info.value.code == 1
    assert "module:callable" in capsys.readouterr().out


def test_worker_drain_processes_queue(capsys, temp_db, payload_file):
    run_cli("submit", "-p", payload_file, "--lookup-hash", "H1", "--db", temp_db)

    with patch("signal.signal"):
        run_cli(
            "worker",
            "--pipeline",
            "test_cli:make_test_pipeline",
            "--drain",
            "--instance-id",
            "cli-instance",
            "--db",
            temp_db,
        )

    out = capsys.readouterr().out
    assert "INSTANCE SUMMARY" in out
    assert "cli-instance" in out
    assert "Completed:            1" in out

    store = SQLiteJobStore(temp_db)
    job = store.get("H1")
    store.close()
    assert job.status == JobStatus.COMPLETED
    assert job.artifact.uri == "cdn://H1"
