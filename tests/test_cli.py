"""Tests for the wagob CLI."""

import json
import logging
from unittest.mock import AsyncMock, patch

import pytest

from conftest import EMPLOYER, T0, WORKER, make_event_for
from wagob.cli import build_parser, main
from wagob.config import get_settings
from wagob.engine import ReconciliationEngine
from wagob.scheduler import CycleReport
from wagob.storage.sqlite import SQLiteStateStore
from wagob.types import (
    Alert,
    AlertSeverity,
    DeadLetter,
    EventKind,
    PollCursor,
    account_hash,
)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    """No ambient WAGOB_* configuration, fresh settings, clean logger."""
    for name in ("WAGOB_CONTRACT_JOB_REGISTRY", "WAGOB_CONTRACT_ESCROW", "WAGOB_CONTRACT_REPUTATION"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    logger = logging.getLogger("wagob")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "cli.db")


@pytest.fixture
def seeded_db(db_path):
    """A database holding one assigned job with a rating for the worker."""
    engine = ReconciliationEngine(SQLiteStateStore(db_path), clock=lambda: T0)
    engine.apply(
        make_event_for(
            EventKind.JOB_CREATED,
            "c1",
            job_id=1,
            employer=EMPLOYER,
            wages=800,
            duration_hours=12,
            category="security",
        )
    )
    engine.apply(make_event_for(EventKind.WORKER_ASSIGNED, "c2", job_id=1, worker=WORKER))
    engine.apply(
        make_event_for(
            EventKind.RATING_SUBMITTED, "c3", job_id=1, rater=EMPLOYER, ratee=WORKER, rating=4
        )
    )
    return db_path


def _add_alert(db_path):
    store = SQLiteStateStore(db_path)
    with store.transaction() as conn:
        return store.add_alert(
            conn,
            Alert(
                "EQjobs",
                "fetch_failures",
                AlertSeverity.CRITICAL,
                "EQjobs: 3 consecutive failed poll cycles",
            ),
        )


class TestParser:
    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_jobs_status_choices(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["jobs", "--status", "archived"])

    def test_jobs_defaults(self):
        args = build_parser().parse_args(["jobs"])
        assert args.limit == 20
        assert args.cursor is None


class TestStatus:
    def test_empty_database(self, db_path, capsys):
        main(["--db", db_path, "status"])
        out = capsys.readouterr().out
        assert "Indexer Status (testnet)" in out
        assert "Jobs:         0" in out

    def test_json(self, seeded_db, capsys):
        main(["--db", seeded_db, "status", "--json"])
        data = json.loads(capsys.readouterr().out)
        assert data["counts"]["jobs"] == 1
        assert data["counts"]["ratings"] == 1
        assert data["cursors"] == []
        assert data["health"]["contracts"] == []

    def test_outbox_and_alert_counts(self, db_path, capsys):
        _add_alert(db_path)
        main(["--db", db_path, "status"])
        out = capsys.readouterr().out
        assert "Undelivered:  0" in out
        assert "Alerts:       1 active" in out

    def test_health_per_contract(self, db_path, capsys, monkeypatch):
        monkeypatch.setenv("WAGOB_CONTRACT_ESCROW", "EQescrow")
        main(["--db", db_path, "status"])
        out = capsys.readouterr().out
        assert "Health: warning" in out
        assert "EQescrow  warning" in out


class TestJobs:
    def test_list_json(self, seeded_db, capsys):
        main(["--db", seeded_db, "jobs", "--json"])
        data = json.loads(capsys.readouterr().out)
        assert [j["job_id"] for j in data["items"]] == [1]
        assert data["next_cursor"] is None

    def test_empty_filter(self, seeded_db, capsys):
        main(["--db", seeded_db, "jobs", "--status", "completed"])
        assert "No jobs found." in capsys.readouterr().out

    def test_show_job(self, seeded_db, capsys):
        main(["--db", seeded_db, "job", "1"])
        out = capsys.readouterr().out
        assert "Job 1 [assigned] security" in out
        assert WORKER in out

    def test_missing_job_exits(self, db_path, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["--db", db_path, "job", "42"])
        assert exc.value.code == 1
        assert "Job 42 not found" in capsys.readouterr().out


class TestReputation:
    def test_by_account(self, seeded_db, capsys):
        main(["--db", seeded_db, "reputation", WORKER, "--json"])
        data = json.loads(capsys.readouterr().out)
        assert data["weighted_score"] == 400
        assert data["rating_count"] == 1

    def test_by_hash(self, seeded_db, capsys):
        main(["--db", seeded_db, "reputation", str(account_hash(WORKER))])
        assert "Score: 4.00 (1 ratings)" in capsys.readouterr().out

    def test_unrated(self, seeded_db, capsys):
        main(["--db", seeded_db, "reputation", EMPLOYER])
        assert f"No ratings for {EMPLOYER}" in capsys.readouterr().out


class TestDeadLetters:
    def test_none(self, db_path, capsys):
        main(["--db", db_path, "dead-letters"])
        assert "No dead letters." in capsys.readouterr().out

    def test_requeue_missing_exits(self, db_path, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["--db", db_path, "requeue", "nope"])
        assert exc.value.code == 1
        assert "No dead letter for nope" in capsys.readouterr().out


class TestRunAndCycle:
    def test_run_without_contracts_exits(self, db_path, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["--db", db_path, "run"])
        assert exc.value.code == 1
        assert "No contract addresses configured" in capsys.readouterr().out

    def test_cycle_prints_reports(self, db_path, capsys, monkeypatch):
        monkeypatch.setenv("WAGOB_CONTRACT_JOB_REGISTRY", "EQjobs")
        reports = [CycleReport("EQjobs", fetched=2, applied=2, cursor=7)]

        with patch(
            "wagob.scheduler.PollScheduler.run_cycle", new=AsyncMock(return_value=reports)
        ) as run_cycle:
            main(["--db", db_path, "cycle", "--address", "EQjobs"])

        run_cycle.assert_awaited_once_with("EQjobs")
        out = capsys.readouterr().out
        assert "✓ EQjobs: fetched 2, applied 2" in out
        assert "cursor 7" in out

    def test_cycle_unknown_address_exits(self, db_path):
        with pytest.raises(SystemExit) as exc:
            main(["--db", db_path, "cycle", "--address", "EQnobody"])
        assert exc.value.code == 1


class TestRequeueAndRewind:
    def test_requeue_existing(self, db_path, capsys):
        store = SQLiteStateStore(db_path)
        with store.transaction() as conn:
            store.add_dead_letter(
                conn, DeadLetter("tx-dead", "escrow_locked", 404, 5, "Escrow 404 not found")
            )

        main(["--db", db_path, "requeue", "tx-dead"])

        assert "✓ Requeued tx-dead" in capsys.readouterr().out
        assert store.list_dead_letters() == []

    def test_rewind_moves_cursor_back(self, db_path, capsys, monkeypatch):
        monkeypatch.setenv("WAGOB_CONTRACT_ESCROW", "EQescrow")
        store = SQLiteStateStore(db_path)
        store.save_cursor(PollCursor(address="EQescrow", last_sequence=40))

        main(["--db", db_path, "rewind", "EQescrow", "12"])

        assert store.get_cursor("EQescrow").last_sequence == 12
        assert "cursor 40 -> 12" in capsys.readouterr().out

    def test_rewind_forward_refused(self, db_path, monkeypatch):
        monkeypatch.setenv("WAGOB_CONTRACT_ESCROW", "EQescrow")
        with pytest.raises(SystemExit) as exc:
            main(["--db", db_path, "rewind", "EQescrow", "5"])
        assert exc.value.code == 1

    def test_rewind_unknown_address(self, db_path):
        with pytest.raises(SystemExit) as exc:
            main(["--db", db_path, "rewind", "EQnobody", "0"])
        assert exc.value.code == 1


class TestAlerts:
    def test_none(self, db_path, capsys):
        main(["--db", db_path, "alerts"])
        assert "No active alerts." in capsys.readouterr().out

    def test_list_and_resolve(self, db_path, capsys):
        alert_id = _add_alert(db_path)

        main(["--db", db_path, "alerts"])
        out = capsys.readouterr().out
        assert f"#{alert_id}  [critical] fetch_failures  active" in out
        assert "3 consecutive failed poll cycles" in out

        main(["--db", db_path, "resolve-alert", str(alert_id)])
        assert f"✓ Resolved alert {alert_id}" in capsys.readouterr().out

        main(["--db", db_path, "alerts", "--all", "--json"])
        [data] = json.loads(capsys.readouterr().out)
        assert data["status"] == "resolved"

    def test_resolve_missing_exits(self, db_path, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["--db", db_path, "resolve-alert", "99"])
        assert exc.value.code == 1
        assert "No active alert 99" in capsys.readouterr().out
