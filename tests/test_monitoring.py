"""Tests for contract health monitoring and alerts."""

import logging
from datetime import timedelta

import pytest

from wagob.config import ContractInfo, ContractRegistry, Settings
from wagob.monitoring import (
    ERROR_RATE,
    ESCALATION,
    FETCH_FAILURES,
    STALE,
    VOLUME,
    ContractMonitor,
)
from wagob.scheduler import CycleReport
from wagob.types import AlertSeverity, AlertStatus, ContractKind

JOBS = "EQjobs"
ESCROW = "EQescrow"


@pytest.fixture
def monitor(store, clock):
    return ContractMonitor(store, clock=clock, failure_threshold=3, stale_after_seconds=300)


def ok(address=JOBS, fetched=2, applied=None, cursor=2, caught_up=True, **counts):
    return CycleReport(
        address,
        fetched=fetched,
        applied=fetched if applied is None else applied,
        cursor=cursor,
        caught_up=caught_up,
        **counts,
    )


def failed(address=JOBS, error="TransientIOError: indexer down"):
    return CycleReport(address, error=error)


class TestHealth:
    def test_success_records_health_and_snapshots(self, monitor, store, clock):
        assert monitor.record_cycle(ok(cursor=7)) == []

        health = store.get_contract_health(JOBS)
        assert health.last_success_at == clock.now
        assert health.last_sequence == 7
        assert health.caught_up
        assert health.consecutive_failures == 0

        count, total = store.metric_stats(JOBS, "transactions", clock.now - timedelta(hours=1))
        assert (count, total) == (1, 2.0)

    def test_failure_counts_and_recovery_resets(self, monitor, store):
        monitor.record_cycle(ok())
        monitor.record_cycle(failed())
        monitor.record_cycle(failed(error="TimeoutError: "))

        health = store.get_contract_health(JOBS)
        assert health.consecutive_failures == 2
        assert health.last_error == "TimeoutError: "
        assert health.last_sequence == 2

        monitor.record_cycle(ok(cursor=3))
        health = store.get_contract_health(JOBS)
        assert health.consecutive_failures == 0
        assert health.last_error is None
        assert health.last_sequence == 3

    def test_in_progress_skip_ignored(self, monitor, store):
        assert monitor.record_cycle(CycleReport(JOBS, skipped="in_progress")) == []
        assert store.get_contract_health(JOBS) is None

    def test_backoff_skip_is_not_a_failure(self, monitor, store):
        monitor.record_cycle(ok())
        monitor.record_cycle(CycleReport(JOBS, skipped="backoff"))
        assert store.get_contract_health(JOBS).consecutive_failures == 0


class TestFailureAlerts:
    def test_threshold_raises_one_critical_alert(self, monitor):
        assert monitor.record_cycle(failed()) == []
        assert monitor.record_cycle(failed()) == []

        [alert] = monitor.record_cycle(failed())
        assert alert.alert_type == FETCH_FAILURES
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.metadata["consecutive_failures"] == 3
        assert alert.id is not None

        # Still failing: no second alert while the first is active
        assert monitor.record_cycle(failed()) == []
        assert len(monitor.list_alerts()) == 1

    def test_success_resolves_failure_alert(self, monitor):
        for _ in range(3):
            monitor.record_cycle(failed())

        monitor.record_cycle(ok())

        assert monitor.list_alerts() == []
        [alert] = monitor.list_alerts(include_resolved=True)
        assert alert.status == AlertStatus.RESOLVED
        assert alert.resolved_at is not None

    def test_alert_logged_as_error(self, monitor, caplog):
        with caplog.at_level(logging.ERROR, logger="wagob.monitoring"):
            for _ in range(3):
                monitor.record_cycle(failed())
        assert "[CRITICAL] fetch_failures" in caplog.text


class TestStaleness:
    def test_never_polled_is_not_stale(self, monitor, store):
        monitor.record_cycle(failed())
        assert not monitor.is_stale(store.get_contract_health(JOBS))

    def test_backoff_after_long_silence_raises_stale(self, monitor, clock):
        monitor.record_cycle(ok())
        clock.advance(minutes=10)

        [alert] = monitor.record_cycle(CycleReport(JOBS, skipped="backoff"))

        assert alert.alert_type == STALE
        assert alert.severity == AlertSeverity.ERROR

    def test_recent_success_is_fresh(self, monitor, clock):
        monitor.record_cycle(ok())
        clock.advance(minutes=2)
        assert monitor.record_cycle(CycleReport(JOBS, skipped="backoff")) == []

    def test_stale_resolves_on_success(self, monitor, clock):
        monitor.record_cycle(ok())
        clock.advance(minutes=10)
        monitor.record_cycle(failed())
        assert [a.alert_type for a in monitor.list_alerts()] == [STALE]

        monitor.record_cycle(ok())
        assert monitor.list_alerts() == []


class TestTrafficAlerts:
    def test_error_rate_over_threshold(self, monitor):
        [alert] = monitor.record_cycle(ok(fetched=20, applied=17, rejected=2, decode_errors=1))

        assert alert.alert_type == ERROR_RATE
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.metadata == {"failed": 3, "transactions": 20, "rate": 0.15}

    def test_error_rate_needs_enough_transactions(self, monitor):
        assert monitor.record_cycle(ok(fetched=5, applied=0, rejected=5)) == []

    def test_error_rate_window_is_24_hours(self, monitor, clock):
        monitor.record_cycle(ok(fetched=8, applied=0, rejected=8))
        clock.advance(hours=25)
        # Old failures have left the window; 8 fresh transactions are under the minimum
        assert monitor.record_cycle(ok(fetched=8)) == []

    def test_volume_spike(self, monitor):
        assert monitor.record_cycle(ok(fetched=2)) == []
        monitor.record_cycle(ok(fetched=2))
        monitor.record_cycle(ok(fetched=2))

        [alert] = monitor.record_cycle(ok(fetched=20))

        assert alert.alert_type == VOLUME
        assert alert.severity == AlertSeverity.WARNING
        assert alert.metadata == {"fetched": 20, "average": 2.0}

    def test_escalation_raises_alert(self, monitor):
        [alert] = monitor.record_cycle(ok(fetched=1, applied=0, escalated=1))
        assert alert.alert_type == ESCALATION
        assert alert.severity == AlertSeverity.ERROR

    def test_traffic_alerts_need_operator(self, monitor):
        monitor.record_cycle(ok(fetched=1, applied=0, escalated=1))
        monitor.record_cycle(ok())
        [alert] = monitor.list_alerts()

        assert monitor.resolve_alert(alert.id)
        assert monitor.list_alerts() == []
        assert not monitor.resolve_alert(alert.id)

    def test_old_snapshots_pruned(self, monitor, store, clock):
        start = clock.now
        monitor.record_cycle(ok())
        clock.advance(days=8)
        monitor.record_cycle(ok())

        count, _ = store.metric_stats(JOBS, "transactions", start - timedelta(days=1))
        assert count == 1


class TestHealthStatus:
    @pytest.fixture
    def registry(self):
        return ContractRegistry(
            [ContractInfo(JOBS, ContractKind.JOB_REGISTRY), ContractInfo(ESCROW, ContractKind.ESCROW)]
        )

    def test_unpolled_address_is_warning(self, monitor, registry):
        monitor.record_cycle(ok())

        status = monitor.get_health_status(registry)

        assert status["status"] == "warning"
        jobs, escrow = status["contracts"]
        assert jobs["address"] == JOBS
        assert jobs["status"] == "healthy"
        assert jobs["kind"] == "job_registry"
        assert escrow["status"] == "warning"

    def test_all_caught_up_is_healthy(self, monitor, registry):
        monitor.record_cycle(ok())
        monitor.record_cycle(ok(address=ESCROW))
        assert monitor.get_health_status(registry)["status"] == "healthy"

    def test_backlog_is_warning(self, monitor, registry):
        monitor.record_cycle(ok())
        monitor.record_cycle(ok(address=ESCROW, caught_up=False))
        assert monitor.get_health_status(registry)["status"] == "warning"

    def test_repeated_failures_are_critical(self, monitor, registry):
        monitor.record_cycle(ok())
        for _ in range(3):
            monitor.record_cycle(failed(address=ESCROW))

        status = monitor.get_health_status(registry)

        assert status["status"] == "critical"
        escrow = status["contracts"][1]
        assert escrow["consecutive_failures"] == 3
        assert escrow["active_alerts"] == 1

    def test_stale_flagged(self, monitor, registry, clock):
        monitor.record_cycle(ok())
        monitor.record_cycle(ok(address=ESCROW))
        clock.advance(minutes=6)

        contracts = monitor.get_health_status(registry)["contracts"]

        assert all(c["stale"] for c in contracts)
        assert all(c["status"] == "warning" for c in contracts)


class TestSettings:
    def test_from_settings(self, store, monkeypatch):
        monkeypatch.setenv("WAGOB_MONITOR_FAILURE_THRESHOLD", "5")
        monkeypatch.setenv("WAGOB_MONITOR_STALE_AFTER_SECONDS", "60")
        monitor = ContractMonitor.from_settings(Settings(_env_file=None), store)
        assert monitor.failure_threshold == 5
        assert monitor.stale_after == timedelta(seconds=60)

    def test_rejects_zero_threshold(self, store):
        with pytest.raises(ValueError):
            ContractMonitor(store, failure_threshold=0)
