"""Contract monitoring.

The poll scheduler hands every cycle report to ``ContractMonitor``, which
keeps per-address health, records metric snapshots for history, and raises
alerts:

- ``fetch_failures`` (critical): ``failure_threshold`` consecutive failed cycles
- ``stale`` (error): no successful cycle for ``stale_after_seconds``
- ``error_rate`` (critical): rejected, escalated and undecodable transactions
  make up more than ``max_error_rate`` of over ``min_events`` transactions
  in the last 24 hours
- ``volume`` (warning): one cycle fetched more than ``volume_spike`` times the
  historical average
- ``escalation`` (error): a transaction was dead-lettered

An alert is raised once per (address, type) while it stays active. Failure
and staleness alerts resolve on the next successful cycle; the rest are
resolved by an operator (``wagob resolve-alert``).
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from wagob.config import ContractRegistry, Settings
from wagob.storage.sqlite import SQLiteStateStore
from wagob.types import (
    Alert,
    AlertSeverity,
    AlertStatus,
    ContractHealth,
    MetricSnapshot,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

FETCH_FAILURES = "fetch_failures"
STALE = "stale"
ERROR_RATE = "error_rate"
VOLUME = "volume"
ESCALATION = "escalation"

# Cleared automatically once the address polls successfully again
SELF_RESOLVING = (FETCH_FAILURES, STALE)

ERROR_RATE_WINDOW = timedelta(hours=24)

HEALTHY = "healthy"
WARNING = "warning"
CRITICAL = "critical"
_STATUS_RANK = {HEALTHY: 0, WARNING: 1, CRITICAL: 2}


class ContractMonitor:
    """Health, metrics and alerts per monitored contract address.

    Args:
        store: State store holding the health, snapshot and alert tables.
        clock: Returns the current aware UTC datetime.
        failure_threshold: Consecutive failed cycles before a critical alert.
        stale_after_seconds: Time without a successful cycle before an address is stale.
        max_error_rate: Failed share of transactions that triggers an alert.
        min_events: Transactions needed in the window before the rate is judged.
        volume_spike: Multiple of the historical average that counts as a spike.
        history_days: Snapshot retention, and the window for the volume average.
    """

    def __init__(
        self,
        store: SQLiteStateStore,
        clock: Callable[[], datetime] = utc_now,
        failure_threshold: int = 3,
        stale_after_seconds: float = 300.0,
        max_error_rate: float = 0.05,
        min_events: int = 10,
        volume_spike: float = 3.0,
        history_days: int = 7,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self._store = store
        self._clock = clock
        self.failure_threshold = failure_threshold
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.max_error_rate = max_error_rate
        self.min_events = min_events
        self.volume_spike = volume_spike
        self.history = timedelta(days=history_days)

    @classmethod
    def from_settings(cls, settings: Settings, store: SQLiteStateStore) -> "ContractMonitor":
        return cls(
            store,
            failure_threshold=settings.monitor_failure_threshold,
            stale_after_seconds=settings.monitor_stale_after_seconds,
            max_error_rate=settings.monitor_max_error_rate,
            min_events=settings.monitor_min_events,
            volume_spike=settings.monitor_volume_spike,
            history_days=settings.monitor_history_days,
        )

    # === Recording ===

    def record_cycle(self, report) -> List[Alert]:
        """Fold one cycle report into the address health.

        A cycle skipped for back-off only checks staleness; one skipped
        because another is in flight is ignored.

        Returns:
            Alerts newly raised by this report.
        """
        if report.skipped == "in_progress":
            return []

        address = report.address
        now = self._clock()
        raised: List[Optional[Alert]] = []
        with self._store.transaction() as conn:
            health = self._store.get_contract_health(address, conn=conn) or ContractHealth(address)
            health.updated_at = now

            if report.skipped is not None or report.error is not None:
                if report.error is not None:
                    health.consecutive_failures += 1
                    health.last_failure_at = now
                    health.last_error = report.error
                    if health.consecutive_failures >= self.failure_threshold:
                        raised.append(
                            self._raise(
                                conn,
                                address,
                                FETCH_FAILURES,
                                AlertSeverity.CRITICAL,
                                f"{address}: {health.consecutive_failures} consecutive "
                                f"failed poll cycles",
                                {
                                    "consecutive_failures": health.consecutive_failures,
                                    "last_error": report.error,
                                },
                                now,
                            )
                        )
                if self.is_stale(health, now):
                    raised.append(
                        self._raise(
                            conn,
                            address,
                            STALE,
                            AlertSeverity.ERROR,
                            f"{address}: no successful poll since "
                            f"{to_iso(health.last_success_at)}",
                            {"last_success_at": to_iso(health.last_success_at)},
                            now,
                        )
                    )
            else:
                health.consecutive_failures = 0
                health.last_success_at = now
                health.last_error = None
                health.last_sequence = report.cursor
                health.caught_up = report.caught_up
                for alert_type in SELF_RESOLVING:
                    self._store.resolve_alerts(conn, now, address=address, alert_type=alert_type)

                # Average is taken before this cycle is recorded
                raised.append(self._check_volume(conn, report, now))
                self._store.add_metric_snapshots(conn, self._snapshots(report, now))
                raised.append(self._check_error_rate(conn, address, now))
                if report.escalated:
                    raised.append(
                        self._raise(
                            conn,
                            address,
                            ESCALATION,
                            AlertSeverity.ERROR,
                            f"{address}: {report.escalated} transactions dead-lettered",
                            {"escalated": report.escalated},
                            now,
                        )
                    )
                self._store.prune_metric_snapshots(conn, now - self.history)

            self._store.save_contract_health(conn, health)

        alerts = [alert for alert in raised if alert is not None]
        for alert in alerts:
            self._log_alert(alert)
        return alerts

    @staticmethod
    def _snapshots(report, now: datetime) -> List[MetricSnapshot]:
        failed = report.rejected + report.escalated + report.decode_errors
        values = {
            "transactions": report.fetched,
            "applied": report.applied,
            "failed": failed,
            "error_rate": failed / report.fetched if report.fetched else 0.0,
        }
        return [MetricSnapshot(report.address, name, float(v), now) for name, v in values.items()]

    def _check_volume(self, conn, report, now: datetime) -> Optional[Alert]:
        count, total = self._store.metric_stats(
            report.address, "transactions", now - self.history, conn=conn
        )
        if not count or not total:
            return None
        average = total / count
        if report.fetched <= average * self.volume_spike:
            return None
        return self._raise(
            conn,
            report.address,
            VOLUME,
            AlertSeverity.WARNING,
            f"{report.address}: fetched {report.fetched} transactions, "
            f"{report.fetched / average:.1f}x the average",
            {"fetched": report.fetched, "average": round(average, 2)},
            now,
        )

    def _check_error_rate(self, conn, address: str, now: datetime) -> Optional[Alert]:
        since = now - ERROR_RATE_WINDOW
        _, transactions = self._store.metric_stats(address, "transactions", since, conn=conn)
        _, failed = self._store.metric_stats(address, "failed", since, conn=conn)
        if transactions <= self.min_events:
            return None
        rate = failed / transactions
        if rate <= self.max_error_rate:
            return None
        return self._raise(
            conn,
            address,
            ERROR_RATE,
            AlertSeverity.CRITICAL,
            f"{address}: {rate:.1%} of transactions failed in the last 24h",
            {"failed": int(failed), "transactions": int(transactions), "rate": round(rate, 4)},
            now,
        )

    def _raise(
        self,
        conn,
        address: str,
        alert_type: str,
        severity: AlertSeverity,
        message: str,
        metadata: Dict[str, Any],
        now: datetime,
    ) -> Optional[Alert]:
        if self._store.find_active_alert(address, alert_type, conn=conn) is not None:
            return None
        alert = Alert(
            address=address,
            alert_type=alert_type,
            severity=severity,
            message=message,
            metadata=metadata,
            created_at=now,
        )
        self._store.add_alert(conn, alert)
        return alert

    @staticmethod
    def _log_alert(alert: Alert) -> None:
        line = f"[{alert.severity.value.upper()}] {alert.alert_type}: {alert.message}"
        if alert.severity in (AlertSeverity.CRITICAL, AlertSeverity.ERROR):
            logger.error(line)
        elif alert.severity == AlertSeverity.WARNING:
            logger.warning(line)
        else:
            logger.info(line)

    # === Reading ===

    def is_stale(self, health: ContractHealth, now: Optional[datetime] = None) -> bool:
        if health.last_success_at is None:
            return False
        return (now or self._clock()) - health.last_success_at > self.stale_after

    def get_health_status(self, registry: ContractRegistry) -> Dict[str, Any]:
        """Overall and per-address health: ``healthy``, ``warning`` or ``critical``."""
        now = self._clock()
        active = self._store.list_alerts(status=AlertStatus.ACTIVE, limit=1000)
        overall = HEALTHY
        contracts = []
        for info in registry:
            health = self._store.get_contract_health(info.address) or ContractHealth(info.address)
            alerts = [a for a in active if a.address == info.address]
            stale = self.is_stale(health, now)

            status = HEALTHY
            if (
                health.last_success_at is None
                or health.consecutive_failures
                or not health.caught_up
                or stale
                or alerts
            ):
                status = WARNING
            if health.consecutive_failures >= self.failure_threshold or any(
                a.severity == AlertSeverity.CRITICAL for a in alerts
            ):
                status = CRITICAL

            contracts.append(
                {
                    **health.to_dict(),
                    "kind": info.kind.value,
                    "status": status,
                    "stale": stale,
                    "active_alerts": len(alerts),
                }
            )
            if _STATUS_RANK[status] > _STATUS_RANK[overall]:
                overall = status

        return {"status": overall, "checked_at": to_iso(now), "contracts": contracts}

    def list_alerts(self, include_resolved: bool = False, limit: int = 50) -> List[Alert]:
        status = None if include_resolved else AlertStatus.ACTIVE
        return self._store.list_alerts(status=status, limit=limit)

    def resolve_alert(self, alert_id: int) -> bool:
        """Returns True if an active alert was resolved."""
        with self._store.transaction() as conn:
            resolved = self._store.resolve_alerts(conn, self._clock(), alert_id=alert_id)
        if resolved:
            logger.info(f"Alert {alert_id} resolved")
        return bool(resolved)
