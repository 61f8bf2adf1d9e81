"""Logging setup for the wagob indexer.

``setup_wagob_logging`` configures the ``wagob`` logger: a console handler
and, when a log directory is given, a dated file ``indexer-YYYY-MM-DD.log``.
Calling it twice does not add duplicate handlers.

``log_apply`` and ``log_cycle`` write one structured line per reconciliation
outcome and per poll cycle to the ``wagob.events`` logger.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Union

from wagob.types import ApplyOutcome, ApplyResult

if TYPE_CHECKING:
    from wagob.scheduler import CycleReport

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

_events = logging.getLogger("wagob.events")

_OUTCOME_LEVELS = {
    ApplyOutcome.APPLIED: logging.INFO,
    ApplyOutcome.ALREADY_APPLIED: logging.DEBUG,
    ApplyOutcome.DEFERRED: logging.INFO,
    ApplyOutcome.REJECTED: logging.WARNING,
    ApplyOutcome.ESCALATED: logging.ERROR,
}


def setup_wagob_logging(
    level: str = "INFO", log_dir: Optional[Union[str, Path]] = None
) -> logging.Logger:
    """Configure the ``wagob`` logger.

    Args:
        level: Level name, case-insensitive. Unknown names fall back to INFO.
        log_dir: Directory for the dated log file; console only when None.

    Returns:
        The configured ``wagob`` logger.
    """
    logger = logging.getLogger("wagob")
    numeric = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logger.setLevel(numeric)

    formatter = logging.Formatter(LOG_FORMAT)

    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in logger.handlers
    )
    if not has_console:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        logger.addHandler(console)

    if log_dir is not None:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        log_file = log_path / f"indexer-{datetime.now().strftime('%Y-%m-%d')}.log"
        has_file = any(
            isinstance(h, logging.FileHandler)
            and Path(h.baseFilename).resolve() == log_file.resolve()
            for h in logger.handlers
        )
        if not has_file:
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger


def log_apply(result: ApplyResult) -> None:
    """One line per applied, deferred, rejected or escalated event."""
    parts = [
        f"apply | {result.outcome.value}",
        f"kind={result.kind.value}",
        f"tx={result.transaction_hash}",
    ]
    if result.error is not None:
        parts.append(f"error={result.error}")
    if result.invalidated:
        parts.append(f"invalidated={len(result.invalidated)}")
    _events.log(_OUTCOME_LEVELS[result.outcome], " | ".join(parts))


def log_cycle(report: "CycleReport") -> None:
    """One line per poll cycle and address."""
    if report.skipped:
        _events.info(f"cycle | address={report.address} | skipped={report.skipped}")
        return
    line = (
        f"cycle | address={report.address} | fetched={report.fetched} "
        f"| applied={report.applied} | already_applied={report.already_applied} "
        f"| deferred={report.deferred} | rejected={report.rejected} "
        f"| escalated={report.escalated} | decode_errors={report.decode_errors} "
        f"| refunds={report.refunds} | redelivered={report.redelivered} "
        f"| cursor={report.cursor} | caught_up={report.caught_up}"
    )
    if report.error:
        _events.warning(f"{line} | error={report.error}")
    else:
        _events.info(line)
