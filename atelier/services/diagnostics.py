"""
Reconciliation diagnostics

Integrity checks that run while stored orders are normalized. They report
through sinks (log, memory, database) and never raise or alter the order.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

PRICE_TOLERANCE = 0.005


def has_customer_reference(raw: Mapping[str, Any]) -> bool:
    """True when the record links a customer row; an id of 0 is a real id"""
    return raw.get("customer_id") not in (None, "")


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class DiagnosticRecord:
    """One finding about one stored order"""
    severity: Severity
    order_id: Optional[str]
    check: str
    description: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class DiagnosticSink:
    """Receives diagnostic records"""

    def emit(self, record: DiagnosticRecord) -> None:
        raise NotImplementedError


class LoggingDiagnosticSink(DiagnosticSink):
    """Writes diagnostics to the application log"""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def emit(self, record: DiagnosticRecord) -> None:
        self.log.log(
            _LOG_LEVELS.get(record.severity, logging.WARNING),
            f"[{record.check}] order {record.order_id}: {record.description}",
            extra={
                "diagnostic_check": record.check,
                "order_id": record.order_id,
                "severity": record.severity.value,
            }
        )


class MemoryDiagnosticSink(DiagnosticSink):
    """Keeps diagnostics in memory"""

    def __init__(self):
        self.records: List[DiagnosticRecord] = []

    def emit(self, record: DiagnosticRecord) -> None:
        self.records.append(record)

    def for_check(self, check: str) -> List[DiagnosticRecord]:
        return [r for r in self.records if r.check == check]

    def clear(self) -> None:
        self.records.clear()


class DatabaseDiagnosticSink(DiagnosticSink):
    """Persists diagnostics to the diagnostic_logs table"""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def emit(self, record: DiagnosticRecord) -> None:
        from atelier.models.diagnostic_log import DiagnosticLog

        db = None
        try:
            db = self.session_factory()
            db.add(DiagnosticLog(
                severity=record.severity.value,
                order_id=record.order_id,
                check_name=record.check,
                description=record.description,
                created_at=record.created_at,
            ))
            db.commit()
        except Exception as e:
            # Diagnostics must not fail the normalization that produced them
            logger.error(f"Failed to persist diagnostic: {e}")
            if db is not None:
                try:
                    db.rollback()
                except Exception:
                    pass
        finally:
            if db is not None:
                db.close()


def recent_diagnostics(db, limit: int = 100) -> list:
    """Newest persisted diagnostics first"""
    from atelier.models.diagnostic_log import DiagnosticLog

    return (
        db.query(DiagnosticLog)
        .order_by(DiagnosticLog.created_at.desc(), DiagnosticLog.id.desc())
        .limit(limit)
        .all()
    )


class ReconciliationDiagnostics:
    """Runs the integrity checks and fans records out to sinks"""

    def __init__(
        self,
        sinks: Optional[Sequence[DiagnosticSink]] = None,
        dedupe_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sinks: List[DiagnosticSink] = list(sinks) if sinks is not None else [LoggingDiagnosticSink()]
        self.dedupe_seconds = dedupe_seconds
        self._clock = clock
        self._seen: Dict[Tuple[Optional[str], str, str], float] = {}

    def add_sink(self, sink: DiagnosticSink) -> None:
        self.sinks.append(sink)

    def emit(self, severity: Severity, order_id: Optional[str], check: str, description: str) -> None:
        """Send one record to every sink; repeats inside the dedupe window are dropped"""
        key = (order_id, check, description)
        now = self._clock()
        if self.dedupe_seconds > 0:
            seen_at = self._seen.get(key)
            if seen_at is not None and now - seen_at < self.dedupe_seconds:
                return
            self._seen[key] = now
            if len(self._seen) > 5000:
                self._prune(now)

        record = DiagnosticRecord(severity=severity, order_id=order_id, check=check, description=description)
        for sink in list(self.sinks):
            try:
                sink.emit(record)
            except Exception as e:
                logger.error(f"Diagnostic sink {type(sink).__name__} failed: {e}")

    def _prune(self, now: float) -> None:
        expired = [key for key, seen_at in self._seen.items() if now - seen_at >= self.dedupe_seconds]
        for key in expired:
            del self._seen[key]

    # -------------------- checks --------------------

    def check_customer_reference(self, raw: Mapping[str, Any], order_id: Optional[str]) -> None:
        """customer_id must agree with the joined customer object"""
        customer_id = raw.get("customer_id")
        joined = raw.get("customers")
        if isinstance(joined, list):
            if len(joined) > 1:
                self.emit(Severity.WARNING, order_id, "customer_reference",
                          f"customer join returned {len(joined)} rows; using the first")
            joined = joined[0] if joined else None
        if not has_customer_reference(raw):
            return
        if not isinstance(joined, Mapping):
            self.emit(Severity.WARNING, order_id, "customer_reference",
                      f"customer_id {customer_id} present but customer data not loaded")
            return
        joined_id = joined.get("id")
        if joined_id is not None and str(joined_id) != str(customer_id):
            self.emit(Severity.ERROR, order_id, "customer_reference",
                      f"customer_id {customer_id} does not match joined customer {joined_id}")

    def check_items_coexistence(self, raw: Mapping[str, Any], order_id: Optional[str], has_items_array: bool) -> None:
        """Flag records carrying both the items array and flat product columns"""
        if not has_items_array:
            return
        flat = [name for name in ("product_name", "product_image", "color", "price") if raw.get(name) not in (None, "")]
        if flat:
            self.emit(Severity.INFO, order_id, "items_coexistence",
                      f"items array present alongside flat columns: {', '.join(flat)}")

    def check_price_divergence(self, order_id: Optional[str], stored_total: Optional[float], item_prices: Sequence[float]) -> None:
        """Stored aggregate versus the sum of item prices"""
        if stored_total is None:
            return
        items_total = sum(item_prices)
        if abs(items_total - stored_total) > PRICE_TOLERANCE:
            self.emit(Severity.WARNING, order_id, "price_divergence",
                      f"stored total {stored_total:.2f} differs from item sum {items_total:.2f}")

    def malformed_field(self, order_id: Optional[str], field_name: str, detail: str) -> None:
        self.emit(Severity.WARNING, order_id, "malformed_field", f"{field_name}: {detail}")
