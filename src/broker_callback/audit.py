"""
Audit sinks for the broker OAuth callback receiver.

Every non-preflight callback produces one AuditRecord, which the handler
hands to a sink. Sinks only append; nothing here updates or deletes a
record once written.
"""

import json
import logging
import queue
import threading
from pathlib import Path
from typing import List, Optional, Protocol

from .exceptions import AuditEmissionError
from .models import ACCEPTED, REJECTED, AuditRecord

logger = logging.getLogger(__name__)

# Separate logger so operators can route the audit trail on its own
audit_logger = logging.getLogger("broker_callback.audit")


class AuditSink(Protocol):
    """Anything that can append an audit record."""

    def emit(self, record: AuditRecord) -> None:
        ...


class LoggingAuditSink:
    """
    Writes each audit record as one log line.

    Accepted callbacks log at INFO, rejections at WARNING and server
    faults at ERROR. Record fields travel in ``extra`` for structured
    log handlers.
    """

    def __init__(self, target: Optional[logging.Logger] = None):
        self.target = target or audit_logger

    def emit(self, record: AuditRecord) -> None:
        if record.outcome_kind == ACCEPTED:
            level = logging.INFO
        elif record.outcome_kind == REJECTED:
            level = logging.WARNING
        else:
            level = logging.ERROR

        self.target.log(
            level,
            "Broker callback %s (client=%s, token_present=%s, reason=%s)",
            record.outcome_kind,
            record.client_address,
            record.token_present,
            record.reason or record.fault_detail or "-",
            extra={"audit": record.to_dict()},
        )


class JsonLinesAuditSink:
    """
    Append-only audit trail stored as JSON Lines.

    Each record becomes one line in the file. The file is opened in append
    mode per write and created with user-only permissions.
    """

    def __init__(self, audit_file: str):
        """
        Initialize JSON Lines sink.

        Args:
            audit_file: Path to the audit trail file
        """
        self.audit_file = Path(audit_file)
        self._lock = threading.Lock()
        self._ensure_directory()

    def _ensure_directory(self) -> None:
        """Create parent directory if needed."""
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)

    def _set_secure_permissions(self) -> None:
        """Set file permissions to user-only read/write (600)."""
        try:
            self.audit_file.chmod(0o600)
        except (OSError, PermissionError) as e:
            logger.warning(f"Could not set secure permissions: {e}")

    def emit(self, record: AuditRecord) -> None:
        """
        Append one record to the audit file.

        Raises:
            AuditEmissionError: If the write fails
        """
        line = json.dumps(record.to_dict(), sort_keys=True)
        try:
            with self._lock:
                created = not self.audit_file.exists()
                with open(self.audit_file, "a") as f:
                    f.write(line + "\n")
                if created:
                    self._set_secure_permissions()
        except (IOError, OSError) as e:
            raise AuditEmissionError(f"Failed to append audit record: {e}") from e

    def read_all(self) -> List[AuditRecord]:
        """
        Read every record back from the audit file.

        Returns:
            Records in the order they were written (empty if no file yet)
        """
        if not self.audit_file.exists():
            return []

        with open(self.audit_file, "r") as f:
            return [AuditRecord(**json.loads(line)) for line in f if line.strip()]


class MemoryAuditSink:
    """Keeps audit records in a list. Useful for tests and embedding."""

    def __init__(self):
        self._records: List[AuditRecord] = []
        self._lock = threading.Lock()

    def emit(self, record: AuditRecord) -> None:
        with self._lock:
            self._records.append(record)

    @property
    def records(self) -> List[AuditRecord]:
        with self._lock:
            return list(self._records)


class CompositeAuditSink:
    """
    Fans a record out to several sinks.

    Every sink is attempted; if any of them fails, an AuditEmissionError
    naming the failures is raised after the rest have run.
    """

    def __init__(self, *sinks: AuditSink):
        self.sinks = list(sinks)

    def emit(self, record: AuditRecord) -> None:
        failures = []
        for sink in self.sinks:
            try:
                sink.emit(record)
            except Exception as e:
                failures.append(f"{type(sink).__name__}: {e}")

        if failures:
            raise AuditEmissionError("; ".join(failures))


_STOP = object()


class BackgroundAuditSink:
    """
    Delivers records to another sink from a daemon worker thread.

    ``emit`` only enqueues, so writing the audit trail never holds up the
    HTTP response. Failures in the wrapped sink are logged by the worker
    and do not stop it. A record is either accepted before ``close()``
    (and delivered, or reported as undelivered) or refused with an error.
    """

    def __init__(self, sink: AuditSink, max_queue_size: int = 0):
        """
        Initialize background sink and start its worker.

        Args:
            sink: Sink that actually persists records
            max_queue_size: Queue bound (0 = unbounded)
        """
        self.sink = sink
        self._queue: "queue.Queue" = queue.Queue(maxsize=max_queue_size)
        self._closed = False
        # Serializes the closed check and enqueue against close()
        self._state_lock = threading.Lock()
        self._worker = threading.Thread(
            target=self._run, name="audit-sink", daemon=True
        )
        self._worker.start()

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, record: AuditRecord) -> None:
        """
        Enqueue a record for delivery.

        Raises:
            AuditEmissionError: If the sink is closed or the queue is full
        """
        with self._state_lock:
            if self._closed:
                raise AuditEmissionError("Audit sink is closed")
            try:
                self._queue.put_nowait(record)
            except queue.Full:
                raise AuditEmissionError("Audit queue is full") from None

    def _run(self) -> None:
        while True:
            record = self._queue.get()
            try:
                if record is _STOP:
                    return
                self.sink.emit(record)
            except Exception as e:
                logger.error(f"Audit emission failed: {e}")
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        """Block until every queued record has been handled."""
        if self._closed and not self._worker.is_alive():
            return
        self._queue.join()

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """
        Drain the queue and stop the worker.

        Records still queued when the worker cannot finish within
        ``timeout`` are logged as undelivered.
        """
        with self._state_lock:
            if self._closed:
                return
            self._closed = True

        # No emit can enqueue past this point, so _STOP is the last item
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            logger.error(
                f"Audit worker did not drain in time; "
                f"{self._queue.qsize()} audit records not delivered"
            )
            return

        self._worker.join(timeout=timeout)
        if self._worker.is_alive():
            logger.error(
                f"Audit worker did not stop in time; "
                f"{self._queue.qsize()} audit records not delivered"
            )
            return

        self._discard_remaining()

    def _discard_remaining(self) -> None:
        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
            dropped += 1
            self._queue.task_done()

        if dropped:
            logger.error(f"{dropped} audit records not delivered after close")
