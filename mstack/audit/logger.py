"""
Audit Logger
=============

Appends one LogRecord per completed request to an append-only sink and
links the records into a hash chain:

    record[0].prev_hash   = GENESIS_HASH ("0" × 64)
    record[i+1].prev_hash = sha256(canonical_json(record[i]))

Mutating any stored record after the fact breaks the link to its
successor, so verify_chain() reports the first index whose prev_hash
no longer matches.

Failure handling:
    - writes are retried with exponential backoff and jitter
    - once retries are exhausted the record is dropped, `missing_audit`
      is incremented and a "degraded audit" error is logged; the chain
      head does not advance, so the next record still links to the last
      persisted one
    - writes are scheduled in the background by default (submit), so a
      slow sink never delays the response; appends are serialized by an
      asyncio.Lock and follow submission order

Data Flow:
    Decision + trace → LogRecord → AuditLogger.append → LogSink
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

from mstack.config import MStackConfig
from mstack.schemas.decision import GENESIS_HASH, LogRecord
from mstack.utils import RetryPolicy, canonical_json, retry_async

logger = logging.getLogger("mstack.audit.logger")


# ── Sinks ──────────────────────────────────────────────────────────

class LogSink(ABC):
    """Append-only storage for serialized LogRecords (one line each)."""

    @abstractmethod
    async def append(self, line: str) -> None:
        ...

    @abstractmethod
    def load(self) -> list[LogRecord]:
        ...


class JsonlLogSink(LogSink):
    """One JSON object per line in a local file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def _write(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")
            fh.flush()

    async def append(self, line: str) -> None:
        await asyncio.to_thread(self._write, line)

    def load(self) -> list[LogRecord]:
        if not self.path.exists():
            return []
        records = []
        with self.path.open(encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if line:
                    records.append(LogRecord.model_validate(json.loads(line)))
        return records


class MemoryLogSink(LogSink):
    """
    In-process sink. `fail_first` makes the first N appends raise
    OSError to exercise the retry path.
    """

    def __init__(self, fail_first: int = 0):
        self.lines: list[str] = []
        self.fail_first = fail_first
        self.attempts = 0

    async def append(self, line: str) -> None:
        self.attempts += 1
        if self.attempts <= self.fail_first:
            raise OSError("audit storage unavailable")
        self.lines.append(line)

    def load(self) -> list[LogRecord]:
        return [LogRecord.model_validate(json.loads(line)) for line in self.lines]


# ── Chain verification ─────────────────────────────────────────────

def verify_chain(records: list[LogRecord]) -> Optional[int]:
    """
    Check the hash links of an ordered record list.

    Returns:
        Index of the first record whose prev_hash does not match, or
        None when the whole chain is intact.
    """
    expected = GENESIS_HASH
    for i, record in enumerate(records):
        if record.prev_hash != expected:
            return i
        expected = record.content_hash()
    return None


# ── Logger ─────────────────────────────────────────────────────────

class AuditLogger:
    """
    Hash-chained, append-only audit log.

    Usage:
        audit = AuditLogger(JsonlLogSink("outputs/audit.jsonl"))
        stored = await audit.append(record)     # blocking
        audit.submit(record)                    # background
        await audit.drain()

    Args:
        sink: Storage backend.
        retry: Backoff policy for failed writes.
        blocking: Default mode used by the pipeline.
    """

    def __init__(
        self,
        sink: LogSink,
        retry: Optional[RetryPolicy] = None,
        blocking: bool = False,
        head_hash: Optional[str] = None,
    ):
        self.sink = sink
        self.retry = retry or RetryPolicy()
        self.blocking = blocking
        self._head = head_hash or GENESIS_HASH
        self._lock = asyncio.Lock()
        self._pending: set[asyncio.Task] = set()
        self.written = 0
        self.missing_audit = 0

    @classmethod
    def from_config(cls, config: MStackConfig, sink: Optional[LogSink] = None) -> "AuditLogger":
        """Create a logger from config, resuming the chain of an existing log file."""
        cfg = config.audit
        sink = sink or JsonlLogSink(cfg.log_path)
        existing = sink.load()
        head = existing[-1].content_hash() if existing else None
        if existing:
            logger.info(f"Resuming audit chain at record {len(existing)} of {cfg.log_path}")
        return cls(
            sink=sink,
            retry=RetryPolicy(
                max_retries=cfg.max_retries,
                base_delay_s=cfg.base_delay_s,
                max_delay_s=cfg.max_delay_s,
                jitter=cfg.jitter,
            ),
            blocking=cfg.blocking,
            head_hash=head,
        )

    @property
    def head_hash(self) -> str:
        """Content hash of the last persisted record (genesis when empty)."""
        return self._head

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def append(self, record: LogRecord) -> Optional[LogRecord]:
        """
        Link and persist one record.

        Returns:
            The stored record (with prev_hash set), or None when every
            retry failed.
        """
        async with self._lock:
            linked = record.model_copy(update={"prev_hash": self._head})
            line = canonical_json(linked.model_dump(mode="json"))

            def on_retry(attempt: int, exc: Exception) -> None:
                logger.warning(f"Audit write for {linked.qid} failed (attempt {attempt + 1}): {exc}")

            try:
                await retry_async(
                    lambda: self.sink.append(line),
                    policy=self.retry,
                    on_retry=on_retry,
                )
            except Exception as e:
                self.missing_audit += 1
                logger.error(
                    f"degraded audit: record {linked.qid} not persisted after "
                    f"{self.retry.max_retries + 1} attempts ({e}); missing_audit={self.missing_audit}"
                )
                return None

            self._head = linked.content_hash()
            self.written += 1
            return linked

    def submit(self, record: LogRecord) -> asyncio.Task:
        """Schedule append() in the background and return its task."""
        task = asyncio.create_task(self.append(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled write to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending))

    def load(self) -> list[LogRecord]:
        return self.sink.load()

    def verify(self) -> Optional[int]:
        return verify_chain(self.sink.load())
