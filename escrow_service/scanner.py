"""
Reconciliation scanner.

Background loop that refunds expired OPEN payments nobody confirmed. Each
cycle discovers PaymentCreated events, then checks every tracked record:

- absent or already terminal: done
- OPEN, not expired: revisit next cycle
- OPEN, expired: submit a refund; AlreadyCompleted / NotFound mean the
  confirmation path won the race, which counts as done

Transport failures are retried on later cycles up to ``max_retries``; after
that the record is abandoned with a warning and stays OPEN.

The done set, retry counters and tracked records are in-process only. The
ledger's own guards make every repeated call harmless, so losing them on
restart only costs wasted calls. Every scan after the first rereads the last
``lookback_blocks`` below the previous head, since a lower block can commit
after a higher one. The optional checkpoint stores the lower of that mark and
the oldest unresolved record, so a restart rescans from there instead of from
"head minus lookback".
"""
import asyncio
import enum
import json
import logging
import os
import signal
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Set

import httpx

from escrow_service.client import CreationEvent, LedgerClient
from escrow_service.config import Settings, settings as default_settings
from escrow_service.errors import AlreadyCompleted, LedgerError, LedgerTransportError, NotExpired, NotFound
from escrow_service.models import PaymentStatus

logger = logging.getLogger("escrow.scanner")


class RecordOutcome(enum.Enum):
    REFUNDED = "refunded"
    ACTIVE = "active"
    TERMINAL = "terminal"
    RETRYING = "retrying"
    ABANDONED = "abandoned"


@dataclass
class CycleSummary:
    discovered: int = 0
    refunded: int = 0
    active: int = 0
    terminal: int = 0
    retrying: int = 0
    abandoned: int = 0
    head: int = 0


class FileCheckpointStore:
    """Persists the block the next scan should resume from."""

    def __init__(self, path):
        self.path = Path(path)

    def load(self) -> Optional[int]:
        if not self.path.exists():
            return None
        try:
            return int(json.loads(self.path.read_text())["block"])
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable checkpoint {self.path}: {e}")
            return None

    def save(self, block: int):
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps({"block": block}))
        os.replace(tmp, self.path)


class ReconciliationScanner:

    def __init__(
        self,
        client: LedgerClient,
        interval: float = 30.0,
        lookback_blocks: int = 10_000,
        max_retries: int = 3,
        concurrency: int = 5,
        checkpoint: Optional[FileCheckpointStore] = None,
    ):
        self.client = client
        self.interval = interval
        self.lookback_blocks = lookback_blocks
        self.max_retries = max_retries
        self.checkpoint = checkpoint
        self._semaphore = asyncio.Semaphore(concurrency)

        self.done: Set[str] = set()
        self.abandoned: Set[str] = set()
        self.failed_attempts: Dict[str, int] = {}
        self._tracked: Dict[str, CreationEvent] = {}
        self._last_head: Optional[int] = None

    @classmethod
    def from_settings(cls, settings: Settings, client: LedgerClient) -> "ReconciliationScanner":
        checkpoint = None
        if settings.scanner_checkpoint_path:
            checkpoint = FileCheckpointStore(settings.scanner_checkpoint_path)
        return cls(
            client,
            interval=settings.scan_interval_seconds,
            lookback_blocks=settings.scan_lookback_blocks,
            max_retries=settings.scan_max_retries,
            concurrency=settings.scan_concurrency,
            checkpoint=checkpoint,
        )

    @property
    def tracked(self) -> Dict[str, CreationEvent]:
        return dict(self._tracked)

    def _rescan_from(self) -> int:
        # A block below the head can still commit after the head was read,
        # so each scan overlaps the previous one by the lookback window
        return max(1, self._last_head + 1 - self.lookback_blocks)

    def low_water_mark(self) -> Optional[int]:
        if self._last_head is None:
            return None
        mark = self._rescan_from()
        if self._tracked:
            return min(mark, min(event.block for event in self._tracked.values()))
        return mark

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def discover(self) -> int:
        """Track newly created records. Returns how many were added."""
        if self._last_head is None:
            resume_from = self.checkpoint.load() if self.checkpoint else None
            if resume_from is not None:
                logger.info(f"Resuming scan from checkpoint block {resume_from}")
                head, events = await self.client.recent_creations(from_block=resume_from)
            else:
                head, events = await self.client.recent_creations(window=self.lookback_blocks)
        else:
            head, events = await self.client.recent_creations(from_block=self._rescan_from())

        added = 0
        for event in events:
            if event.order_id in self.done or event.order_id in self.abandoned:
                continue
            if event.order_id in self._tracked:
                continue
            self._tracked[event.order_id] = event
            added += 1

        self._last_head = max(head, self._last_head or 0)
        logger.info(f"Found {len(events)} payment events up to block {head}, {added} new")
        return added

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def _finish(self, order_id: str):
        self.done.add(order_id)
        self._tracked.pop(order_id, None)
        self.failed_attempts.pop(order_id, None)

    def _record_failure(self, order_id: str, error: Exception) -> RecordOutcome:
        attempts = self.failed_attempts.get(order_id, 0) + 1
        self.failed_attempts[order_id] = attempts
        extra = {"order_id": order_id, "retry_count": attempts}

        if attempts >= self.max_retries:
            self._tracked.pop(order_id, None)
            self.abandoned.add(order_id)
            logger.warning(
                f"Max retry attempts reached for {order_id}, giving up; record stays OPEN: {error}",
                extra={**extra, "outcome": RecordOutcome.ABANDONED.value},
            )
            return RecordOutcome.ABANDONED

        logger.warning(
            f"Refund attempt {attempts}/{self.max_retries} failed for {order_id}: {error}",
            extra={**extra, "outcome": RecordOutcome.RETRYING.value},
        )
        return RecordOutcome.RETRYING

    async def reconcile(self, event: CreationEvent) -> RecordOutcome:
        order_id = event.order_id
        async with self._semaphore:
            try:
                record = await self.client.get(order_id)
            except (LedgerTransportError, httpx.HTTPStatusError) as e:
                # Read failures do not count against the refund retry cap
                logger.warning(f"Could not read {order_id}, will retry next cycle: {e}")
                return RecordOutcome.RETRYING

            if record.amount == 0 or record.status != PaymentStatus.OPEN:
                self._finish(order_id)
                return RecordOutcome.TERMINAL

            if not record.expired:
                remaining = int(record.seconds_remaining or 0)
                logger.info(
                    f"Active payment {order_id}: {remaining // 60}m {remaining % 60}s remaining",
                    extra={"order_id": order_id, "outcome": RecordOutcome.ACTIVE.value},
                )
                return RecordOutcome.ACTIVE

            retry_count = self.failed_attempts.get(order_id, 0)
            logger.info(
                f"Triggering refund for expired payment {order_id}: payer={record.payer} amount={record.amount}",
                extra={"order_id": order_id, "retry_count": retry_count},
            )
            try:
                settlement = await self.client.submit_refund(order_id)
            except (AlreadyCompleted, NotFound) as e:
                logger.info(
                    f"Payment {order_id} already processed ({e.code}), marking as complete",
                    extra={"order_id": order_id, "outcome": RecordOutcome.TERMINAL.value, "retry_count": retry_count},
                )
                self._finish(order_id)
                return RecordOutcome.TERMINAL
            except NotExpired:
                # Ledger clock is authoritative; look again next cycle
                return RecordOutcome.ACTIVE
            except (LedgerError, LedgerTransportError, httpx.HTTPStatusError) as e:
                return self._record_failure(order_id, e)

            self._finish(order_id)
            logger.info(
                f"Refund successful for {order_id}: tx={settlement.tx_ref} block={settlement.block}",
                extra={"order_id": order_id, "outcome": RecordOutcome.REFUNDED.value, "retry_count": retry_count},
            )
            return RecordOutcome.REFUNDED

    async def run_cycle(self) -> CycleSummary:
        logger.info("Checking for expired payments...")
        summary = CycleSummary()
        summary.discovered = await self.discover()

        pending = list(self._tracked.values())
        results = await asyncio.gather(*(self.reconcile(e) for e in pending), return_exceptions=True)

        outcomes = Counter()
        for event, result in zip(pending, results):
            if isinstance(result, Exception):
                logger.error(f"Unexpected error reconciling {event.order_id}: {result!r}")
                outcomes[RecordOutcome.RETRYING] += 1
            else:
                outcomes[result] += 1

        summary.refunded = outcomes[RecordOutcome.REFUNDED]
        summary.active = outcomes[RecordOutcome.ACTIVE]
        summary.terminal = outcomes[RecordOutcome.TERMINAL]
        summary.retrying = outcomes[RecordOutcome.RETRYING]
        summary.abandoned = outcomes[RecordOutcome.ABANDONED]
        summary.head = self._last_head or 0

        if self.checkpoint is not None:
            try:
                self.checkpoint.save(self.low_water_mark())
            except OSError as e:
                logger.error(f"Could not write checkpoint {self.checkpoint.path}: {e}")

        logger.info(
            f"Summary: {summary.refunded} expired (refunded), {summary.active} active, "
            f"{summary.terminal} completed, {summary.retrying} retrying, {summary.abandoned} abandoned"
        )
        return summary

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None):
        stop_event = stop_event or asyncio.Event()
        logger.info(
            f"Reconciliation scanner started: interval={self.interval}s "
            f"lookback={self.lookback_blocks} blocks max_retries={self.max_retries}"
        )
        while not stop_event.is_set():
            try:
                await self.run_cycle()
            except (LedgerError, LedgerTransportError, httpx.HTTPError) as e:
                logger.error(f"Check cycle error: {e}")
            except Exception:
                logger.exception("Unexpected check cycle error")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Reconciliation scanner stopped.")


async def serve(settings: Settings):
    client = LedgerClient.from_settings(settings, identity=settings.scanner_id)
    scanner = ReconciliationScanner.from_settings(settings, client)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises KeyboardInterrupt
            pass

    async with client:
        await scanner.run_forever(stop_event)


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    try:
        asyncio.run(serve(default_settings))
    except KeyboardInterrupt:
        logger.info("Reconciliation scanner stopped.")


if __name__ == "__main__":
    main()
