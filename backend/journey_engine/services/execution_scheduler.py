import asyncio
import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from journey_engine.config import EngineSettings
from journey_engine.db.store import JourneyStore
from journey_engine.models.common import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    due: int = 0
    claimed: int = 0
    skipped: int = 0
    errors: int = 0
    outcomes: Counter = field(default_factory=Counter)


class ExecutionScheduler:
    """
    Polls for due executions, claims each with a single conditional write and
    hands the claimed rows to the processor with bounded concurrency.

    Any number of schedulers may run against the same store; the claim is the
    only coordination between them.
    """

    def __init__(
        self,
        store: JourneyStore,
        processor,
        interval: Optional[float] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        claim: Optional[Callable[..., Awaitable]] = None,
        settings: Optional[EngineSettings] = None,
        clock: Callable = utcnow,
    ):
        self.settings = settings or EngineSettings()
        self.store = store
        self.processor = processor
        self.interval = interval if interval is not None else self.settings.sweep_interval_seconds
        self.batch_size = batch_size or self.settings.sweep_batch_size
        self.concurrency = concurrency or self.settings.sweep_concurrency
        self.claim = claim or store.claim_execution
        self.clock = clock
        self.running = False
        self.task: Optional[asyncio.Task] = None

    async def sweep_once(self) -> SweepReport:
        report = SweepReport()
        try:
            due = await self.store.due_executions(self.clock(), self.batch_size)
        except Exception as e:
            logger.error(f"[SCHEDULER] Failed to load due executions: {e}", exc_info=True)
            report.errors += 1
            return report

        report.due = len(due)
        if not due:
            return report
        logger.info(f"[SCHEDULER] {len(due)} executions due")

        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(candidate):
            async with semaphore:
                try:
                    claimed = await self.claim(candidate.execution_id, uuid.uuid4().hex, self.clock())
                except Exception as e:
                    logger.error(f"[SCHEDULER] Claim of {candidate.execution_id} failed: {e}", exc_info=True)
                    report.errors += 1
                    return
                if claimed is None:
                    report.skipped += 1
                    return
                report.claimed += 1
                try:
                    outcome = await self.processor.process(claimed)
                except Exception as e:
                    logger.error(f"[SCHEDULER] Processing {claimed.execution_id} failed: {e}", exc_info=True)
                    report.errors += 1
                    outcome = "error"
                report.outcomes[outcome] += 1

        await asyncio.gather(*(run(candidate) for candidate in due))
        logger.info(
            f"[SCHEDULER] Sweep done: claimed={report.claimed} skipped={report.skipped} "
            f"errors={report.errors} outcomes={dict(report.outcomes)}"
        )
        return report

    async def recover_stale(self, older_than: Optional[float] = None) -> int:
        """Send executions stuck in processing longer than `older_than` seconds through the failure path."""
        seconds = older_than if older_than is not None else self.settings.stale_processing_seconds
        cutoff = self.clock() - timedelta(seconds=seconds)
        try:
            stale = await self.store.stale_processing(cutoff, self.batch_size)
        except Exception as e:
            logger.error(f"[SCHEDULER] Failed to load stale executions: {e}", exc_info=True)
            return 0

        recovered = 0
        for execution in stale:
            try:
                outcome = await self.processor.recover(execution)
                logger.info(f"[SCHEDULER] Recovered stale execution {execution.execution_id}: {outcome}")
                recovered += 1
            except Exception as e:
                logger.error(f"[SCHEDULER] Failed to recover {execution.execution_id}: {e}", exc_info=True)
        return recovered

    async def drain(self, max_sweeps: int = 100) -> int:
        """Sweep until nothing is due. Returns the number of executions claimed."""
        total = 0
        for _ in range(max_sweeps):
            report = await self.sweep_once()
            total += report.claimed
            if report.due == 0:
                break
        return total

    async def start(self):
        """Start the polling loop"""
        if not self.running:
            self.running = True
            self.task = asyncio.create_task(self._run_loop())
            logger.info("=== EXECUTION SCHEDULER STARTED ===")
        else:
            logger.warning("Execution scheduler is already running")

    async def stop(self):
        """Stop the polling loop"""
        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None
        logger.info("=== EXECUTION SCHEDULER STOPPED ===")

    async def _run_loop(self):
        loop_count = 0
        while self.running:
            loop_count += 1
            try:
                await self.sweep_once()
                if loop_count % 12 == 0:
                    await self.recover_stale()
            except Exception as e:
                logger.error(f"[SCHEDULER] Error in sweep loop iteration {loop_count}: {e}", exc_info=True)
            await asyncio.sleep(self.interval)
