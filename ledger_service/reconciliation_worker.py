import asyncio
import logging
from typing import Any, Callable, Dict, Optional
from common.settings import settings
from ledger_service import payment_links
from ledger_service.models import utcnow

logger = logging.getLogger(__name__)

class ReconciliationWorker:
    """Fixed-interval background sweep: poll providers, expire stale payments, demote dead links"""

    def __init__(self, engine, session_factory: Callable, interval: float = None, clock: Callable = utcnow):
        self.engine = engine
        self.session_factory = session_factory
        self.interval = settings.reconcile_interval_seconds if interval is None else interval
        self.clock = clock
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    async def run_once(self) -> Dict[str, Any]:
        now = self.clock()
        polled = await self.engine.poll_pending(now)
        expired = self.engine.expire_stale(now)
        with self.session_factory() as db:
            links = payment_links.sweep(db, now)
            db.commit()
        summary = {"polled": polled, "expired": expired, "links": links}
        logger.info(f"🔄 Reconciliation round: {summary}")
        return summary

    async def run_forever(self) -> None:
        logger.info(f"Reconciliation worker started, every {self.interval}s")
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Reconciliation round failed: {e}")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Reconciliation worker stopped")

    def start(self) -> asyncio.Task:
        self._stopping.clear()
        self._task = asyncio.get_running_loop().create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
