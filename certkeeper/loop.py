"""
Periodic certificate renewal loop.

Runs the renewal orchestrator on a fixed interval forever. A failed
attempt is logged and retried on the next tick; there is no backoff.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .errors import CertKeeperError
from .renewal import RenewalOrchestrator, RenewalOutcome


logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = 86400  # 24 hours


class LifecycleLoop:
    """
    Scheduler for renewal attempts.

    run() is the loop itself; start()/stop() manage it as a background task.
    """

    def __init__(
        self,
        orchestrator: RenewalOrchestrator,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.orchestrator = orchestrator
        self.check_interval = check_interval
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        """Check if the background task is running."""
        return self._task is not None and not self._task.done()

    async def run_once(self) -> Optional[RenewalOutcome]:
        """
        Run one attempt, reporting instead of raising errors.

        Returns:
            The outcome, or None if the attempt failed
        """
        try:
            outcome = await self.orchestrator.run()
        except CertKeeperError as e:
            logger.error("[CERT-LOOP] Renewal attempt failed (%s): %s", type(e).__name__, e)
            return None
        except Exception as e:
            logger.exception("[CERT-LOOP] Unexpected error in renewal attempt: %s", e)
            return None

        if outcome.renewed:
            logger.info("[CERT-LOOP] Certificate was renewed")
        return outcome

    async def run(self, immediate: bool = True, iterations: Optional[int] = None) -> None:
        """
        Run attempts every check_interval seconds.

        Args:
            immediate: Run the first attempt before the first sleep
            iterations: Stop after this many attempts (None runs forever)
        """
        logger.info(
            "[CERT-LOOP] Certificate renewal loop started (checking every %s seconds)",
            self.check_interval,
        )
        completed = 0
        try:
            if not immediate:
                await self._sleep(self.check_interval)
            while iterations is None or completed < iterations:
                await self.run_once()
                completed += 1
                if iterations is not None and completed >= iterations:
                    break
                await self._sleep(self.check_interval)
        except asyncio.CancelledError:
            logger.info("[CERT-LOOP] Certificate renewal loop cancelled")
            raise

    def start(self, immediate: bool = False) -> None:
        """Start the loop as a background task in the running event loop."""
        if self.is_running:
            logger.warning("[CERT-LOOP] Renewal loop already running")
            return
        self._task = asyncio.create_task(self.run(immediate=immediate))

    async def stop(self) -> None:
        """Cancel the background task and wait for it to finish."""
        if self._task is None:
            return
        if not self._task.done():
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("[CERT-LOOP] Certificate renewal loop stopped")
