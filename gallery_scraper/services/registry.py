"""
Orchestrator Registry
Owns at most one active orchestrator per named queue.

A process may drive several independent queues (for example a full catalog
scrape and a small update run), each with its own pool and session. The
registry hands out the orchestrator for a queue, refuses a second active run
on the same queue, and releases orchestrators whose run has finished.

Usage:
    registry = OrchestratorRegistry(lambda: BatchOrchestrator.create(store, config))
    session = await registry.start("default", urls)
    await registry.get("default").wait()
    await registry.close_all()
"""

import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional, Union
from uuid import UUID

from ..errors import SessionStateError
from ..models.schemas import ScrapeSession, SessionType, WorkItem
from .orchestrator import BatchOrchestrator

logger = logging.getLogger(__name__)

DEFAULT_QUEUE = "default"


class OrchestratorRegistry:
    """Queue name -> orchestrator, created on demand by `factory`."""

    def __init__(self, factory: Callable[[], BatchOrchestrator]):
        self._factory = factory
        self._orchestrators: Dict[str, BatchOrchestrator] = {}
        self._lock = asyncio.Lock()

    def get(self, queue: str = DEFAULT_QUEUE) -> Optional[BatchOrchestrator]:
        return self._orchestrators.get(queue)

    def _get_or_create(self, queue: str) -> BatchOrchestrator:
        orchestrator = self._orchestrators.get(queue)
        if orchestrator is None:
            orchestrator = self._factory()
            self._orchestrators[queue] = orchestrator
            logger.info(f"Created orchestrator for queue '{queue}'")
        return orchestrator

    async def start(
        self,
        queue: str,
        items: Iterable[Union[str, WorkItem]],
        session_type: SessionType = SessionType.URL_LIST,
    ) -> ScrapeSession:
        """
        Start a session on `queue`.

        Raises:
            SessionStateError: The queue already has an active run
        """
        async with self._lock:
            orchestrator = self._get_or_create(queue)
            if orchestrator.is_active:
                raise SessionStateError(f"Queue '{queue}' already has an active session {orchestrator.session_id}")
            return await orchestrator.start(items, session_type=session_type)

    async def resume(self, queue: str, session_id: Optional[UUID] = None) -> ScrapeSession:
        """Resume an interrupted session on `queue`."""
        async with self._lock:
            orchestrator = self._get_or_create(queue)
            if orchestrator.is_active:
                raise SessionStateError(f"Queue '{queue}' already has an active session {orchestrator.session_id}")
            return await orchestrator.resume_session(session_id)

    def active(self) -> List[str]:
        """Names of queues with a running session."""
        return [name for name, o in self._orchestrators.items() if o.is_active]

    async def release(self, queue: str) -> bool:
        """
        Close and forget the orchestrator of a finished queue.

        Returns:
            False if the queue is unknown or still running
        """
        async with self._lock:
            orchestrator = self._orchestrators.get(queue)
            if orchestrator is None or orchestrator.is_active:
                return False
            del self._orchestrators[queue]
        await orchestrator.close()
        logger.info(f"Released orchestrator for queue '{queue}'")
        return True

    async def close_all(self) -> None:
        async with self._lock:
            orchestrators = list(self._orchestrators.items())
            self._orchestrators.clear()
        for name, orchestrator in orchestrators:
            try:
                await orchestrator.close()
            except Exception as e:
                logger.warning(f"Failed to close orchestrator '{name}': {e}")
