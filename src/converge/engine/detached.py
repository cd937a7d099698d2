# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Detached Dispatch

Fire-and-forget execution for tasks declared with ``async: N`` and
``poll: 0`` (restarting networking, the final reboot).

A detached job is handed to the event loop and the caller continues at
once. Its completion, result and errors are never collected or reported to
the run: the task result only says that the job was started. The dispatcher
holds a reference to each job until it ends so the event loop does not drop
it, and gives outstanding jobs a grace period when the run finishes.
"""

import asyncio
import itertools
import logging
import os
from typing import Any, Coroutine, Dict, Optional


logger = logging.getLogger(__name__)


class DetachedDispatcher:
    """Owns fire-and-forget jobs for one run."""

    def __init__(self) -> None:
        self._jobs: Dict[str, asyncio.Task] = {}
        self._counter = itertools.count(1)

    def dispatch(self, name: str, coro: Coroutine[Any, Any, Any], timeout: Optional[float] = None) -> str:
        """
        Start a job and return its id immediately.

        Args:
            name: Human-readable job name (the task name)
            coro: The module run to execute
            timeout: The task's async budget in seconds; the job is cancelled
                after it. 0 or None means no limit.

        Returns:
            Job id, unique within the run
        """
        job_id = f"{os.getpid()}.{next(self._counter)}"
        if timeout:
            coro = asyncio.wait_for(coro, timeout)
        job = asyncio.ensure_future(coro)
        self._jobs[job_id] = job
        job.add_done_callback(lambda _job, jid=job_id: self._finished(jid))
        logger.info("detached job %s started: %s", job_id, name)
        return job_id

    def _finished(self, job_id: str) -> None:
        job = self._jobs.pop(job_id, None)
        # Retrieve the outcome so asyncio does not warn about it; it is not reported.
        if job is not None and not job.cancelled():
            job.exception()
        logger.debug("detached job %s ended", job_id)

    @property
    def pending(self) -> int:
        """Number of jobs still running."""
        return len(self._jobs)

    async def drain(self, grace: float = 5.0) -> None:
        """
        Give outstanding jobs up to ``grace`` seconds, then cancel the rest.

        Nothing about the jobs' outcome is reported either way.
        """
        if not self._jobs:
            return
        jobs = list(self._jobs.values())
        logger.debug("waiting up to %ss for %d detached jobs", grace, len(jobs))
        _, pending = await asyncio.wait(jobs, timeout=grace)
        for job in pending:
            job.cancel()
        if pending:
            await asyncio.wait(pending)
            logger.info("cancelled %d detached jobs still running at exit", len(pending))
