"""Background tool jobs: calls the model asked to run with ``asynchronous: true``."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from toolchat.context.parts import FunctionCallPart
from toolchat.logging import get_logger
from toolchat.tools.registry import ToolRegistry

logger = get_logger(__name__)

ASYNC_ARG = "asynchronous"


class JobStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class JobInfo:
    """A background job started by a tool, reported back when it finishes."""

    job_id: str
    description: str
    status: JobStatus | str = JobStatus.COMPLETED
    result: Any = None
    error: str | None = None
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = JobStatus(self.status).value
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


JobCallback = Callable[[JobInfo], None]


def split_async_flag(call: FunctionCallPart) -> tuple[FunctionCallPart, bool]:
    """Strip the ``asynchronous`` flag from *call*; returns the call to invoke and the flag."""
    if ASYNC_ARG not in call.args:
        return call, False
    args = dict(call.args)
    flag = args.pop(ASYNC_ARG)
    return replace(call, args=args), flag is True


class JobRunner:
    """
    Runs tool calls as asyncio tasks and reports each finished job.

    A reference to every running task is held until it completes.
    """

    def __init__(self, registry: ToolRegistry, on_done: JobCallback | None = None):
        self.registry = registry
        self.on_done = on_done
        self._running: dict[str, asyncio.Task[None]] = {}

    @property
    def running_count(self) -> int:
        return len(self._running)

    def start(self, call: FunctionCallPart) -> JobInfo:
        """Schedule *call* in the background and return the STARTED job."""
        job = JobInfo(
            job_id=uuid.uuid4().hex[:8],
            description=f"Background task for {call.name}",
            status=JobStatus.STARTED,
        )
        task = asyncio.create_task(self._run(job, call))
        self._running[job.job_id] = task

        def _cleanup(t: asyncio.Task[None]) -> None:
            self._running.pop(job.job_id, None)
            if not t.cancelled() and t.exception() is not None:
                logger.error("job_callback_failed", job_id=job.job_id, error=str(t.exception()))

        task.add_done_callback(_cleanup)
        logger.info("job_started", job_id=job.job_id, tool=call.name, call_id=call.id)
        return job

    async def _run(self, job: JobInfo, call: FunctionCallPart) -> None:
        try:
            outcome = await self.registry.invoke(call)
        except Exception as e:
            logger.error("job_failed", job_id=job.job_id, tool=call.name, error=str(e))
            finished = replace(job, status=JobStatus.FAILED, error=f"{type(e).__name__}: {e}")
        else:
            if outcome.is_error:
                finished = replace(job, status=JobStatus.FAILED, error=str(outcome.output))
            else:
                finished = replace(job, status=JobStatus.COMPLETED, result=outcome.output)
            logger.info("job_finished", job_id=job.job_id, tool=call.name, status=finished.status.value)
        finished.finished_at = datetime.now()
        if self.on_done is not None:
            self.on_done(finished)

    async def cancel_all(self) -> int:
        """Cancel every running job; returns how many were cancelled."""
        tasks = [t for t in self._running.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        return len(tasks)
