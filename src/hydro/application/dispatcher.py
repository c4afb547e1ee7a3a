"""Background worker pool running provisioner calls.

Each accepted operation becomes an ``OperationJob`` on an asyncio queue. A
fixed set of worker tasks run the job's provisioner call, hand the outcome to
the job's ``settle`` callback and resolve the job's future. Workers never run
on the caller's task, so cancelling a caller does not cancel the work.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from hydro.domain.exceptions import AdapterFailureError, BrokerInternalError
from hydro.domain.operation import OperationKind
from hydro.domain.ports.logging_port import LoggingPort
from hydro.infrastructure.adapters.logging_adapter import LoggingAdapter


@dataclass
class JobOutcome:
    """Terminal outcome of a job; ``error`` is None on success."""

    token: str
    result: Any = None
    error: Optional[BaseException] = None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.result


Settle = Callable[["OperationJob", Any, Optional[BaseException]], Awaitable[Optional[BaseException]]]


@dataclass
class OperationJob:
    """
    One unit of background work.

    Attributes:
        token: Operation token the job reports to.
        instance_id: Target instance.
        kind: Operation kind.
        work: Zero-argument coroutine factory performing the provisioner call.
        settle: Applies the outcome to the registry and tracker, returning the
                error to report (None on success).
        future: Resolved with a JobOutcome once settled.
    """

    token: str
    instance_id: str
    kind: OperationKind
    work: Callable[[], Awaitable[Any]]
    settle: Settle
    future: Optional[asyncio.Future] = field(default=None, repr=False)


class OperationDispatcher:
    """Worker pool consuming operation jobs."""

    def __init__(
        self,
        workers: int = 4,
        job_timeout: Optional[float] = None,
        logger: Optional[LoggingPort] = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self._worker_count = workers
        self._job_timeout = job_timeout
        self._logger = logger or LoggingAdapter("hydro.dispatcher")
        self._queue: Optional[asyncio.Queue] = None
        self._workers: list[asyncio.Task] = []
        self._inflight: dict[str, OperationJob] = {}

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def ensure_running(self) -> None:
        if not self.running:
            raise BrokerInternalError("operation dispatcher is not running")

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"hydro-worker-{index}")
            for index in range(self._worker_count)
        ]
        self._logger.info("Dispatcher started", workers=self._worker_count)

    async def stop(self, drain: bool = True) -> None:
        """
        Stop the workers.

        :param drain: Wait for queued and running jobs to finish first. Jobs
                      abandoned without draining stay in progress until
                      restart recovery fails them.
        """
        if not self.running:
            return
        if drain and self._queue is not None:
            await self._queue.join()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        for job in self._inflight.values():
            if job.future is not None and not job.future.done():
                job.future.cancel()
        self._inflight.clear()
        self._logger.info("Dispatcher stopped", drained=drain)

    async def __aenter__(self) -> "OperationDispatcher":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    def submit(self, job: OperationJob) -> OperationJob:
        """Queue a job without blocking; the returned job carries its future."""
        self.ensure_running()
        job.future = asyncio.get_running_loop().create_future()
        self._inflight[job.token] = job
        self._queue.put_nowait(job)
        self._logger.debug("Job queued", token=job.token, kind=job.kind.value, queued=self._queue.qsize())
        return job

    def get(self, token: str) -> Optional[OperationJob]:
        """Return the queued or running job for a token, if this process owns it."""
        return self._inflight.get(token)

    def is_inflight(self, token: str) -> bool:
        return token in self._inflight

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._run(job)
            finally:
                self._queue.task_done()

    async def _run(self, job: OperationJob) -> None:
        result: Any = None
        error: Optional[BaseException] = None
        self._logger.info("Job started", token=job.token, kind=job.kind.value, instance_id=job.instance_id)
        try:
            if self._job_timeout is not None:
                result = await asyncio.wait_for(job.work(), self._job_timeout)
            else:
                result = await job.work()
        except asyncio.TimeoutError:
            error = AdapterFailureError(
                job.kind.value,
                TimeoutError(f"{job.kind.value} did not finish within {self._job_timeout} seconds"),
            )
        except asyncio.CancelledError as e:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            error = AdapterFailureError(job.kind.value, e)
        except Exception as e:
            error = e if isinstance(e, AdapterFailureError) else AdapterFailureError(job.kind.value, e)

        if error is not None:
            self._logger.warning(
                "Provisioner call failed",
                token=job.token,
                kind=job.kind.value,
                instance_id=job.instance_id,
                error=str(error),
            )

        try:
            reported = await job.settle(job, result, error)
        except Exception as e:
            self._logger.exception("Settling job failed", token=job.token)
            reported = e
        finally:
            self._inflight.pop(job.token, None)

        if job.future is not None and not job.future.done():
            job.future.set_result(JobOutcome(job.token, result if reported is None else None, reported))
        self._logger.info(
            "Job finished",
            token=job.token,
            kind=job.kind.value,
            succeeded=reported is None,
        )
