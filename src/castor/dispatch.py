"""Dispatchers: how queued jobs reach the remote service.

Two modes share one CredentialPool:

- ``SerialDispatcher``: one job at a time, strict FIFO, rate-gated, with
  failure-class-aware retries (``retry_async``).
- ``ParallelDispatcher``: fan-out bounded by the pool, at most one in-flight
  call per credential, quota failures re-queued at the front.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
import itertools
import logging
import time
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from castor.backoff import (
    BackoffPolicy,
    FailureKind,
    attach_attempts,
    classify,
    retry_async,
)
from castor.errors import DispatcherClosedError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from castor.credentials import Credential, CredentialPool
    from castor.rate_limit import RateGate

T = TypeVar("T")

logger = logging.getLogger(__name__)


def _resolve(fut: asyncio.Future[Any], value: Any) -> None:
    if not fut.done():
        fut.set_result(value)


def _reject(fut: asyncio.Future[Any], exc: BaseException) -> None:
    if not fut.done():
        fut.set_exception(exc)


@dataclass
class _QueuedJob(Generic[T]):
    work: Callable[..., Awaitable[T]]
    future: asyncio.Future[T]
    enqueued_at: float = field(default_factory=time.monotonic)
    retries: int = 0
    attempts: int = 0


@dataclass(frozen=True)
class SerialStats:
    """Serial dispatcher counters."""

    queued: int
    dispatched: int
    window_usage: int
    completed: int
    failed: int


@dataclass(frozen=True)
class ParallelStats:
    """Parallel dispatcher counters."""

    pending: int
    running: int
    completed: int
    failed: int
    parallelism: int
    peak_running: int


class SerialDispatcher:
    """Runs jobs one at a time in submission order behind a RateGate.

    A job is ``job(attempt) -> Awaitable[T]``; it is called once per physical
    attempt, so it can pick a fresh credential every time. Once popped, a job
    runs to a terminal outcome even if the caller stops awaiting it.
    """

    def __init__(
        self,
        gate: RateGate,
        policy: BackoffPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.gate = gate
        self.policy = policy or BackoffPolicy()
        self._sleep = sleep
        self._queue: asyncio.Queue[_QueuedJob[Any] | None] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._closed = False
        self._completed = 0
        self._failed = 0

    def enqueue(self, job: Callable[[int], Awaitable[T]]) -> asyncio.Future[T]:
        """Append *job* to the FIFO and return a Future for its outcome."""
        if self._closed:
            raise DispatcherClosedError("SerialDispatcher is closed")
        fut: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_QueuedJob(job, fut))
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="castor-serial")
        logger.debug("Job enqueued (%d queued)", self._queue.qsize())
        return fut

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            try:
                value = await retry_async(
                    item.work,
                    policy=self.policy,
                    before_attempt=self.gate.acquire,
                    sleep=self._sleep,
                )
            except asyncio.CancelledError:
                item.future.cancel()
                raise
            except Exception as exc:
                self._failed += 1
                logger.debug("Serial job failed: %s", exc)
                _reject(item.future, exc)
            else:
                self._completed += 1
                _resolve(item.future, value)

    async def aclose(self) -> None:
        """Stop after the current job; queued jobs fail with DispatcherClosedError."""
        if self._closed:
            return
        self._closed = True
        dropped = 0
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not None:
                _reject(item.future, DispatcherClosedError("SerialDispatcher closed"))
                dropped += 1
        if dropped:
            logger.warning("Serial dispatcher closed with %d queued job(s)", dropped)
        if self._worker is not None and not self._worker.done():
            self._queue.put_nowait(None)
            await self._worker

    def stats(self) -> SerialStats:
        """Return dispatcher counters."""
        return SerialStats(
            queued=self._queue.qsize(),
            dispatched=self.gate.dispatched,
            window_usage=self.gate.usage(),
            completed=self._completed,
            failed=self._failed,
        )


class ParallelDispatcher:
    """Fans jobs out over the credential pool.

    A job is ``job(credential) -> Awaitable[T]`` and performs exactly one
    remote call with the credential it is given. The control loop is woken
    on submit and on every completion.
    """

    def __init__(
        self,
        pool: CredentialPool,
        *,
        parallelism: int | None = None,
        max_requeues: int = 3,
    ) -> None:
        if parallelism is not None and parallelism < 1:
            raise ValueError("ParallelDispatcher.parallelism must be >= 1")
        if max_requeues < 0:
            raise ValueError("ParallelDispatcher.max_requeues must be >= 0")
        self.pool = pool
        self.parallelism = parallelism or len(pool)
        self.max_requeues = max_requeues
        self._pending: deque[_QueuedJob[Any]] = deque()
        self._running: dict[int, int] = {}  # run id -> credential index
        self._tasks: set[asyncio.Task[None]] = set()
        self._run_ids = itertools.count(1)
        self._wake = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None
        self._closed = False
        self._completed = 0
        self._failed = 0
        self._peak_running = 0

    def submit(self, job: Callable[[Credential], Awaitable[T]]) -> asyncio.Future[T]:
        """Queue *job* and return a Future for its outcome."""
        if self._closed:
            raise DispatcherClosedError("ParallelDispatcher is closed")
        fut: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._pending.append(_QueuedJob(job, fut))
        self._wake.set()
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(
                self._control_loop(), name="castor-parallel"
            )
        return fut

    async def _control_loop(self) -> None:
        while self._pending or self._running:
            self._wake.clear()
            self._fill()
            if not self._pending and not self._running:
                break
            await self._wake.wait()

    def _fill(self) -> None:
        while self._pending and len(self._running) < self.parallelism:
            busy = set(self._running.values())
            cred = self.pool.checkout(busy)
            if cred is None:
                if self._running:
                    # Wait for a completion to free a credential.
                    return
                cred = self.pool.next()
            job = self._pending.popleft()
            run_id = next(self._run_ids)
            self._running[run_id] = cred.index
            self._peak_running = max(self._peak_running, len(self._running))
            task = asyncio.create_task(self._execute(run_id, job, cred))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            logger.debug(
                "Started run %d on credential #%d (%d running, %d pending)",
                run_id,
                cred.index + 1,
                len(self._running),
                len(self._pending),
            )

    async def _execute(
        self, run_id: int, job: _QueuedJob[Any], cred: Credential
    ) -> None:
        job.attempts += 1
        try:
            value = await job.work(cred)
        except asyncio.CancelledError:
            job.future.cancel()
            raise
        except Exception as exc:
            self._on_failure(job, cred, exc)
        else:
            self._completed += 1
            _resolve(job.future, value)
        finally:
            self._running.pop(run_id, None)
            self._wake.set()

    def _on_failure(
        self, job: _QueuedJob[Any], cred: Credential, exc: Exception
    ) -> None:
        self.pool.report_failure(cred, exc)
        if classify(exc) is FailureKind.RATE_LIMITED and not self._closed:
            job.retries += 1
            if job.retries <= self.max_requeues:
                logger.info(
                    "Quota error on %s; re-queueing job (retry %d/%d)",
                    cred.masked,
                    job.retries,
                    self.max_requeues,
                )
                self._pending.appendleft(job)
                return
        self._failed += 1
        attach_attempts(exc, job.attempts)
        _reject(job.future, exc)

    async def aclose(self) -> None:
        """Fail pending jobs and wait for in-flight ones to finish."""
        if self._closed:
            return
        self._closed = True
        while self._pending:
            job = self._pending.popleft()
            _reject(job.future, DispatcherClosedError("ParallelDispatcher closed"))
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._loop_task is not None:
            self._wake.set()
            await self._loop_task

    def stats(self) -> ParallelStats:
        """Return dispatcher counters."""
        return ParallelStats(
            pending=len(self._pending),
            running=len(self._running),
            completed=self._completed,
            failed=self._failed,
            parallelism=self.parallelism,
            peak_running=self._peak_running,
        )
