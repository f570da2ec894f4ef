"""WorkerCoordinator: bounded pool running worker tasks out-of-process."""

from __future__ import annotations

import asyncio
import multiprocessing
import time
from collections.abc import Awaitable, Callable
from concurrent.futures import Executor, ProcessPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from pathlib import Path

import structlog

from .bundle import Bundle
from .config import ServiceConfig
from .errors import ErrorKind, classify_exception
from .models import WorkerOutcome, WorkerTask
from .worker import run_worker_task

logger = structlog.get_logger()

TaskFn = Callable[[str, ServiceConfig], WorkerOutcome]
ExecutorFactory = Callable[[int], Executor]


def spawn_process_pool(max_workers: int) -> Executor:
    """Process pool whose workers share no memory with the listener."""
    return ProcessPoolExecutor(
        max_workers=max_workers,
        mp_context=multiprocessing.get_context("spawn"),
    )


class WorkerCoordinator:
    """Admit bundles into at most ``max_workers`` concurrently running workers.

    :meth:`submit` waits for a free slot, polling every
    ``admission_interval_seconds``, instead of queuing without bound.
    The active set is only changed here: a slot is taken when a worker
    is spawned and released when it finishes, whatever the outcome.
    """

    def __init__(
        self,
        config: ServiceConfig,
        *,
        executor_factory: ExecutorFactory = spawn_process_pool,
        task_fn: TaskFn = run_worker_task,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self.max_workers = config.worker.max_workers
        self._executor_factory = executor_factory
        self._task_fn = task_fn
        self._clock = clock
        self._sleep = sleep
        self._executor: Executor | None = None
        self._active: set[asyncio.Task[WorkerOutcome]] = set()
        self._closing = False

        self.tasks_submitted = 0
        self.tasks_admitted = 0
        self.tasks_expired = 0
        self.tasks_succeeded = 0
        self.tasks_failed = 0

    @property
    def active_count(self) -> int:
        return len(self._active)

    def stats(self) -> dict[str, int]:
        return {
            "active_workers": self.active_count,
            "max_workers": self.max_workers,
            "tasks_submitted": self.tasks_submitted,
            "tasks_admitted": self.tasks_admitted,
            "tasks_expired": self.tasks_expired,
            "tasks_succeeded": self.tasks_succeeded,
            "tasks_failed": self.tasks_failed,
        }

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def submit(self, bundle: Bundle | str | Path) -> WorkerTask | None:
        """Wait for a free slot, then start a worker for *bundle*.

        Returns the admitted :class:`WorkerTask`, or None when the
        coordinator is shutting down or the admission deadline passed.
        The bundle stays on disk either way.
        """
        bundle_dir = str(bundle.path if isinstance(bundle, Bundle) else Path(bundle))
        timeout = self._config.worker.admission_timeout_seconds
        task = WorkerTask(
            bundle_dir=bundle_dir,
            uid=Path(bundle_dir).name,
            admission_deadline=self._clock() + timeout if timeout is not None else None,
        )
        self.tasks_submitted += 1

        waited = 0
        while len(self._active) >= self.max_workers and not self._closing:
            if task.admission_deadline is not None and self._clock() >= task.admission_deadline:
                self.tasks_expired += 1
                logger.warning("worker_admission_expired", bundle=bundle_dir, waited_polls=waited)
                return None
            if waited == 0:
                logger.info("worker_admission_waiting", bundle=bundle_dir, active=len(self._active))
            waited += 1
            await self._sleep(self._config.worker.admission_interval_seconds)

        if self._closing:
            logger.warning("worker_admission_cancelled", bundle=bundle_dir)
            return None

        self._spawn(task)
        return task

    def _spawn(self, task: WorkerTask) -> None:
        loop = asyncio.get_running_loop()
        executor = self._current_executor()
        try:
            future = loop.run_in_executor(executor, self._task_fn, task.bundle_dir, self._config)
        except BrokenProcessPool:
            # Crashed before its supervisors noticed
            self._discard_executor(executor)
            executor = self._current_executor()
            future = loop.run_in_executor(executor, self._task_fn, task.bundle_dir, self._config)
        runner = asyncio.create_task(self._supervise(task, future, executor))
        self._active.add(runner)
        self.tasks_admitted += 1
        logger.info("worker_spawned", bundle=task.bundle_dir, active=len(self._active))

    def _current_executor(self) -> Executor:
        if self._executor is None:
            self._executor = self._executor_factory(self.max_workers)
        return self._executor

    async def _supervise(
        self, task: WorkerTask, future: Awaitable[WorkerOutcome], executor: Executor
    ) -> WorkerOutcome:
        try:
            outcome = await future
        except BrokenProcessPool as exc:
            logger.error("worker_process_crashed", bundle=task.bundle_dir, error=str(exc))
            self._discard_executor(executor)
            outcome = self._failure(task, ErrorKind.PERMANENT_EXTERNAL, f"worker process crashed: {exc}")
        except Exception as exc:
            logger.exception("worker_task_raised", bundle=task.bundle_dir)
            outcome = self._failure(task, classify_exception(exc), str(exc))
        finally:
            current = asyncio.current_task()
            if current is not None:
                self._active.discard(current)

        if outcome.ok:
            self.tasks_succeeded += 1
        else:
            self.tasks_failed += 1
        logger.info(
            "worker_finished",
            bundle=task.bundle_dir,
            ok=outcome.ok,
            error_kind=outcome.error_kind.value if outcome.error_kind else None,
            active=len(self._active),
        )
        return outcome

    @staticmethod
    def _failure(task: WorkerTask, kind: ErrorKind, error: str) -> WorkerOutcome:
        return WorkerOutcome(bundle_dir=task.bundle_dir, uid=task.uid, ok=False, error_kind=kind, error=error)

    def _discard_executor(self, executor: Executor) -> None:
        # Every future of a broken pool fails; only the first one retires it
        if self._executor is executor:
            executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def wait_idle(self) -> None:
        """Wait until every running worker has finished."""
        if self._active:
            await asyncio.gather(*list(self._active), return_exceptions=True)

    async def shutdown(self) -> None:
        """Stop admitting, let running workers finish, close the pool."""
        self._closing = True
        logger.info("worker_coordinator_stopping", active=len(self._active))
        await self.wait_idle()
        if self._executor is not None:
            await asyncio.to_thread(self._executor.shutdown, True, cancel_futures=True)
            self._executor = None
        logger.info("worker_coordinator_stopped", **self.stats())
