"""Marker files and the polling wait that hands bundles across processes.

The listener writes empty marker files into a bundle directory as stages
finish; a worker in another process polls for them.  Polling needs
nothing but a shared filesystem, which is the only thing the two sides
have in common.
"""

from __future__ import annotations

import asyncio
import math
import os
import random
import time
from collections.abc import Awaitable, Callable
from pathlib import Path

import structlog

from .config import WorkerConfig
from .errors import ReadinessTimeout

logger = structlog.get_logger()


class ReadinessSignal:
    """Write marker files and wait for them to appear."""

    def __init__(
        self,
        poll_interval: float = 1.0,
        *,
        jitter: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        exists: Callable[[Path], bool] = Path.exists,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self.poll_interval = poll_interval
        self.jitter = jitter
        self._clock = clock
        self._sleep = sleep
        self._exists = exists

    @classmethod
    def from_config(cls, config: WorkerConfig) -> ReadinessSignal:
        return cls(
            config.readiness_poll_interval_seconds,
            jitter=config.readiness_jitter_seconds,
        )

    @staticmethod
    def mark(path: str | Path) -> Path:
        """Create an empty marker file at *path*.

        The marker is created under a temporary name and renamed, so a
        poller never sees a half-created file.
        """
        path = Path(path)
        tmp = path.with_name(f".{path.name}.tmp")
        tmp.touch()
        os.replace(tmp, path)
        logger.debug("marker_written", marker=str(path))
        return path

    async def await_file(self, path: str | Path, timeout: float) -> Path:
        """Poll until *path* exists or *timeout* seconds pass.

        Each poll that finds nothing is followed by one sleep of
        ``poll_interval`` (plus jitter).  With ``timeout=3`` and
        ``poll_interval=1`` a missing file is polled exactly three times
        before :class:`ReadinessTimeout` is raised at the deadline.
        """
        path = Path(path)
        max_polls = max(1, math.ceil(timeout / self.poll_interval))
        deadline = self._clock() + timeout
        polls = 0

        while polls < max_polls:
            if self._exists(path):
                if polls:
                    logger.debug("marker_observed", marker=str(path), failed_polls=polls)
                return path
            polls += 1

            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            delay = self.poll_interval
            if self.jitter:
                delay += random.uniform(0, self.jitter)
            await self._sleep(min(delay, remaining))

        logger.warning(
            "marker_wait_timeout",
            marker=str(path),
            timeout=timeout,
            failed_polls=polls,
        )
        raise ReadinessTimeout(str(path), timeout, polls)
