"""Browser process lifecycle guard.

Every successful ``acquire`` is paired with exactly one ``release``. Release
runs on cleanup paths, so it logs termination problems instead of raising.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
import threading
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from .config import RunnerConfig
from .errors import LaunchError
from .launcher import BrowserLauncher, LaunchResult

logger = logging.getLogger("smoke.bundle.guard")


class _LaunchInThread:
    """Runs ``launcher.launch`` in a worker thread and stops the browser if the caller gave up.

    The thread cannot be interrupted, so a cancelled ``acquire`` only marks the
    launch abandoned; whichever side finishes second does the stop.
    """

    def __init__(self, launcher: BrowserLauncher) -> None:
        self._launcher = launcher
        self._lock = threading.Lock()
        self._abandoned = False
        self._finished = False

    def __call__(self) -> LaunchResult:
        try:
            return self._launcher.launch()
        finally:
            with self._lock:
                self._finished = True
                abandoned = self._abandoned
            if abandoned:
                _stop_quietly(self._launcher)

    def abandon(self) -> None:
        with self._lock:
            self._abandoned = True
            finished = self._finished
        if finished:
            # Launch already returned before it could see the flag.
            threading.Thread(target=_stop_quietly, args=(self._launcher,), name="smoke-browser-stop").start()


def _stop_quietly(launcher: BrowserLauncher) -> None:
    try:
        launcher.stop()
    except Exception as exc:  # noqa: BLE001
        logger.warning("browser_kill_failed after cancelled launch: %s", exc)
        return
    logger.info("browser_released after cancelled launch")


class BrowserProcessHandle:
    """A running browser owned by one run: its debug port plus a kill capability."""

    def __init__(self, launcher: BrowserLauncher, port: int) -> None:
        self._launcher = launcher
        self._process: subprocess.Popen | None = launcher.process
        self.port = port
        self.released = False

    @property
    def pid(self) -> int | None:
        return getattr(self._process, "pid", None)

    @property
    def terminated(self) -> bool:
        proc = self._process
        return proc is None or proc.poll() is not None

    async def kill(self) -> None:
        await asyncio.to_thread(self._launcher.stop)

    def __repr__(self) -> str:
        return f"BrowserProcessHandle(port={self.port}, pid={self.pid}, released={self.released})"


class BrowserProcessGuard:
    def __init__(
        self,
        config: RunnerConfig | None = None,
        *,
        launcher_factory: Callable[[RunnerConfig], BrowserLauncher] = BrowserLauncher,
    ) -> None:
        self.config = config or RunnerConfig.from_env()
        self._launcher_factory = launcher_factory

    async def acquire(self) -> BrowserProcessHandle:
        launcher = self._launcher_factory(self.config)
        launch = _LaunchInThread(launcher)
        try:
            result = await asyncio.to_thread(launch)
        except asyncio.CancelledError:
            logger.warning("browser_launch_cancelled; the browser is stopped once launch returns")
            launch.abandon()
            raise
        except LaunchError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise LaunchError(f"Browser launch failed: {exc}") from exc
        if not result.port:
            await asyncio.to_thread(launcher.stop)
            raise LaunchError("Browser started without a debug port", command=result.command)
        return BrowserProcessHandle(launcher, result.port)

    async def release(self, handle: BrowserProcessHandle) -> None:
        if handle.released:
            logger.debug("browser_release_skipped port=%s (already released)", handle.port)
            return
        handle.released = True
        try:
            await handle.kill()
        except Exception as exc:  # noqa: BLE001
            logger.warning("browser_kill_failed port=%s pid=%s: %s", handle.port, handle.pid, exc)
            return
        logger.info("browser_released port=%s pid=%s", handle.port, handle.pid)


@asynccontextmanager
async def launched_browser(guard: BrowserProcessGuard) -> AsyncIterator[BrowserProcessHandle]:
    handle = await guard.acquire()
    try:
        yield handle
    finally:
        await guard.release(handle)


__all__ = ["BrowserProcessGuard", "BrowserProcessHandle", "launched_browser"]
