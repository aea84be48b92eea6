from __future__ import annotations

import asyncio
import time
from typing import Any

import pytest

from smoke_runners.bundle.config import RunnerConfig
from smoke_runners.bundle.errors import LaunchError
from smoke_runners.bundle.launcher import LaunchResult
from smoke_runners.bundle.process_guard import BrowserProcessGuard, _LaunchInThread, launched_browser


class FakeProcess:
    pid = 4242

    def __init__(self) -> None:
        self.returncode: int | None = None

    def poll(self) -> int | None:
        return self.returncode


class FakeLauncher:
    instances: list[FakeLauncher] = []

    def __init__(
        self, config: RunnerConfig, *, port: int = 9777, fail: Exception | None = None, delay: float = 0.0
    ) -> None:
        self.config = config
        self.delay = delay
        self.port = port
        self.fail = fail
        self.process: FakeProcess | None = None
        self.stop_calls = 0
        FakeLauncher.instances.append(self)

    def launch(self) -> LaunchResult:
        if self.delay:
            time.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        self.process = FakeProcess()
        return LaunchResult(["chrome"], self.port, self.process.pid, "/tmp/profile")

    def stop(self, *, timeout: float = 2.0) -> bool:
        self.stop_calls += 1
        if self.process is not None:
            self.process.returncode = -15
        return True


@pytest.fixture(autouse=True)
def _reset_instances() -> None:
    FakeLauncher.instances = []


def _config() -> RunnerConfig:
    return RunnerConfig(binary_path="/bin/true", bundle_path="/tmp/bundle.py")


def _guard(**launcher_kwargs: Any) -> BrowserProcessGuard:
    return BrowserProcessGuard(_config(), launcher_factory=lambda cfg: FakeLauncher(cfg, **launcher_kwargs))


def test_acquire_returns_handle_with_debug_port() -> None:
    guard = _guard(port=9321)
    handle = asyncio.run(guard.acquire())

    assert handle.port == 9321
    assert handle.pid == 4242
    assert not handle.terminated
    assert not handle.released


def test_release_kills_process_exactly_once() -> None:
    guard = _guard()

    async def _main() -> Any:
        handle = await guard.acquire()
        await guard.release(handle)
        await guard.release(handle)
        return handle

    handle = asyncio.run(_main())
    launcher = FakeLauncher.instances[0]
    assert launcher.stop_calls == 1
    assert handle.released
    assert handle.terminated


def test_release_swallows_termination_errors(caplog: pytest.LogCaptureFixture) -> None:
    guard = _guard()

    async def _main() -> None:
        handle = await guard.acquire()

        def _broken_stop(*, timeout: float = 2.0) -> bool:
            raise OSError("no such process")

        FakeLauncher.instances[0].stop = _broken_stop  # type: ignore[method-assign]
        await guard.release(handle)

    asyncio.run(_main())
    assert "browser_kill_failed" in caplog.text


def test_launch_error_propagates_unchanged() -> None:
    error = LaunchError("Browser launch timed out")
    guard = _guard(fail=error)

    with pytest.raises(LaunchError) as excinfo:
        asyncio.run(guard.acquire())
    assert excinfo.value is error


def test_unexpected_launch_failure_becomes_launch_error() -> None:
    guard = _guard(fail=RuntimeError("boom"))
    with pytest.raises(LaunchError, match="boom"):
        asyncio.run(guard.acquire())


def test_missing_port_is_a_launch_error() -> None:
    guard = _guard(port=0)
    with pytest.raises(LaunchError, match="debug port"):
        asyncio.run(guard.acquire())
    assert FakeLauncher.instances[0].stop_calls == 1


def test_launched_browser_releases_on_error() -> None:
    guard = _guard()
    seen: list[Any] = []

    async def _main() -> None:
        async with launched_browser(guard) as handle:
            seen.append(handle)
            raise ValueError("audit failed")

    with pytest.raises(ValueError, match="audit failed"):
        asyncio.run(_main())

    assert seen[0].released
    assert seen[0].terminated
    assert FakeLauncher.instances[0].stop_calls == 1


def test_cancelled_acquire_stops_browser_once_launch_returns() -> None:
    guard = _guard(delay=0.2)

    async def _main() -> None:
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(guard.acquire(), timeout=0.05)
        # The launch thread is still starting the browser at this point.
        await asyncio.sleep(0.5)

    asyncio.run(_main())

    (launcher,) = FakeLauncher.instances
    assert launcher.process is not None
    assert launcher.stop_calls == 1
    assert launcher.process.returncode == -15


def test_abandon_after_launch_finished_still_stops() -> None:
    launcher = FakeLauncher(_config())
    launch = _LaunchInThread(launcher)
    launch()

    launch.abandon()

    deadline = time.monotonic() + 2.0
    while launcher.stop_calls == 0 and time.monotonic() < deadline:
        time.sleep(0.01)
    assert launcher.stop_calls == 1
