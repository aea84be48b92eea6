from __future__ import annotations

import builtins
from typing import Any

import pytest

from smoke_runners.bundle import control as control_module


class FakePage:
    def __init__(self, log: list[Any]) -> None:
        self.log = log
        self.url = "about:blank"

    async def goto(self, url: str) -> None:
        self.log.append(("goto", url))
        self.url = url


class FakeContext:
    def __init__(self, log: list[Any]) -> None:
        self.log = log

    async def new_page(self) -> FakePage:
        self.log.append("new_page")
        return FakePage(self.log)


class FakeBrowser:
    def __init__(self, log: list[Any]) -> None:
        self.log = log
        self.contexts = [FakeContext(log)]

    async def close(self) -> None:
        self.log.append("browser.close")


class FakeChromium:
    def __init__(self, log: list[Any]) -> None:
        self.log = log

    async def connect_over_cdp(self, endpoint: str) -> FakeBrowser:
        self.log.append(("connect_over_cdp", endpoint))
        return FakeBrowser(self.log)


class FakePlaywright:
    def __init__(self, log: list[Any]) -> None:
        self.log = log
        self.chromium = FakeChromium(log)

    async def stop(self) -> None:
        self.log.append("playwright.stop")


class FakePlaywrightManager:
    def __init__(self, log: list[Any]) -> None:
        self.log = log

    async def start(self) -> FakePlaywright:
        self.log.append("playwright.start")
        return FakePlaywright(self.log)


@pytest.fixture
def playwright_log(monkeypatch: pytest.MonkeyPatch) -> list[Any]:
    """Replace Playwright with an in-memory fake and return its call log."""
    log: list[Any] = []
    monkeypatch.setattr(control_module, "async_playwright", lambda: FakePlaywrightManager(log))
    return log


class FakeHandle:
    def __init__(self, port: int) -> None:
        self.port = port
        self.released = False


class FakeGuard:
    def __init__(self, port: int = 9333) -> None:
        self.port = port
        self.acquired: list[FakeHandle] = []
        self.released: list[FakeHandle] = []

    async def acquire(self) -> FakeHandle:
        handle = FakeHandle(self.port)
        self.acquired.append(handle)
        return handle

    async def release(self, handle: FakeHandle) -> None:
        handle.released = True
        self.released.append(handle)


@pytest.fixture
def fake_guard() -> FakeGuard:
    return FakeGuard()


@pytest.fixture(autouse=True)
def _no_leaked_entry_point():
    """Bundles install run_bundled_audit into builtins; never let it leak between tests."""
    yield
    if hasattr(builtins, "run_bundled_audit"):
        delattr(builtins, "run_bundled_audit")
