"""Control objects handed to the bundle's entry point.

Two protocols exist and exactly one control object is built per run:
- legacy: a raw CDP connection bound to the debug port; the bundle opens its own page.
- alternate: a Playwright page attached to the running browser over CDP.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import Any

from playwright.async_api import async_playwright

from .cdp_connection import ChromeProtocolConnection
from .config import RunMode, parse_run_mode
from .errors import BundleLoadError

logger = logging.getLogger("smoke.bundle.control")


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class AuditControl:
    mode: RunMode

    async def invoke(self, entry_point: Callable[..., Any], url: str, flags: dict[str, Any], config: Any) -> Any:
        raise NotImplementedError


@dataclass
class ConnectionControl(AuditControl):
    connection: ChromeProtocolConnection
    mode = RunMode.LEGACY

    async def invoke(self, entry_point: Callable[..., Any], url: str, flags: dict[str, Any], config: Any) -> Any:
        legacy_navigation = getattr(entry_point, "legacy_navigation", None)
        if not callable(legacy_navigation):
            raise BundleLoadError("Bundle entry point has no legacy_navigation()")
        return await _maybe_await(legacy_navigation(url, flags, config, self.connection))


@dataclass
class PageControl(AuditControl):
    page: Any
    mode = RunMode.ALTERNATE

    async def invoke(self, entry_point: Callable[..., Any], url: str, flags: dict[str, Any], config: Any) -> Any:
        return await _maybe_await(entry_point(url, flags, config, self.page))


def _quietly(close: Callable[[], Awaitable[Any] | Any], what: str) -> Callable[[], Awaitable[None]]:
    async def _close() -> None:
        try:
            await _maybe_await(close())
        except Exception as exc:  # noqa: BLE001
            logger.warning("control_cleanup_failed what=%s: %s", what, exc)

    return _close


async def build_control_object(
    mode: RunMode | str,
    port: int,
    stack: AsyncExitStack,
    *,
    playwright_factory: Callable[[], Any] | None = None,
) -> AuditControl:
    """Build the control object for ``mode``; cleanups are pushed onto ``stack``."""
    mode = parse_run_mode(mode)
    if mode is RunMode.LEGACY:
        connection = ChromeProtocolConnection(port)
        stack.push_async_callback(_quietly(connection.close, "cdp_connection"))
        logger.debug("control_built mode=legacy port=%s", port)
        return ConnectionControl(connection)

    # The page-automation client is not part of the bundle; the page is made here.
    playwright = await (playwright_factory or async_playwright)().start()
    stack.push_async_callback(_quietly(playwright.stop, "playwright"))
    browser = await playwright.chromium.connect_over_cdp(f"http://localhost:{port}")
    # For a CDP-attached browser, close() only disconnects.
    stack.push_async_callback(_quietly(browser.close, "browser_connection"))
    context = browser.contexts[0] if browser.contexts else await browser.new_context()
    page = await context.new_page()
    logger.debug("control_built mode=alternate port=%s", port)
    return PageControl(page)


@asynccontextmanager
async def open_control(mode: RunMode | str, port: int, **kwargs: Any) -> AsyncIterator[AuditControl]:
    async with AsyncExitStack() as stack:
        yield await build_control_object(mode, port, stack, **kwargs)


__all__ = [
    "AuditControl",
    "ConnectionControl",
    "PageControl",
    "RunMode",
    "build_control_object",
    "open_control",
    "parse_run_mode",
]
