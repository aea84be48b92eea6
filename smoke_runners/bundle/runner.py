"""Launch a browser and do a full audit run through the packaged bundle.

This exercises the single-file bundle rather than the unpacked sources, so a
broken bundling step shows up as a failed run.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from .bundle_loader import load_entry_point
from .control import RunMode, open_control, parse_run_mode
from .errors import NoResultError
from .process_guard import BrowserProcessGuard, launched_browser

logger = logging.getLogger("smoke.bundle")


@dataclass
class RunnerOptions:
    debug: bool = False
    mode: RunMode | str = RunMode.LEGACY


@dataclass
class RunResult:
    report: Any
    artifacts: Any
    # Bundle log output is not captured yet; running audits in parallel would need it.
    log: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"report": self.report, "artifacts": self.artifacts, "log": self.log}


def _unpack_result(result: Any) -> RunResult:
    if isinstance(result, Mapping):
        report = result.get("report")
        artifacts = result.get("artifacts")
    else:
        report = getattr(result, "report", None)
        artifacts = getattr(result, "artifacts", None)
    if report is None:
        raise NoResultError("Bundle result has no report")
    return RunResult(report=report, artifacts=artifacts, log="")


async def run_bundled_audit_smoke(
    url: str,
    config: Any = None,
    options: RunnerOptions | None = None,
    *,
    guard: BrowserProcessGuard | None = None,
    entry_point: Callable[..., Any] | None = None,
) -> RunResult:
    options = options or RunnerOptions()
    # Bad modes and broken bundles fail before a browser is started.
    mode = parse_run_mode(options.mode)
    if entry_point is None:
        entry_point = load_entry_point()
    guard = guard or BrowserProcessGuard()

    async with launched_browser(guard) as handle:
        port = handle.port
        log_level = "info" if options.debug else None
        flags = {"port": port, "logLevel": log_level}
        logger.info("audit_start url=%s mode=%s port=%s", url, mode.value, port)
        async with open_control(mode, port) as control:
            result = await control.invoke(entry_point, url, flags, config)
        if not result:
            raise NoResultError(f"Bundle returned no result for {url}")
        run_result = _unpack_result(result)

    logger.info("audit_done url=%s mode=%s", url, mode.value)
    return run_result


def run_audit(
    url: str,
    config: Any = None,
    options: RunnerOptions | None = None,
    **kwargs: Any,
) -> RunResult:
    """Blocking wrapper around :func:`run_bundled_audit_smoke`."""
    return asyncio.run(run_bundled_audit_smoke(url, config, options, **kwargs))


__all__ = ["RunResult", "RunnerOptions", "run_audit", "run_bundled_audit_smoke"]
