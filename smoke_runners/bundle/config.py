from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .errors import RunnerConfigError

DEFAULT_BINARY_CANDIDATES: list[str] = [
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/local/bin/chromium",
    "/opt/chromium/chromium",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
    "C:\\Program Files\\Chromium\\Application\\chrome.exe",
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
    "/opt/google/chrome/chrome",
    "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
    "C:\\Program Files (x86)\\Google\\Chrome\\Application\\chrome.exe",
    # Snap builds ignore --user-data-dir outside $HOME; keep them last.
    "/snap/bin/chromium",
]


class RunMode(str, Enum):
    LEGACY = "legacy"
    ALTERNATE = "alternate"


def parse_run_mode(raw: RunMode | str | None) -> RunMode:
    """Validate a run mode name; unknown values are configuration errors."""
    if isinstance(raw, RunMode):
        return raw
    value = (raw or "").strip().lower() if isinstance(raw, str) else ""
    for mode in RunMode:
        if mode.value == value:
            return mode
    raise RunnerConfigError(f"Unknown run mode {raw!r} (expected 'legacy' or 'alternate')")


def _repo_root() -> Path:
    # smoke_runners/bundle/config.py -> repo root is parents[2]
    return Path(__file__).resolve().parents[2]


def default_bundle_path() -> str:
    return str(_repo_root() / "dist" / "audit-bundle.py")


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _env_flag(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() not in {"0", "false", "no", "off", ""}


@dataclass
class RunnerConfig:
    binary_path: str
    bundle_path: str
    headless: bool = True
    no_sandbox: bool = False
    extra_flags: list[str] = field(default_factory=list)
    launch_timeout: float = 10.0
    run_mode: RunMode = RunMode.LEGACY

    @classmethod
    def detect_binary(cls) -> str:
        env_path = os.environ.get("SMOKE_BROWSER_BINARY")
        if env_path:
            return expand_path(env_path)
        for candidate in DEFAULT_BINARY_CANDIDATES:
            path = Path(candidate)
            if path.exists() and os.access(str(path), os.X_OK):
                return str(path)
        # Last resort: rely on PATH lookup
        return "google-chrome"

    @classmethod
    def from_env(cls) -> RunnerConfig:
        bundle = expand_path(os.environ.get("SMOKE_BUNDLE_PATH") or default_bundle_path())
        flags_raw = os.environ.get("SMOKE_BROWSER_FLAGS", "")
        extra_flags = [flag.strip() for flag in flags_raw.split(",") if flag.strip()]
        try:
            timeout = float(os.environ.get("SMOKE_LAUNCH_TIMEOUT", "10"))
        except ValueError as exc:
            raise RunnerConfigError(f"SMOKE_LAUNCH_TIMEOUT must be a number: {exc}") from exc
        return cls(
            binary_path=cls.detect_binary(),
            bundle_path=bundle,
            headless=_env_flag("SMOKE_HEADLESS", "1"),
            no_sandbox=_env_flag("SMOKE_NO_SANDBOX", "0"),
            extra_flags=extra_flags,
            launch_timeout=max(0.5, timeout),
            run_mode=parse_run_mode(os.environ.get("SMOKE_RUN_MODE", "legacy")),
        )
