from __future__ import annotations

import contextlib
import logging
import shutil
import socket
import subprocess
import tempfile
import time
from dataclasses import dataclass
from urllib.error import URLError
from urllib.request import urlopen

from .config import RunnerConfig
from .errors import LaunchError

logger = logging.getLogger("smoke.bundle.launcher")


@dataclass
class LaunchResult:
    command: list[str]
    port: int
    pid: int | None
    profile_path: str


class BrowserLauncher:
    """Starts one owned Chromium process with a throwaway profile on a free port."""

    def __init__(self, config: RunnerConfig | None = None) -> None:
        self.config = config or RunnerConfig.from_env()
        self.process: subprocess.Popen | None = None
        self.port: int | None = None
        self.profile_path: str | None = None

    def _build_common_flags(self, port: int, profile_path: str) -> list[str]:
        flags = [
            f"--remote-debugging-port={port}",
            f"--user-data-dir={profile_path}",
            "--remote-allow-origins=*",
            "--disable-fre",
            "--no-first-run",
            "--no-default-browser-check",
        ]
        if self.config.no_sandbox:
            flags.append("--no-sandbox")
        if self.config.headless:
            flags.append("--headless=new")
        return flags

    def build_launch_command(self, port: int, profile_path: str) -> list[str]:
        flags = self._build_common_flags(port, profile_path) + self.config.extra_flags
        return [self.config.binary_path, *flags, "about:blank"]

    @staticmethod
    def find_free_port() -> int:
        with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
            s.bind(("127.0.0.1", 0))
            return s.getsockname()[1]

    def _cdp_ready(self, port: int, timeout: float = 0.4) -> bool:
        endpoint = f"http://127.0.0.1:{port}/json/version"
        try:
            with urlopen(endpoint, timeout=timeout) as resp:
                return resp.status == 200
        except (OSError, TimeoutError, URLError):
            return False

    def launch(self) -> LaunchResult:
        """Start Chromium and block until its CDP endpoint answers."""
        if self.process is not None:
            raise LaunchError("Launcher already owns a browser process")

        port = self.find_free_port()
        profile_path = tempfile.mkdtemp(prefix="bundle-smoke-profile-")
        cmd = self.build_launch_command(port, profile_path)
        try:
            self.process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                stdin=subprocess.DEVNULL,
            )
        except OSError as exc:
            shutil.rmtree(profile_path, ignore_errors=True)
            raise LaunchError(f"Could not start browser: {exc}", command=cmd) from exc

        self.port = port
        self.profile_path = profile_path
        deadline = time.time() + self.config.launch_timeout
        while time.time() < deadline:
            if self._cdp_ready(port):
                pid = getattr(self.process, "pid", None)
                logger.info("browser_launched port=%s pid=%s", port, pid)
                return LaunchResult(cmd, port, pid, profile_path)
            if self.process.poll() is not None:
                break
            time.sleep(0.1)

        exit_code = self.process.poll()
        self.stop()
        if exit_code is not None:
            raise LaunchError(f"Browser exited with code {exit_code} before CDP became reachable", command=cmd)
        raise LaunchError(f"Browser launch timed out: no CDP endpoint on port {port}", command=cmd)

    def is_running(self) -> bool:
        proc = self.process
        return proc is not None and proc.poll() is None

    def stop(self, *, timeout: float = 2.0) -> bool:
        """Terminate the owned process, escalating to kill, and drop its profile."""
        proc = self.process
        self.process = None
        profile_path, self.profile_path = self.profile_path, None
        try:
            if proc is None:
                return False
            if proc.poll() is not None:
                return True

            proc.terminate()
            try:
                proc.wait(timeout=max(0.1, float(timeout)))
            except subprocess.TimeoutExpired:
                # Escalate to kill.
                proc.kill()
                proc.wait(timeout=max(0.1, float(timeout)))
            return True
        finally:
            if profile_path:
                shutil.rmtree(profile_path, ignore_errors=True)
