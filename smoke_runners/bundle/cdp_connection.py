from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from contextlib import suppress
from typing import Any
from urllib.error import URLError
from urllib.request import urlopen

import websocket

logger = logging.getLogger("smoke.bundle.cdp")


class CdpConnectionError(Exception):
    pass


def _http_get_json(url: str, timeout: float = 2.0) -> Any:
    """Fetch JSON from URL."""
    try:
        with urlopen(url, timeout=timeout) as resp:
            return json.loads(resp.read().decode())
    except (URLError, OSError, ValueError) as e:
        raise CdpConnectionError(str(e)) from e


class ChromeProtocolConnection:
    """Browser-level CDP connection addressed by debug port.

    Construction does no I/O. The socket is opened by ``connect()`` (or lazily
    by the first ``send``), using the browser's ``webSocketDebuggerUrl``.
    """

    def __init__(self, port: int, timeout: float = 5.0, host: str = "127.0.0.1") -> None:
        self.port = int(port)
        self.host = host
        self.timeout = timeout
        self.ws: Any = None
        self.ws_url: str | None = None
        self._next_id = 1
        # CDP is event-heavy; events that arrive while waiting for a response are kept.
        self._event_queue: list[dict[str, Any]] = []
        self._max_event_queue = 2000
        self._event_sink: Callable[[dict[str, Any]], None] | None = None

    @property
    def connected(self) -> bool:
        return self.ws is not None

    def version(self) -> dict[str, Any]:
        payload = _http_get_json(f"http://{self.host}:{self.port}/json/version", timeout=self.timeout)
        if not isinstance(payload, dict):
            raise CdpConnectionError("Unexpected /json/version payload")
        return payload

    def connect(self) -> None:
        if self.ws is not None:
            return
        ws_url = self.version().get("webSocketDebuggerUrl")
        if not isinstance(ws_url, str) or not ws_url:
            raise CdpConnectionError(f"No webSocketDebuggerUrl on port {self.port}")
        try:
            self.ws = websocket.create_connection(ws_url, timeout=self.timeout)
        except Exception as exc:  # noqa: BLE001
            raise CdpConnectionError(str(exc)) from exc
        self.ws_url = ws_url
        logger.debug("cdp_connected port=%s url=%s", self.port, ws_url)

    def set_event_sink(self, sink: Callable[[dict[str, Any]], None] | None) -> None:
        """Attach a best-effort event sink called for every received CDP event."""
        self._event_sink = sink

    def _push_event(self, event: dict[str, Any]) -> None:
        sink = self._event_sink
        if sink is not None:
            with suppress(Exception):
                sink(event)

        self._event_queue.append(event)
        if len(self._event_queue) > self._max_event_queue:
            del self._event_queue[: len(self._event_queue) - self._max_event_queue]

    def pop_event(self, event_name: str) -> dict[str, Any] | None:
        """Pop the oldest queued event params for the given event name."""
        for i, ev in enumerate(self._event_queue):
            if ev.get("method") == event_name:
                self._event_queue.pop(i)
                params = ev.get("params")
                return params if isinstance(params, dict) else {}
        return None

    def _recv(self, remaining: float) -> dict[str, Any] | None:
        try:
            self.ws.settimeout(min(0.5, remaining))
            raw = self.ws.recv()
        except websocket.WebSocketTimeoutException:
            return None
        except Exception as exc:  # noqa: BLE001
            if isinstance(exc, TimeoutError) or "timed out" in str(exc).lower():
                return None
            raise CdpConnectionError(str(exc)) from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def send(
        self, method: str, params: dict[str, Any] | None = None, *, session_id: str | None = None
    ) -> dict[str, Any]:
        """Send CDP command and wait for response."""
        self.connect()
        msg_id = self._next_id
        self._next_id += 1

        msg: dict[str, Any] = {"id": msg_id, "method": method}
        if params:
            msg["params"] = params
        if session_id:
            msg["sessionId"] = session_id
        try:
            self.ws.send(json.dumps(msg))
        except Exception as exc:  # noqa: BLE001
            raise CdpConnectionError(str(exc)) from exc

        deadline = time.time() + self.timeout
        while True:
            remaining = deadline - time.time()
            if remaining <= 0:
                raise CdpConnectionError(f"CDP response timed out: {method}")
            data = self._recv(remaining)
            if data is None:
                continue
            # CDP event: store and keep waiting for the command response.
            if isinstance(data.get("method"), str) and "id" not in data:
                self._push_event(data)
                continue
            if data.get("id") == msg_id:
                if "error" in data:
                    raise CdpConnectionError(str(data["error"]))
                return data.get("result", {})

    def wait_for_event(self, event_name: str, timeout: float = 10.0) -> dict[str, Any] | None:
        """Wait for specific CDP event."""
        queued = self.pop_event(event_name)
        if queued is not None:
            return queued

        self.connect()
        deadline = time.time() + timeout
        while True:
            remaining = deadline - time.time()
            if remaining <= 0:
                return None
            data = self._recv(remaining)
            if data is None or not isinstance(data.get("method"), str) or "id" in data:
                continue
            if data.get("method") == event_name:
                sink = self._event_sink
                if sink is not None:
                    with suppress(Exception):
                        sink(data)
                params = data.get("params")
                return params if isinstance(params, dict) else {}
            self._push_event(data)

    def create_target(self, url: str = "about:blank") -> str:
        """Open a new tab and return its target id."""
        result = self.send("Target.createTarget", {"url": url})
        target_id = result.get("targetId")
        if not isinstance(target_id, str):
            raise CdpConnectionError("Target.createTarget returned no targetId")
        return target_id

    def close(self) -> None:
        ws, self.ws = self.ws, None
        if ws is None:
            return
        with suppress(Exception):
            ws.close()


__all__ = ["CdpConnectionError", "ChromeProtocolConnection"]
