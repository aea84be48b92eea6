"""Load a single-file audit bundle into the shared interpreter context.

The bundle is plain Python source with its dependencies inlined. Evaluating it
installs ``run_bundled_audit`` into :mod:`builtins`, which every module in the
process shares. Load-time code is allowed to see a few extra aliases and to
clobber a few builtins; all of them are put back exactly as they were before
anything else can run.
"""

from __future__ import annotations

import builtins
import logging
import threading
import types
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import Any

from .config import RunnerConfig
from .errors import BundleLoadError

logger = logging.getLogger("smoke.bundle.loader")

ENTRY_POINT_NAME = "run_bundled_audit"
BUNDLE_MODULE_NAME = "__audit_bundle__"

# Module-require and buffer-construction bindings the bundle's loader shims replace.
DEFAULT_GUARDED_BINDINGS: tuple[str, ...] = ("__import__", "bytearray")

_MISSING = object()


def default_aliases() -> dict[str, Any]:
    """Aliases installed for load time only, when the context lacks them."""
    return {"global_scope": builtins}


class BindingSnapshot:
    """Exact pre-load values of a set of names in a shared namespace.

    Names absent at snapshot time are restored by deleting them again.
    """

    def __init__(self, namespace: Any, names: Iterable[str]) -> None:
        self.namespace = namespace
        self.values: dict[str, Any] = {name: getattr(namespace, name, _MISSING) for name in dict.fromkeys(names)}

    def was_present(self, name: str) -> bool:
        return self.values.get(name, _MISSING) is not _MISSING

    def restore(self) -> None:
        for name, value in self.values.items():
            if value is _MISSING:
                if hasattr(self.namespace, name):
                    delattr(self.namespace, name)
            else:
                setattr(self.namespace, name, value)


class BundleLoader:
    """Evaluates one bundle per process and caches its entry point.

    A repeated ``load_once`` for the same file returns the cached entry point
    without touching the file again. Any other path is rejected.
    """

    def __init__(
        self,
        namespace: Any = builtins,
        *,
        guarded: Iterable[str] = DEFAULT_GUARDED_BINDINGS,
        aliases: Mapping[str, Any] | None = None,
        entry_point_name: str = ENTRY_POINT_NAME,
    ) -> None:
        self.namespace = namespace
        self.guarded = tuple(guarded)
        self.aliases = dict(default_aliases() if aliases is None else aliases)
        self.entry_point_name = entry_point_name
        self._lock = threading.Lock()
        self._loaded_path: Path | None = None
        self._entry_point: Callable[..., Any] | None = None
        self._error: BundleLoadError | None = None

    @property
    def loaded_path(self) -> Path | None:
        return self._loaded_path

    def load_once(self, path: str | Path) -> Callable[..., Any]:
        resolved = Path(path).expanduser().resolve()
        with self._lock:
            if self._loaded_path is not None:
                if resolved != self._loaded_path:
                    raise BundleLoadError(
                        f"A bundle was already loaded from {self._loaded_path}; refusing to load {resolved}"
                    )
                if self._error is not None:
                    raise self._error
                if self._entry_point is None:
                    raise BundleLoadError(f"Bundle {self._loaded_path} left no entry point")
                return self._entry_point

            self._loaded_path = resolved
            try:
                self._entry_point = self._load(resolved)
            except BundleLoadError as exc:
                self._error = exc
                raise
            return self._entry_point

    def _load(self, path: Path) -> Callable[..., Any]:
        try:
            source = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise BundleLoadError(f"Cannot read bundle {path}: {exc}") from exc

        if hasattr(self.namespace, self.entry_point_name):
            raise BundleLoadError(f"{self.entry_point_name} is already defined before loading {path}")

        snapshot = BindingSnapshot(self.namespace, [*self.guarded, *self.aliases])
        try:
            for name, value in self.aliases.items():
                if not snapshot.was_present(name):
                    setattr(self.namespace, name, value)
            module = types.ModuleType(BUNDLE_MODULE_NAME)
            module.__file__ = str(path)
            code = compile(source, str(path), "exec")
            exec(code, module.__dict__)  # noqa: S102
        except BaseException as exc:  # noqa: BLE001
            # SystemExit and KeyboardInterrupt from top-level bundle code are load failures too.
            self._discard_entry_point()
            raise BundleLoadError(f"Bundle {path} failed during evaluation: {exc!r}") from exc
        finally:
            snapshot.restore()

        entry_point = getattr(self.namespace, self.entry_point_name, None)
        if not callable(entry_point):
            self._discard_entry_point()
            raise BundleLoadError(f"Bundle {path} did not install a callable {self.entry_point_name}")
        logger.info("bundle_loaded path=%s entry_point=%s", path, self.entry_point_name)
        return entry_point

    def _discard_entry_point(self) -> None:
        if hasattr(self.namespace, self.entry_point_name):
            delattr(self.namespace, self.entry_point_name)
            logger.warning("bundle_entry_point_removed name=%s", self.entry_point_name)


_default_loader = BundleLoader()


def load_entry_point(path: str | Path | None = None) -> Callable[..., Any]:
    """Process-wide entry point; the first caller evaluates the bundle."""
    if path is None:
        loaded = _default_loader.loaded_path
        path = loaded if loaded is not None else RunnerConfig.from_env().bundle_path
    return _default_loader.load_once(path)


__all__ = [
    "BindingSnapshot",
    "BundleLoader",
    "DEFAULT_GUARDED_BINDINGS",
    "ENTRY_POINT_NAME",
    "default_aliases",
    "load_entry_point",
]
