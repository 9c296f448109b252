"""Execution context for one code unit.

The unit runs in a fresh namespace whose builtins are curated and whose
only way to reach host modules is the InterceptingLoader. The module body
executes on its own worker thread; the caller waits at most the load
budget and never depends on the unit giving the thread back.
"""

from __future__ import annotations

import builtins
import ctypes
import os
import platform
import sys
import threading
import time
from collections.abc import Mapping
from types import MappingProxyType, SimpleNamespace
from typing import Any, Callable, Iterable, Iterator

from nativegate.kernel.errors import ExecutionTimeout, LoadError, NativeGateError, SandboxViolation
from nativegate.kernel.logging import EventLog
from nativegate.plugin_system.expose import HostApi, frozen_namespace
from nativegate.plugin_system.guard import INTROSPECTION_NAMES, check_source
from nativegate.plugin_system.loader import InterceptingLoader
from nativegate.plugin_system.unit import CodeUnit


SAFE_MODULES = {
    "json": "json",
    "re": "re",
    "math": "math",
    "time": "time",
    "datetime": "datetime",
    "base64": "base64",
    "hashlib": "hashlib",
    "hmac": "hmac",
    "secrets": "secrets",
    "uuid": "uuid",
    "urllib_parse": "urllib.parse",
}

_PLAIN_BUILTINS = (
    "abs", "aiter", "all", "anext", "any", "ascii", "bin", "bool", "bytearray", "bytes",
    "callable", "chr", "classmethod", "complex", "dict", "dir", "divmod", "enumerate",
    "filter", "float", "format", "frozenset", "hash", "hex", "id", "int", "isinstance",
    "issubclass", "iter", "len", "list", "map", "max", "memoryview", "min", "next",
    "object", "oct", "ord", "pow", "property", "range", "repr", "reversed", "round",
    "set", "slice", "sorted", "staticmethod", "str", "sum", "super", "tuple", "type",
    "zip", "__build_class__",
)
_CONSTANTS = {"None": None, "True": True, "False": False, "Ellipsis": Ellipsis, "NotImplemented": NotImplemented}
_GATED_BUILTINS = ("open", "exec", "eval", "compile")
_SCOPED_BUILTINS = ("exec", "eval", "compile")
_TICK_S = 0.05


class _Interrupt(BaseException):
    """Injected into a unit's worker thread once its budget runs out."""


def _set_async_exc(thread_id: int, exc_type: type[BaseException] | None) -> None:
    payload = ctypes.py_object(exc_type) if exc_type is not None else None
    ctypes.pythonapi.PyThreadState_SetAsyncExc(ctypes.c_ulong(thread_id), payload)


class _UnitThread(threading.Thread):
    """Runs a unit's module body; the outcome is read after ``join``."""

    def __init__(self, code: Any, namespace: dict[str, Any], *, name: str) -> None:
        super().__init__(name=name, daemon=True)
        self._code = code
        self._namespace = namespace
        self._state = threading.Lock()
        self._finished = False
        self.error: BaseException | None = None

    def run(self) -> None:
        try:
            exec(self._code, self._namespace)
        except _Interrupt:
            pass
        except BaseException as exc:
            self.error = exc
        finally:
            # interrupts may keep arriving until _finished is visible to interrupt()
            while True:
                try:
                    with self._state:
                        self._finished = True
                    _set_async_exc(threading.get_ident(), None)
                    break
                except _Interrupt:
                    continue

    def interrupt(self) -> bool:
        """Inject the interrupt unless the body already returned."""
        with self._state:
            if self._finished or self.ident is None:
                return False
            _set_async_exc(self.ident, _Interrupt)
            return True


def _reap(worker: _UnitThread) -> None:
    while worker.interrupt():
        worker.join(_TICK_S)


class ExportsTable(Mapping):
    """Immutable name -> callable table captured after a successful load."""

    def __init__(self, exports: dict[str, Callable[..., Any]]) -> None:
        self._exports = MappingProxyType(dict(exports))

    def __getitem__(self, name: str) -> Callable[..., Any]:
        return self._exports[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._exports)

    def __len__(self) -> int:
        return len(self._exports)

    def __repr__(self) -> str:
        return f"ExportsTable({sorted(self._exports)!r})"


def stream_mock(name: str, fd: int) -> Any:
    """Write-only stand-in for a standard stream; no subscription surface."""

    def write(data: Any) -> int:
        text = str(data)
        stream = getattr(sys, name, None)
        if name == "stdin" or stream is None:
            return 0
        stream.write(text)
        return len(text)

    def flush() -> None:
        stream = getattr(sys, name, None)
        if name != "stdin" and stream is not None:
            stream.flush()

    def isatty() -> bool:
        return False

    return frozen_namespace(name, fd=fd, write=write, flush=flush, isatty=isatty)


def unit_log(unit_id: str, event_log: EventLog | None) -> Any:
    """``log`` global: unit messages land in the host event log, tagged with the unit id."""

    def emit(level: str, message: Any, args: tuple[Any, ...]) -> None:
        if event_log is None:
            return
        text = str(message)
        if args:
            try:
                text = text % args
            except (TypeError, ValueError):
                text = " ".join([text, *map(str, args)])
        event_log.event("unit.log", unit_id=unit_id, level=level, message=f"[{unit_id}] {text}")

    def debug(message: Any, *args: Any) -> None:
        emit("debug", message, args)

    def info(message: Any, *args: Any) -> None:
        emit("info", message, args)

    def warning(message: Any, *args: Any) -> None:
        emit("warning", message, args)

    def error(message: Any, *args: Any) -> None:
        emit("error", message, args)

    return frozen_namespace("log", debug=debug, info=info, warning=warning, error=error)


def _refuse_introspection(name: Any) -> None:
    if isinstance(name, str) and name in INTROSPECTION_NAMES:
        raise AttributeError(f"{name!r} is not accessible from unit code")


def _checked_getattr(obj: Any, name: str, *default: Any) -> Any:
    _refuse_introspection(name)
    return getattr(obj, name, *default)


def _checked_setattr(obj: Any, name: str, value: Any) -> None:
    _refuse_introspection(name)
    setattr(obj, name, value)


def _checked_delattr(obj: Any, name: str) -> None:
    _refuse_introspection(name)
    delattr(obj, name)


def _checked_hasattr(obj: Any, name: str) -> bool:
    _refuse_introspection(name)
    return hasattr(obj, name)


class SandboxExecutionContext:
    def __init__(
        self,
        unit: CodeUnit,
        loader: InterceptingLoader,
        *,
        timeout_s: float = 5.0,
        event_log: EventLog | None = None,
        env_allowlist: Iterable[str] = (),
        host_api: HostApi | None = None,
        resources_path: str | None = None,
        paused: Callable[[int], bool] | None = None,
    ) -> None:
        self.unit = unit
        self.loader = loader
        self.timeout_s = float(timeout_s)
        self._log = event_log
        self._env_allowlist = tuple(env_allowlist)
        self._host_api = host_api or HostApi(unit.unit_id, event_log=event_log)
        self._resources_path = resources_path
        self._paused = paused
        self.filename = f"nativegate://{unit.unit_id}"
        self.module_name = f"nativegate.unit.{unit.unit_id}"
        self._stdout: Any = stream_mock("stdout", 1)
        self._namespace: dict[str, Any] = {}

    def _builtins(self) -> dict[str, Any]:
        table: dict[str, Any] = {name: getattr(builtins, name) for name in _PLAIN_BUILTINS}
        table.update(_CONSTANTS)
        for name, value in vars(builtins).items():
            if isinstance(value, type) and issubclass(value, Exception):
                table[name] = value
        table.update(
            {
                "__import__": self.loader.import_hook,
                "getattr": _checked_getattr,
                "setattr": _checked_setattr,
                "delattr": _checked_delattr,
                "hasattr": _checked_hasattr,
                "print": self._print,
            }
        )
        for name in _GATED_BUILTINS:
            func = getattr(builtins, name)
            if name in _SCOPED_BUILTINS:
                func = self._scoped(func)
            table[name] = self.loader.gated_builtin(name, func)
        return table

    def _scoped(self, func: Callable[..., Any]) -> Callable[..., Any]:
        """Run code strings through the guard and inside the unit's own namespace."""

        def scoped(source: Any, *args: Any, **kwargs: Any) -> Any:
            if isinstance(source, (str, bytes)):
                text = source.decode("utf-8") if isinstance(source, bytes) else source
                check_source(text, filename=self.filename)
            if func is builtins.compile:
                return func(source, *args, **kwargs)
            scope = args[0] if args else kwargs.pop("globals", None)
            if scope is None:
                scope = self._namespace
            scope.setdefault("__builtins__", self._namespace["__builtins__"])
            return func(source, scope, *args[1:], **kwargs)

        scoped.__name__ = func.__name__
        return scoped

    def _process(self) -> SimpleNamespace:
        env = {key: os.environ[key] for key in self._env_allowlist if key in os.environ}
        return SimpleNamespace(
            env=MappingProxyType(env),
            platform=sys.platform,
            version=platform.python_version(),
            version_info=tuple(sys.version_info[:3]),
            implementation=sys.implementation.name,
            arch=platform.machine(),
            resources_path=self._resources_path,
            stdin=stream_mock("stdin", 0),
            stdout=stream_mock("stdout", 1),
            stderr=stream_mock("stderr", 2),
        )

    def _print(self, *args: Any, sep: str | None = " ", end: str | None = "\n", file: Any = None, flush: bool = False) -> None:
        target = file if file is not None else self._stdout
        target.write((" " if sep is None else sep).join(str(a) for a in args) + ("\n" if end is None else end))
        if flush:
            target.flush()

    def build_globals(self) -> dict[str, Any]:
        process = self._process()
        self._stdout = process.stdout
        namespace = self._namespace
        namespace.clear()
        namespace.update(
            __name__=self.module_name,
            __file__=self.filename,
            __builtins__=self._builtins(),
            log=unit_log(self.unit.unit_id, self._log),
            process=process,
            host=self._host_api.exposed(),
            require=self.loader.require,
            Event=threading.Event,
        )
        for alias, module_name in SAFE_MODULES.items():
            namespace[alias] = self.loader.resolve(module_name)
        return namespace

    def _exports(self, namespace: dict[str, Any]) -> ExportsTable:
        declared = namespace.get("__all__")
        if declared is not None:
            if isinstance(declared, str) or not all(isinstance(n, str) for n in declared):
                raise LoadError(self.unit.unit_id, "__all__ must be a sequence of names")
            exports: dict[str, Callable[..., Any]] = {}
            for name in declared:
                if name not in namespace:
                    raise LoadError(self.unit.unit_id, f"__all__ names missing export {name!r}")
                if not callable(namespace[name]):
                    raise LoadError(self.unit.unit_id, f"export {name!r} is not callable")
                exports[name] = namespace[name]
            return ExportsTable(exports)
        return ExportsTable(
            {
                name: value
                for name, value in namespace.items()
                if not name.startswith("_")
                and callable(value)
                and getattr(value, "__module__", None) == self.module_name
            }
        )

    def _within_budget(self, worker: _UnitThread) -> bool:
        """Wait for ``worker``; time it spends blocked on consent is not counted."""
        used = 0.0
        last = time.monotonic()
        while True:
            worker.join(min(_TICK_S, max(0.001, self.timeout_s - used)))
            if not worker.is_alive():
                return True
            now = time.monotonic()
            if self._paused is None or not self._paused(worker.ident):
                used += now - last
            last = now
            if used >= self.timeout_s:
                return False

    def _execute(self, code: Any, namespace: dict[str, Any]) -> None:
        worker = _UnitThread(code, namespace, name=f"nativegate-unit-{self.unit.unit_id}")
        worker.start()
        if not self._within_budget(worker):
            # the abandoned body keeps being interrupted; nothing it defines is published
            threading.Thread(target=_reap, args=(worker,), name=f"{worker.name}-reaper", daemon=True).start()
            raise ExecutionTimeout(self.unit.unit_id, self.timeout_s)
        if worker.error is not None:
            raise worker.error

    def run(self) -> ExportsTable:
        unit_id = self.unit.unit_id
        try:
            tree = check_source(self.unit.source_text, filename=self.filename)
            try:
                code = compile(tree, self.filename, "exec")
            except SyntaxError as exc:
                raise SandboxViolation(f"{self.filename}: {exc.msg} at line {exc.lineno}") from exc
            namespace = self.build_globals()
            self._execute(code, namespace)
            exports = self._exports(namespace)
        except NativeGateError as exc:
            self._event("sandbox.load_failed", level="warning", error_type=type(exc).__name__, error=str(exc))
            raise
        except Exception as exc:
            self._event("sandbox.load_failed", level="warning", error_type=type(exc).__name__, error=str(exc))
            raise LoadError(unit_id, f"{type(exc).__name__}: {exc}") from exc
        self._event("sandbox.loaded", exports=sorted(exports))
        return exports

    def _event(self, event: str, *, level: str = "info", **fields: Any) -> None:
        if self._log is not None:
            self._log.event(event, unit_id=self.unit.unit_id, level=level, code_hash=self.unit.code_hash, **fields)
