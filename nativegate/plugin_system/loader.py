"""The only route from unit code to host modules.

Entry points: the ``__import__`` replacement, the ``require`` global and
the gated ``open``/``exec``/``eval``/``compile`` builtins. Each goes through
``resolve``:

- unrestricted keys yield a ``ModuleView`` (public attribute reads pass
  through unless the table lists ``module.member``; module-valued
  attributes come back through the loader);
- dangerous keys yield a proxy from the resource's CapabilityGate, after
  an immediate authorization when the category asks for it or the key is a
  path (loading a file runs host code).
"""

from __future__ import annotations

import importlib
import importlib.util
import json
import threading
import types
import weakref
from pathlib import Path
from typing import Any, Iterable
from urllib.parse import unquote, urlparse

from nativegate.kernel.hashing import sha256_text
from nativegate.kernel.logging import EventLog
from nativegate.plugin_system.broker import TrustBroker
from nativegate.plugin_system.classifier import CapabilityClassifier, ResourceRequest
from nativegate.plugin_system.proxy import RAW_DUNDERS, CapabilityGate
from nativegate.plugin_system.unit import CodeUnit


_views: "weakref.WeakKeyDictionary[ModuleView, tuple[types.ModuleType, Any]]" = weakref.WeakKeyDictionary()


class ModuleView:
    """Read-only view of an unrestricted module.

    Private names are not exposed. A member the category table lists by its
    dotted key (``string.Formatter``) comes back gated like a module would.
    """

    __slots__ = ("__weakref__",)

    def __getattribute__(self, name: str) -> Any:
        module, loader_ref = _views[self]
        if name.startswith("_") and name not in RAW_DUNDERS:
            raise AttributeError(f"module view {module.__name__!r} does not expose {name!r}")
        value = getattr(module, name)
        loader = loader_ref()
        if loader is None:
            raise AttributeError(name)
        if isinstance(value, types.ModuleType):
            return loader.resolve(value.__name__)
        return loader.member(module.__name__, name, value)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError(f"module view {_views[self][0].__name__!r} is read-only")

    def __delattr__(self, name: str) -> None:
        raise AttributeError(f"module view {_views[self][0].__name__!r} is read-only")

    def __repr__(self) -> str:
        return f"<module view {_views[self][0].__name__!r}>"

    def __dir__(self) -> list[str]:
        return [n for n in dir(_views[self][0]) if not n.startswith("_")]


def module_view(module: types.ModuleType, loader: "InterceptingLoader") -> ModuleView:
    view = object.__new__(ModuleView)
    _views[view] = (module, weakref.ref(loader))
    return view


class InterceptingLoader:
    def __init__(
        self,
        unit: CodeUnit,
        classifier: CapabilityClassifier,
        broker: TrustBroker,
        *,
        resolve_root: str | Path | None = None,
        event_log: EventLog | None = None,
    ) -> None:
        self.unit = unit
        self._classifier = classifier
        self._broker = broker
        self._root = Path(resolve_root) if resolve_root else Path.cwd()
        self._log = event_log
        self._lock = threading.Lock()
        self._memo: dict[str, Any] = {}
        self._gates: dict[str, CapabilityGate] = {}

    def gate_for(self, request: ResourceRequest) -> CapabilityGate:
        with self._lock:
            gate = self._gates.get(request.resource_key)
            if gate is None:
                gate = CapabilityGate(
                    self.unit,
                    request.resource_key,
                    request.category,
                    self._broker,
                    resolve_module=self.resolve,
                )
                self._gates[request.resource_key] = gate
            return gate

    def resolve(self, resource_key: str) -> Any:
        key = self._classifier.normalize(resource_key)
        with self._lock:
            if key in self._memo:
                return self._memo[key]
        request = self._classifier.request(key)
        if request is None:
            value: Any = module_view(importlib.import_module(key), self)
        else:
            value = self._load_dangerous(request)
        with self._lock:
            return self._memo.setdefault(key, value)

    def member(self, module_name: str, name: str, value: Any) -> Any:
        """Attribute ``name`` of an unrestricted module, gated when listed by dotted key."""
        request = self._classifier.request(f"{module_name}.{name}")
        if request is None:
            return value
        gate = self.gate_for(request)
        if request.category.authorize_on_load:
            gate.authorize(None)
        return gate.wrap_root(value, request.resource_key)

    def _load_dangerous(self, request: ResourceRequest) -> Any:
        gate = self.gate_for(request)
        if request.structural:
            gate.authorize(None)
            loaded = self._load_path(request.resource_key)
        else:
            loaded = importlib.import_module(request.resource_key)
            if request.category.authorize_on_load:
                gate.authorize(None)
        if self._log is not None:
            self._log.event(
                "loader.resolved",
                unit_id=self.unit.unit_id,
                level="debug",
                resource_key=request.resource_key,
                category=request.category.name,
            )
        return gate.wrap_root(loaded, request.resource_key)

    def _path_for(self, key: str) -> Path:
        if key.startswith("file://"):
            path = Path(unquote(urlparse(key).path))
        else:
            path = Path(key).expanduser()
        if not path.is_absolute():
            path = self._root / path
        if path.is_file():
            return path
        for candidate in (path.with_name(path.name + ".py"), path / "__init__.py"):
            if candidate.is_file():
                return candidate
        raise ModuleNotFoundError(f"cannot resolve {key!r} under {self._root}")

    def _load_path(self, key: str) -> Any:
        path = self._path_for(key)
        if path.suffix == ".json":
            return json.loads(path.read_text(encoding="utf-8"))
        module_name = f"nativegate_ext_{sha256_text(str(path.resolve()))[:16]}"
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise ImportError(f"cannot load {key!r}: unsupported file type")
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module

    def import_hook(
        self,
        name: str,
        globals: dict[str, Any] | None = None,
        locals: dict[str, Any] | None = None,
        fromlist: Iterable[str] | None = (),
        level: int = 0,
    ) -> Any:
        if level > 0:
            prefix = "./" if level == 1 else "../" * (level - 1)
            if name:
                return self.resolve(prefix + name.replace(".", "/"))
            items = [item for item in (fromlist or ()) if item != "*"]
            return types.SimpleNamespace(**{item: self.resolve(prefix + item) for item in items})
        value = self.resolve(name)
        if fromlist or "." not in name:
            return value
        return self.resolve(name.split(".", 1)[0])

    def require(self, key: str) -> Any:
        return self.resolve(key)

    def gated_builtin(self, name: str, func: Any) -> Any:
        """Wrap a builtin whose name is itself a resource key (``open``, ``exec``...)."""
        request = self._classifier.request(name)
        if request is None:
            return func
        return self.gate_for(request).wrap(func, name)
