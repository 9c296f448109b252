"""Identity-preserving capability proxies.

A ``CapabilityGate`` guards everything reachable from one dangerous
resource. ``gate.wrap(value)`` returns either the value itself (inert data)
or a proxy; the same target always yields the same proxy while it lives.

Proxies carry no reference to their target or gate. The per-gate arena
keeps the reverse map (proxy -> target) and the module keeps proxy ->
gate, both keyed by ``id(proxy)`` and released when the proxy dies.

Gated operations authorize through the TrustBroker first and raise
AccessDenied on refusal; the real target is never touched in that case.
"""

from __future__ import annotations

import operator
import threading
import types
import weakref
from typing import Any, Callable

from nativegate.kernel.errors import AccessDenied
from nativegate.plugin_system.broker import TrustBroker, identity_of
from nativegate.plugin_system.categories import DangerCategory
from nativegate.plugin_system.unit import CodeUnit


RAW_DUNDERS = frozenset(
    {"__name__", "__qualname__", "__doc__", "__module__", "__version__", "__all__", "__file__"}
)

# Implemented by the proxy class itself rather than forwarded.
_PROXY_ATTRS = frozenset({"__mro_entries__"})

_SCALARS = (type(None), bool, int, float, complex, str, bytes)
_CONTAINERS = (list, tuple, set, frozenset)

_owners: dict[int, "CapabilityGate"] = {}
_owners_lock = threading.Lock()


def _is_inert(value: Any, depth: int = 0) -> bool:
    if isinstance(value, _SCALARS):
        return True
    if depth >= 8:
        return False
    if isinstance(value, _CONTAINERS):
        return all(_is_inert(item, depth + 1) for item in value)
    if isinstance(value, dict):
        return all(_is_inert(k, depth + 1) and _is_inert(v, depth + 1) for k, v in value.items())
    return False


def passes_through(value: Any) -> bool:
    if isinstance(value, GatedObject):
        return True
    if isinstance(value, type) and issubclass(value, BaseException):
        return True
    return _is_inert(value)


def is_proxy(value: Any) -> bool:
    return isinstance(value, GatedObject)


def unwrap(value: Any) -> Any:
    """Return the real target behind a proxy; anything else unchanged."""
    if not isinstance(value, GatedObject):
        return value
    with _owners_lock:
        gate = _owners.get(id(value))
    if gate is None:
        return value
    return gate.target_of(value)


def _unwrap_one(value: Any) -> Any:
    if isinstance(value, GatedObject):
        return unwrap(value)
    if isinstance(value, dict):
        if any(isinstance(v, GatedObject) for v in value.values()):
            return {k: unwrap(v) for k, v in value.items()}
        return value
    if type(value) in _CONTAINERS and any(isinstance(v, GatedObject) for v in value):
        return type(value)(unwrap(v) for v in value)
    return value


def unwrap_args(args: tuple[Any, ...], kwargs: dict[str, Any]) -> tuple[tuple[Any, ...], dict[str, Any]]:
    """Replace proxies at the top level and one container level down."""
    return (
        tuple(_unwrap_one(a) for a in args),
        {k: _unwrap_one(v) for k, v in kwargs.items()},
    )


class CapabilityGate:
    """Wraps host objects reachable from one resource for one unit."""

    def __init__(
        self,
        unit: CodeUnit,
        resource_key: str,
        category: DangerCategory,
        broker: TrustBroker,
        *,
        resolve_module: Callable[[str], Any] | None = None,
    ) -> None:
        self.unit = unit
        self.resource_key = resource_key
        self.category = category
        self._broker = broker
        self._resolve_module = resolve_module
        self._lock = threading.Lock()
        self._forward: weakref.WeakValueDictionary = weakref.WeakValueDictionary()
        self._targets: dict[int, tuple[Any, str]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._targets)

    def wrap(self, value: Any, path: str | None = None) -> Any:
        if passes_through(value):
            return value
        if self._resolve_module is not None and isinstance(value, types.ModuleType):
            # Submodules are classified on their own key.
            return self._resolve_module(value.__name__)
        return self.wrap_root(value, path)

    def wrap_root(self, value: Any, path: str | None = None) -> Any:
        """Wrap ``value`` itself, without routing modules back to the loader."""
        if passes_through(value):
            return value
        ident = identity_of(value)
        with self._lock:
            existing = self._forward.get(ident)
            if existing is not None:
                return existing
            cls = GatedCallable if callable(value) else GatedObject
            proxy = object.__new__(cls)
            pid = id(proxy)
            self._targets[pid] = (value, path or self.resource_key)
            self._forward[ident] = proxy
        with _owners_lock:
            _owners[pid] = self
        weakref.finalize(proxy, self._release, pid)
        return proxy

    def _release(self, pid: int) -> None:
        with self._lock:
            self._targets.pop(pid, None)
        with _owners_lock:
            if _owners.get(pid) is self:
                del _owners[pid]

    def target_of(self, proxy: Any) -> Any:
        with self._lock:
            return self._targets[id(proxy)][0]

    def path_of(self, proxy: Any) -> str:
        with self._lock:
            return self._targets[id(proxy)][1]

    def authorize(self, target: Any) -> None:
        if not self._broker.authorize(self.unit, self.resource_key, self.category, target):
            raise AccessDenied(self.unit.unit_id, self.resource_key, self.category.label)


def _resolve(proxy: Any) -> tuple[CapabilityGate, Any]:
    with _owners_lock:
        gate = _owners[id(proxy)]
    return gate, gate.target_of(proxy)


def _gated(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Run ``fn(target, *args, **kwargs)`` after authorization; wrap the result."""

    def method(self: Any, *args: Any, **kwargs: Any) -> Any:
        gate, target = _resolve(self)
        gate.authorize(target)
        args, kwargs = unwrap_args(args, kwargs)
        return gate.wrap(fn(target, *args, **kwargs), gate.path_of(self))

    method.__name__ = getattr(fn, "__name__", "method")
    return method


def _binary(op: Callable[[Any, Any], Any], name: str) -> Callable[..., Any]:
    def method(self: Any, other: Any) -> Any:
        gate, target = _resolve(self)
        gate.authorize(target)
        return gate.wrap(op(target, unwrap(other)), gate.path_of(self))

    method.__name__ = name
    return method


def _reflected(op: Callable[[Any, Any], Any], name: str) -> Callable[..., Any]:
    def method(self: Any, other: Any) -> Any:
        gate, target = _resolve(self)
        gate.authorize(target)
        return gate.wrap(op(unwrap(other), target), gate.path_of(self))

    method.__name__ = name
    return method


class GatedObject:
    __slots__ = ("__weakref__",)

    def __getattribute__(self, name: str) -> Any:
        if name in _PROXY_ATTRS:
            return object.__getattribute__(self, name)
        gate, target = _resolve(self)
        value = getattr(target, name)
        if name in RAW_DUNDERS:
            return value
        # read-only members included: only inert values come back unwrapped
        return gate.wrap(value, f"{gate.path_of(self)}.{name}")

    def __setattr__(self, name: str, value: Any) -> None:
        gate, target = _resolve(self)
        gate.authorize(target)
        setattr(target, name, unwrap(value))

    def __delattr__(self, name: str) -> None:
        gate, target = _resolve(self)
        gate.authorize(target)
        delattr(target, name)

    def __getitem__(self, key: Any) -> Any:
        gate, target = _resolve(self)
        gate.authorize(target)
        return gate.wrap(target[unwrap(key)], f"{gate.path_of(self)}[]")

    def __setitem__(self, key: Any, value: Any) -> None:
        gate, target = _resolve(self)
        gate.authorize(target)
        target[unwrap(key)] = unwrap(value)

    def __delitem__(self, key: Any) -> None:
        gate, target = _resolve(self)
        gate.authorize(target)
        del target[unwrap(key)]

    __iter__ = _gated(iter)
    __next__ = _gated(next)
    __enter__ = _gated(lambda target: target.__enter__())

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> Any:
        gate, target = _resolve(self)
        gate.authorize(target)
        return target.__exit__(exc_type, exc, tb)

    # Observation only: never gated.
    def __repr__(self) -> str:
        return repr(_resolve(self)[1])

    def __str__(self) -> str:
        return str(_resolve(self)[1])

    def __len__(self) -> int:
        return len(_resolve(self)[1])

    def __bool__(self) -> bool:
        return bool(_resolve(self)[1])

    def __hash__(self) -> int:
        return hash(_resolve(self)[1])

    def __eq__(self, other: Any) -> bool:
        return _resolve(self)[1] == unwrap(other)

    def __ne__(self, other: Any) -> bool:
        return _resolve(self)[1] != unwrap(other)

    def __contains__(self, item: Any) -> bool:
        return unwrap(item) in _resolve(self)[1]

    def __dir__(self) -> list[str]:
        return dir(_resolve(self)[1])


_OPERATORS = {
    "lt": operator.lt,
    "le": operator.le,
    "gt": operator.gt,
    "ge": operator.ge,
    "add": operator.add,
    "sub": operator.sub,
    "mul": operator.mul,
    "truediv": operator.truediv,
    "floordiv": operator.floordiv,
    "mod": operator.mod,
    "and": operator.and_,
    "or": operator.or_,
    "xor": operator.xor,
}
_REFLECTED = ("add", "sub", "mul", "truediv", "floordiv", "mod", "and", "or", "xor")

for _name, _op in _OPERATORS.items():
    setattr(GatedObject, f"__{_name}__", _binary(_op, f"__{_name}__"))
for _name in _REFLECTED:
    setattr(GatedObject, f"__r{_name}__", _reflected(_OPERATORS[_name], f"__r{_name}__"))
del _name, _op


class GatedCallable(GatedObject):
    __slots__ = ()

    __call__ = _gated(lambda target, *args, **kwargs: target(*args, **kwargs))

    def __instancecheck__(self, instance: Any) -> bool:
        return isinstance(unwrap(instance), _resolve(self)[1])

    def __subclasscheck__(self, subclass: Any) -> bool:
        return issubclass(unwrap(subclass), _resolve(self)[1])

    def __mro_entries__(self, bases: tuple[Any, ...]) -> tuple[Any, ...]:
        gate, target = _resolve(self)
        gate.authorize(target)
        return (target,)
