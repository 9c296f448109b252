from __future__ import annotations

import gc
import io
import os
import tempfile
import unittest
from collections import deque
from dataclasses import dataclass
from pathlib import Path

from nativegate.kernel.errors import AccessDenied
from nativegate.plugin_system.broker import TrustBroker
from nativegate.plugin_system.categories import CategoryTable
from nativegate.plugin_system.proxy import CapabilityGate, is_proxy, unwrap
from nativegate.plugin_system.trust_store import TrustStore
from nativegate.plugin_system.unit import CodeUnit

from tests._nativegate_support import RecordingConsent


@dataclass(frozen=True)
class _Point:
    x: int
    y: int


class _Box:
    def __init__(self) -> None:
        self.touched = 0
        self.items: list[int] = []

    @property
    def size(self) -> int:
        return len(self.items)

    def touch(self) -> int:
        self.touched += 1
        return self.touched

    def point(self) -> _Point:
        return _Point(1, 2)


@dataclass(frozen=True)
class _Holder:
    box: _Box


class ProxyTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self.consent = RecordingConsent(True)
        store = TrustStore(root / "trust.bin", root / "root.key", async_flush=False)
        self.broker = TrustBroker(store, self.consent)
        self.unit = CodeUnit.from_source("calc", "x = 1\n")
        self.category = CategoryTable.builtin().category("environment")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _gate(self, key: str = "box") -> CapabilityGate:
        return CapabilityGate(self.unit, key, self.category, self.broker)

    def test_inert_values_pass_through(self) -> None:
        gate = self._gate()
        for value in (None, 3, "text", b"raw", (1, "a"), {"k": [1, 2]}, ValueError):
            self.assertIs(gate.wrap(value), value)
        result = os.stat(self._tmp.name)
        self.assertIs(gate.wrap(result), result)

    def test_proxies_are_identity_stable(self) -> None:
        gate = self._gate()
        box = _Box()
        proxy = gate.wrap(box)
        self.assertTrue(is_proxy(proxy))
        self.assertIs(gate.wrap(box), proxy)
        self.assertIs(proxy.touch, proxy.touch)
        self.assertIs(unwrap(proxy), box)
        self.assertIs(unwrap(box), box)

    def test_call_authorizes_before_touching_target(self) -> None:
        self.consent.answer = False
        box = _Box()
        proxy = self._gate().wrap(box)
        with self.assertRaises(AccessDenied) as ctx:
            proxy.touch()
        self.assertEqual(box.touched, 0)
        self.assertIn('"calc" may not use "box"', str(ctx.exception))
        self.assertIn("Environment", str(ctx.exception))
        self.assertEqual(ctx.exception.resource_key, "box")

    def test_reading_attributes_is_not_gated(self) -> None:
        self.consent.answer = False
        box = _Box()
        proxy = self._gate().wrap(box)
        self.assertEqual(proxy.touched, 0)
        self.assertEqual(proxy.size, 0)
        self.assertEqual(len(proxy.items), 0)
        self.assertEqual(self.consent.calls, [])

    def test_call_result_is_wrapped_and_frozen_fields_are_raw(self) -> None:
        proxy = self._gate().wrap(_Box())
        point = proxy.point()
        self.assertTrue(is_proxy(point))
        self.assertEqual(type(point.x), int)
        self.assertEqual(point.y, 2)
        self.assertEqual(self.consent.keys, ["box"])

    def test_read_only_members_holding_live_objects_stay_gated(self) -> None:
        secret = Path(self._tmp.name) / "secret.txt"
        secret.write_text("s3cret", encoding="utf-8")
        gate = self._gate("pathlib")
        parent = gate.wrap(secret).parent
        self.assertTrue(is_proxy(parent))
        self.assertEqual((parent / "secret.txt").read_text(encoding="utf-8"), "s3cret")
        self.assertEqual(self.consent.keys, ["pathlib"])

        self.broker.store.clear()
        self.broker.forget(self.unit.code_hash)
        self.consent.answer = False
        with self.assertRaises(AccessDenied):
            parent.joinpath("secret.txt")
        self.assertEqual(self.consent.keys, ["pathlib", "pathlib"])

        holder = gate.wrap(_Holder(_Box()))
        self.assertTrue(is_proxy(holder.box))
        with self.assertRaises(AccessDenied):
            holder.box.touch()
        self.assertEqual(unwrap(holder.box).touched, 0)

    def test_receiver_is_unwrapped(self) -> None:
        gate = self._gate("io")
        io_proxy = gate.wrap_root(io)
        buf = io_proxy.BytesIO(b"payload")
        self.assertTrue(is_proxy(buf))
        self.assertEqual(io_proxy.BytesIO.getvalue(buf), b"payload")
        self.assertEqual(io_proxy.BytesIO.getvalue(io.BytesIO(b"raw")), b"raw")

    def test_raw_dunders(self) -> None:
        proxy = self._gate("io").wrap_root(io)
        self.assertEqual(proxy.__name__, "io")
        self.assertEqual(proxy.BytesIO.__name__, "BytesIO")
        self.assertEqual(proxy.__doc__, io.__doc__)

    def test_setattr_is_gated(self) -> None:
        box = _Box()
        proxy = self._gate().wrap(box)
        proxy.touched = 7
        self.assertEqual(box.touched, 7)
        self.consent.answer = False
        self.broker.store.clear()
        self.broker.forget(self.unit.code_hash)
        with self.assertRaises(AccessDenied):
            proxy.touched = 9
        self.assertEqual(box.touched, 7)

    def test_observation_is_not_gated(self) -> None:
        self.consent.answer = False
        proxy = self._gate().wrap(deque([1, 2, 3]))
        self.assertTrue(is_proxy(proxy))
        self.assertEqual(len(proxy), 3)
        self.assertEqual(repr(proxy), "deque([1, 2, 3])")
        self.assertTrue(bool(proxy))
        self.assertIn(2, proxy)
        self.assertEqual(self.consent.calls, [])

    def test_iteration_is_gated(self) -> None:
        self.consent.answer = False
        proxy = self._gate().wrap(iter([1, 2]))
        with self.assertRaises(AccessDenied):
            next(proxy)

    def test_subclassing_a_proxied_class(self) -> None:
        proxy = self._gate().wrap(_Box)

        class Child(proxy):
            pass

        self.assertTrue(issubclass(Child, _Box))
        self.assertIsInstance(Child(), proxy)

    def test_released_proxies_leave_the_arena(self) -> None:
        gate = self._gate()
        box = _Box()
        proxy = gate.wrap(box)
        self.assertEqual(len(gate), 1)
        del proxy
        gc.collect()
        self.assertEqual(len(gate), 0)


if __name__ == "__main__":
    unittest.main()
