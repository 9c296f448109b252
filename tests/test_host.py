from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from nativegate.kernel.errors import AccessDenied, ChannelNotFound, ExecutionTimeout, LoadError
from nativegate.plugin_system.host import NativeHost

from tests._nativegate_support import RecordingConsent, make_config


READER = """
import pathlib

def read(path):
    return pathlib.Path(path).read_text()
"""

CALC = """
def add(a, b):
    return a + b

def fail():
    raise RuntimeError("kaput")
"""


class NativeHostTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.root = Path(self._tmp.name)
        self.config = make_config(self.root / "data")
        self.note = self.root / "note.txt"
        self.note.write_text("hello", encoding="utf-8")

    def _host(self, consent=None) -> NativeHost:
        host = NativeHost(self.config, prompt_user=consent)
        host.start()
        self.addCleanup(host.close)
        return host

    def test_denied_filesystem_access_names_the_category(self) -> None:
        host = self._host(RecordingConsent(False))
        channel = host.register("reader", READER)
        self.assertEqual(channel, "nativegate.reader")
        with self.assertRaises(AccessDenied) as ctx:
            host.invoke(channel, "read", [str(self.note)])
        self.assertIn("Filesystem", str(ctx.exception))
        self.assertIn('"reader"', str(ctx.exception))

    def test_headless_host_fails_closed(self) -> None:
        host = self._host()
        channel = host.register("reader", READER)
        with self.assertRaises(AccessDenied):
            host.invoke(channel, "read", [str(self.note)])
        with self.assertRaises(AccessDenied):
            host.register("runner", "import subprocess\n")
        outcomes = [(r["action"], r["outcome"]) for r in host.audit.records()]
        self.assertIn(("unit.register", "failed"), outcomes)
        self.assertIn(("trust.decision", "fail_closed"), outcomes)
        self.assertEqual(host.store.items(), [])

    def test_identical_source_shares_decisions(self) -> None:
        consent = RecordingConsent(True)
        host = self._host(consent)
        first = host.register("reader", READER)
        second = host.register("reader-copy", READER)
        self.assertEqual(host.invoke(first, "read", [str(self.note)]), "hello")
        self.assertEqual(host.invoke(second, "read", [str(self.note)]), "hello")
        self.assertEqual(consent.keys, ["pathlib"])

    def test_edited_source_prompts_again(self) -> None:
        consent = RecordingConsent(True)
        host = self._host(consent)
        host.invoke(host.register("reader", READER), "read", [str(self.note)])
        host.invoke(host.register("reader", READER + "\n# v2\n"), "read", [str(self.note)])
        self.assertEqual(consent.keys, ["pathlib", "pathlib"])

    def test_decisions_persist_across_hosts(self) -> None:
        host = NativeHost(self.config, prompt_user=RecordingConsent(True))
        with host:
            host.invoke(host.register("reader", READER), "read", [str(self.note)])
        consent = RecordingConsent(False)
        later = self._host(consent)
        self.assertEqual(later.invoke(later.register("reader", READER), "read", [str(self.note)]), "hello")
        self.assertEqual(consent.calls, [])

    def test_reregister_replaces_exports(self) -> None:
        host = self._host()
        channel = host.register("calc", "def a():\n    return 1\n")
        self.assertEqual(host.register("calc", "def b():\n    return 2\n"), channel)
        self.assertEqual(host.exports(channel), ["b"])
        self.assertEqual(host.channels(), [channel])

    def test_failed_register_produces_no_channel(self) -> None:
        host = self._host()
        host.register("broken", CALC)
        with self.assertRaises(LoadError):
            host.register("broken", "raise ValueError('x')\n")
        self.assertEqual(host.channels(), [])
        with self.assertRaises(ValueError):
            host.register("  ", CALC)

    def test_runaway_registration_times_out(self) -> None:
        self.config = make_config(self.root / "data", sandbox={"timeout_s": 0.3})
        host = self._host()
        with self.assertRaises(ExecutionTimeout):
            host.register("spin", "def ready():\n    return 1\nwhile True:\n    pass\n")
        self.assertEqual(host.channels(), [])
        with self.assertRaises(ChannelNotFound):
            host.exports("nativegate.spin")

    def test_unregister(self) -> None:
        host = self._host()
        channel = host.register("calc", CALC)
        self.assertTrue(host.unregister("calc"))
        self.assertFalse(host.unregister("calc"))
        with self.assertRaises(ChannelNotFound):
            host.invoke(channel, "add", [1, 2])

    def test_revoke_forgets_stored_and_cached_approvals(self) -> None:
        consent = RecordingConsent(True)
        host = self._host(consent)
        channel = host.register("reader", READER)
        host.invoke(channel, "read", [str(self.note)])
        code_hash = host.registration(channel).unit.code_hash
        self.assertEqual(host.revoke(code_hash), 1)
        consent.answer = False
        with self.assertRaises(AccessDenied):
            host.invoke(channel, "read", [str(self.note)])
        self.assertIn(("trust.revoke", "ok"), [(r["action"], r["outcome"]) for r in host.audit.records()])

    def test_dispatch(self) -> None:
        host = self._host()
        reply = host.dispatch({"method": "register", "unit_id": "calc", "source": CALC})
        self.assertEqual(reply, {"ok": True, "channel": "nativegate.calc", "exports": ["add", "fail"]})
        self.assertEqual(
            host.dispatch({"method": "invoke", "channel": "nativegate.calc", "export": "add", "args": [2, 3]}),
            {"ok": True, "result": 5},
        )
        self.assertEqual(host.dispatch({"method": "channels"}), {"ok": True, "channels": ["nativegate.calc"]})

        missing = host.dispatch({"method": "invoke", "channel": "nativegate.calc", "export": "mul"})
        self.assertFalse(missing["ok"])
        self.assertEqual(missing["error"]["type"], "ExportNotFound")

        unknown = host.dispatch({"method": "invoke", "channel": "nativegate.nope", "export": "add"})
        self.assertEqual(unknown["error"]["type"], "ChannelNotFound")

        failed = host.dispatch({"method": "invoke", "channel": "nativegate.calc", "export": "fail"})
        self.assertEqual(failed["error"], {"type": "RuntimeError", "message": "kaput", "attribution": ["calc", "fail"]})

        self.assertEqual(host.dispatch({"method": "reboot"})["error"]["type"], "ValueError")
        self.assertEqual(host.dispatch({"method": "invoke"})["error"]["type"], "ValueError")
        self.assertEqual(host.dispatch({"method": "unregister", "unit_id": "calc"}), {"ok": True, "removed": True})


if __name__ == "__main__":
    unittest.main()
