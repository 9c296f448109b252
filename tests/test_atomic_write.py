import tempfile
import unittest
from pathlib import Path

from nativegate.kernel.atomic_write import atomic_write_bytes, atomic_write_text


class AtomicWriteTests(unittest.TestCase):
    def test_atomic_write_replaces_content(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "nested" / "decisions.bin"
            atomic_write_bytes(path, b"one")
            atomic_write_bytes(path, b"two")
            self.assertEqual(path.read_bytes(), b"two")

    def test_atomic_write_removes_temp_files(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            path = root / "state.json"
            atomic_write_text(path, "hello", fsync=False)
            leftovers = list(root.glob(".state.json.*.tmp"))
            self.assertEqual(leftovers, [])
            self.assertEqual(path.read_text(encoding="utf-8"), "hello")


if __name__ == "__main__":
    unittest.main()
