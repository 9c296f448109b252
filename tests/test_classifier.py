import unittest

from nativegate.kernel.errors import ConfigError
from nativegate.plugin_system.categories import CategoryTable
from nativegate.plugin_system.classifier import CapabilityClassifier


class ClassifierTests(unittest.TestCase):
    def setUp(self) -> None:
        self.classifier = CapabilityClassifier(CategoryTable.builtin())

    def _name(self, key: str) -> str | None:
        category = self.classifier.classify(key)
        return category.name if category is not None else None

    def test_table_entries(self) -> None:
        self.assertEqual(self._name("subprocess"), "execution")
        self.assertEqual(self._name("shutil"), "filesystem")
        self.assertEqual(self._name("sys"), "internals")
        self.assertEqual(self._name("os"), "environment")
        self.assertEqual(self._name("socket"), "network")
        self.assertEqual(self._name("open"), "filesystem")

    def test_runtime_prefix_and_whitespace_are_stripped(self) -> None:
        self.assertEqual(self._name("python:subprocess"), "execution")
        self.assertEqual(self._name("  ctypes  "), "execution")

    def test_exact_entry_beats_dotted_parent(self) -> None:
        self.assertEqual(self._name("os.path"), "filesystem")
        self.assertEqual(self._name("os.environ"), "environment")
        self.assertEqual(self._name("importlib.util"), "internals")

    def test_path_shaped_keys_are_structural_filesystem(self) -> None:
        for key in ("./helper", "../shared/lib.py", "file:///tmp/x.py", "C:\\tools\\x.py", "/etc/passwd", "\\\\server\\share"):
            request = self.classifier.request(key)
            self.assertIsNotNone(request, key)
            self.assertEqual(request.category.name, "filesystem")
            self.assertTrue(request.structural)
        self.assertFalse(self.classifier.request("shutil").structural)

    def test_unknown_keys_are_unrestricted(self) -> None:
        for key in ("json", "re", "collections.abc", "", "   "):
            self.assertIsNone(self.classifier.classify(key), key)

    def test_private_modules_are_internals(self) -> None:
        self.assertEqual(self._name("_pickle"), "internals")
        self.assertEqual(self._name("_imp"), "internals")
        self.assertEqual(self._name("_io"), "filesystem")
        self.assertEqual(self._name("_socket"), "network")
        self.assertIsNone(self._name("__future__"))

    def test_reflection_and_server_entries(self) -> None:
        self.assertEqual(self._name("operator"), "internals")
        self.assertEqual(self._name("pkgutil"), "internals")
        self.assertEqual(self._name("string.Formatter"), "internals")
        self.assertIsNone(self._name("string"))
        self.assertEqual(self._name("logging.handlers"), "filesystem")
        self.assertEqual(self._name("xmlrpc.server"), "network")
        self.assertEqual(self._name("http.server"), "network")

    def test_category_metadata(self) -> None:
        category = self.classifier.classify("shutil")
        self.assertEqual(category.label, "Filesystem")
        self.assertIn("filesystem", category.description)
        self.assertFalse(category.authorize_on_load)
        self.assertTrue(self.classifier.classify("subprocess").authorize_on_load)
        self.assertTrue(self.classifier.classify("sys").authorize_on_load)

    def test_config_extends_table(self) -> None:
        config = {
            "sandbox": {"runtime_prefixes": ["py:"]},
            "categories": {
                "definitions": {"gpu": {"label": "GPU", "description": "Drive the graphics card"}},
                "extra": {"network": ["requests"], "gpu": ["pycuda"]},
            },
        }
        classifier = CapabilityClassifier.from_config(config)
        self.assertEqual(classifier.classify("py:requests").name, "network")
        self.assertEqual(classifier.classify("requests.sessions").name, "network")
        self.assertEqual(classifier.classify("pycuda").label, "GPU")

    def test_unknown_category_in_extra_is_rejected(self) -> None:
        with self.assertRaises(ConfigError):
            CategoryTable.from_config({"categories": {"extra": {"telepathy": ["mind"]}}})


if __name__ == "__main__":
    unittest.main()
