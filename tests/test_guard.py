import ast
import unittest

from nativegate.kernel.errors import SandboxViolation
from nativegate.plugin_system.guard import SourceGuard, check_source


class SourceGuardTests(unittest.TestCase):
    def test_clean_source_parses(self) -> None:
        tree = check_source("import json\n\ndef add(a, b):\n    return a + b\n")
        self.assertIsInstance(tree, ast.Module)

    def test_introspection_attributes_are_rejected(self) -> None:
        for source in (
            "x = (1).__class__.__mro__\n",
            "def f():\n    pass\ng = f.__globals__\n",
            "subs = object.__subclasses__()\n",
            "def gen():\n    yield 1\nframe = gen().gi_frame\n",
        ):
            with self.subTest(source=source):
                with self.assertRaises(SandboxViolation):
                    check_source(source)

    def test_import_builtin_name_is_rejected(self) -> None:
        with self.assertRaises(SandboxViolation) as ctx:
            check_source("os = __import__('os')\n", filename="nativegate://calc")
        self.assertIn("nativegate://calc", str(ctx.exception))
        self.assertIn("__import__", str(ctx.exception))

    def test_interrupt_swallowing_handlers_are_rejected(self) -> None:
        for source in (
            "try:\n    pass\nexcept:\n    pass\n",
            "try:\n    pass\nexcept BaseException:\n    pass\n",
            "try:\n    pass\nexcept (ValueError, BaseException):\n    pass\n",
        ):
            with self.subTest(source=source):
                with self.assertRaises(SandboxViolation):
                    check_source(source)
        check_source("try:\n    pass\nexcept Exception:\n    pass\n")

    def test_syntax_error_is_violation(self) -> None:
        with self.assertRaises(SandboxViolation) as ctx:
            check_source("def broken(:\n")
        self.assertIn("syntax error", str(ctx.exception))

    def test_violations_carry_line_numbers(self) -> None:
        guard = SourceGuard()
        guard.visit(ast.parse("a = 1\nb = a.__dict__\nc = b.f_back\n"))
        self.assertEqual([(v.detail, v.lineno) for v in guard.violations], [("__dict__", 2), ("f_back", 3)])


if __name__ == "__main__":
    unittest.main()
