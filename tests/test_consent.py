import io
import unittest

from nativegate.kernel.errors import PromptUnavailable
from nativegate.plugin_system.consent import ConsoleConsent, headless_consent


class _Tty(io.StringIO):
    def isatty(self) -> bool:
        return True


class ConsentTests(unittest.TestCase):
    def test_headless_is_unavailable(self) -> None:
        with self.assertRaises(PromptUnavailable):
            headless_consent("calc", "os", "Access sensitive system info")

    def test_console_requires_terminal(self) -> None:
        consent = ConsoleConsent(stdin=io.StringIO("y\n"), stdout=io.StringIO())
        with self.assertRaises(PromptUnavailable):
            consent("calc", "os", "Access sensitive system info")

    def test_console_answers(self) -> None:
        out = io.StringIO()
        self.assertTrue(ConsoleConsent(stdin=_Tty("yes\n"), stdout=out)("calc", "shutil", "Full read/write"))
        self.assertIn('"calc" wants to use "shutil"', out.getvalue())
        self.assertIn("Full read/write", out.getvalue())
        self.assertFalse(ConsoleConsent(stdin=_Tty("n\n"), stdout=io.StringIO())("calc", "shutil", "d"))

    def test_console_unanswered_is_dismissed(self) -> None:
        self.assertIsNone(ConsoleConsent(stdin=_Tty(""), stdout=io.StringIO())("calc", "os", "d"))
        self.assertIsNone(ConsoleConsent(stdin=_Tty("maybe\nperhaps\nlater\n"), stdout=io.StringIO())("calc", "os", "d"))


if __name__ == "__main__":
    unittest.main()
