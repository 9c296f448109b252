"""Consent collaborators.

A collaborator is any callable ``prompt_user(unit_id, resource_key,
category_description) -> bool``. It blocks until the user answers. Raising
PromptUnavailable (or anything else) makes the broker deny.
"""

from __future__ import annotations

import sys
from typing import Callable, TextIO

from nativegate.kernel.errors import PromptUnavailable


PromptUser = Callable[[str, str, str], bool]

_YES = {"y", "yes", "allow"}
_NO = {"n", "no", "deny"}


def headless_consent(unit_id: str, resource_key: str, category_description: str) -> bool:
    raise PromptUnavailable("no consent surface configured")


class ConsoleConsent:
    """Ask on the controlling terminal."""

    def __init__(self, *, stdin: TextIO | None = None, stdout: TextIO | None = None, attempts: int = 3) -> None:
        self._stdin = stdin
        self._stdout = stdout
        self._attempts = max(1, int(attempts))

    def __call__(self, unit_id: str, resource_key: str, category_description: str) -> bool | None:
        stdin = self._stdin or sys.stdin
        stdout = self._stdout or sys.stdout
        if stdin is None or not stdin.isatty():
            raise PromptUnavailable("stdin is not a terminal")
        stdout.write(
            f'\n"{unit_id}" wants to use "{resource_key}".\n'
            f"  {category_description}\n"
        )
        for _ in range(self._attempts):
            stdout.write("Allow? [y/n]: ")
            stdout.flush()
            line = stdin.readline()
            if not line:
                return None
            answer = line.strip().casefold()
            if answer in _YES:
                return True
            if answer in _NO:
                return False
        # Unanswered: treated as dismissed.
        return None
