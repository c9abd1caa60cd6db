"""Terminal output normalisation for pattern matching."""

from __future__ import annotations

import re
from typing import List, Pattern, Union


# ESC [ n C moves the cursor n columns right; the monitor uses it to pad
# fixed-width register fields.
CURSOR_RIGHT = re.compile(r"\x1b\[(\d*)C")
ANSI_ESCAPE = re.compile(
    r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC ... BEL / ST
    r"|\x1b\[[0-?]*[ -/]*[@-~]"  # CSI
    r"|\x1b[@-Z\\-_]"  # two-byte sequences
)
# An escape sequence cut off at the end of a chunk.
PARTIAL_ESCAPE = re.compile(r"\x1b(?:\[[0-?]*[ -/]*|\][^\x07\x1b]*)?$")

DEFAULT_PROMPT = re.compile(r"> ")


def _spaces(match: "re.Match[str]") -> str:
    count = match.group(1)
    return " " * (int(count) if count else 1)


def sanitize(text: str) -> str:
    """Replace cursor-right moves with spaces and drop other escapes."""
    return ANSI_ESCAPE.sub("", CURSOR_RIGHT.sub(_spaces, text))


class LineAssembler:
    """
    Rebuild sanitized lines from arbitrarily chunked terminal output.

    A line ends after ``\\n`` (dropped; a preceding ``\\r`` is kept) or right
    after the interactive prompt, which the monitor never terminates with a
    newline.  Output that is neither is held until more text arrives.
    """

    def __init__(self, prompt: Union[str, Pattern[str], None] = None) -> None:
        if prompt is None:
            prompt = DEFAULT_PROMPT
        self.prompt: Pattern[str] = re.compile(prompt) if isinstance(prompt, str) else prompt
        self._raw = ""
        self._pending = ""

    @property
    def pending(self) -> str:
        """Sanitized text waiting for a line boundary."""
        return self._pending

    def feed(self, chunk: str) -> List[str]:
        raw = self._raw + chunk
        held = PARTIAL_ESCAPE.search(raw)
        if held:
            self._raw = raw[held.start():]
            raw = raw[: held.start()]
        else:
            self._raw = ""
        self._pending += sanitize(raw)
        return self._split()

    def flush(self) -> List[str]:
        """Return whatever is left as a final line."""
        rest = self._pending + sanitize(self._raw)
        self._pending = ""
        self._raw = ""
        return [rest] if rest else []

    def _split(self) -> List[str]:
        lines: List[str] = []
        text = self._pending
        while text:
            cut = -1
            newline = text.find("\n")
            if newline >= 0:
                cut = newline + 1
            prompt = self.prompt.search(text)
            if prompt and prompt.end() > prompt.start():
                if cut < 0 or prompt.end() < cut:
                    cut = prompt.end()
            if cut < 0:
                break
            line, text = text[:cut], text[cut:]
            if line.endswith("\n"):
                line = line[:-1]
            lines.append(line)
        self._pending = text
        return lines
