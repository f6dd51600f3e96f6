"""Terminal output classification.

A Session hands every ANSI-stripped chunk of PTY output to an
OutputClassifier, which reports whether the chunk shows the input
prompt (turn finished) and/or a permission question. The default
classifier matches the interactive ``claude`` CLI; other assistants
can plug in their own.
"""
from __future__ import annotations

import abc
import re
from enum import Enum

_ANSI_SGR_RE = re.compile(r"\x1b\[[0-9;]*m")
_ANSI_CSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_ANSI_OSC_RE = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")

_PROMPT_LINE_RE = re.compile(r"^\s*[>❯]\s*\S*\s*$", re.MULTILINE)
_PROMPT_GLYPH_RE = re.compile(r"❯\s*")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


def strip_ansi(text: str) -> str:
    """Remove colour, cursor and title escape sequences."""
    text = _ANSI_OSC_RE.sub("", text)
    text = _ANSI_SGR_RE.sub("", text)
    return _ANSI_CSI_RE.sub("", text)


def extract_response(raw: str) -> str:
    """Turn a finished turn's raw output into display text.

    Drops escape sequences, carriage returns and the echoed input
    prompt lines the CLI redraws around each answer.
    """
    text = strip_ansi(raw).replace("\r", "")
    text = _PROMPT_LINE_RE.sub("", text)
    text = _PROMPT_GLYPH_RE.sub("", text)
    text = _BLANK_RUN_RE.sub("\n\n", text)
    return text.strip()


class OutputSignal(str, Enum):
    READY = "ready"
    PERMISSION = "permission"


class OutputClassifier(abc.ABC):
    """Maps a cleaned output delta to the signals it contains."""

    @abc.abstractmethod
    def classify(self, cleaned: str) -> tuple[OutputSignal, ...]:
        """Return signals in the order the session should apply them."""


class PromptPatternClassifier(OutputClassifier):
    """Marker and regex matching tuned for the ``claude`` CLI."""

    DEFAULT_READY_MARKERS = (">", "❯")
    DEFAULT_PERMISSION_PATTERN = (
        r"Do you want to|Allow|Proceed\?|\[y/N\]|\[Y/n\]"
    )

    def __init__(
        self,
        ready_markers: tuple[str, ...] | None = None,
        permission_pattern: str | None = None,
    ):
        self.ready_markers = ready_markers or self.DEFAULT_READY_MARKERS
        self._permission_re = re.compile(
            permission_pattern or self.DEFAULT_PERMISSION_PATTERN,
            re.IGNORECASE,
        )

    def classify(self, cleaned: str) -> tuple[OutputSignal, ...]:
        signals: list[OutputSignal] = []
        if any(marker in cleaned for marker in self.ready_markers):
            signals.append(OutputSignal.READY)
        if self._permission_re.search(cleaned):
            signals.append(OutputSignal.PERMISSION)
        return tuple(signals)
