from __future__ import annotations

from gekto.engine.classifier import (
    OutputClassifier,
    OutputSignal,
    PromptPatternClassifier,
    extract_response,
    strip_ansi,
)


def test_strip_ansi_removes_colour_and_cursor_codes() -> None:
    raw = "\x1b[1;32mDone\x1b[0m\x1b[2K\x1b[?25l ok\x1b]0;title\x07"
    assert strip_ansi(raw) == "Done ok"


def test_ready_marker_detected() -> None:
    classifier = PromptPatternClassifier()
    assert classifier.classify("\n> ") == (OutputSignal.READY,)
    assert classifier.classify("❯ ") == (OutputSignal.READY,)


def test_plain_text_has_no_signal() -> None:
    assert PromptPatternClassifier().classify("Reading files...") == ()


def test_permission_prompt_detected_case_insensitive() -> None:
    classifier = PromptPatternClassifier()
    assert classifier.classify("do you want to create foo.py?") == (
        OutputSignal.PERMISSION,
    )
    assert classifier.classify("Continue? [y/N]") == (OutputSignal.PERMISSION,)
    assert classifier.classify("Proceed?") == (OutputSignal.PERMISSION,)


def test_ready_then_permission_order() -> None:
    signals = PromptPatternClassifier().classify("Allow edit?\n> 1. Yes")
    assert signals == (OutputSignal.READY, OutputSignal.PERMISSION)


def test_custom_markers() -> None:
    classifier = PromptPatternClassifier(
        ready_markers=("$ ",), permission_pattern=r"continue\?"
    )
    assert classifier.classify("> ") == ()
    assert classifier.classify("$ ") == (OutputSignal.READY,)
    assert classifier.classify("Continue?") == (OutputSignal.PERMISSION,)


def test_custom_classifier_subclass() -> None:
    class Always(OutputClassifier):
        def classify(self, cleaned: str) -> tuple[OutputSignal, ...]:
            return (OutputSignal.READY,)

    assert Always().classify("") == (OutputSignal.READY,)


def test_extract_response_drops_prompt_lines() -> None:
    raw = (
        "\x1b[2mhello there\x1b[0m\r\n"
        "Here is the answer.\r\n"
        "\r\n"
        "> \r\n"
        "❯ "
    )
    assert extract_response(raw) == "hello there\nHere is the answer."
