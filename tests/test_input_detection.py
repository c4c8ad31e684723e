"""Interactive-prompt detection and ANSI stripping."""

from __future__ import annotations

import pytest

from basebrain.engine.input_detection import (
    detect_input_prompt,
    split_partial_escape,
    strip_ansi,
    tail_lines,
)


def test_yes_no_prompt_requires_input():
    output = "Copying templates...\nOverwrite file? [y/n]"
    assert detect_input_prompt(output) == "Overwrite file? [y/n]"


def test_error_tail_is_not_a_prompt():
    assert detect_input_prompt("Running step 2\nError: command failed") is None


def test_exclusion_vetoes_question_mark():
    # "failed" in the window wins over the trailing '?'.
    output = "build failed\nRetry?"
    assert detect_input_prompt(output) is None


@pytest.mark.parametrize(
    "tail",
    [
        "Password:",
        "Enter passphrase for key '/home/u/.ssh/id_rsa':",
        "Press ENTER to continue",
        "Proceed (yes/no)",
        "Pick a framework (Use arrow keys)",
        "Project name?",
    ],
)
def test_inclusion_patterns(tail):
    assert detect_input_prompt(f"setup\n{tail}") is not None


def test_only_recent_lines_are_scanned():
    old_question = "Continue?"
    output = old_question + "\n" + "\n".join(f"line {i}" for i in range(20))
    assert detect_input_prompt(output, scan_lines=10) is None


def test_trailing_blank_lines_ignored():
    assert detect_input_prompt("Install now? [Y/n]\n\n\n") == "Install now? [Y/n]"


def test_plain_output_is_not_a_prompt():
    assert detect_input_prompt("added 120 packages in 3s\n") is None
    assert detect_input_prompt("") is None


def test_strip_ansi_removes_colors_and_titles():
    raw = "\x1b[31mred\x1b[0m \x1b]0;title\x07text\r\nnext\x1b[2K"
    assert strip_ansi(raw) == "red text\nnext"


def test_strip_ansi_drops_carriage_returns_and_controls():
    assert strip_ansi("50%\r100%\x08\n") == "50%100%\n"


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("plain", ("plain", "")),
        ("red\x1b", ("red", "\x1b")),
        ("red\x1b[3", ("red", "\x1b[3")),
        ("\x1b[31mred\x1b[0", ("\x1b[31mred", "\x1b[0")),
        ("title\x1b]0;my term", ("title", "\x1b]0;my term")),
        ("done\x1b[0m", ("done\x1b[0m", "")),
        ("done\x1b]0;t\x07", ("done\x1b]0;t\x07", "")),
    ],
)
def test_split_partial_escape(text, expected):
    assert split_partial_escape(text) == expected


def test_escape_split_across_chunks_is_fully_stripped():
    first, pending = split_partial_escape("ok \x1b[3")
    second, pending = split_partial_escape(pending + "1mred\x1b[0m\n")
    assert pending == ""
    assert strip_ansi(first) + strip_ansi(second) == "ok red\n"


def test_overlong_partial_escape_is_flushed():
    text = "\x1b]" + "x" * 5000
    assert split_partial_escape(text) == (text, "")


def test_tail_lines():
    text = "a\nb\nc\nd"
    assert tail_lines(text, 2) == "c\nd"
    assert tail_lines(text, 10) == text
    assert tail_lines(text, 3, start=4) == "c\nd"
    assert tail_lines("x\ny\n", 1) == ""
    assert tail_lines("x\ny\n", 2) == "y\n"


def test_tail_lines_matches_full_scan():
    output = "".join(f"line {i}\n" for i in range(500)) + "Continue? [y/n] "
    tail = tail_lines(output, 10)
    assert tail.count("\n") == 9
    assert detect_input_prompt(tail, 10) == detect_input_prompt(output, 10)
