"""Unit tests for the position-addressed edit interpreter."""

from __future__ import annotations

import pytest

from vault_agent.models.agent import EditInstruction
from vault_agent.services.edit_interpreter import (
    apply_edit,
    determine_edit_type,
    edit_line_number,
    list_headings,
    sort_edits_bottom_up,
)

DOCUMENT = "Line 1\nLine 2\nLine 3\nLine 4\nLine 5"


def edit(position: str, content: str = "") -> EditInstruction:
    return EditInstruction(file="note.md", position=position, content=content)


class TestStartEnd:
    """Tests for start/end positions."""

    def test_start_prepends_with_blank_line(self):
        """start puts the content first, separated by a blank line."""
        outcome = apply_edit("body", edit("start", "intro"))
        assert outcome.ok
        assert outcome.content == "intro\n\nbody"

    def test_end_appends_with_blank_line(self):
        """end puts the content last, separated by a blank line."""
        outcome = apply_edit("body", edit("end", "outro"))
        assert outcome.content == "body\n\noutro"


class TestAfterHeading:
    """Tests for after:<heading> positions."""

    def test_exact_heading_match(self):
        """Content lands directly below the heading with a blank line."""
        document = "# Title\n## Tasks\n- existing"
        outcome = apply_edit(document, edit("after:## Tasks", "- item"))
        assert outcome.ok
        assert outcome.content == "# Title\n## Tasks\n\n- item\n- existing"
        assert "## Tasks\n\n- item\n" in outcome.content

    def test_heading_as_last_line(self):
        """A heading at the end of the note gets the content appended."""
        outcome = apply_edit("## Notes", edit("after:## Notes", "text"))
        assert outcome.content == "## Notes\n\ntext"

    def test_case_insensitive_fallback(self):
        """A heading present only in different case still matches."""
        document = "## TASKS\nbody"
        outcome = apply_edit(document, edit("after:## tasks", "- item"))
        assert outcome.ok
        assert outcome.content == "## TASKS\n\n- item\nbody"

    def test_exact_match_preferred_over_case_insensitive(self):
        """The exact heading wins over an earlier case-insensitive match."""
        document = "## tasks\nfirst\n## Tasks\nsecond"
        outcome = apply_edit(document, edit("after:## Tasks", "X"))
        assert outcome.content == "## tasks\nfirst\n## Tasks\n\nX\nsecond"

    def test_missing_heading_lists_at_most_five(self):
        """The error names the heading and lists up to 5 real headings."""
        document = "\n".join(f"## H{i}" for i in range(1, 8))
        outcome = apply_edit(document, edit("after:## Missing", "x"))
        assert not outcome.ok
        assert outcome.content is None
        assert '"## Missing"' in outcome.error
        listed = [f'"## H{i}"' for i in range(1, 6)]
        for heading in listed:
            assert heading in outcome.error
        assert '"## H6"' not in outcome.error
        assert "(and 2 more)" in outcome.error

    def test_missing_heading_without_headings(self):
        """A note with no headings says so."""
        outcome = apply_edit("plain text", edit("after:## Tasks", "x"))
        assert "no headings" in outcome.error

    def test_empty_heading_is_rejected(self):
        """after: with nothing after the colon is an error."""
        outcome = apply_edit("## A", edit("after:", "x"))
        assert not outcome.ok


class TestInsert:
    """Tests for insert:N positions."""

    def test_insert_first_line(self):
        """insert:1 puts the content first and keeps the rest unchanged."""
        outcome = apply_edit(DOCUMENT, edit("insert:1", "NEW"))
        lines = outcome.content.split("\n")
        assert lines[0] == "NEW"
        assert lines[1:] == DOCUMENT.split("\n")

    def test_insert_after_last_line(self):
        """insert:line_count+1 appends a new line."""
        outcome = apply_edit(DOCUMENT, edit("insert:6", "NEW"))
        assert outcome.content == DOCUMENT + "\nNEW"

    @pytest.mark.parametrize("line", [0, 7])
    def test_insert_out_of_range(self, line):
        """Out-of-range insert names the valid range."""
        outcome = apply_edit(DOCUMENT, edit(f"insert:{line}", "NEW"))
        assert not outcome.ok
        assert "1-6" in outcome.error

    def test_insert_non_numeric(self):
        outcome = apply_edit(DOCUMENT, edit("insert:abc", "NEW"))
        assert "Invalid line number" in outcome.error

    @pytest.mark.parametrize("target", ["3_0", "+3", "-1", " 2 3"])
    def test_insert_uses_plain_digit_grammar(self, target):
        """Insert accepts only bare digits, like replace and delete."""
        outcome = apply_edit(DOCUMENT, edit(f"insert:{target}", "NEW"))
        assert not outcome.ok
        assert "Invalid line number" in outcome.error


class TestReplace:
    """Tests for replace positions."""

    def test_replace_single_line_scenario(self):
        """replace:2 swaps exactly the second line."""
        outcome = apply_edit("Line 1\nLine 2\nLine 3", edit("replace:2", "X"))
        assert outcome.content == "Line 1\nX\nLine 3"

    @pytest.mark.parametrize("start,end", [(1, 1), (2, 4), (1, 5), (5, 5), (3, 5)])
    def test_replace_range_line_count(self, start, end):
        """The range collapses into one line holding the content."""
        outcome = apply_edit(DOCUMENT, edit(f"replace:{start}-{end}", "X"))
        lines = outcome.content.split("\n")
        assert len(lines) == 5 - (end - start)
        assert lines[start - 1] == "X"

    def test_replace_multiline_content(self):
        outcome = apply_edit(DOCUMENT, edit("replace:2-3", "A\nB\nC"))
        assert outcome.content == "Line 1\nA\nB\nC\nLine 4\nLine 5"

    @pytest.mark.parametrize("position", ["replace:0", "replace:6", "replace:4-2", "replace:3-9"])
    def test_replace_invalid_range(self, position):
        """Range violations are errors naming the line count."""
        outcome = apply_edit(DOCUMENT, edit(position, "X"))
        assert not outcome.ok
        assert "5 lines" in outcome.error

    def test_replace_verbatim_text(self):
        """Non-numeric targets replace the first literal occurrence."""
        outcome = apply_edit("a foo b foo", edit("replace:foo", "bar"))
        assert outcome.content == "a bar b foo"

    def test_replace_verbatim_normalizes_line_endings(self):
        outcome = apply_edit("one\r\ntwo\r\nthree", edit("replace:one\ntwo", "X"))
        assert outcome.content == "X\nthree"

    def test_replace_verbatim_missing(self):
        """Missing text is an error suggesting line numbers."""
        outcome = apply_edit(DOCUMENT, edit("replace:nowhere", "X"))
        assert not outcome.ok
        assert "not found" in outcome.error


class TestDelete:
    """Tests for delete positions."""

    def test_delete_everything(self):
        """delete:1-line_count leaves an empty document."""
        outcome = apply_edit(DOCUMENT, edit("delete:1-5"))
        assert outcome.ok
        assert outcome.content == ""

    def test_delete_single_line(self):
        outcome = apply_edit(DOCUMENT, edit("delete:3"))
        assert outcome.content == "Line 1\nLine 2\nLine 4\nLine 5"

    def test_delete_out_of_range(self):
        outcome = apply_edit(DOCUMENT, edit("delete:2-8"))
        assert not outcome.ok
        assert "5 lines" in outcome.error

    def test_delete_bad_format(self):
        outcome = apply_edit(DOCUMENT, edit("delete:two"))
        assert "Invalid delete format" in outcome.error


class TestUnknownAndDeterminism:
    """Unknown positions and referential transparency."""

    @pytest.mark.parametrize("position", ["middle", "before:## A", "open", ""])
    def test_unknown_position(self, position):
        """Unrecognised forms are named in the error."""
        outcome = apply_edit(DOCUMENT, edit(position, "x"))
        assert not outcome.ok
        assert "Unknown position type" in outcome.error

    @pytest.mark.parametrize(
        "position",
        ["replace:2-3", "after:## Nope", "insert:99", "start", "replace:Line 4"],
    )
    def test_repeated_application_is_identical(self, position):
        """Applying the same instruction twice yields identical outcomes."""
        instruction = edit(position, "content")
        first = apply_edit(DOCUMENT, instruction)
        second = apply_edit(DOCUMENT, instruction)
        assert first == second


class TestHelpers:
    """Tests for classification and ordering helpers."""

    def test_list_headings(self):
        assert list_headings("# A\ntext\n## B  \n#notatag\n") == ["# A", "## B"]

    @pytest.mark.parametrize(
        "position,expected",
        [
            ("start", "add"),
            ("end", "add"),
            ("after:## A", "add"),
            ("insert:3", "add"),
            ("replace:2", "replace"),
            ("replace:some text", "replace"),
            ("delete:1-2", "delete"),
        ],
    )
    def test_determine_edit_type(self, position, expected):
        assert determine_edit_type(position) == expected

    def test_edit_line_number_ordering(self):
        """end sorts last, start first, headings just before end."""
        assert edit_line_number("start") == 0
        assert edit_line_number("replace:7-9") == 7
        assert edit_line_number("insert:4") == 4
        assert edit_line_number("end") > edit_line_number("after:## A") > edit_line_number("delete:500")

    def test_bottom_up_application_keeps_targets(self):
        """Edits sorted bottom-up can be applied in sequence against original numbers."""
        edits = [edit("replace:1", "ONE"), edit("delete:4"), edit("insert:3", "NEW")]
        document = DOCUMENT
        for instruction in sort_edits_bottom_up(edits):
            document = apply_edit(document, instruction).content
        assert document == "ONE\nLine 2\nNEW\nLine 3\nLine 5"
