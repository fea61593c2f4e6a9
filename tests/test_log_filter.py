from __future__ import annotations

import unittest

from stata_run_backend.log_filter import INTERNAL_PATTERNS, filter_internal_lines, is_internal_line

SAMPLE_LOG = "\n".join(
    [
        "{smcl}",
        "{txt}{sf}{ul off}{.-}",
        "      {txt}name:  {res}_mcp_smcl_4f2a",
        "       {txt}log:  {res}/tmp/mcp_smcl_4f2a.smcl",
        "  {txt}log type:  {res}smcl",
        " {txt}opened on:  {res}12 Mar 2025, 10:01:02",
        "",
        "{com}. sysuse auto, clear",
        "{txt}(1978 automobile data)",
        "",
        "{com}. capture _return hold mcp_hold_91",
        "{com}. capture log close _mcp_smcl_4f2a",
        "{res}done",
    ]
)


class FilterInternalLinesTests(unittest.TestCase):
    def test_removes_header_and_bracket_commands(self) -> None:
        filtered = filter_internal_lines(SAMPLE_LOG)
        self.assertEqual(
            filtered,
            "\n".join(
                [
                    "",
                    "{com}. sysuse auto, clear",
                    "{txt}(1978 automobile data)",
                    "",
                    "{res}done",
                ]
            ),
        )

    def test_no_remaining_line_matches_any_pattern(self) -> None:
        for line in filter_internal_lines(SAMPLE_LOG).split("\n"):
            if not line.strip():
                continue
            for pattern in INTERNAL_PATTERNS:
                self.assertIsNone(pattern.search(line), f"{pattern.pattern!r} matched {line!r}")

    def test_is_idempotent(self) -> None:
        once = filter_internal_lines(SAMPLE_LOG)
        self.assertEqual(filter_internal_lines(once), once)

    def test_keeps_blank_and_whitespace_lines(self) -> None:
        text = "first\n\n   \nsecond"
        self.assertEqual(filter_internal_lines(text), text)

    def test_normalizes_crlf(self) -> None:
        self.assertEqual(filter_internal_lines("a\r\nb\r\n"), "a\nb\n")

    def test_matches_tag_sequence_anywhere_on_line(self) -> None:
        self.assertTrue(is_internal_line("  {res}{txt}{sf}{ul off}{.-}"))
        self.assertTrue(is_internal_line(". capture log close _mcp_smcl_abc"))
        self.assertTrue(is_internal_line("{txt}{res}   log:  <unnamed>"))

    def test_keeps_user_lines_that_look_similar(self) -> None:
        self.assertFalse(is_internal_line("{com}. log using results.smcl"))
        self.assertFalse(is_internal_line("{txt}opened the file"))
        self.assertFalse(is_internal_line("{com}. capture log close"))

    def test_empty_input(self) -> None:
        self.assertEqual(filter_internal_lines(""), "")
        self.assertEqual(filter_internal_lines(None), "")


if __name__ == "__main__":
    unittest.main()
