"""Tests for command-line parsing."""

from __future__ import annotations

import pytest

from sidekick.__main__ import build_parser


class TestParser:
    def test_complete_location(self):
        args = build_parser().parse_args(["--complete", "app.py:3:7"])
        assert args.complete == "app.py:3:7"
        assert args.mcp is False

    def test_refactor_with_instruction(self):
        args = build_parser().parse_args(["--refactor", "a.py", "--instruction", "use a dict"])
        assert args.refactor == "a.py"
        assert args.instruction == "use a dict"

    def test_modes_are_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--mcp", "--status"])

    def test_model_override(self):
        args = build_parser().parse_args(["--list-models", "-m", "/models/x.gguf"])
        assert args.list_models is True
        assert args.model == "/models/x.gguf"
