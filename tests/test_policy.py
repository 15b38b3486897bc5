"""Tests for the completion suppression policy."""

from __future__ import annotations

from sidekick.completion.policy import DocumentState, TriggerKind, should_skip, skip_reason

AUTO = TriggerKind.AUTOMATIC
EXPLICIT = TriggerKind.EXPLICIT


def _skip(prefix: str, trigger: TriggerKind = AUTO, language_id: str | None = None) -> bool:
    return should_skip(DocumentState(prefix, language_id), trigger)


# ─── Trailing whitespace ────────────────────────────────────────────────────


class TestTrailingWhitespace:
    def test_automatic_after_space_skips(self):
        assert _skip("const x = ", AUTO) is True

    def test_explicit_after_space_does_not_skip(self):
        assert _skip("const x = ", EXPLICIT) is False

    def test_automatic_after_tab_skips(self):
        assert _skip("return\t", AUTO) is True

    def test_automatic_mid_word_does_not_skip(self):
        assert _skip("const x = fo", AUTO) is False


# ─── Prefix length ──────────────────────────────────────────────────────────


class TestPrefixLength:
    def test_short_prefix_skips_even_when_explicit(self):
        assert _skip("ab", EXPLICIT) is True

    def test_whitespace_does_not_count(self):
        assert _skip("      ab", EXPLICIT) is True

    def test_minimum_length_allowed(self):
        assert _skip("abc", EXPLICIT) is False

    def test_custom_minimum(self):
        state = DocumentState("abcd")
        assert should_skip(state, EXPLICIT, min_prefix_length=5) is True


# ─── Comments and strings ───────────────────────────────────────────────────


class TestCommentsAndStrings:
    def test_line_comment_generic(self):
        assert _skip("x = 1  // note", EXPLICIT) is True

    def test_hash_comment_generic(self):
        assert _skip("x = 1  # note", EXPLICIT) is True

    def test_known_language_uses_its_tokens(self):
        # '#' is not a comment in JavaScript
        assert _skip("const color = x#ff", EXPLICIT, language_id="javascript") is False
        assert _skip("value = 1  # why", EXPLICIT, language_id="python") is True

    def test_unterminated_string(self):
        assert _skip('print("hello', EXPLICIT) is True

    def test_closed_string(self):
        assert _skip('print("hello")', EXPLICIT) is False

    def test_escaped_quote_ignored(self):
        assert _skip('s = "a\\"b"', EXPLICIT) is False

    def test_reason_is_reported(self):
        state = DocumentState("x = 'abc")
        assert skip_reason(state, EXPLICIT) == "inside string literal"
        assert skip_reason(DocumentState("foo(bar"), EXPLICIT) is None
