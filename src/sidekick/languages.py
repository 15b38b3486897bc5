"""Per-language knowledge: comment tokens, test frameworks, prompts, member patterns.

Used by the suppression policy (comment tokens), the fallback engine
(member-access completions) and the generation operations (task prompts,
test boilerplate). Unknown languages get generic behaviour everywhere.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

# Comment openers checked when the document language is unknown
GENERIC_COMMENT_TOKENS = ("//", "#", "/*")


@dataclass(frozen=True)
class LanguageConfig:
    id: str
    display_name: str
    extensions: tuple[str, ...]
    line_comment: str
    block_comment: str | None
    test_framework: str
    # Line ending with key -> conservative continuation (member access only)
    member_patterns: dict[str, str] = field(default_factory=dict)

    @property
    def comment_tokens(self) -> tuple[str, ...]:
        if self.block_comment:
            return (self.line_comment, self.block_comment)
        return (self.line_comment,)


LANGUAGES: dict[str, LanguageConfig] = {
    "javascript": LanguageConfig(
        id="javascript",
        display_name="JavaScript",
        extensions=(".js", ".jsx", ".mjs", ".cjs"),
        line_comment="//",
        block_comment="/*",
        test_framework="jest",
        member_patterns={
            "console.": "log()",
            "document.": "getElementById()",
            "Math.": "floor()",
            "JSON.": "stringify()",
            "Object.": "keys()",
            "Promise.": "resolve()",
            "Array.": "isArray()",
        },
    ),
    "typescript": LanguageConfig(
        id="typescript",
        display_name="TypeScript",
        extensions=(".ts", ".tsx"),
        line_comment="//",
        block_comment="/*",
        test_framework="jest",
        member_patterns={
            "console.": "log()",
            "document.": "getElementById()",
            "JSON.": "stringify()",
            "Object.": "keys()",
            "Promise.": "resolve()",
        },
    ),
    "python": LanguageConfig(
        id="python",
        display_name="Python",
        extensions=(".py", ".pyw"),
        line_comment="#",
        block_comment=None,
        test_framework="pytest",
        member_patterns={
            "os.path.": "join()",
            "json.": "dumps()",
            "sys.": "exit()",
        },
    ),
    "java": LanguageConfig(
        id="java",
        display_name="Java",
        extensions=(".java",),
        line_comment="//",
        block_comment="/*",
        test_framework="JUnit",
        member_patterns={
            "System.out.": "println()",
            "System.err.": "println()",
        },
    ),
    "cpp": LanguageConfig(
        id="cpp",
        display_name="C++",
        extensions=(".cpp", ".cc", ".cxx", ".hpp", ".h"),
        line_comment="//",
        block_comment="/*",
        test_framework="GoogleTest",
        member_patterns={"std::": "cout"},
    ),
    "csharp": LanguageConfig(
        id="csharp",
        display_name="C#",
        extensions=(".cs",),
        line_comment="//",
        block_comment="/*",
        test_framework="NUnit",
        member_patterns={"Console.": "WriteLine()"},
    ),
    "go": LanguageConfig(
        id="go",
        display_name="Go",
        extensions=(".go",),
        line_comment="//",
        block_comment="/*",
        test_framework="testing",
        member_patterns={"fmt.": "Println()"},
    ),
    "rust": LanguageConfig(
        id="rust",
        display_name="Rust",
        extensions=(".rs",),
        line_comment="//",
        block_comment="/*",
        test_framework="cargo test",
        member_patterns={"std::": "io", "String::": "new()", "Vec::": "new()"},
    ),
    "ruby": LanguageConfig(
        id="ruby",
        display_name="Ruby",
        extensions=(".rb",),
        line_comment="#",
        block_comment="=begin",
        test_framework="RSpec",
        member_patterns={},
    ),
}


def get_language(language_id: str | None) -> LanguageConfig | None:
    if not language_id:
        return None
    return LANGUAGES.get(language_id.lower())


def language_for_path(path: str | Path) -> str | None:
    """Language id for a file name, by extension."""
    suffix = Path(path).suffix.lower()
    for lang in LANGUAGES.values():
        if suffix in lang.extensions:
            return lang.id
    return None


def comment_tokens_for(language_id: str | None) -> tuple[str, ...]:
    lang = get_language(language_id)
    return lang.comment_tokens if lang else GENERIC_COMMENT_TOKENS


def detect_language(code: str) -> str | None:
    """Guess a language from syntax markers. Crude; only used when the editor didn't say."""
    if "def " in code or ("import " in code and ":" in code and "{" not in code):
        return "python"
    if "fn " in code or "let mut" in code:
        return "rust"
    if "func " in code and "package " in code:
        return "go"
    if "public class" in code or "private " in code:
        return "java"
    if "function" in code or "const " in code or "=>" in code:
        return "javascript"
    return None


def framework_for(language_id: str | None) -> str:
    lang = get_language(language_id)
    return lang.test_framework if lang else "unit tests"


_TASK_PROMPTS = {
    "explain": "Explain this {name} code clearly and concisely:",
    "refactor": "Refactor this {name} code according to the instruction.",
    "test": "Generate comprehensive unit tests with edge cases for this {name} code using {framework}:",
    "fix": "Fix the error in this {name} code.",
}
_TASK_ANSWERS = {
    "explain": "Explanation:",
    "refactor": "Return ONLY the refactored code, no explanations:",
    "test": "Unit tests:",
    "fix": "Provide ONLY the corrected code, no explanations:",
}


def task_prompt(
    task: str,
    code: str,
    *,
    language_id: str | None = None,
    context: str = "",
    instruction: str = "",
) -> str:
    """Build the instruction prompt for a generation task (explain/refactor/test/fix)."""
    if task not in _TASK_PROMPTS:
        raise ValueError(f"Unknown task: {task!r}")
    lang = get_language(language_id)
    name = lang.display_name if lang else "source"
    fence = lang.id if lang else ""

    parts = [_TASK_PROMPTS[task].format(name=name, framework=framework_for(language_id))]
    if instruction:
        parts.append(f"\nInstruction: {instruction}")
    if context:
        parts.append(f"\nContext:\n{context}")
    parts.append(f"\n```{fence}\n{code}\n```\n")
    parts.append(_TASK_ANSWERS[task])
    return "\n".join(parts)


_TEST_BOILERPLATE = {
    "javascript": (("describe", "test("), "// Tests using jest\n"),
    "typescript": (("describe", "test("), "// Tests using jest\n"),
    "python": (("import", "def test_"), "# Tests using pytest\nimport pytest\n"),
    "java": (("import org.junit", "@Test"),
             "// Tests using JUnit\nimport org.junit.Test;\nimport static org.junit.Assert.*;\n"),
    "csharp": (("using NUnit", "[Test]"), "// Tests using NUnit\nusing NUnit.Framework;\n"),
    "go": (("\"testing\"", "func Test"), "// Tests using testing\npackage main\n\nimport \"testing\"\n"),
}


def format_test_boilerplate(language_id: str | None, tests: str) -> str:
    """Prepend framework imports when generated tests came back without any."""
    entry = _TEST_BOILERPLATE.get(language_id or "")
    if entry is None:
        return tests
    markers, header = entry
    if any(marker in tests for marker in markers):
        return tests
    return f"{header}\n{tests}"
