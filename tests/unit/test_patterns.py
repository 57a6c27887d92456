"""Tests for the injection pattern catalog."""

import re

from mcp_warden.security import (
    DEFAULT_PATTERNS,
    InjectionPattern,
    InjectionType,
    PatternCatalog,
    default_catalog,
)
from mcp_warden.security.patterns import compile_pattern


def _pattern(name: str = "Test", matchers=(r"\bfoo\b",), category=InjectionType.CONTEXT_POISONING):
    return InjectionPattern(
        name=name,
        description="test pattern",
        matchers=matchers,
        severity="medium",
        category=category,
    )


class TestCompilePattern:
    """Tests for compile_pattern."""

    def test_compiles_case_insensitive(self):
        """String matchers are compiled case-insensitively."""
        compiled = compile_pattern(_pattern())
        assert compiled is not None
        assert compiled.regexes[0].search("FOO bar")

    def test_precompiled_matcher_kept(self):
        """re.Pattern matchers are used as given."""
        regex = re.compile(r"Exact")
        compiled = compile_pattern(_pattern(matchers=(regex,)))
        assert compiled is not None
        assert compiled.regexes == (regex,)

    def test_string_category_accepted(self):
        """Categories may be given by value."""
        compiled = compile_pattern(_pattern(category="role_impersonation"))
        assert compiled is not None
        assert compiled.category == InjectionType.ROLE_IMPERSONATION

    def test_bad_matchers_dropped(self):
        """A bad matcher is dropped while the valid ones are kept."""
        compiled = compile_pattern(_pattern(matchers=("(", r"\bbar\b")))
        assert compiled is not None
        assert len(compiled.regexes) == 1

    def test_unusable_definitions(self):
        """Nameless or matcherless definitions compile to None."""
        assert compile_pattern(_pattern(name="")) is None
        assert compile_pattern(_pattern(matchers=())) is None
        assert compile_pattern("not a pattern") is None  # type: ignore[arg-type]


class TestPatternCatalog:
    """Tests for PatternCatalog."""

    def test_default_catalog(self):
        """The default catalog holds every built-in pattern."""
        catalog = default_catalog()
        assert len(catalog) == len(DEFAULT_PATTERNS)
        assert "Instruction Override" in catalog.names()
        assert "Token Smuggling" in catalog.names()

    def test_default_catalogs_are_independent(self):
        """Changing one catalog leaves fresh ones untouched."""
        first = default_catalog()
        first.remove("Instruction Override")
        assert "Instruction Override" in default_catalog().names()

    def test_add_replaces_same_name(self):
        """Adding a pattern with an existing name replaces it."""
        catalog = PatternCatalog([_pattern()])
        catalog.add(_pattern(matchers=(r"\bbaz\b",)))
        assert len(catalog) == 1
        assert catalog.get("Test").matchers == (r"\bbaz\b",)

    def test_snapshot_is_stable(self):
        """A snapshot taken before a change does not see it."""
        catalog = PatternCatalog([_pattern()])
        before = catalog.snapshot()
        catalog.add(_pattern(name="Other"))
        assert len(before) == 1
        assert len(catalog.snapshot()) == 2

    def test_iteration_yields_definitions(self):
        """Iterating yields InjectionPattern objects in registration order."""
        catalog = PatternCatalog([_pattern("A"), _pattern("B")])
        assert [p.name for p in catalog] == ["A", "B"]

    def test_every_default_pattern_compiles(self):
        """No built-in pattern is silently dropped."""
        for pattern in DEFAULT_PATTERNS:
            compiled = compile_pattern(pattern)
            assert compiled is not None, pattern.name
            assert len(compiled.regexes) == len(pattern.matchers)
