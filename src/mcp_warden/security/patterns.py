"""Injection pattern catalog.

Patterns are compiled once at registration so a scan never pays for
compilation. The catalog publishes an immutable tuple of compiled patterns;
writers swap the tuple under a lock and readers take a reference to whichever
tuple is current, so a scan never observes a half-applied change.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from mcp_warden.logging import get_logger
from mcp_warden.security.models import InjectionType

log = get_logger("mcp_warden.security.patterns")

Matcher = str | re.Pattern[str]


@dataclass(frozen=True)
class InjectionPattern:
    """A named detection rule."""

    name: str
    description: str
    matchers: tuple[Matcher, ...]
    severity: str
    category: InjectionType | str
    mitigation: str = ""


@dataclass(frozen=True)
class CompiledPattern:
    """An :class:`InjectionPattern` with its matchers compiled."""

    pattern: InjectionPattern
    category: InjectionType
    regexes: tuple[re.Pattern[str], ...] = field(default_factory=tuple)


def compile_pattern(pattern: InjectionPattern) -> CompiledPattern | None:
    """Compile *pattern*, dropping malformed matchers.

    Returns ``None`` when the definition is unusable (no name, unknown
    category, or no matcher that compiles).
    """
    if not isinstance(pattern, InjectionPattern) or not pattern.name:
        log.warning("pattern_skipped", reason="malformed_definition", pattern=repr(pattern)[:100])
        return None

    try:
        category = InjectionType(pattern.category)
    except ValueError:
        log.warning("pattern_skipped", reason="unknown_category", pattern=pattern.name)
        return None

    regexes: list[re.Pattern[str]] = []
    for matcher in pattern.matchers:
        if isinstance(matcher, re.Pattern):
            regexes.append(matcher)
            continue
        try:
            regexes.append(re.compile(matcher, re.IGNORECASE))
        except (re.error, TypeError) as e:
            log.warning("matcher_skipped", pattern=pattern.name, matcher=str(matcher)[:100], error=str(e))

    if not regexes:
        log.warning("pattern_skipped", reason="no_valid_matchers", pattern=pattern.name)
        return None

    return CompiledPattern(pattern=pattern, category=category, regexes=tuple(regexes))


class PatternCatalog:
    """Mutable, name-keyed set of injection patterns."""

    def __init__(self, patterns: Iterable[InjectionPattern] = ()) -> None:
        self._write_lock = threading.Lock()
        self._compiled: tuple[CompiledPattern, ...] = ()
        for pattern in patterns:
            self.add(pattern)

    def add(self, pattern: InjectionPattern) -> bool:
        """Register *pattern*, replacing any pattern with the same name.

        Returns:
            False if the definition was malformed and skipped.
        """
        compiled = compile_pattern(pattern)
        if compiled is None:
            return False
        with self._write_lock:
            kept = tuple(c for c in self._compiled if c.pattern.name != pattern.name)
            self._compiled = (*kept, compiled)
        log.debug("pattern_added", pattern=pattern.name, matchers=len(compiled.regexes))
        return True

    def remove(self, name: str) -> bool:
        """Remove the pattern called *name*. Returns False if absent."""
        with self._write_lock:
            kept = tuple(c for c in self._compiled if c.pattern.name != name)
            removed = len(kept) != len(self._compiled)
            self._compiled = kept
        if removed:
            log.debug("pattern_removed", pattern=name)
        return removed

    def get(self, name: str) -> InjectionPattern | None:
        for compiled in self._compiled:
            if compiled.pattern.name == name:
                return compiled.pattern
        return None

    def snapshot(self) -> tuple[CompiledPattern, ...]:
        """Return the current compiled patterns (immutable)."""
        return self._compiled

    def names(self) -> list[str]:
        return [c.pattern.name for c in self._compiled]

    def __len__(self) -> int:
        return len(self._compiled)

    def __iter__(self) -> Iterator[InjectionPattern]:
        return iter([c.pattern for c in self._compiled])


# ---------------------------------------------------------------------------
# Default catalog
# ---------------------------------------------------------------------------

DEFAULT_PATTERNS: tuple[InjectionPattern, ...] = (
    InjectionPattern(
        name="Instruction Override",
        description="Attempts to override previous instructions",
        matchers=(
            r"\b(?:ignore|disregard|forget)\s+(?:all\s+)?(?:(?:the|your|any)\s+)?"
            r"(?:previous|prior|earlier|above)\s+(?:instructions?|prompts?|commands?|rules?)",
            r"\boverride\s+(?:your|all|the|system)\s+(?:instructions?|commands?|settings?)",
        ),
        severity="high",
        category=InjectionType.DIRECT_PROMPT_INJECTION,
        mitigation="Reject or sanitize input",
    ),
    InjectionPattern(
        name="Secret Extraction",
        description="Attempts to extract the system prompt or stored secrets",
        matchers=(
            r"\b(?:reveal|show|print|repeat|output|leak|dump|tell\s+me)\s+(?:me\s+)?"
            r"(?:(?:the|your|all)\s+)?(?:system\s+prompt|hidden\s+instructions?|"
            r"secret(?:\s+key)?s?|api\s+keys?|passwords?|credentials?|access\s+tokens?)\b",
        ),
        severity="high",
        category=InjectionType.DIRECT_PROMPT_INJECTION,
        mitigation="Never echo configuration or credentials; redact output",
    ),
    InjectionPattern(
        name="Jailbreak Mode",
        description="Known jailbreak personas and unlock phrases",
        matchers=(
            r"\bjailbreak(?:ing)?\b",
            r"\bdan\s+mode\b",
            r"\b(?:enable|activate)\s+developer\s+mode\b",
        ),
        severity="critical",
        category=InjectionType.DIRECT_PROMPT_INJECTION,
        mitigation="Block the request and flag the source",
    ),
    InjectionPattern(
        name="Safety Bypass",
        description="Requests to disable safety controls",
        matchers=(
            r"\b(?:disable|bypass|ignore|turn\s+off)\s+(?:all\s+)?(?:your\s+)?"
            r"(?:safety|safeguards?|filters?|restrictions?|guardrails?)\b",
        ),
        severity="high",
        category=InjectionType.DIRECT_PROMPT_INJECTION,
        mitigation="Reject input",
    ),
    InjectionPattern(
        name="Role Impersonation",
        description="Attempts to reassign the model's role or persona",
        matchers=(
            r"\byou\s+are\s+now\s+(?:a|an|in|my)\b",
            r"\bact\s+as\s+(?:if|though|an?\s+unrestricted|a\s+different)\b",
            r"\bpretend\s+(?:you\s+are|to\s+be|that)\b",
            r"(?:^|\n)\s*(?:system|assistant)\s*:\s*\S",
        ),
        severity="medium",
        category=InjectionType.ROLE_IMPERSONATION,
        mitigation="Strip role markers from untrusted content",
    ),
    InjectionPattern(
        name="Context Poisoning",
        description="Attempts to terminate or rewrite the surrounding context",
        matchers=(
            r"\b(?:end|close)\s+(?:of\s+)?(?:system|context|conversation)\b",
            r"\bfrom\s+now\s+on\b.*\b(?:always|never|only)\b",
            r"\bnew\s+(?:instructions?|rules?)\s*:",
        ),
        severity="medium",
        category=InjectionType.CONTEXT_POISONING,
        mitigation="Keep untrusted content inside explicit delimiters",
    ),
    InjectionPattern(
        name="Token Smuggling",
        description="Chat-template control tokens embedded in content",
        matchers=(
            r"<\|im_(?:start|end)\|>",
            r"\[/?INST\]",
            r"<<\s*/?SYS\s*>>",
        ),
        severity="high",
        category=InjectionType.TOKEN_SMUGGLING,
        mitigation="Escape control tokens before templating",
    ),
    InjectionPattern(
        name="Indirect Instruction",
        description="Instructions addressed to the model from tool or document content",
        matchers=(
            r"\bthe\s+(?:ai|assistant|model|agent)\s+(?:should|must|will|needs?\s+to)\b",
            r"\bnote\s+to\s+(?:the\s+)?(?:ai|assistant|model|agent)\b",
            r"<!--[\s\S]*?(?:ignore|instruction|assistant)[\s\S]*?-->",
        ),
        severity="medium",
        category=InjectionType.INDIRECT_PROMPT_INJECTION,
        mitigation="Treat tool output as data, not instructions",
    ),
    InjectionPattern(
        name="Encoding Evasion",
        description="Encoded payloads used to slip past text filters",
        matchers=(
            r"data:(?:text|application)/[^;]+;base64,",
            r"\b(?:base64|rot13|hex)[\s-]*(?:decode|encoded)\b",
        ),
        severity="low",
        category=InjectionType.ENCODING_EVASION,
        mitigation="Decode and rescan before use",
    ),
)


def default_catalog() -> PatternCatalog:
    """Build a fresh catalog holding :data:`DEFAULT_PATTERNS`."""
    return PatternCatalog(DEFAULT_PATTERNS)
