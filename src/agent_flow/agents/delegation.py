"""Turn a completed task's free-form output into new task requests.

Two mechanisms feed the result, in this order:

* **Explicit markers** written by the worker::

      DELEGATE_TO: tester - write unit tests for module X
      REQUEST_AGENT: research - compare the two caching libraries
      NEEDS_REVIEW: security - audit the token refresh path
      ITERATE_WITH: coder - tighten the retry loop

  Grammar per segment: ``MARKER ':' CATEGORY '-' DESCRIPTION`` where the
  description runs until the next marker or the end of the text.  Segments
  with a missing or unknown category, a missing ``-`` separator, or an empty
  description are dropped and reported as :class:`ParseError` values.

* **Follow-up rules** keyed by the completed task's category.  Each rule is a
  pure function of ``(category, output)``, so parsing is idempotent.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Optional

from loguru import logger

from ..errors import ParseError
from ..task_engine.model import DelegationKind, TaskCategory, TaskPriority


@dataclass(frozen=True)
class DelegationRequest:
    target_category: TaskCategory
    description: str
    priority: TaskPriority = TaskPriority.MEDIUM
    kind: DelegationKind = DelegationKind.DELEGATION


@dataclass
class ParseResult:
    requests: list[DelegationRequest] = field(default_factory=list)
    errors: list[ParseError] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Explicit marker grammar
# ---------------------------------------------------------------------------

MARKERS: dict[str, DelegationKind] = {
    "DELEGATE_TO": DelegationKind.DELEGATION,
    "REQUEST_AGENT": DelegationKind.REQUEST,
    "NEEDS_REVIEW": DelegationKind.REVIEW,
    "ITERATE_WITH": DelegationKind.ITERATION,
}

# Lexer only: finds where each marker keyword starts and where its payload begins.
_MARKER_RE = re.compile(r"(?<![A-Za-z0-9_])(" + "|".join(MARKERS) + r")[ \t]*:")


@dataclass(frozen=True)
class _MarkerToken:
    keyword: str
    start: int
    payload_start: int


def _tokenize(text: str) -> list[_MarkerToken]:
    return [_MarkerToken(m.group(1), m.start(), m.end()) for m in _MARKER_RE.finditer(text)]


class _State(Enum):
    CATEGORY = "category"
    SEPARATOR = "separator"
    DESCRIPTION = "description"


def _parse_segment(keyword: str, payload: str, position: int) -> DelegationRequest | ParseError:
    """Run the per-segment state machine over *payload*."""
    state = _State.CATEGORY
    i = 0
    n = len(payload)
    category_token = ""

    while i < n and state != _State.DESCRIPTION:
        ch = payload[i]
        if state == _State.CATEGORY:
            if ch.isspace() or ch in "[]":
                if category_token:
                    state = _State.SEPARATOR
                i += 1
                continue
            if ch.isalnum() or ch == "_":
                category_token += ch
                i += 1
                continue
            if not category_token:
                return ParseError(f"{keyword}: missing target category", segment=payload.strip(), position=position)
            state = _State.SEPARATOR
            continue
        # SEPARATOR
        if ch.isspace() or ch == "]":
            i += 1
            continue
        if ch == "-":
            state = _State.DESCRIPTION
            i += 1
            continue
        return ParseError(
            f"{keyword}: expected '-' after category '{category_token}'",
            segment=payload.strip(),
            position=position,
        )

    if not category_token:
        return ParseError(f"{keyword}: missing target category", segment=payload.strip(), position=position)
    if state != _State.DESCRIPTION:
        return ParseError(
            f"{keyword}: expected '-' after category '{category_token}'",
            segment=payload.strip(),
            position=position,
        )

    category = TaskCategory.parse(category_token)
    if category is None:
        return ParseError(
            f"{keyword}: unknown category '{category_token}'",
            segment=payload.strip(),
            position=position,
        )

    description = payload[i:].strip()
    if not description:
        return ParseError(f"{keyword}: empty description", segment=payload.strip(), position=position)

    return DelegationRequest(
        target_category=category,
        description=description,
        priority=TaskPriority.MEDIUM,
        kind=MARKERS[keyword],
    )


def parse_markers(text: str) -> ParseResult:
    """Extract explicit marker requests from *text*, in order of appearance."""
    result = ParseResult()
    if not text:
        return result
    tokens = _tokenize(text)
    for idx, token in enumerate(tokens):
        end = tokens[idx + 1].start if idx + 1 < len(tokens) else len(text)
        parsed = _parse_segment(token.keyword, text[token.payload_start:end], token.start)
        if isinstance(parsed, ParseError):
            result.errors.append(parsed)
        else:
            result.requests.append(parsed)
    return result


# ---------------------------------------------------------------------------
# Follow-up rules
# ---------------------------------------------------------------------------

FollowUpRule = Callable[[TaskCategory, str], list[DelegationRequest]]

_AUTH_RE = re.compile(
    r"\b(authenticat\w*|authoriz\w*|auth|login|passwords?|credentials?|oauth\d*|jwt|session tokens?|api keys?)\b",
    re.I,
)
_SOURCE_EXT = r"(?:py|ts|tsx|js|jsx|go|rs|java|kt|rb|cs|cpp|cc|c|h|swift|php)"
_CREATED_FILE_RE = re.compile(
    r"\b(?:created|wrote|added|generated)\s+(?:a\s+|the\s+)?(?:new\s+)?(?:source\s+)?(?:files?|modules?)?\s*[:`'\"]?\s*"
    r"([\w./\\-]+\." + _SOURCE_EXT + r")\b",
    re.I,
)
_DATA_MODEL_RE = re.compile(r"\b(database|schema|migrations?|sql)\b", re.I)
_FAILING_TESTS_RE = re.compile(r"(\bFAILED\b|\btests? fail(?:ed|ing|s)?\b|\bfailing tests?\b|\bAssertionError\b)", re.I)


def security_review_for_auth(category: TaskCategory, output: str) -> list[DelegationRequest]:
    if not _AUTH_RE.search(output):
        return []
    return [
        DelegationRequest(
            target_category=TaskCategory.SECURITY,
            description="Review the authentication and credential handling introduced by the "
            f"{category.value} task for vulnerabilities",
            priority=TaskPriority.HIGH,
            kind=DelegationKind.FOLLOW_UP,
        )
    ]


def tests_for_created_files(category: TaskCategory, output: str) -> list[DelegationRequest]:
    files = list(dict.fromkeys(m.group(1) for m in _CREATED_FILE_RE.finditer(output)))
    if not files:
        return []
    return [
        DelegationRequest(
            target_category=TaskCategory.TESTER,
            description="Write tests covering the newly created source files: " + ", ".join(files),
            priority=TaskPriority.MEDIUM,
            kind=DelegationKind.FOLLOW_UP,
        )
    ]


def data_model_for_architecture(category: TaskCategory, output: str) -> list[DelegationRequest]:
    if not _DATA_MODEL_RE.search(output):
        return []
    return [
        DelegationRequest(
            target_category=TaskCategory.DATABASE,
            description="Design the database schema and migrations described in the architecture",
            priority=TaskPriority.MEDIUM,
            kind=DelegationKind.FOLLOW_UP,
        )
    ]


def debugging_for_failing_tests(category: TaskCategory, output: str) -> list[DelegationRequest]:
    if not _FAILING_TESTS_RE.search(output):
        return []
    return [
        DelegationRequest(
            target_category=TaskCategory.DEBUGGER,
            description="Diagnose and fix the failing tests reported by the tester",
            priority=TaskPriority.HIGH,
            kind=DelegationKind.FOLLOW_UP,
        )
    ]


class FollowUpRuleSet:
    """Category -> ordered list of follow-up rules."""

    def __init__(self) -> None:
        self._rules: dict[TaskCategory, list[FollowUpRule]] = {}

    @classmethod
    def default(cls) -> "FollowUpRuleSet":
        rules = cls()
        rules.register(TaskCategory.CODER, security_review_for_auth)
        rules.register(TaskCategory.CODER, tests_for_created_files)
        rules.register(TaskCategory.INTEGRATOR, tests_for_created_files)
        rules.register(TaskCategory.ARCHITECT, data_model_for_architecture)
        rules.register(TaskCategory.TESTER, debugging_for_failing_tests)
        return rules

    def register(self, category: TaskCategory | str, rule: FollowUpRule) -> None:
        cat = TaskCategory.parse(category)
        if cat is None:
            raise ValueError(f"Unknown category '{category}'")
        self._rules.setdefault(cat, []).append(rule)

    def rules_for(self, category: TaskCategory) -> list[FollowUpRule]:
        return list(self._rules.get(category, []))

    def apply(self, category: TaskCategory, output: str) -> list[DelegationRequest]:
        out: list[DelegationRequest] = []
        for rule in self._rules.get(category, []):
            out.extend(rule(category, output))
        return out


# ---------------------------------------------------------------------------
# Parser facade
# ---------------------------------------------------------------------------

class DelegationParser:
    """Explicit markers first, then the category's follow-up rules, de-duplicated."""

    def __init__(self, rules: Optional[FollowUpRuleSet] = None, *, follow_ups: bool = True) -> None:
        self.rules = rules if rules is not None else FollowUpRuleSet.default()
        self.follow_ups = follow_ups

    def parse_with_errors(self, text: str, category: TaskCategory | str) -> ParseResult:
        cat = TaskCategory.parse(category)
        result = parse_markers(text or "")
        for err in result.errors:
            logger.debug("Dropped delegation segment at {}: {}", err.position, err.message)

        if cat is not None and self.follow_ups:
            result.requests.extend(self.rules.apply(cat, text or ""))

        result.requests = _dedupe(result.requests)
        return result

    def parse(self, text: str, category: TaskCategory | str) -> list[DelegationRequest]:
        return self.parse_with_errors(text, category).requests


def _dedupe(requests: Iterable[DelegationRequest]) -> list[DelegationRequest]:
    seen: set[tuple[TaskCategory, str]] = set()
    out: list[DelegationRequest] = []
    for req in requests:
        key = (req.target_category, req.description)
        if key in seen:
            continue
        seen.add(key)
        out.append(req)
    return out
