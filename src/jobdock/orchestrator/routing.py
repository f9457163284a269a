"""Free-text prompt routing into typed, executable intents."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

_URL_RE = re.compile(r"https?://[^\s<>\"']+", re.IGNORECASE)
_URL_KEY_RE = re.compile(r"/([A-Za-z][A-Za-z0-9]*-\d+)(?=[/?#]|$)")
# Sentence punctuation that commonly trails a pasted link.
_URL_TRAILING_PUNCTUATION = ".,;:!?)]}"
# Upper-case project part only, so tokens like "utf-8" or "x-1" are not keys.
_BARE_KEY_RE = re.compile(r"(?<![\w/.-])([A-Z][A-Z0-9]*-\d+)(?![\w-])")

_CHANGE_REQUEST = r"(?:prs?|pull[\s-]?requests?|merge[\s-]?requests?|mrs?|change[\s-]?requests?)"
_MISSING_CHANGE_REQUEST_RE = re.compile(
    rf"\b(?:without|with\s+no|no|missing|lacking)\s+(?:an?\s+|any\s+|open\s+)?{_CHANGE_REQUEST}\b",
    re.IGNORECASE,
)
_SCOPE_RE = re.compile(
    r"\b(?:my|mine|tasks?|issues?|tickets?|items?|plans?|stories|bugs?)\b",
    re.IGNORECASE,
)
_QUEUE_TOKEN_RE = re.compile(r"(?<![\w-])([A-Z][A-Z0-9]{1,})(?![\w-])")
_NOT_QUEUES = frozenset({"PR", "PRS", "MR", "MRS", "CR", "CRS", "API", "URL"})

UNRECOGNIZED_HELP = (
    "Unrecognized prompt. Provide issue keys (for example ABC-123) "
    "or ask for your open issues without a pull request."
)


class IntentType(str, Enum):
    """Discriminator for routed intents."""

    EXPLICIT_ISSUE_KEYS = "explicit_issue_keys"
    IMPLICIT_QUERY = "implicit_query"
    UNRECOGNIZED = "unrecognized"


class QueryKind(str, Enum):
    """Tracker queries the worker knows how to resolve."""

    OPEN_WITHOUT_CHANGE_REQUEST = "open_without_change_request"


@dataclass(slots=True, frozen=True)
class ExplicitIssueKeys:
    keys: tuple[str, ...]
    raw: str
    type: IntentType = IntentType.EXPLICIT_ISSUE_KEYS

    def to_json(self) -> dict[str, object]:
        return {"type": self.type.value, "keys": list(self.keys)}


@dataclass(slots=True, frozen=True)
class ImplicitQuery:
    kind: QueryKind
    queue: str | None
    raw: str
    type: IntentType = IntentType.IMPLICIT_QUERY

    def to_json(self) -> dict[str, object]:
        return {"type": self.type.value, "kind": self.kind.value, "queue": self.queue}


@dataclass(slots=True, frozen=True)
class Unrecognized:
    raw: str
    type: IntentType = IntentType.UNRECOGNIZED

    def to_json(self) -> dict[str, object]:
        return {"type": self.type.value}


Intent = ExplicitIssueKeys | ImplicitQuery | Unrecognized


def extract_issue_keys(text: str) -> list[str]:
    """Return upper-cased tracker keys in order of first appearance, without duplicates."""

    found: list[tuple[int, str]] = []
    for url in _URL_RE.finditer(text):
        for match in _URL_KEY_RE.finditer(url.group(0).rstrip(_URL_TRAILING_PUNCTUATION)):
            found.append((url.start() + match.start(1), match.group(1).upper()))
    for match in _BARE_KEY_RE.finditer(text):
        found.append((match.start(1), match.group(1)))

    keys: list[str] = []
    seen: set[str] = set()
    for _, key in sorted(found):
        if key not in seen:
            seen.add(key)
            keys.append(key)
    return keys


def looks_like_open_without_change_request(text: str) -> bool:
    """Detect requests such as "my tasks without PRs" or "CRM issues with no merge request"."""

    if not _MISSING_CHANGE_REQUEST_RE.search(text):
        return False
    return bool(_SCOPE_RE.search(text)) or extract_queue(text) is not None


def extract_queue(text: str) -> str | None:
    for match in _QUEUE_TOKEN_RE.finditer(text):
        token = match.group(1)
        if token not in _NOT_QUEUES:
            return token
    return None


def route(text: str) -> Intent:
    """Classify raw prompt text. Explicit keys win over implicit queries."""

    raw = (text or "").strip()
    keys = extract_issue_keys(raw)
    if keys:
        return ExplicitIssueKeys(keys=tuple(keys), raw=raw)
    if looks_like_open_without_change_request(raw):
        return ImplicitQuery(
            kind=QueryKind.OPEN_WITHOUT_CHANGE_REQUEST,
            queue=extract_queue(raw),
            raw=raw,
        )
    return Unrecognized(raw=raw)
