from __future__ import annotations
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, List, NamedTuple, Optional, Tuple

from apiwizard.errors import PathSyntaxError

KEY = "key"
INDEX = "index"
WILDCARD = "wildcard"

# 'name', 'name[0]', 'name[*][2]', '[*]' (root array, first segment only)
_SEGMENT_RE = re.compile(r"^(?P<key>[^\[\]]*)(?P<brackets>(?:\[(?:\*|\d+)\])*)$")
_BRACKET_RE = re.compile(r"\[(\*|\d+)\]")


class Token(NamedTuple):
    kind: str
    key: Optional[str] = None
    index: int = 0


@dataclass(frozen=True)
class Resolved:
    """
    Result of evaluating a path against a JSON value.

    kind == "scalar"   → `value` holds the single result (None on a miss).
    kind == "sequence" → `values` holds one entry per wildcard expansion.
    """

    kind: str
    value: Any = None
    values: List[Any] = field(default_factory=list)

    @classmethod
    def scalar(cls, value: Any) -> "Resolved":
        return cls(kind="scalar", value=value)

    @classmethod
    def sequence(cls, values: List[Any]) -> "Resolved":
        return cls(kind="sequence", values=values)

    @property
    def is_sequence(self) -> bool:
        return self.kind == "sequence"


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------

@lru_cache(maxsize=1024)
def _parse(path: str) -> Tuple[Token, ...]:
    if path is None or path.strip() == "":
        return ()

    tokens: List[Token] = []
    for pos, segment in enumerate(path.strip().split(".")):
        match = _SEGMENT_RE.match(segment)
        if not match:
            raise PathSyntaxError(path, f"invalid segment '{segment}'")
        key = match.group("key")
        brackets = match.group("brackets")
        if key:
            tokens.append(Token(KEY, key=key))
        elif pos != 0 or not brackets:
            raise PathSyntaxError(path, "empty segment")
        for raw in _BRACKET_RE.findall(brackets):
            if raw == "*":
                tokens.append(Token(WILDCARD))
            else:
                tokens.append(Token(INDEX, index=int(raw)))
    return tuple(tokens)


def parse_path(path: str) -> List[Token]:
    """
    Parse a dotted/bracketed path ('a.b[*].c[0].d') into tokens.

    Raises:
        PathSyntaxError: on malformed segments or empty segments.
    """
    return list(_parse(path))


def format_path(tokens: List[Token]) -> str:
    out = ""
    for token in tokens:
        if token.kind == KEY:
            out += f".{token.key}" if out else token.key
        elif token.kind == INDEX:
            out += f"[{token.index}]"
        else:
            out += "[*]"
    return out


def wildcard_count(path: str) -> int:
    return sum(1 for t in parse_path(path) if t.kind == WILDCARD)


# ----------------------------------------------------------------------
# Evaluation
# ----------------------------------------------------------------------

def _step(current: Any, token: Token) -> Any:
    if token.kind == KEY:
        # A key applied to an array is never guessed as "first element".
        if isinstance(current, dict):
            return current.get(token.key)
        return None
    if isinstance(current, list) and token.index < len(current):
        return current[token.index]
    return None


def _walk(current: Any, tokens: List[Token]) -> Any:
    for token in tokens:
        if current is None:
            return None
        current = _step(current, token)
    return current


def _expand(current: Any, tokens: List[Token]) -> List[Any]:
    for pos, token in enumerate(tokens):
        if token.kind == WILDCARD:
            if not isinstance(current, list):
                return []
            rest = tokens[pos + 1:]
            out: List[Any] = []
            for element in current:
                out.extend(_expand(element, rest))
            return out
        current = None if current is None else _step(current, token)
    return [current]


def resolve(value: Any, path: str) -> Resolved:
    """
    Evaluate `path` against `value`.

    Paths without [*] always produce a scalar (None on any miss). Paths with
    [*] always produce a sequence: a wildcard over a non-array contributes no
    elements, a miss after a wildcard contributes a None entry so rows stay
    aligned across independently resolved fields.
    """
    tokens = parse_path(path)
    if any(t.kind == WILDCARD for t in tokens):
        return Resolved.sequence(_expand(value, tokens))
    return Resolved.scalar(_walk(value, tokens))


def get_value(value: Any, path: str) -> Any:
    """Scalar convenience: wildcard paths come back as a plain list."""
    resolved = resolve(value, path)
    return resolved.values if resolved.is_sequence else resolved.value


# ----------------------------------------------------------------------
# Writing
# ----------------------------------------------------------------------

def _pad(items: List[Any], index: int) -> None:
    while len(items) <= index:
        items.append(None)


def set_value(target: dict, path: str, value: Any) -> dict:
    """
    Write `value` at `path` inside `target` (mutated and returned).

    Intermediate containers are created on demand: a dict when the next
    token is a key, a list (padded with None) when it is an index.
    Wildcards are not addressable targets.
    """
    tokens = parse_path(path)
    if not tokens:
        raise PathSyntaxError(path, "empty target path")
    if tokens[0].kind != KEY:
        raise PathSyntaxError(path, "target path must start with a key")
    if any(t.kind == WILDCARD for t in tokens):
        raise PathSyntaxError(path, "wildcards are not allowed in target paths")

    current: Any = target
    for token, nxt in zip(tokens, tokens[1:]):
        wants_list = nxt.kind == INDEX
        if token.kind == KEY:
            existing = current.get(token.key)
            if not isinstance(existing, list if wants_list else dict):
                current[token.key] = [] if wants_list else {}
            current = current[token.key]
        else:
            _pad(current, token.index)
            if not isinstance(current[token.index], list if wants_list else dict):
                current[token.index] = [] if wants_list else {}
            current = current[token.index]

    last = tokens[-1]
    if last.kind == KEY:
        current[last.key] = value
    else:
        _pad(current, last.index)
        current[last.index] = value
    return target


# ----------------------------------------------------------------------
# Authoring-time checks
# ----------------------------------------------------------------------

def check_path(sample: Any, path: str) -> List[str]:
    """
    Walk `path` over a sample payload (first element for [*]) and report
    shapes the resolver will not guess at:

      IMPLICIT_ARRAY_TRAVERSAL → a key segment lands on an array
      WILDCARD_ON_NON_ARRAY    → [*] lands on an object/scalar

    Missing keys are not reported; samples are allowed to be sparse.
    """
    problems: List[str] = []
    tokens = parse_path(path)
    current = sample
    for pos, token in enumerate(tokens):
        if current is None:
            break
        prefix = format_path(tokens[:pos]) or "$"
        if token.kind == KEY and isinstance(current, list):
            problems.append(
                f"IMPLICIT_ARRAY_TRAVERSAL:{path} (array at '{prefix}' needs [*] or [n])"
            )
            break
        if token.kind == WILDCARD:
            if not isinstance(current, list):
                problems.append(f"WILDCARD_ON_NON_ARRAY:{path} (no array at '{prefix}')")
                break
            current = current[0] if current else None
        else:
            current = _step(current, token)
    return problems
