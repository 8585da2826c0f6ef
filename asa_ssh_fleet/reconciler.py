"""Match logical instance names to runtime (container) identities.

The container runtime names workloads ``<prefix><bare name>`` while the
manager knows instances by directory-derived names, so the two rarely agree
character for character. :func:`best_match` applies an ordered list of rules
and returns the first candidate the highest-ranked rule accepts. Candidates
are tried in the order given, so ties resolve to the earliest-listed one.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

DEFAULT_FLEET_PREFIX = "asa_"

# Known trailing fragments that appear on one side but not the other.
DEFAULT_SUFFIXES: Tuple[str, ...] = (
    "-server",
    "_server",
    "-cluster",
    "_cluster",
    "_wp",
    "-wp",
    "_island",
    "-island",
    "_se",
    "-se",
    "_sa",
    "-sa",
    "_ab",
    "-ab",
    "_ext",
    "-ext",
)


@dataclass(frozen=True)
class MatchRule:
    """One step of the matching policy."""

    name: str
    strip_suffixes: bool
    test: Callable[[str, str], bool]


def _exact(name: str, candidate: str) -> bool:
    return name == candidate


def _contains(name: str, candidate: str) -> bool:
    return name in candidate or candidate in name


# Order matters: earlier rules always outrank later ones.
DEFAULT_RULES: Tuple[MatchRule, ...] = (
    MatchRule("exact", False, _exact),
    MatchRule("substring", False, _contains),
    MatchRule("exact_without_suffix", True, _exact),
    MatchRule("substring_without_suffix", True, _contains),
)


@dataclass(frozen=True)
class Match:
    candidate: str
    rule: str


def strip_prefix(value: str, prefix: str) -> str:
    """Remove *prefix* from *value* case-insensitively, if present."""
    if prefix and value.lower().startswith(prefix.lower()):
        return value[len(prefix):]
    return value


def strip_suffixes(value: str, suffixes: Iterable[str]) -> str:
    """Remove every known suffix from the end of *value*, repeatedly."""
    lowered = value.lower()
    changed = True
    while changed and lowered:
        changed = False
        for suffix in suffixes:
            suffix = suffix.lower()
            if suffix and lowered.endswith(suffix) and len(lowered) > len(suffix):
                lowered = lowered[: -len(suffix)]
                changed = True
    return lowered


def _normalize(value: str, prefix: str) -> str:
    return strip_prefix(value.strip(), prefix).lower()


def best_match(
    name: str,
    candidates: Sequence[str],
    prefix: str = DEFAULT_FLEET_PREFIX,
    suffixes: Sequence[str] = DEFAULT_SUFFIXES,
    rules: Sequence[MatchRule] = DEFAULT_RULES,
) -> Optional[Match]:
    """Return the best runtime identity for *name* or ``None``.

    Both sides lose the fleet *prefix* before comparison. Empty names never
    match anything.
    """

    logical = _normalize(name, prefix)
    if not logical:
        return None
    normalized = [(c, _normalize(c, prefix)) for c in candidates]
    logical_bare = strip_suffixes(logical, suffixes)

    for rule in rules:
        left = logical_bare if rule.strip_suffixes else logical
        if not left:
            continue
        for original, cand in normalized:
            right = strip_suffixes(cand, suffixes) if rule.strip_suffixes else cand
            if right and rule.test(left, right):
                return Match(candidate=original, rule=rule.name)
    return None


def reconcile(
    names: Iterable[str],
    candidates: Sequence[str],
    prefix: str = DEFAULT_FLEET_PREFIX,
    suffixes: Sequence[str] = DEFAULT_SUFFIXES,
) -> Dict[str, Optional[str]]:
    """Map every logical name to at most one candidate (``None`` when not running)."""
    result: Dict[str, Optional[str]] = {}
    for name in names:
        match = best_match(name, candidates, prefix, suffixes)
        result[name] = match.candidate if match else None
    return result


def pick_rows(
    names: Iterable[str],
    rows: Mapping[str, object],
    prefix: str = DEFAULT_FLEET_PREFIX,
    suffixes: Sequence[str] = DEFAULT_SUFFIXES,
) -> Dict[str, object]:
    """Like :func:`reconcile` but returns the row keyed by the matched candidate."""
    keys: List[str] = list(rows)
    matched = reconcile(names, keys, prefix, suffixes)
    return {name: rows[cand] for name, cand in matched.items() if cand is not None}
