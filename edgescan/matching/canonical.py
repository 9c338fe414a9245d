"""
Participant-name canonicalization.

Bookmakers and prediction markets spell teams differently ("LA Lakers",
"Lakers", "Los Angeles Lakers"). Everything is resolved to one official
name before it is slugified, so the pair key computed from bookmaker data
and the one computed from a market listing agree.
"""

import re
from datetime import datetime
from typing import Mapping, Optional

_PUNCT = re.compile(r"[^a-z0-9\s]")
_SPACES = re.compile(r"\s+")
_TITLE = re.compile(r"^(.+?)\s+(?:vs\.?|@|v\.?)\s+(.+?)(?:\s*[-–—]\s*.*)?$", re.IGNORECASE)


def normalize_raw(raw: str) -> str:
    """Lowercase, strip punctuation, collapse whitespace."""
    return _SPACES.sub(" ", _PUNCT.sub("", raw.lower())).strip()


def team_id(canonical_name: str) -> str:
    """"Toronto Maple Leafs" -> "toronto_maple_leafs"."""
    return normalize_raw(canonical_name).replace(" ", "_")


def team_set_key(id_a: str, id_b: str) -> str:
    """Order-independent pair key."""
    first, second = sorted((id_a, id_b))
    return f"{first}|{second}"


def event_key(sport: str, pair_key: str, commence_time: Optional[datetime]) -> str:
    """Natural key for an event: sport, pair and UTC start date."""
    date = commence_time.date().isoformat() if commence_time else "undated"
    return f"{sport}|{pair_key}|{date}"


def index_key(sport: str, pair_key: str) -> str:
    return f"{sport}|{pair_key}"


def _nickname(name: str) -> str:
    words = [w for w in normalize_raw(name).split(" ") if len(w) > 2]
    return words[-1] if words else ""


def resolve(
    name: str,
    sport: str,
    alias_table: Optional[Mapping[str, str]] = None,
    user_overrides: Optional[Mapping[str, str]] = None,
) -> Optional[str]:
    """
    Resolve a free-text participant name to its official name.

    Resolution order:
    1. Exact normalized match against official names
    2. User override (operator corrections, keyed by normalized raw name)
    3. Alias-table key (abbreviations, short names)
    4. Nickname (last significant word) match
    Returns None when nothing matches.
    """
    if not name or not name.strip():
        return None

    raw = normalize_raw(name)
    aliases = alias_table or {}
    officials = list(dict.fromkeys(aliases.values()))

    for official in officials:
        if normalize_raw(official) == raw:
            return official

    if user_overrides:
        override = user_overrides.get(raw)
        if override:
            return override

    for alias, official in aliases.items():
        if normalize_raw(alias) == raw:
            return official

    nickname = _nickname(name)
    if len(nickname) > 2:
        matches = {o for o in officials if _nickname(o) == nickname}
        # Two teams sharing a nickname (e.g. Kings) cannot be resolved this way
        if len(matches) == 1:
            return matches.pop()

    return None


def split_teams(title: str) -> Optional[tuple[str, str]]:
    """Parse "Team A vs Team B" / "Team A @ Team B" into the two names."""
    match = _TITLE.match(title.strip())
    if not match:
        return None
    return match.group(1).strip(), match.group(2).strip()
