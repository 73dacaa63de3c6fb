"""
Incentive Lens — Pool ↔ Efficiency-Issue Matcher
Recovers an action/notes pair for a pool from the AI's efficiency issues
without asking the model again.

The AI writes pool ids loosely ("Kuru - Merkl - MON/USDC", "kuru-merkl-mon-usdc
0.3%"), so ids are compared after normalization, first exactly and then by
(protocol, funding, market) with a containment test on the market part.

Known trade-off: the containment test favours recall. A short market name such
as "mon" will match "mon-usdc" under the same protocol and funding source, and
protocol ids that themselves contain a hyphen ("pancake-swap") only ever match
exactly.
"""
import re
from typing import Iterable, NamedTuple, Optional

from pydantic import ValidationError

from app.core.config import EfficiencyIssue
from app.core.logger import logger

_SEPARATOR_RUN = re.compile(r"[\s-]+")
_FIRST_SENTENCE = re.compile(r"^(.*?)(?:\.|$)", re.DOTALL)


class Recommendation(NamedTuple):
    action: str = ""
    notes: str = ""

    @property
    def matched(self) -> bool:
        return bool(self.action or self.notes)


NO_RECOMMENDATION = Recommendation()


def normalize_pool_id(pool_id: str) -> str:
    """Lowercase, trim, and collapse whitespace/hyphen runs to one hyphen."""
    return _SEPARATOR_RUN.sub("-", (pool_id or "").lower().strip())


def split_pool_id(normalized: str) -> Optional[tuple[str, str, str]]:
    """``protocol-funding-market…`` → parts; the market keeps any further hyphens."""
    first = normalized.find("-")
    if first <= 0:
        return None
    second = normalized.find("-", first + 1)
    if second <= first:
        return None
    return normalized[:first], normalized[first + 1:second], normalized[second + 1:]


def _coerce(issues: Iterable) -> list[EfficiencyIssue]:
    coerced = []
    for item in issues or []:
        if isinstance(item, EfficiencyIssue):
            coerced.append(item)
        elif isinstance(item, dict) and item.get("poolId"):
            try:
                coerced.append(EfficiencyIssue.model_validate(item))
            except ValidationError:
                logger.debug(f"[Matcher] Skipping malformed issue for {str(item.get('poolId'))[:80]}")
    return coerced


def find_issue(pool_id: str, issues: Iterable) -> Optional[EfficiencyIssue]:
    """Return the matching issue, exact normalized id first, else structural."""
    candidates = _coerce(issues)
    if not candidates:
        return None

    wanted = normalize_pool_id(pool_id)
    normalized = [(normalize_pool_id(c.pool_id), c) for c in candidates]

    for key, candidate in normalized:
        if key == wanted:
            return candidate

    parts = split_pool_id(wanted)
    if parts is None:
        return None
    protocol, funding, market = parts
    for key, candidate in normalized:
        other = split_pool_id(key)
        if other is None:
            continue
        c_protocol, c_funding, c_market = other
        if c_protocol != protocol or c_funding != funding:
            continue
        if c_market == market or market in c_market or c_market in market:
            return candidate
    return None


def to_recommendation(issue: Optional[EfficiencyIssue]) -> Recommendation:
    if issue is None or not issue.recommendation:
        return NO_RECOMMENDATION
    text = issue.recommendation
    match = _FIRST_SENTENCE.match(text)
    action = match.group(1).strip() if match else text
    notes = issue.issue or text
    return Recommendation(action=action, notes=notes)


def match_recommendation(pool_id: str, issues: Optional[Iterable]) -> Recommendation:
    """Action/notes for ``pool_id``; empty when nothing matches."""
    return to_recommendation(find_issue(pool_id, issues or []))
