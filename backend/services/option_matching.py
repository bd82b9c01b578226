"""
Resolve a name reported by the live-score feed to a bet option label.

Used only by auto-settlement, so a wrong answer pays the wrong people.
The resolver prefers returning None (and leaving the market for an admin)
over guessing between two plausible options.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from rapidfuzz import fuzz, process

logger = logging.getLogger(__name__)

#: Minimum token_set_ratio for the fuzzy fallback.
FUZZY_CUTOFF = 90


def _norm(value: str) -> str:
    return " ".join(value.lower().split())


def resolve_option_label(reported: Optional[str], labels: Sequence[str]) -> Optional[str]:
    """
    Finds the option label that a feed-reported name refers to.
    Uses a multi-step strategy, stopping at the first unambiguous hit.

    Args:
        reported: Raw winner / top-scorer name from the feed.
        labels: The market's option labels.

    Returns:
        The matching label from ``labels``, or None when nothing matches or
        more than one option matches equally well.
    """
    if not reported or not labels:
        return None

    name = _norm(reported)
    if not name:
        return None

    # Strategy 1: exact match (case- and whitespace-insensitive)
    exact = [label for label in labels if _norm(label) == name]
    if len(exact) == 1:
        return exact[0]
    if len(exact) > 1:
        logger.warning("Ambiguous exact match for '%s': %s", reported, exact)
        return None

    # Strategy 2: substring containment in either direction
    # "Titans" ↔ "Titans XI"
    contained = [
        label for label in labels
        if _norm(label) and (_norm(label) in name or name in _norm(label))
    ]
    if len(contained) == 1:
        return contained[0]
    if len(contained) > 1:
        logger.warning("Ambiguous substring match for '%s': %s", reported, contained)
        return None

    # Strategy 3: fuzzy fallback, accepted only with a clear winner
    scored = process.extract(
        name,
        [_norm(label) for label in labels],
        scorer=fuzz.token_set_ratio,
        limit=2,
    )
    if not scored or scored[0][1] < FUZZY_CUTOFF:
        return None
    if len(scored) > 1 and scored[1][1] >= scored[0][1]:
        logger.warning(
            "Fuzzy tie for '%s': %s / %s (score %.0f)",
            reported, labels[scored[0][2]], labels[scored[1][2]], scored[0][1],
        )
        return None

    matched = labels[scored[0][2]]
    logger.debug("Fuzzy matched '%s' to '%s' with score %.0f", reported, matched, scored[0][1])
    return matched
