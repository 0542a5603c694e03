"""
Competition tiers
Buckets a round's total deployment so strategies and the optimizer can
reason about how crowded the pot is.
"""

from enum import Enum
from typing import Sequence

from ore_learner.core.constants import LAMPORTS_PER_SOL

DEFAULT_TIER_THRESHOLDS_SOL = (0.5, 2.0, 10.0, 50.0)


class CompetitionTier(str, Enum):
    VERY_LOW = "very_low"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"

    @property
    def rank(self) -> int:
        return _ORDER.index(self)

    @property
    def ore_multiplier(self) -> float:
        """Relative ORE yield expected at this crowd level"""
        return _ORE_MULTIPLIERS[self]


_ORDER = [
    CompetitionTier.VERY_LOW,
    CompetitionTier.LOW,
    CompetitionTier.MEDIUM,
    CompetitionTier.HIGH,
    CompetitionTier.VERY_HIGH,
]

_ORE_MULTIPLIERS = {
    CompetitionTier.VERY_LOW: 2.0,
    CompetitionTier.LOW: 1.5,
    CompetitionTier.MEDIUM: 1.0,
    CompetitionTier.HIGH: 0.5,
    CompetitionTier.VERY_HIGH: 0.25,
}


def classify_tier(
    total_deployed: int,
    thresholds_sol: Sequence[float] = DEFAULT_TIER_THRESHOLDS_SOL
) -> CompetitionTier:
    """
    Tier for a round total given in lamports

    Args:
        total_deployed: Round total (lamports)
        thresholds_sol: Upper bounds of VERY_LOW, LOW, MEDIUM and HIGH
    """
    total_sol = total_deployed / LAMPORTS_PER_SOL
    for tier, bound in zip(_ORDER, thresholds_sol):
        if total_sol < bound:
            return tier
    return CompetitionTier.VERY_HIGH
