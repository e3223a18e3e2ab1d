from typing import TypedDict

from models import Side


NEUTRAL_MULTIPLIER = 2.0


class Odds(TypedDict):
    yes_multiplier: float
    no_multiplier: float
    yes_share: float


def compute_odds(yes_count: int, no_count: int) -> Odds:
    """
    Pari-mutuel style multipliers from the number of takers on each side.
    The thinner side pays closer to 2x, the crowded side closer to 1x.
    Captured multipliers are binding, so keep this plain float arithmetic.
    """
    if yes_count < 0 or no_count < 0:
        raise ValueError("wager counts must be non-negative")
    total = yes_count + no_count
    if total == 0:
        return {
            "yes_multiplier": NEUTRAL_MULTIPLIER,
            "no_multiplier": NEUTRAL_MULTIPLIER,
            "yes_share": 0.5,
        }

    yes_share = yes_count / total
    no_share = no_count / total
    return {
        "yes_multiplier": 2 - yes_share,
        "no_multiplier": 2 - no_share,
        "yes_share": yes_share,
    }


def multiplier_for(odds: Odds, side: Side) -> float:
    return odds["yes_multiplier"] if side == Side.YES else odds["no_multiplier"]
