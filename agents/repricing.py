"""
Repricing engine: decides a product's new price from competitor offers.

The rule is "price dumping": undercut the cheapest competitor by a fixed
margin, never going below the seller's floor price nor below zero.
Everything here is pure and deterministic.
"""

import math
from collections.abc import Iterable

from models.enums import DecisionAction, RepricingOutcome
from models.pricing import CompetitorPrice, Decision

DEFAULT_MARGIN = 1.0


def _offer_price(observation: CompetitorPrice) -> float:
    price = observation.price
    if isinstance(price, bool) or not isinstance(price, (int, float)) or math.isnan(price):
        raise ValueError(
            f"competitor price must be a number, got {price!r} from {observation.seller_name}"
        )
    return price


def min_competitor_price(observations: Iterable[CompetitorPrice]) -> float | None:
    """
    Lowest observed competitor price, or None when there are no offers.

    Raises ValueError for an offer whose price is not a number.
    """
    prices = [_offer_price(o) for o in observations]
    return min(prices) if prices else None


def decide(
    current_price: float,
    floor_price: float | None,
    observations: Iterable[CompetitorPrice],
    margin: float = DEFAULT_MARGIN,
) -> Decision:
    """
    Decide whether and to what price a product should be repriced.

    Args:
        current_price: The product's current price (>= 0).
        floor_price: Seller minimum; 0 or None means no floor.
        observations: Competitor offers; may be empty.
        margin: Amount subtracted from the cheapest competitor price.

    Returns:
        A Decision. Floor-guard and already-optimal skips still carry
        ``min_competitor_price`` so the caller can persist it.
    """
    if current_price < 0:
        raise ValueError(f"current_price must be >= 0, got {current_price}")
    if margin < 0:
        raise ValueError(f"margin must be >= 0, got {margin}")
    floor = floor_price or 0.0

    min_price = min_competitor_price(observations)
    if min_price is None:
        return Decision(
            action=DecisionAction.SKIP,
            outcome=RepricingOutcome.SKIPPED_NO_COMPETITORS,
        )

    # A committed price is never negative, floor or not.
    candidate = max(min_price - margin, 0.0)

    if floor > 0 and candidate < floor:
        return Decision(
            action=DecisionAction.SKIP,
            outcome=RepricingOutcome.SKIPPED_FLOOR_GUARD,
            min_competitor_price=min_price,
            candidate_price=candidate,
        )

    if candidate == current_price:
        return Decision(
            action=DecisionAction.SKIP,
            outcome=RepricingOutcome.SKIPPED_ALREADY_OPTIMAL,
            min_competitor_price=min_price,
            candidate_price=candidate,
        )

    return Decision(
        action=DecisionAction.UPDATE,
        outcome=RepricingOutcome.UPDATED,
        new_price=candidate,
        min_competitor_price=min_price,
        candidate_price=candidate,
    )


class RepricingEngine:
    """Binds the configured margin to :func:`decide`."""

    def __init__(self, margin: float = DEFAULT_MARGIN):
        if margin < 0:
            raise ValueError(f"margin must be >= 0, got {margin}")
        self.margin = margin

    def decide(
        self,
        current_price: float,
        floor_price: float | None,
        observations: Iterable[CompetitorPrice],
    ) -> Decision:
        return decide(current_price, floor_price, observations, self.margin)
