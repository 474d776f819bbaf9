# pricewatch/filters/outlier_filter.py

"""Median-based rejection of mis-scraped and unrated listings."""

import logging
from collections.abc import Iterable
from decimal import Decimal

from pricewatch.models.product import ProductCandidate

logger = logging.getLogger("pricewatch.filters")

# Deep discounts down to this share of the median are kept
MEDIAN_FLOOR_RATIO = Decimal("0.3")

TIER_STRICT = "strict"
TIER_POSITIVE_PRICE = "positive_price"
TIER_UNFILTERED = "unfiltered"


def median(values: Iterable[Decimal]) -> Decimal:
    """Standard median; the mean of the two middle values for even counts.

    Returns ``0`` for an empty input.
    """
    ordered = sorted(values)
    if not ordered:
        return Decimal(0)
    middle = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[middle - 1] + ordered[middle]) / 2
    return ordered[middle]


class OutlierFilter:
    """Three-tier filter that relaxes instead of returning nothing."""

    @staticmethod
    def apply(
        candidates: list[ProductCandidate],
    ) -> tuple[list[ProductCandidate], str]:
        """Filter *candidates* and report which tier produced the result.

        1. ``price >= 0.3 * median`` and ``shop_rating > 0``.
        2. ``price > 0``.
        3. Everything that was gathered.
        """
        if not candidates:
            return [], TIER_STRICT

        floor = MEDIAN_FLOOR_RATIO * median(c.price for c in candidates)
        strict = [
            c for c in candidates if c.price >= floor and c.shop_rating > 0
        ]
        if strict:
            dropped = len(candidates) - len(strict)
            if dropped:
                logger.info(
                    "Outlier filter dropped %d of %d candidates "
                    "(price floor %s)",
                    dropped,
                    len(candidates),
                    floor,
                )
            return strict, TIER_STRICT

        logger.warning(
            "Strict outlier filter removed all %d candidates; "
            "relaxing to price > 0",
            len(candidates),
        )
        priced = [c for c in candidates if c.price > 0]
        if priced:
            return priced, TIER_POSITIVE_PRICE

        logger.warning(
            "No candidate has a positive price; using all %d unfiltered",
            len(candidates),
        )
        return list(candidates), TIER_UNFILTERED
