# pricewatch/filters/candidate_scorer.py

"""Weighted multi-factor scoring, cost ordering and labelling."""

import logging
from dataclasses import dataclass
from decimal import Decimal

from pricewatch.config.settings import RecommendationOptions
from pricewatch.models.product import (
    LABEL_BEST_DEAL,
    LABEL_OFFICIAL_STORE,
    LABEL_TRUSTED_SHOP,
    ProductCandidate,
)

logger = logging.getLogger("pricewatch.filters")

REASON_GOOD_PRICE = "Giá tốt"
REASON_TRUSTED_SHOP = "Shop uy tín"
REASON_TITLE_MATCH = "Tên khớp"
REASON_LOW_SHIPPING = "Phí ship thấp"

TRUSTED_RATING_FLOOR = 4.8
OFFICIAL_MARKERS = ("official", "mall")


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def tokenize(text: str | None) -> set[str]:
    """Lower-cased whitespace tokens."""
    return set((text or "").lower().split())


def jaccard(left: str | None, right: str | None) -> float:
    """Intersection over union of the two token sets (0 when either is empty)."""
    a = tokenize(left)
    b = tokenize(right)
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


@dataclass(frozen=True)
class ScoreBreakdown:
    """Per-component scores for one candidate, each in ``[0, 1]``."""

    price: float
    rating: float
    shipping: float
    title: float
    total: float

    def reasons(self) -> list[str]:
        """Names of the components that cleared their display threshold."""
        reasons: list[str] = []
        if self.price >= 0.6:
            reasons.append(REASON_GOOD_PRICE)
        if self.rating >= 0.8:
            reasons.append(REASON_TRUSTED_SHOP)
        if self.title >= 0.3:
            reasons.append(REASON_TITLE_MATCH)
        if self.shipping >= 0.6:
            reasons.append(REASON_LOW_SHIPPING)
        return reasons


class CandidateScorer:
    """Scores, orders and labels an already-filtered candidate set.

    Weights come from :class:`RecommendationOptions` and are used as-is,
    without normalising them to sum to one.
    """

    def __init__(self, options: RecommendationOptions | None = None) -> None:
        self.options = options or RecommendationOptions()
        self.options.validate()

    def breakdown(
        self,
        candidate: ProductCandidate,
        max_total: Decimal,
        max_shipping: Decimal,
        title_hint: str = "",
    ) -> ScoreBreakdown:
        """Compute the component scores of *candidate* against the set maxima."""
        if max_total == 0:
            price = 0.0
        else:
            price = _clamp(1 - float(candidate.total_cost / max_total))
        rating = _clamp(candidate.shop_rating / 5.0)
        if max_shipping == 0:
            shipping = 1.0
        else:
            shipping = _clamp(
                1 - float(candidate.shipping_cost / max_shipping)
            )
        title = _clamp(jaccard(title_hint, candidate.title))

        opts = self.options
        total = (
            price * opts.weight_price
            + rating * opts.weight_rating
            + shipping * opts.weight_shipping
            + title * opts.weight_title_similarity
        )
        return ScoreBreakdown(
            price=price,
            rating=rating,
            shipping=shipping,
            title=title,
            total=_clamp(total),
        )

    def score(
        self,
        candidates: list[ProductCandidate],
        title_hint: str = "",
    ) -> list[tuple[ProductCandidate, ScoreBreakdown]]:
        """Write ``match_score`` / ``fit_reason`` and return the breakdowns."""
        if not candidates:
            return []
        max_total = max(c.total_cost for c in candidates)
        max_shipping = max(c.shipping_cost for c in candidates)

        scored: list[tuple[ProductCandidate, ScoreBreakdown]] = []
        for candidate in candidates:
            parts = self.breakdown(
                candidate, max_total, max_shipping, title_hint
            )
            candidate.match_score = round(parts.total, 4)
            candidate.fit_reason = ", ".join(parts.reasons())
            scored.append((candidate, parts))
        return scored

    @staticmethod
    def order(
        scored: list[tuple[ProductCandidate, ScoreBreakdown]],
    ) -> list[ProductCandidate]:
        """Final order: ascending total cost.

        Candidates are first sorted by score (descending); both sorts are
        stable, so equal totals keep the higher-scored candidate first and
        then fall back to gather order.
        """
        by_score = sorted(scored, key=lambda pair: pair[1].total, reverse=True)
        return [
            candidate
            for candidate, _ in sorted(
                by_score, key=lambda pair: pair[0].total_cost
            )
        ]

    def label(self, candidates: list[ProductCandidate]) -> None:
        """Attach BestDeal / TrustedShop / OfficialStore labels in place."""
        if not candidates:
            return
        best = min(candidates, key=lambda c: c.total_cost)
        best.add_label(LABEL_BEST_DEAL)

        threshold = self.options.trusted_shop_sales_threshold
        for candidate in candidates:
            if (
                candidate.shop_rating > TRUSTED_RATING_FLOOR
                and candidate.sales_volume >= threshold
            ):
                candidate.add_label(LABEL_TRUSTED_SHOP)
            shop = candidate.shop_name.lower()
            if any(marker in shop for marker in OFFICIAL_MARKERS):
                candidate.add_label(LABEL_OFFICIAL_STORE)
