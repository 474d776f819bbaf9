# pricewatch/services/multi_platform_search.py

"""Keyword search across marketplaces with filtering and sorting."""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from pricewatch.config.settings import Settings
from pricewatch.filters.deduplicator import CandidateDeduplicator
from pricewatch.models.product import ProductCandidate, ProductQuery
from pricewatch.scrapers.base_scraper import BaseScraper

logger = logging.getLogger("pricewatch.search")

SORT_KEYS = ("price_asc", "price_desc", "rating", "sold", "discount")
_GROUP_KEY_LENGTH = 50
_NON_WORD_RE = re.compile(r"[^\w\s]")


@dataclass
class SearchFilters:
    """Optional post-search constraints; ``None`` disables a filter."""

    min_price: Decimal | None = None
    max_price: Decimal | None = None
    min_rating: float | None = None
    free_shipping: bool | None = None
    official_store: bool | None = None


@dataclass
class MultiPlatformSearchRequest:
    """A keyword search over some or all registered platforms."""

    keyword: str
    platforms: list[str] | None = None  # None = every registered scraper
    limit: int = 20
    offset: int = 0
    filters: SearchFilters | None = None
    sort_by: str | None = None  # None = relevance (platform order)


@dataclass
class SearchMetadata:
    """Timing and failure details of one search."""

    search_duration_ms: float = 0.0
    platform_durations: dict[str, float] = field(
        default_factory=lambda: dict[str, float]()
    )
    platform_errors: dict[str, str] = field(
        default_factory=lambda: dict[str, str]()
    )
    deduplicated_count: int = 0
    search_time: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class MultiPlatformSearchResponse:
    """Combined, filtered and sorted candidates plus per-platform counts."""

    keyword: str
    total_results: int = 0
    products: list[ProductCandidate] = field(
        default_factory=lambda: list[ProductCandidate]()
    )
    results_by_platform: dict[str, int] = field(
        default_factory=lambda: dict[str, int]()
    )
    metadata: SearchMetadata = field(default_factory=SearchMetadata)


@dataclass
class PlatformPrice:
    """One platform's offer inside a :class:`PriceComparison`."""

    platform: str
    price: Decimal
    shipping_cost: Decimal
    total_cost: Decimal
    rating: float
    product_url: str
    shop_name: str


@dataclass
class PriceComparison:
    """The same product name offered more than once."""

    product_name: str
    prices: list[PlatformPrice]
    lowest_price: Decimal
    highest_price: Decimal
    average_price: Decimal
    best_deal_platform: str


def normalise_product_name(name: str) -> str:
    """Grouping key: lowercase words, punctuation removed, first 50 chars."""
    cleaned = " ".join(_NON_WORD_RE.sub(" ", name.lower()).split())
    return cleaned[:_GROUP_KEY_LENGTH]


def is_official_store(candidate: ProductCandidate) -> bool:
    if (candidate.seller_type or "").lower() == "official":
        return True
    shop = candidate.shop_name.lower()
    return "official" in shop or "mall" in shop


class MultiPlatformSearchService:
    """Runs one keyword across the selected scrapers concurrently."""

    def __init__(self, scrapers: list[BaseScraper]) -> None:
        self.scrapers = list(scrapers)

    def _select(self, platforms: list[str] | None) -> list[BaseScraper]:
        if platforms is None:
            return list(self.scrapers)
        wanted = {p.lower() for p in platforms}
        return [s for s in self.scrapers if s.platform in wanted]

    async def _search_one(
        self,
        scraper: BaseScraper,
        query: ProductQuery,
        response: MultiPlatformSearchResponse,
    ) -> list[ProductCandidate]:
        start = time.monotonic()
        try:
            result = await scraper.search_by_query(query)
        except Exception as exc:
            logger.error(
                "Search on %s raised unexpectedly",
                scraper.platform,
                exc_info=True,
            )
            response.metadata.platform_errors[scraper.platform] = str(exc)
            return []
        finally:
            response.metadata.platform_durations[scraper.platform] = (
                time.monotonic() - start
            ) * 1000
        if result.error:
            response.metadata.platform_errors[scraper.platform] = (
                result.error
            )
        logger.info(
            "Found %d products on %s",
            len(result.candidates),
            scraper.platform,
        )
        return result.candidates

    @staticmethod
    def apply_filters(
        candidates: list[ProductCandidate],
        filters: SearchFilters | None,
    ) -> list[ProductCandidate]:
        if filters is None:
            return candidates
        kept = candidates
        if filters.min_price is not None:
            kept = [c for c in kept if c.price >= filters.min_price]
        if filters.max_price is not None:
            kept = [c for c in kept if c.price <= filters.max_price]
        if filters.min_rating is not None:
            kept = [c for c in kept if c.shop_rating >= filters.min_rating]
        if filters.free_shipping:
            kept = [c for c in kept if c.is_free_ship]
        if filters.official_store:
            kept = [c for c in kept if is_official_store(c)]
        return kept

    @staticmethod
    def apply_sorting(
        candidates: list[ProductCandidate],
        sort_by: str | None,
    ) -> list[ProductCandidate]:
        """Stable sort by *sort_by*; unknown or empty keeps relevance order."""
        key = (sort_by or "").lower()
        if key == "price_asc":
            return sorted(candidates, key=lambda c: c.price)
        if key == "price_desc":
            return sorted(candidates, key=lambda c: c.price, reverse=True)
        if key == "rating":
            return sorted(
                candidates, key=lambda c: c.shop_rating, reverse=True
            )
        if key == "sold":
            return sorted(
                candidates, key=lambda c: c.sold_count or 0, reverse=True
            )
        if key == "discount":
            return sorted(
                candidates,
                key=lambda c: c.discount_percent or 0.0,
                reverse=True,
            )
        return list(candidates)

    async def search(
        self, request: MultiPlatformSearchRequest,
    ) -> MultiPlatformSearchResponse:
        """Search, merge, deduplicate, filter, sort and page.

        Every platform is asked for its full result cap so that
        ``total_results`` counts the whole merged set and any page inside
        it can be served.
        """
        start = time.monotonic()
        response = MultiPlatformSearchResponse(keyword=request.keyword)
        keyword = request.keyword.strip()
        if not keyword:
            return response

        scrapers = self._select(request.platforms)
        if not scrapers:
            logger.warning(
                "No scrapers found for platforms: %s", request.platforms
            )
            return response

        offset = max(request.offset, 0)
        limit = max(request.limit, 0)
        query = ProductQuery(
            platform="multi",
            title_hint=keyword,
            metadata={"limit": str(Settings.MAX_SEARCH_RESULTS)},
        )
        batches = await asyncio.gather(
            *(self._search_one(s, query, response) for s in scrapers)
        )

        merged: list[ProductCandidate] = []
        for scraper, batch in zip(scrapers, batches, strict=True):
            response.results_by_platform[scraper.platform] = len(batch)
            merged.extend(batch)

        merged, removed = CandidateDeduplicator.deduplicate(merged)
        response.metadata.deduplicated_count = removed
        merged = self.apply_filters(merged, request.filters)
        merged = self.apply_sorting(merged, request.sort_by)

        response.total_results = len(merged)
        response.products = merged[offset:offset + limit]
        response.metadata.search_duration_ms = (
            time.monotonic() - start
        ) * 1000
        logger.info(
            "Multi-platform search for '%s': %d products from %d "
            "platforms in %.0fms",
            keyword,
            response.total_results,
            len(response.results_by_platform),
            response.metadata.search_duration_ms,
        )
        return response

    async def compare_prices(
        self, keyword: str, limit: int = 10,
    ) -> list[PriceComparison]:
        """Group search hits by normalised name; keep groups seen twice+."""
        response = await self.search(
            MultiPlatformSearchRequest(keyword=keyword, limit=limit)
        )
        groups: dict[str, list[ProductCandidate]] = {}
        for candidate in response.products:
            key = normalise_product_name(candidate.title)
            groups.setdefault(key, []).append(candidate)

        comparisons: list[PriceComparison] = []
        for members in groups.values():
            if len(members) < 2:
                continue
            prices = [
                PlatformPrice(
                    platform=c.platform,
                    price=c.price,
                    shipping_cost=c.shipping_cost,
                    total_cost=c.total_cost,
                    rating=c.shop_rating,
                    product_url=c.product_url,
                    shop_name=c.shop_name,
                )
                for c in members
            ]
            totals = [p.total_cost for p in prices]
            best = min(prices, key=lambda p: p.total_cost)
            comparisons.append(
                PriceComparison(
                    product_name=members[0].title,
                    prices=prices,
                    lowest_price=min(totals),
                    highest_price=max(totals),
                    average_price=sum(totals, Decimal(0)) / len(totals),
                    best_deal_platform=best.platform,
                )
            )
        return comparisons


def comparison_to_dict(comparison: PriceComparison) -> dict[str, Any]:
    """Serialise for JSON output."""
    return {
        "product_name": comparison.product_name,
        "lowest_price": str(comparison.lowest_price),
        "highest_price": str(comparison.highest_price),
        "average_price": str(comparison.average_price),
        "best_deal_platform": comparison.best_deal_platform,
        "prices": [
            {
                "platform": p.platform,
                "price": str(p.price),
                "shipping_cost": str(p.shipping_cost),
                "total_cost": str(p.total_cost),
                "rating": p.rating,
                "product_url": p.product_url,
                "shop_name": p.shop_name,
            }
            for p in comparison.prices
        ],
    }
