# pricewatch/services/compare_service.py

"""Find the same product on every marketplace starting from one URL."""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal

from pricewatch.models.product import ProductCandidate, ProductQuery
from pricewatch.scrapers.base_scraper import BaseScraper
from pricewatch.services.link_processor import LinkProcessor

logger = logging.getLogger("pricewatch.compare")

REASON_SIMILAR_TITLE = "Tựa đề tương đồng"
REASON_OFFICIAL_SHOP = "Shop chính hãng/LazMall"
SIMILAR_TITLE_THRESHOLD = 0.6

_SEPARATOR_RE = re.compile(r"[-_\s]+")


class ComparisonError(Exception):
    """The source product could not be resolved for comparison."""


@dataclass
class ComparedCandidate:
    """A search hit scored against the source product's title."""

    candidate: ProductCandidate
    similarity: float
    reasons: list[str] = field(default_factory=lambda: list[str]())

    @property
    def total_cost(self) -> Decimal:
        return self.candidate.total_cost


@dataclass
class CompareResult:
    """Source product, scored alternatives and the best match."""

    source: ProductCandidate
    source_url: str
    candidates: list[ComparedCandidate] = field(
        default_factory=lambda: list[ComparedCandidate]()
    )
    best: ComparedCandidate | None = None
    warnings: list[str] = field(default_factory=lambda: list[str]())


def title_tokens(text: str | None) -> set[str]:
    """Lower-cased words split on ``-``/``_``/spaces.

    Single characters and tokens starting with a digit (sizes,
    capacities, model numbers) are ignored.
    """
    if not text:
        return set()
    return {
        token
        for token in _SEPARATOR_RE.split(text.lower())
        if len(token) > 1 and not token[0].isdigit()
    }


def title_similarity(left: str | None, right: str | None) -> float:
    a = title_tokens(left)
    b = title_tokens(right)
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def match_reasons(candidate: ProductCandidate, similarity: float) -> list[str]:
    reasons: list[str] = []
    if similarity >= SIMILAR_TITLE_THRESHOLD:
        reasons.append(REASON_SIMILAR_TITLE)
    text = f"{candidate.title} {candidate.shop_name}".lower()
    if "lazmall" in text or "mall" in candidate.shop_name.lower():
        reasons.append(REASON_OFFICIAL_SHOP)
    return reasons


class CompareService:
    """URL → source product → cross-platform title search → best match."""

    def __init__(self, scrapers: list[BaseScraper]) -> None:
        self.scrapers = list(scrapers)

    def _scraper_for(self, platform: str) -> BaseScraper | None:
        for scraper in self.scrapers:
            if scraper.platform == platform.lower():
                return scraper
        return None

    async def _search_one(
        self,
        scraper: BaseScraper,
        query: ProductQuery,
        warnings: list[str],
    ) -> list[ProductCandidate]:
        try:
            result = await scraper.search_by_query(query)
        except Exception as exc:
            logger.warning(
                "Search failed on %s", scraper.platform, exc_info=True
            )
            warnings.append(f"Search failed on {scraper.platform}: {exc}")
            return []
        if result.error:
            warnings.append(
                f"Search failed on {scraper.platform}: {result.error}"
            )
        return result.candidates

    async def compare_by_url(self, url: str) -> CompareResult:
        """Compare the product at *url* against every marketplace.

        Raises:
            LinkProcessingError: *url* is not a supported product URL.
            ComparisonError: no scraper serves the platform, or the
                source product cannot be fetched.
        """
        query = LinkProcessor.process_url(url)
        source_scraper = self._scraper_for(query.platform)
        if source_scraper is None:
            msg = f"No scraper registered for platform '{query.platform}'"
            raise ComparisonError(msg)

        fetched = await source_scraper.get_by_url(query)
        source = fetched.first
        if source is None:
            detail = f": {fetched.error}" if fetched.error else ""
            msg = f"Unable to retrieve product details for {url}{detail}"
            raise ComparisonError(msg)

        search_title = source.title or query.title_hint
        warnings: list[str] = []
        batches = await asyncio.gather(
            *(
                self._search_one(
                    scraper,
                    ProductQuery(
                        platform=scraper.platform,
                        product_id=query.product_id,
                        title_hint=search_title,
                    ),
                    warnings,
                )
                for scraper in self.scrapers
            )
        )

        compared: list[ComparedCandidate] = []
        for batch in batches:
            for candidate in batch:
                similarity = title_similarity(source.title, candidate.title)
                compared.append(
                    ComparedCandidate(
                        candidate=candidate,
                        similarity=similarity,
                        reasons=match_reasons(candidate, similarity),
                    )
                )

        best = None
        if compared:
            best = min(
                compared, key=lambda c: (-c.similarity, c.total_cost)
            )
        logger.info(
            "Compared %s against %d candidates (best: %s)",
            query.canonical_url,
            len(compared),
            best.candidate.platform if best else "none",
        )
        return CompareResult(
            source=source,
            source_url=query.canonical_url,
            candidates=compared,
            best=best,
            warnings=warnings,
        )
