# pricewatch/scrapers/base_scraper.py

"""Abstract base class for all marketplace scrapers."""

import asyncio
import json
import logging
import re
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterator
from typing import Any, cast
from urllib.parse import urljoin

import cloudscraper  # type: ignore[import-untyped]
from bs4 import BeautifulSoup
from curl_cffi.requests import AsyncSession, Response

from pricewatch.config.settings import Settings
from pricewatch.filters.price_normalizer import (
    parse_sold_count,
    snap_to_band,
    to_decimal,
)
from pricewatch.models.product import (
    ProductCandidate,
    ProductQuery,
    ScrapeResult,
)
from pricewatch.services.metrics_service import MetricsService
from pricewatch.storage.result_cache import ResultCache
from pricewatch.storage.robots_policy import RobotsPolicy

# Per-item parse failures that mean "skip this listing", not "bug"
ITEM_PARSE_ERRORS: tuple[type[Exception], ...] = (
    KeyError,
    TypeError,
    ValueError,
    AttributeError,
    ArithmeticError,
)

_KEYWORD_CLEAN_RE = re.compile(r"[^0-9A-Za-z]+")


class UpstreamError(Exception):
    """An upstream request or payload could not be turned into candidates."""


class DisallowedByRobots(UpstreamError):
    """The request path is disallowed by the marketplace's robots.txt."""


class BaseScraper(ABC):
    """Shared plumbing for marketplace adapters.

    Subclasses implement :meth:`_search` and :meth:`_fetch_product`; the
    public :meth:`search_by_query` / :meth:`get_by_url` wrappers add the
    concurrency bound, keyword cache, metrics and the conversion of
    upstream failures into a :class:`ScrapeResult` with ``error`` set.
    """

    platform: str = ""
    homepage: str = ""

    def __init__(
        self,
        metrics: MetricsService | None = None,
        session: AsyncSession | None = None,
        cache: ResultCache | None = None,
    ) -> None:
        self.logger = logging.getLogger(f"pricewatch.{self.platform}")
        self.settings = Settings()
        self.metrics = metrics
        self.cache = cache if cache is not None else ResultCache()
        self.robots = RobotsPolicy(self.settings.ROBOTS_USER_AGENT)
        self._session = session
        self._rate = asyncio.Semaphore(self.settings.SCRAPER_CONCURRENCY)
        self._robots_lock = asyncio.Lock()
        self._current_delay: float = self.settings.REQUEST_DELAY
        self._consecutive_failures: int = 0
        self._circuit_open: bool = False
        self._circuit_opened_at: float = 0.0
        self._request_timeout: int = self.settings.REQUEST_TIMEOUT

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    @property
    def session(self) -> AsyncSession:
        """The curl_cffi session, created on first use."""
        if self._session is None:
            self._session = AsyncSession(
                impersonate=self.settings.IMPERSONATE_BROWSER
            )
        return self._session

    @session.setter
    def session(self, value: AsyncSession) -> None:
        self._session = value

    async def aclose(self) -> None:
        """Close the underlying HTTP session."""
        if self._session is not None:
            await self._session.close()
            self._session = None

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    @staticmethod
    def build_keyword(query: ProductQuery) -> str:
        """Search term: the title hint, else the product id as words."""
        hint = (query.title_hint or "").strip()
        if hint:
            return hint
        return _KEYWORD_CLEAN_RE.sub(" ", query.product_id or "").strip()

    async def search_by_query(self, query: ProductQuery) -> ScrapeResult:
        """Return best-effort candidates matching *query*.

        Upstream failures are reported through ``ScrapeResult.error``;
        only programming errors propagate.
        """
        keyword = self.build_keyword(query)
        if not keyword:
            self.logger.debug(
                "[%s] Empty keyword, skipping search", self.platform
            )
            return ScrapeResult(platform=self.platform)

        limit = min(
            query.limit(self.settings.MAX_SEARCH_RESULTS),
            self.settings.MAX_SEARCH_RESULTS,
        )
        cached = self.cache.get(keyword)
        if cached is not None:
            return ScrapeResult(
                platform=self.platform,
                candidates=cached[:limit],
                from_cache=True,
            )

        result = await self._run(
            "search",
            self._search,
            keyword,
            self.settings.MAX_SEARCH_RESULTS,
        )
        if result.ok and result.candidates:
            self.cache.store(keyword, result.candidates)
        result.candidates = result.candidates[:limit]
        return result

    async def get_by_url(self, query: ProductQuery) -> ScrapeResult:
        """Fetch the single product *query* points at (at most one result)."""
        if query.platform.lower() != self.platform:
            return ScrapeResult(platform=self.platform)
        if not (query.canonical_url or query.product_id):
            self.logger.debug(
                "[%s] No URL or product id for direct fetch",
                self.platform,
            )
            return ScrapeResult(platform=self.platform)
        return await self._run("fetch", self._fetch_as_list, query)

    async def _fetch_as_list(
        self, query: ProductQuery,
    ) -> list[ProductCandidate]:
        candidate = await self._fetch_product(query)
        return [candidate] if candidate is not None else []

    async def _run(
        self,
        operation: str,
        func: Callable[..., Awaitable[list[ProductCandidate]]],
        *args: Any,
    ) -> ScrapeResult:
        """Execute one bounded upstream operation and wrap the outcome."""
        start = time.monotonic()
        candidates: list[ProductCandidate] = []
        error: str | None = None
        async with self._rate:
            try:
                candidates = await func(*args)
            except DisallowedByRobots as exc:
                self.logger.info(
                    "[%s] %s skipped: %s", self.platform, operation, exc
                )
            except UpstreamError as exc:
                error = str(exc)
                self.logger.warning(
                    "[%s] %s failed: %s", self.platform, operation, exc
                )
        elapsed_ms = (time.monotonic() - start) * 1000
        if self.metrics is not None:
            self.metrics.record_scraper_call(
                self.platform, error is None, elapsed_ms
            )
        self.logger.info(
            "[%s] %s returned %d candidates in %.0fms",
            self.platform,
            operation,
            len(candidates),
            elapsed_ms,
        )
        return ScrapeResult(
            platform=self.platform,
            candidates=candidates,
            error=error,
            elapsed_ms=elapsed_ms,
        )

    def _parse_many(
        self,
        items: Any,
        parse: Callable[[Any], ProductCandidate | None],
    ) -> list[ProductCandidate]:
        """Parse each raw item, skipping the ones missing required fields.

        Raises ``UpstreamError`` when *items* is not a list.
        """
        if not isinstance(items, list):
            msg = f"expected a list of items, got {type(items).__name__}"
            raise UpstreamError(msg)
        candidates: list[ProductCandidate] = []
        for item in cast(list[Any], items):
            try:
                candidate = parse(item)
            except ITEM_PARSE_ERRORS as exc:
                self.logger.debug(
                    "[%s] Skipping malformed item: %s",
                    self.platform,
                    exc,
                )
                continue
            if candidate is not None:
                candidates.append(candidate)
        return candidates

    # ------------------------------------------------------------------
    # robots.txt
    # ------------------------------------------------------------------

    async def _ensure_robots(self) -> None:
        """Fetch robots.txt once per scraper instance."""
        if not self.settings.RESPECT_ROBOTS_TXT or self.robots.loaded:
            return
        async with self._robots_lock:
            if self.robots.loaded:
                return
            robots_url = urljoin(self.homepage, "/robots.txt")
            try:
                resp = await self.session.get(
                    robots_url,
                    headers=self.settings.DEFAULT_HEADERS,
                    timeout=self._request_timeout,
                )
            except Exception as exc:
                self.logger.debug(
                    "[%s] Unable to read robots.txt: %s",
                    self.platform,
                    exc,
                )
                self.robots.mark_unavailable()
                return
            if resp.status_code == 200:
                self.robots.load(resp.text)
            else:
                self.robots.mark_unavailable()

    async def _check_robots(self, url: str) -> None:
        await self._ensure_robots()
        if not self.robots.is_allowed(url):
            msg = f"robots.txt disallows {url}"
            raise DisallowedByRobots(msg)

    # ------------------------------------------------------------------
    # Resilience
    # ------------------------------------------------------------------

    # Cloudflare challenge page markers (checked before keyword scan)
    _CF_CHALLENGE_MARKERS: list[str] = [
        "challenges.cloudflare.com",
        "cdn-cgi/challenge-platform",
        "just a moment",
        "cf-turnstile",
        "cf_chl_opt",
    ]

    def _validate_response(self, resp: Response) -> bool:
        """Check for Cloudflare challenge pages and CAPTCHA indicators."""
        text = resp.text
        if text.lstrip().startswith(("{", "[")):
            return True
        lower = text.lower()

        for marker in self._CF_CHALLENGE_MARKERS:
            if marker in lower:
                self.logger.warning(
                    "[%s] Cloudflare challenge detected (marker: '%s')",
                    self.platform,
                    marker,
                )
                return False

        # Skip the keyword scan on content-rich pages to avoid
        # false positives from inline scripts
        has_body_content = "<body" in lower and len(text) > 5000
        if not has_body_content:
            for keyword in self.settings.CAPTCHA_KEYWORDS:
                if keyword in lower:
                    self.logger.warning(
                        "[%s] CAPTCHA keyword '%s' detected",
                        self.platform,
                        keyword,
                    )
                    return False
        return True

    def _check_circuit(self) -> bool:
        """Return True if the circuit breaker blocks this request.

        After CIRCUIT_BREAKER_COOLDOWN seconds the breaker enters a
        half-open state, allowing a single probe request through.
        """
        if not self._circuit_open:
            return False
        elapsed = time.time() - self._circuit_opened_at
        if elapsed >= self.settings.CIRCUIT_BREAKER_COOLDOWN:
            self.logger.info(
                "[%s] Circuit breaker half-open after %.0fs",
                self.platform,
                elapsed,
            )
            self._circuit_open = False
            return False
        return True

    def _record_success(self) -> None:
        self._consecutive_failures = 0
        self._circuit_open = False
        self._circuit_opened_at = 0.0
        self._current_delay = self.settings.REQUEST_DELAY

    def _record_failure(self) -> None:
        self._consecutive_failures += 1
        if self._consecutive_failures >= (
            self.settings.CIRCUIT_BREAKER_THRESHOLD
        ):
            self._circuit_open = True
            self._circuit_opened_at = time.time()
            self.logger.error(
                "[%s] Circuit breaker opened after %d consecutive failures",
                self.platform,
                self._consecutive_failures,
            )

    def _escalate_delay(self) -> None:
        """Double the current delay up to the configured max."""
        max_delay = (
            self.settings.REQUEST_DELAY * self.settings.MAX_DELAY_MULTIPLIER
        )
        self._current_delay = min(self._current_delay * 2, max_delay)
        self.logger.warning(
            "[%s] Rate-limited, delay escalated to %.1fs",
            self.platform,
            self._current_delay,
        )

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _headers(self, **extra: str) -> dict[str, str]:
        return {
            **self.settings.DEFAULT_HEADERS,
            "Referer": self.homepage,
            **extra,
        }

    async def _fetch_get(
        self,
        url: str,
        headers: dict[str, str],
    ) -> Response | None:
        """GET with retries, adaptive delay, and circuit breaker."""
        await self._check_robots(url)
        if self._check_circuit():
            self.logger.warning(
                "[%s] Circuit open, skipping %s", self.platform, url
            )
            return None
        for attempt in range(self.settings.MAX_RETRIES):
            try:
                resp = await self.session.get(
                    url,
                    headers=headers,
                    timeout=self._request_timeout,
                )
                if resp.status_code == 200:
                    if not self._validate_response(resp):
                        self._escalate_delay()
                        await asyncio.sleep(self._current_delay)
                        continue
                    self._record_success()
                    return resp
                self.logger.warning(
                    "[%s] HTTP %d on attempt %d",
                    self.platform,
                    resp.status_code,
                    attempt + 1,
                )
                if resp.status_code == 404:
                    break
                if resp.status_code in (429, 403):
                    self._escalate_delay()
                    await asyncio.sleep(self._current_delay)
            except Exception as exc:
                self.logger.warning(
                    "[%s] Request error on attempt %d: %s",
                    self.platform,
                    attempt + 1,
                    exc,
                    exc_info=True,
                )
                await asyncio.sleep(self._current_delay * (attempt + 1))
        self._record_failure()
        return None

    async def _get_json(
        self,
        url: str,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """GET *url* and decode JSON, raising ``UpstreamError`` on failure."""
        resp = await self._fetch_get(
            url, headers or self._headers(Accept="application/json")
        )
        if resp is None:
            msg = f"no usable response from {url}"
            raise UpstreamError(msg)
        try:
            return json.loads(resp.text)
        except (json.JSONDecodeError, TypeError) as exc:
            msg = f"malformed JSON from {url}: {exc}"
            raise UpstreamError(msg) from exc

    def _cloudscraper_get(
        self, url: str, headers: dict[str, str],
    ) -> str | None:
        """Blocking cloudscraper GET; run via ``asyncio.to_thread``."""
        _cs: Any = cloudscraper
        scraper: Any = _cs.create_scraper()
        resp: Any = scraper.get(
            url, headers=headers, timeout=self._request_timeout
        )
        if resp.status_code == 200:
            return str(resp.text)
        self.logger.warning(
            "[%s] cloudscraper HTTP %d for %s",
            self.platform,
            resp.status_code,
            url,
        )
        return None

    async def _get_page(self, url: str) -> BeautifulSoup:
        """Fetch an HTML page, falling back to cloudscraper on failure."""
        headers = self._headers()
        resp = await self._fetch_get(url, headers)
        if resp is not None:
            return BeautifulSoup(resp.text, "lxml")

        self.logger.info(
            "[%s] curl_cffi exhausted, falling back to cloudscraper",
            self.platform,
        )
        try:
            text = await asyncio.to_thread(
                self._cloudscraper_get, url, headers
            )
        except Exception as exc:
            self.logger.error(
                "[%s] cloudscraper fallback also failed: %s",
                self.platform,
                exc,
                exc_info=True,
            )
            text = None
        if not text:
            msg = f"page unavailable: {url}"
            raise UpstreamError(msg)
        return BeautifulSoup(text, "lxml")

    # ------------------------------------------------------------------
    # Embedded metadata fallback
    # ------------------------------------------------------------------

    async def _api_then_page(
        self,
        api_call: Callable[[], Awaitable[ProductCandidate | None]],
        page_url: str,
    ) -> ProductCandidate | None:
        """Try the JSON product API, then JSON-LD / meta tags on the page.

        A robots.txt refusal is final and is not retried on the page.
        """
        try:
            candidate = await api_call()
        except DisallowedByRobots:
            raise
        except UpstreamError as exc:
            self.logger.warning(
                "[%s] Product API failed (%s), trying embedded metadata",
                self.platform,
                exc,
            )
            candidate = None
        if candidate is not None or not page_url:
            return candidate
        soup = await self._get_page(page_url)
        return self._candidate_from_page(soup, page_url)

    @staticmethod
    def _iter_json_ld_nodes(data: Any) -> Iterator[dict[str, Any]]:
        """Yield every object node in a JSON-LD document (``@graph`` too)."""
        if isinstance(data, list):
            for item in cast(list[Any], data):
                yield from BaseScraper._iter_json_ld_nodes(item)
        elif isinstance(data, dict):
            node = cast(dict[str, Any], data)
            yield node
            graph = node.get("@graph")
            if graph is not None:
                yield from BaseScraper._iter_json_ld_nodes(graph)

    @staticmethod
    def _extract_json_ld_product(
        soup: BeautifulSoup,
    ) -> dict[str, Any] | None:
        """Return the first JSON-LD node typed ``Product``."""
        for script in soup.find_all(
            "script", attrs={"type": "application/ld+json"}
        ):
            raw = script.string or script.get_text()
            if not raw:
                continue
            try:
                data = json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                continue
            for node in BaseScraper._iter_json_ld_nodes(data):
                node_type = node.get("@type")
                types = (
                    node_type if isinstance(node_type, list) else [node_type]
                )
                if "Product" in types:
                    return node
        return None

    @staticmethod
    def _extract_meta_product(soup: BeautifulSoup) -> dict[str, str]:
        """Collect ``og:*`` / ``product:*`` meta tags."""
        meta: dict[str, str] = {}
        for tag in soup.find_all("meta"):
            key = tag.get("property") or tag.get("name")
            content = tag.get("content")
            if not key or content is None:
                continue
            key_str = str(key).lower()
            if key_str.startswith(("og:", "product:")):
                meta.setdefault(key_str, str(content).strip())
        return meta

    def _candidate_from_page(
        self,
        soup: BeautifulSoup,
        url: str,
    ) -> ProductCandidate | None:
        """Build a candidate from JSON-LD, then meta tags, or give up."""
        node = self._extract_json_ld_product(soup)
        if node is not None:
            try:
                candidate = self._candidate_from_json_ld(node, url)
            except ITEM_PARSE_ERRORS as exc:
                self.logger.debug(
                    "[%s] Unusable JSON-LD product: %s", self.platform, exc
                )
                candidate = None
            if candidate is not None:
                return candidate

        meta = self._extract_meta_product(soup)
        title = meta.get("og:title", "")
        raw_price = meta.get("product:price:amount") or meta.get(
            "og:price:amount"
        )
        price = snap_to_band(raw_price)
        if not title or price <= 0:
            self.logger.warning(
                "[%s] No structured product data on %s", self.platform, url
            )
            return None
        return ProductCandidate(
            platform=self.platform,
            title=title,
            price=price,
            product_url=meta.get("og:url", url) or url,
            thumbnail_url=meta.get("og:image", ""),
        )

    def _candidate_from_json_ld(
        self,
        node: dict[str, Any],
        url: str,
    ) -> ProductCandidate | None:
        title = str(node.get("name") or "").strip()
        offers_raw = node.get("offers") or {}
        offers: dict[str, Any] = (
            offers_raw[0] if isinstance(offers_raw, list) else offers_raw
        )
        price = snap_to_band(offers.get("price") or offers.get("lowPrice"))
        if not title or price <= 0:
            return None

        image = node.get("image") or ""
        if isinstance(image, list):
            image = image[0] if image else ""
        rating_node = node.get("aggregateRating") or {}
        rating = to_decimal(rating_node.get("ratingValue"))
        seller = offers.get("seller")
        shop_name = (
            str(seller.get("name") or "") if isinstance(seller, dict) else ""
        )
        availability = str(offers.get("availability") or "")

        return ProductCandidate(
            platform=self.platform,
            title=title,
            price=price,
            shop_name=shop_name,
            shop_rating=float(rating) if rating is not None else 0.0,
            sold_count=parse_sold_count(rating_node.get("reviewCount")),
            product_url=str(offers.get("url") or url),
            thumbnail_url=str(image),
            is_out_of_stock=(
                "OutOfStock" in availability if availability else None
            ),
        )

    # ------------------------------------------------------------------
    # Adapter hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _search(
        self, keyword: str, limit: int,
    ) -> list[ProductCandidate]:
        """Run the marketplace search; raise ``UpstreamError`` on failure."""
        ...

    @abstractmethod
    async def _fetch_product(
        self, query: ProductQuery,
    ) -> ProductCandidate | None:
        """Fetch one product by canonical URL or id."""
        ...
