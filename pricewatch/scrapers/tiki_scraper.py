# pricewatch/scrapers/tiki_scraper.py

"""Scraper for tiki.vn via its public v2 product API."""

import re
import urllib.parse
from typing import Any

from pricewatch.filters.price_normalizer import (
    discount_from_prices,
    parse_discount,
    parse_sold_count,
    snap_to_band,
)
from pricewatch.models.product import ProductCandidate, ProductQuery
from pricewatch.scrapers.base_scraper import BaseScraper, UpstreamError

_PRODUCT_ID_RE = re.compile(r"-p(\d+)\.html", re.IGNORECASE)

_FREESHIP_MARKERS = ("freeship", "free_ship", "free-ship")


class TikiScraper(BaseScraper):
    """Scraper for tiki.vn.

    Both the search listing and the product detail are plain JSON with
    VND prices, so the band-snap normaliser is usually a no-op here.
    """

    platform = "tiki"
    homepage = "https://tiki.vn/"

    SEARCH_API = (
        "https://tiki.vn/api/v2/products"
        "?limit={limit}&include=advertisement&aggregations=2&q={keyword}"
    )
    PRODUCT_API = "https://tiki.vn/api/v2/products/{product_id}"

    @staticmethod
    def parse_product_id(query: ProductQuery) -> str | None:
        """Return the numeric product id from the query id or URL."""
        if query.product_id.isdigit():
            return query.product_id
        match = _PRODUCT_ID_RE.search(query.canonical_url or "")
        return match.group(1) if match else None

    @staticmethod
    def _has_freeship_badge(item: dict[str, Any]) -> bool | None:
        badges = item.get("badges_new") or item.get("badges")
        if not isinstance(badges, list):
            return None
        for badge in badges:
            text = str(badge).lower()
            if any(marker in text for marker in _FREESHIP_MARKERS):
                return True
        return False

    def _parse_item(self, item: dict[str, Any]) -> ProductCandidate | None:
        """Convert a search hit or detail payload into a candidate."""
        title = str(item["name"]).strip()
        price = snap_to_band(item["price"])
        if not title or price <= 0:
            return None

        original = snap_to_band(item.get("original_price"))
        original_price = original if original > price else None
        discount = parse_discount(item.get("discount_rate"))
        if discount is None:
            discount = discount_from_prices(price, original_price)

        seller = item.get("current_seller") or {}
        shop_name = str(
            seller.get("name")
            or item.get("seller_name")
            or item.get("brand_name")
            or ""
        )

        sold = item.get("all_time_quantity_sold")
        if sold is None:
            sold = (item.get("quantity_sold") or {}).get("value")

        if item.get("is_authentic") or item.get("tiki_verified"):
            seller_type = "official"
        else:
            seller_type = "reseller"

        url_path = str(item.get("url_path") or item.get("url_key") or "")
        if url_path and not url_path.startswith("http"):
            product_url = urllib.parse.urljoin(
                self.homepage, url_path.split("?", 1)[0]
            )
            if not product_url.endswith(".html"):
                product_url += ".html"
        else:
            product_url = url_path or f"https://tiki.vn/p{item.get('id')}.html"

        inventory = item.get("inventory_status")

        return ProductCandidate(
            platform=self.platform,
            title=title,
            price=price,
            shop_name=shop_name,
            shop_rating=float(item.get("rating_average") or 0),
            sold_count=parse_sold_count(sold),
            product_url=product_url,
            thumbnail_url=str(item.get("thumbnail_url") or ""),
            original_price=original_price,
            discount_percent=discount,
            is_out_of_stock=(
                inventory != "available" if inventory else None
            ),
            is_free_ship=self._has_freeship_badge(item),
            seller_type=seller_type,
        )

    async def _search(
        self, keyword: str, limit: int,
    ) -> list[ProductCandidate]:
        url = self.SEARCH_API.format(
            keyword=urllib.parse.quote(keyword), limit=limit
        )
        data = await self._get_json(url)
        if not isinstance(data, dict):
            msg = "unexpected payload type"
            raise UpstreamError(msg)
        items = data.get("data") or []
        return self._parse_many(items, self._parse_item)[:limit]

    async def _fetch_detail(
        self, product_id: str,
    ) -> ProductCandidate | None:
        data = await self._get_json(
            self.PRODUCT_API.format(product_id=product_id)
        )
        if not isinstance(data, dict) or "name" not in data:
            msg = f"no product payload for {product_id}"
            raise UpstreamError(msg)
        parsed = self._parse_many([data], self._parse_item)
        return parsed[0] if parsed else None

    async def _fetch_product(
        self, query: ProductQuery,
    ) -> ProductCandidate | None:
        product_id = self.parse_product_id(query)
        page_url = query.canonical_url
        if product_id is None:
            if not page_url:
                return None
            soup = await self._get_page(page_url)
            return self._candidate_from_page(soup, page_url)
        return await self._api_then_page(
            lambda: self._fetch_detail(product_id), page_url
        )
