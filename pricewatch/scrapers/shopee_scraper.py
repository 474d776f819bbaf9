# pricewatch/scrapers/shopee_scraper.py

"""Scraper for shopee.vn via its internal v4 JSON API."""

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

_IDS_RE = re.compile(r"i\.(?P<shop>\d+)\.(?P<item>\d+)", re.IGNORECASE)
_PRODUCT_PATH_RE = re.compile(r"/product/(?P<shop>\d+)/(?P<item>\d+)")


class ShopeeScraper(BaseScraper):
    """Scraper for shopee.vn.

    Shopee's API encodes prices as integers scaled by 100 000 (older
    endpoints use other factors), so every price goes through the
    band-snap normaliser.

    The ladder stops at the first divisor that lands in band, so an x100 000
    price only reaches the ÷100 000 step above 5 000 000 ₫.  Cheaper items
    stop earlier and are over-reported: 10 times up to 5 000 000 ₫, 100
    times under 500 000 ₫, 1 000 times under 50 000 ₫.  Such listings sort
    last in any cross-platform cost ordering.

    Search listings carry no shop rating; the item's own star rating is
    used as the rating signal.
    """

    platform = "shopee"
    homepage = "https://shopee.vn/"

    SEARCH_API = (
        "https://shopee.vn/api/v4/search/search_items"
        "?by=relevancy&keyword={keyword}&limit={limit}&newest=0"
        "&order=desc&page_type=search&scenario=PAGE_GLOBAL_SEARCH"
        "&version=2"
    )
    ITEM_API = "https://shopee.vn/api/v4/item/get?itemid={item}&shopid={shop}"
    IMAGE_URL = "https://down-vn.img.susercontent.com/file/{image}"

    def _api_headers(self, referer: str) -> dict[str, str]:
        return self._headers(
            Accept="application/json",
            Referer=referer,
            **{
                "x-api-source": "pc",
                "x-shopee-language": "vi",
                "X-Requested-With": "XMLHttpRequest",
            },
        )

    @staticmethod
    def parse_ids(query: ProductQuery) -> tuple[str, str] | None:
        """Return ``(shop_id, item_id)`` from the product id or URL."""
        for text, pattern in (
            (query.product_id, _IDS_RE),
            (query.canonical_url, _PRODUCT_PATH_RE),
            (query.canonical_url, _IDS_RE),
        ):
            match = pattern.search(text or "")
            if match:
                return match.group("shop"), match.group("item")
        return None

    @staticmethod
    def product_url(shop_id: object, item_id: object) -> str:
        return f"https://shopee.vn/product/{shop_id}/{item_id}"

    @staticmethod
    def _check_error(data: Any) -> dict[str, Any]:
        """Reject non-object bodies and anti-bot error envelopes."""
        if not isinstance(data, dict):
            msg = "unexpected payload type"
            raise UpstreamError(msg)
        if data.get("error"):
            msg = f"API error {data.get('error')}"
            raise UpstreamError(msg)
        return data

    def _parse_item(self, item: dict[str, Any]) -> ProductCandidate | None:
        """Convert a search hit or item detail into a candidate."""
        basic: dict[str, Any] = item.get("item_basic") or item
        item_id = basic["itemid"]
        shop_id = basic["shopid"]
        title = str(basic["name"]).strip()
        price = snap_to_band(basic.get("price") or basic.get("price_min"))
        if not title or price <= 0:
            return None

        original = snap_to_band(basic.get("price_before_discount"))
        original_price = original if original > price else None
        discount = parse_discount(basic.get("raw_discount"))
        if discount is None:
            discount = discount_from_prices(price, original_price)

        rating_info = basic.get("item_rating") or {}
        rating = float(rating_info.get("rating_star") or 0)

        is_official = bool(basic.get("is_official_shop"))
        if is_official:
            seller_type = "official"
        elif basic.get("shopee_verified"):
            seller_type = "preferred"
        else:
            seller_type = "reseller"
        shop_name = str(basic.get("shop_name") or "")
        if not shop_name and is_official:
            shop_name = "Shopee Mall"

        image = basic.get("image") or ""
        stock = basic.get("stock")

        return ProductCandidate(
            platform=self.platform,
            title=title,
            price=price,
            shop_name=shop_name,
            shop_rating=rating,
            sold_count=parse_sold_count(
                basic.get("historical_sold") or basic.get("sold")
            ),
            product_url=self.product_url(shop_id, item_id),
            thumbnail_url=self.IMAGE_URL.format(image=image) if image else "",
            original_price=original_price,
            discount_percent=discount,
            is_out_of_stock=(stock == 0) if stock is not None else None,
            is_free_ship=(
                bool(basic["show_free_shipping"])
                if "show_free_shipping" in basic
                else None
            ),
            seller_type=seller_type,
        )

    async def _search(
        self, keyword: str, limit: int,
    ) -> list[ProductCandidate]:
        encoded = urllib.parse.quote(keyword)
        url = self.SEARCH_API.format(keyword=encoded, limit=limit)
        referer = f"https://shopee.vn/search?keyword={encoded}"
        data = self._check_error(
            await self._get_json(url, self._api_headers(referer))
        )
        items = data.get("items") or []
        return self._parse_many(items, self._parse_item)[:limit]

    async def _fetch_item(
        self, shop_id: str, item_id: str,
    ) -> ProductCandidate | None:
        url = self.ITEM_API.format(item=item_id, shop=shop_id)
        data = self._check_error(
            await self._get_json(
                url, self._api_headers(self.product_url(shop_id, item_id))
            )
        )
        item = data.get("data") or data.get("item")
        if not item:
            return None
        parsed = self._parse_many([item], self._parse_item)
        return parsed[0] if parsed else None

    async def _fetch_product(
        self, query: ProductQuery,
    ) -> ProductCandidate | None:
        ids = self.parse_ids(query)
        page_url = query.canonical_url or (
            self.product_url(*ids) if ids else ""
        )
        if ids is None:
            if not page_url:
                return None
            soup = await self._get_page(page_url)
            return self._candidate_from_page(soup, page_url)

        shop_id, item_id = ids
        return await self._api_then_page(
            lambda: self._fetch_item(shop_id, item_id), page_url
        )
