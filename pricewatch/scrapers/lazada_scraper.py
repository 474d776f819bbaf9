# pricewatch/scrapers/lazada_scraper.py

"""Scraper for lazada.vn via the catalog AJAX endpoint and product pages."""

import json
import re
import urllib.parse
from decimal import Decimal
from typing import Any

from bs4 import BeautifulSoup

from pricewatch.filters.price_normalizer import (
    discount_from_prices,
    parse_discount,
    parse_price_text,
    parse_sold_count,
    snap_to_band,
    to_decimal,
)
from pricewatch.models.product import ProductCandidate, ProductQuery
from pricewatch.scrapers.base_scraper import (
    ITEM_PARSE_ERRORS,
    BaseScraper,
    UpstreamError,
)

_MODULE_DATA_RE = re.compile(
    r"__moduleData__\s*=\s*(\{.*?\});\s*(?:var\s|</script>|\n)",
    re.DOTALL,
)


def _absolute_url(url: str) -> str:
    """Resolve Lazada's protocol-relative links and drop tracking params."""
    if not url:
        return ""
    if url.startswith("//"):
        url = "https:" + url
    elif url.startswith("/"):
        url = "https://www.lazada.vn" + url
    parts = urllib.parse.urlsplit(url)
    return urllib.parse.urlunsplit(
        (parts.scheme, parts.netloc, parts.path, "", "")
    )


class LazadaScraper(BaseScraper):
    """Scraper for lazada.vn.

    Search uses ``/catalog/?ajax=true`` which returns the listing grid as
    JSON under ``mods.listItems``.  Product pages embed their state in a
    ``__moduleData__`` script; JSON-LD and meta tags are the fallback.
    Prices arrive as plain decimal strings, with the ``priceShow`` display
    text used when the numeric field is missing.
    """

    platform = "lazada"
    homepage = "https://www.lazada.vn/"

    SEARCH_API = (
        "https://www.lazada.vn/catalog/"
        "?ajax=true&isFirstRequest=true&page=1&q={keyword}"
    )

    @staticmethod
    def _is_lazmall(item: dict[str, Any]) -> bool:
        if item.get("isLazMall"):
            return True
        for icon in item.get("icons") or []:
            if not isinstance(icon, dict):
                continue
            for value in icon.values():
                if isinstance(value, str) and "lazmall" in value.lower():
                    return True
        return False

    def _parse_item(self, item: dict[str, Any]) -> ProductCandidate | None:
        """Convert one ``listItems`` entry into a candidate."""
        title = str(item["name"]).strip()
        price = snap_to_band(item.get("price"))
        if price <= 0:
            price = parse_price_text(item.get("priceShow"))
        if not title or price <= 0:
            return None

        original = snap_to_band(item.get("originalPrice"))
        original_price = original if original > price else None
        discount = parse_discount(item.get("discount"))
        if discount is None:
            discount = discount_from_prices(price, original_price)

        is_mall = self._is_lazmall(item)
        shop_name = str(item.get("sellerName") or "")
        if is_mall and "mall" not in shop_name.lower():
            shop_name = f"{shop_name} (LazMall)".strip()

        shipping = to_decimal(item.get("shippingFee"))
        in_stock = item.get("inStock")
        free_ship = item.get("freeShipping")

        return ProductCandidate(
            platform=self.platform,
            title=title,
            price=price,
            shipping_cost=(
                shipping if shipping and shipping > 0 else Decimal(0)
            ),
            shop_name=shop_name,
            shop_rating=float(item.get("ratingScore") or 0),
            sold_count=parse_sold_count(
                item.get("itemSoldCntShow") or item.get("review")
            ),
            product_url=_absolute_url(str(item.get("itemUrl") or "")),
            thumbnail_url=str(item.get("image") or ""),
            original_price=original_price,
            discount_percent=discount,
            is_out_of_stock=(not in_stock) if in_stock is not None else None,
            is_free_ship=bool(free_ship) if free_ship is not None else None,
            seller_type="official" if is_mall else "reseller",
        )

    async def _search(
        self, keyword: str, limit: int,
    ) -> list[ProductCandidate]:
        encoded = urllib.parse.quote(keyword)
        url = self.SEARCH_API.format(keyword=encoded)
        data = await self._get_json(
            url,
            self._headers(
                Accept="application/json",
                Referer=f"https://www.lazada.vn/catalog/?q={encoded}",
            ),
        )
        if not isinstance(data, dict):
            msg = "unexpected payload type"
            raise UpstreamError(msg)
        ret = data.get("ret")
        if isinstance(ret, list) and any("FAIL" in str(r) for r in ret):
            msg = f"request rejected: {ret[0]}"
            raise UpstreamError(msg)
        mods = data.get("mods") or {}
        if not isinstance(mods, dict):
            msg = f"unexpected mods type {type(mods).__name__}"
            raise UpstreamError(msg)
        items = mods.get("listItems") or []
        return self._parse_many(items, self._parse_item)[:limit]

    def _parse_module_data(
        self,
        soup: BeautifulSoup,
        url: str,
    ) -> ProductCandidate | None:
        """Extract the product from the page's ``__moduleData__`` script."""
        for script in soup.find_all("script"):
            text = script.string or ""
            match = _MODULE_DATA_RE.search(text)
            if not match:
                continue
            try:
                data = json.loads(match.group(1))
                fields = data["data"]["root"]["fields"]
                return self._candidate_from_fields(fields, url)
            except (json.JSONDecodeError, *ITEM_PARSE_ERRORS) as exc:
                self.logger.debug(
                    "[lazada] Unusable __moduleData__: %s", exc
                )
                return None
        return None

    def _candidate_from_fields(
        self,
        fields: dict[str, Any],
        url: str,
    ) -> ProductCandidate | None:
        title = str(fields["product"]["title"]).strip()
        sku_infos: dict[str, Any] = fields.get("skuInfos") or {}
        sku = sku_infos.get("0") or next(iter(sku_infos.values()), {})
        price_info = sku.get("price") or {}
        price = snap_to_band(
            (price_info.get("salePrice") or {}).get("value")
        )
        if not title or price <= 0:
            return None
        original = snap_to_band(
            (price_info.get("originalPrice") or {}).get("value")
        )
        original_price = original if original > price else None

        seller = fields.get("seller") or {}
        ratings = (fields.get("review") or {}).get("ratings") or {}
        stock = sku.get("stock")

        return ProductCandidate(
            platform=self.platform,
            title=title,
            price=price,
            shop_name=str(seller.get("name") or ""),
            shop_rating=float(ratings.get("average") or 0),
            sold_count=parse_sold_count(ratings.get("rateCount")),
            product_url=url,
            thumbnail_url=str(sku.get("image") or ""),
            original_price=original_price,
            discount_percent=discount_from_prices(price, original_price),
            is_out_of_stock=(stock == 0) if stock is not None else None,
            seller_type=(
                "official" if seller.get("isLazMall") else "reseller"
            ),
        )

    async def _fetch_product(
        self, query: ProductQuery,
    ) -> ProductCandidate | None:
        url = query.canonical_url
        if not url and query.product_id.isdigit():
            url = f"https://www.lazada.vn/products/i{query.product_id}.html"
        if not url:
            return None
        url = _absolute_url(url)
        soup = await self._get_page(url)
        candidate = self._parse_module_data(soup, url)
        if candidate is not None:
            return candidate
        return self._candidate_from_page(soup, url)
