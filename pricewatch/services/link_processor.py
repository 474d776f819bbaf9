# pricewatch/services/link_processor.py

"""Marketplace URL parsing into canonical product queries."""

import logging
import re
from collections.abc import Callable
from urllib.parse import SplitResult, urlsplit, urlunsplit

from pricewatch.models.product import ProductQuery

logger = logging.getLogger("pricewatch.links")

_SHOPEE_RE = re.compile(r"i\.(?P<shop>\d+)\.(?P<item>\d+)", re.IGNORECASE)
_SHOPEE_PRODUCT_RE = re.compile(r"/product/(?P<shop>\d+)/(?P<item>\d+)")
_SHOPEE_HINT_SUFFIX_RE = re.compile(r"-i\.\d+\.\d+$", re.IGNORECASE)
_LAZADA_RE = re.compile(
    r"-i(?P<item>\d+)(?:-s(?P<sku>\d+))?\.html", re.IGNORECASE
)
_LAZADA_LEGACY_RE = re.compile(r"-s(?P<sku>\d+)\.html", re.IGNORECASE)
_TIKI_RE = re.compile(r"-p(?P<item>\d+)\.html", re.IGNORECASE)
_HTML_SUFFIX_RE = re.compile(r"\.html$", re.IGNORECASE)


class LinkProcessingError(ValueError):
    """A URL could not be turned into a product query."""


class InvalidProductUrlError(LinkProcessingError):
    """The input is not an absolute http(s) URL."""


class UnsupportedPlatformError(LinkProcessingError):
    """The host is not one of the supported marketplaces."""


class MalformedProductUrlError(LinkProcessingError):
    """The host is supported but no product id was found in the URL.

    Usually a category or search page; may also mean the marketplace
    changed its URL scheme.
    """


def _strip_tracking(parts: SplitResult) -> str:
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def _title_from_path(path: str) -> str:
    segments = [s for s in path.split("/") if s]
    if not segments:
        return ""
    cleaned = _HTML_SUFFIX_RE.sub("", segments[-1])
    return cleaned.replace("-", " ").strip()


class LinkProcessor:
    """Stateless URL → :class:`ProductQuery` conversion."""

    @staticmethod
    def detect_platform(host: str) -> str | None:
        """Return the platform id for *host*, or ``None``."""
        host = host.lower()
        for platform in ("shopee", "lazada", "tiki"):
            if platform in host:
                return platform
        return None

    @staticmethod
    def process_url(url: str) -> ProductQuery:
        """Parse a marketplace product URL.

        Raises:
            InvalidProductUrlError: *url* is not an absolute http(s) URL.
            UnsupportedPlatformError: the host matches no marketplace.
            MalformedProductUrlError: the product id pattern is absent.
        """
        parts = urlsplit((url or "").strip())
        if parts.scheme not in ("http", "https") or not parts.hostname:
            msg = f"Invalid URL: {url!r}"
            raise InvalidProductUrlError(msg)

        platform = LinkProcessor.detect_platform(parts.hostname)
        if platform is None:
            msg = f"Platform not supported: {parts.hostname}"
            raise UnsupportedPlatformError(msg)

        handlers: dict[str, Callable[[SplitResult], ProductQuery]] = {
            "shopee": LinkProcessor._process_shopee,
            "lazada": LinkProcessor._process_lazada,
            "tiki": LinkProcessor._process_tiki,
        }
        query = handlers[platform](parts)
        logger.debug(
            "Parsed %s → %s id=%s", url, query.platform, query.product_id
        )
        return query

    @staticmethod
    def _process_shopee(parts: SplitResult) -> ProductQuery:
        path_and_query = parts.path
        if parts.query:
            path_and_query += f"?{parts.query}"
        match = _SHOPEE_RE.search(path_and_query)
        if not match:
            match = _SHOPEE_PRODUCT_RE.search(parts.path)
        if not match:
            msg = "Unable to detect Shopee product id"
            raise MalformedProductUrlError(msg)
        shop_id, item_id = match.group("shop"), match.group("item")
        segments = [s for s in parts.path.split("/") if s]
        last = segments[-1] if segments else ""
        hint = _SHOPEE_HINT_SUFFIX_RE.sub("", last)
        if _SHOPEE_RE.fullmatch(hint) or hint.isdigit():
            hint = ""
        return ProductQuery(
            platform="shopee",
            product_id=f"i.{shop_id}.{item_id}",
            canonical_url=f"https://{parts.hostname}/product/{shop_id}/{item_id}",
            title_hint=_title_from_path(hint),
        )

    @staticmethod
    def _process_lazada(parts: SplitResult) -> ProductQuery:
        match = _LAZADA_RE.search(parts.path)
        if match:
            product_id = match.group("item")
        else:
            legacy = _LAZADA_LEGACY_RE.search(parts.path)
            if not legacy:
                msg = "Unable to detect Lazada product id"
                raise MalformedProductUrlError(msg)
            product_id = legacy.group("sku")
        return ProductQuery(
            platform="lazada",
            product_id=product_id,
            canonical_url=_strip_tracking(parts),
            title_hint=_title_from_path(parts.path),
        )

    @staticmethod
    def _process_tiki(parts: SplitResult) -> ProductQuery:
        match = _TIKI_RE.search(parts.path)
        if not match:
            msg = "Unable to detect Tiki product id"
            raise MalformedProductUrlError(msg)
        return ProductQuery(
            platform="tiki",
            product_id=match.group("item"),
            canonical_url=_strip_tracking(parts),
            title_hint=_title_from_path(parts.path),
        )
