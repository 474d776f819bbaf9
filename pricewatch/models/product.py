# pricewatch/models/product.py

"""Query and candidate data models shared by scrapers and the ranker."""

import dataclasses
from dataclasses import dataclass, field
from decimal import Decimal

LABEL_BEST_DEAL = "BestDeal"
LABEL_TRUSTED_SHOP = "TrustedShop"
LABEL_OFFICIAL_STORE = "OfficialStore"


@dataclass
class ProductQuery:
    """A search or direct-fetch request descriptor.

    An empty ``platform`` means "all platforms".  A scraper that gets
    neither a ``canonical_url`` nor a usable ``title_hint`` returns an
    empty result rather than failing.
    """

    platform: str = ""
    product_id: str = ""
    canonical_url: str = ""
    title_hint: str = ""
    metadata: dict[str, str] = field(
        default_factory=lambda: dict[str, str]()
    )

    def limit(self, default: int) -> int:
        """Return the ``limit`` metadata hint, or *default*."""
        raw = self.metadata.get("limit", "")
        try:
            value = int(raw)
        except (TypeError, ValueError):
            return default
        return value if value > 0 else default


@dataclass
class ProductCandidate:
    """One normalised listing from a single marketplace."""

    platform: str
    title: str
    price: Decimal
    shipping_cost: Decimal = Decimal(0)
    shop_name: str = ""
    shop_rating: float = 0.0
    shop_sales: int = 0
    sold_count: int | None = None
    product_url: str = ""
    thumbnail_url: str = ""
    original_price: Decimal | None = None
    discount_percent: float | None = None
    is_out_of_stock: bool | None = None
    is_free_ship: bool | None = None
    seller_type: str | None = None
    # Written by the ranking stage only
    match_score: float | None = None
    fit_reason: str | None = None
    labels: list[str] = field(
        default_factory=lambda: list[str]()
    )

    def __post_init__(self) -> None:
        if self.price < 0:
            msg = f"price must be non-negative, got {self.price}"
            raise ValueError(msg)
        if self.shop_rating is None:
            self.shop_rating = 0.0

    @property
    def total_cost(self) -> Decimal:
        """Price plus shipping, recomputed on every access."""
        return self.price + self.shipping_cost

    @property
    def sales_volume(self) -> int:
        """Shop sales, falling back to the listing's sold count."""
        if self.shop_sales:
            return self.shop_sales
        return self.sold_count or 0

    def add_label(self, label: str) -> None:
        """Attach *label* once."""
        if label not in self.labels:
            self.labels.append(label)

    def copy(self) -> "ProductCandidate":
        """Return an independent copy (labels list included)."""
        return dataclasses.replace(self, labels=list(self.labels))


@dataclass
class ScrapeResult:
    """Outcome of one scraper call.

    ``error`` is ``None`` on success.  A failed call always carries an
    empty ``candidates`` list, so callers can merge results without
    checking the error first.
    """

    platform: str
    candidates: list[ProductCandidate] = field(
        default_factory=lambda: list[ProductCandidate]()
    )
    error: str | None = None
    elapsed_ms: float = 0.0
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        """True when the upstream call did not fail."""
        return self.error is None

    @property
    def first(self) -> ProductCandidate | None:
        """The first candidate, if any (direct URL fetches)."""
        return self.candidates[0] if self.candidates else None
