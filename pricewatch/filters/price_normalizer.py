# pricewatch/filters/price_normalizer.py

"""Normalisation of marketplace price, discount and sold-count encodings."""

import logging
import re
from decimal import Decimal, InvalidOperation

logger = logging.getLogger("pricewatch.filters")

# Plausible VND band for a single listing
PLAUSIBLE_MIN = Decimal(1_000)
PLAUSIBLE_MAX = Decimal(50_000_000)

# Observed upstream encodings: x1, x10 ... x100000
DIVISOR_LADDER: tuple[int, ...] = (1, 10, 100, 1_000, 10_000, 100_000)

_PRICE_STRIP_RE = re.compile(r"[₫đ,.\s]", re.IGNORECASE)
_NON_DIGIT_RE = re.compile(r"\D")
_SOLD_RE = re.compile(
    r"(\d+(?:[.,]\d+)?)\s*(k|tr)?", re.IGNORECASE
)
_PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*%")


def to_decimal(value: object) -> Decimal | None:
    """Coerce an upstream scalar to ``Decimal``, or ``None`` if unusable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None


def snap_to_band(raw: object) -> Decimal:
    """Divide *raw* down the ladder until it lands in the plausible band.

    Each divisor is tried in order using integer division and the first
    quotient inside ``[PLAUSIBLE_MIN, PLAUSIBLE_MAX]`` wins.  When none
    does, the raw value is returned unchanged; zero, negative and
    unparsable inputs normalise to ``0``.
    """
    value = to_decimal(raw)
    if value is None or value <= 0:
        return Decimal(0)
    for divisor in DIVISOR_LADDER:
        candidate = value // divisor
        if PLAUSIBLE_MIN <= candidate <= PLAUSIBLE_MAX:
            return candidate
    logger.debug("Price %s outside plausible band at every divisor", raw)
    return value


def parse_price_text(text: str | None) -> Decimal:
    """Parse a display price such as ``'1.299.000₫'`` into ``Decimal``.

    VND prices have no minor unit, so every separator is dropped.
    """
    if not text:
        return Decimal(0)
    cleaned = _PRICE_STRIP_RE.sub("", text)
    cleaned = _NON_DIGIT_RE.sub("", cleaned)
    if not cleaned:
        return Decimal(0)
    return Decimal(cleaned)


def parse_sold_count(text: object) -> int | None:
    """Parse ``'Đã bán 1,2k'`` / ``'5tr'`` / ``340`` into an integer."""
    if text is None or isinstance(text, bool):
        return None
    if isinstance(text, int):
        return text
    match = _SOLD_RE.search(str(text))
    if not match:
        return None
    digits = match.group(1)
    suffix = (match.group(2) or "").lower()
    if not suffix:
        # Bare counts use separators for thousands
        return int(digits.replace(",", "").replace(".", ""))
    number = float(digits.replace(",", "."))
    if suffix == "k":
        number *= 1_000
    elif suffix == "tr":
        number *= 1_000_000
    return int(number)


def parse_discount(value: object) -> float | None:
    """Return a 0-1 discount fraction from ``'-20%'``, ``20`` or ``0.2``."""
    if value is None or isinstance(value, bool) or value == "":
        return None
    if isinstance(value, int | float):
        number = float(value)
    else:
        match = _PERCENT_RE.search(str(value))
        if not match:
            return None
        number = float(match.group(1))
    if number <= 0:
        return None
    fraction = number / 100 if number > 1 else number
    return min(fraction, 1.0)


def discount_from_prices(
    price: Decimal, original: Decimal | None,
) -> float | None:
    """Derive the discount fraction when the original price is higher."""
    if original is None or original <= 0 or original <= price:
        return None
    return float((original - price) / original)
