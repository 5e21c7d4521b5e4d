"""
Pricing for Sora video generation.

Prices are USD per second of generated video. The base model is flat-rate;
the pro model depends on the output size. Unknown combinations cost nothing.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List

BASE_MODEL = "sora-2"
PRO_MODEL = "sora-2-pro"

STANDARD_SIZES = ("1280x720", "720x1280")
EXTENDED_SIZES = ("1792x1024", "1024x1792")

SUPPORTED_SIZES: Dict[str, List[str]] = {
    BASE_MODEL: list(STANDARD_SIZES),
    PRO_MODEL: list(STANDARD_SIZES + EXTENDED_SIZES),
}

SUPPORTED_SECONDS = (4, 8, 12)

# Price per second (USD)
BASE_RATE = Decimal("0.10")
PRO_RATES: Dict[str, Decimal] = {
    "1280x720": Decimal("0.30"),
    "720x1280": Decimal("0.30"),
    "1792x1024": Decimal("0.50"),
    "1024x1792": Decimal("0.50"),
}


def _rate(model: str, size: str) -> Decimal:
    if model == BASE_MODEL:
        return BASE_RATE
    if model == PRO_MODEL:
        return PRO_RATES.get(size, Decimal("0"))
    return Decimal("0")


def price_per_second(model: str, size: str) -> float:
    """
    Get the per-second price for a model and size.

    Args:
        model: "sora-2" or "sora-2-pro"
        size: Output size, e.g. "1280x720"

    Returns:
        Price in USD per second, 0.0 for unknown combinations.
    """
    return float(_rate(model, size))


def estimate_cost(model: str, duration: int, size: str) -> float:
    """
    Calculate the cost of generating one video.

    Args:
        model: Model name
        duration: Length in seconds
        size: Output size

    Returns:
        Total cost in USD, rounded half-up to 2 decimals.
    """
    total = _rate(model, size) * Decimal(int(duration))
    return float(total.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def upgrade_cost(video) -> float:
    """Cost of re-generating `video` with the pro model, all else unchanged."""
    return estimate_cost(PRO_MODEL, video.duration, video.size)


def is_supported(model: str, duration: int, size: str) -> bool:
    return model in SUPPORTED_SIZES and size in SUPPORTED_SIZES[model] and duration in SUPPORTED_SECONDS
