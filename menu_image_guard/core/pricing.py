"""
Pricing for image generation models.

Holds the fixed per-image price of every supported model and the default
global spend cap.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Union

DEFAULT_IMAGE_MODEL = "gemini-2.5-flash-image"
DEFAULT_BUDGET_CAP = Decimal("25.00")

# Ledger amounts are kept to a hundredth of a cent
MONEY_QUANTUM = Decimal("0.0001")


@dataclass(frozen=True)
class ImageModelPricing:
    """Per-image pricing for a specific model."""
    cost_per_image: Decimal


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported image models."""
    prices: Dict[str, ImageModelPricing]

    def get_pricing(self, model: str) -> ImageModelPricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier

        Returns:
            ImageModelPricing for the model

        Raises:
            ValueError: If model is not supported
        """
        if model not in self.prices:
            raise ValueError(f"Unsupported model: {model}")
        return self.prices[model]


# Fixed pricing table - no dynamic fetching
PRICING_TABLE = PricingTable({
    "gemini-2.5-flash-image": ImageModelPricing(cost_per_image=Decimal("0.04")),
    "gemini-2.5-flash-image-preview": ImageModelPricing(cost_per_image=Decimal("0.04")),
    "gemini-3-pro-image-preview": ImageModelPricing(cost_per_image=Decimal("0.134")),
})


def to_money(value: Union[int, float, str, Decimal]) -> Decimal:
    """Convert a stored or configured amount to a quantized Decimal.

    Floats go through ``str`` first so 0.04 stays 0.04 rather than its
    binary expansion.
    """
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def cost_per_image(model: str) -> Decimal:
    """Price of one generated image for ``model``.

    Raises:
        ValueError: If model is not supported
    """
    return to_money(PRICING_TABLE.get_pricing(model).cost_per_image)
