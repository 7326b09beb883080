"""
Per-model unit pricing.

Pricing comes from an ordered list of PricingSource implementations:

1. StorePricingSource - versioned rows in the model_pricing table
2. StaticPricingSource - built-in table shipped with the code

PricingResolver asks each source in that order and returns the first match.
If nothing matches it returns a conservative generic default, so a price is
always available.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import or_, select

from ..db.database import Database
from ..db.models import ModelPricingModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelPricing:
    """USD cost per 1,000 units for a model."""
    input_price_per_1k: Decimal
    output_price_per_1k: Decimal
    source: str = "static"


# Used when no source knows the model; deliberately on the expensive side
GENERIC_DEFAULT_PRICING = ModelPricing(
    input_price_per_1k=Decimal("0.002"),
    output_price_per_1k=Decimal("0.006"),
    source="default",
)

# Built-in prices per provider (USD per 1k units: input, output)
STATIC_PRICING_TABLE: dict[str, dict[str, tuple[str, str]]] = {
    "openai": {
        "gpt-4o-mini-2024-07-18": ("0.00015", "0.0006"),
        "gpt-4.1-2025-04-14": ("0.01", "0.03"),
        "o4-mini-2025-04-16": ("0.003", "0.012"),
        "chatgpt-4o-latest": ("0.0025", "0.01"),
        "gpt-4o-2024-08-06": ("0.0025", "0.01"),
        "gpt-4o": ("0.0025", "0.01"),
        "gpt-4o-mini": ("0.00015", "0.0006"),
        "gpt-4-turbo": ("0.01", "0.03"),
        "gpt-3.5-turbo": ("0.0005", "0.0015"),
    },
    "anthropic": {
        "claude-opus-4-20250514": ("0.015", "0.075"),
        "claude-sonnet-4-20250514": ("0.003", "0.015"),
        "claude-3-7-sonnet-latest": ("0.003", "0.015"),
        "claude-3-5-haiku-latest": ("0.0008", "0.004"),
        "claude-3-5-sonnet-20241022": ("0.003", "0.015"),
        "claude-3-5-haiku-20241022": ("0.0008", "0.004"),
        "claude-3-opus-20240229": ("0.015", "0.075"),
        "claude-3-haiku-20240307": ("0.00025", "0.00125"),
    },
    "google": {
        "gemini-2.5-pro-preview-05-06": ("0.00125", "0.005"),
        "gemini-2.5-flash-preview-05-20": ("0.000075", "0.0003"),
        "gemini-2.0-flash": ("0.000075", "0.0003"),
        "gemini-2.0-flash-lite": ("0.000075", "0.0003"),
        "gemini-1.5-pro": ("0.00125", "0.005"),
        "gemini-1.5-pro-002": ("0.00125", "0.005"),
        "gemini-1.5-flash": ("0.000075", "0.0003"),
        "gemini-1.5-flash-002": ("0.000075", "0.0003"),
        "gemini-1.0-pro": ("0.0005", "0.0015"),
    },
}


class PricingError(ValueError):
    """Invalid pricing data."""


class PricingSource(ABC):
    """Abstract source of model pricing."""

    name: str = "source"

    @abstractmethod
    async def get_pricing(self, model: str, provider: str) -> Optional[ModelPricing]:
        """
        Look up pricing for a model.

        Args:
            model: Model identifier
            provider: Provider name (openai, anthropic, google)

        Returns:
            ModelPricing, or None if this source has no entry for the model
        """
        pass


class StaticPricingSource(PricingSource):
    """Pricing from an in-process table."""

    name = "static"

    def __init__(self, table: Optional[dict[str, dict[str, tuple[str, str]]]] = None):
        self.table = STATIC_PRICING_TABLE if table is None else table

    async def get_pricing(self, model: str, provider: str) -> Optional[ModelPricing]:
        entry = self.table.get(provider, {}).get(model)
        if entry is None:
            return None
        input_price, output_price = entry
        return ModelPricing(
            input_price_per_1k=Decimal(input_price),
            output_price_per_1k=Decimal(output_price),
            source=self.name,
        )


class StorePricingSource(PricingSource):
    """
    Versioned pricing rows in the database.

    The row in force is the most recent one whose effective_date has passed
    and whose deprecated_date is unset or still in the future.
    """

    name = "store"

    def __init__(self, db: Database):
        self.db = db

    async def get_pricing(
        self,
        model: str,
        provider: str,
        at: Optional[datetime] = None,
    ) -> Optional[ModelPricing]:
        now = at or datetime.now(timezone.utc)
        async with self.db.session() as session:
            result = await session.execute(
                select(ModelPricingModel)
                .where(
                    ModelPricingModel.model_name == model,
                    ModelPricingModel.provider == provider,
                    ModelPricingModel.effective_date <= now,
                    or_(
                        ModelPricingModel.deprecated_date.is_(None),
                        ModelPricingModel.deprecated_date > now,
                    ),
                )
                .order_by(ModelPricingModel.effective_date.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()

        if row is None:
            return None

        return ModelPricing(
            input_price_per_1k=Decimal(row.input_price_per_1k),
            output_price_per_1k=Decimal(row.output_price_per_1k),
            source=self.name,
        )

    async def add_pricing(
        self,
        model: str,
        provider: str,
        input_price_per_1k: Decimal,
        output_price_per_1k: Decimal,
        effective_date: datetime,
        deprecated_date: Optional[datetime] = None,
    ) -> ModelPricingModel:
        """
        Insert a pricing version.

        Raises:
            PricingError: If the dates are out of order or a price is negative
        """
        if deprecated_date is not None and effective_date >= deprecated_date:
            raise PricingError("Effective date must be before deprecated date")
        if Decimal(input_price_per_1k) < 0 or Decimal(output_price_per_1k) < 0:
            raise PricingError("Prices must not be negative")

        row = ModelPricingModel(
            model_name=model,
            provider=provider,
            input_price_per_1k=Decimal(input_price_per_1k),
            output_price_per_1k=Decimal(output_price_per_1k),
            effective_date=effective_date,
            deprecated_date=deprecated_date,
        )
        async with self.db.transaction() as session:
            session.add(row)

        logger.info(f"Added pricing for {provider}/{model} effective {effective_date.isoformat()}")
        return row


class PricingResolver:
    """Resolve pricing by asking each source in order."""

    def __init__(
        self,
        sources: Sequence[PricingSource],
        default: ModelPricing = GENERIC_DEFAULT_PRICING,
    ):
        self.sources = list(sources)
        self.default = default

    async def get_pricing(self, model: str, provider: str) -> ModelPricing:
        """Get pricing for a model. Never raises."""
        for source in self.sources:
            try:
                pricing = await source.get_pricing(model, provider)
            except Exception as e:
                logger.warning(f"Pricing source '{source.name}' failed for {provider}/{model}: {e}")
                continue
            if pricing is not None:
                return pricing

        logger.warning(f"Unknown model {model} for {provider}, using conservative default pricing")
        return self.default


def build_default_resolver(db: Database) -> PricingResolver:
    """Resolver with the standard source order: database first, then the static table."""
    return PricingResolver([StorePricingSource(db), StaticPricingSource()])
