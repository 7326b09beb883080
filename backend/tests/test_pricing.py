"""Tests for pricing sources and resolution order."""

from datetime import timedelta
from decimal import Decimal

import pytest

from creditledger.core.pricing import (
    GENERIC_DEFAULT_PRICING,
    PricingError,
    PricingResolver,
    PricingSource,
    StaticPricingSource,
    StorePricingSource,
    build_default_resolver,
)
from creditledger.db.models import utc_now


class FailingSource(PricingSource):
    name = "failing"

    async def get_pricing(self, model, provider):
        raise ConnectionError("pricing store unreachable")


class TestStaticPricing:
    """Test the built-in price table."""

    @pytest.mark.asyncio
    async def test_known_model(self):
        pricing = await StaticPricingSource().get_pricing("claude-3-haiku-20240307", "anthropic")

        assert pricing.input_price_per_1k == Decimal("0.00025")
        assert pricing.output_price_per_1k == Decimal("0.00125")
        assert pricing.source == "static"

    @pytest.mark.asyncio
    async def test_unknown_model(self):
        assert await StaticPricingSource().get_pricing("gpt-99", "openai") is None


class TestResolver:
    """Test source ordering and fallbacks."""

    @pytest.mark.asyncio
    async def test_unknown_model_gets_generic_default(self):
        resolver = PricingResolver([StaticPricingSource()])

        assert await resolver.get_pricing("mystery-model", "acme") == GENERIC_DEFAULT_PRICING

    @pytest.mark.asyncio
    async def test_failing_source_is_skipped(self):
        resolver = PricingResolver([FailingSource(), StaticPricingSource()])

        pricing = await resolver.get_pricing("gpt-4o", "openai")

        assert pricing.input_price_per_1k == Decimal("0.0025")

    @pytest.mark.asyncio
    async def test_store_takes_precedence(self, db):
        store = StorePricingSource(db)
        await store.add_pricing(
            "gpt-4o", "openai", Decimal("0.002"), Decimal("0.008"),
            effective_date=utc_now() - timedelta(days=1),
        )

        pricing = await build_default_resolver(db).get_pricing("gpt-4o", "openai")

        assert pricing.source == "store"
        assert pricing.input_price_per_1k == Decimal("0.002")
        assert pricing.output_price_per_1k == Decimal("0.008")


class TestStorePricing:
    """Test versioned pricing rows."""

    @pytest.mark.asyncio
    async def test_most_recent_effective_row_wins(self, db):
        store = StorePricingSource(db)
        await store.add_pricing(
            "claude-x", "anthropic", Decimal("0.001"), Decimal("0.005"),
            effective_date=utc_now() - timedelta(days=30),
        )
        await store.add_pricing(
            "claude-x", "anthropic", Decimal("0.002"), Decimal("0.006"),
            effective_date=utc_now() - timedelta(days=1),
        )
        await store.add_pricing(
            "claude-x", "anthropic", Decimal("0.009"), Decimal("0.009"),
            effective_date=utc_now() + timedelta(days=7),
        )

        pricing = await store.get_pricing("claude-x", "anthropic")

        assert pricing.input_price_per_1k == Decimal("0.002")

    @pytest.mark.asyncio
    async def test_deprecated_rows_ignored(self, db):
        store = StorePricingSource(db)
        await store.add_pricing(
            "old-model", "openai", Decimal("0.001"), Decimal("0.002"),
            effective_date=utc_now() - timedelta(days=30),
            deprecated_date=utc_now() - timedelta(days=1),
        )

        assert await store.get_pricing("old-model", "openai") is None

    @pytest.mark.asyncio
    async def test_invalid_dates_rejected(self, db):
        store = StorePricingSource(db)
        now = utc_now()

        with pytest.raises(PricingError):
            await store.add_pricing(
                "m", "openai", Decimal("0.001"), Decimal("0.002"),
                effective_date=now, deprecated_date=now - timedelta(days=1),
            )

    @pytest.mark.asyncio
    async def test_negative_prices_rejected(self, db):
        with pytest.raises(PricingError):
            await StorePricingSource(db).add_pricing(
                "m", "openai", Decimal("-0.001"), Decimal("0.002"), effective_date=utc_now(),
            )
