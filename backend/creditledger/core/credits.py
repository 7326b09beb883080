"""Credit calculation and pre-flight cost estimation."""

import logging
import math
from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP
from typing import Optional, Sequence

from .config import Settings, get_settings
from .pricing import ModelPricing, PricingResolver
from ..models.credits import CreditEstimate, UnitCount

logger = logging.getLogger(__name__)

# Credits are tracked to 4 decimal places
CREDIT_QUANTUM = Decimal("0.0001")

UNITS_PER_PRICE_BLOCK = Decimal(1000)

# Heuristic unit counting when no counts are supplied
CHARS_PER_UNIT = 4
UNITS_PER_ATTACHMENT = 85
MAX_ESTIMATED_OUTPUT_UNITS = 1000

# Conservative fallback when estimation itself fails
FALLBACK_UNIT_PADDING = 500
FALLBACK_PRICE_PER_1K = Decimal("0.01")


def quantize_credits(value) -> Decimal:
    """Convert a number to a credit amount with 4 decimal places."""
    return Decimal(str(value)).quantize(CREDIT_QUANTUM, rounding=ROUND_HALF_UP)


def calculate_chargeable_credits(actual_credits) -> int:
    """
    Credits billed to the user for a measured amount.

    Always the ceiling of the actual amount. Settlement and usage records
    rely on this exact rule.
    """
    return int(Decimal(str(actual_credits)).to_integral_value(rounding=ROUND_CEILING))


@dataclass(frozen=True)
class CreditCalculation:
    """Cost and credits for a given unit usage."""
    actual_credits: Decimal
    chargeable_credits: int
    input_cost_usd: Decimal
    output_cost_usd: Decimal
    total_cost_usd: Decimal


def confidence_level(unit_count: UnitCount) -> str:
    """How much to trust a unit count."""
    if unit_count.is_exact:
        return "high"  # Official API
    if "enhanced" in unit_count.method:
        return "medium"
    if "tiktoken" in unit_count.method:
        return "high"
    return "low"


def categorize_accuracy(accuracy: float) -> str:
    """Bucket an actual/estimated ratio."""
    if 0.9 <= accuracy <= 1.1:
        return "excellent"
    if 0.8 <= accuracy <= 1.2:
        return "good"
    if 0.7 <= accuracy <= 1.3:
        return "fair"
    return "poor"


def accuracy_metrics(estimated_units: int, actual_units: int, method: Optional[str] = None) -> dict:
    """
    Compare estimated with measured units for a settled reservation.

    Args:
        estimated_units: Units estimated when the reservation was made
        actual_units: Units reported at settlement
        method: Unit counting method used for the estimate

    Returns:
        Dict with accuracy ratio, percentage error and category
    """
    if not estimated_units:
        return {"accuracy": "unknown", "reason": "no_estimation_data"}

    accuracy = actual_units / estimated_units
    percentage_error = abs((actual_units - estimated_units) / estimated_units) * 100

    return {
        "estimated_units": estimated_units,
        "actual_units": actual_units,
        "accuracy": round(accuracy, 4),
        "percentage_error": round(percentage_error, 2),
        "accuracy_category": categorize_accuracy(accuracy),
        "estimation_method": method or "unknown",
    }


class CostEstimator:
    """
    Converts unit counts into credits.

    Produces the exact charge used for settlement and a buffered estimate
    for sizing reservations. The buffer is advisory only and is never part of
    what the user is charged.
    """

    def __init__(self, pricing: PricingResolver, settings: Optional[Settings] = None):
        self.pricing = pricing
        self.settings = settings or get_settings()

    @property
    def credit_value_usd(self) -> Decimal:
        return Decimal(self.settings.credit_value_usd)

    def calculate_credits(
        self,
        input_units: int,
        output_units: int,
        pricing: ModelPricing,
    ) -> CreditCalculation:
        """
        Calculate credits for a unit usage.

        credits = (input/1000 * input_price + output/1000 * output_price) / credit_value_usd
        """
        input_cost = Decimal(input_units) / UNITS_PER_PRICE_BLOCK * pricing.input_price_per_1k
        output_cost = Decimal(output_units) / UNITS_PER_PRICE_BLOCK * pricing.output_price_per_1k
        total_cost = input_cost + output_cost
        actual_credits = total_cost / self.credit_value_usd

        return CreditCalculation(
            actual_credits=actual_credits,
            chargeable_credits=calculate_chargeable_credits(actual_credits),
            input_cost_usd=input_cost,
            output_cost_usd=output_cost,
            total_cost_usd=total_cost,
        )

    async def credits_for_usage(
        self,
        model: str,
        provider: str,
        input_units: int,
        output_units: int,
    ) -> CreditCalculation:
        """Resolve pricing for the model and calculate credits."""
        pricing = await self.pricing.get_pricing(model, provider)
        return self.calculate_credits(input_units, output_units, pricing)

    def buffer_multiplier(self, unit_count: UnitCount, provider: str) -> float:
        """
        Reservation sizing multiplier for an estimate.

        Less certain counts get a larger buffer, then a per-provider variance
        adjustment, then extra headroom for image-heavy requests.
        """
        s = self.settings
        if unit_count.is_exact:
            buffer = s.buffer_exact
        elif "enhanced" in unit_count.method:
            buffer = s.buffer_enhanced
        elif "tiktoken" in unit_count.method:
            buffer = s.buffer_tiktoken
        else:
            buffer = s.buffer_heuristic

        buffer *= s.buffer_provider_adjustments.get(provider, 1.0)

        if unit_count.image_units > 0 and unit_count.input_units > 0:
            image_ratio = unit_count.image_units / unit_count.input_units
            if image_ratio > s.buffer_image_ratio_threshold:
                buffer *= s.buffer_image_multiplier

        return round(buffer, 2)

    def heuristic_unit_count(
        self,
        content: Optional[str],
        system_prompt: Optional[str] = None,
        conversation_history: Sequence[str] = (),
        attachments: int = 0,
    ) -> UnitCount:
        """Rough unit count from character lengths (~4 chars per unit)."""
        total_chars = (
            len(content or "")
            + len(system_prompt or "")
            + sum(len(message or "") for message in conversation_history)
        )
        text_units = math.ceil(total_chars / CHARS_PER_UNIT)
        attachment_units = attachments * UNITS_PER_ATTACHMENT

        return UnitCount(
            input_units=text_units + attachment_units,
            estimated_output_units=min(int(text_units * 0.5), MAX_ESTIMATED_OUTPUT_UNITS),
            is_exact=False,
            method="simple-estimation",
            image_units=attachment_units,
        )

    async def estimate_message_credits(
        self,
        content: Optional[str],
        model: str,
        provider: str,
        system_prompt: Optional[str] = None,
        conversation_history: Sequence[str] = (),
        attachments: int = 0,
        unit_count: Optional[UnitCount] = None,
    ) -> CreditEstimate:
        """
        Estimate credits for a request before it runs.

        Uses unit counts supplied by the caller when available, otherwise a
        character heuristic. Never raises: on any failure a conservative
        fallback estimate with a larger buffer is returned.

        Args:
            content: Message content
            model: Model identifier
            provider: Provider name
            system_prompt: Optional system prompt
            conversation_history: Prior message contents sent with the request
            attachments: Number of attachments
            unit_count: Unit counts extracted upstream, if any

        Returns:
            CreditEstimate with credits_needed, credits_to_charge and buffer
        """
        try:
            counts = unit_count or self.heuristic_unit_count(
                content, system_prompt, conversation_history, attachments
            )
            pricing = await self.pricing.get_pricing(model, provider)
            calculation = self.calculate_credits(
                counts.input_units, counts.estimated_output_units, pricing
            )

            return CreditEstimate(
                input_units=counts.input_units,
                estimated_output_units=counts.estimated_output_units,
                input_cost_usd=calculation.input_cost_usd,
                output_cost_usd=calculation.output_cost_usd,
                total_cost_usd=calculation.total_cost_usd,
                credits_needed=calculation.actual_credits,
                credits_to_charge=calculation.chargeable_credits,
                is_exact=counts.is_exact,
                token_count_method=counts.method,
                confidence=confidence_level(counts),
                buffer_multiplier=self.buffer_multiplier(counts, provider),
            )
        except Exception as e:
            logger.error(f"Failed to estimate credits for {provider}/{model}: {e}")
            return self.fallback_estimate(content)

    def fallback_estimate(self, content: Optional[str]) -> CreditEstimate:
        """Conservative estimate used when normal estimation fails."""
        units = math.ceil(len(content or "") / CHARS_PER_UNIT) + FALLBACK_UNIT_PADDING
        total_cost = Decimal(units * 2) / UNITS_PER_PRICE_BLOCK * FALLBACK_PRICE_PER_1K
        credits_needed = total_cost / self.credit_value_usd

        return CreditEstimate(
            input_units=units,
            estimated_output_units=units,
            input_cost_usd=total_cost / 2,
            output_cost_usd=total_cost / 2,
            total_cost_usd=total_cost,
            credits_needed=credits_needed,
            credits_to_charge=calculate_chargeable_credits(credits_needed),
            is_exact=False,
            token_count_method="fallback",
            confidence="low",
            buffer_multiplier=self.settings.buffer_fallback,
        )

    @staticmethod
    def reservation_amount(estimate: CreditEstimate) -> int:
        """Whole credits to hold for an estimate, buffer included."""
        return math.ceil(estimate.credits_to_charge * estimate.buffer_multiplier)
