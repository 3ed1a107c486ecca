"""
Pricing calculations and rate management.

Handles cost computations for the supported models and fixed-cost tasks.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

from .errors import UnknownModelError
from .token_counter import TokenUsage

ONE_MILLION = Decimal("1000000")


@dataclass(frozen=True)
class ModelPricing:
    """Per-million-token pricing for a specific model."""
    input_per_m: Decimal
    output_per_m: Decimal
    cache_read_multiplier: Optional[Decimal] = None  # applied on top of input rate
    cache_write_multiplier: Optional[Decimal] = None


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Dict[str, ModelPricing]

    def has_pricing(self, model: str) -> bool:
        return model in self.prices

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model

        Raises:
            UnknownModelError: If model is not priced
        """
        if model not in self.prices:
            raise UnknownModelError(f"Unsupported model: {model}")
        return self.prices[model]


@dataclass(frozen=True)
class CostBreakdown:
    """Cost of one model call in USD, at full precision."""
    input: Decimal
    output: Decimal
    total: Decimal
    cache_read: Optional[Decimal] = None
    cache_write: Optional[Decimal] = None

    def details(self) -> Dict[str, float]:
        """Cost breakdown with only the components that are present."""
        result = {"input": float(self.input), "output": float(self.output)}
        if self.cache_read is not None:
            result["cache_read"] = float(self.cache_read)
        if self.cache_write is not None:
            result["cache_write"] = float(self.cache_write)
        result["total"] = float(self.total)
        return result


# Fixed pricing table - no dynamic fetching, no defaults
PRICING_TABLE = PricingTable({
    "moonshotai/kimi-k2.5": ModelPricing(
        input_per_m=Decimal("0.45"),
        output_per_m=Decimal("2.2"),
    ),
    "anthropic/claude-sonnet-4": ModelPricing(
        input_per_m=Decimal("3"),
        output_per_m=Decimal("15"),
    ),
    "anthropic/claude-opus-4": ModelPricing(
        input_per_m=Decimal("15"),
        output_per_m=Decimal("75"),
    ),
    "openai/gpt-4.1": ModelPricing(
        input_per_m=Decimal("2"),
        output_per_m=Decimal("8"),
    ),
    "openai/o3-mini": ModelPricing(
        input_per_m=Decimal("1.1"),
        output_per_m=Decimal("4.4"),
    ),
    "google/gemini-2.5-pro-preview": ModelPricing(
        input_per_m=Decimal("1.25"),
        output_per_m=Decimal("10"),
    ),
    "google/gemini-2.5-flash-preview": ModelPricing(
        input_per_m=Decimal("0.15"),
        output_per_m=Decimal("0.6"),
    ),
    "deepseek/deepseek-chat-v3": ModelPricing(
        input_per_m=Decimal("0.3"),
        output_per_m=Decimal("0.88"),
    ),
    "meta-llama/llama-4-maverick": ModelPricing(
        input_per_m=Decimal("0.25"),
        output_per_m=Decimal("0.85"),
    ),
    "claude-haiku-4-5-20251001": ModelPricing(
        input_per_m=Decimal("1"),
        output_per_m=Decimal("5"),
        cache_read_multiplier=Decimal("0.1"),
        cache_write_multiplier=Decimal("1.25"),
    ),
})

# Costs of non-model tasks in USD
FIXED_COSTS: Dict[str, Decimal] = {
    "sandbox": Decimal("0.05"),
}


def has_model_pricing(model: str) -> bool:
    """Whether the model is billed by this system at all."""
    return PRICING_TABLE.has_pricing(model)


def fixed_cost_for(task_type: str) -> Decimal:
    """Fixed cost for a task type, zero when the task is not priced."""
    return FIXED_COSTS.get(task_type, Decimal("0"))


def calculate_cost(model: str, usage: TokenUsage) -> CostBreakdown:
    """Calculate the cost of a model call without rounding.

    Each component is ``tokens * rate_per_million / 1_000_000``. Cache reads
    and writes are charged at the input rate times their multiplier, and
    only when the model defines that multiplier. Rounding is left to display
    code; the ledger stores the full-precision value.

    Args:
        model: Model identifier (check ``has_model_pricing`` first)
        usage: Token usage data

    Returns:
        CostBreakdown with per-component and total cost

    Raises:
        UnknownModelError: If model is not priced
    """
    pricing = PRICING_TABLE.get_pricing(model)

    input_cost = Decimal(usage.input_tokens) * pricing.input_per_m / ONE_MILLION
    output_cost = Decimal(usage.output_tokens) * pricing.output_per_m / ONE_MILLION

    cache_read_cost = None
    if pricing.cache_read_multiplier and usage.cache_read_tokens:
        cache_read_cost = (
            Decimal(usage.cache_read_tokens) * pricing.input_per_m
            * pricing.cache_read_multiplier / ONE_MILLION
        )

    cache_write_cost = None
    if pricing.cache_write_multiplier and usage.cache_write_tokens:
        cache_write_cost = (
            Decimal(usage.cache_write_tokens) * pricing.input_per_m
            * pricing.cache_write_multiplier / ONE_MILLION
        )

    total = input_cost + output_cost + (cache_read_cost or 0) + (cache_write_cost or 0)

    return CostBreakdown(
        input=input_cost,
        output=output_cost,
        total=total,
        cache_read=cache_read_cost,
        cache_write=cache_write_cost,
    )
