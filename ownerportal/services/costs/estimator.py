from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
import math
from typing import Any

from ownerportal.core.config import Settings


_THOUSAND = Decimal("1000")
_CENT = Decimal("0.01")
_MONTH_DAYS = Decimal("30")


def _to_decimal(value: float | int | Decimal) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def usd(value: Decimal) -> float:
    # Cents, half-up; rounding happens only when serializing.
    return float(value.quantize(_CENT, rounding=ROUND_HALF_UP))


def approx_tokens(text: str | None) -> int:
    """Approximate a token count as one token per four characters."""
    if not text:
        return 0
    return max(1, math.ceil(len(text) / 4))


@dataclass(frozen=True)
class ProviderRates:
    input_per_1k: Decimal
    output_per_1k: Decimal


@dataclass(frozen=True)
class CostRates:
    """Pricing inputs for the blended model; all values in USD."""

    openai: ProviderRates
    anthropic: ProviderRates
    openai_share: Decimal
    infra_monthly: dict[str, Decimal] = field(default_factory=dict)

    @property
    def anthropic_share(self) -> Decimal:
        return Decimal("1") - self.openai_share

    @property
    def blended_input_per_1k(self) -> Decimal:
        return self.openai.input_per_1k * self.openai_share + self.anthropic.input_per_1k * self.anthropic_share

    @property
    def blended_output_per_1k(self) -> Decimal:
        return self.openai.output_per_1k * self.openai_share + self.anthropic.output_per_1k * self.anthropic_share

    @property
    def fixed_infra_monthly(self) -> Decimal:
        return sum(self.infra_monthly.values(), Decimal("0"))

    @classmethod
    def from_settings(cls, settings: Settings) -> "CostRates":
        share = min(Decimal("1"), max(Decimal("0"), _to_decimal(settings.admin_openai_share)))
        return cls(
            openai=ProviderRates(
                input_per_1k=_to_decimal(settings.admin_openai_input_usd_per_1k),
                output_per_1k=_to_decimal(settings.admin_openai_output_usd_per_1k),
            ),
            anthropic=ProviderRates(
                input_per_1k=_to_decimal(settings.admin_anthropic_input_usd_per_1k),
                output_per_1k=_to_decimal(settings.admin_anthropic_output_usd_per_1k),
            ),
            openai_share=share,
            infra_monthly={name: _to_decimal(value) for name, value in settings.infra_line_items().items()},
        )


@dataclass(frozen=True)
class CostModel:
    range_days: int
    input_tokens: int
    output_tokens: int
    openai_range_usd: Decimal
    anthropic_range_usd: Decimal
    ai_range_usd: Decimal
    ai_monthly_usd: Decimal
    fixed_infra_monthly_usd: Decimal
    monthly_total_usd: Decimal
    rates: CostRates

    def to_payload(self) -> dict[str, Any]:
        rates = self.rates
        return {
            "rangeDays": self.range_days,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.input_tokens + self.output_tokens,
            "estimatedAiCostRangeUsd": usd(self.ai_range_usd),
            "estimatedAiCostMonthlyUsd": usd(self.ai_monthly_usd),
            "fixedInfraMonthlyUsd": usd(self.fixed_infra_monthly_usd),
            "estimatedMonthlyTotalUsd": usd(self.monthly_total_usd),
            "providerBreakdownRangeUsd": {
                "openai": usd(self.openai_range_usd),
                "anthropic": usd(self.anthropic_range_usd),
            },
            "fixedInfraItemsUsd": {name: usd(value) for name, value in rates.infra_monthly.items()},
            "assumptions": {
                "openAiShare": float(rates.openai_share),
                "anthropicShare": float(rates.anthropic_share),
                "openAiRates": {
                    "inputPer1k": float(rates.openai.input_per_1k),
                    "outputPer1k": float(rates.openai.output_per_1k),
                },
                "anthropicRates": {
                    "inputPer1k": float(rates.anthropic.input_per_1k),
                    "outputPer1k": float(rates.anthropic.output_per_1k),
                },
            },
        }


def _provider_cost(input_tokens: int, output_tokens: int, rates: ProviderRates, share: Decimal) -> Decimal:
    return (
        (Decimal(input_tokens) / _THOUSAND) * rates.input_per_1k * share
        + (Decimal(output_tokens) / _THOUSAND) * rates.output_per_1k * share
    )


def estimate_cost_model(input_tokens: int, output_tokens: int, range_days: int, rates: CostRates) -> CostModel:
    """Blend token usage across providers and project it to a month.

    Range cost is linear in tokens; the monthly AI figure scales it by
    ``30 / range_days`` and the fixed infrastructure items are added on top.
    """
    days = max(1, int(range_days))
    openai_cost = _provider_cost(input_tokens, output_tokens, rates.openai, rates.openai_share)
    anthropic_cost = _provider_cost(input_tokens, output_tokens, rates.anthropic, rates.anthropic_share)
    range_cost = openai_cost + anthropic_cost
    monthly_ai = range_cost * _MONTH_DAYS / Decimal(days)
    fixed_infra = rates.fixed_infra_monthly
    return CostModel(
        range_days=days,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        openai_range_usd=openai_cost,
        anthropic_range_usd=anthropic_cost,
        ai_range_usd=range_cost,
        ai_monthly_usd=monthly_ai,
        fixed_infra_monthly_usd=fixed_infra,
        monthly_total_usd=monthly_ai + fixed_infra,
        rates=rates,
    )


def estimate_user_cost(input_tokens: int, output_tokens: int, rates: CostRates) -> Decimal:
    # Same blended rates as the aggregate, applied to one user's own totals.
    return (
        (Decimal(input_tokens) / _THOUSAND) * rates.blended_input_per_1k
        + (Decimal(output_tokens) / _THOUSAND) * rates.blended_output_per_1k
    )
