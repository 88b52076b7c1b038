from __future__ import annotations

from decimal import Decimal

import pytest

from ownerportal.services.costs import (
    CostRates,
    ProviderRates,
    approx_tokens,
    estimate_cost_model,
    estimate_user_cost,
)
from ownerportal.tests.utils.identity import identity_settings


def _rates(**infra: str) -> CostRates:
    return CostRates(
        openai=ProviderRates(input_per_1k=Decimal("0.00015"), output_per_1k=Decimal("0.0006")),
        anthropic=ProviderRates(input_per_1k=Decimal("0.0008"), output_per_1k=Decimal("0.004")),
        openai_share=Decimal("0.7"),
        infra_monthly={name: Decimal(value) for name, value in infra.items()},
    )


def test_zero_tokens_costs_only_fixed_infra() -> None:
    rates = _rates(vercel="20", supabase="25", other="4.5")
    model = estimate_cost_model(0, 0, 30, rates)
    assert model.ai_range_usd == Decimal("0")
    assert model.monthly_total_usd == Decimal("49.5")
    payload = model.to_payload()
    assert payload["estimatedAiCostRangeUsd"] == 0.0
    assert payload["estimatedMonthlyTotalUsd"] == 49.5
    assert payload["fixedInfraItemsUsd"] == {"vercel": 20.0, "supabase": 25.0, "other": 4.5}


def test_range_cost_is_linear_in_tokens() -> None:
    rates = _rates()
    single = estimate_cost_model(1_000, 500, 30, rates).ai_range_usd
    tripled = estimate_cost_model(3_000, 1_500, 30, rates).ai_range_usd
    assert tripled == single * 3


def test_blended_cost_matches_provider_shares() -> None:
    rates = _rates()
    model = estimate_cost_model(1_000_000, 0, 30, rates)
    # 1000 * (0.00015 * 0.7 + 0.0008 * 0.3)
    assert model.ai_range_usd == Decimal("0.345")
    assert model.openai_range_usd == Decimal("0.105")
    assert model.anthropic_range_usd == Decimal("0.24")


def test_monthly_projection_scales_by_range() -> None:
    rates = _rates()
    week = estimate_cost_model(7_000, 7_000, 7, rates)
    assert week.ai_monthly_usd == week.ai_range_usd * Decimal(30) / Decimal(7)
    assert estimate_cost_model(10, 10, 0, rates).range_days == 1


def test_user_cost_uses_blended_rates() -> None:
    rates = _rates()
    model = estimate_cost_model(2_000, 1_000, 30, rates)
    assert estimate_user_cost(2_000, 1_000, rates) == model.ai_range_usd


def test_share_is_clamped_from_settings() -> None:
    rates = CostRates.from_settings(identity_settings(admin_openai_share=1.8, admin_vercel_monthly_usd=12.5))
    assert rates.openai_share == Decimal("1")
    assert rates.anthropic_share == Decimal("0")
    assert rates.fixed_infra_monthly == Decimal("12.5")
    low = CostRates.from_settings(identity_settings(admin_openai_share=-0.2))
    assert low.openai_share == Decimal("0")


@pytest.mark.parametrize(
    ("text", "expected"),
    [(None, 0), ("", 0), ("a", 1), ("abcd", 1), ("abcde", 2), ("x" * 400, 100)],
)
def test_approx_tokens(text, expected) -> None:
    assert approx_tokens(text) == expected
