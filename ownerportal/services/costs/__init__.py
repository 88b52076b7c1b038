from __future__ import annotations

# Re-export cost services for centralized imports.

from ownerportal.services.costs.estimator import (
    CostModel,
    CostRates,
    ProviderRates,
    approx_tokens,
    estimate_cost_model,
    estimate_user_cost,
    usd,
)

__all__ = [
    "CostModel",
    "CostRates",
    "ProviderRates",
    "approx_tokens",
    "estimate_cost_model",
    "estimate_user_cost",
    "usd",
]
