"""
Ценообразование: калькулятор, промокоды, трекинг-номера.
"""

from returnly.core.pricing.calculator import PricingCalculator
from returnly.core.pricing.models import BoxLine, PriceBreakdown, PromoCode, to_cents

__all__ = ["BoxLine", "PriceBreakdown", "PricingCalculator", "PromoCode", "to_cents"]
