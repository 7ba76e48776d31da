"""
Checkout pricing.

Rules are applied in a fixed order: subtotal, promotion discount, shipping fee,
points earned, points redeemed, final total. The thresholds and fees are
configurable through ``PricingRules``.
"""

import math
from dataclasses import dataclass, asdict
from typing import Iterable, Mapping, Optional

import config
from errors import ValidationFailed


@dataclass(frozen=True)
class PricingRules:
    normal_fee: float = config.NORMAL_SHIPPING_FEE
    normal_free_threshold: float = config.NORMAL_FREE_SHIPPING_THRESHOLD
    express_fee: float = config.EXPRESS_SHIPPING_FEE
    express_free_threshold: float = config.EXPRESS_FREE_SHIPPING_THRESHOLD
    points_rate: float = config.POINTS_BASE_RATE
    # True: points_boost=50 means +50%. False: points_boost is added to the multiplier as-is.
    boost_as_percent: bool = config.POINTS_BOOST_AS_PERCENT


DEFAULT_RULES = PricingRules()


@dataclass(frozen=True)
class PricedLine:
    product_id: str
    name: str
    unit_price: float
    quantity: int

    @property
    def total(self) -> float:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class Quote:
    subtotal: float
    discount: float
    shipping_fee: float
    points_used: int
    points_earned: int
    total: int

    def as_dict(self) -> dict:
        out = asdict(self)
        out["display"] = {
            "subtotal": round(self.subtotal, 1),
            "discount": round(self.discount, 1),
            "shipping_fee": round(self.shipping_fee, 1),
            "points_used": round(float(self.points_used), 1),
        }
        return out


def effective_price(product: Mapping) -> float:
    """Discount price when one is set and positive, otherwise the list price."""
    discount_price = product.get("discountPrice")
    if discount_price and discount_price > 0:
        return float(discount_price)
    return float(product.get("price", 0))


def subtotal_of(lines: Iterable[PricedLine]) -> float:
    return sum(line.total for line in lines)


def discount_for(subtotal: float, promotions: Mapping) -> float:
    pct = promotions.get("discount_percentage") or 0
    return subtotal * (pct / 100) if pct else 0.0


def shipping_fee_for(subtotal: float, delivery_method: str, promotions: Mapping,
                     rules: PricingRules = DEFAULT_RULES) -> float:
    if promotions.get("free_shipping"):
        return 0.0
    if delivery_method == "express":
        return 0.0 if subtotal >= rules.express_free_threshold else rules.express_fee
    if delivery_method == "normal":
        return 0.0 if subtotal >= rules.normal_free_threshold else rules.normal_fee
    raise ValidationFailed(f"Unknown delivery method: {delivery_method}")


def points_earned_for(subtotal: float, promotions: Mapping, rules: PricingRules = DEFAULT_RULES) -> int:
    boost = promotions.get("points_boost") or 0
    if rules.boost_as_percent:
        boost = boost / 100
    # round() guards against float noise such as 2.9999999 before flooring
    return math.floor(round(subtotal * rules.points_rate * (1 + boost), 6))


def points_to_use(choice: str, balance: int, subtotal: float, requested: int = 0) -> int:
    cap = max(0, min(int(balance), math.floor(subtotal)))
    if choice == "none":
        return 0
    if choice == "all":
        return cap
    if choice == "partial":
        return min(max(int(requested), 0), cap)
    raise ValidationFailed(f"Unknown points option: {choice}")


def quote(lines: Iterable[PricedLine], promotions: Optional[Mapping], delivery_method: str,
          points_choice: str = "none", points_balance: int = 0, points_requested: int = 0,
          rules: PricingRules = DEFAULT_RULES) -> Quote:
    """Price a cart. Raises ValidationFailed when the total would be negative."""
    promotions = promotions or {}
    lines = list(lines)
    subtotal = subtotal_of(lines)
    discount = discount_for(subtotal, promotions)
    shipping = shipping_fee_for(subtotal, delivery_method, promotions, rules)
    earned = points_earned_for(subtotal, promotions, rules)
    used = points_to_use(points_choice, points_balance, subtotal, points_requested)
    total = math.ceil(round(subtotal - discount + shipping - used, 6))
    if total < 0:
        raise ValidationFailed("Order total cannot be negative")
    return Quote(
        subtotal=subtotal,
        discount=discount,
        shipping_fee=shipping,
        points_used=used,
        points_earned=earned,
        total=total,
    )
