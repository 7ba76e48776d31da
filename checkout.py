"""
Checkout: turn a cart into an order.

The commit is all-or-nothing. Stock is reserved line by line with the store's
conditional ``adjust`` (so two checkouts can never both take the last unit),
then the point balance is moved, then the order is written. If any step fails,
every effect already applied is reverted before the error propagates.
"""

import logging
import re
from typing import Dict, List, Tuple

from auth import Session, utcnow
from cart import clear_cart, get_cart
from database import StoreError, TreeStore
from errors import Forbidden, InsufficientStock, NotFound, ValidationFailed
from pricing import DEFAULT_RULES, PricedLine, PricingRules, Quote, effective_price, quote
from schemas import PRODUCT_ID_PATTERN, CheckoutRequest

logger = logging.getLogger(__name__)


def cart_items(store: TreeStore, session: Session, req: CheckoutRequest) -> Dict[str, int]:
    items = req.items if req.items is not None else get_cart(store, session.user_id)
    if not items:
        raise ValidationFailed("Cart is empty")
    for product_id, quantity in items.items():
        if not re.match(PRODUCT_ID_PATTERN, product_id):
            raise ValidationFailed(f"Invalid product id: {product_id}")
        if not isinstance(quantity, int) or quantity < 1:
            raise ValidationFailed(f"Quantity for {product_id} must be at least 1")
    return items


def price_lines(store: TreeStore, items: Dict[str, int]) -> List[PricedLine]:
    """Price every line from the live product record."""
    lines = []
    for product_id in sorted(items):
        product = store.get(f"products/{product_id}")
        if not isinstance(product, dict):
            raise NotFound(f"Product {product_id} not found")
        lines.append(PricedLine(
            product_id=product_id,
            name=product.get("name", product_id),
            unit_price=effective_price(product),
            quantity=items[product_id],
        ))
    return lines


def points_balance(store: TreeStore, user_id: str) -> int:
    return int(store.get(f"users/{user_id}/points") or 0)


def quote_checkout(store: TreeStore, session: Session, req: CheckoutRequest,
                   rules: PricingRules = DEFAULT_RULES) -> Tuple[List[PricedLine], Quote]:
    lines = price_lines(store, cart_items(store, session, req))
    q = quote(
        lines,
        store.get("promotions"),
        req.deliveryMethod,
        points_choice=req.usePoints,
        points_balance=points_balance(store, session.user_id),
        points_requested=req.pointsToUse,
        rules=rules,
    )
    return lines, q


def _check_branch(store: TreeStore, branch) -> str:
    if not branch:
        raise ValidationFailed("Select a branch")
    if branch not in (store.get("branches") or []):
        raise ValidationFailed(f"Unknown branch: {branch}")
    return branch


def _release(store: TreeStore, user_id: str, reserved: List[Tuple[str, int]], points_delta: int) -> None:
    """Undo reservations after a failed commit. Keeps going if one undo fails."""
    for product_id, quantity in reserved:
        try:
            store.adjust(f"products/{product_id}", "stock", quantity)
        except StoreError:
            logger.exception("Could not return %s units of %s to stock", quantity, product_id)
    if points_delta:
        try:
            store.adjust(f"users/{user_id}", "points", -points_delta)
        except StoreError:
            logger.exception("Could not revert a %s point change for %s", points_delta, user_id)


def place_order(store: TreeStore, session: Session, req: CheckoutRequest,
                rules: PricingRules = DEFAULT_RULES) -> Tuple[str, dict]:
    """Commit a checkout. Returns (order id, order record)."""
    if not session.approved:
        raise Forbidden("Account has not been approved by an administrator yet")
    branch = _check_branch(store, req.branch)
    lines, q = quote_checkout(store, session, req, rules)

    order = {
        "userUid": session.user_id,
        "userEmail": session.email,
        "items": {
            line.product_id: {
                "name": line.name,
                "price": line.unit_price,
                "quantity": line.quantity,
                "total": line.total,
            }
            for line in lines
        },
        "subtotal": q.subtotal,
        "discount": q.discount,
        "shippingFee": q.shipping_fee,
        "pointsUsed": q.points_used,
        "pointsEarned": q.points_earned,
        "total": q.total,
        "deliveryMethod": req.deliveryMethod,
        "paymentMethod": req.paymentMethod,
        "branch": branch,
        "status": "pending",
        "timestamp": utcnow().isoformat(),
    }

    reserved: List[Tuple[str, int]] = []
    points_delta = 0
    try:
        for line in lines:
            left = store.adjust(f"products/{line.product_id}", "stock", -line.quantity,
                                require_at_least=line.quantity)
            if left is None:
                available = store.get(f"products/{line.product_id}/stock") or 0
                raise InsufficientStock(line.product_id, line.name, line.quantity, int(available))
            reserved.append((line.product_id, line.quantity))

        delta = q.points_earned - q.points_used
        if store.adjust(f"users/{session.user_id}", "points", delta, require_at_least=q.points_used) is None:
            raise ValidationFailed("Not enough points")
        points_delta = delta

        order_id = store.push("orders")
        store.set(f"orders/{order_id}", order)
    except Exception:
        _release(store, session.user_id, reserved, points_delta)
        if reserved:
            logger.warning("Checkout for %s rolled back (%d reservations released)",
                           session.user_id, len(reserved))
        raise

    clear_cart(store, session.user_id)
    logger.info("Order %s placed by %s: total=%s points %+d",
                order_id, session.user_id, q.total, points_delta)
    return order_id, order
