"""
Order lifecycles and tracking.

Regular orders and large (quote) orders live under separate roots and have
their own state machines. They only meet in the tracking views, where each
record is tagged with its ``kind``.
"""

import logging
import math
from typing import List, Optional, Union

from auth import Session, utcnow
from database import TreeStore
from errors import Conflict, Forbidden, NotFound, ValidationFailed
from schemas import LargeOrderCreate, LargeOrderView, Progress, RegularOrderView

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS = {
    "pending": {"shipped", "rejected"},
    "shipped": {"delivered"},
    "delivered": set(),
    "rejected": set(),
}

LARGE_ORDER_TRANSITIONS = {
    "pending": {"processing", "rejected"},
    "processing": {"shipping"},
    "shipping": {"completed"},
    "completed": set(),
    "rejected": set(),
}

ORDER_PROGRESS = {
    "pending": (25, "Awaiting confirmation"),
    "shipped": (75, "Shipped"),
    "delivered": (100, "Delivered"),
    "rejected": (0, "Rejected"),
}

LARGE_ORDER_PROGRESS = {
    "pending": (20, "Reviewing request"),
    "processing": (40, "Preparing"),
    "shipping": (80, "Shipping"),
    "completed": (100, "Delivered"),
    "rejected": (0, "Rejected"),
}


def _load(store: TreeStore, root: str, order_id: str) -> dict:
    record = store.get(f"{root}/{order_id}")
    if not isinstance(record, dict):
        raise NotFound("Order not found")
    return record


def _commit(store: TreeStore, root: str, order_id: str, record: dict, updates: dict) -> None:
    """Write ``updates`` only if the status is still the one ``record`` was read with."""
    if not store.update_if(f"{root}/{order_id}", {"status": record.get("status")}, updates):
        raise Conflict("The order was changed by someone else, reload it and try again")


def _positive_price(value: float) -> bool:
    return math.isfinite(value) and value > 0


# -------------------- Regular orders --------------------

def transition_order(store: TreeStore, order_id: str, status: str,
                     branch: Optional[str] = None, reason: Optional[str] = None) -> dict:
    record = _load(store, "orders", order_id)
    current = record.get("status", "pending")
    if status not in ORDER_TRANSITIONS.get(current, set()):
        raise ValidationFailed(f"Cannot move an order from {current} to {status}")

    updates = {"status": status}
    if status == "shipped":
        if not branch:
            raise ValidationFailed("A shipping branch is required")
        if branch not in (store.get("branches") or []):
            raise ValidationFailed(f"Unknown branch: {branch}")
        updates["shippingBranch"] = branch
        updates["shippedAt"] = utcnow().isoformat()
    elif status == "rejected":
        if not reason or not reason.strip():
            raise ValidationFailed("A rejection reason is required")
        updates["rejectionReason"] = reason.strip()

    _commit(store, "orders", order_id, record, updates)
    record.update(updates)
    logger.info("Order %s: %s -> %s", order_id, current, status)
    return record


# -------------------- Large orders --------------------

def submit_large_order(store: TreeStore, session: Session, payload: LargeOrderCreate) -> tuple[str, dict]:
    if not session.approved:
        raise Forbidden("Account has not been approved by an administrator yet")
    fields = {
        "minecraftName": payload.minecraftName.strip(),
        "contactInfo": payload.contactInfo.strip(),
        "address": payload.address.strip(),
        "details": payload.details.strip(),
    }
    if not all(fields.values()) or payload.requestedPrice is None:
        raise ValidationFailed("All fields are required")
    if not _positive_price(payload.requestedPrice):
        raise ValidationFailed("Requested price must be a positive number")

    record = {
        "userUid": session.user_id,
        "userEmail": session.email,
        **fields,
        "requestedPrice": payload.requestedPrice,
        "status": "pending",
        "timestamp": utcnow().isoformat(),
    }
    order_id = store.push("largeOrders")
    store.set(f"largeOrders/{order_id}", record)
    logger.info("Large order %s submitted by %s", order_id, session.user_id)
    return order_id, record


def transition_large_order(store: TreeStore, order_id: str, status: Optional[str] = None,
                           final_price: Optional[float] = None, reason: Optional[str] = None) -> dict:
    """
    Move a large order along its lifecycle and/or set its final price.

    A price can be set on its own, or together with a status change, as long
    as the order has not reached a terminal state.
    """
    record = _load(store, "largeOrders", order_id)
    current = record.get("status", "pending")
    if not LARGE_ORDER_TRANSITIONS.get(current):
        raise ValidationFailed(f"Large order is already {current}")

    updates = {}
    if status is not None and status != current:
        if status not in LARGE_ORDER_TRANSITIONS[current]:
            raise ValidationFailed(f"Cannot move a large order from {current} to {status}")
        updates["status"] = status
        if status == "rejected":
            if not reason or not reason.strip():
                raise ValidationFailed("A rejection reason is required")
            updates["rejectionReason"] = reason.strip()
    if final_price is not None:
        if not _positive_price(final_price):
            raise ValidationFailed("Final price must be a positive number")
        updates["finalPrice"] = final_price
    if not updates:
        raise ValidationFailed("Nothing to update")

    _commit(store, "largeOrders", order_id, record, updates)
    record.update(updates)
    logger.info("Large order %s updated: %s", order_id, updates)
    return record


# -------------------- Tracking --------------------

def regular_view(order_id: str, record: dict) -> RegularOrderView:
    percent, label = ORDER_PROGRESS.get(record.get("status"), (0, "Unknown"))
    return RegularOrderView(**record, id=order_id, progress=Progress(percent=percent, label=label))


def large_view(order_id: str, record: dict) -> LargeOrderView:
    percent, label = LARGE_ORDER_PROGRESS.get(record.get("status"), (0, "Unknown"))
    return LargeOrderView(**record, id=order_id, progress=Progress(percent=percent, label=label))


def list_orders(store: TreeStore, user_id: Optional[str] = None) -> List[Union[RegularOrderView, LargeOrderView]]:
    """Both kinds merged, newest first. ``user_id`` restricts to one owner."""
    views: List[Union[RegularOrderView, LargeOrderView]] = []
    for order_id, record in (store.get("orders") or {}).items():
        if user_id is None or record.get("userUid") == user_id:
            views.append(regular_view(order_id, record))
    for order_id, record in (store.get("largeOrders") or {}).items():
        if user_id is None or record.get("userUid") == user_id:
            views.append(large_view(order_id, record))
    views.sort(key=lambda v: v.timestamp, reverse=True)
    return views


def find_order(store: TreeStore, session: Session, order_id: str) -> Union[RegularOrderView, LargeOrderView]:
    """Look an order up by id, regular orders first. Only the owner or an admin may read it."""
    record = store.get(f"orders/{order_id}")
    view = regular_view
    if not isinstance(record, dict):
        record = store.get(f"largeOrders/{order_id}")
        view = large_view
    if not isinstance(record, dict):
        raise NotFound("Order not found")
    if record.get("userUid") != session.user_id and not session.is_admin:
        raise Forbidden("You do not have access to this order")
    return view(order_id, record)
