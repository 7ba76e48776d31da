"""
Per-user shopping cart kept at ``carts/{username}`` as ``{product_id: quantity}``.

Quantities are checked against the stock visible when the cart changes; the
binding check happens again at checkout.
"""

from typing import Dict

from database import TreeStore
from errors import NotFound, ValidationFailed
from pricing import effective_price


def _product(store: TreeStore, product_id: str) -> dict:
    product = store.get(f"products/{product_id}")
    if not isinstance(product, dict):
        raise NotFound(f"Product {product_id} not found")
    return product


def get_cart(store: TreeStore, user_id: str) -> Dict[str, int]:
    return store.get(f"carts/{user_id}") or {}


def view_cart(store: TreeStore, user_id: str) -> dict:
    items = []
    subtotal = 0.0
    for product_id, quantity in sorted(get_cart(store, user_id).items()):
        product = store.get(f"products/{product_id}")
        if not isinstance(product, dict):
            continue
        price = effective_price(product)
        items.append({
            "product_id": product_id,
            "name": product.get("name", product_id),
            "price": product.get("price"),
            "discountPrice": product.get("discountPrice"),
            "unit_price": price,
            "quantity": quantity,
            "stock": product.get("stock", 0),
            "line_total": price * quantity,
        })
        subtotal += price * quantity
    return {
        "items": items,
        "total_items": sum(i["quantity"] for i in items),
        "subtotal": subtotal,
    }


def add_item(store: TreeStore, user_id: str, product_id: str, quantity: int) -> Dict[str, int]:
    if quantity < 1:
        raise ValidationFailed("Quantity must be at least 1")
    product = _product(store, product_id)
    stock = int(product.get("stock", 0))
    if stock <= 0:
        raise ValidationFailed(f"{product.get('name', product_id)} is out of stock")
    cart = get_cart(store, user_id)
    new_quantity = cart.get(product_id, 0) + quantity
    if new_quantity > stock:
        raise ValidationFailed(f"Only {stock} in stock")
    store.set(f"carts/{user_id}/{product_id}", new_quantity)
    cart[product_id] = new_quantity
    return cart


def set_quantity(store: TreeStore, user_id: str, product_id: str, quantity: int) -> Dict[str, int]:
    """Set a line's quantity. Anything below 1 removes the line."""
    if quantity < 1:
        return remove_item(store, user_id, product_id)
    stock = int(_product(store, product_id).get("stock", 0))
    if quantity > stock:
        raise ValidationFailed(f"Only {stock} in stock")
    store.set(f"carts/{user_id}/{product_id}", quantity)
    return get_cart(store, user_id)


def remove_item(store: TreeStore, user_id: str, product_id: str) -> Dict[str, int]:
    store.remove(f"carts/{user_id}/{product_id}")
    return get_cart(store, user_id)


def clear_cart(store: TreeStore, user_id: str) -> None:
    store.remove(f"carts/{user_id}")
