import logging
import re
from typing import List, Optional

from fastapi import FastAPI, Depends, Header, Path, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import auth
import cart
import config
import orders
from checkout import place_order, quote_checkout
from database import StoreError, TreeStore, get_store, new_id
from errors import Conflict, Forbidden, NotAuthenticated, NotFound, StoreUnavailable, ValidationFailed
from schemas import (
    UserCreate, UserLogin, PasswordChange, UserPublic, TokenResponse,
    ProductCreate, ProductUpdate, StockUpdate,
    Promotions, BranchCreate,
    CartItemSet, CartQuantity,
    CheckoutRequest, OrderTransition,
    LargeOrderCreate, LargeOrderTransition,
    TrackedOrder,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("pickles_shop")

app = FastAPI(title="Pickles Shop API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ID_PATTERN = r"^[A-Za-z0-9_-]{1,64}$"


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
    unavailable = StoreUnavailable()
    return JSONResponse(status_code=unavailable.status_code, content={"detail": unavailable.detail})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    # the rejected input is left out: it may be NaN or Infinity, which JSON cannot carry
    errors = [{k: v for k, v in err.items() if k != "input"} for err in exc.errors()]
    return JSONResponse(status_code=422, content={"detail": jsonable_encoder(errors)})


# -------------------- Helpers --------------------

def slugify(text: str) -> str:
    text = text.lower().strip()
    text = re.sub(r"[^a-z0-9\s_-]", "", text)
    return re.sub(r"[\s]+", "-", text).strip("-")[:64]


def stock_status(stock: int) -> str:
    if stock <= 0:
        return "out_of_stock"
    if stock <= config.LOW_STOCK_THRESHOLD:
        return "low_stock"
    return "in_stock"


def product_view(product_id: str, product: dict) -> dict:
    return {"id": product_id, **product, "stock_status": stock_status(int(product.get("stock", 0)))}


def require_product(store: TreeStore, product_id: str) -> dict:
    product = store.get(f"products/{product_id}")
    if not isinstance(product, dict):
        raise NotFound("Product not found")
    return product


def auth_dependency(authorization: Optional[str] = Header(None),
                    store: TreeStore = Depends(get_store)) -> auth.Session:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise NotAuthenticated("Missing or invalid authorization header")
    token = authorization.split(" ", 1)[1].strip()
    return auth.resolve_session(store, token)


def admin_dependency(session: auth.Session = Depends(auth_dependency)) -> auth.Session:
    if not session.is_admin:
        raise Forbidden("Administrator access required")
    return session


# -------------------- Health & Test --------------------

@app.get("/")
def read_root():
    return {"message": "Pickles Shop API is running"}


@app.get("/test")
def test_database(store: TreeStore = Depends(get_store)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if config.DATABASE_URL else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        info = store.ping()
        response["database"] = f"✅ Connected & Working ({info['backend']})"
        response["database_name"] = info.get("name")
        response["connection_status"] = "Connected"
        response["collections"] = info.get("collections", [])
    except StoreError as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


@app.post("/seed")
def seed(store: TreeStore = Depends(get_store)):
    """Idempotent sample data plus the configured admin account."""
    created = {"products": 0, "branches": False, "promotions": False, "admin": False}
    if not store.get("products"):
        sample = [
            {"name": "Diamond", "category": "Ores", "description": "Shiny and hard.", "price": 2.0, "stock": 64},
            {"name": "Iron Ingot", "category": "Ores", "description": "Smelted iron.", "price": 0.5, "stock": 128},
            {"name": "Golden Apple", "category": "Food", "description": "Grants absorption.",
             "price": 3.0, "discountPrice": 2.5, "stock": 16},
            {"name": "Starter Kit", "category": "Kits", "description": "Everything for day one.",
             "price": 8.0, "stock": 5, "kit": ["Stone Sword", "Bread x16", "Torch x32"]},
        ]
        for p in sample:
            store.set(f"products/{slugify(p['name'])}", p)
        created["products"] = len(sample)
    if store.get("branches") is None:
        store.set("branches", ["Spawn", "Nether Hub"])
        created["branches"] = True
    if store.get("promotions") is None:
        store.set("promotions", Promotions().model_dump())
        created["promotions"] = True
    if config.ADMIN_USERNAME and config.ADMIN_PASSWORD:
        created["admin"] = auth.ensure_admin(store, config.ADMIN_USERNAME, config.ADMIN_PASSWORD, config.ADMIN_EMAIL)
    return {"status": "ok", "created": created}


# -------------------- Auth --------------------

@app.post("/auth/register", response_model=UserPublic)
def register(payload: UserCreate, store: TreeStore = Depends(get_store)):
    return auth.register_user(store, payload)


@app.post("/auth/login", response_model=TokenResponse)
def login(payload: UserLogin, store: TreeStore = Depends(get_store)):
    session = auth.login_user(store, payload.username, payload.password)
    return TokenResponse(
        access_token=session.token,
        expires_at=session.expires_at.isoformat(),
        user=auth.public_user(session.user_id, session.user),
    )


@app.post("/auth/logout")
def logout(session: auth.Session = Depends(auth_dependency), store: TreeStore = Depends(get_store)):
    auth.logout(store, session.token)
    return {"ok": True}


@app.get("/me", response_model=UserPublic)
def me(session: auth.Session = Depends(auth_dependency)):
    return auth.public_user(session.user_id, session.user)


@app.post("/me/password")
def change_password(payload: PasswordChange, session: auth.Session = Depends(auth_dependency),
                    store: TreeStore = Depends(get_store)):
    auth.change_password(store, session, payload)
    return {"ok": True}


# -------------------- Catalog --------------------

@app.get("/products", response_model=List[dict])
def list_products(q: Optional[str] = Query(None), category: Optional[str] = Query(None),
                  store: TreeStore = Depends(get_store)):
    products = store.get("products") or {}
    out = []
    for product_id, p in products.items():
        if category and p.get("category") != category:
            continue
        if q:
            needle = q.lower()
            haystack = (p.get("name", ""), p.get("description", ""), p.get("category", ""))
            if not any(needle in (field or "").lower() for field in haystack):
                continue
        out.append(product_view(product_id, p))
    out.sort(key=lambda p: p.get("name", ""))
    return out


@app.get("/products/{product_id}", response_model=dict)
def get_product(product_id: str = Path(..., pattern=ID_PATTERN), store: TreeStore = Depends(get_store)):
    return product_view(product_id, require_product(store, product_id))


@app.get("/categories", response_model=List[str])
def list_categories(store: TreeStore = Depends(get_store)):
    products = store.get("products") or {}
    return sorted({p.get("category") for p in products.values() if p.get("category")})


@app.get("/branches", response_model=List[str])
def list_branches(store: TreeStore = Depends(get_store)):
    return store.get("branches") or []


@app.get("/promotions", response_model=Promotions)
def get_promotions(store: TreeStore = Depends(get_store)):
    return Promotions(**(store.get("promotions") or {}))


# -------------------- Cart --------------------

@app.get("/cart", response_model=dict)
def view_cart(session: auth.Session = Depends(auth_dependency), store: TreeStore = Depends(get_store)):
    return cart.view_cart(store, session.user_id)


@app.post("/cart", response_model=dict)
def add_to_cart(payload: CartItemSet, session: auth.Session = Depends(auth_dependency),
                store: TreeStore = Depends(get_store)):
    cart.add_item(store, session.user_id, payload.product_id, payload.quantity)
    return cart.view_cart(store, session.user_id)


@app.put("/cart/{product_id}", response_model=dict)
def set_cart_quantity(payload: CartQuantity, product_id: str = Path(..., pattern=ID_PATTERN),
                      session: auth.Session = Depends(auth_dependency), store: TreeStore = Depends(get_store)):
    cart.set_quantity(store, session.user_id, product_id, payload.quantity)
    return cart.view_cart(store, session.user_id)


@app.delete("/cart/{product_id}", response_model=dict)
def remove_from_cart(product_id: str = Path(..., pattern=ID_PATTERN),
                     session: auth.Session = Depends(auth_dependency), store: TreeStore = Depends(get_store)):
    cart.remove_item(store, session.user_id, product_id)
    return cart.view_cart(store, session.user_id)


@app.delete("/cart", response_model=dict)
def clear_cart(session: auth.Session = Depends(auth_dependency), store: TreeStore = Depends(get_store)):
    cart.clear_cart(store, session.user_id)
    return {"ok": True}


# -------------------- Checkout --------------------

@app.post("/checkout/quote", response_model=dict)
def checkout_quote(payload: CheckoutRequest, session: auth.Session = Depends(auth_dependency),
                   store: TreeStore = Depends(get_store)):
    lines, q = quote_checkout(store, session, payload)
    return {
        "items": [
            {"product_id": l.product_id, "name": l.name, "price": l.unit_price,
             "quantity": l.quantity, "total": l.total}
            for l in lines
        ],
        **q.as_dict(),
    }


@app.post("/checkout", response_model=dict)
def checkout(payload: CheckoutRequest, session: auth.Session = Depends(auth_dependency),
             store: TreeStore = Depends(get_store)):
    order_id, order = place_order(store, session, payload)
    return {"id": order_id, **order}


# -------------------- Orders --------------------

@app.post("/large-orders", response_model=dict)
def submit_large_order(payload: LargeOrderCreate, session: auth.Session = Depends(auth_dependency),
                       store: TreeStore = Depends(get_store)):
    order_id, record = orders.submit_large_order(store, session, payload)
    return {"id": order_id, **record}


@app.get("/orders", response_model=List[TrackedOrder])
def my_orders(session: auth.Session = Depends(auth_dependency), store: TreeStore = Depends(get_store)):
    return orders.list_orders(store, session.user_id)


@app.get("/orders/{order_id}", response_model=TrackedOrder)
def get_order(order_id: str = Path(..., pattern=ID_PATTERN),
              session: auth.Session = Depends(auth_dependency), store: TreeStore = Depends(get_store)):
    return orders.find_order(store, session, order_id)


# -------------------- Admin --------------------

@app.get("/admin/dashboard", response_model=dict)
def admin_dashboard(_: auth.Session = Depends(admin_dependency), store: TreeStore = Depends(get_store)):
    users = store.get("users") or {}
    regular = store.get("orders") or {}
    large = store.get("largeOrders") or {}
    return {
        "pending_users": sum(1 for u in users.values() if not u.get("approved")),
        "pending_orders": sum(1 for o in regular.values() if o.get("status") == "pending"),
        "pending_large_orders": sum(1 for o in large.values() if o.get("status") == "pending"),
        "products": len(store.get("products") or {}),
    }


@app.get("/admin/users", response_model=List[UserPublic])
def admin_list_users(approved: Optional[bool] = Query(None), _: auth.Session = Depends(admin_dependency),
                     store: TreeStore = Depends(get_store)):
    users = store.get("users") or {}
    out = [auth.public_user(uid, u) for uid, u in sorted(users.items())]
    if approved is not None:
        out = [u for u in out if u.approved == approved]
    return out


@app.post("/admin/users/{user_id}/approve", response_model=UserPublic)
def admin_approve_user(user_id: str = Path(..., pattern=ID_PATTERN), _: auth.Session = Depends(admin_dependency),
                       store: TreeStore = Depends(get_store)):
    return auth.approve_user(store, user_id)


@app.delete("/admin/users/{user_id}", response_model=dict)
def admin_delete_user(user_id: str = Path(..., pattern=ID_PATTERN), session: auth.Session = Depends(admin_dependency),
                      store: TreeStore = Depends(get_store)):
    if user_id == session.user_id:
        raise ValidationFailed("You cannot delete your own account")
    auth.delete_user(store, user_id)
    return {"ok": True}


@app.post("/admin/products", response_model=dict)
def admin_create_product(payload: ProductCreate, _: auth.Session = Depends(admin_dependency),
                         store: TreeStore = Depends(get_store)):
    product_id = payload.id or slugify(payload.name) or new_id()
    if store.get(f"products/{product_id}") is not None:
        raise Conflict(f"Product {product_id} already exists")
    data = payload.model_dump(exclude={"id"}, exclude_none=True)
    store.set(f"products/{product_id}", data)
    logger.info("Product %s created", product_id)
    return product_view(product_id, data)


@app.patch("/admin/products/{product_id}", response_model=dict)
def admin_update_product(payload: ProductUpdate, product_id: str = Path(..., pattern=ID_PATTERN),
                         _: auth.Session = Depends(admin_dependency), store: TreeStore = Depends(get_store)):
    require_product(store, product_id)
    # an explicit null clears an optional field such as discountPrice
    update = payload.model_dump(exclude_unset=True)
    for key in ("name", "price", "stock"):
        if key in update and update[key] in (None, ""):
            raise ValidationFailed(f"{key} cannot be cleared")
    if update:
        store.update(f"products/{product_id}", update)
    return product_view(product_id, require_product(store, product_id))


@app.put("/admin/products/{product_id}/stock", response_model=dict)
def admin_set_stock(payload: StockUpdate, product_id: str = Path(..., pattern=ID_PATTERN),
                    _: auth.Session = Depends(admin_dependency), store: TreeStore = Depends(get_store)):
    require_product(store, product_id)
    store.update(f"products/{product_id}", {"stock": payload.stock})
    logger.info("Stock of %s set to %d", product_id, payload.stock)
    return product_view(product_id, require_product(store, product_id))


@app.delete("/admin/products/{product_id}", response_model=dict)
def admin_delete_product(product_id: str = Path(..., pattern=ID_PATTERN), _: auth.Session = Depends(admin_dependency),
                         store: TreeStore = Depends(get_store)):
    require_product(store, product_id)
    store.remove(f"products/{product_id}")
    return {"ok": True}


@app.put("/admin/promotions", response_model=Promotions)
def admin_set_promotions(payload: Promotions, _: auth.Session = Depends(admin_dependency),
                         store: TreeStore = Depends(get_store)):
    store.set("promotions", payload.model_dump())
    logger.info("Promotions updated: %s", payload.model_dump())
    return payload


def _replace_branches(store: TreeStore, current: Optional[List[str]], branches: List[str]) -> None:
    if not store.compare_and_set("branches", current, branches):
        raise Conflict("Branches were changed by someone else, reload and try again")
    logger.info("Branches now %s", branches)


@app.post("/admin/branches", response_model=List[str])
def admin_add_branch(payload: BranchCreate, _: auth.Session = Depends(admin_dependency),
                     store: TreeStore = Depends(get_store)):
    name = payload.name.strip()
    if not name:
        raise ValidationFailed("Branch name cannot be empty")
    current = store.get("branches")
    branches = list(current or [])
    if name in branches:
        raise Conflict(f"Branch {name} already exists")
    branches.append(name)
    _replace_branches(store, current, branches)
    return branches


@app.delete("/admin/branches/{name}", response_model=List[str])
def admin_delete_branch(name: str, _: auth.Session = Depends(admin_dependency),
                        store: TreeStore = Depends(get_store)):
    current = store.get("branches")
    if name not in (current or []):
        raise NotFound("Branch not found")
    branches = [b for b in current if b != name]
    _replace_branches(store, current, branches)
    return branches


@app.get("/admin/orders", response_model=List[TrackedOrder])
def admin_list_orders(kind: Optional[str] = Query(None, pattern="^(regular|large)$"),
                      status: Optional[str] = Query(None), _: auth.Session = Depends(admin_dependency),
                      store: TreeStore = Depends(get_store)):
    views = orders.list_orders(store)
    if kind:
        views = [v for v in views if v.kind == kind]
    if status:
        views = [v for v in views if v.status == status]
    return views


@app.patch("/admin/orders/{order_id}/status", response_model=TrackedOrder)
def admin_transition_order(payload: OrderTransition, order_id: str = Path(..., pattern=ID_PATTERN),
                           _: auth.Session = Depends(admin_dependency), store: TreeStore = Depends(get_store)):
    record = orders.transition_order(store, order_id, payload.status, payload.branch, payload.reason)
    return orders.regular_view(order_id, record)


@app.patch("/admin/large-orders/{order_id}", response_model=TrackedOrder)
def admin_update_large_order(payload: LargeOrderTransition, order_id: str = Path(..., pattern=ID_PATTERN),
                             _: auth.Session = Depends(admin_dependency), store: TreeStore = Depends(get_store)):
    record = orders.transition_large_order(store, order_id, payload.status, payload.finalPrice, payload.reason)
    return orders.large_view(order_id, record)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
