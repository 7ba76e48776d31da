import threading

import pytest

import orders
from checkout import place_order
from errors import Conflict, Forbidden, NotFound, ValidationFailed
from schemas import CheckoutRequest, LargeOrderCreate


def regular_record(user, timestamp, status="pending"):
    return {
        "userUid": user,
        "userEmail": f"{user}@pickles.io",
        "items": {"diamond": {"name": "Diamond", "price": 2.0, "quantity": 1, "total": 2.0}},
        "subtotal": 2.0,
        "discount": 0.0,
        "shippingFee": 0.5,
        "pointsUsed": 0,
        "pointsEarned": 0,
        "total": 3,
        "deliveryMethod": "normal",
        "paymentMethod": "cod",
        "branch": "Spawn",
        "status": status,
        "timestamp": timestamp,
    }


def large_record(user, timestamp, status="pending"):
    return {
        "userUid": user,
        "minecraftName": "Steve123",
        "contactInfo": "steve#1234",
        "address": "100, 64, -200",
        "details": "10 stacks of diamonds",
        "requestedPrice": 150.0,
        "status": status,
        "timestamp": timestamp,
    }


def large_request(**overrides):
    fields = {
        "minecraftName": "Steve123",
        "contactInfo": "steve#1234",
        "address": "100, 64, -200",
        "details": "10 stacks of diamonds",
        "requestedPrice": 150.0,
    }
    fields.update(overrides)
    return LargeOrderCreate(**fields)


@pytest.fixture
def order_id(store, session_for):
    oid, _ = place_order(store, session_for("alice"), CheckoutRequest(items={"diamond": 1}, branch="Spawn"))
    return oid


# -------------------- Regular orders --------------------

def test_ship_then_deliver(store, order_id):
    shipped = orders.transition_order(store, order_id, "shipped", branch="Nether Hub")
    assert shipped["status"] == "shipped"
    assert shipped["shippingBranch"] == "Nether Hub"
    assert shipped["shippedAt"]
    assert store.get(f"orders/{order_id}/status") == "shipped"

    orders.transition_order(store, order_id, "delivered")
    assert store.get(f"orders/{order_id}/status") == "delivered"


def test_shipping_requires_a_known_branch(store, order_id):
    with pytest.raises(ValidationFailed):
        orders.transition_order(store, order_id, "shipped")
    with pytest.raises(ValidationFailed):
        orders.transition_order(store, order_id, "shipped", branch="The End")
    assert store.get(f"orders/{order_id}/status") == "pending"


def test_no_way_back_from_shipped(store, order_id):
    orders.transition_order(store, order_id, "shipped", branch="Spawn")
    with pytest.raises(ValidationFailed):
        orders.transition_order(store, order_id, "pending")
    with pytest.raises(ValidationFailed):
        orders.transition_order(store, order_id, "rejected", reason="changed my mind")


def test_pending_cannot_skip_to_delivered(store, order_id):
    with pytest.raises(ValidationFailed):
        orders.transition_order(store, order_id, "delivered")


def test_rejection_needs_a_reason(store, order_id):
    with pytest.raises(ValidationFailed):
        orders.transition_order(store, order_id, "rejected", reason="   ")
    rejected = orders.transition_order(store, order_id, "rejected", reason="Out of coal")
    assert rejected["rejectionReason"] == "Out of coal"
    with pytest.raises(ValidationFailed):
        orders.transition_order(store, order_id, "shipped", branch="Spawn")


def test_transition_unknown_order(store):
    with pytest.raises(NotFound):
        orders.transition_order(store, "nope", "shipped", branch="Spawn")


# -------------------- Large orders --------------------

def test_submit_large_order(store, session_for):
    order_id, record = orders.submit_large_order(store, session_for("alice"), large_request())
    assert record["status"] == "pending"
    assert record["userUid"] == "alice"
    assert store.get(f"largeOrders/{order_id}") == record


@pytest.mark.parametrize("overrides", [
    {"minecraftName": ""},
    {"details": "   "},
    {"requestedPrice": None},
    {"requestedPrice": 0},
    {"requestedPrice": -5},
])
def test_large_order_validation(store, session_for, overrides):
    with pytest.raises(ValidationFailed):
        orders.submit_large_order(store, session_for("alice"), large_request(**overrides))
    assert store.get("largeOrders") is None


def test_large_order_lifecycle_with_final_price(store, session_for):
    order_id, _ = orders.submit_large_order(store, session_for("alice"), large_request())

    record = orders.transition_large_order(store, order_id, final_price=140.0)
    assert record["status"] == "pending"
    assert record["finalPrice"] == 140.0

    orders.transition_large_order(store, order_id, "processing", final_price=135.5)
    orders.transition_large_order(store, order_id, "shipping")
    record = orders.transition_large_order(store, order_id, "completed")
    assert record["status"] == "completed"
    assert store.get(f"largeOrders/{order_id}/finalPrice") == 135.5

    with pytest.raises(ValidationFailed):
        orders.transition_large_order(store, order_id, final_price=200.0)


def test_large_order_rejection_only_from_pending(store, session_for):
    first, _ = orders.submit_large_order(store, session_for("alice"), large_request())
    with pytest.raises(ValidationFailed):
        orders.transition_large_order(store, first, "rejected")
    record = orders.transition_large_order(store, first, "rejected", reason="Too large")
    assert record["rejectionReason"] == "Too large"

    second, _ = orders.submit_large_order(store, session_for("alice"), large_request())
    orders.transition_large_order(store, second, "processing")
    with pytest.raises(ValidationFailed):
        orders.transition_large_order(store, second, "rejected", reason="Too late")


def test_large_order_never_touches_stock(store, session_for):
    before = store.get("products")
    order_id, _ = orders.submit_large_order(store, session_for("alice"), large_request())
    orders.transition_large_order(store, order_id, "processing")
    assert store.get("products") == before


def test_large_order_nothing_to_update(store, session_for):
    order_id, _ = orders.submit_large_order(store, session_for("alice"), large_request())
    with pytest.raises(ValidationFailed):
        orders.transition_large_order(store, order_id)
    with pytest.raises(ValidationFailed):
        orders.transition_large_order(store, order_id, final_price=0)


# -------------------- Tracking --------------------

def test_list_merges_both_kinds_newest_first(store):
    store.set("orders/o1", regular_record("alice", "2026-01-01T10:00:00+00:00"))
    store.set("orders/o2", regular_record("bob", "2026-01-03T10:00:00+00:00"))
    store.set("orders/o3", regular_record("alice", "2026-01-04T10:00:00+00:00", status="shipped"))
    store.set("largeOrders/l1", large_record("alice", "2026-01-02T10:00:00+00:00"))

    views = orders.list_orders(store, "alice")
    assert [v.id for v in views] == ["o3", "l1", "o1"]
    assert [v.kind for v in views] == ["regular", "large", "regular"]
    assert views[0].progress.percent == 75
    assert views[1].progress.percent == 20

    assert len(orders.list_orders(store)) == 4


def test_lookup_checks_ownership(store, session_for):
    store.set("orders/o1", regular_record("alice", "2026-01-01T10:00:00+00:00"))
    store.set("largeOrders/l1", large_record("alice", "2026-01-02T10:00:00+00:00"))

    assert orders.find_order(store, session_for("alice"), "o1").kind == "regular"
    assert orders.find_order(store, session_for("alice"), "l1").kind == "large"
    with pytest.raises(Forbidden):
        orders.find_order(store, session_for("bob"), "o1")
    with pytest.raises(Forbidden):
        orders.find_order(store, session_for("bob"), "l1")
    assert orders.find_order(store, session_for("overseer", rank="admin"), "l1").id == "l1"
    with pytest.raises(NotFound):
        orders.find_order(store, session_for("alice"), "missing")


def test_order_round_trip_through_api(api, login):
    headers = login("alice")
    placed = api.post("/checkout", json={"items": {"diamond": 2, "golden-apple": 1}, "branch": "Spawn"},
                      headers=headers).json()

    resp = api.get(f"/orders/{placed['id']}", headers=headers)
    assert resp.status_code == 200
    fetched = resp.json()
    assert fetched["kind"] == "regular"
    assert fetched["items"] == placed["items"]
    assert fetched["total"] == placed["total"]
    assert fetched["status"] == "pending"
    assert fetched["progress"] == {"percent": 25, "label": "Awaiting confirmation"}

    other = login("bob")
    assert api.get(f"/orders/{placed['id']}", headers=other).status_code == 403
    assert api.get("/orders/doesnotexist", headers=headers).status_code == 404


def test_my_orders_api(api, login):
    headers = login("alice")
    api.post("/checkout", json={"items": {"diamond": 1}, "branch": "Spawn"}, headers=headers)
    api.post("/large-orders", json={
        "minecraftName": "Alex", "contactInfo": "alex#1", "address": "0, 70, 0",
        "details": "A castle worth of stone", "requestedPrice": 80,
    }, headers=headers)

    resp = api.get("/orders", headers=headers)
    assert resp.status_code == 200
    assert sorted(o["kind"] for o in resp.json()) == ["large", "regular"]


# -------------------- Concurrent admin actions --------------------

def run_together(monkeypatch, *actions):
    """Run ``actions`` in threads that all finish reading the order before any writes."""
    barrier = threading.Barrier(len(actions), timeout=5)
    real_load = orders._load

    def load_then_wait(store, root, order_id):
        record = real_load(store, root, order_id)
        barrier.wait()
        return record

    monkeypatch.setattr(orders, "_load", load_then_wait)
    results = []

    def run(action):
        try:
            action()
            results.append("ok")
        except Conflict:
            results.append("conflict")

    threads = [threading.Thread(target=run, args=(a,)) for a in actions]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return sorted(results)


def test_racing_ship_and_reject_only_one_wins(store, order_id, monkeypatch):
    results = run_together(
        monkeypatch,
        lambda: orders.transition_order(store, order_id, "shipped", branch="Spawn"),
        lambda: orders.transition_order(store, order_id, "rejected", reason="fraud"),
    )
    assert results == ["conflict", "ok"]

    record = store.get(f"orders/{order_id}")
    if record["status"] == "shipped":
        assert "rejectionReason" not in record
    else:
        assert record["status"] == "rejected"
        assert "shippingBranch" not in record


def test_racing_large_order_updates_only_one_wins(store, session_for, monkeypatch):
    order_id, _ = orders.submit_large_order(store, session_for("alice"), large_request())
    results = run_together(
        monkeypatch,
        lambda: orders.transition_large_order(store, order_id, "processing"),
        lambda: orders.transition_large_order(store, order_id, "rejected", reason="Too large"),
    )
    assert results == ["conflict", "ok"]
    assert store.get(f"largeOrders/{order_id}/status") in ("processing", "rejected")


def test_stale_status_is_refused(store, order_id, monkeypatch):
    real_load = orders._load

    def load_then_someone_ships(store, root, order_id):
        record = real_load(store, root, order_id)
        store.update(f"orders/{order_id}", {"status": "shipped", "shippingBranch": "Spawn"})
        return record

    monkeypatch.setattr(orders, "_load", load_then_someone_ships)
    with pytest.raises(Conflict):
        orders.transition_order(store, order_id, "rejected", reason="fraud")
    assert store.get(f"orders/{order_id}/status") == "shipped"
    assert store.get(f"orders/{order_id}/rejectionReason") is None


# -------------------- Non-finite prices --------------------

@pytest.mark.parametrize("price", [float("nan"), float("inf"), float("-inf")])
def test_large_order_price_must_be_finite(store, session_for, price):
    payload = LargeOrderCreate.model_construct(**{**large_request().model_dump(), "requestedPrice": price})
    with pytest.raises(ValidationFailed):
        orders.submit_large_order(store, session_for("alice"), payload)
    assert store.get("largeOrders") is None


@pytest.mark.parametrize("price", [float("nan"), float("inf")])
def test_final_price_must_be_finite(store, session_for, price):
    order_id, _ = orders.submit_large_order(store, session_for("alice"), large_request())
    with pytest.raises(ValidationFailed):
        orders.transition_large_order(store, order_id, final_price=price)
    assert store.get(f"largeOrders/{order_id}/finalPrice") is None


def test_non_finite_prices_rejected_by_api(api, login, admin_headers, store):
    headers = dict(login("alice"), **{"Content-Type": "application/json"})
    body = ('{"minecraftName": "Alex", "contactInfo": "alex#1", "address": "0, 70, 0",'
            ' "details": "stone", "requestedPrice": NaN}')
    resp = api.post("/large-orders", content=body, headers=headers)
    assert resp.status_code == 422
    assert resp.json()["detail"][0]["loc"] == ["body", "requestedPrice"]
    assert store.get("largeOrders") is None

    order_id = api.post("/large-orders", content=body.replace("NaN", "80"), headers=headers).json()["id"]
    admin_json = dict(admin_headers, **{"Content-Type": "application/json"})
    resp = api.patch(f"/admin/large-orders/{order_id}", content='{"finalPrice": Infinity}', headers=admin_json)
    assert resp.status_code == 422
    assert store.get(f"largeOrders/{order_id}/finalPrice") is None
