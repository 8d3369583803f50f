import threading
from concurrent.futures import ThreadPoolExecutor

from conftest import SerializedDatabase
from database import get_db
from main import app


def create_order(client, build_id, headers, key=None):
    extra = {"Idempotency-Key": key} if key else {}
    return client.post("/orders", json={"build_id": build_id}, headers={**headers, **extra})


def test_repeated_order_creation_yields_one_order(client, make_build, user_headers, db):
    build = make_build()
    responses = [create_order(client, build["id"], user_headers, key="checkout-1") for _ in range(4)]
    assert all(r.status_code == 200 for r in responses)
    assert len({r.text for r in responses}) == 1
    assert db["order"].count_documents({}) == 1


def test_order_is_reused_per_build(client, make_build, user_headers, db):
    build = make_build()
    first = create_order(client, build["id"], user_headers, key="a").json()
    second = create_order(client, build["id"], user_headers, key="b").json()
    third = create_order(client, build["id"], user_headers).json()
    assert first["id"] == second["id"] == third["id"]
    assert db["order"].count_documents({"build_id": build["id"]}) == 1


def test_order_snapshot_does_not_follow_build(client, make_build, user_headers):
    build = make_build()
    order = create_order(client, build["id"], user_headers, key="snap").json()
    assert order["pricing"] == build["pricing"]
    assert order["pricing_snapshot"]["tax_rate_percent"] == 6.25
    assert order["timeline"][0]["event"] == "order_created"

    selections = {"base_price": 80000, "options": []}
    patched = client.patch(f"/builds/{build['id']}", json={"selections": selections}, headers=user_headers).json()
    assert patched["pricing"]["base"] == 80000

    fresh = client.get(f"/orders/{order['id']}", headers=user_headers).json()
    assert fresh["pricing"] == order["pricing"]
    assert fresh["selections"]["base_price"] == 50000


def test_orders_are_private(client, make_build, user_headers, other_headers):
    build = make_build()
    assert create_order(client, build["id"], other_headers, key="x").status_code == 404
    order = create_order(client, build["id"], user_headers, key="y").json()
    assert client.get(f"/orders/{order['id']}", headers=other_headers).status_code == 404
    assert client.get("/orders", headers=other_headers).json() == []
    assert [o["id"] for o in client.get("/orders", headers=user_headers).json()] == [order["id"]]


def test_admin_status_change_appends_timeline(client, make_build, user_headers, admin_headers):
    build = make_build()
    order = create_order(client, build["id"], user_headers).json()

    assert client.post(f"/admin/orders/{order['id']}/status", json={"status": "in_production"}, headers=user_headers).status_code == 403

    res = client.post(f"/admin/orders/{order['id']}/status", json={"status": "in_production"}, headers=admin_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "in_production"
    assert [e["event"] for e in body["timeline"]] == ["order_created", "status:in_production"]
    assert len(client.get("/admin/orders", params={"status": "in_production"}, headers=admin_headers).json()) == 1


def test_concurrent_creation_with_one_key_yields_one_order(client, make_build, user_headers, db):
    build = make_build()
    app.dependency_overrides[get_db] = lambda: SerializedDatabase(db)
    workers = 8
    barrier = threading.Barrier(workers)

    def submit(_):
        barrier.wait()
        return create_order(client, build["id"], user_headers, key="checkout-race")

    with ThreadPoolExecutor(max_workers=workers) as pool:
        responses = list(pool.map(submit, range(workers)))

    assert [r.status_code for r in responses] == [200] * workers
    assert len({r.text for r in responses}) == 1
    assert db["order"].count_documents({}) == 1
    assert db["idempotencyrecord"].count_documents({"status": "done"}) == 1
