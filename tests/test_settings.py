from jose import jwt

from conftest import SECRET_KEY


def test_public_settings_are_seeded_from_defaults(client):
    res = client.get("/settings")
    assert res.status_code == 200
    pricing = res.json()["pricing"]
    assert pricing["tax_rate_percent"] == 6.25
    assert pricing["deposit_percent"] == 25
    assert pricing["delivery_minimum"] == 1500
    assert "updated_by" not in res.json()


def test_admin_settings_update_keeps_only_valid_numbers(client, admin_headers, user_headers):
    body = {"factory": {"name": "Firefly Works"}, "pricing": {"tax_rate_percent": 7, "deposit_percent": -5, "title_fee_default": "nope"}}
    assert client.put("/admin/settings", json=body, headers=user_headers).status_code == 403

    res = client.put("/admin/settings", json=body, headers=admin_headers)
    assert res.status_code == 200
    settings = res.json()
    assert settings["factory"]["name"] == "Firefly Works"
    assert settings["pricing"]["tax_rate_percent"] == 7
    assert settings["pricing"]["deposit_percent"] == 25
    assert settings["pricing"]["title_fee_default"] == 500
    assert settings["updated_by"] == "admin-1"


def test_new_builds_use_updated_tax_rate(client, admin_headers, make_build):
    client.put("/admin/settings", json={"pricing": {"tax_rate_percent": 0}}, headers=admin_headers)
    build = make_build()
    assert build["pricing"]["sales_tax"] == 0
    assert build["pricing"]["total"] == 58000


def test_seed_admin_then_login(client):
    creds = {"username": "operator", "password": "correct horse"}
    assert client.post("/auth/seed-admin", json=creds).json() == {"status": "created"}
    assert client.post("/auth/seed-admin", json=creds).json() == {"status": "exists"}

    res = client.post("/auth/seed-admin", json={"username": "intruder", "password": "x"})
    assert res.status_code == 403
    assert res.json()["error"] == "admin_exists"

    res = client.post("/auth/login", json={"username": "operator", "password": "wrong"})
    assert res.status_code == 401

    token = client.post("/auth/login", json=creds).json()["access_token"]
    claims = jwt.decode(token, SECRET_KEY, algorithms=["HS256"])
    assert claims["role"] == "admin"

    res = client.get("/admin/dead-letters", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 200
    assert res.json() == []


def test_invalid_token_is_rejected(client):
    res = client.get("/builds", headers={"Authorization": "Bearer not-a-token"})
    assert res.status_code == 401
    assert res.json()["error"] == "invalid_token"
