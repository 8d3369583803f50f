from decimal import Decimal

import pytest

from delivery import DeliveryQuoter, delivery_fee, fallback_quote
from pricing import compute_pricing, milestone_amount_cents

SETTINGS = {
    "factory": {"name": "Firefly Tiny Homes", "address": "606 S 2nd Ave, Mansfield, TX 76063"},
    "pricing": {
        "deposit_percent": 25,
        "tax_rate_percent": 6.25,
        "delivery_rate_per_mile": 12.5,
        "delivery_minimum": 1500,
        "title_fee_default": 500,
        "setup_fee_default": 3000,
    },
}


def make_build(base=50000, options=None, delivery_fee_amount=1200, plan=None):
    if options is None:
        options = [{"key": "porch", "unit_price": 3000, "quantity": 1}]
    return {
        "selections": {"base_price": base, "options": options},
        "delivery": {"fee": delivery_fee_amount},
        "payment": {"plan": plan} if plan else {},
    }


def d(value):
    return Decimal(str(value))


def test_worked_example():
    p = compute_pricing(make_build(), SETTINGS)
    assert p.taxable_subtotal == 57700
    assert p.sales_tax == 3606.25
    assert p.total == 61306.25
    assert p.deposit_due == 15326.56
    assert p.final_payment == 45979.69


@pytest.mark.parametrize("base,options,fee", [
    (49999.99, [{"key": "a", "unit_price": 1234.57, "quantity": 3}], 1500),
    (0.01, [], 0),
    (87654.32, [{"key": "a", "unit_price": 0.33, "quantity": 7}, {"key": "b", "unit_price": 999.99, "quantity": 2}], 2718.75),
])
def test_parts_add_up_to_total(base, options, fee):
    p = compute_pricing(make_build(base, options, fee), SETTINGS)
    parts = d(p.base) + d(p.options_subtotal) + d(p.delivery_fee) + d(p.title_fee) + d(p.setup_fee) + d(p.sales_tax)
    assert parts == d(p.total)
    assert d(p.deposit_due) + d(p.final_payment) == d(p.total)


def test_same_inputs_same_output():
    build = make_build(options=[{"key": "a", "unit_price": 19.99, "quantity": 3}])
    assert compute_pricing(build, SETTINGS) == compute_pricing(build, SETTINGS)


def test_plan_percent_overrides_settings_deposit():
    p = compute_pricing(make_build(plan={"type": "deposit", "percent": 10}), SETTINGS)
    assert p.deposit_percent == 10
    assert p.deposit_due == 6130.63


def test_milestone_amounts_in_cents():
    p = compute_pricing(make_build(), SETTINGS)
    assert milestone_amount_cents(p, "deposit") == 1532656
    assert milestone_amount_cents(p, "final") == 4597969
    assert milestone_amount_cents(p, "full") == 6130625


def test_delivery_fee_floors_at_minimum():
    assert delivery_fee(10, 12.5, 1500) == 1500
    assert delivery_fee(200, 12.5, 1500) == 2500


class StubResponse:
    def __init__(self, data):
        self.data = data

    def raise_for_status(self):
        pass

    def json(self):
        return self.data


class StubSession:
    def __init__(self, data):
        self.data = data
        self.requests = []

    def get(self, url, params=None, timeout=None):
        self.requests.append((url, params, timeout))
        return StubResponse(self.data)


def test_quote_uses_driving_distance():
    session = StubSession({
        "destination_addresses": ["Austin, TX 78701, USA"],
        "rows": [{"elements": [{"status": "OK", "distance": {"value": 321868.8}}]}],
    })
    quote = DeliveryQuoter("maps-key", timeout=5, session=session).quote("78701", SETTINGS)
    assert quote.miles == 200
    assert quote.fee == 2500
    assert quote.destination_address == "Austin, TX 78701, USA"
    assert not quote.fallback
    assert session.requests[0][2] == 5


def test_quote_falls_back_when_destination_not_found():
    session = StubSession({"rows": [{"elements": [{"status": "NOT_FOUND"}]}]})
    quote = DeliveryQuoter("maps-key", session=session).quote_or_fallback("00000", SETTINGS)
    assert quote.fallback
    assert quote.fee == 1500


def test_quote_without_key_falls_back():
    quote = DeliveryQuoter(None).quote_or_fallback("78701", SETTINGS)
    assert quote == fallback_quote(SETTINGS, "78701")


def test_delivery_quote_endpoint(client, quoter):
    quoter.miles = 200
    res = client.get("/delivery/quote", params={"zip": "78701"})
    assert res.status_code == 200
    assert res.json()["fee"] == 2500

    quoter.fail = True
    res = client.get("/delivery/quote", params={"zip": "78701"})
    assert res.status_code == 200
    assert res.json()["fallback"] is True
    assert res.json()["fee"] == 1500


def test_delivery_quote_rejects_bad_zip(client):
    res = client.get("/delivery/quote", params={"zip": "abc"})
    assert res.status_code == 400
    assert res.json()["error"] == "invalid_zip"
