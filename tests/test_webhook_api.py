import json
import threading
from decimal import Decimal

import pytest

from storefront.fulfillment import FulfillmentHandler, FulfillmentOutcome
from storefront.models import OrderStatus, Product
from tests.fakes import MUG_ID, TEE_ID, completed_event, sign

URL = "/webhooks/payments"


def deliver(client, payload, signature=None):
    headers = {"Content-Type": "application/json"}
    signature = sign(payload) if signature is None else signature
    if signature:
        headers["Stripe-Signature"] = signature
    return client.post(URL, content=payload, headers=headers)


def items_metadata(items):
    return {"schemaVersion": "1", "items": json.dumps(items, separators=(",", ":"))}


class TestEndToEnd:
    def test_checkout_then_fulfillment(self, client, processor, orders, shipping):
        checkout = client.post(
            "/checkout/sessions",
            json={"items": [{"productId": MUG_ID, "quantity": 2}], "email": "a@b.com", "shippingInfo": shipping},
        )
        session_id = checkout.json()["sessionId"]
        metadata = processor.calls[0]["metadata"]

        response = deliver(client, completed_event(session_id=session_id, amount_total=5000, metadata=metadata))

        assert response.status_code == 200
        assert response.json() == {"received": True}

        order = orders.get_order_by_session(session_id)
        assert order.amount == Decimal("50.00")
        assert order.status == OrderStatus.PAID
        assert order.email == "a@b.com"
        assert order.customer_name == "Ada Lovelace"
        assert order.postal_code == "62701"
        assert order.account_id is None
        assert [(i.product_id, i.quantity, i.unit_price) for i in order.items] == [(MUG_ID, 2, Decimal("25.00"))]

    def test_literal_product_ids_in_metadata(self, client, catalog, orders):
        catalog.add(Product(id="P1", title="P1", price=Decimal("25.00"), inventory=5))
        metadata = {"items": '[{"productId":"P1","quantity":2}]'}

        response = deliver(client, completed_event(session_id="cs_p1", amount_total=5000, metadata=metadata))

        assert response.status_code == 200
        order = orders.get_order_by_session("cs_p1")
        assert order.amount == Decimal("50.00")
        assert order.status == OrderStatus.PAID
        assert [(i.product_id, i.quantity, i.unit_price) for i in order.items] == [("P1", 2, Decimal("25.00"))]


class TestIdempotency:
    def test_duplicate_delivery_creates_one_order(self, client, orders):
        payload = completed_event(session_id="cs_dup", metadata=items_metadata([{"productId": MUG_ID, "quantity": 2}]))

        first = deliver(client, payload)
        second = deliver(client, payload)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json() == {"received": True}
        assert len(orders.orders) == 1
        order = orders.get_order_by_session("cs_dup")
        assert len(order.items) == 1

    def test_redelivery_as_a_new_event_is_still_deduplicated(self, client, orders):
        metadata = items_metadata([{"productId": MUG_ID, "quantity": 1}])
        deliver(client, completed_event(session_id="cs_again", metadata=metadata))
        deliver(client, completed_event(session_id="cs_again", metadata=metadata))

        assert len(orders.orders) == 1
        assert len(orders.list_line_items(orders.get_order_by_session("cs_again").id)) == 1


class TestAuthentication:
    def test_tampered_body_is_rejected(self, client, orders):
        payload = completed_event(session_id="cs_tamper", amount_total=5000)
        signature = sign(payload)
        tampered = payload.replace(b"5000", b"1000")

        response = deliver(client, tampered, signature=signature)

        assert response.status_code == 400
        assert response.json()["error"].startswith("Webhook Error")
        assert orders.orders == {}

    def test_missing_signature_header(self, client, orders):
        response = deliver(client, completed_event(), signature="")
        assert response.status_code == 400
        assert response.json() == {"error": "No signature"}
        assert orders.orders == {}

    def test_unconfigured_secret_is_a_server_error(self, client, processor, orders):
        processor.webhook_secret = ""
        payload = completed_event(session_id="cs_nosecret")

        response = deliver(client, payload, signature=sign(payload, secret=""))

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}
        assert orders.orders == {}

    def test_not_rate_limited(self, client, orders):
        for n in range(15):
            assert deliver(client, completed_event(session_id=f"cs_{n}")).status_code == 200
        assert len(orders.orders) == 15


class TestExtraction:
    def test_missing_email_is_rejected(self, client, orders):
        response = deliver(client, completed_event(email=None))
        assert response.status_code == 400
        assert response.json() == {"error": "No customer email"}
        assert orders.orders == {}

    def test_email_from_customer_details(self, client, orders):
        event = json.loads(completed_event(session_id="cs_details", email=None))
        event["data"]["object"]["customer_details"] = {"email": "c@d.com", "name": "C"}
        payload = json.dumps(event).encode()

        assert deliver(client, payload).status_code == 200
        assert orders.get_order_by_session("cs_details").email == "c@d.com"

    def test_other_event_types_are_acknowledged_and_ignored(self, client, orders):
        response = deliver(client, completed_event(event_type="payment_intent.created"))
        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert orders.orders == {}

    def test_signed_but_malformed_event(self, client, orders):
        payload = b'{"type": "checkout.session.completed"}'
        assert deliver(client, payload).status_code == 400
        assert orders.orders == {}

    def test_missing_amount_records_zero(self, client, orders):
        deliver(client, completed_event(session_id="cs_free", amount_total=None))
        assert orders.get_order_by_session("cs_free").amount == Decimal("0.00")


class TestIdentityResolution:
    def test_known_email_links_the_account(self, client, accounts, orders):
        accounts.accounts["a@b.com"] = "acc-123"
        deliver(client, completed_event(session_id="cs_acc"))
        assert orders.get_order_by_session("cs_acc").account_id == "acc-123"

    def test_lookup_failure_falls_back_to_guest(self, client, accounts, orders):
        accounts.fail = True
        response = deliver(client, completed_event(session_id="cs_guest"))
        assert response.status_code == 200
        assert orders.get_order_by_session("cs_guest").account_id is None


class TestLineItems:
    def test_unit_price_is_read_at_fulfillment_time(self, client, catalog, orders):
        metadata = items_metadata([{"productId": TEE_ID, "quantity": 3}])
        catalog.add(Product(id=TEE_ID, title="Logo Tee", price=Decimal("17.50"), inventory=50))

        deliver(client, completed_event(session_id="cs_reprice", amount_total=5997, metadata=metadata))

        order = orders.get_order_by_session("cs_reprice")
        assert order.amount == Decimal("59.97")
        assert order.items[0].unit_price == Decimal("17.50")

    def test_vanished_product_is_recorded_at_zero(self, client, orders):
        metadata = items_metadata(
            [{"productId": MUG_ID, "quantity": 1}, {"productId": "ffffffff-ffff-4fff-8fff-ffffffffffff", "quantity": 1}]
        )
        deliver(client, completed_event(session_id="cs_gone", metadata=metadata))

        prices = [i.unit_price for i in orders.get_order_by_session("cs_gone").items]
        assert prices == [Decimal("25.00"), Decimal("0")]

    @pytest.mark.parametrize(
        "metadata",
        [{}, {"items": "[]"}, {"items": "{oops"}, {"items": '{"productId": "x"}'}, {"schemaVersion": "9", "items": "[]"}],
    )
    def test_malformed_metadata_keeps_the_order(self, client, orders, metadata):
        response = deliver(client, completed_event(session_id="cs_meta", metadata=metadata))

        assert response.status_code == 200
        order = orders.get_order_by_session("cs_meta")
        assert order is not None
        assert order.items == []

    def test_line_item_write_failure_is_swallowed(self, client, orders):
        orders.fail_items = True
        metadata = items_metadata([{"productId": MUG_ID, "quantity": 1}])

        response = deliver(client, completed_event(session_id="cs_items_down", metadata=metadata))

        assert response.status_code == 200
        assert orders.get_order_by_session("cs_items_down") is not None

    def test_catalog_failure_is_swallowed(self, client, catalog, orders):
        catalog.fail = True
        metadata = items_metadata([{"productId": MUG_ID, "quantity": 1}])

        assert deliver(client, completed_event(session_id="cs_cat_down", metadata=metadata)).status_code == 200
        assert orders.get_order_by_session("cs_cat_down").items == []


def test_order_insert_failure_asks_for_a_retry(client, orders):
    orders.fail_create = True
    response = deliver(client, completed_event(session_id="cs_db_down"))

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error"}


def test_concurrent_duplicate_deliveries_create_one_order(processor, orders, catalog, accounts):
    handler = FulfillmentHandler(processor, orders, catalog, accounts)
    payload = completed_event(session_id="cs_race", metadata=items_metadata([{"productId": MUG_ID, "quantity": 1}]))
    signature = sign(payload)
    barrier = threading.Barrier(8)
    outcomes = []

    def deliver_once():
        barrier.wait()
        outcomes.append(handler.handle(payload, signature))

    threads = [threading.Thread(target=deliver_once) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == sorted([FulfillmentOutcome.CREATED] + [FulfillmentOutcome.DUPLICATE] * 7)
    assert len(orders.orders) == 1
    assert len(orders.get_order_by_session("cs_race").items) == 1
