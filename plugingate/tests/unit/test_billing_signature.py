from __future__ import annotations

import time

import pytest

from plugingate.core.config import get_settings
from plugingate.core.errors import BillingSignatureError, ConfigurationDefectError
from plugingate.services.billing_webhook import (
    EVENT_PAYMENT_FAILED,
    EVENT_SUBSCRIPTION_UPDATED,
    parse_billing_event,
    verify_billing_event,
)
from plugingate.tests.utils.billing import (
    encode_event,
    invoice_event,
    sign_stripe_payload,
    subscription_event,
)


def _secret() -> str:
    return get_settings().stripe_webhook_secret or ""


def test_valid_signature_yields_parsed_event() -> None:
    event = subscription_event(
        EVENT_SUBSCRIPTION_UPDATED,
        customer_id="cus_123",
        price_id="price_test_pro",
        plan_hint="pro",
        event_id="evt_signed",
    )
    payload = encode_event(event)

    parsed = verify_billing_event(payload, sign_stripe_payload(payload, _secret()))

    assert parsed.id == "evt_signed"
    assert parsed.kind == EVENT_SUBSCRIPTION_UPDATED
    assert parsed.customer_id == "cus_123"
    assert parsed.price_id == "price_test_pro"
    assert parsed.plan_hint == "pro"
    assert parsed.status == "active"
    assert parsed.period_end is not None


def test_wrong_secret_is_rejected() -> None:
    payload = encode_event(subscription_event(EVENT_SUBSCRIPTION_UPDATED, customer_id="cus_1"))
    header = sign_stripe_payload(payload, "whsec_not_the_configured_one")

    with pytest.raises(BillingSignatureError):
        verify_billing_event(payload, header)


def test_tampered_payload_is_rejected() -> None:
    payload = encode_event(subscription_event(EVENT_SUBSCRIPTION_UPDATED, customer_id="cus_1"))
    header = sign_stripe_payload(payload, _secret())

    with pytest.raises(BillingSignatureError):
        verify_billing_event(payload.replace(b"cus_1", b"cus_2"), header)


def test_replayed_signature_outside_tolerance_is_rejected() -> None:
    payload = encode_event(subscription_event(EVENT_SUBSCRIPTION_UPDATED, customer_id="cus_1"))
    old = int(time.time()) - get_settings().stripe_webhook_tolerance_s - 60
    header = sign_stripe_payload(payload, _secret(), timestamp=old)

    with pytest.raises(BillingSignatureError):
        verify_billing_event(payload, header)


def test_missing_signature_header_is_rejected() -> None:
    payload = encode_event(subscription_event(EVENT_SUBSCRIPTION_UPDATED, customer_id="cus_1"))

    with pytest.raises(BillingSignatureError):
        verify_billing_event(payload, None)


def test_missing_webhook_secret_is_a_configuration_defect(monkeypatch) -> None:
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "")
    get_settings.cache_clear()
    payload = encode_event(subscription_event(EVENT_SUBSCRIPTION_UPDATED, customer_id="cus_1"))

    with pytest.raises(ConfigurationDefectError):
        verify_billing_event(payload, "t=1,v1=deadbeef")


def test_invoice_events_read_customer_and_line_period() -> None:
    event = invoice_event(EVENT_PAYMENT_FAILED, customer_id="cus_inv", subscription_id="sub_9")

    parsed = parse_billing_event(event)

    assert parsed.kind == EVENT_PAYMENT_FAILED
    assert parsed.customer_id == "cus_inv"
    assert parsed.subscription_id == "sub_9"
    assert parsed.period_start is not None
    assert parsed.period_end > parsed.period_start


def test_expanded_customer_objects_are_accepted() -> None:
    event = subscription_event(EVENT_SUBSCRIPTION_UPDATED, customer_id="cus_x")
    event["data"]["object"]["customer"] = {"id": "cus_expanded", "object": "customer"}

    assert parse_billing_event(event).customer_id == "cus_expanded"


def test_event_without_id_is_rejected() -> None:
    with pytest.raises(BillingSignatureError):
        parse_billing_event({"type": EVENT_SUBSCRIPTION_UPDATED, "data": {"object": {}}})
