from __future__ import annotations

import json

import pytest

from plumbgate.core.errors import InvalidSignature, WebhookPayloadError
from plumbgate.services.webhooks import (
    WebhookHandlerRegistry,
    compute_signature,
    default_registry,
    parse_delivery,
    verify_signature,
)


_SECRET = "whsec_unit"
_BODY = b'{"id":"evt_1","type":"payment.paid"}'


def test_valid_signature_with_and_without_prefix() -> None:
    digest = compute_signature(_SECRET, _BODY)
    verify_signature(_SECRET, _BODY, digest)
    verify_signature(_SECRET, _BODY, f"sha256={digest}")
    verify_signature(_SECRET, _BODY, f"  SHA256={digest.upper()} ")


@pytest.mark.parametrize(
    "header",
    [None, "", "   ", "sha256=", "sha256=deadbeef", "sha1=" + "0" * 40],
)
def test_missing_or_wrong_signature_is_rejected(header: str | None) -> None:
    with pytest.raises(InvalidSignature):
        verify_signature(_SECRET, _BODY, header)


def test_signature_covers_the_raw_bytes() -> None:
    digest = compute_signature(_SECRET, _BODY)
    # Re-serialized JSON with different spacing is a different body.
    reformatted = json.dumps(json.loads(_BODY)).encode("utf-8")
    with pytest.raises(InvalidSignature):
        verify_signature(_SECRET, reformatted, digest)


def test_other_secret_and_unconfigured_provider_are_rejected() -> None:
    digest = compute_signature("whsec_other", _BODY)
    with pytest.raises(InvalidSignature):
        verify_signature(_SECRET, _BODY, digest)
    with pytest.raises(InvalidSignature):
        verify_signature(None, _BODY, compute_signature(_SECRET, _BODY))


def test_non_ascii_signature_header_is_a_mismatch() -> None:
    with pytest.raises(InvalidSignature):
        verify_signature(_SECRET, _BODY, "sha256=é" * 8)


def test_parse_delivery_reads_envelope_and_metadata() -> None:
    body = {
        "id": " evt_9 ",
        "type": "payment.paid",
        "data": {"id": "tr_1", "metadata": {"tenant_id": "t-1", "invoice_id": "inv-1"}},
    }
    delivery = parse_delivery("mollie", json.dumps(body).encode("utf-8"))
    assert delivery.event_id == "evt_9"
    assert delivery.tenant_id == "t-1"
    assert delivery.metadata["invoice_id"] == "inv-1"


def test_top_level_metadata_is_used_when_data_has_none() -> None:
    delivery = parse_delivery("mollie", b'{"id":"e","type":"x","metadata":{"tenant_id":"t-2"}}')
    assert delivery.tenant_id == "t-2"
    assert parse_delivery("mollie", b'{"id":"e","type":"x"}').tenant_id is None


@pytest.mark.parametrize(
    "raw",
    [
        b"not json",
        b"[1, 2]",
        b'{"type": "payment.paid"}',
        b'{"id": "", "type": "payment.paid"}',
        b'{"id": 42, "type": "payment.paid"}',
        b'{"id": "evt"}',
        ('{"id": "' + "e" * 300 + '", "type": "x"}').encode("utf-8"),
    ],
)
def test_unusable_payloads_are_rejected(raw: bytes) -> None:
    with pytest.raises(WebhookPayloadError):
        parse_delivery("mollie", raw)


def test_registry_direct_and_decorator_registration() -> None:
    registry = WebhookHandlerRegistry()

    @registry.register("refund.created")
    async def _refund(session, delivery):
        return {}

    async def _chargeback(session, delivery):
        return {}

    registry.register("chargeback.created", _chargeback)
    assert registry.get("refund.created") is _refund
    assert registry.event_types == ["chargeback.created", "refund.created"]
    assert registry.get("unknown") is None
    assert default_registry().event_types == ["payment.paid"]
