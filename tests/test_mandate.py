"""Tests for intent, cart and payment mandates and EIP-712 cart signing."""

from dataclasses import replace
from decimal import Decimal

import pytest
from eth_account import Account

from quartermaster.commands import PayVendor
from quartermaster.errors import MandateVerificationError
from quartermaster.mandate import (
    CART_PRIMARY_TYPE,
    CartMandate,
    IntentMandate,
    LocalApprovalSigner,
    build_cart_mandate,
    build_intent_mandate,
    build_payment_mandate,
    request_signature,
    sign_cart,
    tool_digest,
    verify_cart_signature,
)
from quartermaster.policy import choose_tool_plan

ADDR = "0x1111111111111111111111111111111111111111"
NOW = 1772366400


@pytest.fixture
def command():
    return PayVendor(vendor="ACME", amount=Decimal("200"), to=ADDR, max_total=Decimal("2"))


@pytest.fixture
def intent(command):
    return build_intent_mandate("doc-1", "cmd_abc", command, choose_tool_plan(command), 2_000_000, now=NOW)


@pytest.fixture
def signer():
    return LocalApprovalSigner("0x" + bytes(Account.create().key).hex())


class TestIntent:
    def test_fields(self, intent):
        assert intent.id.startswith("intent_")
        assert intent.action == "PAY_VENDOR"
        assert intent.max_total == 2_000_000
        assert intent.created_at == NOW
        assert intent.status == "PENDING"
        assert [t.tool_name for t in intent.tool_plan] == ["vendor-risk", "compliance-check"]

    def test_id_is_deterministic(self, command, intent):
        again = build_intent_mandate("doc-1", "cmd_abc", command, [], 2_000_000, now=NOW + 99)
        assert again.id == intent.id

    def test_scope_changes_id(self, command, intent):
        other = build_intent_mandate("doc-2", "cmd_abc", command, [], 2_000_000, now=NOW)
        assert other.id != intent.id

    def test_dict_round_trip(self, intent):
        assert IntentMandate.from_dict(intent.to_dict()) == intent


class TestCart:
    def test_expiry_follows_intent_creation(self, intent):
        cart = build_cart_mandate(intent, ttl_seconds=300, now=NOW + 200)
        assert cart.expires_at == NOW + 300
        assert cart.created_at == NOW + 200
        assert cart.typed_data["message"]["expiresAt"] == "2026-03-01T12:05:00Z"

    def test_typed_data(self, intent):
        cart = build_cart_mandate(intent, chain_id=8453, now=NOW)
        assert cart.typed_data["primaryType"] == CART_PRIMARY_TYPE
        assert cart.typed_data["domain"]["chainId"] == 8453
        message = cart.typed_data["message"]
        assert message["docId"] == "doc-1"
        assert message["cmdId"] == "cmd_abc"
        assert message["maxTotalUsdc"] == "2.00"
        assert message["toolDigest"] == "vendor-risk:0.25|compliance-check:0.5"

    def test_rebuild_is_identical(self, intent):
        a = build_cart_mandate(intent, now=NOW)
        b = build_cart_mandate(intent, now=NOW + 60)
        assert a.id == b.id
        assert a.typed_data == b.typed_data

    def test_is_expired(self, intent):
        cart = build_cart_mandate(intent, ttl_seconds=60, now=NOW)
        assert not cart.is_expired(NOW + 60)
        assert cart.is_expired(NOW + 61)

    def test_digest_of_empty_plan(self):
        assert tool_digest([]) == ""

    def test_dict_round_trip(self, intent):
        cart = build_cart_mandate(intent, now=NOW)
        assert CartMandate.from_dict(cart.to_dict()) == cart


class TestSigning:
    def test_sign_and_verify(self, intent, signer):
        cart = sign_cart(build_cart_mandate(intent, now=NOW), signer)
        assert cart.is_signed
        assert cart.signer_address == signer.address
        result = verify_cart_signature(cart, cart.signature, expected_signer=signer.address.lower())
        assert result.valid
        assert result.signer_address == signer.address

    def test_wrong_expected_signer(self, intent, signer):
        cart = build_cart_mandate(intent, now=NOW)
        _, signature = request_signature(signer, cart)
        result = verify_cart_signature(cart, signature, expected_signer=Account.create().address)
        assert not result.valid
        assert "Signer mismatch" in result.reason

    def test_tampered_cart_fails(self, intent, signer):
        cart = sign_cart(build_cart_mandate(intent, now=NOW), signer)
        message = dict(cart.typed_data["message"], maxTotalUsdc="200.00")
        tampered = replace(cart, typed_data=dict(cart.typed_data, message=message))
        result = verify_cart_signature(tampered, cart.signature, expected_signer=signer.address)
        assert not result.valid

    def test_garbage_signature(self, intent):
        result = verify_cart_signature(build_cart_mandate(intent, now=NOW), "0xdeadbeef")
        assert not result.valid
        assert result.signer_address is None

    def test_lying_signer_is_rejected(self, intent, signer):
        class Impostor:
            address = Account.create().address

            def sign_typed_data(self, domain, types, primary_type, message):
                return signer.sign_typed_data(domain, types, primary_type, message)

        with pytest.raises(MandateVerificationError):
            sign_cart(build_cart_mandate(intent, now=NOW), Impostor())

    def test_signer_repr_hides_key(self, signer):
        assert repr(signer) == f"LocalApprovalSigner({signer.address})"


class TestPaymentMandate:
    def test_line_item(self, command):
        tool = choose_tool_plan(command)[0]
        mandate = build_payment_mandate("doc-1", "cmd_abc", tool, now=NOW)
        assert mandate.id.startswith("pay_")
        assert mandate.line_item == 250_000
        assert mandate.tool_name == "vendor-risk"
        assert build_payment_mandate("doc-1", "cmd_abc", tool, now=NOW + 5).id == mandate.id
