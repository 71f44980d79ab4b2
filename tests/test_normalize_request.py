"""Unit tests for request normalization in the process-payment handler."""

import importlib.util
import os
import sys
from decimal import Decimal

def _load_module(name, path):
    spec = importlib.util.spec_from_file_location(name, path)
    mod = importlib.util.module_from_spec(spec)
    sys.modules[name] = mod
    spec.loader.exec_module(mod)
    return mod

ROOT = os.path.join(os.path.dirname(__file__), "..")
payment_app = _load_module(
    "payment_app_normalize", os.path.join(ROOT, "services", "process-payment", "app.py")
)

VALID_TOKEN = "cnon:test-token-12345"


class TestFieldAliases:
    def test_canonical_names(self):
        result = payment_app.normalize(
            {"source_id": VALID_TOKEN, "amount": 10.99, "currency": "usd", "idempotency_key": "key-1"}
        )
        assert result.amount == Decimal("10.99")
        assert result.amount_cents == 1099
        assert result.currency == "USD"
        assert result.source_token == VALID_TOKEN
        assert result.idempotency_key == "key-1"

    def test_camel_case_aliases(self):
        result = payment_app.normalize(
            {"sourceId": VALID_TOKEN, "amountUsd": "25", "currencyCode": "eur", "orderId": "order-77"}
        )
        assert result.amount_cents == 2500
        assert result.currency == "EUR"
        assert result.idempotency_key == "order-77"

    def test_token_and_snake_case_aliases(self):
        result = payment_app.normalize(
            {"token": VALID_TOKEN, "amount_usd": "3.5", "currency_code": "cad", "idempotencyKey": "abc"}
        )
        assert result.amount_cents == 350
        assert result.currency == "CAD"
        assert result.source_token == VALID_TOKEN
        assert result.idempotency_key == "abc"

    def test_empty_string_falls_through_to_next_alias(self):
        result = payment_app.normalize({"source_id": "", "sourceId": VALID_TOKEN, "amount": "", "amountUsd": 1})
        assert result.source_token == VALID_TOKEN
        assert result.amount_cents == 100

    def test_missing_currency_defaults_to_usd(self):
        result = payment_app.normalize({"source_id": VALID_TOKEN, "amount": 1})
        assert result.currency == "USD"
        assert result.idempotency_key is None
        assert result.note is None


class TestAmountValidation:
    def test_cents_conversion(self):
        assert payment_app.normalize({"source_id": VALID_TOKEN, "amount": 0.01}).amount_cents == 1
        assert payment_app.normalize({"source_id": VALID_TOKEN, "amount": 100.00}).amount_cents == 10000
        assert payment_app.normalize({"source_id": VALID_TOKEN, "amount": "19.99"}).amount_cents == 1999

    def test_sub_cent_amounts_round_half_up(self):
        assert payment_app.amount_to_cents(Decimal("10.005")) == 1001
        assert payment_app.amount_to_cents(Decimal("10.004")) == 1000

    def test_zero_is_present_and_rejected(self):
        result = payment_app.normalize({"source_id": VALID_TOKEN, "amount": 0})
        assert result == ["amount must be greater than zero"]

    def test_negative_amount_rejected(self):
        assert payment_app.normalize({"source_id": VALID_TOKEN, "amount": -5}) == ["amount must be greater than zero"]

    def test_amount_above_maximum_rejected(self):
        result = payment_app.normalize({"source_id": VALID_TOKEN, "amount": 10000.01})
        assert result == ["amount exceeds transaction limit of $10000"]

    def test_amount_at_maximum_accepted(self):
        result = payment_app.normalize({"source_id": VALID_TOKEN, "amount": 10000})
        assert result.amount_cents == 1000000

    def test_amount_below_configured_minimum_rejected(self):
        result = payment_app.normalize({"source_id": VALID_TOKEN, "amount": 0.5}, min_amount=Decimal("1"))
        assert result == ["amount must be at least $1"]

    def test_boolean_amount_rejected(self):
        assert payment_app.normalize({"source_id": VALID_TOKEN, "amount": True}) == ["amount must be a number"]

    def test_non_numeric_and_non_finite_amounts_rejected(self):
        for raw_amount in ("abc", "NaN", float("inf"), "-Infinity"):
            result = payment_app.normalize({"source_id": VALID_TOKEN, "amount": raw_amount})
            assert result == ["amount must be a valid number"], raw_amount

    def test_container_amount_rejected(self):
        assert payment_app.normalize({"source_id": VALID_TOKEN, "amount": [1]}) == ["amount must be a number"]


class TestOtherFields:
    def test_invalid_currency_rejected(self):
        for currency in ("US", "USDT", "U1D", 840):
            result = payment_app.normalize({"source_id": VALID_TOKEN, "amount": 1, "currency": currency})
            assert result == ["currency must be a 3-letter ISO code (e.g., USD)"], currency

    def test_short_source_token_rejected(self):
        result = payment_app.normalize({"source_id": "cnon:abc", "amount": 1})
        assert result == ["source_id must be a valid payment token"]

    def test_non_string_source_token_rejected(self):
        result = payment_app.normalize({"source_id": 12345678901, "amount": 1})
        assert result == ["source_id must be a valid payment token"]

    def test_numeric_idempotency_key_is_stringified(self):
        result = payment_app.normalize({"source_id": VALID_TOKEN, "amount": 1, "orderId": 123456})
        assert result.idempotency_key == "123456"

    def test_errors_are_collected(self):
        result = payment_app.normalize({"currency": "dollars"})
        assert result == [
            "amount is required",
            "currency must be a 3-letter ISO code (e.g., USD)",
            "source_id is required",
        ]

    def test_non_object_body_rejected(self):
        assert payment_app.normalize(["amount", 1]) == ["request body must be a JSON object"]


class TestRiskNote:
    def test_note_built_from_risk_profile(self):
        result = payment_app.normalize({"source_id": VALID_TOKEN, "amount": 1, "riskProfile": "conservative"})
        assert result.note == "risk:conservative"

    def test_note_strips_separators(self):
        result = payment_app.normalize({"source_id": VALID_TOKEN, "amount": 1, "risk_profile": "high:\nrisk\t\r"})
        assert result.note == "risk:highrisk"

    def test_note_truncated(self):
        result = payment_app.normalize({"source_id": VALID_TOKEN, "amount": 1, "risk_profile": "a" * 80})
        assert result.note == "risk:" + "a" * 50

    def test_note_dropped_when_nothing_survives_sanitizing(self):
        result = payment_app.normalize({"source_id": VALID_TOKEN, "amount": 1, "risk_profile": "::\n"})
        assert result.note is None
