from __future__ import annotations

import json
from decimal import Decimal

import pytest

from credit_ledger.amounts import positive_credits, to_credits
from credit_ledger.config import Settings
from credit_ledger.errors import InvalidAmount
from credit_ledger.logging.audit_logger import AuditLogger


@pytest.mark.parametrize(
    "value, expected",
    [(5, "5.00"), ("1.005", "1.01"), (Decimal("2.344"), "2.34"), (0.1, "0.10"), ("-3", "-3.00")],
)
def test_to_credits_quantizes(value, expected):
    assert to_credits(value) == Decimal(expected)
    assert str(to_credits(value)) == expected


@pytest.mark.parametrize("value", [True, "ten", None, Decimal("Infinity"), float("nan")])
def test_to_credits_rejects_non_amounts(value):
    with pytest.raises(InvalidAmount):
        to_credits(value)


def test_positive_credits_rejects_amounts_that_round_to_zero():
    with pytest.raises(InvalidAmount, match="positive"):
        positive_credits("0.001")


@pytest.mark.parametrize("value", ["1e30", "-1e30", Decimal("1E+40"), "10000000000000"])
def test_to_credits_rejects_amounts_beyond_column_range(value):
    with pytest.raises(InvalidAmount, match="out of range"):
        to_credits(value)


def test_to_credits_accepts_largest_column_value():
    assert to_credits("9999999999999.99") == Decimal("9999999999999.99")


def test_settings_read_prefixed_environment(monkeypatch):
    monkeypatch.setenv("CREDIT_EXPIRING_SOON_DAYS", "3")
    monkeypatch.setenv("CREDIT_ALLOW_NEGATIVE_ADJUSTMENTS", "true")

    cfg = Settings(_env_file=None)
    assert cfg.EXPIRING_SOON_DAYS == 3
    assert cfg.ALLOW_NEGATIVE_ADJUSTMENTS is True
    assert cfg.DEFAULT_VALIDITY_DAYS == 90
    assert cfg.MONGO_URI == ""


@pytest.mark.asyncio
async def test_audit_logger_writes_json_lines(tmp_path):
    audit = AuditLogger(file_path=tmp_path / "nested" / "audit.log")

    await audit.log_transaction(
        user_id="u", message="Credits deducted", details={"amount": "1.00"}, correlation_id="c"
    )
    await audit.log_error(message="Insufficient credits", details={}, user_id="u")
    await audit.log_system(message="Sweep completed", details={"candidates": 0})

    events = [json.loads(line) for line in audit.file_path.read_text().splitlines()]
    assert [e["event_type"] for e in events] == ["transaction", "error", "system"]
    assert events[0]["details"] == {"amount": "1.00"}
    assert events[0]["correlation_id"] == "c"
    assert events[2]["user_id"] is None
    assert "created_at" in events[0]
