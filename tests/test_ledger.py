import sqlite3
from concurrent.futures import ThreadPoolExecutor

import pytest

from text_humanizer import config, ledger as ledger_module
from text_humanizer.ledger import InsufficientCredits, UnknownUser


def test_debit_records_usage(ledger) -> None:
    ledger.grant("u1", 100, note="seed")

    assert ledger.debit("u1", 40, "Text humanization") == 60

    tx = ledger.list_transactions("u1")
    assert tx[0]["amount"] == -40
    assert tx[0]["transaction_type"] == "usage"
    assert tx[0]["description"] == "Text humanization"
    assert ledger.get_balance("u1").credits_remaining == 60


def test_debit_insufficient_leaves_balance(ledger) -> None:
    ledger.grant("u1", 10, note="seed")

    with pytest.raises(InsufficientCredits) as exc_info:
        ledger.debit("u1", 11, "Text humanization")

    assert exc_info.value.available == 10
    assert ledger.get_balance("u1").credits_remaining == 10
    assert [t["transaction_type"] for t in ledger.list_transactions("u1")] == ["grant"]


def test_debit_unknown_user(ledger) -> None:
    with pytest.raises(UnknownUser):
        ledger.debit("ghost", 1, "x")


def test_debit_rejects_negative_amount(ledger) -> None:
    ledger.grant("u1", 10, note="seed")
    with pytest.raises(ValueError):
        ledger.debit("u1", -5, "x")


def test_unknown_user_balance_defaults(ledger) -> None:
    bal = ledger.get_balance("nobody")
    assert bal.credits_remaining == 0
    assert bal.plan_type == "free"


def test_refund_with_reference_applies_once(ledger) -> None:
    ledger.grant("u1", 100, note="seed")
    ledger.debit("u1", 30, "Text humanization", reference="rsv_1")

    assert ledger.refund("u1", 30, "Refund for failed humanization", reference="rsv_1") is True
    assert ledger.refund("u1", 30, "Refund for failed humanization", reference="rsv_1") is False
    assert ledger.get_balance("u1").credits_remaining == 100


def test_refund_storage_error_is_logged_not_raised(ledger, monkeypatch, caplog) -> None:
    ledger.grant("u1", 100, note="seed")

    def broken_conn():
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(ledger_module, "_conn", broken_conn)
    assert ledger.refund("u1", 5, "Refund for failed humanization", reference="rsv_x") is False
    assert "Refund of 5 credits" in caplog.text


def test_reserve_release_and_commit(ledger) -> None:
    ledger.grant("u1", 100, note="seed")

    held = ledger.reserve("u1", 60, "Text humanization")
    assert ledger.get_balance("u1").credits_remaining == 40
    assert ledger.release(held, "Refund for failed humanization") is True
    assert ledger.release(held, "Refund for failed humanization") is False
    assert held.state == "released"
    assert ledger.get_balance("u1").credits_remaining == 100

    spent = ledger.reserve("u1", 60, "Text humanization")
    ledger.commit(spent)
    assert spent.state == "committed"
    assert ledger.get_balance("u1").credits_remaining == 40
    with pytest.raises(ValueError):
        ledger.release(spent, "late refund")


def test_concurrent_debits_only_one_succeeds(ledger) -> None:
    ledger.grant("u1", 50, note="seed")

    def attempt(_):
        try:
            ledger.debit("u1", 50, "Text humanization")
            return "ok"
        except InsufficientCredits:
            return "insufficient"

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, range(8)))

    assert results.count("ok") == 1
    assert results.count("insufficient") == 7
    assert ledger.get_balance("u1").credits_remaining == 0


def test_grant_sets_plan_and_validates(ledger) -> None:
    assert ledger.grant("u1", 500, note="Pro plan", plan_type="pro") == 500
    assert ledger.get_balance("u1").plan_type == "pro"
    with pytest.raises(ValueError):
        ledger.grant("u1", 0, note="nothing")


def test_signup_credits_are_logged(ledger, monkeypatch) -> None:
    monkeypatch.setattr(config.settings, "signup_credits", 250)
    ledger.ensure_user("new-user")
    ledger.ensure_user("new-user")

    assert ledger.get_balance("new-user").credits_remaining == 250
    assert len(ledger.list_transactions("new-user")) == 1
    assert ledger.reconcile("new-user")["drift"] == 0


def test_reconcile_detects_drift(ledger) -> None:
    ledger.grant("u1", 100, note="seed")
    ledger.debit("u1", 20, "Text humanization")
    assert ledger.reconcile("u1") == {"user_id": "u1", "credits_remaining": 80, "ledger_total": 80, "drift": 0}

    with sqlite3.connect(config.settings.database_path) as conn:
        conn.execute("UPDATE users SET credits_remaining = 95 WHERE user_id='u1'")

    drifted = ledger.list_drifted_users()
    assert [d["user_id"] for d in drifted] == ["u1"]
    assert drifted[0]["drift"] == 15


def test_refund_requires_reference(ledger) -> None:
    ledger.grant("u1", 100, note="seed")
    ledger.debit("u1", 30, "Text humanization")

    with pytest.raises(ValueError):
        ledger.refund("u1", 30, "Refund for failed humanization", reference="")
    assert ledger.get_balance("u1").credits_remaining == 70


def test_debit_retry_with_same_reference_charges_once(ledger) -> None:
    ledger.grant("u1", 100, note="seed")

    assert ledger.debit("u1", 30, "Text humanization", reference="r1") == 70
    assert ledger.debit("u1", 30, "Text humanization", reference="r1") == 70

    assert ledger.get_balance("u1").credits_remaining == 70
    assert [t["transaction_type"] for t in ledger.list_transactions("u1")] == ["usage", "grant"]


def test_failed_debit_leaves_reference_unused(ledger) -> None:
    ledger.grant("u1", 10, note="seed")

    with pytest.raises(InsufficientCredits):
        ledger.debit("u1", 30, "Text humanization", reference="r1")
    ledger.grant("u1", 50, note="top up")

    assert ledger.debit("u1", 30, "Text humanization", reference="r1") == 30
