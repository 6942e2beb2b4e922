"""Payment ledger: PENDING insert, compare-and-swap settlement, metadata merge."""
import pytest
from sqlmodel import Session

from conftest import add_pending
from fastfolio.core.database import create_db_engine, init_db
from fastfolio.models import PaymentTransaction
from fastfolio.payments.errors import DuplicateTransaction, UnknownTransaction
from fastfolio.payments.types import PaymentStatus, merge_metadata
from fastfolio.services.ledger import PaymentLedger


def _txn(ref="u1_PRO_1000", **kw) -> PaymentTransaction:
    values = dict(transaction_id=ref, provider="VNPAY", user_id="u1", plan="PRO", amount=200000, currency="VND")
    values.update(kw)
    return PaymentTransaction(**values)


def test_record_pending_inserts_pending_row(session):
    ledger = PaymentLedger(session)
    txn = ledger.record_pending(_txn(meta={"billingCycle": "monthly"}))
    assert txn.id is not None
    assert txn.status == "PENDING"
    assert txn.version == 0
    assert ledger.get("u1_PRO_1000").meta == {"billingCycle": "monthly"}


def test_timestamps_are_stored_as_naive_utc(session):
    txn = PaymentLedger(session).record_pending(_txn())
    assert txn.created_at.tzinfo is None
    session.expire_all()
    reloaded = PaymentLedger(session).get("u1_PRO_1000")
    assert reloaded.updated_at.tzinfo is None
    assert reloaded.created_at == txn.created_at


def test_record_pending_duplicate_reference(session):
    ledger = PaymentLedger(session)
    ledger.record_pending(_txn())
    with pytest.raises(DuplicateTransaction):
        ledger.record_pending(_txn())
    # The session is usable after the rollback
    assert ledger.get("u1_PRO_1000").status == "PENDING"


def test_transition_applies_once(session):
    add_pending(session, meta={"billingCycle": "monthly"})
    ledger = PaymentLedger(session)

    first = ledger.transition_if_pending("u1_PRO_1000", PaymentStatus.SUCCESS, {"providerTransactionId": "A"})
    second = ledger.transition_if_pending("u1_PRO_1000", PaymentStatus.SUCCESS, {"providerTransactionId": "B"})

    assert first.applied is True
    assert second.applied is False
    txn = ledger.get("u1_PRO_1000")
    assert txn.status == "SUCCESS"
    assert txn.version == 1
    assert txn.meta == {"billingCycle": "monthly", "providerTransactionId": "A"}


def test_transition_does_not_flip_settled_row(session):
    add_pending(session)
    ledger = PaymentLedger(session)
    assert ledger.transition_if_pending("u1_PRO_1000", PaymentStatus.FAILED).applied
    assert not ledger.transition_if_pending("u1_PRO_1000", PaymentStatus.SUCCESS).applied
    assert ledger.get("u1_PRO_1000").status == "FAILED"


def test_transition_rejects_non_terminal_status(session):
    add_pending(session)
    with pytest.raises(ValueError):
        PaymentLedger(session).transition_if_pending("u1_PRO_1000", PaymentStatus.PENDING)


def test_transition_unknown_reference(session):
    with pytest.raises(UnknownTransaction):
        PaymentLedger(session).transition_if_pending("nobody_PRO_1", PaymentStatus.SUCCESS)


def test_annotate_only_while_pending(session):
    add_pending(session, meta={"billingCycle": "yearly"})
    ledger = PaymentLedger(session)
    assert ledger.annotate("u1_PRO_1000", {"requestId": "r1"}) is True
    txn = ledger.get("u1_PRO_1000")
    assert txn.status == "PENDING"
    assert txn.meta == {"billingCycle": "yearly", "requestId": "r1"}

    ledger.transition_if_pending("u1_PRO_1000", PaymentStatus.SUCCESS)
    assert ledger.annotate("u1_PRO_1000", {"late": True}) is False
    assert "late" not in ledger.get("u1_PRO_1000").meta


def test_stale_version_loses(tmp_path):
    db_path = tmp_path / "ledger.db"
    engine = create_db_engine(f"sqlite:///{db_path}")
    init_db(engine)
    try:
        with Session(engine) as writer, Session(engine) as reader:
            add_pending(writer)
            stale = PaymentLedger(reader).get("u1_PRO_1000")
            assert stale.version == 0

            assert PaymentLedger(writer).annotate("u1_PRO_1000", {"requestId": "r1"}) is True

            assert PaymentLedger(reader)._conditional_update(stale, PaymentStatus.SUCCESS, {}) is False
            reader.rollback()

            txn = PaymentLedger(writer).get("u1_PRO_1000")
            assert (txn.status, txn.version) == ("PENDING", 1)
            assert txn.meta["requestId"] == "r1"
    finally:
        engine.dispose()


def test_list_for_user_and_recent(session):
    add_pending(session, ref="u1_PRO_1000")
    add_pending(session, ref="u1_LIFETIME_2000", amount=1190000)
    add_pending(session, ref="u2_PRO_3000")
    ledger = PaymentLedger(session)
    ledger.transition_if_pending("u2_PRO_3000", PaymentStatus.SUCCESS)

    assert {t.transaction_id for t in ledger.list_for_user("u1")} == {"u1_PRO_1000", "u1_LIFETIME_2000"}
    assert [t.transaction_id for t in ledger.list_recent(status=PaymentStatus.SUCCESS)] == ["u2_PRO_3000"]
    assert len(ledger.list_recent()) == 3


def test_merge_metadata_new_keys_win():
    existing = {"a": 1, "b": 2}
    merged = merge_metadata(existing, {"b": 3, "c": 4})
    assert merged == {"a": 1, "b": 3, "c": 4}
    assert existing == {"a": 1, "b": 2}
    assert merge_metadata(None, None) == {}
