"""Settlement: exactly-once activation, amount checks, no downgrade on failure, concurrent deliveries."""
import threading
from datetime import datetime, timedelta

import pytest
from sqlmodel import Session, select

from conftest import add_pending
from fastfolio.core.database import create_db_engine, init_db
from fastfolio.models import Subscription
from fastfolio.payments.errors import AmountMismatch, MalformedReference, UnknownTransaction
from fastfolio.payments.types import Channel, ConfirmationEvent, PaymentProvider
from fastfolio.services import subscriptions as subscriptions_module
from fastfolio.services.ledger import PaymentLedger
from fastfolio.services.reconciler import Outcome, Reconciler
from fastfolio.services.subscriptions import LIFETIME_PERIOD_END


def _event(ref="u1_PRO_1000", amount=200000, success=True, channel=Channel.RETURN, provider=PaymentProvider.VNPAY, currency="VND", **kw):
    return ConfirmationEvent(
        ref=ref,
        provider=provider,
        verified_amount=amount,
        verified_currency=currency,
        success=success,
        provider_txn_id="14000001",
        channel=channel,
        message=None if success else "Khách hàng hủy giao dịch",
        **kw,
    )


def _subscription(session, user_id="u1") -> Subscription | None:
    session.expire_all()
    return session.exec(select(Subscription).where(Subscription.user_id == user_id)).first()


def test_return_then_ipn_settles_once(session, monkeypatch):
    calls = []
    original = subscriptions_module.SubscriptionStore.activate

    def counting_activate(self, *args, **kwargs):
        calls.append(args)
        return original(self, *args, **kwargs)

    monkeypatch.setattr(subscriptions_module.SubscriptionStore, "activate", counting_activate)
    add_pending(session)

    first = Reconciler(session).apply(_event(channel=Channel.RETURN))
    assert first.outcome == Outcome.SETTLED
    assert first.succeeded
    sub = _subscription(session)
    assert (sub.plan, sub.status, sub.payment_provider) == ("PRO", "ACTIVE", "VNPAY")
    assert sub.provider_transaction_ref == "14000001"
    first_updated = sub.updated_at

    second = Reconciler(session).apply(_event(channel=Channel.IPN))
    assert second.outcome == Outcome.ALREADY_SETTLED
    assert second.already_settled
    assert second.succeeded
    assert len(calls) == 1
    assert _subscription(session).updated_at == first_updated

    txn = PaymentLedger(session).get("u1_PRO_1000")
    assert txn.status == "SUCCESS"
    assert txn.meta["channel"] == "return"
    assert txn.meta["providerTransactionId"] == "14000001"


def test_amount_mismatch_leaves_row_pending(session):
    add_pending(session)
    with pytest.raises(AmountMismatch) as exc:
        Reconciler(session).apply(_event(amount=199999, channel=Channel.IPN))
    assert exc.value.context["expected"] == 200000
    assert PaymentLedger(session).get("u1_PRO_1000").status == "PENDING"
    assert _subscription(session) is None


def test_currency_mismatch_is_rejected(session):
    add_pending(session, provider="STRIPE", amount=800, currency="USD")
    with pytest.raises(AmountMismatch):
        Reconciler(session).apply(_event(amount=800, currency="EUR", provider=PaymentProvider.STRIPE))
    Reconciler(session).apply(_event(amount=800, currency="usd", provider=PaymentProvider.STRIPE))
    assert PaymentLedger(session).get("u1_PRO_1000").status == "SUCCESS"


def test_unknown_and_malformed_references(session):
    with pytest.raises(UnknownTransaction):
        Reconciler(session).apply(_event(ref="u9_PRO_1"))
    with pytest.raises(MalformedReference):
        Reconciler(session).apply(_event(ref="garbage"))


def test_confirmation_from_other_provider_is_rejected(session):
    add_pending(session, provider="MOMO")
    with pytest.raises(UnknownTransaction):
        Reconciler(session).apply(_event(provider=PaymentProvider.VNPAY))
    assert PaymentLedger(session).get("u1_PRO_1000").status == "PENDING"


def test_failed_payment_does_not_downgrade_active_subscription(session):
    add_pending(session, ref="u1_LIFETIME_500", amount=1190000)
    Reconciler(session).apply(_event(ref="u1_LIFETIME_500", amount=1190000))
    before = _subscription(session)
    snapshot = (before.plan, before.status, before.current_period_end, before.updated_at)
    assert before.plan == "LIFETIME"
    assert before.current_period_end == LIFETIME_PERIOD_END

    add_pending(session, ref="u1_PRO_1000")
    result = Reconciler(session).apply(_event(success=False))
    assert result.outcome == Outcome.SETTLED
    assert not result.succeeded
    assert result.transaction.meta["failureReason"] == "Khách hàng hủy giao dịch"

    after = _subscription(session)
    assert (after.plan, after.status, after.current_period_end, after.updated_at) == snapshot


def test_yearly_billing_cycle_sets_period_end(session):
    add_pending(session, amount=1990000, meta={"billingCycle": "yearly"})
    before = datetime.utcnow()
    Reconciler(session).apply(_event(amount=1990000))
    sub = _subscription(session)
    assert sub.current_period_end - before >= timedelta(days=364)


def test_provider_period_end_wins(session):
    add_pending(session, provider="STRIPE", amount=800, currency="USD")
    period_end = datetime(2031, 1, 1)
    Reconciler(session).apply(
        _event(amount=800, currency="USD", provider=PaymentProvider.STRIPE, period_end=period_end, customer_ref="cus_1", subscription_ref="sub_1")
    )
    sub = _subscription(session)
    assert sub.current_period_end == period_end
    assert (sub.stripe_customer_id, sub.stripe_subscription_id) == ("cus_1", "sub_1")


def test_concurrent_deliveries_settle_exactly_once(tmp_path, monkeypatch):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    init_db(engine)
    with Session(engine) as s:
        add_pending(s)

    activations = []
    original = subscriptions_module.SubscriptionStore.activate

    def counting_activate(self, *args, **kwargs):
        activations.append(threading.get_ident())
        return original(self, *args, **kwargs)

    monkeypatch.setattr(subscriptions_module.SubscriptionStore, "activate", counting_activate)

    outcomes, errors = [], []
    barrier = threading.Barrier(8)

    def deliver(i):
        channel = Channel.RETURN if i % 2 else Channel.IPN
        try:
            barrier.wait()
            with Session(engine) as s:
                outcomes.append(Reconciler(s).apply(_event(channel=channel)).outcome)
        except Exception as e:  # surfaced by the assertion below
            errors.append(e)

    threads = [threading.Thread(target=deliver, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert outcomes.count(Outcome.SETTLED) == 1
    assert outcomes.count(Outcome.ALREADY_SETTLED) == 7
    assert len(activations) == 1
    with Session(engine) as s:
        assert PaymentLedger(s).get("u1_PRO_1000").status == "SUCCESS"
        assert len(s.exec(select(Subscription)).all()) == 1
    engine.dispose()
