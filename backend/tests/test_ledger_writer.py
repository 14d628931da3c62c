"""Ledger writer tests: create-or-update with precedence"""
from datetime import datetime, timezone

import pytest

from donation_ledger.db.helpers import InsertOutcome, apply_non_null
from donation_ledger.models.donation_payment import DonationPayment
from donation_ledger.models.enums import GiftStatus
from donation_ledger.models.recurring_gift import RecurringGift
from donation_ledger.services.attribution import resolve_attribution
from donation_ledger.services.ledger_writer import (
    PaymentKey, find_payment, find_recurring_gift, mark_gift_past_due, record_refund,
    set_payment_status, upsert_payment, upsert_recurring_gift
)
from donation_ledger.models.enums import PaymentStatus


def _one_time_data(**overrides):
    data = {
        "kind": "one_time",
        "status": "succeeded",
        "amount_minor": 5000,
        "currency": "usd",
        "donor_email": "donor@example.org",
        "stripe_payment_intent_id": "pi_1",
        "stripe_event_id": "evt_1",
    }
    data.update(overrides)
    return data


@pytest.mark.critical
class TestUpsertPayment:
    """DonationPayment create-or-update"""

    def test_insert_creates_row(self, db_session, defaults):
        attribution = resolve_attribution({"dat_campaign": "gala"}, defaults=defaults)
        outcome = upsert_payment(db_session, PaymentKey.payment_intent("pi_1"), _one_time_data(), attribution)
        db_session.commit()

        assert outcome is InsertOutcome.INSERTED
        payment = find_payment(db_session, PaymentKey.payment_intent("pi_1"))
        assert payment.amount_minor == 5000
        assert payment.campaign_slug == "gala"
        assert payment.context_id == "gala"

    def test_conflict_only_writes_non_null_values(self, db_session, defaults):
        """Test a less-informed event never erases stored data"""
        attribution = resolve_attribution({}, defaults=defaults)
        upsert_payment(db_session, PaymentKey.payment_intent("pi_1"),
                       _one_time_data(donor_name="Dana Donor"), attribution)

        outcome = upsert_payment(
            db_session, PaymentKey.payment_intent("pi_1"),
            _one_time_data(donor_name=None, donor_email="new@example.org", stripe_event_id="evt_2"),
            attribution,
        )
        db_session.commit()

        assert outcome is InsertOutcome.CONFLICTED
        payment = find_payment(db_session, PaymentKey.payment_intent("pi_1"))
        assert payment.donor_name == "Dana Donor"
        assert payment.donor_email == "new@example.org"
        assert payment.stripe_event_id == "evt_2"
        assert db_session.query(DonationPayment).count() == 1

    def test_defaulted_attribution_does_not_replace_real_values(self, db_session, defaults):
        real = resolve_attribution({"dat_campaign": "gala", "dat_ctx_type": "cause", "dat_ctx_id": "c-1"},
                                   defaults=defaults)
        upsert_payment(db_session, PaymentKey.payment_intent("pi_1"), _one_time_data(), real)

        upsert_payment(db_session, PaymentKey.payment_intent("pi_1"), _one_time_data(),
                       resolve_attribution({}, defaults=defaults))
        db_session.commit()

        payment = find_payment(db_session, PaymentKey.payment_intent("pi_1"))
        assert payment.campaign_slug == "gala"
        assert payment.context_type == "cause"
        assert payment.context_id == "c-1"

    def test_refund_fields_and_canceled_status_survive_upsert(self, db_session, defaults):
        attribution = resolve_attribution({}, defaults=defaults)
        upsert_payment(db_session, PaymentKey.payment_intent("pi_1"), _one_time_data(), attribution)
        payment = find_payment(db_session, PaymentKey.payment_intent("pi_1"))
        record_refund(payment, 5000, "evt_refund")
        db_session.flush()

        upsert_payment(db_session, PaymentKey.payment_intent("pi_1"),
                       _one_time_data(refunded_amount_minor=0, stripe_event_id="evt_replay"), attribution)
        db_session.commit()

        payment = find_payment(db_session, PaymentKey.payment_intent("pi_1"))
        assert payment.status == "canceled"
        assert payment.refunded_amount_minor == 5000

    def test_stored_kind_is_never_changed(self, db_session, defaults):
        attribution = resolve_attribution({}, defaults=defaults)
        upsert_payment(db_session, PaymentKey.payment_intent("pi_1"), _one_time_data(), attribution)
        upsert_payment(db_session, PaymentKey.payment_intent("pi_1"), _one_time_data(kind="monthly"), attribution)
        db_session.commit()

        assert find_payment(db_session, PaymentKey.payment_intent("pi_1")).kind == "one_time"

    def test_conflict_on_other_key_is_skipped(self, db_session, defaults):
        """Test an invoice row reusing another row's payment intent does not touch that row"""
        attribution = resolve_attribution({}, defaults=defaults)
        upsert_payment(db_session, PaymentKey.payment_intent("pi_1"), _one_time_data(), attribution)

        outcome = upsert_payment(
            db_session, PaymentKey.invoice("in_1"),
            _one_time_data(kind="monthly", stripe_invoice_id="in_1", amount_minor=1),
            attribution,
        )
        db_session.commit()

        assert outcome is InsertOutcome.CONFLICTED
        assert find_payment(db_session, PaymentKey.invoice("in_1")) is None
        assert find_payment(db_session, PaymentKey.payment_intent("pi_1")).amount_minor == 5000


class TestUpsertRecurringGift:
    """RecurringGift create-or-merge"""

    def _data(self, **overrides):
        data = {"amount_minor": 1000, "currency": "usd", "donor_email": "donor@example.org",
                "stripe_event_id": "evt_1"}
        data.update(overrides)
        return data

    def test_creates_active_gift(self, db_session, defaults):
        gift, outcome = upsert_recurring_gift(db_session, "sub_1", self._data(),
                                              resolve_attribution({}, defaults=defaults), GiftStatus.ACTIVE)
        db_session.commit()

        assert outcome is InsertOutcome.INSERTED
        assert gift.status == "active"
        assert gift.canceled_at is None

    def test_missing_amount_and_currency_get_placeholders_on_create(self, db_session, defaults):
        gift, _ = upsert_recurring_gift(db_session, "sub_1", self._data(amount_minor=None, currency=None),
                                        resolve_attribution({}, defaults=defaults), GiftStatus.ACTIVE)
        db_session.commit()
        assert gift.amount_minor == 0
        assert gift.currency == "usd"

    def test_cancellation_stamps_canceled_at(self, db_session, defaults):
        attribution = resolve_attribution({}, defaults=defaults)
        upsert_recurring_gift(db_session, "sub_1", self._data(), attribution, GiftStatus.ACTIVE)
        canceled_at = datetime(2026, 3, 1, tzinfo=timezone.utc)

        gift, outcome = upsert_recurring_gift(db_session, "sub_1", self._data(canceled_at=canceled_at),
                                              attribution, GiftStatus.CANCELED)
        db_session.commit()

        assert outcome is InsertOutcome.CONFLICTED
        assert gift.status == "canceled"
        assert gift.canceled_at is not None

    def test_canceled_gift_is_not_reactivated(self, db_session, defaults):
        attribution = resolve_attribution({}, defaults=defaults)
        upsert_recurring_gift(db_session, "sub_1", self._data(), attribution, GiftStatus.CANCELED)
        gift, _ = upsert_recurring_gift(db_session, "sub_1", self._data(amount_minor=2000), attribution,
                                        GiftStatus.ACTIVE)
        db_session.commit()

        assert gift.status == "canceled"
        assert gift.canceled_at is not None
        assert gift.amount_minor == 2000

    def test_merge_keeps_real_attribution(self, db_session, defaults):
        upsert_recurring_gift(db_session, "sub_1", self._data(),
                              resolve_attribution({"dat_campaign": "gala"}, defaults=defaults), GiftStatus.ACTIVE)
        upsert_recurring_gift(db_session, "sub_1", self._data(),
                              resolve_attribution({}, defaults=defaults), GiftStatus.PAST_DUE)
        db_session.commit()

        gift = find_recurring_gift(db_session, "sub_1")
        assert gift.campaign_slug == "gala"
        assert gift.status == "past_due"
        assert db_session.query(RecurringGift).count() == 1


@pytest.mark.critical
class TestStatusWriters:
    """Status-only writers used by payment intent, refund and invoice failure events"""

    def _payment(self, db_session, defaults, **overrides):
        upsert_payment(db_session, PaymentKey.payment_intent("pi_1"), _one_time_data(**overrides),
                       resolve_attribution({}, defaults=defaults))
        return find_payment(db_session, PaymentKey.payment_intent("pi_1"))

    def test_partial_then_full_refund(self, db_session, defaults):
        payment = self._payment(db_session, defaults)

        assert record_refund(payment, 1500, "evt_r1") is True
        assert payment.refunded_amount_minor == 1500
        assert payment.status == "succeeded"
        assert payment.refunded_at is not None

        assert record_refund(payment, 5000, "evt_r2") is True
        assert payment.refunded_amount_minor == 5000
        assert payment.status == "canceled"

    def test_smaller_refund_total_is_ignored(self, db_session, defaults):
        payment = self._payment(db_session, defaults)
        record_refund(payment, 3000, "evt_r1")
        first_refunded_at = payment.refunded_at

        assert record_refund(payment, 1000, "evt_r2") is False
        assert record_refund(payment, 3000, "evt_r3") is False
        assert payment.refunded_amount_minor == 3000
        assert payment.refunded_at == first_refunded_at
        assert payment.stripe_event_id == "evt_r1"

    def test_zero_refund_is_ignored(self, db_session, defaults):
        payment = self._payment(db_session, defaults)
        assert record_refund(payment, 0, "evt_r") is False
        assert payment.refunded_amount_minor is None

    def test_set_payment_status(self, db_session, defaults):
        payment = self._payment(db_session, defaults)
        assert set_payment_status(payment, PaymentStatus.FAILED, "evt_f") is True
        assert payment.status == "failed"
        assert set_payment_status(payment, PaymentStatus.FAILED, "evt_f2") is False

    def test_set_payment_status_keeps_canceled(self, db_session, defaults):
        payment = self._payment(db_session, defaults)
        record_refund(payment, 5000, "evt_r")
        assert set_payment_status(payment, PaymentStatus.SUCCEEDED, "evt_s") is False
        assert payment.status == "canceled"

    def test_mark_gift_past_due(self, db_session, defaults):
        gift, _ = upsert_recurring_gift(db_session, "sub_1", {"amount_minor": 1, "currency": "usd"},
                                        resolve_attribution({}, defaults=defaults), GiftStatus.ACTIVE)
        assert mark_gift_past_due(gift, "evt_f") is True
        assert gift.status == "past_due"
        assert gift.stripe_event_id == "evt_f"

    def test_mark_gift_past_due_leaves_canceled_alone(self, db_session, defaults):
        gift, _ = upsert_recurring_gift(db_session, "sub_1", {"amount_minor": 1, "currency": "usd"},
                                        resolve_attribution({}, defaults=defaults), GiftStatus.CANCELED)
        canceled_at = gift.canceled_at

        assert mark_gift_past_due(gift, "evt_f") is False
        assert gift.status == "canceled"
        assert gift.canceled_at == canceled_at


class TestApplyNonNull:
    def test_skips_none_and_guarded_names(self):
        class Target:
            a = 1
            b = 2
            c = 3

        target = Target()
        changed = apply_non_null(target, {"a": None, "b": 20, "c": 30}, skip=frozenset({"c"}))
        assert changed == ["b"]
        assert (target.a, target.b, target.c) == (1, 20, 3)
