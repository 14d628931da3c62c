"""Entity resolver tests"""
import pytest

from donation_ledger.core.exceptions import ProviderFetchError
from donation_ledger.models.enums import GiftStatus
from donation_ledger.models.recurring_gift import RecurringGift
from donation_ledger.services.attribution import resolve_attribution
from donation_ledger.services.entity_resolver import (
    invoice_metadata_sources, invoice_payment_intent_id, invoice_subscription_id, is_valid_id,
    normalize_invoice, resolve_recurring_gift, subscription_financials
)
from donation_ledger.services.ledger_writer import upsert_recurring_gift

from factories import (
    PERIOD_END, FakeProvider, invoice_obj, invoice_payment_obj, subscription_obj
)


class TestIdShapes:
    @pytest.mark.parametrize("kind,value,expected", [
        ("invoice", "in_123", True),
        ("invoice", "inpay_123", False),
        ("invoice", "in_", False),
        ("payment_intent", "pi_abc", True),
        ("payment_intent", "ch_abc", False),
        ("subscription", "sub_1", True),
        ("subscription", None, False),
        ("checkout_session", "cs_test_1", True),
        ("checkout_session", 42, False),
    ])
    def test_is_valid_id(self, kind, value, expected):
        assert is_valid_id(kind, value) is expected


class TestSubscriptionFinancials:
    def test_reads_first_item_price(self):
        financials = subscription_financials(subscription_obj(unit_amount=2500, currency="EUR"))
        assert financials.amount_minor == 2500
        assert financials.currency == "eur"
        assert financials.current_period_end is not None
        assert int(financials.current_period_end.timestamp()) == PERIOD_END
        assert financials.canceled_at is None

    def test_falls_back_to_legacy_plan(self):
        subscription = {
            "id": "sub_1",
            "items": {"data": [{"plan": {"amount": 700, "currency": "usd"}}]},
            "current_period_end": PERIOD_END,
        }
        financials = subscription_financials(subscription)
        assert financials.amount_minor == 700
        assert financials.currency == "usd"

    def test_empty_subscription(self):
        financials = subscription_financials({"id": "sub_1"})
        assert financials.amount_minor is None
        assert financials.currency is None
        assert financials.current_period_end is None


class TestInvoiceNormalization:
    """Invoice and invoice_payment shadow objects"""

    def test_invoice_is_used_directly(self, provider):
        invoice = invoice_obj()
        normalized = normalize_invoice(invoice, provider)
        assert normalized.invoice is invoice
        assert normalized.payment_intent_override is None
        assert provider.calls == []

    def test_shadow_object_is_refetched(self):
        invoice = invoice_obj(payment_intent=None)
        provider = FakeProvider(invoices={"in_test_1": invoice})

        normalized = normalize_invoice(invoice_payment_obj(payment_intent="pi_override"), provider)

        assert normalized.invoice is invoice
        assert normalized.payment_intent_override == "pi_override"
        assert provider.calls == [("invoice", "in_test_1")]

    def test_shadow_object_without_invoice_reference_is_skipped(self, provider):
        assert normalize_invoice(invoice_payment_obj(invoice="inpay_bogus"), provider) is None
        assert normalize_invoice(invoice_payment_obj(invoice=None), provider) is None
        assert provider.calls == []

    def test_other_objects_are_skipped(self, provider):
        assert normalize_invoice({"id": "ch_1", "object": "charge"}, provider) is None

    def test_refetch_failure_propagates(self):
        provider = FakeProvider()
        with pytest.raises(ProviderFetchError):
            normalize_invoice(invoice_payment_obj(), provider)

    def test_subscription_id_from_parent_details(self):
        invoice = invoice_obj(subscription=None, subscription_details_metadata={"dat_campaign": "p"})
        invoice["parent"]["subscription_details"]["subscription"] = "sub_parent"
        assert invoice_subscription_id(invoice) == "sub_parent"
        assert {"dat_campaign": "p"} in invoice_metadata_sources(invoice)

    def test_subscription_id_from_expanded_object(self):
        invoice = invoice_obj(subscription={"id": "sub_expanded", "metadata": {"dat_ctx_id": "x"}})
        assert invoice_subscription_id(invoice) == "sub_expanded"
        assert {"dat_ctx_id": "x"} in invoice_metadata_sources(invoice)

    def test_payment_intent_from_invoice_payments_list(self):
        invoice = invoice_obj(payment_intent=None)
        invoice["payments"] = {"data": [{"payment": {"payment_intent": "pi_from_payments"}}]}
        assert invoice_payment_intent_id(invoice) == "pi_from_payments"


@pytest.mark.critical
class TestResolveRecurringGift:
    """Existing gift lookup with a single remote fallback"""

    def test_existing_gift_needs_no_fetch(self, db_session, defaults, provider):
        upsert_recurring_gift(db_session, "sub_test_1", {"amount_minor": 1000, "currency": "usd"},
                              resolve_attribution({"dat_campaign": "stored"}, defaults=defaults),
                              GiftStatus.ACTIVE)

        resolved = resolve_recurring_gift(db_session, "sub_test_1", provider, event_id="evt_1", defaults=defaults)

        assert resolved.fetched is False
        assert resolved.attribution.campaign_slug == "stored"
        assert provider.calls == []

    def test_missing_gift_is_recovered_with_one_fetch(self, db_session, defaults):
        provider = FakeProvider(subscriptions={"sub_test_1": subscription_obj(unit_amount=1200)})

        resolved = resolve_recurring_gift(db_session, "sub_test_1", provider, event_id="evt_1", defaults=defaults)
        db_session.commit()

        assert provider.calls == [("subscription", "sub_test_1")]
        assert resolved.fetched is True
        gift = db_session.query(RecurringGift).one()
        assert gift.stripe_subscription_id == "sub_test_1"
        assert gift.amount_minor == 1200
        assert gift.status == "active"
        assert gift.campaign_slug == "spring-gala"
        assert gift.context_type == "drama_club"
        assert gift.stripe_event_id == "evt_1"

    def test_preferred_sources_beat_subscription_metadata(self, db_session, defaults):
        provider = FakeProvider(subscriptions={"sub_test_1": subscription_obj()})

        resolved = resolve_recurring_gift(
            db_session, "sub_test_1", provider, event_id="evt_1", defaults=defaults,
            preferred_sources=[{"dat_campaign": "from-invoice"}],
        )

        assert resolved.attribution.campaign_slug == "from-invoice"
        assert resolved.attribution.context_id == "club-42"

    def test_fetch_failure_propagates_without_writing(self, db_session, defaults):
        provider = FakeProvider(error=ProviderFetchError("subscription", "sub_test_1", RuntimeError("boom")))

        with pytest.raises(ProviderFetchError):
            resolve_recurring_gift(db_session, "sub_test_1", provider, event_id="evt_1", defaults=defaults)

        assert provider.calls == [("subscription", "sub_test_1")]
        assert db_session.query(RecurringGift).count() == 0
