import logging
import stripe
from typing import Any, Optional, Sequence

from donation_ledger.core.config import settings
from donation_ledger.core.exceptions import ProviderFetchError
from donation_ledger.core.metrics import provider_fetches_counter

logger = logging.getLogger(__name__)

# Configure Stripe
stripe.api_key = settings.STRIPE_SECRET_KEY
stripe.api_version = settings.STRIPE_API_VERSION

# Expansions needed to map an invoice without further round-trips
INVOICE_EXPAND = [
    "payment_intent",
    "customer",
    "subscription",
    "lines.data.price",
    "lines.data.plan",
    "lines.data.subscription",
]

# ============================================================================
# STRIPE OBJECT ACCESS HELPERS
# ============================================================================

def _get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access).

    Dict access comes first: StripeObject is a dict, and names such as
    ``items`` would otherwise resolve to the bound dict method.
    """
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key)
        return default if value is None else value
    value = getattr(obj, key, None)
    return default if value is None else value


def _get_path(obj: Any, *keys, default=None):
    """Walk nested keys / list indexes, returning ``default`` on any gap"""
    current = obj
    for key in keys:
        if current is None:
            return default
        if isinstance(key, int):
            if not isinstance(current, (list, tuple)) or len(current) <= key:
                return default
            current = current[key]
        else:
            current = _get_stripe_value(current, key)
    return default if current is None else current


def as_id(value: Any) -> Optional[str]:
    """Return the id of an expandable field, whether it arrived as a string or an object"""
    if not value:
        return None
    if isinstance(value, str):
        return value
    obj_id = _get_stripe_value(value, "id")
    return obj_id if isinstance(obj_id, str) else None


# ============================================================================
# REMOTE READS
# ============================================================================

def retrieve_subscription(subscription_id: str):
    """Fetch a subscription. No retry loop: a failure aborts the event so Stripe redelivers it."""
    try:
        subscription = stripe.Subscription.retrieve(subscription_id)
    except stripe.StripeError as e:
        provider_fetches_counter.labels(object="subscription", status="error").inc()
        logger.error(f"Could not retrieve subscription {subscription_id} from Stripe: {e}")
        raise ProviderFetchError("subscription", subscription_id, e) from e
    provider_fetches_counter.labels(object="subscription", status="ok").inc()
    return subscription


def retrieve_invoice(invoice_id: str, expand: Optional[Sequence[str]] = None):
    """Fetch an invoice with the expansions the ledger mapping relies on"""
    try:
        invoice = stripe.Invoice.retrieve(invoice_id, expand=list(expand or INVOICE_EXPAND))
    except stripe.StripeError as e:
        provider_fetches_counter.labels(object="invoice", status="error").inc()
        logger.error(f"Could not retrieve invoice {invoice_id} from Stripe: {e}")
        raise ProviderFetchError("invoice", invoice_id, e) from e
    provider_fetches_counter.labels(object="invoice", status="ok").inc()
    return invoice


class StripeProvider:
    """Default provider client handed to the orchestrator"""

    def retrieve_subscription(self, subscription_id: str):
        return retrieve_subscription(subscription_id)

    def retrieve_invoice(self, invoice_id: str, expand: Optional[Sequence[str]] = None):
        return retrieve_invoice(invoice_id, expand)


# ============================================================================
# WEBHOOK VERIFICATION (transport side)
# ============================================================================

def construct_event(payload: bytes, sig_header: str):
    """Verify the webhook signature and parse the event.

    Raises:
        ValueError: For invalid payload
        stripe.SignatureVerificationError: For invalid signature
    """
    return stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
