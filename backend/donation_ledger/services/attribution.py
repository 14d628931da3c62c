"""Attribution resolution from provider metadata.

Checkout, subscription and invoice objects all carry a free-form
``metadata`` string map. Two generations of key names are in circulation
(legacy ``dat_campaign_slug`` / ``dat_context_type`` and v1 ``dat_campaign`` /
``dat_ctx_type``), plus camelCase keys from older front-end builds. This module
is the only place raw metadata is read; everything downstream works with an
``AttributionBundle``.

Sources are passed in preference order (checkout session, then subscription,
then invoice). For every field, the first source holding a non-blank value
under any of the field's aliases wins.
"""
import logging
import math
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Mapping, Optional, Sequence

from donation_ledger.core.config import AttributionDefaults, get_attribution_defaults
from donation_ledger.models.enums import (
    AmountType, ContextType, coerce_amount_type, coerce_context_type
)
from donation_ledger.services.stripe_service import _get_stripe_value

logger = logging.getLogger(__name__)

Metadata = Mapping[str, str]

FIELD_ALIASES: Dict[str, Sequence[str]] = {
    "campaign_slug": ("dat_campaign", "dat_campaign_slug", "campaignSlug", "campaign"),
    "context_type": ("dat_ctx_type", "dat_context_type", "contextType"),
    "context_id": ("dat_ctx_id", "dat_context_id", "contextId"),
    "context_label": ("dat_ctx_label", "dat_context_label", "contextLabel"),
    "tier_id": ("dat_tier_id", "tierId"),
    "tier_label": ("dat_tier_label", "tierLabel", "tierTitle", "dat_tier_title"),
    "amount_type": ("dat_amount_type", "dat_tier_kind", "amountType"),
    "utm_source": ("utm_source", "dat_utm_source"),
    "utm_medium": ("utm_medium", "dat_utm_medium"),
    "utm_campaign": ("utm_campaign", "dat_utm_campaign"),
    "utm_content": ("utm_content", "dat_utm_content"),
    "utm_term": ("utm_term", "dat_utm_term"),
    "referrer": ("dat_referrer", "referrer"),
    "landing_path": ("dat_landing_path", "landingPath"),
}

HINT_ALIASES: Dict[str, Sequence[str]] = {
    "amount_minor": ("dat_amount_minor", "dat_amt_cents"),
    "currency": ("dat_currency",),
    "donor_key": ("dat_donor_key", "dat_donor_id"),
    "donor_email": ("dat_donor_email",),
    "donor_name": ("dat_donor_name",),
}

REQUIRED_FIELDS = ("campaign_slug", "context_type", "context_id", "amount_type")
OPTIONAL_FIELDS = tuple(name for name in FIELD_ALIASES if name not in REQUIRED_FIELDS)

# Any of these marks an object as created by our own checkout flow
DONATION_MARKERS = (
    ("dat_schema",),
    ("dat_campaign", "dat_campaign_slug"),
    ("dat_ctx_type", "dat_context_type"),
    ("dat_ctx_id", "dat_context_id"),
)


@dataclass(frozen=True)
class AttributionBundle:
    campaign_slug: str
    context_type: ContextType
    context_id: str
    amount_type: AmountType
    context_label: Optional[str] = None
    tier_id: Optional[str] = None
    tier_label: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    referrer: Optional[str] = None
    landing_path: Optional[str] = None
    # Required fields whose value is a substituted default, not real data
    defaulted: frozenset = field(default=frozenset(), compare=False)

    def as_columns(self) -> Dict[str, Any]:
        columns = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "defaulted"}
        columns["context_type"] = self.context_type.value
        columns["amount_type"] = self.amount_type.value
        return columns

    def filled_from(self, fallback: "AttributionBundle") -> "AttributionBundle":
        """Copy with every empty optional field taken from ``fallback``; set fields are kept"""
        missing = {
            name: getattr(fallback, name)
            for name in OPTIONAL_FIELDS
            if getattr(self, name) is None and getattr(fallback, name) is not None
        }
        return replace(self, **missing) if missing else self

    @classmethod
    def from_record(cls, record) -> "AttributionBundle":
        """Rebuild a bundle from a stored RecurringGift / DonationPayment row"""
        return cls(
            campaign_slug=record.campaign_slug,
            context_type=coerce_context_type(record.context_type),
            context_id=record.context_id,
            amount_type=coerce_amount_type(record.amount_type),
            context_label=record.context_label,
            tier_id=record.tier_id,
            tier_label=record.tier_label,
            utm_source=record.utm_source,
            utm_medium=record.utm_medium,
            utm_campaign=record.utm_campaign,
            utm_content=record.utm_content,
            utm_term=record.utm_term,
            referrer=record.referrer,
            landing_path=record.landing_path,
        )


@dataclass(frozen=True)
class MetadataHints:
    """Non-attribution values our checkout flow also stamps into metadata"""
    amount_minor: Optional[int] = None
    currency: Optional[str] = None
    donor_key: Optional[str] = None
    donor_email: Optional[str] = None
    donor_name: Optional[str] = None


def metadata_of(obj: Any) -> Dict[str, str]:
    """Copy an object's metadata into a plain str->str dict (empty when absent)"""
    raw = _get_stripe_value(obj, "metadata")
    if not raw:
        return {}
    items = raw.items() if hasattr(raw, "items") else []
    return {str(k): v for k, v in items if isinstance(v, str)}


def pick(sources: Sequence[Metadata], aliases: Sequence[str]) -> Optional[str]:
    """First non-blank value, walking sources in order and aliases within each source"""
    for meta in sources:
        if not meta:
            continue
        for key in aliases:
            value = meta.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def parse_int_safe(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            return None
    return None


def resolve_attribution(*sources: Metadata, defaults: Optional[AttributionDefaults] = None) -> AttributionBundle:
    """Merge metadata sources (highest preference first) into a fully populated bundle"""
    defaults = defaults or get_attribution_defaults()
    values = {name: pick(sources, aliases) for name, aliases in FIELD_ALIASES.items()}
    defaulted = set()

    campaign_slug = values["campaign_slug"]
    if campaign_slug is None:
        campaign_slug = defaults.campaign_slug
        defaulted.add("campaign_slug")

    raw_context_type = values["context_type"]
    context_type = coerce_context_type(raw_context_type)
    if raw_context_type is None or context_type.value != raw_context_type.lower():
        if raw_context_type is not None:
            logger.warning(f"Unrecognized context type '{raw_context_type}', using '{context_type.value}'")
        defaulted.add("context_type")

    context_id = values["context_id"]
    if context_id is None:
        # Campaign-level attribution when no specific context was chosen
        context_id = campaign_slug
        defaulted.add("context_id")

    raw_amount_type = values["amount_type"]
    amount_type = coerce_amount_type(raw_amount_type)
    if raw_amount_type is None or amount_type.value != raw_amount_type.lower():
        if raw_amount_type is not None:
            logger.warning(f"Unrecognized amount type '{raw_amount_type}', using '{amount_type.value}'")
        defaulted.add("amount_type")

    return AttributionBundle(
        campaign_slug=campaign_slug,
        context_type=context_type,
        context_id=context_id,
        amount_type=amount_type,
        context_label=values["context_label"],
        tier_id=values["tier_id"],
        tier_label=values["tier_label"],
        utm_source=values["utm_source"],
        utm_medium=values["utm_medium"],
        utm_campaign=values["utm_campaign"],
        utm_content=values["utm_content"],
        utm_term=values["utm_term"],
        referrer=values["referrer"],
        landing_path=values["landing_path"],
        defaulted=frozenset(defaulted),
    )


def resolve_hints(*sources: Metadata) -> MetadataHints:
    currency = pick(sources, HINT_ALIASES["currency"])
    return MetadataHints(
        amount_minor=parse_int_safe(pick(sources, HINT_ALIASES["amount_minor"])),
        currency=currency.lower() if currency else None,
        donor_key=pick(sources, HINT_ALIASES["donor_key"]),
        donor_email=pick(sources, HINT_ALIASES["donor_email"]),
        donor_name=pick(sources, HINT_ALIASES["donor_name"]),
    )


def resolve_donor_key(reference_id: Optional[str], *sources: Metadata) -> Optional[str]:
    """An explicit session client_reference_id beats any metadata-embedded donor key"""
    if isinstance(reference_id, str) and reference_id.strip():
        return reference_id.strip()
    return pick(sources, HINT_ALIASES["donor_key"])


def looks_like_donation(meta: Metadata) -> bool:
    return any(pick([meta], aliases) for aliases in DONATION_MARKERS)
