"""
Billing Models
==============
Typed shapes for billing-provider payloads and the local subscription mirror.

Provider objects (Stripe objects or plain dicts from a webhook body) are read
once at the boundary into these models; the rest of the service never touches
raw payload fields.

Event envelopes are parsed into one of three variants:
    - SubscriptionEvent: customer.subscription.created|updated|deleted
    - InvoiceEvent: invoice.payment_succeeded|payment_failed
    - IgnoredEvent: anything else (acknowledged, never processed)
"""

from datetime import datetime, timezone
from typing import Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from services.database import SubscriptionRecord, as_utc
from services.exceptions import InvalidBillingEvent

ACTIVE_STATUSES = ("active", "trialing")
TERMINAL_STATUSES = ("canceled", "incomplete_expired")

SUBSCRIPTION_EVENT_TYPES = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)
INVOICE_EVENT_TYPES = (
    "invoice.payment_succeeded",
    "invoice.payment_failed",
)


def _get(obj, key, default=None):
    """Reads one field from a Stripe object or dict; missing and null both give the default."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        return default
    return default if value is None else value


def _to_dict(obj) -> Dict[str, str]:
    if not obj:
        return {}
    try:
        return {str(k): str(v) for k, v in obj.items()}
    except AttributeError:
        return {}


def _object_id(value) -> Optional[str]:
    """Customer/subscription references arrive either as an id or as an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return _get(value, "id")


def epoch_to_datetime(value) -> Optional[datetime]:
    if value in (None, "", 0):
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _first_item(obj):
    items = _get(obj, "items")
    data = _get(items, "data") or []
    return data[0] if data else None


class SubscriptionPayload(BaseModel):
    """A subscription as the billing provider reports it."""

    id: str
    customer_id: Optional[str] = None
    status: str
    price_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_provider(cls, obj) -> "SubscriptionPayload":
        """
        Reads a Stripe subscription (object or dict).

        Newer API versions report the billing period on the subscription items
        rather than on the subscription, so the first item is the fallback.
        """
        subscription_id = _get(obj, "id")
        status = _get(obj, "status")
        if not subscription_id or not status:
            raise InvalidBillingEvent("Subscription payload is missing id or status")

        item = _first_item(obj)
        period_start = _get(obj, "current_period_start") or _get(item, "current_period_start")
        period_end = _get(obj, "current_period_end") or _get(item, "current_period_end")

        return cls(
            id=subscription_id,
            customer_id=_object_id(_get(obj, "customer")),
            status=status,
            price_id=_get(_get(item, "price"), "id"),
            current_period_start=epoch_to_datetime(period_start),
            current_period_end=epoch_to_datetime(period_end),
            cancel_at_period_end=bool(_get(obj, "cancel_at_period_end", False)),
            canceled_at=epoch_to_datetime(_get(obj, "canceled_at")),
            trial_end=epoch_to_datetime(_get(obj, "trial_end")),
            metadata=_to_dict(_get(obj, "metadata")),
        )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def missing_period_bounds(self) -> bool:
        return self.current_period_start is None or self.current_period_end is None

    def to_snapshot(self, account_id: str) -> "SubscriptionSnapshot":
        return SubscriptionSnapshot(
            account_id=account_id,
            external_customer_id=self.customer_id,
            external_subscription_id=self.id,
            status=self.status,
            price_id=self.price_id,
            current_period_start=self.current_period_start,
            current_period_end=self.current_period_end,
            cancel_at_period_end=self.cancel_at_period_end,
            canceled_at=self.canceled_at,
            trial_end=self.trial_end,
        )


class SubscriptionSnapshot(BaseModel):
    """The locally persisted state of one subscription."""

    account_id: str
    external_customer_id: Optional[str] = None
    external_subscription_id: str
    status: str
    price_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    trial_end: Optional[datetime] = None

    @model_validator(mode="after")
    def clear_periods_when_canceled(self):
        # A canceled subscription has no meaningful billing period
        if self.status == "canceled":
            self.current_period_start = None
            self.current_period_end = None
        return self

    @classmethod
    def from_record(cls, record: SubscriptionRecord) -> "SubscriptionSnapshot":
        return cls(
            account_id=record.account_id,
            external_customer_id=record.external_customer_id,
            external_subscription_id=record.external_subscription_id,
            status=record.status,
            price_id=record.price_id,
            current_period_start=as_utc(record.current_period_start),
            current_period_end=as_utc(record.current_period_end),
            cancel_at_period_end=record.cancel_at_period_end,
            canceled_at=as_utc(record.canceled_at),
            trial_end=as_utc(record.trial_end),
        )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class SubscriptionEvent(BaseModel):
    kind: Literal["subscription"] = "subscription"
    event_id: Optional[str] = None
    event_type: str
    subscription: SubscriptionPayload


class InvoiceEvent(BaseModel):
    kind: Literal["invoice"] = "invoice"
    event_id: Optional[str] = None
    event_type: str
    invoice_id: Optional[str] = None
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None


class IgnoredEvent(BaseModel):
    kind: Literal["ignored"] = "ignored"
    event_id: Optional[str] = None
    event_type: str


BillingEvent = Union[SubscriptionEvent, InvoiceEvent, IgnoredEvent]


def _invoice_subscription_id(invoice) -> Optional[str]:
    subscription_id = _object_id(_get(invoice, "subscription"))
    if subscription_id:
        return subscription_id
    # 2025+ API versions moved the reference under parent.subscription_details
    details = _get(_get(invoice, "parent"), "subscription_details")
    return _object_id(_get(details, "subscription"))


def parse_event(event) -> BillingEvent:
    """
    Turns a provider event envelope into one of the known event shapes.

    Raises:
        InvalidBillingEvent: If the envelope has no type or a handled event has no payload.
    """
    event_type = _get(event, "type")
    if not event_type:
        raise InvalidBillingEvent("Event has no type")
    event_id = _get(event, "id")
    payload = _get(_get(event, "data"), "object")

    if event_type in SUBSCRIPTION_EVENT_TYPES:
        if payload is None:
            raise InvalidBillingEvent(f"{event_type} carries no subscription")
        return SubscriptionEvent(
            event_id=event_id,
            event_type=event_type,
            subscription=SubscriptionPayload.from_provider(payload),
        )

    if event_type in INVOICE_EVENT_TYPES:
        if payload is None:
            raise InvalidBillingEvent(f"{event_type} carries no invoice")
        return InvoiceEvent(
            event_id=event_id,
            event_type=event_type,
            invoice_id=_get(payload, "id"),
            subscription_id=_invoice_subscription_id(payload),
            customer_id=_object_id(_get(payload, "customer")),
        )

    return IgnoredEvent(event_id=event_id, event_type=event_type)
