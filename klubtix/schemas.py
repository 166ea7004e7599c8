"""Pydantic request bodies and response shapes for the HTTP API."""
from __future__ import annotations
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from .helpers import to_iso
from .model.db import Order, OrderItem, Ticket
from .pricing import Selection


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------
class SelectionSchema(BaseModel):
    tier_id: str
    quantity: int = Field(ge=1)

    def to_selection(self) -> Selection:
        return Selection(self.tier_id, self.quantity)


class PricingRequest(BaseModel):
    event_id: Optional[str] = None
    selections: list[SelectionSchema] = Field(min_length=1)
    discount_code: Optional[str] = None
    currency: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "event_id": "evt-launch",
                    "selections": [{"tier_id": "tier-ga", "quantity": 2}],
                    "discount_code": "EARLY10",
                }
            ]
        }
    }


class DiscountValidateRequest(BaseModel):
    event_id: str
    code: str = Field(min_length=1)
    tier_ids: list[str] = Field(default_factory=list)
    subtotal_cents: Optional[int] = Field(default=None, ge=0)


class CheckoutRequest(BaseModel):
    event_id: str
    selections: list[SelectionSchema] = Field(min_length=1)
    buyer_email: str
    buyer_name: str = ""
    discount_code: Optional[str] = None
    currency: Optional[str] = None


class ConfirmRequest(BaseModel):
    order_id: str


class RetryRequest(BaseModel):
    order_id: str
    payment_method: str = Field(min_length=1)


class MockEmitRequest(BaseModel):
    outcome: Literal["succeeded", "failed", "canceled"]
    payment_method: Optional[str] = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------
def item_to_dict(item: OrderItem) -> dict[str, Any]:
    return {
        "tier_id": item.tier_id,
        "tier_name": item.tier_name,
        "quantity": item.quantity,
        "unit_price_cents": item.unit_price_cents,
    }


def ticket_to_dict(ticket: Ticket) -> dict[str, Any]:
    meta = ticket.meta or {}
    return {
        "id": ticket.id,
        "order_id": ticket.order_id,
        "event_id": ticket.event_id,
        "ticket_tier_id": ticket.ticket_tier_id,
        "ticket_code": ticket.ticket_code,
        "status": ticket.status,
        "attendee_email": ticket.attendee_email,
        "attendee_name": ticket.attendee_name,
        "tier_name": meta.get("tier_name"),
        "event_name": meta.get("event_name"),
        "price_cents": meta.get("price_cents"),
        "purchase_date": meta.get("purchase_date"),
    }


def order_to_dict(order: Order, items=None, tickets=None) -> dict[str, Any]:
    meta = order.meta or {}
    out = {
        "order_id": order.id,
        "event_id": order.event_id,
        "status": order.status,
        "quantity": order.quantity,
        "subtotal_cents": order.subtotal_cents,
        "discount_cents": order.discount_cents,
        "fees_cents": order.fee_cents,
        "amount_cents": order.amount_cents,
        "currency": order.currency,
        "discount_code": order.discount_code,
        "payment_method": order.payment_method,
        "payment_ref": order.payment_ref,
        "retry_count": int(meta.get("retry_count", 0)),
        "last_error_code": meta.get("last_error_code"),
        "created_at": to_iso(order.created_at),
        "paid_at": to_iso(order.paid_at),
    }
    if items is not None:
        out["items"] = [item_to_dict(i) for i in items]
    if tickets is not None:
        out["tickets"] = [ticket_to_dict(t) for t in tickets]
    return out
