"""
Pricing engine: what the buyer owes for a ticket selection.

Pure calculation over a `Catalog` snapshot, no I/O. All amounts are integer
minor units; percentages go through `Decimal` and round half-up, so no float
ever touches money.

    subtotal  = sum(price_cents * quantity)
    discount  = max(code discount, group discount), clamped to subtotal
    fees      = round_half_up((subtotal - discount) * pct + fixed)
    total     = subtotal - discount + fees
"""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Mapping, Optional, Sequence

from .errors import TierNotFoundError, ValidationError
from .helpers import now_ts

PERCENTAGE = "percentage"
FIXED = "fixed"


# ----------------------------
# Inputs
# ----------------------------
@dataclass(frozen=True)
class Selection:
    tier_id: str
    quantity: int


@dataclass(frozen=True)
class TierPrice:
    id: str
    event_id: str
    name: str
    price_cents: int
    currency: str
    quantity_available: Optional[int] = None
    quantity_sold: int = 0
    sales_start: Optional[float] = None
    sales_end: Optional[float] = None
    min_per_order: int = 1
    max_per_order: int = 10
    is_hidden: bool = False

    @property
    def remaining(self) -> Optional[int]:
        if self.quantity_available is None:
            return None
        return max(0, self.quantity_available - self.quantity_sold)


@dataclass(frozen=True)
class GroupRule:
    min_quantity: int
    discount_percentage: Decimal


@dataclass(frozen=True)
class CodeDiscount:
    code: str
    discount_type: str
    discount_value: int
    applicable_tiers: Optional[frozenset] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0
    valid_from: Optional[float] = None
    valid_until: Optional[float] = None
    minimum_purchase_cents: Optional[int] = None
    is_active: bool = True


@dataclass(frozen=True)
class Catalog:
    tiers: Mapping[str, TierPrice]
    group_rules: Mapping[str, Sequence[GroupRule]] = field(default_factory=dict)
    # the looked-up code, None when no code was given or it does not exist
    discount: Optional[CodeDiscount] = None


@dataclass(frozen=True)
class FeeSchedule:
    percent: Decimal
    fixed_cents: int

    def fee_for(self, amount_cents: int) -> int:
        raw = Decimal(amount_cents) * self.percent + self.fixed_cents
        return int(raw.quantize(Decimal(1), rounding=ROUND_HALF_UP))


# ----------------------------
# Outputs
# ----------------------------
@dataclass(frozen=True)
class DiscountValidation:
    is_valid: bool
    message: str
    discount_type: Optional[str] = None
    discount_value: Optional[int] = None


@dataclass(frozen=True)
class PriceLine:
    tier_id: str
    tier_name: str
    quantity: int
    unit_price_cents: int
    line_subtotal_cents: int
    group_discount_cents: int


@dataclass(frozen=True)
class PriceCalculation:
    subtotal_cents: int
    discount_cents: int
    fees_cents: int
    total_cents: int
    currency: str
    lines: tuple[PriceLine, ...] = ()
    applied_discount: str = "none"  # none | group | code
    discount_code: Optional[str] = None
    discount: Optional[DiscountValidation] = None
    processor_fee_cents: int = 0

    @property
    def quantity(self) -> int:
        return sum(line.quantity for line in self.lines)

    @property
    def net_cents(self) -> int:
        return self.total_cents - self.processor_fee_cents

    def as_dict(self) -> dict:
        d = asdict(self)
        d["lines"] = [asdict(line) for line in self.lines]
        return d


def percent_of(amount_cents: int, percentage) -> int:
    raw = Decimal(amount_cents) * Decimal(str(percentage)) / 100
    return int(raw.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _merge(selections: Iterable[Selection]) -> dict[str, int]:
    merged: dict[str, int] = {}
    for sel in selections:
        if not isinstance(sel.quantity, int) or sel.quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        merged[sel.tier_id] = merged.get(sel.tier_id, 0) + sel.quantity
    if not merged:
        raise ValidationError("Select at least one ticket")
    return merged


class PricingEngine:
    def __init__(self, fees: FeeSchedule,
                 processor_fees: Optional[FeeSchedule] = None) -> None:
        self.fees = fees
        self.processor_fees = processor_fees

    def calculate(
        self,
        selections: Iterable[Selection],
        catalog: Catalog,
        discount_code: Optional[str] = None,
        currency: Optional[str] = None,
        now: Optional[float] = None,
    ) -> PriceCalculation:
        now = now_ts() if now is None else now
        merged = _merge(selections)

        lines = []
        for tier_id, qty in merged.items():
            tier = catalog.tiers.get(tier_id)
            if tier is None:
                raise TierNotFoundError(tier_id)
            currency = currency or tier.currency
            self._check_tier(tier, qty, currency, now)
            line_subtotal = tier.price_cents * qty
            lines.append(PriceLine(
                tier_id=tier.id,
                tier_name=tier.name,
                quantity=qty,
                unit_price_cents=tier.price_cents,
                line_subtotal_cents=line_subtotal,
                group_discount_cents=self._group_discount(
                    catalog.group_rules.get(tier_id, ()), qty, line_subtotal
                ),
            ))

        subtotal = sum(line.line_subtotal_cents for line in lines)
        group_discount = sum(line.group_discount_cents for line in lines)

        validation = None
        code_discount = 0
        if discount_code:
            validation = self.validate_code(
                catalog, discount_code, merged.keys(), subtotal, now
            )
            if validation.is_valid:
                code_discount = self._code_amount(catalog.discount, subtotal)

        # never stacked: the buyer gets the single larger discount
        applied = "none"
        discount = 0
        if code_discount > group_discount:
            applied, discount = "code", code_discount
        elif group_discount > 0:
            applied, discount = "group", group_discount
        discount = min(discount, subtotal)

        post_discount = subtotal - discount
        fees = self.fees.fee_for(post_discount)
        total = post_discount + fees
        processor_fee = (
            self.processor_fees.fee_for(total) if self.processor_fees else 0
        )

        return PriceCalculation(
            subtotal_cents=subtotal,
            discount_cents=discount,
            fees_cents=fees,
            total_cents=total,
            currency=currency.lower(),
            lines=tuple(lines),
            applied_discount=applied,
            discount_code=(
                catalog.discount.code if applied == "code" else None
            ),
            discount=validation,
            processor_fee_cents=processor_fee,
        )

    def validate_code(
        self,
        catalog: Catalog,
        code: str,
        tier_ids: Iterable[str],
        subtotal_cents: Optional[int] = None,
        now: Optional[float] = None,
    ) -> DiscountValidation:
        """Check a code without raising; invalid codes keep the buyer shopping."""
        now = now_ts() if now is None else now
        dc = catalog.discount
        if dc is None or not dc.is_active or dc.code != code.strip().upper():
            return DiscountValidation(False, "Invalid discount code")

        def invalid(message: str) -> DiscountValidation:
            return DiscountValidation(
                False, message, dc.discount_type, dc.discount_value
            )

        if dc.valid_from is not None and now < dc.valid_from:
            return invalid("Discount code is not yet valid")
        if dc.valid_until is not None and now > dc.valid_until:
            return invalid("Discount code has expired")
        if dc.usage_limit is not None and dc.usage_count >= dc.usage_limit:
            return invalid("Discount code usage limit reached")
        if dc.applicable_tiers and not (set(tier_ids) & dc.applicable_tiers):
            return invalid(
                "Discount code does not apply to the selected tickets"
            )
        if (dc.minimum_purchase_cents is not None
                and subtotal_cents is not None
                and subtotal_cents < dc.minimum_purchase_cents):
            return invalid(
                f"Minimum purchase of {dc.minimum_purchase_cents} "
                f"cents required"
            )
        return DiscountValidation(
            True, "Discount code applied", dc.discount_type, dc.discount_value
        )

    # ---
    # internals
    # ---
    @staticmethod
    def _check_tier(tier: TierPrice, qty: int, currency: str,
                    now: float) -> None:
        if tier.is_hidden:
            raise ValidationError(f"Ticket tier '{tier.name}' is not on sale")
        if tier.sales_start is not None and now < tier.sales_start:
            raise ValidationError(
                f"Sales for '{tier.name}' have not started yet"
            )
        if tier.sales_end is not None and now > tier.sales_end:
            raise ValidationError(f"Sales for '{tier.name}' have ended")
        if tier.currency.lower() != currency.lower():
            raise ValidationError(
                f"Ticket tier '{tier.name}' is not sold in "
                f"{currency.upper()}"
            )
        if qty < tier.min_per_order:
            raise ValidationError(
                f"At least {tier.min_per_order} tickets of "
                f"'{tier.name}' per order"
            )
        if qty > tier.max_per_order:
            raise ValidationError(
                f"At most {tier.max_per_order} tickets of "
                f"'{tier.name}' per order"
            )
        remaining = tier.remaining
        if remaining is not None and qty > remaining:
            raise ValidationError(
                f"Not enough tickets available for '{tier.name}'"
            )

    @staticmethod
    def _group_discount(rules: Sequence[GroupRule], qty: int,
                        line_subtotal: int) -> int:
        eligible = [r for r in rules if r.min_quantity <= qty]
        if not eligible:
            return 0
        best = max(eligible, key=lambda r: r.discount_percentage)
        return percent_of(line_subtotal, best.discount_percentage)

    @staticmethod
    def _code_amount(dc: CodeDiscount, subtotal: int) -> int:
        if dc.discount_type == PERCENTAGE:
            return percent_of(subtotal, dc.discount_value)
        if dc.discount_type == FIXED:
            return dc.discount_value
        raise ValidationError(f"Unknown discount type: {dc.discount_type}")
