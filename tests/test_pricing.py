from decimal import Decimal

import pytest

from klubtix.errors import TierNotFoundError, ValidationError
from klubtix.pricing import (
    Catalog,
    CodeDiscount,
    FeeSchedule,
    GroupRule,
    PricingEngine,
    Selection,
    TierPrice,
    percent_of,
)

PLATFORM = FeeSchedule(Decimal("0.059"), 30)
NOW = 1_700_000_000.0


def tier(tier_id="t1", price=5000, **kw) -> TierPrice:
    return TierPrice(id=tier_id, event_id="e1", name=tier_id.upper(),
                     price_cents=price, currency="usd", **kw)


def catalog(*tiers, rules=None, discount=None) -> Catalog:
    return Catalog(
        tiers={t.id: t for t in tiers},
        group_rules=rules or {},
        discount=discount,
    )


@pytest.fixture
def engine() -> PricingEngine:
    return PricingEngine(PLATFORM, FeeSchedule(Decimal("0.029"), 30))


class TestScenarios:
    def test_happy_path(self, engine):
        calc = engine.calculate([Selection("t1", 2)], catalog(tier()), now=NOW)
        assert calc.subtotal_cents == 10000
        assert calc.discount_cents == 0
        assert calc.fees_cents == 620
        assert calc.total_cents == 10620
        assert calc.currency == "usd"
        assert calc.applied_discount == "none"
        assert calc.quantity == 2

    def test_group_discount(self, engine):
        cat = catalog(
            tier(price=1000, max_per_order=20),
            rules={"t1": [GroupRule(10, Decimal(20))]},
        )
        calc = engine.calculate([Selection("t1", 10)], cat, now=NOW)
        assert calc.subtotal_cents == 10000
        assert calc.discount_cents == 2000
        assert calc.fees_cents == 502
        assert calc.total_cents == 8502
        assert calc.applied_discount == "group"

    def test_best_group_rule_wins(self, engine):
        cat = catalog(
            tier(price=1000, max_per_order=20),
            rules={"t1": [GroupRule(5, Decimal(10)), GroupRule(10, Decimal(15)),
                          GroupRule(20, Decimal(30))]},
        )
        calc = engine.calculate([Selection("t1", 12)], cat, now=NOW)
        assert calc.discount_cents == 1800

    def test_group_rule_applies_to_its_tier_only(self, engine):
        cat = catalog(
            tier("t1", price=1000, max_per_order=20), tier("t2", price=2000),
            rules={"t1": [GroupRule(10, Decimal(20))]},
        )
        calc = engine.calculate(
            [Selection("t1", 10), Selection("t2", 1)], cat, now=NOW
        )
        assert calc.subtotal_cents == 12000
        assert calc.discount_cents == 2000


class TestDiscountExclusivity:
    def _cat(self, pct):
        return catalog(
            tier(price=1000, max_per_order=20),
            rules={"t1": [GroupRule(10, Decimal(15))]},
            discount=CodeDiscount(code="SAVE", discount_type="percentage",
                                  discount_value=pct),
        )

    def test_larger_group_discount_wins(self, engine):
        calc = engine.calculate([Selection("t1", 10)], self._cat(10),
                                discount_code="save", now=NOW)
        assert calc.discount_cents == 1500
        assert calc.applied_discount == "group"
        assert calc.discount_code is None
        # the code was still valid, it just lost
        assert calc.discount.is_valid

    def test_larger_code_discount_wins(self, engine):
        calc = engine.calculate([Selection("t1", 10)], self._cat(25),
                                discount_code="SAVE", now=NOW)
        assert calc.discount_cents == 2500
        assert calc.applied_discount == "code"
        assert calc.discount_code == "SAVE"

    def test_tie_goes_to_group(self, engine):
        calc = engine.calculate([Selection("t1", 10)], self._cat(15),
                                discount_code="SAVE", now=NOW)
        assert calc.discount_cents == 1500
        assert calc.applied_discount == "group"


class TestMoneyConservation:
    def test_total_reconciles_for_all_vectors(self, engine):
        codes = [
            None,
            CodeDiscount("PCT", "percentage", 33),
            CodeDiscount("FIX", "fixed", 750),
            CodeDiscount("HUGE", "fixed", 10_000_000),
        ]
        for price in (1, 99, 1000, 4999, 123457):
            for qty in range(1, 11):
                for code in codes:
                    cat = catalog(
                        tier(price=price),
                        rules={"t1": [GroupRule(3, Decimal(7)),
                                      GroupRule(8, Decimal(12))]},
                        discount=code,
                    )
                    calc = engine.calculate(
                        [Selection("t1", qty)], cat,
                        discount_code=code.code if code else None, now=NOW,
                    )
                    assert calc.total_cents == (
                        calc.subtotal_cents - calc.discount_cents
                        + calc.fees_cents
                    )
                    assert 0 <= calc.discount_cents <= calc.subtotal_cents
                    assert calc.fees_cents >= 0
                    assert isinstance(calc.total_cents, int)

    def test_fixed_discount_is_clamped(self, engine):
        cat = catalog(tier(price=1000),
                      discount=CodeDiscount("BIG", "fixed", 5000))
        calc = engine.calculate([Selection("t1", 1)], cat,
                                discount_code="BIG", now=NOW)
        assert calc.discount_cents == 1000
        assert calc.total_cents == 30

    def test_round_half_up(self):
        assert FeeSchedule(Decimal("0.05"), 0).fee_for(10) == 1
        assert FeeSchedule(Decimal("0.05"), 0).fee_for(9) == 0
        assert percent_of(333, 10) == 33
        assert percent_of(335, 10) == 34

    def test_processor_fee_audit(self, engine):
        calc = engine.calculate([Selection("t1", 2)], catalog(tier()), now=NOW)
        # 2.9% of 10620 + 30 = 337.98 -> 338
        assert calc.processor_fee_cents == 338
        assert calc.net_cents == 10620 - 338


class TestDiscountValidation:
    def check(self, engine, dc, tier_ids=("t1",), subtotal=10000, code=None):
        cat = catalog(tier(), discount=dc)
        return engine.validate_code(cat, code or dc.code, tier_ids,
                                    subtotal, now=NOW)

    def test_unknown_code(self, engine):
        result = engine.validate_code(catalog(tier()), "NOPE", ["t1"], now=NOW)
        assert not result.is_valid
        assert result.message == "Invalid discount code"

    def test_inactive_code(self, engine):
        dc = CodeDiscount("OFF", "percentage", 10, is_active=False)
        assert not self.check(engine, dc).is_valid

    def test_not_yet_valid(self, engine):
        dc = CodeDiscount("SOON", "percentage", 10, valid_from=NOW + 60)
        result = self.check(engine, dc)
        assert not result.is_valid
        assert "not yet valid" in result.message

    def test_expired(self, engine):
        dc = CodeDiscount("OLD", "percentage", 10, valid_until=NOW - 60)
        result = self.check(engine, dc)
        assert not result.is_valid
        assert "expired" in result.message

    def test_usage_limit(self, engine):
        dc = CodeDiscount("USED", "fixed", 100, usage_limit=5, usage_count=5)
        assert "usage limit" in self.check(engine, dc).message

    def test_not_applicable_to_selection(self, engine):
        dc = CodeDiscount("VIP", "percentage", 10,
                          applicable_tiers=frozenset({"t9"}))
        assert "does not apply" in self.check(engine, dc).message

    def test_minimum_purchase(self, engine):
        dc = CodeDiscount("MIN", "fixed", 100, minimum_purchase_cents=20000)
        result = self.check(engine, dc)
        assert not result.is_valid
        assert result.message == "Minimum purchase of 20000 cents required"

    def test_case_insensitive(self, engine):
        dc = CodeDiscount("EARLY10", "percentage", 10)
        result = self.check(engine, dc, code=" early10 ")
        assert result.is_valid
        assert result.discount_value == 10

    def test_invalid_code_does_not_block_pricing(self, engine):
        dc = CodeDiscount("OLD", "percentage", 50, valid_until=NOW - 1)
        cat = catalog(tier(), discount=dc)
        calc = engine.calculate([Selection("t1", 2)], cat,
                                discount_code="OLD", now=NOW)
        assert calc.discount_cents == 0
        assert calc.total_cents == 10620
        assert not calc.discount.is_valid


class TestRejections:
    def test_zero_quantity(self, engine):
        with pytest.raises(ValidationError):
            engine.calculate([Selection("t1", 0)], catalog(tier()), now=NOW)

    def test_empty_selection(self, engine):
        with pytest.raises(ValidationError):
            engine.calculate([], catalog(tier()), now=NOW)

    def test_unknown_tier(self, engine):
        with pytest.raises(TierNotFoundError):
            engine.calculate([Selection("nope", 1)], catalog(tier()), now=NOW)

    def test_hidden_tier(self, engine):
        with pytest.raises(ValidationError):
            engine.calculate([Selection("t1", 1)],
                             catalog(tier(is_hidden=True)), now=NOW)

    def test_outside_sale_window(self, engine):
        with pytest.raises(ValidationError, match="not started"):
            engine.calculate([Selection("t1", 1)],
                             catalog(tier(sales_start=NOW + 1)), now=NOW)
        with pytest.raises(ValidationError, match="ended"):
            engine.calculate([Selection("t1", 1)],
                             catalog(tier(sales_end=NOW - 1)), now=NOW)

    def test_per_order_limits(self, engine):
        with pytest.raises(ValidationError, match="At most 4"):
            engine.calculate([Selection("t1", 5)],
                             catalog(tier(max_per_order=4)), now=NOW)
        with pytest.raises(ValidationError, match="At least 2"):
            engine.calculate([Selection("t1", 1)],
                             catalog(tier(min_per_order=2)), now=NOW)

    def test_duplicate_selections_are_merged_before_limits(self, engine):
        with pytest.raises(ValidationError, match="At most 4"):
            engine.calculate([Selection("t1", 3), Selection("t1", 2)],
                             catalog(tier(max_per_order=4)), now=NOW)

    def test_remaining_availability(self, engine):
        t = tier(quantity_available=10, quantity_sold=9)
        assert t.remaining == 1
        with pytest.raises(ValidationError, match="Not enough"):
            engine.calculate([Selection("t1", 2)], catalog(t), now=NOW)

    def test_currency_mismatch(self, engine):
        with pytest.raises(ValidationError, match="EUR"):
            engine.calculate([Selection("t1", 1)], catalog(tier()),
                             currency="eur", now=NOW)
