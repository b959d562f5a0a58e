"""
Tests for the split allocation engine.

Every test that builds a summary also checks the core invariant: the
per-participant amounts add up to the grand total to the cent.
"""
from decimal import Decimal

import pytest
from models.schemas import (
    BillItem,
    EqualSplit,
    FixedShare,
    FixedSplit,
    PercentShare,
    PercentSplit,
)
from services.split_service import allocate_item, compute_expense_summary, settle


def equal(name, price, *ids):
    return BillItem(name=name, price=price, split=EqualSplit(participant_ids=list(ids)))


def percent(name, price, **shares):
    return BillItem(name=name, price=price, split=PercentSplit(
        shares=[PercentShare(participant_id=p, percent=Decimal(str(v))) for p, v in shares.items()]
    ))


def fixed(name, price, **shares):
    return BillItem(name=name, price=price, split=FixedSplit(
        shares=[FixedShare(participant_id=p, amount=v) for p, v in shares.items()]
    ))


def owed(summary):
    return {p.participant_id: p.amount for p in summary.per_participant}


def assert_balanced(summary):
    assert sum(p.amount for p in summary.per_participant) == summary.grand_total


# ── Scenarios ────────────────────────────────────────────────────────────────

class TestScenarios:

    def test_equal_split_two_items(self):
        items = [equal("Milk", "3.99", "a", "b"), equal("Bread", "2.49", "a", "b")]
        summary = compute_expense_summary(items, ["a", "b"])
        assert summary.grand_total == Decimal("6.48")
        assert owed(summary) == {"a": Decimal("3.24"), "b": Decimal("3.24")}
        assert_balanced(summary)

    def test_percent_70_30(self):
        summary = compute_expense_summary([percent("Pizza", "20.00", a=70, b=30)], ["a", "b"])
        assert owed(summary) == {"a": Decimal("14.00"), "b": Decimal("6.00")}
        assert_balanced(summary)

    def test_percent_33_33_34(self):
        summary = compute_expense_summary([percent("Pizza", "20.00", a=33, b=33, c=34)], ["a", "b", "c"])
        assert owed(summary) == {"a": Decimal("6.60"), "b": Decimal("6.60"), "c": Decimal("6.80")}
        assert_balanced(summary)

    def test_fixed_with_remainder(self):
        summary = compute_expense_summary([fixed("Wine", "15.00", a="5.00", b="5.00")], ["a", "b"])
        assert owed(summary) == {"a": Decimal("7.50"), "b": Decimal("7.50")}
        assert_balanced(summary)


# ── Equal ────────────────────────────────────────────────────────────────────

class TestEqualSplit:

    def test_three_way_penny_is_not_lost(self):
        summary = compute_expense_summary([equal("Cake", "10.00", "a", "b", "c")], ["a", "b", "c"])
        amounts = owed(summary)
        assert sorted(amounts.values()) == [Decimal("3.33"), Decimal("3.33"), Decimal("3.34")]
        assert_balanced(summary)

    def test_subset_of_roster(self):
        summary = compute_expense_summary([equal("Beer", "9.00", "a", "b")], ["a", "b", "c"])
        assert owed(summary) == {"a": Decimal("4.50"), "b": Decimal("4.50"), "c": Decimal("0.00")}

    def test_empty_assignment_falls_back_to_roster(self):
        summary = compute_expense_summary([equal("Chips", "6.00")], ["a", "b", "c"])
        assert owed(summary) == {"a": Decimal("2.00"), "b": Decimal("2.00"), "c": Decimal("2.00")}

    def test_duplicate_ids_counted_once(self):
        shares = allocate_item(equal("Tea", "4.00", "a", "a", "b"), ["a", "b"])
        assert shares == {"a": Decimal("2"), "b": Decimal("2")}


# ── Percent ──────────────────────────────────────────────────────────────────

class TestPercentSplit:

    @pytest.mark.parametrize("a, b", [(63, 27), (77, 33), (0.7, 0.3)])
    def test_normalised_against_declared_sum(self, a, b):
        """90% or 110% declared keeps the 70/30 ratio."""
        summary = compute_expense_summary([percent("Pizza", "20.00", a=a, b=b)], ["a", "b"])
        assert owed(summary) == {"a": Decimal("14.00"), "b": Decimal("6.00")}

    def test_zero_sum_falls_back_to_equal(self):
        summary = compute_expense_summary([percent("Soda", "3.00", a=0, b=0)], ["a", "b", "c"])
        assert owed(summary) == {"a": Decimal("1.50"), "b": Decimal("1.50"), "c": Decimal("0.00")}

    def test_negative_percent_treated_as_zero(self):
        summary = compute_expense_summary([percent("Soda", "3.00", a=100, b=-50)], ["a", "b"])
        assert owed(summary) == {"a": Decimal("3.00"), "b": Decimal("0.00")}

    def test_no_shares_falls_back_to_roster(self):
        item = BillItem(name="Soda", price="3.00", split=PercentSplit(shares=[]))
        summary = compute_expense_summary([item], ["a", "b"])
        assert owed(summary) == {"a": Decimal("1.50"), "b": Decimal("1.50")}


# ── Fixed ────────────────────────────────────────────────────────────────────

class TestFixedSplit:

    def test_exact_shares(self):
        summary = compute_expense_summary([fixed("Wine", "15.00", a="10.00", b="5.00")], ["a", "b"])
        assert owed(summary) == {"a": Decimal("10.00"), "b": Decimal("5.00")}

    def test_remainder_accounts_for_full_price(self):
        shares = allocate_item(fixed("Wine", "10.00", a="1.00", b="2.00", c="3.00"), ["a", "b", "c"])
        assert sum(shares.values()).quantize(Decimal("0.01")) == Decimal("10.00")
        assert shares["a"] < shares["b"] < shares["c"]

    def test_oversubscribed_scaled_down(self, caplog):
        summary = compute_expense_summary([fixed("Wine", "10.00", a="10.00", b="10.00")], ["a", "b"])
        assert owed(summary) == {"a": Decimal("5.00"), "b": Decimal("5.00")}
        assert "exceed item price" in caplog.text
        assert_balanced(summary)

    def test_no_shares_falls_back_to_roster(self):
        item = BillItem(name="Wine", price="10.00", split=FixedSplit(shares=[]))
        summary = compute_expense_summary([item], ["a", "b"])
        assert owed(summary) == {"a": Decimal("5.00"), "b": Decimal("5.00")}


# ── Tax, roster and rounding ─────────────────────────────────────────────────

class TestSummary:

    def test_tax_split_across_roster(self):
        summary = compute_expense_summary([equal("Milk", "4.00", "a")], ["a", "b"], Decimal("1.00"))
        assert summary.grand_total == Decimal("5.00")
        assert owed(summary) == {"a": Decimal("4.50"), "b": Decimal("0.50")}

    def test_tax_residual_goes_to_one_participant(self):
        summary = compute_expense_summary([], ["a", "b", "c"], Decimal("1.00"))
        assert summary.grand_total == Decimal("1.00")
        assert sorted(owed(summary).values()) == [Decimal("0.33"), Decimal("0.33"), Decimal("0.34")]
        assert_balanced(summary)

    def test_roster_order_preserved_and_deduplicated(self):
        summary = compute_expense_summary([], ["b", "a", "b"])
        assert [p.participant_id for p in summary.per_participant] == ["b", "a"]

    def test_unknown_participant_appended(self):
        summary = compute_expense_summary([equal("Gum", "1.00", "z")], ["a"])
        assert owed(summary) == {"a": Decimal("0.00"), "z": Decimal("1.00")}
        assert_balanced(summary)

    def test_no_items(self):
        summary = compute_expense_summary([], ["a", "b"])
        assert summary.grand_total == Decimal("0.00")
        assert owed(summary) == {"a": Decimal("0.00"), "b": Decimal("0.00")}

    def test_idempotent(self):
        items = [
            equal("Cake", "10.00", "a", "b", "c"),
            percent("Pizza", "17.99", a=50, b=25, c=25),
            fixed("Wine", "13.37", a="4.00"),
        ]
        first = compute_expense_summary(items, ["a", "b", "c"], Decimal("2.11"))
        second = compute_expense_summary(items, ["a", "b", "c"], Decimal("2.11"))
        assert first == second
        assert first.model_dump_json() == second.model_dump_json()

    def test_amount_for(self):
        summary = compute_expense_summary([equal("Milk", "4.00", "a", "b")], ["a", "b"])
        assert summary.amount_for("a") == Decimal("2.00")
        assert summary.amount_for("nobody") is None

    @pytest.mark.parametrize("prices, roster, tax", [
        (["0.01"] * 7, ["a", "b", "c"], "0.00"),
        (["9.99", "0.05", "1.11"], ["a", "b", "c", "d", "e", "f", "g"], "0.77"),
        (["100.00", "33.33", "66.67"], ["a", "b", "c"], "13.13"),
        (["1.00"], ["a", "b", "c", "d", "e", "f"], "0.01"),
    ])
    def test_always_balanced(self, prices, roster, tax):
        items = [equal(f"item{i}", p, *roster) for i, p in enumerate(prices)]
        items.append(percent("mixed", "7.77", **{pid: n + 1 for n, pid in enumerate(roster)}))
        summary = compute_expense_summary(items, roster, Decimal(tax))
        assert_balanced(summary)


class TestSettle:

    def test_missing_cent_goes_to_largest_remainder(self):
        raw = {"a": Decimal("1.004"), "b": Decimal("1.004"), "c": Decimal("1.002")}
        amounts = {p.participant_id: p.amount for p in settle(raw, Decimal("3.01"))}
        assert amounts == {"a": Decimal("1.01"), "b": Decimal("1.00"), "c": Decimal("1.00")}

    def test_extra_cent_taken_from_largest_round_up(self):
        raw = {"a": Decimal("1.005"), "b": Decimal("1.006"), "c": Decimal("0.989")}
        amounts = {p.participant_id: p.amount for p in settle(raw, Decimal("3.00"))}
        assert sum(amounts.values()) == Decimal("3.00")
        assert amounts["a"] == Decimal("1.00")

    def test_empty(self):
        assert settle({}, Decimal("5.00")) == []

    def test_several_cents_spread_one_each(self):
        # 0.125 each rounds up to 0.13; four of the eight give a cent back
        raw = {pid: Decimal("0.125") for pid in "abcdefgh"}
        amounts = [p.amount for p in settle(raw, Decimal("1.00"))]
        assert sum(amounts) == Decimal("1.00")
        assert sorted(amounts) == [Decimal("0.12")] * 4 + [Decimal("0.13")] * 4


# ── Fair shares ──────────────────────────────────────────────────────────────

class TestFairShares:

    @pytest.mark.parametrize("price, n", [
        ("1.00", 8),
        ("0.05", 10),
        ("0.01", 7),
        ("10.00", 3),
        ("0.99", 40),
    ])
    def test_nobody_negative_or_more_than_a_cent_off(self, price, n):
        roster = [f"p{i}" for i in range(n)]
        summary = compute_expense_summary([equal("Shared", price, *roster)], roster)
        exact = Decimal(price) / n
        assert_balanced(summary)
        for entry in summary.per_participant:
            assert entry.amount >= 0
            assert abs(entry.amount - exact) < Decimal("0.01")

    def test_nickel_ten_ways(self):
        roster = [f"p{i}" for i in range(10)]
        summary = compute_expense_summary([equal("Mint", "0.05", *roster)], roster)
        assert summary.grand_total == Decimal("0.05")
        assert sorted(owed(summary).values()) == [Decimal("0.00")] * 5 + [Decimal("0.01")] * 5


# ── Empty roster ─────────────────────────────────────────────────────────────

class TestEmptyRoster:

    def test_unassigned_item_left_out_of_total(self, caplog):
        summary = compute_expense_summary([BillItem(name="Gum", price="1.00")], [])
        assert summary.per_participant == []
        assert summary.grand_total == Decimal("0.00")
        assert_balanced(summary)
        assert "nobody to pay" in caplog.text

    def test_named_participants_still_counted(self):
        items = [BillItem(name="Gum", price="1.00"), equal("Tea", "2.00", "z")]
        summary = compute_expense_summary(items, [], Decimal("0.30"))
        assert summary.grand_total == Decimal("2.30")
        assert owed(summary) == {"z": Decimal("2.30")}
        assert_balanced(summary)

    def test_tax_with_nobody_to_carry_it(self):
        summary = compute_expense_summary([], [], Decimal("0.50"))
        assert summary.grand_total == Decimal("0.00")
        assert summary.per_participant == []
