"""
Split Service — per-participant amounts owed for a bill.

compute_expense_summary() is a pure function of its inputs: every call
recomputes the ledger from the items, the roster and the tax amount, so the
summary can never drift from the bill it describes.

Shares are accumulated unrounded.  Rounding happens once, per participant,
at the end; whatever cents that loses or gains against the bill's grand
total are handed back one at a time by largest remainder, so

    sum(per_participant.amount) == grand_total

holds exactly for every input.
"""
import logging
from decimal import Decimal
from typing import Iterable, Sequence

from models.schemas import (
    BillItem,
    CENT,
    EqualSplit,
    ExpenseSummary,
    FixedSplit,
    ParticipantAmount,
    PercentSplit,
    to_cents,
)

logger = logging.getLogger("splitly.split")

ZERO = Decimal("0")
HUNDRED = Decimal("100")

Shares = dict[str, Decimal]


def _unique(ids: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for pid in ids:
        if pid:
            seen.setdefault(pid, None)
    return list(seen)


def _non_negative(value: Decimal) -> Decimal:
    return value if value > ZERO else ZERO


def _add(shares: Shares, pid: str, amount: Decimal) -> None:
    shares[pid] = shares.get(pid, ZERO) + amount


def split_evenly(amount: Decimal, participant_ids: Sequence[str]) -> Shares:
    """amount ÷ n for each id.  An empty list allocates nothing."""
    ids = _unique(participant_ids)
    if not ids:
        return {}
    each = amount / len(ids)
    return {pid: each for pid in ids}


def _allocate_equal(price: Decimal, rule: EqualSplit, roster: Sequence[str]) -> Shares:
    return split_evenly(price, _unique(rule.participant_ids) or roster)


def _allocate_percent(price: Decimal, rule: PercentSplit, roster: Sequence[str]) -> Shares:
    # Percentages are weights: 70/30, 0.7/0.3 and 63/27 all give the same split
    weights = [(s.participant_id, _non_negative(s.percent)) for s in rule.shares if s.participant_id]
    declared = sum((w for _, w in weights), ZERO)
    if declared <= ZERO:
        return split_evenly(price, _unique(pid for pid, _ in weights) or roster)

    shares: Shares = {}
    for pid, percent in weights:
        rescaled = percent * HUNDRED / declared
        _add(shares, pid, price * rescaled / HUNDRED)
    return shares


def _allocate_fixed(price: Decimal, rule: FixedSplit, roster: Sequence[str]) -> Shares:
    fixed = [(s.participant_id, _non_negative(s.amount)) for s in rule.shares if s.participant_id]
    if not fixed:
        return split_evenly(price, roster)

    declared = sum((a for _, a in fixed), ZERO)
    shares: Shares = {}
    if declared > price:
        logger.warning(
            "Fixed shares (%s) exceed item price (%s); scaling them down proportionally",
            declared, price,
        )
        for pid, amount in fixed:
            _add(shares, pid, amount * price / declared)
        return shares

    remainder_each = (price - declared) / len(fixed)
    for pid, amount in fixed:
        _add(shares, pid, amount + remainder_each)
    return shares


def allocate_item(item: BillItem, roster: Sequence[str]) -> Shares:
    """Unrounded share of one item's price per participant id."""
    rule = item.split
    if isinstance(rule, EqualSplit):
        return _allocate_equal(item.price, rule, roster)
    if isinstance(rule, PercentSplit):
        return _allocate_percent(item.price, rule, roster)
    if isinstance(rule, FixedSplit):
        return _allocate_fixed(item.price, rule, roster)
    raise TypeError(f"Unsupported split rule: {type(rule).__name__}")


def settle(raw: Shares, grand_total: Decimal) -> list[ParticipantAmount]:
    """
    Round each raw total to cents, then hand the residual against grand_total
    back one cent at a time: missing cents go to the largest fractional
    remainders first, surplus cents come off the largest round-ups first.
    Ties go to the participant listed first, so nobody ends up more than a
    cent away from their raw share.
    """
    rounded = {pid: to_cents(amount) for pid, amount in raw.items()}
    if not rounded:
        return []

    residual = grand_total - sum(rounded.values(), ZERO)
    cents = int(residual / CENT)
    if cents:
        remainders = {pid: raw[pid] - rounded[pid] for pid in rounded}
        order = sorted(rounded, key=lambda pid: remainders[pid], reverse=cents > 0)
        step = CENT if cents > 0 else -CENT
        logger.debug("Rounding residual %s spread over %s", residual, order[:abs(cents)])
        for i in range(abs(cents)):
            rounded[order[i % len(order)]] += step

    return [ParticipantAmount(participant_id=pid, amount=amount) for pid, amount in rounded.items()]


def compute_expense_summary(
    items: Sequence[BillItem],
    participants: Sequence[str],
    tax_amount=ZERO,
) -> ExpenseSummary:
    """
    Per-participant amounts for a bill.

    Every roster member appears in the result (possibly with 0.00).  Ids that
    only appear in split rules are appended after the roster in the order they
    are first seen.  Tax is divided evenly across the roster.

    grand_total covers what was actually allocated: with an empty roster, an
    item whose rule names nobody (or tax with nobody to carry it) is left out
    and logged, so the amounts always add up to it.
    """
    roster = _unique(participants)
    tax = to_cents(tax_amount or ZERO)

    raw: Shares = {pid: ZERO for pid in roster}
    allocated = ZERO
    for item in items:
        shares = allocate_item(item, roster)
        if not shares:
            logger.warning("Item %r (%s) has nobody to pay for it; left out of the summary",
                           item.name, item.price)
            continue
        allocated += item.price
        for pid, amount in shares.items():
            _add(raw, pid, amount)

    tax_shares = split_evenly(tax, roster or list(raw))
    if tax_shares:
        allocated += tax
        for pid, amount in tax_shares.items():
            _add(raw, pid, amount)
    elif tax:
        logger.warning("Tax %s has nobody to pay for it; left out of the summary", tax)

    grand_total = to_cents(allocated)
    return ExpenseSummary(grand_total=grand_total, per_participant=settle(raw, grand_total))
