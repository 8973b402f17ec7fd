"""Core allocation logic for splitting a bill across participants and payers.

Every function here is pure. Money is held as Decimal quantized to one minor
unit, and whenever per-participant rounding leaves a residual the last entry
in iteration order absorbs it, so totals always reconcile exactly.
"""

import logging
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

from .exceptions import BillValidationError
from .models import (
    Allocation,
    BillInput,
    CustomPayers,
    EqualSplit,
    EvenPayers,
    ExactSplit,
    MemberAmount,
    PayerMode,
    SharesSplit,
    SinglePayer,
)

logger = logging.getLogger(__name__)

MINOR_UNIT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")

# Entered amounts may differ from their target by at most one minor unit
RECONCILE_TOLERANCE = MINOR_UNIT


def round_money(amount: Decimal | int | str) -> Decimal:
    """
    Round an amount to minor units.
    Uses ROUND_HALF_UP for consistency.

    Args:
        amount: Amount in major units

    Returns:
        Amount quantized to 0.01
    """
    return Decimal(amount).quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


def truncate_money(amount: Decimal) -> Decimal:
    """Drop everything below one minor unit (toward zero)."""
    return Decimal(amount).quantize(MINOR_UNIT, rounding=ROUND_DOWN)


def _require_amount(label: str, value: Decimal) -> None:
    if not Decimal(value).is_finite():
        raise BillValidationError(f"{label} must be a finite number")
    if value < 0:
        raise BillValidationError(f"{label} cannot be negative")


def adjustment_value(subtotal: Decimal, rate: Decimal, mode: str) -> Decimal:
    """
    Resolve a tax or discount entry to an absolute amount.

    Args:
        subtotal: Base subtotal of the bill
        rate: Entered value (a percentage in "pct" mode)
        mode: "pct" or "abs"

    Returns:
        Unrounded absolute amount
    """
    if mode == "pct":
        return subtotal * rate / HUNDRED
    return Decimal(rate)


def _absorb_residual(
    ids: list[str], amounts: list[Decimal], target: Decimal
) -> list[MemberAmount]:
    """
    Let the last entry absorb whatever keeps the amounts from summing to target.

    A negative residual that would push the last entry below zero goes to the
    nearest earlier entry that can take it instead.

    Raises:
        BillValidationError: If no entry can absorb the residual
    """
    if not amounts:
        return []

    amounts = list(amounts)
    residual = target - sum(amounts, ZERO)
    if residual != 0:
        for index in reversed(range(len(amounts))):
            if amounts[index] + residual >= 0:
                amounts[index] += residual
                logger.debug(
                    f"Applied rounding adjustment: {residual} to member {ids[index]}"
                )
                break
        else:
            raise BillValidationError(
                f"Cannot reconcile amounts to {target} without a negative share"
            )

    return [
        MemberAmount(member_id=member_id, amount=amount)
        for member_id, amount in zip(ids, amounts, strict=True)
    ]


def split_equal(total: Decimal, ids: list[str]) -> list[MemberAmount]:
    """
    Split an amount evenly, truncating each part to minor units.

    The last id absorbs the remainder: 10.00 over three ids gives
    3.33, 3.33, 3.34.
    """
    if not ids:
        return []
    each = truncate_money(total / len(ids))
    return _absorb_residual(ids, [each] * len(ids), total)


def split_by_weight(
    total: Decimal, ids: list[str], weights: dict[str, Decimal]
) -> list[MemberAmount]:
    """
    Split an amount by weight. Ids without a weight count as 1.

    Raises:
        BillValidationError: If a weight is negative or all weights are zero
    """
    if not ids:
        return []

    values = [Decimal(weights.get(member_id, 1)) for member_id in ids]
    for value in values:
        _require_amount("Weight", value)
    weight_sum = sum(values, ZERO)
    if weight_sum <= 0:
        raise BillValidationError("Weights must add up to more than zero")

    shares = [round_money(total * value / weight_sum) for value in values]
    return _absorb_residual(ids, shares, total)


def spread_adjustment(
    base_shares: list[MemberAmount], final_amount: Decimal, delta: Decimal
) -> list[MemberAmount]:
    """
    Spread tax minus discount over base shares in proportion to their size.

    Args:
        base_shares: Per-participant base shares
        final_amount: Rounded bill total the result must sum to
        delta: Unrounded tax value minus discount value

    Returns:
        Final shares summing exactly to final_amount
    """
    if not base_shares:
        return []

    base_sum = sum((s.amount for s in base_shares), ZERO)
    finals = []
    for share in base_shares:
        ratio = share.amount / base_sum if base_sum else ZERO
        finals.append(round_money(share.amount + ratio * delta))

    return _absorb_residual([s.member_id for s in base_shares], finals, final_amount)


def _exact_entries(split: ExactSplit, ids: list[str]) -> list[Decimal]:
    entries = []
    for member_id in ids:
        value = Decimal(split.values.get(member_id, ZERO))
        _require_amount("Exact amount", value)
        entries.append(round_money(value))
    return entries


def allocate(bill: BillInput, participants: list[str] | None = None) -> Allocation:
    """
    Compute base and final shares for a bill.

    Steps:
    1. Resolve the subtotal (or infer it from exact entries in final-total mode)
    2. Resolve tax and discount to absolute values
    3. Compute base shares according to the split mode
    4. Spread tax minus discount proportionally, or take exact final entries
    5. Let the last participant absorb rounding so shares sum to the final amount

    Args:
        bill: The bill as entered
        participants: Participant ids to use instead of bill.participant_ids
                      (e.g. after dropping archived members)

    Returns:
        The allocation. Empty if there are no participants.

    Raises:
        BillValidationError: If amounts are invalid or entries don't reconcile
    """
    ids = list(dict.fromkeys(
        participants if participants is not None else bill.participant_ids
    ))

    _require_amount("Amount", bill.amount)
    _require_amount("Tax", bill.tax)
    _require_amount("Discount", bill.discount)

    if not ids:
        logger.debug("No participants to allocate; returning empty allocation")
        return Allocation()

    split = bill.split

    if bill.amount_mode == "final":
        if not (isinstance(split, ExactSplit) and split.proportional_tax):
            raise BillValidationError(
                "A final receipt total needs exact amounts with proportional tax"
            )
        entries = _exact_entries(split, ids)
        subtotal = sum(entries, ZERO)
        if subtotal <= 0:
            raise BillValidationError("Entered amounts must add up to more than 0")

        # Whatever the receipt adds on top of the entries is implicit tax,
        # whatever it takes off is implicit discount
        difference = round_money(bill.amount) - subtotal
        tax_value = max(difference, ZERO)
        discount_value = max(-difference, ZERO)
        base_shares = [
            MemberAmount(member_id=member_id, amount=entry)
            for member_id, entry in zip(ids, entries, strict=True)
        ]
    else:
        subtotal = round_money(bill.amount)
        if subtotal <= 0:
            raise BillValidationError("Amount must be greater than 0")
        tax_value = adjustment_value(subtotal, bill.tax, bill.tax_mode)
        discount_value = adjustment_value(subtotal, bill.discount, bill.discount_mode)

        if isinstance(split, EqualSplit):
            base_shares = split_equal(subtotal, ids)
        elif isinstance(split, SharesSplit):
            base_shares = split_by_weight(subtotal, ids, split.weights)
        else:
            entries = _exact_entries(split, ids)
            base_shares = [
                MemberAmount(member_id=member_id, amount=entry)
                for member_id, entry in zip(ids, entries, strict=True)
            ]
            if split.proportional_tax:
                entered = sum(entries, ZERO)
                if abs(entered - subtotal) > RECONCILE_TOLERANCE:
                    raise BillValidationError(
                        f"Exact amounts must add up to the subtotal "
                        f"({entered} entered, {subtotal} expected); "
                        f"enter the amount as a final receipt total to infer "
                        f"tax or discount"
                    )

    final_amount = round_money(subtotal + tax_value - discount_value)
    if final_amount <= 0:
        raise BillValidationError("Final amount must be greater than 0")

    if isinstance(split, ExactSplit) and not split.proportional_tax:
        # Entries already include tax and discount
        entered = sum((s.amount for s in base_shares), ZERO)
        if abs(entered - final_amount) > RECONCILE_TOLERANCE:
            raise BillValidationError(
                f"Exact amounts must add up to the final amount "
                f"({entered} entered, {final_amount} expected)"
            )
        final_shares = _absorb_residual(
            ids, [s.amount for s in base_shares], final_amount
        )
    else:
        final_shares = spread_adjustment(
            base_shares, final_amount, tax_value - discount_value
        )

    return Allocation(
        subtotal=subtotal,
        tax_value=round_money(tax_value),
        discount_value=round_money(discount_value),
        final_amount=final_amount,
        base_shares=base_shares,
        final_shares=final_shares,
    )


def allocate_contributions(
    payer: PayerMode,
    final_amount: Decimal,
    eligible_ids: set[str] | None = None,
) -> list[MemberAmount]:
    """
    Work out what each payer put down so contributions sum to final_amount.

    Args:
        payer: Single payer, even payers, or custom per-payer amounts
        final_amount: The bill's rounded final amount
        eligible_ids: Ids allowed to pay (active members). None allows any id.

    Returns:
        One entry per payer, summing exactly to final_amount

    Raises:
        BillValidationError: If no payer is selected or custom amounts
                             don't reconcile
    """

    def eligible(member_id: str) -> bool:
        return eligible_ids is None or member_id in eligible_ids

    if isinstance(payer, SinglePayer):
        if not payer.paid_by:
            raise BillValidationError("Select who paid")
        if not eligible(payer.paid_by):
            raise BillValidationError(f"Payer {payer.paid_by} is not an active member")
        return [MemberAmount(member_id=payer.paid_by, amount=final_amount)]

    if isinstance(payer, EvenPayers):
        payers = [p for p in dict.fromkeys(payer.payer_ids) if eligible(p)]
        if not payers:
            raise BillValidationError("Select at least one payer")
        return split_equal(final_amount, payers)

    if isinstance(payer, CustomPayers):
        ids = []
        amounts = []
        for member_id, value in payer.amounts.items():
            value = Decimal(value)
            _require_amount("Contribution", value)
            value = round_money(value)
            if not eligible(member_id) or value <= 0:
                continue
            ids.append(member_id)
            amounts.append(value)

        if not ids:
            raise BillValidationError("Select at least one payer")

        total = sum(amounts, ZERO)
        if abs(total - final_amount) > RECONCILE_TOLERANCE:
            raise BillValidationError(
                f"Contributions must add up to the final amount "
                f"({total} entered, {final_amount} expected)"
            )
        return _absorb_residual(ids, amounts, final_amount)

    raise BillValidationError(f"Unknown payer mode: {payer!r}")
