"""Settlement planning: turning balances into a short list of transfers."""

import logging
from decimal import Decimal

from .allocation import MINOR_UNIT, ZERO
from .models import Transfer

logger = logging.getLogger(__name__)


def plan_settlements(
    balances: dict[str, Decimal], epsilon: Decimal = MINOR_UNIT
) -> list[Transfer]:
    """
    Propose transfers that bring every balance to zero.

    Greedy largest-first matching: the largest remaining debtor pays the
    largest remaining creditor min(debt, credit), and whichever side reaches
    zero moves on. Each step zeroes at least one party and the last step
    zeroes both, so the plan has at most creditors + debtors - 1 edges. Ties
    keep the order of the balances mapping, so the result is deterministic.

    This does not always reach the theoretical minimum number of transfers.

    Args:
        balances: Member id to signed balance (positive = owed to them)
        epsilon: Magnitudes below this count as zero

    Returns:
        Transfers in the order they were matched. Empty when everyone is
        already settled; callers must treat that as "nothing to do".
    """
    creditors = [[mid, value] for mid, value in balances.items() if value >= epsilon]
    debtors = [[mid, -value] for mid, value in balances.items() if value <= -epsilon]

    # Stable sorts keep mapping order among equal magnitudes
    creditors.sort(key=lambda entry: entry[1], reverse=True)
    debtors.sort(key=lambda entry: entry[1], reverse=True)

    transfers: list[Transfer] = []
    i = j = 0
    while i < len(debtors) and j < len(creditors):
        debtor = debtors[i]
        creditor = creditors[j]
        amount = min(debtor[1], creditor[1])

        transfers.append(Transfer(from_id=debtor[0], to_id=creditor[0], amount=amount))

        debtor[1] -= amount
        creditor[1] -= amount
        if debtor[1] < epsilon:
            i += 1
        if creditor[1] < epsilon:
            j += 1

    leftover = sum((d[1] for d in debtors[i:]), ZERO) - sum(
        (c[1] for c in creditors[j:]), ZERO
    )
    if leftover:
        logger.warning(f"Balances do not net to zero; {leftover} left unplanned")

    return transfers


def format_plan(
    plan: list[Transfer],
    names: dict[str, str],
    group_name: str | None = None,
    currency_symbol: str = "$",
) -> str:
    """
    Render a plan as shareable text.

    Args:
        plan: Transfers from plan_settlements
        names: Member id to display name
        group_name: Optional heading
        currency_symbol: Symbol prefixed to amounts

    Returns:
        One "A → B: $x.xx" line per transfer, or a note that nobody owes anything
    """
    if not plan:
        return "No one owes anything."

    lines = [
        f"{names.get(t.from_id, t.from_id)} → {names.get(t.to_id, t.to_id)}: "
        f"{currency_symbol}{t.amount:,.2f}"
        for t in plan
    ]
    if group_name:
        lines.insert(0, f"Settle up for {group_name}")
    return "\n".join(lines)
