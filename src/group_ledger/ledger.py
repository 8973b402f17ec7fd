"""Balance aggregation over a group's bills and settlements."""

from decimal import Decimal

from .allocation import MINOR_UNIT, ZERO
from .models import Group


def compute_balances(group: Group) -> dict[str, Decimal]:
    """
    Compute each member's signed net balance.

    Positive means the group owes the member, negative means the member owes
    the group. Contributions credit the payer and splits debit the
    participant. A settlement credits the member who paid it (their debt
    shrinks) and debits the member who received it (their credit shrinks).

    This is a pure fold over the group's history. Nothing is cached, because
    edits and deletions can change any past record.

    Args:
        group: The group to fold

    Returns:
        Mapping of member id to balance. Every member is present, archived
        ones included; ids that appear only in history are added as needed.
    """
    balances: dict[str, Decimal] = {member.id: ZERO for member in group.members}

    for bill in group.bills:
        for contribution in bill.contributions:
            balances[contribution.member_id] = (
                balances.get(contribution.member_id, ZERO) + contribution.amount
            )
        for split in bill.splits:
            balances[split.member_id] = balances.get(split.member_id, ZERO) - split.share

    for settlement in group.settlements:
        balances[settlement.from_id] = (
            balances.get(settlement.from_id, ZERO) + settlement.amount
        )
        balances[settlement.to_id] = balances.get(settlement.to_id, ZERO) - settlement.amount

    return balances


def total_imbalance(balances: dict[str, Decimal]) -> Decimal:
    """Sum of all balances. Zero whenever money has been conserved."""
    return sum(balances.values(), ZERO)


def is_settled(balances: dict[str, Decimal], epsilon: Decimal = MINOR_UNIT) -> bool:
    """True if every balance is within epsilon of zero."""
    return all(abs(value) < epsilon for value in balances.values())
