"""Build personal spending-ledger entries for the group's local member.

When a group tracks spending, bills the local member paid toward show up as
expenses in their personal ledger, and settlements they pay or receive show
up as expenses or income. These builders are pure; the store decides when to
send them.
"""

from .models import Bill, Group, Settlement, SpendingTransaction

DEFAULT_EXPENSE_CATEGORY = "Group Expense"
DEFAULT_REIMBURSEMENT_CATEGORY = "Reimbursement"


def bill_transaction(
    bill: Bill,
    group: Group,
    expense_category: str = DEFAULT_EXPENSE_CATEGORY,
) -> SpendingTransaction | None:
    """
    Expense for the local member's contribution to a bill.

    Returns:
        The transaction, or None if the group has no local member or the
        local member paid nothing toward this bill
    """
    if not group.local_member_id:
        return None

    amount = bill.contribution_of(group.local_member_id)
    if amount <= 0:
        return None

    return SpendingTransaction(
        type="expense",
        amount=amount,
        category=bill.category or expense_category,
        date=bill.created_at,
        note=f"{bill.title} (Group Bill)",
        title=bill.title,
    )


def settlement_transaction(
    settlement: Settlement,
    group: Group,
    expense_category: str = DEFAULT_EXPENSE_CATEGORY,
    reimbursement_category: str = DEFAULT_REIMBURSEMENT_CATEGORY,
) -> SpendingTransaction | None:
    """
    Expense or income for a settlement the local member took part in.

    Paying out is an expense; being paid back is income.

    Returns:
        The transaction, or None if the local member is not a party
    """
    local_id = group.local_member_id
    if not local_id or local_id not in (settlement.from_id, settlement.to_id):
        return None

    bill = group.find_bill(settlement.bill_id) if settlement.bill_id else None
    suffix = f" for {bill.title}" if bill else ""

    if settlement.from_id == local_id:
        other = group.member_name(settlement.to_id)
        return SpendingTransaction(
            type="expense",
            amount=settlement.amount,
            category=expense_category,
            date=settlement.created_at,
            note=f"Payment to {other}{suffix}",
            title=f"Payment to {other}",
        )

    other = group.member_name(settlement.from_id)
    return SpendingTransaction(
        type="income",
        amount=settlement.amount,
        category=reimbursement_category,
        date=settlement.created_at,
        note=f"Reimbursement from {other}{suffix}",
        title=f"Payment from {other}",
    )
