"""Group ledger store: validated mutations over persisted groups.

Every mutation works on a deep copy of one group, checks it, writes the whole
group record, and only then swaps the copy into memory. A failed write leaves
memory untouched, so the same call can simply be retried.

The store assumes a single writer. A multi-writer host would need each
mutation to run as one serializable transaction per group.
"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from .allocation import (
    ZERO,
    allocate,
    allocate_contributions,
    round_money,
)
from .clients.spending import SpendingLedger
from .config import Settings
from .db import Database
from .exceptions import (
    BillNotFoundError,
    BillValidationError,
    GroupNotFoundError,
    InvariantViolationError,
    MemberHasHistoryError,
    MemberNotFoundError,
    ValidationError,
)
from .ledger import compute_balances
from .mirror import (
    DEFAULT_EXPENSE_CATEGORY,
    DEFAULT_REIMBURSEMENT_CATEGORY,
    bill_transaction,
    settlement_transaction,
)
from .models import (
    Bill,
    BillInput,
    Contribution,
    Group,
    Member,
    Settlement,
    SpendingTransaction,
    Split,
    Transfer,
)
from .planner import plan_settlements

logger = logging.getLogger(__name__)


def migrate_record(record: dict[str, Any]) -> tuple[dict[str, Any], bool]:
    """
    Bring an older group record up to the current shape.

    - Missing member, bill and settlement lists become empty lists
    - A bill with a single paid_by and no contributions gets one contribution
      of the full final amount
    - A bill without a participant list takes it from its splits

    Args:
        record: Decoded group record

    Returns:
        Tuple of (migrated record, whether anything changed)
    """
    changed = False
    record = dict(record)

    for field in ("members", "bills", "settlements"):
        if record.get(field) is None:
            record[field] = []
            changed = True

    bills = []
    for bill in record["bills"]:
        bill = dict(bill)
        paid_by = bill.pop("paid_by", None)
        if paid_by is not None:
            changed = True
        if not bill.get("contributions"):
            if paid_by:
                bill["contributions"] = [
                    {"member_id": paid_by, "amount": bill["final_amount"]}
                ]
                changed = True
            elif "contributions" not in bill:
                bill["contributions"] = []
                changed = True
        if "participants" not in bill:
            bill["participants"] = [s["member_id"] for s in bill.get("splits", [])]
            changed = True
        bills.append(bill)
    record["bills"] = bills

    return record, changed


class GroupLedgerStore:
    """Owns the persisted groups and exposes every ledger mutation."""

    def __init__(
        self,
        database: Database,
        settings: Settings | None = None,
        spending_ledger: SpendingLedger | None = None,
    ):
        """Initialize the store. Records are loaded on first use."""
        self.db = database
        self.settings = settings
        self.spending_ledger = spending_ledger
        self._groups: dict[str, Group] = {}
        self.ready = False

    # ========================================================================
    # Loading and committing
    # ========================================================================

    def hydrate(self) -> list[Group]:
        """Load every group from the database, migrating old records."""
        groups: dict[str, Group] = {}
        for record in self.db.load_group_records():
            record, changed = migrate_record(record)
            group = Group.model_validate(record)
            if changed:
                logger.info(f"Migrated stored record for group {group.id}")
                self.db.save_group_record(group.id, group.model_dump(mode="json"))
            groups[group.id] = group

        self._groups = groups
        self.ready = True
        logger.debug(f"Hydrated {len(groups)} groups from {self.db.db_path}")
        return self.list_groups()

    def _ensure_ready(self):
        if not self.ready:
            self.hydrate()

    def _group(self, group_id: str) -> Group:
        self._ensure_ready()
        group = self._groups.get(group_id)
        if group is None:
            raise GroupNotFoundError(group_id)
        return group

    def _working_copy(self, group_id: str) -> Group:
        return self._group(group_id).model_copy(deep=True)

    def _commit(self, group: Group) -> Group:
        """Persist a whole group, then make it the in-memory version."""
        self.db.save_group_record(group.id, group.model_dump(mode="json"))
        self._groups[group.id] = group
        return group

    # ========================================================================
    # Reads
    # ========================================================================

    def list_groups(self) -> list[Group]:
        """All groups, newest first."""
        self._ensure_ready()
        groups = sorted(self._groups.values(), key=lambda g: g.created_at, reverse=True)
        return [g.model_copy(deep=True) for g in groups]

    def get_group(self, group_id: str) -> Group:
        """A copy of one group. Changes to it are not saved."""
        return self._group(group_id).model_copy(deep=True)

    def find_bill(self, group_id: str, bill_id: str) -> Bill | None:
        bill = self._group(group_id).find_bill(bill_id)
        return bill.model_copy(deep=True) if bill else None

    def balances(self, group_id: str) -> dict[str, Decimal]:
        """Current signed balance per member, recomputed from history."""
        return compute_balances(self._group(group_id))

    def plan(self, group_id: str) -> list[Transfer]:
        """Proposed transfers that would settle the group. Empty if settled."""
        return plan_settlements(self.balances(group_id))

    # ========================================================================
    # Groups
    # ========================================================================

    def create_group(
        self,
        name: str,
        note: str | None = None,
        members: list[Member] | None = None,
        local_member_id: str | None = None,
        track_spending: bool = False,
        currency: str | None = None,
    ) -> Group:
        """
        Create a group, optionally with initial members.

        Args:
            name: Group name
            note: Optional free-form note
            members: Initial members; entries with blank names are skipped
            local_member_id: Id of the member who is the operating user
            track_spending: Mirror the local member's bills and settlements
                            into the spending ledger
            currency: Display currency (defaults to settings)

        Returns:
            The created group
        """
        self._ensure_ready()
        if not name.strip():
            raise ValidationError("Group name cannot be empty")

        kept = []
        for member in members or []:
            if not member.name.strip():
                continue
            kept.append(
                Member(
                    id=member.id,
                    name=member.name.strip(),
                    contact=(member.contact or "").strip() or None,
                )
            )

        if local_member_id and local_member_id not in {m.id for m in kept}:
            raise MemberNotFoundError(local_member_id)

        group = Group(
            name=name.strip(),
            note=note,
            members=kept,
            local_member_id=local_member_id,
            track_spending=track_spending,
            currency=currency or (self.settings.currency if self.settings else "USD"),
        )
        self._commit(group)

        logger.info(f"Created group '{group.name}' with {len(kept)} members")
        return group.model_copy(deep=True)

    def update_group(
        self,
        group_id: str,
        name: str | None = None,
        note: str | None = None,
        track_spending: bool | None = None,
    ) -> Group:
        """Rename a group or change its note or spending-tracking flag."""
        group = self._working_copy(group_id)
        if name is not None:
            if not name.strip():
                raise ValidationError("Group name cannot be empty")
            group.name = name.strip()
        if note is not None:
            group.note = note
        if track_spending is not None:
            group.track_spending = track_spending

        self._commit(group)
        return group.model_copy(deep=True)

    def delete_group(self, group_id: str):
        """Delete a group and its whole history."""
        self._group(group_id)
        self.db.delete_group_record(group_id)
        del self._groups[group_id]
        logger.info(f"Deleted group {group_id}")

    def set_local_member(self, group_id: str, member_id: str | None) -> Group:
        """Mark which member is the operating user (None clears it)."""
        group = self._working_copy(group_id)
        if member_id is not None and group.find_member(member_id) is None:
            raise MemberNotFoundError(member_id)
        group.local_member_id = member_id

        self._commit(group)
        return group.model_copy(deep=True)

    # ========================================================================
    # Members
    # ========================================================================

    def add_member(
        self, group_id: str, name: str, contact: str | None = None
    ) -> Member:
        """Add a member to a group."""
        group = self._working_copy(group_id)
        if not name.strip():
            raise ValidationError("Member name cannot be empty")

        member = Member(name=name.strip(), contact=(contact or "").strip() or None)
        group.members.append(member)
        self._commit(group)

        logger.info(f"Added member '{member.name}' to group {group_id}")
        return member.model_copy()

    def update_member(
        self,
        group_id: str,
        member_id: str,
        name: str | None = None,
        contact: str | None = None,
    ) -> Member:
        """Change a member's name or contact. The id never changes."""
        group = self._working_copy(group_id)
        member = group.find_member(member_id)
        if member is None:
            raise MemberNotFoundError(member_id)

        if name is not None:
            if not name.strip():
                raise ValidationError("Member name cannot be empty")
            member.name = name.strip()
        if contact is not None:
            member.contact = contact.strip() or None

        self._commit(group)
        return member.model_copy()

    def archive_member(
        self, group_id: str, member_id: str, archived: bool = True
    ) -> Member:
        """
        Hide a member from new bills without touching their history.

        Always allowed; use this instead of delete_member for members with
        recorded bills or settlements.
        """
        group = self._working_copy(group_id)
        member = group.find_member(member_id)
        if member is None:
            raise MemberNotFoundError(member_id)

        member.archived = archived
        self._commit(group)

        logger.info(
            f"{'Archived' if archived else 'Restored'} member {member_id} "
            f"in group {group_id}"
        )
        return member.model_copy()

    def member_has_history(self, group_id: str, member_id: str) -> bool:
        """True if any bill or settlement in the group refers to the member."""
        group = self._group(group_id)
        return any(bill.involves(member_id) for bill in group.bills) or any(
            member_id in (s.from_id, s.to_id) for s in group.settlements
        )

    def delete_member(self, group_id: str, member_id: str):
        """
        Permanently remove a member with no history.

        Raises:
            MemberHasHistoryError: If the member appears in any contribution,
                                   split or settlement
        """
        group = self._working_copy(group_id)
        if group.find_member(member_id) is None:
            raise MemberNotFoundError(member_id)
        if self.member_has_history(group_id, member_id):
            raise MemberHasHistoryError(member_id)

        group.members = [m for m in group.members if m.id != member_id]
        if group.local_member_id == member_id:
            group.local_member_id = None
        self._commit(group)

        logger.info(f"Deleted member {member_id} from group {group_id}")

    # ========================================================================
    # Bills
    # ========================================================================

    def _build_bill(
        self,
        group: Group,
        bill_input: BillInput,
        eligible_ids: set[str],
        previous: Bill | None = None,
    ) -> Bill:
        """Validate and allocate a bill input into a complete Bill."""
        participants = [
            member_id
            for member_id in dict.fromkeys(bill_input.participant_ids)
            if member_id in eligible_ids
        ]
        if not participants:
            raise BillValidationError("Select at least one active participant")

        allocation = allocate(bill_input, participants)
        contributions = allocate_contributions(
            bill_input.payer, allocation.final_amount, eligible_ids
        )

        if bill_input.amount_mode == "final":
            # The inferred remainder is stored as absolute tax or discount
            tax, tax_mode = allocation.tax_value, "abs"
            discount, discount_mode = allocation.discount_value, "abs"
        else:
            tax, tax_mode = bill_input.tax, bill_input.tax_mode
            discount, discount_mode = bill_input.discount, bill_input.discount_mode

        settled_before = (
            {s.member_id: s.settled for s in previous.splits} if previous else {}
        )

        bill = Bill(
            group_id=group.id,
            title=bill_input.title.strip() or "Untitled bill",
            amount=allocation.subtotal,
            tax=tax,
            tax_mode=tax_mode,
            discount=discount,
            discount_mode=discount_mode,
            final_amount=allocation.final_amount,
            participants=participants,
            split=bill_input.split,
            contributions=[
                Contribution(member_id=c.member_id, amount=c.amount)
                for c in contributions
            ],
            splits=[
                Split(
                    member_id=s.member_id,
                    share=s.amount,
                    settled=settled_before.get(s.member_id, False),
                )
                for s in allocation.final_shares
            ],
            category=bill_input.category,
            created_at=bill_input.created_at or datetime.now(),
        )
        if previous is not None:
            bill.id = previous.id
            bill.created_at = bill_input.created_at or previous.created_at

        _verify_bill(bill)
        return bill

    def add_bill(self, group_id: str, bill_input: BillInput) -> Bill:
        """
        Allocate and record a new bill.

        Archived or unknown participant and payer ids are dropped before
        allocation. If the group tracks spending, the local member's
        contribution is mirrored as an expense.

        Raises:
            BillValidationError: If the bill cannot be allocated
        """
        group = self._working_copy(group_id)
        bill = self._build_bill(group, bill_input, group.active_member_ids())

        group.bills.insert(0, bill)
        self._commit(group)

        logger.info(
            f"Added bill '{bill.title}' ({bill.final_amount}) to group {group_id} "
            f"split {bill.split_mode} across {len(bill.splits)} members"
        )

        self._mirror(group, bill_transaction(bill, group, self._expense_category))
        return bill.model_copy(deep=True)

    def edit_bill(self, group_id: str, bill_id: str, bill_input: BillInput) -> Bill:
        """
        Re-allocate an existing bill from new input.

        The bill keeps its id and creation time. Members already on the bill
        stay eligible even if archived since, and their settled flags carry
        over.
        """
        group = self._working_copy(group_id)
        previous = group.find_bill(bill_id)
        if previous is None:
            raise BillNotFoundError(bill_id)

        eligible = group.active_member_ids()
        eligible.update(previous.participants)
        eligible.update(c.member_id for c in previous.contributions)

        bill = self._build_bill(group, bill_input, eligible, previous=previous)
        group.bills = [bill if b.id == bill_id else b for b in group.bills]
        self._commit(group)

        logger.info(f"Edited bill {bill_id} in group {group_id}: {bill.final_amount}")
        return bill.model_copy(deep=True)

    def remove_bill(self, group_id: str, bill_id: str):
        """Delete a bill. Settlements that referenced it are kept."""
        group = self._working_copy(group_id)
        if group.find_bill(bill_id) is None:
            raise BillNotFoundError(bill_id)

        group.bills = [b for b in group.bills if b.id != bill_id]
        self._commit(group)

        logger.info(f"Removed bill {bill_id} from group {group_id}")

    def mark_split_paid(
        self,
        group_id: str,
        bill_id: str,
        member_id: str,
        settled: bool | None = None,
    ) -> Split:
        """
        Toggle (or set) one participant's settled flag on a bill.

        The flag is a reminder only. Balances are computed from contributions,
        splits and settlements and are not affected.
        """
        group = self._working_copy(group_id)
        bill = group.find_bill(bill_id)
        if bill is None:
            raise BillNotFoundError(bill_id)

        for split in bill.splits:
            if split.member_id == member_id:
                split.settled = (not split.settled) if settled is None else settled
                break
        else:
            raise MemberNotFoundError(member_id)

        self._commit(group)
        return split.model_copy()

    # ========================================================================
    # Settlements
    # ========================================================================

    def add_settlement(
        self,
        group_id: str,
        from_id: str,
        to_id: str,
        amount: Decimal | int | str,
        bill_id: str | None = None,
        memo: str | None = None,
        settlement_id: str | None = None,
        created_at: datetime | None = None,
    ) -> Settlement:
        """
        Record a transfer from one member to another.

        Passing the same settlement_id again (e.g. retrying after a failed
        write) returns the recorded settlement instead of appending a second
        one.

        Raises:
            ValidationError: If the amount is not a positive number or from == to
            MemberNotFoundError: If either party is not in the group
        """
        group = self._working_copy(group_id)

        try:
            value = Decimal(amount)
        except (InvalidOperation, TypeError, ValueError) as e:
            raise ValidationError("Settlement amount must be a number") from e
        if not value.is_finite() or round_money(value) <= 0:
            raise ValidationError("Settlement amount must be greater than 0")
        value = round_money(value)

        if settlement_id:
            for existing in group.settlements:
                if existing.id != settlement_id:
                    continue
                if (existing.from_id, existing.to_id) != (from_id, to_id) or (
                    existing.amount != value
                ):
                    raise ValidationError(
                        f"Settlement {settlement_id} is already recorded "
                        f"with different details"
                    )
                logger.info(f"Settlement {settlement_id} already recorded")
                return existing.model_copy()

        if from_id == to_id:
            raise ValidationError("A member cannot settle with themselves")
        for member_id in (from_id, to_id):
            if group.find_member(member_id) is None:
                raise MemberNotFoundError(member_id)
        if bill_id and group.find_bill(bill_id) is None:
            raise BillNotFoundError(bill_id)

        settlement = Settlement(
            from_id=from_id,
            to_id=to_id,
            amount=value,
            bill_id=bill_id,
            memo=memo,
            created_at=created_at or datetime.now(),
        )
        if settlement_id:
            settlement.id = settlement_id

        group.settlements.insert(0, settlement)
        self._commit(group)

        logger.info(
            f"Recorded settlement {from_id} -> {to_id} of {settlement.amount} "
            f"in group {group_id}"
        )

        self._mirror(
            group,
            settlement_transaction(
                settlement,
                group,
                self._expense_category,
                self._reimbursement_category,
            ),
        )
        return settlement.model_copy()

    def settle_up(self, group_id: str) -> list[Settlement]:
        """
        Record every transfer of the current plan as a settlement.

        Returns:
            The recorded settlements. Empty if the group was already settled.
        """
        plan = self.plan(group_id)
        if not plan:
            logger.info(f"Group {group_id} is already settled")
            return []

        return [
            self.add_settlement(group_id, t.from_id, t.to_id, t.amount) for t in plan
        ]

    # ========================================================================
    # Spending ledger mirror
    # ========================================================================

    @property
    def _expense_category(self) -> str:
        if self.settings:
            return self.settings.group_expense_category
        return DEFAULT_EXPENSE_CATEGORY

    @property
    def _reimbursement_category(self) -> str:
        if self.settings:
            return self.settings.reimbursement_category
        return DEFAULT_REIMBURSEMENT_CATEGORY

    def _mirror(
        self, group: Group, transaction: SpendingTransaction | None
    ) -> str | None:
        """Best-effort copy into the spending ledger; never undoes the mutation."""
        if transaction is None or not group.track_spending:
            return None
        if self.spending_ledger is None:
            return None

        try:
            transaction_id = self.spending_ledger.add_transaction(transaction)
        except Exception as e:
            logger.warning(
                f"Failed to mirror {transaction.type} of {transaction.amount} "
                f"to spending ledger: {e}"
            )
            return None

        logger.info(
            f"Mirrored {transaction.type} of {transaction.amount} "
            f"to spending ledger: {transaction_id}"
        )
        return transaction_id


def _verify_bill(bill: Bill):
    """Check that splits and contributions both sum exactly to the final amount."""
    split_total = sum((s.share for s in bill.splits), ZERO)
    contribution_total = sum((c.amount for c in bill.contributions), ZERO)

    if split_total != bill.final_amount or contribution_total != bill.final_amount:
        raise InvariantViolationError(
            f"Bill '{bill.title}' does not reconcile:\n"
            f"  Final amount:  {bill.final_amount}\n"
            f"  Splits:        {split_total}\n"
            f"  Contributions: {contribution_total}"
        )
