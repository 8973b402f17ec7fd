"""Pydantic domain models for Group Ledger."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal

from pydantic import BaseModel, Field

AdjustmentMode = Literal["abs", "pct"]
AmountMode = Literal["subtotal", "final"]


def new_id() -> str:
    """Generate a new opaque record id."""
    return uuid.uuid4().hex


# ============================================================================
# Split modes
# ============================================================================


class EqualSplit(BaseModel):
    """Subtotal divided evenly across participants."""

    kind: Literal["equal"] = "equal"


class SharesSplit(BaseModel):
    """Subtotal divided by weight. Participants without a weight count as 1."""

    kind: Literal["shares"] = "shares"
    weights: dict[str, Decimal] = Field(default_factory=dict)


class ExactSplit(BaseModel):
    """Amounts entered per participant.

    With proportional_tax the values are base shares that must sum to the
    subtotal, and tax/discount are spread over them. Without it the values are
    final amounts that must sum to the bill's final amount.
    """

    kind: Literal["exact"] = "exact"
    values: dict[str, Decimal] = Field(default_factory=dict)
    proportional_tax: bool = True


SplitMode = Annotated[
    EqualSplit | SharesSplit | ExactSplit, Field(discriminator="kind")
]


# ============================================================================
# Payer modes
# ============================================================================


class SinglePayer(BaseModel):
    """One member paid the whole final amount."""

    kind: Literal["single"] = "single"
    paid_by: str | None = None


class EvenPayers(BaseModel):
    """Several members paid equal parts of the final amount."""

    kind: Literal["multi-even"] = "multi-even"
    payer_ids: list[str] = Field(default_factory=list)


class CustomPayers(BaseModel):
    """Several members paid arbitrary amounts summing to the final amount."""

    kind: Literal["multi-custom"] = "multi-custom"
    amounts: dict[str, Decimal] = Field(default_factory=dict)


PayerMode = Annotated[
    SinglePayer | EvenPayers | CustomPayers, Field(discriminator="kind")
]


# ============================================================================
# Ledger records
# ============================================================================


class Member(BaseModel):
    """A group member. The id never changes once created."""

    id: str = Field(default_factory=new_id)
    name: str
    contact: str | None = None
    archived: bool = False


class Contribution(BaseModel):
    """What one payer actually put down for a bill."""

    member_id: str
    amount: Decimal


class Split(BaseModel):
    """What one participant owes toward a bill.

    The settled flag is a reminder only. Balances are computed from
    contributions and splits and never look at it.
    """

    member_id: str
    share: Decimal
    settled: bool = False


class Bill(BaseModel):
    """A shared bill with its allocated splits and contributions."""

    id: str = Field(default_factory=new_id)
    group_id: str
    title: str
    amount: Decimal  # base subtotal
    tax: Decimal = Decimal("0")
    tax_mode: AdjustmentMode = "abs"
    discount: Decimal = Decimal("0")
    discount_mode: AdjustmentMode = "abs"
    final_amount: Decimal
    participants: list[str] = Field(default_factory=list)
    split: SplitMode = Field(default_factory=EqualSplit)
    contributions: list[Contribution] = Field(default_factory=list)
    splits: list[Split] = Field(default_factory=list)
    category: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)

    @property
    def split_mode(self) -> str:
        return self.split.kind

    @property
    def proportional_tax(self) -> bool:
        if isinstance(self.split, ExactSplit):
            return self.split.proportional_tax
        return True

    def involves(self, member_id: str) -> bool:
        """True if the member paid toward or owes part of this bill."""
        return any(c.member_id == member_id for c in self.contributions) or any(
            s.member_id == member_id for s in self.splits
        )

    def contribution_of(self, member_id: str) -> Decimal:
        return sum(
            (c.amount for c in self.contributions if c.member_id == member_id),
            Decimal("0"),
        )


class Settlement(BaseModel):
    """A recorded transfer from one member to another."""

    id: str = Field(default_factory=new_id)
    from_id: str
    to_id: str
    amount: Decimal
    created_at: datetime = Field(default_factory=datetime.now)
    bill_id: str | None = None
    memo: str | None = None


class Group(BaseModel):
    """Aggregate root: members, bills and settlements of one group."""

    id: str = Field(default_factory=new_id)
    name: str
    note: str | None = None
    currency: str = "USD"
    members: list[Member] = Field(default_factory=list)
    bills: list[Bill] = Field(default_factory=list)
    settlements: list[Settlement] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    local_member_id: str | None = None  # the operating user, set explicitly
    track_spending: bool = False

    def find_member(self, member_id: str) -> Member | None:
        for member in self.members:
            if member.id == member_id:
                return member
        return None

    def find_bill(self, bill_id: str) -> Bill | None:
        for bill in self.bills:
            if bill.id == bill_id:
                return bill
        return None

    def active_member_ids(self) -> set[str]:
        return {m.id for m in self.members if not m.archived}

    def member_name(self, member_id: str) -> str:
        member = self.find_member(member_id)
        return member.name if member else member_id


# ============================================================================
# Inputs and derived values
# ============================================================================


class BillInput(BaseModel):
    """A bill as entered by the user, before allocation."""

    title: str = ""
    amount: Decimal
    amount_mode: AmountMode = "subtotal"
    tax: Decimal = Decimal("0")
    tax_mode: AdjustmentMode = "abs"
    discount: Decimal = Decimal("0")
    discount_mode: AdjustmentMode = "abs"
    participant_ids: list[str] = Field(default_factory=list)
    split: SplitMode = Field(default_factory=EqualSplit)
    payer: PayerMode = Field(default_factory=SinglePayer)
    category: str | None = None
    created_at: datetime | None = None


class MemberAmount(BaseModel):
    """A (member, amount) pair produced by allocation."""

    member_id: str
    amount: Decimal


class Allocation(BaseModel):
    """Result of allocating a bill across its participants.

    An empty allocation (no participants) is a degenerate result, not an error.
    Callers check is_empty before persisting anything.
    """

    subtotal: Decimal = Decimal("0")
    tax_value: Decimal = Decimal("0")
    discount_value: Decimal = Decimal("0")
    final_amount: Decimal = Decimal("0")
    base_shares: list[MemberAmount] = Field(default_factory=list)
    final_shares: list[MemberAmount] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.final_shares


class Transfer(BaseModel):
    """One edge of a settlement plan. Not persisted until confirmed."""

    from_id: str
    to_id: str
    amount: Decimal


class SpendingTransaction(BaseModel):
    """A record mirrored into the external personal spending ledger."""

    type: Literal["expense", "income"]
    amount: Decimal
    category: str
    date: datetime
    note: str
    title: str | None = None
