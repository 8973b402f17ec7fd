"""Tests for GroupLedgerStore."""

import json
from datetime import datetime
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from group_ledger.config import Settings
from group_ledger.db import Database, group_key
from group_ledger.exceptions import (
    BillNotFoundError,
    BillValidationError,
    GroupNotFoundError,
    MemberHasHistoryError,
    MemberNotFoundError,
    PersistenceError,
    SpendingLedgerAPIError,
    ValidationError,
)
from group_ledger.ledger import total_imbalance
from group_ledger.models import (
    BillInput,
    CustomPayers,
    EvenPayers,
    ExactSplit,
    Member,
    SharesSplit,
    SinglePayer,
)
from group_ledger.store import GroupLedgerStore, migrate_record

D = Decimal


@pytest.fixture
def mock_settings(tmp_path):
    """Create settings pointing at a temporary database."""
    return Settings(database_path=tmp_path / "ledger.db")


@pytest.fixture
def mock_db(mock_settings):
    """Create a temporary database."""
    db = Database(mock_settings.database_path)
    yield db
    db.close()


@pytest.fixture
def spending_ledger():
    """Create a mock spending ledger."""
    ledger = MagicMock()
    ledger.add_transaction.return_value = "tx-1"
    return ledger


@pytest.fixture
def store(mock_db, mock_settings, spending_ledger):
    """Create a GroupLedgerStore instance."""
    return GroupLedgerStore(mock_db, mock_settings, spending_ledger)


@pytest.fixture
def trio(store):
    """A group with members Ann, Bob and Cat; Ann is the local member."""
    ann, bob, cat = Member(name="Ann"), Member(name="Bob"), Member(name="Cat")
    group = store.create_group(
        "Trip", members=[ann, bob, cat], local_member_id=ann.id
    )
    return group.id, ann.id, bob.id, cat.id


def equal_bill(amount: str, participants: list[str], paid_by: str, **kwargs) -> BillInput:
    return BillInput(
        title=kwargs.pop("title", "Dinner"),
        amount=D(amount),
        participant_ids=participants,
        payer=SinglePayer(paid_by=paid_by),
        **kwargs,
    )


class TestGroups:
    """Group creation and lifecycle."""

    def test_create_group_persists_record(self, store, mock_db):
        group = store.create_group(
            "Flat", members=[Member(name="  Ann "), Member(name="   ")]
        )

        assert [m.name for m in group.members] == ["Ann"]
        raw = json.loads(mock_db.get(group_key(group.id)))
        assert raw["name"] == "Flat"
        assert raw["currency"] == "USD"

    def test_create_group_rejects_unknown_local_member(self, store):
        with pytest.raises(MemberNotFoundError):
            store.create_group("Flat", members=[Member(name="Ann")], local_member_id="x")

    def test_empty_name_rejected(self, store):
        with pytest.raises(ValidationError):
            store.create_group("  ")

    def test_list_groups_newest_first(self, store):
        store.create_group("Old")
        store.create_group("New")

        groups = store.list_groups()
        assert {g.name for g in groups} == {"Old", "New"}
        assert groups[0].created_at >= groups[1].created_at

    def test_groups_survive_reload(self, store, mock_db, mock_settings, trio):
        group_id, ann, bob, cat = trio
        store.add_bill(group_id, equal_bill("90.00", [ann, bob, cat], ann))

        reloaded = GroupLedgerStore(mock_db, mock_settings)

        assert reloaded.balances(group_id) == store.balances(group_id)
        assert reloaded.get_group(group_id).local_member_id == ann

    def test_update_and_delete_group(self, store, mock_db, trio):
        group_id = trio[0]

        store.update_group(group_id, name="Road trip", note="Summer", track_spending=True)
        group = store.get_group(group_id)
        assert (group.name, group.note, group.track_spending) == (
            "Road trip",
            "Summer",
            True,
        )

        store.delete_group(group_id)
        with pytest.raises(GroupNotFoundError):
            store.get_group(group_id)
        assert mock_db.get(group_key(group_id)) is None

    def test_unknown_group(self, store):
        with pytest.raises(GroupNotFoundError):
            store.balances("missing")

    def test_get_group_returns_copy(self, store, trio):
        group_id = trio[0]

        store.get_group(group_id).members.clear()

        assert len(store.get_group(group_id).members) == 3


class TestMembers:
    """Member add, update, archive and delete."""

    def test_add_and_update_member(self, store, trio):
        group_id = trio[0]

        member = store.add_member(group_id, " Dan ", contact=" dan@example.com ")
        updated = store.update_member(group_id, member.id, name="Daniel")

        assert member.name == "Dan"
        assert member.contact == "dan@example.com"
        assert updated.id == member.id
        assert updated.name == "Daniel"

    def test_archive_is_always_allowed(self, store, trio):
        group_id, ann, bob, cat = trio
        store.add_bill(group_id, equal_bill("30.00", [ann, bob, cat], ann))

        member = store.archive_member(group_id, bob)

        assert member.archived
        assert store.balances(group_id)[bob] == D("-10.00")

    def test_restore_archived_member(self, store, trio):
        group_id, _, bob, _ = trio
        store.archive_member(group_id, bob)

        assert not store.archive_member(group_id, bob, archived=False).archived

    def test_delete_member_without_history(self, store, trio):
        group_id, _, _, cat = trio

        store.delete_member(group_id, cat)

        assert store.get_group(group_id).find_member(cat) is None

    def test_delete_member_in_split_fails(self, store, trio):
        group_id, ann, bob, cat = trio
        store.add_bill(group_id, equal_bill("30.00", [ann, bob, cat], ann))

        with pytest.raises(MemberHasHistoryError):
            store.delete_member(group_id, cat)
        assert store.get_group(group_id).find_member(cat) is not None

    def test_delete_member_as_payer_only_fails(self, store, trio):
        group_id, ann, bob, cat = trio
        store.add_bill(group_id, equal_bill("30.00", [ann, bob], cat))

        with pytest.raises(MemberHasHistoryError):
            store.delete_member(group_id, cat)

    def test_delete_member_in_settlement_fails(self, store, trio):
        group_id, _, bob, cat = trio
        store.add_settlement(group_id, bob, cat, D("5.00"))

        with pytest.raises(MemberHasHistoryError):
            store.delete_member(group_id, bob)

    def test_delete_local_member_clears_local_id(self, store, trio):
        group_id, ann, _, _ = trio

        store.delete_member(group_id, ann)

        assert store.get_group(group_id).local_member_id is None

    def test_set_local_member(self, store, trio):
        group_id, _, bob, _ = trio

        assert store.set_local_member(group_id, bob).local_member_id == bob
        with pytest.raises(MemberNotFoundError):
            store.set_local_member(group_id, "nobody")


class TestAddBill:
    """Bill creation through the store."""

    def test_equal_bill_scenario(self, store, trio):
        """A pays 90.00 split equally: A +60, B -30, C -30."""
        group_id, ann, bob, cat = trio

        bill = store.add_bill(group_id, equal_bill("90.00", [ann, bob, cat], ann))

        assert bill.final_amount == D("90.00")
        assert [s.share for s in bill.splits] == [D("30.00")] * 3
        assert store.balances(group_id) == {
            ann: D("60.00"),
            bob: D("-30.00"),
            cat: D("-30.00"),
        }

    def test_tax_and_discount_scenario(self, store, trio):
        group_id, ann, bob, _ = trio

        bill = store.add_bill(
            group_id,
            equal_bill(
                "100.00",
                [ann, bob],
                ann,
                tax=D("7"),
                tax_mode="pct",
                discount=D("10"),
                discount_mode="pct",
            ),
        )

        assert bill.final_amount == D("97.00")
        assert [s.share for s in bill.splits] == [D("48.50"), D("48.50")]
        assert bill.contributions[0].amount == D("97.00")

    def test_archived_participants_dropped(self, store, trio):
        group_id, ann, bob, cat = trio
        store.archive_member(group_id, cat)

        bill = store.add_bill(group_id, equal_bill("10.00", [ann, bob, cat], ann))

        assert bill.participants == [ann, bob]
        assert [s.share for s in bill.splits] == [D("5.00"), D("5.00")]

    def test_no_active_participants_rejected(self, store, mock_db, trio):
        group_id, ann, _, cat = trio
        store.archive_member(group_id, cat)
        before = mock_db.get(group_key(group_id))

        with pytest.raises(BillValidationError, match="participant"):
            store.add_bill(group_id, equal_bill("10.00", [cat, "stranger"], ann))

        assert mock_db.get(group_key(group_id)) == before
        assert store.get_group(group_id).bills == []

    def test_no_payer_rejected(self, store, trio):
        group_id, ann, bob, _ = trio

        with pytest.raises(BillValidationError, match="Select who paid"):
            store.add_bill(
                group_id,
                BillInput(amount=D("10.00"), participant_ids=[ann, bob]),
            )

    def test_archived_payer_rejected(self, store, trio):
        group_id, ann, bob, cat = trio
        store.archive_member(group_id, cat)

        with pytest.raises(BillValidationError, match="not an active member"):
            store.add_bill(group_id, equal_bill("10.00", [ann, bob], cat))

    def test_even_payers(self, store, trio):
        group_id, ann, bob, cat = trio

        bill = store.add_bill(
            group_id,
            BillInput(
                title="Groceries",
                amount=D("10.00"),
                participant_ids=[ann, bob, cat],
                payer=EvenPayers(payer_ids=[ann, bob, cat]),
            ),
        )

        assert [c.amount for c in bill.contributions] == [
            D("3.33"),
            D("3.33"),
            D("3.34"),
        ]
        # Each paid exactly their share
        assert all(v == 0 for v in store.balances(group_id).values())

    def test_custom_contributions_must_reconcile(self, store, trio):
        group_id, ann, bob, _ = trio

        with pytest.raises(BillValidationError, match="Contributions must add up"):
            store.add_bill(
                group_id,
                BillInput(
                    amount=D("50.00"),
                    participant_ids=[ann, bob],
                    payer=CustomPayers(amounts={ann: D("20.00"), bob: D("20.00")}),
                ),
            )

    def test_final_total_mode_stores_inferred_tax(self, store, trio):
        group_id, ann, bob, _ = trio

        bill = store.add_bill(
            group_id,
            BillInput(
                title="Receipt",
                amount=D("55.00"),
                amount_mode="final",
                participant_ids=[ann, bob],
                split=ExactSplit(values={ann: D("30.00"), bob: D("20.00")}),
                payer=SinglePayer(paid_by=bob),
            ),
        )

        assert bill.amount == D("50.00")
        assert (bill.tax, bill.tax_mode) == (D("5.00"), "abs")
        assert bill.final_amount == D("55.00")
        assert bill.split_mode == "exact"
        assert bill.proportional_tax

    def test_blank_title_defaults(self, store, trio):
        group_id, ann, bob, _ = trio

        bill = store.add_bill(group_id, equal_bill("10.00", [ann, bob], ann, title="  "))

        assert bill.title == "Untitled bill"

    def test_newest_bill_first(self, store, trio):
        group_id, ann, bob, _ = trio
        store.add_bill(group_id, equal_bill("10.00", [ann, bob], ann, title="First"))
        store.add_bill(group_id, equal_bill("10.00", [ann, bob], ann, title="Second"))

        assert [b.title for b in store.get_group(group_id).bills] == ["Second", "First"]


class TestEditAndRemoveBill:
    """Editing and removing bills."""

    def test_edit_keeps_identity_and_settled_flags(self, store, trio):
        group_id, ann, bob, cat = trio
        bill = store.add_bill(
            group_id,
            equal_bill("30.00", [ann, bob, cat], ann, created_at=datetime(2024, 5, 1)),
        )
        store.mark_split_paid(group_id, bill.id, bob)

        edited = store.edit_bill(
            group_id,
            bill.id,
            BillInput(
                title="Dinner (fixed)",
                amount=D("60.00"),
                participant_ids=[ann, bob],
                split=SharesSplit(weights={ann: D("1"), bob: D("2")}),
                payer=SinglePayer(paid_by=ann),
            ),
        )

        assert edited.id == bill.id
        assert edited.created_at == datetime(2024, 5, 1)
        assert [s.share for s in edited.splits] == [D("20.00"), D("40.00")]
        assert [s.settled for s in edited.splits] == [False, True]
        assert len(store.get_group(group_id).bills) == 1
        assert store.balances(group_id) == {ann: D("40.00"), bob: D("-40.00"), cat: D("0")}

    def test_edit_allows_since_archived_participant(self, store, trio):
        group_id, ann, bob, cat = trio
        bill = store.add_bill(group_id, equal_bill("30.00", [ann, bob, cat], ann))
        store.archive_member(group_id, cat)

        edited = store.edit_bill(group_id, bill.id, equal_bill("60.00", [ann, bob, cat], ann))

        assert edited.participants == [ann, bob, cat]

    def test_edit_unknown_bill(self, store, trio):
        group_id, ann, bob, _ = trio

        with pytest.raises(BillNotFoundError):
            store.edit_bill(group_id, "nope", equal_bill("10.00", [ann, bob], ann))

    def test_remove_bill_restores_balances(self, store, trio):
        group_id, ann, bob, cat = trio
        bill = store.add_bill(group_id, equal_bill("90.00", [ann, bob, cat], ann))

        store.remove_bill(group_id, bill.id)

        assert all(v == 0 for v in store.balances(group_id).values())
        assert store.find_bill(group_id, bill.id) is None


class TestMarkSplitPaid:
    """The settled flag is a reminder only."""

    def test_toggle_does_not_change_balances(self, store, trio):
        group_id, ann, bob, cat = trio
        bill = store.add_bill(group_id, equal_bill("90.00", [ann, bob, cat], ann))
        before = store.balances(group_id)

        split = store.mark_split_paid(group_id, bill.id, bob)

        assert split.settled
        assert store.balances(group_id) == before
        assert store.get_group(group_id).settlements == []

        assert not store.mark_split_paid(group_id, bill.id, bob).settled

    def test_explicit_value(self, store, trio):
        group_id, ann, bob, _ = trio
        bill = store.add_bill(group_id, equal_bill("10.00", [ann, bob], ann))

        store.mark_split_paid(group_id, bill.id, bob, settled=True)

        assert store.mark_split_paid(group_id, bill.id, bob, settled=True).settled

    def test_member_not_on_bill(self, store, trio):
        group_id, ann, bob, cat = trio
        bill = store.add_bill(group_id, equal_bill("10.00", [ann, bob], ann))

        with pytest.raises(MemberNotFoundError):
            store.mark_split_paid(group_id, bill.id, cat)


class TestSettlements:
    """Recording settlements and settling up."""

    def test_plan_then_settle_up_zeroes_balances(self, store, trio):
        group_id, ann, bob, cat = trio
        store.add_bill(group_id, equal_bill("90.00", [ann, bob, cat], ann))
        store.add_bill(group_id, equal_bill("17.35", [bob, cat], cat, title="Taxi"))

        plan = store.plan(group_id)
        recorded = store.settle_up(group_id)

        assert len(recorded) == len(plan)
        assert all(v == 0 for v in store.balances(group_id).values())
        assert store.plan(group_id) == []

    def test_settle_up_when_settled(self, store, trio):
        assert store.settle_up(trio[0]) == []

    def test_settlement_validation(self, store, trio):
        group_id, ann, bob, _ = trio

        with pytest.raises(ValidationError, match="greater than 0"):
            store.add_settlement(group_id, bob, ann, D("0"))
        with pytest.raises(ValidationError, match="themselves"):
            store.add_settlement(group_id, ann, ann, D("5"))
        with pytest.raises(MemberNotFoundError):
            store.add_settlement(group_id, "nobody", ann, D("5"))
        with pytest.raises(BillNotFoundError):
            store.add_settlement(group_id, bob, ann, D("5"), bill_id="nope")

    @pytest.mark.parametrize("amount", ["abc", "", None])
    def test_non_numeric_amount_rejected(self, store, trio, amount):
        group_id, ann, bob, _ = trio
        store.add_settlement(group_id, bob, ann, D("5"), settlement_id="s-1")

        with pytest.raises(ValidationError, match="must be a number"):
            store.add_settlement(group_id, bob, ann, amount)
        with pytest.raises(ValidationError, match="must be a number"):
            store.add_settlement(group_id, bob, ann, amount, settlement_id="s-1")
        assert len(store.get_group(group_id).settlements) == 1

    def test_retry_with_same_id_does_not_double_append(self, store, trio):
        group_id, ann, bob, _ = trio

        first = store.add_settlement(group_id, bob, ann, D("12.50"), settlement_id="s-1")
        second = store.add_settlement(group_id, bob, ann, D("12.50"), settlement_id="s-1")

        assert first.id == second.id == "s-1"
        assert len(store.get_group(group_id).settlements) == 1

    def test_reused_id_with_different_details_rejected(self, store, trio):
        group_id, ann, bob, _ = trio
        store.add_settlement(group_id, bob, ann, D("12.50"), settlement_id="s-1")

        with pytest.raises(ValidationError, match="different details"):
            store.add_settlement(group_id, bob, ann, D("99.00"), settlement_id="s-1")


class TestConservation:
    """Money is never created or destroyed across a mixed history."""

    def test_balances_sum_to_zero(self, store, trio):
        group_id, ann, bob, cat = trio
        store.add_bill(group_id, equal_bill("10.00", [ann, bob, cat], ann))
        store.add_bill(
            group_id,
            BillInput(
                amount=D("47.99"),
                tax=D("8.875"),
                tax_mode="pct",
                discount=D("2.50"),
                participant_ids=[ann, bob, cat],
                split=SharesSplit(weights={ann: D("3"), bob: D("1.5")}),
                payer=EvenPayers(payer_ids=[bob, cat]),
            ),
        )
        store.add_settlement(group_id, cat, ann, D("3.21"))

        group = store.get_group(group_id)
        for bill in group.bills:
            assert sum(s.share for s in bill.splits) == bill.final_amount
            assert sum(c.amount for c in bill.contributions) == bill.final_amount
        assert total_imbalance(store.balances(group_id)) == 0


class TestPersistenceFailures:
    """A failed write leaves memory untouched and can be retried."""

    def test_failed_write_leaves_state_unchanged(self, store, trio):
        group_id, ann, bob, cat = trio

        with patch.object(
            store.db, "save_group_record", side_effect=PersistenceError("disk full")
        ):
            with pytest.raises(PersistenceError):
                store.add_bill(group_id, equal_bill("90.00", [ann, bob, cat], ann))

        assert store.get_group(group_id).bills == []

        store.add_bill(group_id, equal_bill("90.00", [ann, bob, cat], ann))
        assert len(store.get_group(group_id).bills) == 1

    def test_failed_settlement_retry_appends_once(self, store, trio):
        group_id, ann, bob, _ = trio

        with patch.object(
            store.db, "save_group_record", side_effect=PersistenceError("locked")
        ):
            with pytest.raises(PersistenceError):
                store.add_settlement(group_id, bob, ann, D("5"), settlement_id="s-9")

        store.add_settlement(group_id, bob, ann, D("5"), settlement_id="s-9")
        store.add_settlement(group_id, bob, ann, D("5"), settlement_id="s-9")

        assert len(store.get_group(group_id).settlements) == 1


class TestSpendingMirror:
    """Mirroring into the external spending ledger."""

    def test_no_mirror_unless_tracking(self, store, spending_ledger, trio):
        group_id, ann, bob, _ = trio

        store.add_bill(group_id, equal_bill("10.00", [ann, bob], ann))

        spending_ledger.add_transaction.assert_not_called()

    def test_bill_paid_by_local_member_mirrored_as_expense(
        self, store, spending_ledger, trio
    ):
        group_id, ann, bob, _ = trio
        store.update_group(group_id, track_spending=True)

        store.add_bill(
            group_id, equal_bill("10.00", [ann, bob], ann, title="Pizza", category="Dining")
        )

        transaction = spending_ledger.add_transaction.call_args[0][0]
        assert transaction.type == "expense"
        assert transaction.amount == D("10.00")
        assert transaction.category == "Dining"
        assert transaction.note == "Pizza (Group Bill)"

    def test_bill_paid_by_someone_else_not_mirrored(self, store, spending_ledger, trio):
        group_id, ann, bob, _ = trio
        store.update_group(group_id, track_spending=True)

        store.add_bill(group_id, equal_bill("10.00", [ann, bob], bob))

        spending_ledger.add_transaction.assert_not_called()

    def test_settlement_received_mirrored_as_income(self, store, spending_ledger, trio):
        group_id, ann, bob, _ = trio
        store.update_group(group_id, track_spending=True)

        store.add_settlement(group_id, bob, ann, D("7.50"))

        transaction = spending_ledger.add_transaction.call_args[0][0]
        assert transaction.type == "income"
        assert transaction.category == "Reimbursement"
        assert transaction.note == "Reimbursement from Bob"

    def test_settlement_paid_mirrored_as_expense(self, store, spending_ledger, trio):
        group_id, ann, bob, _ = trio
        store.update_group(group_id, track_spending=True)

        store.add_settlement(group_id, ann, bob, D("7.50"))

        transaction = spending_ledger.add_transaction.call_args[0][0]
        assert transaction.type == "expense"
        assert transaction.note == "Payment to Bob"

    def test_mirror_failure_keeps_mutation(self, store, spending_ledger, trio):
        group_id, ann, bob, _ = trio
        store.update_group(group_id, track_spending=True)
        spending_ledger.add_transaction.side_effect = SpendingLedgerAPIError("down")

        settlement = store.add_settlement(group_id, bob, ann, D("7.50"))

        assert store.get_group(group_id).settlements[0].id == settlement.id


class TestMigration:
    """Legacy record migration on hydrate."""

    def test_paid_by_becomes_contribution(self):
        record = {
            "id": "g1",
            "name": "Old",
            "members": [{"id": "a", "name": "A"}, {"id": "b", "name": "B"}],
            "bills": [
                {
                    "id": "b1",
                    "group_id": "g1",
                    "title": "Lunch",
                    "amount": "20.00",
                    "final_amount": "20.00",
                    "paid_by": "a",
                    "splits": [
                        {"member_id": "a", "share": "10.00", "settled": False},
                        {"member_id": "b", "share": "10.00", "settled": False},
                    ],
                }
            ],
        }

        migrated, changed = migrate_record(record)

        assert changed
        assert migrated["settlements"] == []
        bill = migrated["bills"][0]
        assert "paid_by" not in bill
        assert bill["contributions"] == [{"member_id": "a", "amount": "20.00"}]
        assert bill["participants"] == ["a", "b"]

    def test_current_record_unchanged(self, store, trio):
        group = store.get_group(trio[0])

        _, changed = migrate_record(group.model_dump(mode="json"))

        assert not changed

    def test_hydrate_migrates_stored_record(self, mock_db, mock_settings):
        mock_db.save_group_record(
            "g1",
            {
                "id": "g1",
                "name": "Old",
                "members": [{"id": "a", "name": "A"}, {"id": "b", "name": "B"}],
                "bills": [
                    {
                        "id": "b1",
                        "group_id": "g1",
                        "title": "Lunch",
                        "amount": "20.00",
                        "final_amount": "20.00",
                        "paid_by": "a",
                        "splits": [
                            {"member_id": "a", "share": "10.00"},
                            {"member_id": "b", "share": "10.00"},
                        ],
                    }
                ],
            },
        )

        store = GroupLedgerStore(mock_db, mock_settings)

        assert store.balances("g1") == {"a": D("10.00"), "b": D("-10.00")}
        assert "contributions" in json.loads(mock_db.get(group_key("g1")))["bills"][0]
