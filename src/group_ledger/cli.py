"""CLI for Group Ledger using Typer."""

import logging
import sys
from decimal import Decimal, InvalidOperation
from enum import Enum

import typer
from rich.console import Console
from rich.table import Table

from .clients.spending import SpendingLedgerClient
from .config import load_settings
from .db import Database
from .exceptions import GroupLedgerError, GroupNotFoundError, ValidationError
from .models import (
    BillInput,
    CustomPayers,
    EqualSplit,
    EvenPayers,
    ExactSplit,
    Group,
    Member,
    SharesSplit,
    SinglePayer,
)
from .planner import format_plan
from .store import GroupLedgerStore
from .ui import select_member_interactive

app = typer.Typer(
    name="group-ledger",
    help="Track shared bills in a group and work out who pays whom",
)

console = Console()


class SplitChoice(str, Enum):
    equal = "equal"
    shares = "shares"
    exact = "exact"


class AdjustmentChoice(str, Enum):
    abs = "abs"
    pct = "pct"


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def open_store() -> tuple[GroupLedgerStore, Database, SpendingLedgerClient | None]:
    """Build a store from settings, with the spending ledger if configured."""
    settings = load_settings()
    db = Database(settings.database_path)
    spending = None
    if settings.spending_ledger_url:
        spending = SpendingLedgerClient(
            settings.spending_ledger_url, settings.spending_ledger_token
        )
    return GroupLedgerStore(db, settings, spending), db, spending


def resolve_group(store: GroupLedgerStore, ref: str) -> Group:
    """Find a group by id or by exact name."""
    for group in store.list_groups():
        if group.id == ref or group.name == ref:
            return group
    raise GroupNotFoundError(ref)


def resolve_member(group: Group, ref: str) -> str:
    """Find a member id by id or by case-insensitive name."""
    if group.find_member(ref):
        return ref
    matches = [m for m in group.members if m.name.lower() == ref.lower()]
    if len(matches) != 1:
        raise ValidationError(
            f"'{ref}' matches {len(matches)} members of {group.name}; use the member id"
        )
    return matches[0].id


def parse_amount(value: str) -> Decimal:
    try:
        amount = Decimal(value)
    except InvalidOperation as e:
        raise typer.BadParameter(f"Not an amount: {value}") from e
    if not amount.is_finite():
        raise typer.BadParameter(f"Not an amount: {value}")
    return amount


def parse_member_amounts(group: Group, entries: list[str] | None) -> dict[str, Decimal]:
    """Parse repeated MEMBER=AMOUNT options into {member_id: amount}."""
    result: dict[str, Decimal] = {}
    for entry in entries or []:
        ref, sep, value = entry.rpartition("=")
        if not sep or not ref:
            raise typer.BadParameter(f"Expected MEMBER=AMOUNT, got '{entry}'")
        result[resolve_member(group, ref.strip())] = parse_amount(value.strip())
    return result


def format_money(amount: Decimal, use_color: bool = True) -> str:
    """
    Format money in accounting style with alignment.

    Negative amounts use parentheses: ($85.02)
    Positive amounts have spaces:      $85.02
    The spaces ensure decimal points align in tables.
    """
    abs_amount = abs(amount)
    if amount < 0:
        if use_color:
            formatted = f"($[red]{abs_amount:,.2f}[/red])"
        else:
            formatted = f"(${abs_amount:,.2f})"
    else:
        if use_color:
            formatted = f" [green]${abs_amount:,.2f}[/green] "
        else:
            formatted = f" ${abs_amount:,.2f} "
    return formatted


def handle_error(e: Exception, verbose: bool):
    """Report an error and exit with status 1."""
    if isinstance(e, GroupLedgerError):
        console.print(f"\n[bold yellow]⚠️  {e}[/bold yellow]\n")
    else:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
    if verbose:
        raise e
    sys.exit(1)


def close_all(db: Database | None, spending: SpendingLedgerClient | None):
    if spending is not None:
        spending.close()
    if db is not None:
        db.close()


# ============================================================================
# Groups
# ============================================================================


@app.command()
def groups(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List all groups."""
    setup_logging(verbose)
    db = spending = None

    try:
        store, db, spending = open_store()
        all_groups = store.list_groups()

        if not all_groups:
            console.print("[yellow]No groups yet.[/yellow]")
            return

        table = Table(title="Groups", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Members", justify="right")
        table.add_column("Bills", justify="right")
        for group in all_groups:
            table.add_row(
                group.id,
                group.name,
                str(len([m for m in group.members if not m.archived])),
                str(len(group.bills)),
            )
        console.print(table)

    except Exception as e:
        handle_error(e, verbose)
    finally:
        close_all(db, spending)


@app.command("create-group")
def create_group(
    name: str = typer.Argument(..., help="Group name"),
    members: list[str] | None = typer.Option(
        None, "--member", "-m", help="Member name (repeatable)"
    ),
    me: str | None = typer.Option(
        None, "--me", help="Which of the --member names is you"
    ),
    note: str | None = typer.Option(None, "--note", help="Free-form note"),
    track_spending: bool = typer.Option(
        False, "--track-spending", help="Mirror your share into the spending ledger"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Create a group with its initial members."""
    setup_logging(verbose)
    db = spending = None

    try:
        store, db, spending = open_store()

        initial = [Member(name=member_name) for member_name in members or []]
        local_id = None
        if me is not None:
            chosen = [m for m in initial if m.name.strip() == me.strip()]
            if not chosen:
                raise ValidationError(f"--me '{me}' is not one of the --member names")
            local_id = chosen[0].id

        group = store.create_group(
            name,
            note=note,
            members=initial,
            local_member_id=local_id,
            track_spending=track_spending,
        )
        console.print(
            f"[bold green]✓ Created group {group.name}[/bold green] [dim]({group.id})[/dim]"
        )

    except Exception as e:
        handle_error(e, verbose)
    finally:
        close_all(db, spending)


@app.command()
def show(
    group_ref: str = typer.Argument(..., help="Group id or name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show members, balances and bills of a group."""
    setup_logging(verbose)
    db = spending = None

    try:
        store, db, spending = open_store()
        group = resolve_group(store, group_ref)
        balances = store.balances(group.id)

        console.print(f"\n[bold]{group.name}[/bold] [dim]({group.id})[/dim]")
        if group.note:
            console.print(f"  {group.note}")

        table = Table(title="Members", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Balance", justify="right")
        table.add_column("Status", style="dim")
        for member in group.members:
            status = "archived" if member.archived else ""
            if member.id == group.local_member_id:
                status = f"you {status}".strip()
            table.add_row(
                member.id,
                member.name,
                format_money(balances.get(member.id, Decimal("0"))),
                status,
            )
        console.print(table)

        if group.bills:
            bills_table = Table(
                title="Bills", show_header=True, header_style="bold magenta"
            )
            bills_table.add_column("ID", style="dim")
            bills_table.add_column("Title", style="cyan", width=30)
            bills_table.add_column("Final", justify="right")
            bills_table.add_column("Split", style="yellow")
            bills_table.add_column("Paid by")
            for bill in group.bills:
                payers = ", ".join(
                    group.member_name(c.member_id) for c in bill.contributions
                )
                bills_table.add_row(
                    bill.id,
                    bill.title,
                    format_money(bill.final_amount, use_color=False),
                    bill.split_mode,
                    payers,
                )
            console.print(bills_table)

    except Exception as e:
        handle_error(e, verbose)
    finally:
        close_all(db, spending)


# ============================================================================
# Members
# ============================================================================


@app.command("add-member")
def add_member(
    group_ref: str = typer.Argument(..., help="Group id or name"),
    name: str = typer.Argument(..., help="Member name"),
    contact: str | None = typer.Option(None, "--contact", help="Phone or email"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Add a member to a group."""
    setup_logging(verbose)
    db = spending = None

    try:
        store, db, spending = open_store()
        group = resolve_group(store, group_ref)
        member = store.add_member(group.id, name, contact)
        console.print(
            f"[green]✓ Added {member.name}[/green] [dim]({member.id})[/dim]"
        )

    except Exception as e:
        handle_error(e, verbose)
    finally:
        close_all(db, spending)


@app.command("archive-member")
def archive_member(
    group_ref: str = typer.Argument(..., help="Group id or name"),
    member_ref: str = typer.Argument(..., help="Member id or name"),
    restore: bool = typer.Option(False, "--restore", help="Un-archive instead"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Hide a member from new bills, keeping their history."""
    setup_logging(verbose)
    db = spending = None

    try:
        store, db, spending = open_store()
        group = resolve_group(store, group_ref)
        member = store.archive_member(
            group.id, resolve_member(group, member_ref), archived=not restore
        )
        state = "restored" if restore else "archived"
        console.print(f"[green]✓ {member.name} {state}[/green]")

    except Exception as e:
        handle_error(e, verbose)
    finally:
        close_all(db, spending)


@app.command("delete-member")
def delete_member(
    group_ref: str = typer.Argument(..., help="Group id or name"),
    member_ref: str = typer.Argument(..., help="Member id or name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Delete a member who has no bills or settlements."""
    setup_logging(verbose)
    db = spending = None

    try:
        store, db, spending = open_store()
        group = resolve_group(store, group_ref)
        member_id = resolve_member(group, member_ref)
        store.delete_member(group.id, member_id)
        console.print(f"[green]✓ Deleted {group.member_name(member_id)}[/green]")

    except Exception as e:
        handle_error(e, verbose)
    finally:
        close_all(db, spending)


# ============================================================================
# Bills
# ============================================================================


@app.command("add-bill")
def add_bill(
    group_ref: str = typer.Argument(..., help="Group id or name"),
    amount: str = typer.Option(..., "--amount", "-a", help="Subtotal (or receipt total with --final)"),
    title: str = typer.Option("", "--title", "-t", help="Bill title"),
    final: bool = typer.Option(
        False, "--final", help="Amount is the receipt total; infer tax from --exact entries"
    ),
    tax: str = typer.Option("0", "--tax", help="Tax value"),
    tax_mode: AdjustmentChoice = typer.Option(AdjustmentChoice.abs, "--tax-mode"),
    discount: str = typer.Option("0", "--discount", help="Discount value"),
    discount_mode: AdjustmentChoice = typer.Option(
        AdjustmentChoice.abs, "--discount-mode"
    ),
    split: SplitChoice = typer.Option(SplitChoice.equal, "--split", "-s"),
    participants: list[str] | None = typer.Option(
        None, "--participant", "-p", help="Participant (repeatable, default: all active)"
    ),
    weights: list[str] | None = typer.Option(
        None, "--weight", help="MEMBER=WEIGHT for --split shares"
    ),
    exacts: list[str] | None = typer.Option(
        None, "--exact", help="MEMBER=AMOUNT for --split exact"
    ),
    no_proportional: bool = typer.Option(
        False, "--no-proportional", help="Exact amounts already include tax and discount"
    ),
    paid_by: str | None = typer.Option(None, "--paid-by", help="Single payer"),
    payers: list[str] | None = typer.Option(
        None, "--payer", help="Payer sharing the cost evenly (repeatable)"
    ),
    contributions: list[str] | None = typer.Option(
        None, "--contribution", help="MEMBER=AMOUNT actually paid (repeatable)"
    ),
    category: str | None = typer.Option(None, "--category", help="Spending category"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Add a bill and split it across participants."""
    setup_logging(verbose)
    db = spending = None

    try:
        store, db, spending = open_store()
        group = resolve_group(store, group_ref)

        participant_ids = (
            [resolve_member(group, ref) for ref in participants]
            if participants
            else [m.id for m in group.members if not m.archived]
        )

        if split is SplitChoice.shares:
            split_mode = SharesSplit(weights=parse_member_amounts(group, weights))
        elif split is SplitChoice.exact:
            split_mode = ExactSplit(
                values=parse_member_amounts(group, exacts),
                proportional_tax=not no_proportional,
            )
        else:
            split_mode = EqualSplit()

        if contributions:
            payer = CustomPayers(amounts=parse_member_amounts(group, contributions))
        elif payers:
            payer = EvenPayers(payer_ids=[resolve_member(group, p) for p in payers])
        else:
            payer_id = resolve_member(group, paid_by) if paid_by else None
            if payer_id is None and sys.stdin.isatty():
                console.print("\n[bold blue]Who paid?[/bold blue]")
                payer_id = select_member_interactive(group.members, "Paid by: ")
            payer = SinglePayer(paid_by=payer_id)

        bill_input = BillInput(
            title=title,
            amount=parse_amount(amount),
            amount_mode="final" if final else "subtotal",
            tax=parse_amount(tax),
            tax_mode=tax_mode.value,
            discount=parse_amount(discount),
            discount_mode=discount_mode.value,
            participant_ids=participant_ids,
            split=split_mode,
            payer=payer,
            category=category,
        )
        bill = store.add_bill(group.id, bill_input)

        console.print(
            f"\n[bold green]✓ Added {bill.title}[/bold green] "
            f"[dim]({bill.id})[/dim]  Final: {format_money(bill.final_amount)}"
        )
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Member", style="cyan")
        table.add_column("Paid", justify="right")
        table.add_column("Owes", justify="right")
        for split_line in bill.splits:
            table.add_row(
                group.member_name(split_line.member_id),
                format_money(bill.contribution_of(split_line.member_id), use_color=False),
                format_money(split_line.share, use_color=False),
            )
        console.print(table)

    except Exception as e:
        handle_error(e, verbose)
    finally:
        close_all(db, spending)


@app.command("remove-bill")
def remove_bill(
    group_ref: str = typer.Argument(..., help="Group id or name"),
    bill_id: str = typer.Argument(..., help="Bill id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Delete a bill."""
    setup_logging(verbose)
    db = spending = None

    try:
        store, db, spending = open_store()
        group = resolve_group(store, group_ref)
        store.remove_bill(group.id, bill_id)
        console.print("[green]✓ Bill removed[/green]")

    except Exception as e:
        handle_error(e, verbose)
    finally:
        close_all(db, spending)


@app.command("mark-paid")
def mark_paid(
    group_ref: str = typer.Argument(..., help="Group id or name"),
    bill_id: str = typer.Argument(..., help="Bill id"),
    member_ref: str = typer.Argument(..., help="Member id or name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Toggle a participant's paid reminder on a bill (balances are unchanged)."""
    setup_logging(verbose)
    db = spending = None

    try:
        store, db, spending = open_store()
        group = resolve_group(store, group_ref)
        split_line = store.mark_split_paid(
            group.id, bill_id, resolve_member(group, member_ref)
        )
        state = "paid" if split_line.settled else "unpaid"
        console.print(
            f"[green]✓ {group.member_name(split_line.member_id)} marked {state}[/green]"
        )

    except Exception as e:
        handle_error(e, verbose)
    finally:
        close_all(db, spending)


# ============================================================================
# Settlements
# ============================================================================


@app.command()
def settle(
    group_ref: str = typer.Argument(..., help="Group id or name"),
    from_ref: str = typer.Argument(..., help="Member who pays"),
    to_ref: str = typer.Argument(..., help="Member who receives"),
    amount: str = typer.Argument(..., help="Amount transferred"),
    memo: str | None = typer.Option(None, "--memo", help="Optional memo"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Record a single transfer between two members."""
    setup_logging(verbose)
    db = spending = None

    try:
        store, db, spending = open_store()
        group = resolve_group(store, group_ref)
        settlement = store.add_settlement(
            group.id,
            resolve_member(group, from_ref),
            resolve_member(group, to_ref),
            parse_amount(amount),
            memo=memo,
        )
        console.print(
            f"[green]✓ Recorded {group.member_name(settlement.from_id)} → "
            f"{group.member_name(settlement.to_id)}: "
            f"{format_money(settlement.amount, use_color=False).strip()}[/green]"
        )

    except Exception as e:
        handle_error(e, verbose)
    finally:
        close_all(db, spending)


@app.command()
def balances(
    group_ref: str = typer.Argument(..., help="Group id or name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show each member's net balance."""
    setup_logging(verbose)
    db = spending = None

    try:
        store, db, spending = open_store()
        group = resolve_group(store, group_ref)

        table = Table(
            title=f"Balances: {group.name}", show_header=True, header_style="bold magenta"
        )
        table.add_column("Member", style="cyan")
        table.add_column("Balance", justify="right")
        for member_id, value in store.balances(group.id).items():
            table.add_row(group.member_name(member_id), format_money(value))
        console.print(table)

    except Exception as e:
        handle_error(e, verbose)
    finally:
        close_all(db, spending)


@app.command()
def plan(
    group_ref: str = typer.Argument(..., help="Group id or name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show the transfers that would settle the group (dry-run)."""
    setup_logging(verbose)
    db = spending = None

    try:
        store, db, spending = open_store()
        group = resolve_group(store, group_ref)
        names = {m.id: m.name for m in group.members}
        console.print(format_plan(store.plan(group.id), names, group.name))

    except Exception as e:
        handle_error(e, verbose)
    finally:
        close_all(db, spending)


@app.command("settle-up")
def settle_up(
    group_ref: str = typer.Argument(..., help="Group id or name"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Record every transfer of the current settlement plan."""
    setup_logging(verbose)
    db = spending = None

    try:
        store, db, spending = open_store()
        group = resolve_group(store, group_ref)
        names = {m.id: m.name for m in group.members}
        transfers = store.plan(group.id)

        if not transfers:
            console.print("[green]Everyone is settled 🎉[/green]")
            return

        console.print(format_plan(transfers, names, group.name))

        if not yes:
            console.print(
                "\n[bold yellow]⚠️  Ready to record these transfers[/bold yellow]"
            )
            confirm = input("Continue? [y/N] ").strip().lower()
            if confirm not in ("y", "yes"):
                console.print("[yellow]Cancelled.[/yellow]")
                return

        recorded = store.settle_up(group.id)
        console.print(f"\n[bold green]✓ Recorded {len(recorded)} transfers[/bold green]")

    except Exception as e:
        handle_error(e, verbose)
    finally:
        close_all(db, spending)


if __name__ == "__main__":
    app()
