"""Interactive UI components for picking group members."""

import logging
from typing import Any

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document

from .models import Member

logger = logging.getLogger(__name__)


def fuzzy_match(query: str, text: str) -> bool:
    """
    Fuzzy match: all characters in query must appear in order in text.

    Example:
        query="bb" matches "Bobby"
        query="aln" matches "Alan"
    """
    query_idx = 0
    for char in text:
        if query_idx < len(query) and char == query[query_idx]:
            query_idx += 1
    return query_idx == len(query)


class MemberCompleter(Completer):
    """Fuzzy search completer for group members."""

    def __init__(self, members: list[Member]):
        """Initialize the completer with selectable members."""
        self.members = members
        self.name_to_id = {m.name: m.id for m in members}

    def get_completions(self, document: Document, complete_event: Any):
        """Get fuzzy-matched completions."""
        query = document.text.lower()

        for member in self.members:
            if query and not fuzzy_match(query, member.name.lower()):
                continue
            yield Completion(
                text=member.name,
                start_position=-len(document.text),
                display=member.name,
            )


def select_member_interactive(
    members: list[Member], prompt: str = "Member: "
) -> str | None:
    """
    Interactive member selection with fuzzy search.

    Archived members are not offered.

    Args:
        members: Members of the group
        prompt: Prompt label

    Returns:
        Selected member ID, or None to skip
    """
    active = [m for m in members if not m.archived]
    if not active:
        return None

    print("   Type to search, press Enter to confirm, Ctrl+C to skip\n")

    completer = MemberCompleter(active)
    session: PromptSession[str] = PromptSession(completer=completer)

    try:
        while True:
            result = session.prompt(prompt, complete_while_typing=True)

            if not result:
                return None

            member_id = completer.name_to_id.get(result)
            if member_id:
                logger.info(f"User selected member: {result}")
                return member_id

            print("❌ Unknown member. Please select from the list or press Tab to complete.")

    except KeyboardInterrupt:
        print("\n⏭️  Skipped")
        return None
    except EOFError:
        return None
