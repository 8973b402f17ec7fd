"""Custom exceptions for Group Ledger."""


class GroupLedgerError(Exception):
    """Base exception for all Group Ledger errors."""

    pass


class ConfigurationError(GroupLedgerError):
    """Raised when configuration is invalid or missing."""

    pass


class ValidationError(GroupLedgerError):
    """Raised when user input is invalid and can be corrected before saving."""

    pass


class BillValidationError(ValidationError):
    """Raised when a bill cannot be allocated (amounts, participants, payers)."""

    pass


class InvariantViolationError(GroupLedgerError):
    """Raised when a mutation would break the ledger's history."""

    pass


class MemberHasHistoryError(InvariantViolationError):
    """Raised when deleting a member that appears in bills or settlements."""

    def __init__(self, member_id: str, message: str | None = None):
        self.member_id = member_id
        super().__init__(
            message
            or f"Member {member_id} has recorded bills or settlements; "
            f"archive the member instead"
        )


class NotFoundError(GroupLedgerError):
    """Base class for lookups that found nothing."""

    pass


class GroupNotFoundError(NotFoundError):
    """Raised when a group id is unknown."""

    def __init__(self, group_id: str):
        self.group_id = group_id
        super().__init__(f"Group not found: {group_id}")


class MemberNotFoundError(NotFoundError):
    """Raised when a member id is not part of the group."""

    def __init__(self, member_id: str):
        self.member_id = member_id
        super().__init__(f"Member not found: {member_id}")


class BillNotFoundError(NotFoundError):
    """Raised when a bill id is not part of the group."""

    def __init__(self, bill_id: str):
        self.bill_id = bill_id
        super().__init__(f"Bill not found: {bill_id}")


class PersistenceError(GroupLedgerError):
    """Raised when the record store fails to read or write."""

    pass


class APIError(GroupLedgerError):
    """Base class for API-related errors."""

    pass


class SpendingLedgerAPIError(APIError):
    """Raised when the external spending ledger request fails."""

    pass
