"""External personal spending ledger client."""

import logging
from typing import Protocol

import httpx

from ..exceptions import SpendingLedgerAPIError
from ..models import SpendingTransaction

logger = logging.getLogger(__name__)


class SpendingLedger(Protocol):
    """Anything that can record a personal expense or income."""

    def add_transaction(self, transaction: SpendingTransaction) -> str:
        """Record the transaction and return its id."""
        ...


class SpendingLedgerClient:
    """HTTP client for a personal spending ledger service."""

    def __init__(self, base_url: str, access_token: str | None = None):
        """Initialize the spending ledger client."""
        self.base_url = base_url
        headers = {"Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        self.client = httpx.Client(base_url=base_url, headers=headers, timeout=30.0)

    def close(self):
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    def add_transaction(self, transaction: SpendingTransaction) -> str:
        """
        Create a transaction in the spending ledger.

        Args:
            transaction: Expense or income to record

        Returns:
            The created transaction ID
        """
        payload = transaction.model_dump(mode="json", exclude_none=True)
        logger.debug(f"Transaction payload: {payload}")

        try:
            response = self.client.post("/transactions", json={"transaction": payload})
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Spending ledger API error: {e}")
            logger.error(f"Response body: {e.response.text}")
            raise SpendingLedgerAPIError(str(e)) from e
        except httpx.HTTPError as e:
            raise SpendingLedgerAPIError(str(e)) from e

        data = response.json()
        transaction_id: str = data["data"]["transaction"]["id"]

        return transaction_id
