"""Configuration management for Group Ledger."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Display currency (no conversion is ever performed)
    currency: str = "USD"

    # External spending ledger (optional mirror for the local member)
    spending_ledger_url: str | None = None
    spending_ledger_token: str | None = None

    # Mirrored transaction categories
    group_expense_category: str = "Group Expense"
    reimbursement_category: str = "Reimbursement"

    # Database path
    database_path: Path = Path.home() / ".group_ledger" / "group_ledger.db"

    def __init__(self, **kwargs):
        """Initialize settings and create database directory if needed."""
        super().__init__(**kwargs)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)


def load_settings() -> Settings:
    """Load application settings from environment variables."""
    try:
        return Settings()
    except Exception as e:
        raise ConfigurationError(
            f"Failed to load settings. Check your environment and .env file.\n"
            f"Error: {e}"
        ) from e
