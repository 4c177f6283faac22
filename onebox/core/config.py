"""
Settings

Every tunable (IMAP accounts, sync timing, classification pacing, LLM
provider, database, notifications, reply context) comes from environment
variables or .env.

A single Settings value is built at process start (see load_settings) and
passed into each component's constructor.
"""
import json
import logging
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class AccountConnectionConfig(BaseModel):
    """Single IMAP account configuration (immutable for the process lifetime)"""
    model_config = ConfigDict(frozen=True)

    address: str = Field(..., description="Mailbox address, also used as login")
    password: str = Field(..., description="IMAP password or app password")
    host: str = Field("imap.gmail.com", description="IMAP server hostname")
    port: int = Field(993, description="IMAP server port")
    use_ssl: bool = Field(True, description="Use implicit TLS for IMAP")
    folder: str = Field("INBOX", description="Folder to synchronize")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # ============================================================
    # IMAP Accounts
    # ============================================================
    # Primary account (simple setup)
    imap_host: str = Field("imap.gmail.com", description="IMAP server hostname")
    imap_port: int = Field(993, description="IMAP server port")
    imap_username: Optional[str] = Field(None, description="IMAP username/email")
    imap_password: Optional[str] = Field(None, description="IMAP password")
    imap_use_ssl: bool = Field(True, description="Use SSL for IMAP")
    imap_folder: str = Field("INBOX", description="Folder to synchronize")

    # Additional accounts as JSON array, e.g.
    # IMAP_ACCOUNTS='[{"address":"sales@example.com","password":"...","host":"imap.example.com"}]'
    imap_accounts_json: Optional[str] = Field(
        None,
        validation_alias="IMAP_ACCOUNTS",
        description="JSON array of additional accounts",
    )

    # ============================================================
    # Synchronization
    # ============================================================
    backfill_days: int = Field(30, description="Initial backfill window in days")
    live_lookback_days: int = Field(1, description="Lookback window for each live-mode fetch")
    poll_interval_seconds: float = Field(30.0, description="Polling interval when IDLE is unsupported")
    reconnect_delay_seconds: float = Field(5.0, description="Fixed delay before each reconnection attempt")
    imap_timeout: int = Field(120, description="IMAP network timeout in seconds")
    idle_renew_seconds: int = Field(300, description="Re-arm IDLE after this many seconds")
    fetch_chunk_size: int = Field(50, description="Messages fetched per IMAP FETCH command")
    shutdown_grace_seconds: float = Field(30.0, description="Max wait for in-flight batches on stop")

    # ============================================================
    # Classification
    # ============================================================
    classifier_group_size: int = Field(5, description="Concurrent classification calls per group")
    classifier_group_pause_seconds: float = Field(1.0, description="Pause between classification groups")
    classifier_body_chars: int = Field(500, description="Body prefix included in the prompt")

    # ============================================================
    # LLM Configuration
    # ============================================================
    llm_provider: str = Field("openai", description="LLM provider: openai, anthropic or gemini")
    llm_temperature: float = Field(0.3, description="Sampling temperature for every provider (0-1)")

    openai_api_key: Optional[str] = Field(None, description="OpenAI API key")
    openai_model: str = Field("gpt-4o-mini", description="OpenAI model")

    anthropic_api_key: Optional[str] = Field(None, description="Anthropic API key")
    anthropic_model: str = Field("claude-3-haiku-20240307", description="Anthropic model")

    gemini_api_key: Optional[str] = Field(None, description="Google Gemini API key")
    gemini_model: str = Field("gemini-2.0-flash", description="Gemini model")

    # ============================================================
    # Database Configuration
    # ============================================================
    database_url: str = Field("sqlite:///./onebox.db", description="SQLAlchemy database URL")
    database_echo: bool = Field(False, description="Log SQL statements")

    # ============================================================
    # Notifications
    # ============================================================
    slack_webhook_url: Optional[str] = Field(None, description="Slack incoming webhook URL")
    external_webhook_url: Optional[str] = Field(None, description="External webhook for interested emails")
    notification_timeout_seconds: float = Field(5.0, description="HTTP timeout for notifications")

    # ============================================================
    # Reply Suggestions
    # ============================================================
    product_name: str = Field("Email Assistant", description="Product described in the knowledge base")
    outreach_agenda: str = Field("", description="Outreach agenda used as reply context")
    meeting_link: str = Field("https://cal.com/example", description="Meeting booking link")

    # ============================================================
    # Logging Configuration
    # ============================================================
    log_level: str = Field("INFO", description="Logging level (DEBUG/INFO/WARNING/ERROR)")
    log_format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )

    @property
    def accounts(self) -> List[AccountConnectionConfig]:
        """Get list of IMAP accounts (primary + additional)"""
        accounts = []

        if self.imap_username and self.imap_password:
            accounts.append(AccountConnectionConfig(
                address=self.imap_username,
                password=self.imap_password,
                host=self.imap_host,
                port=self.imap_port,
                use_ssl=self.imap_use_ssl,
                folder=self.imap_folder,
            ))

        if self.imap_accounts_json:
            try:
                additional = json.loads(self.imap_accounts_json)
            except json.JSONDecodeError as e:
                logger.warning(f"Failed to parse IMAP_ACCOUNTS: {e}")
                additional = []

            for entry in additional:
                if not isinstance(entry, dict) or not entry.get("address") or not entry.get("password"):
                    logger.warning("Skipping IMAP_ACCOUNTS entry without address or password")
                    continue
                try:
                    accounts.append(AccountConnectionConfig(**entry))
                except ValueError as e:
                    logger.warning(f"Invalid account entry {entry.get('address')!r}: {e}")

        seen = set()
        unique = []
        for account in accounts:
            if account.address in seen:
                logger.warning(f"Duplicate account {account.address} ignored")
                continue
            seen.add(account.address)
            unique.append(account)
        return unique


def load_settings(**overrides) -> Settings:
    """
    Build the process-wide settings value.

    Args:
        **overrides: Explicit values taking precedence over the environment

    Returns:
        Settings instance
    """
    return Settings(**overrides)
