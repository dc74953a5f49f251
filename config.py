import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        credential_keys: list[str],
        aggregator_client_id: Optional[str],
        aggregator_secret: Optional[str],
        aggregator_env: str,
        link_redirect_uri: Optional[str],
        webhook_url: Optional[str],
        aggregator_timeout_secs: float,
        aggregator_max_retries: int,
        aggregator_backoff_secs: float,
        sync_lookback_days: int,
        skip_flagged_bank_duplicates: bool,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.credential_keys = credential_keys
        self.aggregator_client_id = aggregator_client_id
        self.aggregator_secret = aggregator_secret
        self.aggregator_env = aggregator_env
        self.link_redirect_uri = link_redirect_uri
        self.webhook_url = webhook_url
        self.aggregator_timeout_secs = aggregator_timeout_secs
        self.aggregator_max_retries = aggregator_max_retries
        self.aggregator_backoff_secs = aggregator_backoff_secs
        self.sync_lookback_days = sync_lookback_days
        self.skip_flagged_bank_duplicates = skip_flagged_bank_duplicates
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINANCE_TIMEZONE", "America/New_York")
    secret_key = os.getenv(
        "FINANCE_SECRET_KEY",
        "6f1d2a0c9e87b3f45a1c7d2e8b9f0a3c4d5e6f708192a3b4c5d6e7f8091a2b3c",
    )
    credential_keys = [
        key.strip()
        for key in os.getenv("FINANCE_CREDENTIAL_KEYS", "").split(",")
        if key.strip()
    ]
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        credential_keys=credential_keys,
        aggregator_client_id=os.getenv("FINANCE_PLAID_CLIENT_ID"),
        aggregator_secret=os.getenv("FINANCE_PLAID_SECRET"),
        aggregator_env=os.getenv("FINANCE_PLAID_ENV", "sandbox"),
        link_redirect_uri=os.getenv("FINANCE_LINK_REDIRECT_URI"),
        webhook_url=os.getenv("FINANCE_WEBHOOK_URL"),
        aggregator_timeout_secs=float(os.getenv("FINANCE_PLAID_TIMEOUT_SECS", "10")),
        aggregator_max_retries=int(os.getenv("FINANCE_PLAID_MAX_RETRIES", "3")),
        aggregator_backoff_secs=float(os.getenv("FINANCE_PLAID_BACKOFF_SECS", "0.5")),
        sync_lookback_days=int(os.getenv("FINANCE_SYNC_LOOKBACK_DAYS", "30")),
        skip_flagged_bank_duplicates=_env_flag("FINANCE_SKIP_FLAGGED_BANK_DUPLICATES"),
        log_level=os.getenv("FINANCE_LOG_LEVEL", "INFO").upper(),
    )
