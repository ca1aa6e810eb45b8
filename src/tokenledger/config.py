import os
from dataclasses import dataclass
from datetime import tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_LOG_DIR = "~/.claude/projects"
DEFAULT_DB_PATH = "~/.tokenledger/usage.db"


@dataclass
class Config:
    # directory holding the per-project *.jsonl transcripts
    log_dir: "str" = DEFAULT_LOG_DIR
    db_path: "str" = DEFAULT_DB_PATH
    # listen_address: format ":9186" or
    # "0.0.0.0:9186"
    listen_address: "str" = ":9186"
    # auto-sync interval in seconds
    sync_interval: "int" = 900
    # files per sync batch
    batch_size: "int" = 10
    cache_ttl: "int" = 1800
    cache_near_expiry: "int" = 300
    max_retries: "int" = 3
    retry_delay: "float" = 5.0
    log_level: "str" = "info"
    log_json: "bool" = False
    # IANA name used for date bucketing, empty for system local time
    timezone: "str" = ""

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            log_dir=os.environ.get("TOKENLEDGER_LOG_DIR", DEFAULT_LOG_DIR),
            db_path=os.environ.get("TOKENLEDGER_DB_PATH", DEFAULT_DB_PATH),
            timezone=os.environ.get("TOKENLEDGER_TIMEZONE", ""),
        )

    @property
    def log_path(self) -> "Path":
        return Path(self.log_dir).expanduser()

    @property
    def database_path(self) -> "Path":
        return Path(self.db_path).expanduser()

    @property
    def tz(self) -> "tzinfo | None":
        """
        the configured zone, or None for system local time.

        Raises:
            ValueError: if the zone name is unknown
        """
        if not self.timezone:
            return None
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone: {self.timezone!r}") from exc
