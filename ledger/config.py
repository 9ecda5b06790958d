import logging
import sys
from functools import lru_cache
from typing import Optional
from uuid import UUID

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    TELEGRAM_BOT_TOKEN: Optional[str] = None

    # Dispatch sweep: run every interval, pick up fire times due within the lookahead.
    # The lookahead must stay longer than the interval or posts are missed.
    DISPATCH_ENABLED: bool = False
    DISPATCH_INTERVAL_SECONDS: int = 60
    DISPATCH_LOOKAHEAD_SECONDS: int = 300

    # Share of a paid post kept by the platform unless the owner has its own
    # commission_rate; the channel owner earns the rest.
    PLATFORM_COMMISSION: float = 0.2
    MAX_REQUEST_AMOUNT: int = 10000

    # Owners post into their own channels free, up to this many fire times.
    FREE_POSTS_LIMIT: int = 3
    AUTHORIZATION_TTL_SECONDS: int = 300

    CRON_SECRET: Optional[str] = None
    ADMIN_ACCOUNT_IDS: str = ""  # "uuid1,uuid2"

    DEBUG: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def admin_ids(self) -> list[UUID]:
        if not self.ADMIN_ACCOUNT_IDS:
            return []
        return [UUID(x.strip()) for x in self.ADMIN_ACCOUNT_IDS.split(",") if x.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(debug: Optional[bool] = None) -> None:
    """Install a single stdout handler on the root logger.

    Verbose output only when DEBUG is on; otherwise warnings and above.
    """
    if debug is None:
        debug = get_settings().DEBUG

    root = logging.getLogger()
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(
        fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    ))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.WARNING)

    if not debug:
        for noisy in ("uvicorn", "uvicorn.access", "aiogram", "aiogram.event"):
            logging.getLogger(noisy).setLevel(logging.WARNING)
