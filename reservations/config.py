import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class Settings:
    data_dir: Optional[str] = None
    default_cancellation_deadline_hours: int = 24
    min_adjustment_comment_length: int = 5
    max_division: int = 13
    seed_on_startup: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            data_dir=os.getenv("DATA_DIR") or None,
            default_cancellation_deadline_hours=int(os.getenv("DEFAULT_CANCELLATION_DEADLINE_HOURS", "24")),
            min_adjustment_comment_length=int(os.getenv("MIN_ADJUSTMENT_COMMENT_LENGTH", "5")),
            max_division=int(os.getenv("MAX_DIVISION", "13")),
            seed_on_startup=_flag("SEED_ON_STARTUP", "true"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
