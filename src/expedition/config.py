"""
Engine Configuration

Settings are read from the environment (a local ``.env`` is honoured).
Thresholds that are not meant to be tuned per deployment stay as
module constants.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

# Upload policy (student submissions and authoring attachments)
ALLOWED_UPLOAD_TYPES = {
    "application/pdf": ".pdf",
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}

DEFAULT_UPLOAD_MAX_BYTES = 5 * 1024 * 1024  # 5MB


@dataclass(frozen=True)
class EngineSettings:
    database_url: str = "sqlite:///expeditions.db"
    upload_dir: str = "uploads/expeditions"
    upload_url_prefix: str = "/uploads/expeditions"
    upload_max_bytes: int = DEFAULT_UPLOAD_MAX_BYTES
    reward_max_delivery_attempts: int = 5
    reward_breaker_failures: int = 5
    reward_breaker_recovery_seconds: int = 60
    log_level: str = "INFO"
    roster_file: str | None = None

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            upload_dir=os.getenv("EXPEDITION_UPLOAD_DIR", cls.upload_dir),
            upload_url_prefix=os.getenv("EXPEDITION_UPLOAD_URL_PREFIX", cls.upload_url_prefix),
            upload_max_bytes=int(os.getenv("EXPEDITION_UPLOAD_MAX_BYTES", str(cls.upload_max_bytes))),
            reward_max_delivery_attempts=int(
                os.getenv("REWARD_MAX_DELIVERY_ATTEMPTS", str(cls.reward_max_delivery_attempts))
            ),
            reward_breaker_failures=int(
                os.getenv("REWARD_BREAKER_FAILURES", str(cls.reward_breaker_failures))
            ),
            reward_breaker_recovery_seconds=int(
                os.getenv("REWARD_BREAKER_RECOVERY_SECONDS", str(cls.reward_breaker_recovery_seconds))
            ),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
            roster_file=os.getenv("EXPEDITION_ROSTER_FILE") or None,
        )
