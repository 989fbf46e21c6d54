"""
Config loading via Pydantic v2 and python-dotenv.

Загрузка конфигурации из .env: бот, сессия клиента, параметры уведомлений.
"""

from __future__ import annotations

from functools import lru_cache
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, computed_field


BASE_DIR = Path(__file__).resolve().parent.parent
# DATA_DIR=/app/data позволяет держать кэш уведомлений на volume
DATA_DIR = Path(os.environ.get("DATA_DIR", str(BASE_DIR)))
ENV_PATH = BASE_DIR / ".env"

if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=False)


class BotConfig(BaseModel):
    token: str
    admin_chat_id: int


class SessionConfig(BaseModel):
    """Identity of the client session the notifications are scoped to."""

    user_id: str = ""
    user_name: str = ""
    role: str = Field(default="admin", description="Raw role string: student, teacher, lecturer, admin.")


class NotificationConfig(BaseModel):
    dedup_ttl_hours: float = Field(default=24, gt=0)
    sweep_interval: float = Field(default=3600, gt=0)
    initial_sweep_delay: float = Field(default=1, ge=0)
    delivery_interval: float = Field(default=1.0, ge=0)
    fetch_attempts: int = Field(default=3, ge=1)
    fetch_retry_delay: float = Field(default=1.0, ge=0)
    repeat_window: float = Field(default=10, ge=0)
    cache_path: Optional[Path] = Field(default_factory=lambda: DATA_DIR / "notification_cache.json")

    @computed_field  # type: ignore[misc]
    @property
    def dedup_ttl_seconds(self) -> float:
        return self.dedup_ttl_hours * 3600


class StoreConfig(BaseModel):
    seed_path: Optional[Path] = None


class LoggingConfig(BaseModel):
    logs_dir: Path = Field(default_factory=lambda: BASE_DIR / "logs")
    log_level: str = Field(default="INFO")
    max_bytes: int = Field(default=5 * 1024 * 1024)  # 5 MB
    backup_count: int = Field(default=5)


class Settings(BaseModel):
    bot: BotConfig
    session: SessionConfig = SessionConfig()
    notifications: NotificationConfig = NotificationConfig()
    store: StoreConfig = StoreConfig()
    logging: LoggingConfig = LoggingConfig()


@lru_cache
def get_settings() -> Settings:
    """
    Load and cache settings.

    Raises ValidationError if .env is incomplete or invalid.
    """
    env = os.environ

    def _optional_path(value: str | None) -> Optional[Path]:
        if not value:
            return None
        return Path(value)

    try:
        bot = BotConfig(
            token=env.get("BOT_TOKEN", ""),
            admin_chat_id=int(env.get("ADMIN_CHAT_ID", "0") or "0"),
        )
        session = SessionConfig(
            user_id=env.get("SESSION_USER_ID", ""),
            user_name=env.get("SESSION_USER_NAME", ""),
            role=env.get("SESSION_ROLE", "admin"),
        )
        notifications = NotificationConfig(
            dedup_ttl_hours=float(env.get("DEDUP_TTL_HOURS", "24")),
            sweep_interval=float(env.get("SWEEP_INTERVAL", "3600")),
            initial_sweep_delay=float(env.get("INITIAL_SWEEP_DELAY", "1")),
            delivery_interval=float(env.get("DELIVERY_INTERVAL", "1.0")),
            fetch_attempts=int(env.get("FETCH_ATTEMPTS", "3")),
            fetch_retry_delay=float(env.get("FETCH_RETRY_DELAY", "1.0")),
            repeat_window=float(env.get("REPEAT_WINDOW", "10")),
        )
        store = StoreConfig(seed_path=_optional_path(env.get("STORE_SEED_PATH")))
        logging_cfg = LoggingConfig(log_level=env.get("LOG_LEVEL", "INFO"))
        return Settings(
            bot=bot,
            session=session,
            notifications=notifications,
            store=store,
            logging=logging_cfg,
        )
    except ValidationError:
        # Пробрасываем дальше, чтобы верхний уровень мог вывести аккуратную ошибку
        raise


__all__ = ["Settings", "get_settings", "BASE_DIR", "DATA_DIR"]
