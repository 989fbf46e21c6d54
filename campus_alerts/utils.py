"""
Utility helpers: logging setup and retries for store reads.

Вспомогательные функции: логирование с ротацией и повтор чтений из хранилища.
"""

from __future__ import annotations

import asyncio
import logging
from logging.handlers import RotatingFileHandler
from typing import Any, Awaitable, Callable, TypeVar

from .config import LoggingConfig, get_settings


T = TypeVar("T")

# Болтливые библиотеки, которым достаточно WARNING
_NOISY_LOGGERS = ("aiogram.event", "aiogram.dispatcher", "aiohttp.access")


def setup_logging(logging_cfg: LoggingConfig | None = None, filename: str = "campus_alerts.log") -> None:
    """
    Configure application-wide logging with rotation.

    Настраивает логирование в файл с ротацией и вывод в консоль.
    """
    if logging_cfg is None:
        logging_cfg = get_settings().logging

    logging_cfg.logs_dir.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    file_handler = RotatingFileHandler(
        logging_cfg.logs_dir / filename,
        maxBytes=logging_cfg.max_bytes,
        backupCount=logging_cfg.backup_count,
        encoding="utf-8",
    )
    console_handler = logging.StreamHandler()
    for handler in (file_handler, console_handler):
        handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(logging_cfg.log_level.upper())
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


async def call_with_retry(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exceptions: tuple[type[BaseException], ...] = (Exception,),
    **kwargs: Any,
) -> T:
    """
    Await ``func(*args, **kwargs)``, retrying with exponential backoff.

    The last error is re-raised once ``attempts`` calls have failed, so the
    caller decides what "gave up" means.
    """
    delay = base_delay
    for attempt in range(1, attempts + 1):
        try:
            return await func(*args, **kwargs)
        except exceptions as exc:  # type: ignore[misc]
            if attempt >= attempts:
                raise
            logging.getLogger(func.__module__).warning(
                "Retrying %s after error %s (attempt %s/%s, delay %.1fs)",
                getattr(func, "__qualname__", func),
                exc,
                attempt,
                attempts,
                delay,
            )
            await asyncio.sleep(delay)
            delay = min(max_delay, delay * 2)
    raise RuntimeError("call_with_retry needs at least one attempt")


__all__ = ["setup_logging", "call_with_retry"]
