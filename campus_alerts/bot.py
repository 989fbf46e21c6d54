"""
Telegram notification sink and bot entrypoint built with aiogram 3.

Основной модуль бота:
- приёмник уведомлений: сообщения уходят в чат администратора
- /start, /stop, /status для управления конвейером уведомлений
- мидлвара, которая пускает только админа по chat_id
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from aiogram import BaseMiddleware, Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.filters import Command
from aiogram.types import Message

from .config import Settings, get_settings
from .orchestrator import NotificationOrchestrator
from .store import MemoryStore
from .utils import setup_logging


logger = logging.getLogger(__name__)


class TelegramSink:
    """
    Fire-and-forget delivery of notification text to one chat.

    An identical message repeated within ``repeat_window`` seconds is dropped.
    """

    def __init__(
        self,
        bot: Bot,
        chat_id: int,
        repeat_window: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.bot = bot
        self.chat_id = chat_id
        self.repeat_window = repeat_window
        self.clock = clock
        self._recent: dict[str, float] = {}

    async def __call__(self, text: str) -> None:
        now = self.clock()
        self._forget_older_than(now - self.repeat_window)
        if text in self._recent:
            logger.debug("Dropping repeated message: %s", text)
            return
        self._recent[text] = now
        try:
            # Текст приходит из хранилища как есть, HTML-разметку бота не применяем
            await self.bot.send_message(chat_id=self.chat_id, text=text, parse_mode=None)
        except Exception as e:  # noqa: BLE001
            logger.warning("Failed to send notification: %s", e)

    def _forget_older_than(self, threshold: float) -> None:
        for text, shown_at in list(self._recent.items()):
            if shown_at <= threshold:
                del self._recent[text]


class AdminOnlyMiddleware(BaseMiddleware):
    """Allow only admin user to interact with bot."""

    def __init__(self, admin_chat_id: int) -> None:
        super().__init__()
        self.admin_chat_id = admin_chat_id

    async def __call__(
        self,
        handler: Callable[[Message, Dict[str, Any]], Awaitable[Any]],
        event: Message,
        data: Dict[str, Any],
    ) -> Any:
        if getattr(event, "chat", None) and event.chat.id != self.admin_chat_id:
            await event.answer("Этот бот предназначен только для владельца.")
            return
        return await handler(event, data)


def build_store(settings: Settings) -> MemoryStore:
    seed_path = settings.store.seed_path
    if seed_path and seed_path.exists():
        return MemoryStore.from_seed_file(seed_path)
    if seed_path:
        logger.warning("Store seed %s not found, starting empty", seed_path)
    return MemoryStore()


def format_status(pipeline: Optional[NotificationOrchestrator]) -> str:
    if pipeline is None:
        return "📊 <b>Уведомления</b>\nСостояние: остановлены"
    st = pipeline.state
    text = (
        f"📊 <b>Уведомления</b>\n"
        f"Состояние: {'запущены' if st.is_running else 'остановлены'}\n"
        f"Изменений получено: {st.changes_seen}\n"
        f"Поставлено в очередь: {st.notifications_enqueued}\n"
        f"Отброшено дублей: {st.notifications_suppressed}\n"
        f"Доставлено: {st.deliveries}\n"
    )
    if st.last_error:
        text += f"Последняя ошибка: <code>{st.last_error}</code>\n"
    return text


def main() -> None:
    """Entry point for running the bot."""
    settings = get_settings()
    setup_logging()

    bot = Bot(
        settings.bot.token,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )
    dp = Dispatcher()
    dp.message.middleware(AdminOnlyMiddleware(settings.bot.admin_chat_id))

    store = build_store(settings)
    sink = TelegramSink(
        bot,
        settings.bot.admin_chat_id,
        repeat_window=settings.notifications.repeat_window,
    )
    # Один конвейер на сессию; /stop его разбирает, /start строит заново
    session: Dict[str, Optional[NotificationOrchestrator]] = {"pipeline": None}

    @dp.message(Command("start"))
    async def cmd_start(message: Message) -> None:
        current = session["pipeline"]
        if current is not None and current.state.is_running:
            await message.answer("Уведомления уже запущены.")
            return
        pipeline = NotificationOrchestrator.from_settings(store, sink, settings)
        session["pipeline"] = pipeline
        await pipeline.start()
        await message.answer("Уведомления запущены ✅")

    @dp.message(Command("stop"))
    async def cmd_stop(message: Message) -> None:
        pipeline = session["pipeline"]
        if pipeline is None:
            await message.answer("Уведомления не запущены.")
            return
        await pipeline.stop()
        await message.answer("Уведомления остановлены ⏹️")

    @dp.message(Command("status"))
    async def cmd_status(message: Message) -> None:
        await message.answer(format_status(session["pipeline"]))

    logger.info("Starting polling")
    asyncio.run(_run_polling(dp, bot, session))


async def _run_polling(
    dp: Dispatcher,
    bot: Bot,
    session: Dict[str, Optional[NotificationOrchestrator]],
) -> None:
    try:
        await dp.start_polling(bot)
    finally:
        pipeline = session["pipeline"]
        if pipeline is not None:
            pipeline.close()
        await bot.session.close()


if __name__ == "__main__":
    main()
