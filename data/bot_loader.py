import logging
from typing import Optional

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.client.session.aiohttp import AiohttpSession
from aiogram.client.telegram import TelegramAPIServer
from aiogram.enums import ParseMode
from aiogram.fsm.storage.memory import MemoryStorage
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from data.config import config


def setup_logging(level: int = logging.INFO):
    """Configure logging for the application."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)-5.5s]  %(message)s",
        handlers=[
            logging.StreamHandler()
        ]
    )
    logging.getLogger('apscheduler.executors.default').setLevel(logging.WARNING)
    logging.getLogger('apscheduler.scheduler').propagate = False
    logging.getLogger('aiogram').setLevel(logging.WARNING)


def create_bot(token: Optional[str] = None) -> Bot:
    """Create and configure a Bot instance."""
    bot_token = token or config["bot"]["token"]
    local_server = AiohttpSession(
        api=TelegramAPIServer.from_base(config["bot"]["tg_server"]),
        timeout=config["transfer"]["upload_timeout"],
    )
    return Bot(
        token=bot_token,
        session=local_server,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML)
    )


def create_dispatcher() -> Dispatcher:
    """Create and configure a Dispatcher instance."""
    return Dispatcher(storage=MemoryStorage())


def create_scheduler() -> AsyncIOScheduler:
    """Create and configure an AsyncIOScheduler instance."""
    return AsyncIOScheduler(
        timezone="Asia/Jakarta",
        job_defaults={"coalesce": True}
    )
