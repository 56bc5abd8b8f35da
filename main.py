import asyncio
import logging
import sys

from data.bot_loader import create_bot, create_dispatcher, create_scheduler, setup_logging
from data.config import config
from handlers.get_video import video_router
from misc.pipeline import DeliveryPipeline
from misc.queue_manager import ResourceGovernor
from misc.video_types import shutdown_executor as shutdown_image_executor
from tiktok_api import CookieStore, HybridApiExtractor, MediaTransfer, TikTokClient, WebExtractor


def build_pipeline(bot) -> DeliveryPipeline:
    governor = ResourceGovernor.get_instance()
    cookie_store = CookieStore.initialize(config["transfer"]["cookies_file"])

    primary = WebExtractor(governor.get_session, cookies=config["transfer"]["ytdlp_cookies"] or None)
    secondary = None
    if config["api"]["api_link"]:
        secondary = HybridApiExtractor(config["api"]["api_link"], governor.get_session)
    else:
        logging.warning('API_LINK is not set, V2 fallback is disabled')

    client = TikTokClient(primary, secondary)
    transfer = MediaTransfer(governor.get_session, cookie_store)
    return DeliveryPipeline(bot, governor, client, transfer)


async def main() -> None:
    setup_logging()
    if not config["bot"]["token"]:
        logging.critical('BOT_TOKEN is not set')
        sys.exit(1)

    bot = create_bot()
    dp = create_dispatcher()
    scheduler = create_scheduler()

    pipeline = build_pipeline(bot)
    pipeline.governor.start_sweeper(scheduler)
    scheduler.start()

    dp.include_routers(video_router)
    bot_info = await bot.get_me()
    logging.info(f'{bot_info.full_name} [@{bot_info.username}, id:{bot_info.id}]')
    try:
        await dp.start_polling(bot, pipeline=pipeline)
    finally:
        scheduler.shutdown(wait=False)
        await pipeline.wait_background()
        await pipeline.governor.close()
        WebExtractor.shutdown_executor()
        shutdown_image_executor()
        await bot.session.close()


if __name__ == "__main__":
    asyncio.run(main())
