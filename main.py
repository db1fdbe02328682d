import logging
import asyncio
from aiogram import Bot, Dispatcher
from aiogram.exceptions import TelegramNetworkError, TelegramAPIError

from init import get_session, init_tables
from admin_commands import setup_admin_commands
from mlm_system.events.notifications import MatrixNotifier
from mlm_system.services.admin_service import AdminService
from mlm_system.services.cron_service import CronScheduler
from mlm_system.services.level_service import LevelService
import config

logger = logging.getLogger(__name__)


async def setup():
    logger.info("Starting application setup...")

    Session, engine = get_session()
    init_tables(engine)
    logger.info("Database initialized")

    with Session() as session:
        created = await LevelService(session).seedLevels(config.MATRIX_LEVELS)
        if created:
            logger.info(f"Seeded {created} matrix levels from config")

    notifier = MatrixNotifier(Session)
    notifier.setup()

    return Session


async def start_bot(dp: Dispatcher, bot: Bot):
    while True:
        try:
            logger.info("Starting admin bot polling")
            await dp.start_polling(bot)
            break
        except (TelegramNetworkError, TelegramAPIError) as e:
            logger.error(f"Connection error: {e}. Restarting in 5 seconds...")
            await asyncio.sleep(5)


async def start_services(Session):
    """Запуск вспомогательных сервисов"""
    services = []

    scheduler = CronScheduler(Session)
    services.append(asyncio.create_task(
        scheduler.run(),
        name="matrix_cron"
    ))

    return services


async def main():
    """Основная асинхронная функция"""
    services = []
    try:
        Session = await setup()
        services = await start_services(Session)
        logger.info("Application setup completed")

        if config.API_TOKEN:
            bot = Bot(token=config.API_TOKEN)
            dp = Dispatcher()
            setup_admin_commands(dp, AdminService(Session))
            await start_bot(dp, bot)
        else:
            logger.warning("TELEGRAM_API_TOKEN not set, running cron scheduler only")
            await asyncio.gather(*services)

    except Exception as e:
        logger.error(f"Critical error in main: {e}")
        raise
    finally:
        for task in services:
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass


if __name__ == '__main__':
    try:
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logger.info("Matrix engine stopped.")
    except Exception as e:
        logger.critical(f"Unexpected error: {e}")
        raise
