import logging
from typing import Dict

from aiogram import Router, F, types
from aiogram.filters import Filter

import config
from mlm_system.services.admin_service import AdminService

logger = logging.getLogger(__name__)

QUEUE_FILTERS = {
    "pending": False,
    "processed": True,
    "all": None,
}


class AdminFilter(Filter):
    async def __call__(self, message: types.Message) -> bool:
        return message.from_user is not None and message.from_user.id in config.ADMINS


class AdminCommands:
    def __init__(self, router: Router, admin_service: AdminService):
        self.router = router
        self.admin_service = admin_service
        self.register_handlers()

    def register_handlers(self):
        """Регистрация всех обработчиков админских команд"""
        self.router.message.register(
            self.handle_admin_command,
            AdminFilter(),
            F.text.startswith('&')
        )

    @staticmethod
    def _format_status(status: Dict) -> str:
        state_icons = {"idle": "💤", "running": "⚙️", "stuck": "🚨"}
        report = (
            f"{state_icons.get(status['state'], '❔')} Cron: {status['state']}\n"
            f"Active: {'yes' if status['active'] else 'no'}\n"
            f"Last run: {status['lastRun'] or 'never'}\n"
            f"Last entry: {status['lastProcessedEntryId'] or '-'}\n"
            f"Pending: {status['pendingCount']}"
        )
        if status.get("lastError"):
            report += f"\n\nLast error:\n{status['lastError']}"
        if status["state"] == "stuck":
            report += "\n\nUse &unlockcron after checking the tree."
        return report

    async def handle_cron(self, message: types.Message):
        """&cron - состояние крона и очереди"""
        status = await self.admin_service.getCronStatus()
        await message.reply(self._format_status(status))

    async def handle_runcron(self, message: types.Message):
        """&runcron - ручной запуск обработки очереди"""
        reply = await message.reply("🔄 Starting matrix cron...")
        result = await self.admin_service.runCronManually()

        if result["success"]:
            await reply.edit_text(
                f"✅ Cron started at {result['startedAt']}\n"
                f"Check progress with &cron"
            )
        else:
            await reply.edit_text(f"⚠️ Cron is already running (state: {result.get('state')})")

    async def handle_unlockcron(self, message: types.Message):
        """&unlockcron - снять блокировку крона"""
        result = await self.admin_service.unlockCron()
        logger.warning(f"Cron unlocked by admin {message.from_user.id}")
        await message.reply(f"🔓 Cron unlocked (was {result['previousState']})")

    async def handle_queue(self, message: types.Message):
        """&queue [pending|processed|all] [page] - список записей очереди"""
        args = message.text.split()[1:]
        mode = args[0].lower() if args else "pending"
        if mode not in QUEUE_FILTERS:
            await message.reply("Usage: &queue [pending|processed|all] [page]")
            return

        page = int(args[1]) if len(args) > 1 and args[1].isdigit() else 1
        listing = await self.admin_service.listQueueEntries(QUEUE_FILTERS[mode], page, 20)

        entries = listing["entries"]
        pagination = listing["pagination"]
        if not entries:
            await message.reply(f"Queue ({mode}) is empty")
            return

        lines = [
            f"#{entry['id']} {entry['username']} L{entry['level']} "
            f"{entry['entryType']} {entry['status']}"
            + (f" ({entry['failureReason']})" if entry["failureReason"] else "")
            for entry in entries
        ]
        await message.reply(
            f"📋 Queue ({mode}), page {pagination['page']}/{pagination['totalPages']}, "
            f"total {pagination['total']}:\n" + "\n".join(lines)
        )

    async def handle_enqueue(self, message: types.Message):
        """&enqueue username level [sponsor] [date] - добавить запись в очередь"""
        args = message.text.split()[1:]
        if len(args) < 2 or not args[1].isdigit():
            await message.reply("Usage: &enqueue username level [sponsor] [YYYY-MM-DDTHH:MM]")
            return

        username, level = args[0], int(args[1])
        sponsor = args[2] if len(args) > 2 and args[2] != "-" else None
        date = args[3] if len(args) > 3 else None

        result = await self.admin_service.createQueueEntry(username, level, date, "manual", sponsor)
        if result["success"]:
            entry = result["entry"]
            await message.reply(f"✅ Entry #{entry['id']} queued for {entry['username']} in level {entry['level']}")
        else:
            await message.reply(f"❌ {result['error']}")

    async def handle_dequeue(self, message: types.Message):
        """&dequeue id - удалить запись из очереди"""
        args = message.text.split()[1:]
        if not args or not args[0].isdigit():
            await message.reply("Usage: &dequeue id")
            return

        result = await self.admin_service.deleteQueueEntry(int(args[0]))
        if result["success"]:
            await message.reply(f"🗑 Entry #{result['entryId']} deleted")
        else:
            await message.reply(f"❌ {result['error']}")

    async def handle_levels(self, message: types.Message):
        """&levels - уровни матрицы"""
        result = await self.admin_service.listLevels()
        if not result["levels"]:
            await message.reply("No matrix levels configured")
            return

        lines = [
            f"{'🟢' if level['isActive'] else '⚪️'} L{level['level']} {level['name'] or ''} "
            f"{level['width']}x{level['depth']} price {level['price']}, "
            f"cycle {level['maxPositions']}, open {level['positionsFilled']}, placed {level['placed']}"
            for level in result["levels"]
        ]
        await message.reply("📊 Matrix levels:\n" + "\n".join(lines))

    async def handle_admin_command(self, message: types.Message):
        """Обработчик админских команд"""
        parts = message.text[1:].split()
        if not parts:
            return

        command = parts[0].lower()
        logger.info(f"Processing admin command: {command}")

        handlers = {
            "cron": self.handle_cron,
            "runcron": self.handle_runcron,
            "unlockcron": self.handle_unlockcron,
            "queue": self.handle_queue,
            "enqueue": self.handle_enqueue,
            "dequeue": self.handle_dequeue,
            "levels": self.handle_levels,
        }

        handler = handlers.get(command)
        if handler is None:
            await message.reply(f"Unknown command: {command}")
            return

        try:
            await handler(message)
        except Exception as e:
            error_msg = f"❌ Command {command} failed: {str(e)}"
            logger.error(error_msg, exc_info=True)
            await message.reply(error_msg)


def setup_admin_commands(dp, admin_service: AdminService) -> AdminCommands:
    router = Router(name="admin_commands")
    admin_commands = AdminCommands(router, admin_service)
    dp.include_router(router)

    logger.info("Admin commands initialized")
    return admin_commands
