#!/usr/bin/env python3
"""
mcdroplet Telegram Bot

Chat front-end for the Minecraft droplet controller. Only answers in
the configured chat; everything else is ignored.

Commands:
  /start, /help  - Command list
  /ping          - Pong!
  /create        - Create the server droplet (reports again when ready)
  /stop          - Stop the server and delete the droplet
  /status        - Current state, address and droplet ID
  /history       - Recent state transitions
  /force <state> - Override the state (down/starting/up/stopping/weird)

Usage:
  TELEGRAM_BOT_TOKEN=... TELEGRAM_CHAT_ID=... DIGITALOCEAN_TOKEN=... \\
      python -m bot.telegram_bot [config.yml]
"""

import logging
import sys

from telegram import Update
from telegram.ext import (
    Application,
    CommandHandler,
    MessageHandler,
    filters,
    ContextTypes,
)

from droplet.config import load_config
from droplet.controller import DropletController, LifecycleState, ServerStatus
from droplet.errors import ConfigError

logger = logging.getLogger(__name__)

HELP_TEXT = (
    "Minecraft server bot.\n\n"
    "Commands:\n"
    "/create - Start a new server\n"
    "/stop - Stop the server\n"
    "/status - Show server status\n"
    "/history - Show recent status changes\n"
    "/force <state> - Override the status (debug)\n"
    "/ping - Check the bot is alive"
)

STATE_NAMES = ", ".join(s.value for s in LifecycleState)


def format_status(status: ServerStatus) -> str:
    lines = [f"Status: {status.state.value}"]
    if status.ipv4:
        lines.append(f"Address: {status.ipv4}")
    if status.droplet_id is not None:
        lines.append(f"Droplet: {status.droplet_id}")
    return "\n".join(lines)


def _controller(context: ContextTypes.DEFAULT_TYPE) -> DropletController:
    return context.bot_data["controller"]


def _allowed(update: Update, context: ContextTypes.DEFAULT_TYPE) -> bool:
    """Only respond in the configured chat."""
    chat_id = context.bot_data.get("chat_id")
    if chat_id is None or update.effective_chat is None:
        return chat_id is None
    if update.effective_chat.id != chat_id:
        logger.debug("Ignoring message in wrong chat %s", update.effective_chat.id)
        return False
    return True


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /start and /help."""
    if not _allowed(update, context):
        return
    await update.message.reply_text(HELP_TEXT)


async def ping_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not _allowed(update, context):
        return
    await update.message.reply_text("Pong!")


async def create_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /create to start the droplet and report when it is ready."""
    if not _allowed(update, context):
        return
    controller = _controller(context)
    before = controller.get_status()

    ready = await controller.create_server()
    if ready is None:
        after = controller.get_status()
        if before.state is not LifecycleState.DOWN:
            await update.message.reply_text(
                f"Server is not down, refusing to create.\n{format_status(after)}"
            )
        elif before.droplet_id is not None:
            await update.message.reply_text(
                f"Droplet {before.droplet_id} still exists, refusing to create.\n"
                "Use /force weird and then /stop to delete it."
            )
        else:
            await update.message.reply_text("Could not create the server droplet. Try again later.")
        return

    await update.message.reply_text("Creating server droplet. I'll tell you when it's ready.")

    async def _report_ready():
        state = await ready
        status = controller.get_status()
        if state is LifecycleState.UP:
            await update.message.reply_text(f"Server is up!\n{format_status(status)}")
        else:
            await update.message.reply_text(
                f"Server did not come up cleanly.\n{format_status(status)}\n"
                "Use /stop to delete it or /force to override."
            )

    context.application.create_task(_report_ready())


async def stop_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /stop to stop the service and delete the droplet."""
    if not _allowed(update, context):
        return
    controller = _controller(context)
    status = controller.get_status()
    if status.state not in (LifecycleState.UP, LifecycleState.WEIRD):
        await update.message.reply_text(
            f"Server is not up, refusing to stop.\n{format_status(status)}"
        )
        return

    await update.message.reply_text("Stopping server...")

    # Teardown waits on SSH and the API; run it off the update queue
    async def _report_stopped():
        if await controller.stop_server():
            await update.message.reply_text("Server stopped.")
        else:
            await update.message.reply_text(
                f"Server did not stop cleanly.\n{format_status(controller.get_status())}"
            )

    context.application.create_task(_report_stopped())


async def status_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not _allowed(update, context):
        return
    await update.message.reply_text(format_status(_controller(context).get_status()))


async def history_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not _allowed(update, context):
        return
    entries = _controller(context).get_history(limit=10)
    if not entries:
        await update.message.reply_text("No status changes yet.")
        return
    lines = [
        f"{e['at'][11:19]} {e['from_state']} -> {e['to_state']}"
        f"{' (forced)' if e['forced'] else ''}: {e['reason']}"
        for e in entries
    ]
    await update.message.reply_text("\n".join(lines))


async def force_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /force <state>, a debug override."""
    if not _allowed(update, context):
        return
    if len(context.args) != 1:
        await update.message.reply_text(f"Usage: /force <state> ({STATE_NAMES})")
        return
    try:
        state = _controller(context).force_status(context.args[0].lower())
    except ValueError:
        await update.message.reply_text(f"Unknown state {context.args[0]!r}. Use one of: {STATE_NAMES}")
        return
    await update.message.reply_text(f"Status forced to {state.value}.")


async def unknown_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not _allowed(update, context):
        return
    text = (update.message.text or "").strip()
    logger.info("Ignoring unknown command %s", text)
    await update.message.reply_text(f"⚠️ Unknown command \"{text}\"")


def build_application(token: str, controller: DropletController, chat_id: int = None) -> Application:
    app = Application.builder().token(token).build()
    app.bot_data["controller"] = controller
    app.bot_data["chat_id"] = chat_id

    app.add_handler(CommandHandler(["start", "help"], help_command))
    app.add_handler(CommandHandler("ping", ping_command))
    app.add_handler(CommandHandler("create", create_command))
    app.add_handler(CommandHandler("stop", stop_command))
    app.add_handler(CommandHandler("status", status_command))
    app.add_handler(CommandHandler("history", history_command))
    app.add_handler(CommandHandler("force", force_command))

    # Anything else that looks like a command
    app.add_handler(MessageHandler(filters.COMMAND, unknown_command))
    return app


def main():
    """Start the bot."""
    logging.basicConfig(
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        level=logging.INFO,
    )

    config_path = sys.argv[1] if len(sys.argv) > 1 else "config/mcdroplet.defaults.yml"
    try:
        config = load_config(config_path)
    except ConfigError as e:
        logger.error(f"Bad configuration: {e}")
        sys.exit(1)
    if not config.bot.token:
        logger.error("TELEGRAM_BOT_TOKEN not set")
        sys.exit(1)
    if config.bot.chat_id is None:
        logger.warning("TELEGRAM_CHAT_ID not set, answering in every chat")

    try:
        controller = DropletController.from_config(config)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)

    logger.info("Starting mcdroplet Telegram bot...")
    app = build_application(config.bot.token, controller, config.bot.chat_id)

    logger.info("Bot is running. Polling for messages...")
    app.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
