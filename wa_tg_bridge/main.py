#!/usr/bin/env python3
"""
WhatsApp-Telegram Bridge - Main Entry Point

Mirrors one WhatsApp account into a Telegram forum group: every contact or
group gets its own topic, and replies in a topic go back to WhatsApp.
"""

import asyncio
import argparse
import signal
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List, Optional

from colorlog import ColoredFormatter

from .bridge import BridgeHandlers
from .commands import CommandHandler
from .config import get_config
from .connection import PAIRED_STATE_KEY, ConnectionManager
from .correlator import MessageCorrelator
from .dashboard import build_server, create_app, serve, stop_server
from .database import Database
from .directory import ContactDirectory
from .errors import ConfigError
from .media import MediaStore
from .rate_limiter import RateLimiter
from .scheduler import MessageScheduler, format_outcome
from .telegram import TelegramClient
from .vault import ContentVault
from .whatsapp_bridge import HttpBridgeSession

VERSION = "1.0.0"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
RATE_LIMIT_CLEANUP_SECONDS = 300

# Global state for graceful shutdown
shutdown_event = asyncio.Event()


class RedactingFilter(logging.Filter):
    """Masks the bot token and admin password in log records"""

    def __init__(self, token: Optional[str] = None, password: Optional[str] = None):
        super().__init__()
        self.replacements = []
        if token:
            self.replacements.append((token, "[REDACTED_TOKEN]"))
        if password and len(password) > 3:
            self.replacements.append((password, "[REDACTED]"))

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.replacements:
            return True
        message = record.getMessage()
        redacted = message
        for secret, mask in self.replacements:
            redacted = redacted.replace(secret, mask)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(log_level: str, quiet: bool = False):
    """
    Setup console logging

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR)
        quiet: Suppress all output except errors
    """
    if quiet:
        log_level = "ERROR"

    formatter = ColoredFormatter(
        "%(log_color)s" + LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        reset=True,
        log_colors={
            'DEBUG':    'cyan',
            'INFO':     'green',
            'WARNING':  'yellow',
            'ERROR':    'red',
            'CRITICAL': 'red,bg_white',
        }
    )

    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level.upper()))

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # Request lines carry the bot token in the URL
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def add_file_logging(log_dir: str, redactor: logging.Filter):
    """Rotating combined/error logs, and redaction on every handler"""
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    root = logging.getLogger()

    combined = RotatingFileHandler(Path(log_dir) / "combined.log",
                                   maxBytes=5 * 1024 * 1024, backupCount=10)
    errors = RotatingFileHandler(Path(log_dir) / "error.log",
                                 maxBytes=5 * 1024 * 1024, backupCount=5)
    errors.setLevel(logging.ERROR)

    for handler in (combined, errors):
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)

    for handler in root.handlers:
        handler.addFilter(redactor)


def create_argument_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser with all options"""
    parser = argparse.ArgumentParser(
        description="WhatsApp-Telegram Bridge - mirror WhatsApp chats into Telegram topics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                              Run normally with configs
  %(prog)s --reset-session              Forget the WhatsApp pairing
  %(prog)s --config custom.json         Use custom settings file
  %(prog)s --log-level DEBUG            Enable debug logging
  %(prog)s --no-dashboard               Do not serve /health and /status
  %(prog)s --dry-run                    Test config without connecting

Configuration:
  Edit .env for TELEGRAM_BOT_TOKEN, TELEGRAM_ADMIN_CHAT_ID, ENCRYPTION_KEY
  Edit bridge.json for reconnect, scheduler and media tuning
        """
    )

    # Connection options
    conn_group = parser.add_argument_group('Connection Options')
    conn_group.add_argument(
        '--reset-session',
        action='store_true',
        help='Clear stored WhatsApp credentials before starting'
    )
    conn_group.add_argument(
        '--print-qr',
        action='store_true',
        help='Also print pairing QR codes on the terminal'
    )

    # Database options
    db_group = parser.add_argument_group('Database Options')
    db_group.add_argument(
        '--db-path',
        type=str,
        metavar='PATH',
        help='Custom database path (default: DB_PATH or data/bridge.db)'
    )
    db_group.add_argument(
        '--show-stats',
        action='store_true',
        help='Display database statistics and exit'
    )

    # Configuration options
    config_group = parser.add_argument_group('Configuration Options')
    config_group.add_argument(
        '--config',
        type=str,
        metavar='FILE',
        default='bridge.json',
        help='Path to settings file (default: bridge.json)'
    )
    config_group.add_argument(
        '--env-file',
        type=str,
        metavar='FILE',
        default='.env',
        help='Path to .env file (default: .env)'
    )
    config_group.add_argument(
        '--validate-config',
        action='store_true',
        help='Validate configuration and exit'
    )

    # Service options
    service_group = parser.add_argument_group('Service Options')
    service_group.add_argument(
        '--no-dashboard',
        action='store_true',
        help='Disable the health/status HTTP endpoint'
    )
    service_group.add_argument(
        '--no-scheduler',
        action='store_true',
        help='Do not deliver scheduled messages'
    )

    # Logging options
    log_group = parser.add_argument_group('Logging Options')
    log_group.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Set logging level (overrides .env LOG_LEVEL)'
    )
    log_group.add_argument(
        '--log-dir',
        type=str,
        metavar='DIR',
        help='Directory for combined.log and error.log (default: LOG_DIR or logs)'
    )
    log_group.add_argument(
        '--quiet',
        action='store_true',
        help='Suppress all output except errors'
    )

    # Testing/debugging options
    test_group = parser.add_argument_group('Testing Options')
    test_group.add_argument(
        '--dry-run',
        action='store_true',
        help='Test configuration and Telegram access without connecting to WhatsApp'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {VERSION}'
    )

    return parser


def validate_and_exit(args):
    """Validate configuration and exit"""
    logger = logging.getLogger(__name__)
    try:
        config = get_config(args.config, args.env_file)
        logger.info("✅ Configuration valid")
        logger.info(f"  Admin chat: {config.telegram.admin_chat_id}")
        logger.info(f"  Database: {config.paths.db}")
        logger.info(f"  WhatsApp bridge: {config.whatsapp_bridge.url}")
        logger.info(f"  Reconnect: base {config.reconnect.base_delay_seconds}s, "
                    f"max {config.reconnect.max_attempts} attempts")
        for warning in config.security_warnings():
            logger.warning(warning)
        sys.exit(0)
    except (ConfigError, ValueError) as e:
        logger.error(f"❌ Configuration error: {e}")
        sys.exit(1)


def show_stats_and_exit(args):
    """Display database statistics and exit"""
    logger = logging.getLogger(__name__)
    try:
        db_path = args.db_path or get_config(args.config, args.env_file).paths.db
        db = Database(db_path)
        db.initialize()
        stats = db.get_stats()

        logger.info("Database Statistics:")
        logger.info(f"  Contacts: {stats['contacts']:,} ({stats['muted_contacts']} muted)")
        logger.info(f"  Bridged Messages: {stats['messages']:,}")
        logger.info(f"  Calls: {stats['calls']:,}")
        logger.info(f"  Pending Scheduled: {stats['scheduled_pending']}")

        db.close()
        sys.exit(0)
    except Exception as e:
        logger.error(f"❌ Error: {e}")
        sys.exit(1)


async def periodic_task(name: str, interval_seconds: float, action):
    """Run `action` every interval until shutdown"""
    logger = logging.getLogger(__name__)

    while not shutdown_event.is_set():
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass

        if shutdown_event.is_set():
            break

        try:
            action()
        except Exception as e:
            logger.error(f"Error in {name}: {e}", exc_info=True)


async def route_update(update: Dict, commands: CommandHandler, bridge: BridgeHandlers):
    """Send one Telegram update to the command surface or the reply path"""
    if update.get("callback_query"):
        await commands.handle_callback(update["callback_query"])
        return

    msg = update.get("message")
    if not msg:
        return

    if commands.is_command(msg):
        await commands.handle_command(msg)
    elif msg.get("message_thread_id") or msg.get("reply_to_message"):
        await bridge.handle_telegram_reply(msg)


async def run_service(args):
    """Main service loop"""
    logger = logging.getLogger(__name__)

    try:
        config = get_config(args.config, args.env_file)
    except (ConfigError, ValueError) as e:
        logger.error(f"❌ Configuration error: {e}")
        sys.exit(1)

    if not args.log_level and not args.quiet:
        logging.getLogger().setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    if args.db_path:
        config.paths.db = args.db_path
    config.ensure_directories()
    add_file_logging(args.log_dir or config.paths.logs,
                     RedactingFilter(config.telegram.bot_token, config.security.admin_password))

    for warning in config.security_warnings():
        logger.warning(warning)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_shutdown, sig, None)

    tasks: List[asyncio.Task] = []
    db = None
    telegram = None
    session = None
    connection = None
    scheduler = None
    server = None

    try:
        # Storage
        db = Database(config.paths.db)
        db.initialize()
        logger.info("✅ Database initialized")

        vault = ContentVault(config.security.encryption_key)
        rate_limiter = RateLimiter(config.rate_limit.max_messages_per_minute)
        media = MediaStore(config.paths.media, config.rate_limit.max_media_size_mb)

        # Telegram
        telegram = TelegramClient(config.telegram.bot_token, config.telegram.admin_chat_id, db,
                                  api_base=config.telegram.api_base)
        await telegram.initialize()

        if args.dry_run:
            logger.info("[DRY RUN] Configuration loaded")
            logger.info("[DRY RUN] Database initialized")
            logger.info(f"[DRY RUN] Telegram bot: @{telegram.bot_username}")
            logger.info("[DRY RUN] Would connect to WhatsApp (skipped)")
            logger.info("[DRY RUN] All checks passed")
            return

        # WhatsApp
        session = HttpBridgeSession(config.whatsapp_bridge.url, config.paths.wa_session,
                                    poll_timeout=config.whatsapp_bridge.poll_timeout_seconds)
        if args.reset_session:
            logger.warning("Clearing stored WhatsApp session...")
            session.clear_session_dir()
            db.delete_state(PAIRED_STATE_KEY)

        connection = ConnectionManager(session, db, telegram, config.reconnect,
                                       print_qr=args.print_qr)

        # Bridging core
        directory = ContactDirectory(db, telegram)
        correlator = MessageCorrelator(db)
        bridge = BridgeHandlers(db, directory, correlator, vault, telegram, connection,
                                media, rate_limiter)
        connection.add_listener(bridge)

        async def notify_outcome(outcome):
            await telegram.send_to_admin(format_outcome(outcome))

        scheduler = MessageScheduler(db, send=connection.send_text, notify=notify_outcome,
                                     interval_seconds=config.scheduler.interval_seconds)

        commands = CommandHandler(db, directory, correlator, vault, telegram, connection,
                                  scheduler, media, rate_limiter,
                                  timezone=config.get_timezone(),
                                  media_retention_days=config.media.retention_days)

        # Background tasks
        tasks.append(asyncio.create_task(telegram.poll_updates(
            lambda update: route_update(update, commands, bridge), shutdown_event
        )))
        tasks.append(asyncio.create_task(periodic_task(
            "media cleanup", config.media.cleanup_interval_hours * 3600,
            lambda: media.cleanup_old_files(config.media.retention_days),
        )))
        tasks.append(asyncio.create_task(periodic_task(
            "rate limiter cleanup", RATE_LIMIT_CLEANUP_SECONDS, rate_limiter.cleanup,
        )))

        if config.dashboard.enabled and not args.no_dashboard:
            server = build_server(create_app({
                "whatsapp": lambda: "connected" if connection.is_ready else connection.state.value,
                "telegram": lambda: telegram.is_ready,
                "scheduler": lambda: scheduler.is_running,
                "database": lambda: db.conn is not None,
            }), config.dashboard.host, config.dashboard.port)
            tasks.append(asyncio.create_task(serve(server)))
            logger.info(f"Dashboard on http://{config.dashboard.host}:{config.dashboard.port}")

        if not args.no_scheduler:
            scheduler.start()

        # Reconnect a saved session, otherwise wait for /login
        if session.has_credentials() or connection.is_paired:
            await connection.start()
        else:
            await telegram.send_to_admin(
                "🤖 <b>Bridge is online!</b>\n\n"
                "No WhatsApp session found. Use /login to connect."
            )

        logger.info("=" * 60)
        logger.info("🚀 WhatsApp-Telegram Bridge is now running")
        logger.info("=" * 60)
        logger.info(f"  Telegram bot: @{telegram.bot_username}")
        logger.info(f"  Forum group: {telegram.forum_group_id or 'not set (use /setgroup)'}")
        logger.info(f"  WhatsApp bridge: {config.whatsapp_bridge.url}")
        logger.info(f"  Scheduler: {'Enabled' if scheduler.is_running else 'Disabled'}")
        logger.info("=" * 60)
        logger.info("Press Ctrl+C to stop")

        await shutdown_event.wait()
        logger.info("Shutting down...")

    except Exception as e:
        logger.error(f"❌ Fatal error: {e}", exc_info=True)
        sys.exit(1)

    finally:
        stop_server(server)
        if scheduler:
            scheduler.stop()
        if connection:
            await connection.stop()
        if session:
            await session.close()

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if telegram:
            await telegram.close()
        if db:
            db.close()
        logger.info("✅ Shutdown complete")


def handle_shutdown(signum, frame):
    """Handle shutdown signals"""
    logger = logging.getLogger(__name__)
    logger.info(f"Received signal {signum}")
    shutdown_event.set()


def main():
    """Main entry point"""
    parser = create_argument_parser()
    args = parser.parse_args()

    setup_logging(args.log_level or "INFO", args.quiet)
    logger = logging.getLogger(__name__)

    if args.validate_config:
        validate_and_exit(args)

    if args.show_stats:
        show_stats_and_exit(args)

    try:
        asyncio.run(run_service(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(130)


if __name__ == "__main__":
    main()
