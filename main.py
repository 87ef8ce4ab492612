# main.py
import sys
import asyncio
import logging


def setup_logging():
    """Configure logging before anything else, with file rotation"""
    from core.config_manager import get_app_data_dir, get_config
    from logging.handlers import RotatingFileHandler

    config = get_config()

    logs_dir = get_app_data_dir() / "logs"
    logs_dir.mkdir(exist_ok=True)

    log_file = logs_dir / config.get('logging.file', 'streamproxy.log')

    # Rotating handler: 5MB max, 5 backups
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=config.get('logging.max_bytes', 5 * 1024 * 1024),
        backupCount=config.get('logging.backup_count', 5),
        encoding='utf-8'
    )
    file_handler.setFormatter(
        logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )

    level = getattr(logging, str(config.get('logging.level', 'INFO')).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        handlers=[console_handler, file_handler]
    )


setup_logging()
logger = logging.getLogger(__name__)


def setup_exception_handler():
    """Log anything that escapes the event loop"""

    def exception_handler(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return

        logger.critical("Unhandled exception:",
                        exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = exception_handler


def main():
    setup_exception_handler()
    logger.info("🚀 Starting StreamProxy")

    from core.proxy_manager import get_proxy_manager
    proxy_manager = get_proxy_manager()

    try:
        asyncio.run(proxy_manager.run_forever())
    except KeyboardInterrupt:
        logger.info("🛑 Shutdown requested")
    except RuntimeError as e:
        logger.critical(f"❌ {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
