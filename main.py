import logging
import logging.handlers
import sys
from pathlib import Path

from aiohttp import web
from dotenv import load_dotenv

from santa.config import Config
from santa.notifications import NotificationQueue, build_dispatcher
from santa.secret_santa_storage import SecretSantaStore
from santa.utils import CircuitBreaker, HttpManager
from santa.web import create_app

load_dotenv("config.env", override=True)


# ============ SETUP ============
def setup_logging(config: Config) -> logging.Logger:
    logger = logging.getLogger("santa")
    logger.setLevel("DEBUG" if config.DEBUG_MODE else config.LOG_LEVEL.upper())

    # Prevent duplicate handlers
    if logger.handlers:
        return logger

    fmt = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # File handler with rotation
    fh = logging.handlers.RotatingFileHandler(
        config.LOG_FILE, maxBytes=5_000_000, backupCount=5, encoding="utf-8"
    )
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    # Console handler
    ch = logging.StreamHandler(sys.stdout)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    # aiohttp's own access log goes through the same handlers
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    return logger


def build_service(config: Config, logger: logging.Logger) -> web.Application:
    """Wire store, dispatcher, queue and app together"""
    store = SecretSantaStore(Path(config.STATE_FILE), logger=logger.getChild("storage"))

    http_mgr = HttpManager(timeout=config.DELIVERY_TIMEOUT)
    dispatcher = build_dispatcher(config, http_mgr, logger.getChild("mail"))
    queue = NotificationQueue(
        store,
        dispatcher,
        config.APP_URL,
        max_attempts=config.NOTIFY_MAX_ATTEMPTS,
        base_delay=config.NOTIFY_BASE_DELAY,
        timeout=config.DELIVERY_TIMEOUT,
        wishlist_delay=config.WISHLIST_NOTIFY_DELAY,
        breaker=CircuitBreaker(
            name=dispatcher.name,
            failure_threshold=5,
            recovery_timeout=config.NOTIFY_BASE_DELAY or 60,
        ),
        logger=logger.getChild("notify"),
    )

    return create_app(config, store, queue, http_mgr=http_mgr)


def main() -> int:
    try:
        config = Config()
    except RuntimeError as e:
        print(f"Fatal: {e}")
        return 1

    logger = setup_logging(config)
    logger.info("Starting Secret Santa service...")

    try:
        app = build_service(config, logger)
    except OSError as e:
        logger.critical(f"Could not initialise storage: {e}", exc_info=True)
        return 1

    try:
        # run_app handles SIGINT/SIGTERM and runs the cleanup context on the way out
        web.run_app(app, host=config.HOST, port=config.PORT, print=None)
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    except OSError as e:
        logger.critical(f"Server failed: {e}", exc_info=True)
        return 1

    logger.info("Shut down cleanly")
    return 0


if __name__ == "__main__":
    sys.exit(main())
