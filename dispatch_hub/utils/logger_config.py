import logging
import logging.config
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Courier API calls and webhook parsing log here so provider traffic can be
# read apart from order and stock activity.
COURIER_LOGGER = "dispatch_hub.couriers"
CRON_LOGGER = "dispatch_hub.cron"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _rotating_handler(path: Path, max_mb: int, level: str) -> dict:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "filename": str(path),
        "maxBytes": 1024 * 1024 * max_mb,
        "backupCount": 5,
        "formatter": "verbose",
        "level": level,
    }


def setup_logger(name: str = "dispatch_hub", log_dir: Path | None = None):
    """Configure application logging"""

    # Create base log directory
    log_dir = log_dir or Path(__file__).parent.parent.parent / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    # Create log file path, one per channel: dispatch_hub.couriers -> couriers.log
    log_file = log_dir / f"{name.rsplit('.', 1)[-1]}.log"

    # Create logger instance
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)

    # Check if logger already has handlers to avoid duplicates
    if not logger.handlers:
        # Console Handler
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(console_handler)

        # File Handler
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=1024 * 1024,  # 1MB
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)

        # Channels print through their own console handler, not the parent's
        if name != "dispatch_hub":
            logger.propagate = False

    return logger


def configure_production_logging(log_dir: str = "/var/log/dispatch_hub"):
    """Configure production logging settings"""

    # Create logs directory if it doesn't exist
    base = Path(log_dir)
    base.mkdir(parents=True, exist_ok=True)

    # Define logging configuration
    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "verbose": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - [%(process)d] - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            }
        },
        "handlers": {
            "file": _rotating_handler(base / "app.log", 10, "INFO"),
            "cron": _rotating_handler(base / "cron.log", 10, "INFO"),
            # Webhook bursts are noisy; keep more history per file
            "couriers": _rotating_handler(base / "couriers.log", 25, "INFO"),
            # Failed bookings and stock errors from every channel
            "error": _rotating_handler(base / "error.log", 10, "ERROR"),
        },
        "loggers": {
            "dispatch_hub": {
                "handlers": ["file", "error"],
                "level": "INFO",
                "propagate": True,
            },
            CRON_LOGGER: {
                "handlers": ["cron", "error"],
                "level": "INFO",
                "propagate": False,
            },
            COURIER_LOGGER: {
                "handlers": ["couriers", "error"],
                "level": "INFO",
                "propagate": False,
            },
        },
    }

    # Apply configuration
    logging.config.dictConfig(logging_config)
