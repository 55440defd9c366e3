import os
import logging.config
from datetime import datetime

from config import settings


def build_logging_config(log_dir: str, console_level: str = "INFO") -> dict:
    """Build the dictConfig for console and rotating file output"""
    stamp = datetime.now().strftime('%Y%m%d')
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "detailed": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(funcName)s() - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": console_level,
                "formatter": "default",
                "stream": "ext://sys.stdout",
            },
            "file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "DEBUG",
                "formatter": "detailed",
                "filename": os.path.join(log_dir, f"app_{stamp}.log"),
                "maxBytes": 10485760,  # 10MB
                "backupCount": 5,
            },
            "error_file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "ERROR",
                "formatter": "detailed",
                "filename": os.path.join(log_dir, f"errors_{stamp}.log"),
                "maxBytes": 10485760,  # 10MB
                "backupCount": 5,
            },
        },
        "loggers": {
            "": {  # root logger
                "level": "DEBUG",
                "handlers": ["console", "file", "error_file"],
            },
            "socketio": {
                "level": "WARNING",
                "handlers": ["console", "file"],
                "propagate": False,
            },
            "engineio": {
                "level": "WARNING",
                "handlers": ["console", "file"],
                "propagate": False,
            },
            "sqlalchemy.engine": {
                "level": "WARNING",
            },
        },
    }


def setup_logging():
    """Setup logging configuration"""
    os.makedirs(settings.log_dir, exist_ok=True)
    logging.config.dictConfig(build_logging_config(settings.log_dir, settings.log_level))
    logger = logging.getLogger(__name__)
    logger.info("Logging configured successfully")
    return logger
