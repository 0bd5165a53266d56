import logging
import os
import sys
from datetime import datetime
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

NOISY_LOGGERS = ["httpx", "httpcore", "openai", "chromadb", "pymongo", "urllib3", "sentence_transformers"]


class ConsoleFormatter(logging.Formatter):
    """HH:MM:SS [LVL] component: message"""

    LEVELS = {
        "DEBUG": "DBG",
        "INFO": "INF",
        "WARNING": "WRN",
        "ERROR": "ERR",
        "CRITICAL": "CRT",
    }

    def format(self, record: logging.LogRecord) -> str:
        level = self.LEVELS.get(record.levelname, record.levelname[:3])
        component = record.name.split(".")[-1]
        time_str = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        msg = f"{time_str} [{level}] {component}: {record.getMessage()}"
        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)
        return msg


def setup_logging(level: Optional[str] = None) -> None:
    """
    Cấu hình logging cho process (gọi một lần khi khởi động API).
    Level lấy từ LOG_LEVEL trong .env nếu không truyền vào.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()

    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(ConsoleFormatter())
    root.addHandler(console)

    for lib in NOISY_LOGGERS:
        logging.getLogger(lib).setLevel(logging.WARNING)
