import os
from typing import Any
from pathlib import Path

# Paths
PROJECT_ROOT_DIR = Path(__file__).parent.parent.parent.resolve()

DATA_DIR = PROJECT_ROOT_DIR / "data"
STAGING_DIR = DATA_DIR / "staging"

CONFIG_BASE_DIRECTORY_PATH = Path(os.getenv("EXCHANGE_CONFIG_DIR", PROJECT_ROOT_DIR / "configs" / "sources"))
LOG_FOLDER = PROJECT_ROOT_DIR / "logs"

os.makedirs(LOG_FOLDER, exist_ok=True)

# Extraction defaults
DEFAULT_PARALLELISM = 1
DEFAULT_FETCH_SIZE = 1000
READER_QUEUE_SIZE = 8
STAGING_SEGMENT_ROWS = 100_000

# Seed the target store feeds into MurmurHash2-64A for string vertex ids
VID_HASH_SEED = 0xC70F6907

# System Columns
SYSTEM_COL_PARTITION_ID = "__partition_id"


# Logging Configuration

LOGGING_CONFIG: dict[str, Any] = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s"
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
            "level": "INFO",
        },
        "rotating_file": {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "standard",
            "level": "DEBUG",
            "filename": str(LOG_FOLDER / "exchange.log"),
            "maxBytes": 10485760,  # 10MB
            "backupCount": 5,
            "encoding": "utf8",
        },
    },
    "loggers": {
        "": {  # root logger
            "handlers": ["console", "rotating_file"],
            "level": "DEBUG",
            "propagate": True
        },
    }

}
