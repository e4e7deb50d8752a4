import uvicorn
import os
import sys
from logging_config import setup_logging

# Setup logging before importing app
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)

from backend import RedisBackend
from constants import load_settings
from errors import ConfigError, StorageError
from logging_config import get_logger

logger = get_logger(__name__)


def check_startup():
    """Fail fast on bad configuration or unreachable storage, before serving anything."""
    try:
        settings = load_settings()
        RedisBackend.from_settings(settings)
    except (ConfigError, StorageError) as e:
        logger.critical(f"Startup failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    check_startup()
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 8000))
    reload = os.getenv("UVICORN_RELOAD", "false").lower() == "true"
    logger.info(f"Starting chat relay on {host}:{port}")
    uvicorn.run("app:app", host=host, port=port, reload=reload)
