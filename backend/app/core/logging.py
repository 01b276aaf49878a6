import logging

from app.core.config import settings


def configure_logging() -> None:
    """Configure the root logger once, level driven by ENVIRONMENT."""
    environment = (settings.ENVIRONMENT or "development").lower()
    if environment in {"development", "test"}:
        log_level = logging.DEBUG
    else:
        log_level = logging.INFO

    # Reloaders and test runners may import us more than once
    if not logging.root.handlers:
        logging.basicConfig(level=log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    logging.getLogger(__name__).debug("Core logging configured (level=%s)", logging.getLevelName(log_level))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
