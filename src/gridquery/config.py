"""Configuration management for the datatable service."""

import os
import logging
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

PAGING_STYLES = ('limit_offset', 'offset_fetch')


@dataclass
class Config:
    """Service configuration with validation."""
    datasets_path: Optional[str] = None
    max_page_length: int = 100
    default_page_length: int = 10
    query_timeout_seconds: float = 30.0
    paging_style: str = 'limit_offset'
    default_allow: bool = True
    log_level: str = "INFO"

    def __post_init__(self):
        """Validate configuration after initialization."""
        errors = []

        if self.max_page_length < 1:
            errors.append("DATATABLE_MAX_PAGE_LENGTH must be at least 1")

        if not 1 <= self.default_page_length <= max(self.max_page_length, 1):
            errors.append(
                "DATATABLE_DEFAULT_PAGE_LENGTH must be between 1 and DATATABLE_MAX_PAGE_LENGTH"
            )

        if self.query_timeout_seconds <= 0:
            errors.append("DATATABLE_QUERY_TIMEOUT_SECONDS must be positive")

        if self.paging_style not in PAGING_STYLES:
            errors.append(
                f"DATATABLE_PAGING_STYLE must be one of: {', '.join(PAGING_STYLES)}"
            )

        if self.log_level.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            errors.append(f"LOG_LEVEL '{self.log_level}' is not a logging level")

        if errors:
            error_message = "Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            raise ValueError(error_message)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def load_config() -> Config:
    """
    Load configuration from environment variables.

    Loads from .env file if present, then from environment variables.

    Returns:
        Config object with validated settings
    """
    load_dotenv()

    try:
        config = Config(
            datasets_path=os.getenv("DATATABLE_DEFINITIONS_PATH"),
            max_page_length=int(os.getenv("DATATABLE_MAX_PAGE_LENGTH", "100")),
            default_page_length=int(os.getenv("DATATABLE_DEFAULT_PAGE_LENGTH", "10")),
            query_timeout_seconds=float(os.getenv("DATATABLE_QUERY_TIMEOUT_SECONDS", "30")),
            paging_style=os.getenv("DATATABLE_PAGING_STYLE", "limit_offset"),
            default_allow=_env_bool("DATATABLE_DEFAULT_ALLOW", "true"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
        logger.info("Configuration loaded successfully")
        return config
    except ValueError as error:
        logger.error(f"Failed to load configuration: {error}")
        raise


def setup_logging(log_level: str = "INFO"):
    """
    Setup logging configuration.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
