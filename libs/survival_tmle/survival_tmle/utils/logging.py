"""Logging setup for survival TMLE."""

import logging
import sys

from ..core.config import Environment, SurvivalTMLESettings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(settings: SurvivalTMLESettings | None = None) -> None:
    """Set up logging configuration."""
    if settings is None:
        settings = SurvivalTMLESettings()

    # Configure log level based on environment
    if settings.log_level is not None:
        log_level = getattr(logging, settings.log_level)
    elif settings.environment == Environment.DEVELOPMENT:
        log_level = logging.DEBUG
    else:
        log_level = logging.INFO

    logging.basicConfig(
        level=log_level, format=LOG_FORMAT, handlers=[logging.StreamHandler(sys.stdout)]
    )

    # Solver chatter from the nuisance libraries stays quiet outside development
    logging.getLogger("statsmodels").setLevel(
        logging.INFO
        if settings.environment == Environment.DEVELOPMENT
        else logging.WARNING
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)
