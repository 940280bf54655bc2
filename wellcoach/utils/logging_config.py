"""
Logging setup for the coaching service.

Every pipeline module logs through get_logger(__name__); recoverable events
that belong to a turn go through log_stage so they carry the stage name and
a shortened session id.
"""

import logging
import sys
from typing import Optional

from .config import AppConfig

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# SDK loggers that flood DEBUG output with wire-level detail
QUIET_LOGGERS = ('botocore', 'boto3', 'urllib3', 'httpx', 'httpcore', 'smithy_core', 'smithy_http')


def _level(config: Optional[AppConfig]) -> int:
    if config is None:
        from .config import config as default_config
        config = default_config
    return getattr(logging, config.log_level.upper(), logging.INFO)


def setup_logging(config: Optional[AppConfig] = None) -> None:
    """
    Configure the root logger once, writing to stdout.

    Calling it again only updates the level, so importing the package from
    several entry points does not stack handlers.

    Args:
        config: AppConfig instance, uses default if None
    """
    level = _level(config)
    root = logging.getLogger()
    if not any(getattr(handler, '_wellcoach', False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._wellcoach = True
        root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str, config: Optional[AppConfig] = None) -> logging.Logger:
    """Module logger at the configured level."""
    logger = logging.getLogger(name)
    logger.setLevel(_level(config))
    return logger


def log_stage(logger: logging.Logger, level: int, stage: str, message: str, session_id: Optional[str] = None) -> None:
    """Log a message tagged with the pipeline stage and a shortened session id.

    Args:
        logger: Logger to write to
        level: logging level (e.g. logging.INFO)
        stage: Pipeline stage name (dispatcher, analyzer, ...)
        message: Message text
        session_id: Session identifier, truncated to 8 characters
    """
    session_tag = f'[session:{session_id[:8]}] ' if session_id else ''
    logger.log(level, f'{session_tag}[{stage}] {message}')
