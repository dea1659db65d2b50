import logging
import os

from llmsh.config.loader import LoggingConfig


def setup_logging(config: LoggingConfig, console: bool = False) -> None:
    """Setup logging configuration.

    Args:
        config: Logging section of the settings
        console: Also log to stderr. Off for request commands, whose stdout
            and stderr belong to the zsh plugin.
    """
    level = getattr(logging, config.level.upper())
    handlers = []

    try:
        log_dir = os.path.dirname(config.file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(config.file))
    except OSError:
        # An unwritable log location must not break the shell.
        handlers.append(logging.NullHandler())

    if console:
        handlers.append(logging.StreamHandler())

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )
