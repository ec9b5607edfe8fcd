#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Logger configuration for scripts and the verbose reconstruction sink.
"""

import logging
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logger(name: str = "pairwise_sfm",
                 level: int = logging.INFO,
                 log_file: Optional[str] = None) -> logging.Logger:
    """Create or reconfigure a named logger.

    The returned logger can be handed to `set_verbose` of the
    reconstruction classes to receive their progress messages.

    Args:
        name: Logger name
        level: Logging level
        log_file: Also write to this file when given

    Returns:
        Configured logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Calling twice must not duplicate output
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='w'))
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger
