import sys

import jax
from loguru import logger


def pytest_sessionstart(session):
    """Enable JAX 64-bit mode and keep solver logging at warning level."""
    jax.config.update("jax_enable_x64", True)
    logger.remove()
    logger.add(sys.stderr, level="WARNING")
