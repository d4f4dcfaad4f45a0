"""
Logging configuration for the command line and job runner.
"""
import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)-5s %(name)s: %(message)s"


def setup_logging(verbose: bool = False, level: Optional[str] = None) -> int:
    """
    Configures root logging.

    INFO by default, DEBUG when verbose. ``level`` (or NODESTACK_LOG_LEVEL)
    overrides both when it names a valid level.

    :return: The level in effect.
    """
    effective = logging.DEBUG if verbose else logging.INFO
    override = level or os.environ.get("NODESTACK_LOG_LEVEL")
    if override:
        named = logging.getLevelName(override.strip().upper())
        if isinstance(named, int):
            effective = named
    logging.basicConfig(format=LOG_FORMAT)
    logging.getLogger().setLevel(effective)
    return effective
