"""Per-module log level for Caps loggers."""
import logging
import os

DEFAULT_MODULE_LEVEL = "WARNING"


def logSetup() -> int:
    """
    Level for module loggers, from LOG_LEVEL (default WARNING).

    Accepts level names or numbers; anything unrecognised falls back to
    WARNING so a typo never silences errors.
    """
    value = os.environ.get("LOG_LEVEL", DEFAULT_MODULE_LEVEL).strip().upper()
    if value.isdigit():
        return int(value)
    level = logging.getLevelName(value)
    return level if isinstance(level, int) else logging.WARNING
