"""Process-wide logging setup. Module loggers live under 'intent-engine.*'."""

import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    logging.getLogger("intent-engine").setLevel(level.upper())
