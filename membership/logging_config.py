"""Logging setup for the membership service."""
import logging
import os
from typing import Union

_DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_DEFAULT_TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"

# Third-party loggers that are chatty at INFO
_NOISY_MODULES = {
    "stripe": "WARNING",
    "httpx": "WARNING",
    "hpack": "WARNING",
}


def _coerce_level(value: Union[str, int, None], fallback: int) -> int:
    if value is None:
        return fallback
    if isinstance(value, int):
        return value
    candidate = value.strip().upper()
    if candidate.isdigit():
        return int(candidate)
    return getattr(logging, candidate, fallback)


def setup_logging(level: Union[str, int, None] = None) -> None:
    """Configure root logging. Level defaults to LOG_LEVEL env var or INFO."""
    base_level = _coerce_level(level or os.getenv("LOG_LEVEL"), logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_DEFAULT_TEXT_FORMAT, _DEFAULT_DATE_FORMAT))
    logging.basicConfig(level=base_level, handlers=[handler], force=True)
    logging.captureWarnings(True)

    for module_name, module_level in _NOISY_MODULES.items():
        logging.getLogger(module_name).setLevel(_coerce_level(module_level, logging.WARNING))
