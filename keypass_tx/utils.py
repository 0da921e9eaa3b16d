"""Utility functions."""

import logging
import os
from pathlib import Path
from typing import Optional

from hexbytes import HexBytes

logger = logging.getLogger(__name__)


def normalise_address(address: str) -> str:
    """Nonce cache key for an account.

    Lowercased for both chain families, so that checksummed and
    non-checksummed forms of the same EVM address share a nonce.
    """
    assert isinstance(address, str), f"Expected str address, got {type(address)}"
    return address.strip().lower()


def to_hex(value: bytes | str | HexBytes) -> str:
    """Normalise a hash to a 0x prefixed lowercase hex string."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    assert isinstance(value, str), f"Cannot convert {type(value)} to hex"
    value = value.lower()
    if not value.startswith("0x"):
        value = "0x" + value
    return value


def setup_console_logging(
    default_log_level="warning",
    simplified_logging=False,
    log_file: str | Path = None,
    std_out_log_level: Optional[int] = None,
) -> logging.Logger:
    """Set up coloured log output.

    - Helper function to have nicer logging output in scripts
    - Tune down some noisy dependency library logging

    Log level is read from ``LOG_LEVEL`` environment variable if set.

    :param log_file:
        Output both console and this log file.

    :return:
        Root logger
    """

    level = os.environ.get("LOG_LEVEL", default_log_level).upper()
    numeric_level = getattr(logging, level, None)
    assert numeric_level, f"No level: {level}"

    if not std_out_log_level:
        std_out_log_level = numeric_level

    if simplified_logging:
        fmt = "%(message)s"
    else:
        fmt = "%(asctime)s %(name)-44s %(message)s"
    date_fmt = "%H:%M:%S"

    try:
        # Optional dev dependency
        import coloredlogs

        coloredlogs.install(level=std_out_log_level, fmt=fmt, date_fmt=date_fmt)
    except ImportError:
        # non-ANSI e.g. Docker
        logging.basicConfig(level=std_out_log_level, format=fmt, datefmt=date_fmt)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode="w")
        file_handler.setFormatter(logging.Formatter(fmt))
        file_handler.setLevel(numeric_level)
        logging.getLogger().addHandler(file_handler)

    # Mute noise
    logging.getLogger("web3.providers").setLevel(logging.WARNING)
    logging.getLogger("web3.RequestManager").setLevel(logging.WARNING)
    logging.getLogger("web3.manager").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("websocket").setLevel(logging.WARNING)
    logging.getLogger("substrateinterface").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    return logging.getLogger()
