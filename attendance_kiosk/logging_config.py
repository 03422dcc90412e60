"""
Logging configuration for the attendance kiosk.

Provides structured logging with device context.
"""

import logging
import sys


class DeviceContextFilter(logging.Filter):
    """Add device context to log records."""

    def __init__(self, device_code: str):
        super().__init__()
        self.device_code = device_code

    def filter(self, record: logging.LogRecord) -> bool:
        record.device_code = self.device_code
        return True


def setup_logging(device_code: str, debug: bool = False) -> None:
    """
    Configure logging for the kiosk.

    Args:
        device_code: Device code for log context ('-' before registration)
        debug: Enable debug level logging
    """
    level = logging.DEBUG if debug else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(
        '[%(levelname)s] [device=%(device_code)s] %(message)s'
    ))
    console_handler.addFilter(DeviceContextFilter(device_code or '-'))

    root_logger.addHandler(console_handler)

    # werkzeug logs every status poll otherwise
    logging.getLogger('werkzeug').setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
