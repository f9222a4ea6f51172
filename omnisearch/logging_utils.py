"""Shared logging utilities.

SafeStreamHandler keeps the search API logging when stdout goes away
(uvicorn reloads, detached terminals). File handlers keep receiving records.
"""
import logging

NOISY_LOGGERS = ("aiohttp", "httpx", "httpcore", "openai")


class SafeStreamHandler(logging.StreamHandler):
    """StreamHandler that ignores broken pipe and closed file errors."""

    def emit(self, record):
        try:
            super().emit(record)
        except BrokenPipeError:
            pass  # stdout closed
        except ValueError:
            pass  # I/O operation on closed file


def configure_safe_logging(level=logging.INFO):
    """Configure root logger with SafeStreamHandler.

    Safe to call multiple times (guards against duplicate handlers).

    Args:
        level: Logging level to set (default: INFO)
    """
    logger = logging.getLogger()
    if not any(isinstance(h, SafeStreamHandler) for h in logger.handlers):
        handler = SafeStreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        handler.setLevel(level)
        logger.addHandler(handler)
        # The OpenAI SDK may leave the root logger at WARNING after import.
        if logger.level == logging.NOTSET or logger.level > level:
            logger.setLevel(level)


def quiet_noisy_loggers(level=logging.WARNING):
    """Raise the threshold of chatty HTTP client libraries."""
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level)
