from .logger import setup_logging, get_logger, roster_logger, optimizer_logger, scanner_logger
from .retry import RetryConfig, with_retry, RetryableClient
from .utcnow import utcnow

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",
    "roster_logger",
    "optimizer_logger",
    "scanner_logger",

    # Retry
    "RetryConfig",
    "with_retry",
    "RetryableClient",

    # Time
    "utcnow",
]
