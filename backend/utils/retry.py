import asyncio
import random
from functools import wraps
from typing import Any, Callable, Optional, Tuple, Type

import httpx

from utils.logger import get_logger

logger = get_logger("retry")

DEFAULT_RETRYABLE_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
    ConnectionError,
    asyncio.TimeoutError,
)


class RetryConfig:
    """Configuration for retry behavior"""

    def __init__(
        self,
        max_attempts: int = 4,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Tuple[Type[BaseException], ...] = DEFAULT_RETRYABLE_EXCEPTIONS,
        retryable_status_codes: Tuple[int, ...] = (429, 500, 502, 503, 504),
    ):
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions
        self.retryable_status_codes = retryable_status_codes


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Exponential backoff with optional jitter"""
    delay = min(config.base_delay * (config.exponential_base**attempt), config.max_delay)
    if config.jitter:
        delay = delay * (0.5 + random.random())
    return delay


def is_retryable_error(error: BaseException, config: RetryConfig) -> bool:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in config.retryable_status_codes
    return isinstance(error, config.retryable_exceptions)


def with_retry(config: Optional[RetryConfig] = None):
    """Decorator for async functions with retry logic"""
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(config.max_attempts):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if not is_retryable_error(e, config):
                        raise
                    if attempt >= config.max_attempts - 1:
                        logger.error(
                            "All retry attempts exhausted",
                            function=func.__name__,
                            attempts=config.max_attempts,
                            error=str(e),
                        )
                        raise
                    delay = calculate_delay(attempt, config)
                    logger.warning(
                        "Retrying after error",
                        function=func.__name__,
                        attempt=attempt + 1,
                        max_attempts=config.max_attempts,
                        delay=delay,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator


class RetryableClient:
    """httpx client wrapper with automatic retry"""

    def __init__(self, client: httpx.AsyncClient, config: Optional[RetryConfig] = None):
        self.client = client
        self.config = config or RetryConfig()

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        for attempt in range(self.config.max_attempts):
            try:
                response = await self.client.request(method, url, **kwargs)
                response.raise_for_status()
                return response
            except Exception as e:
                if not is_retryable_error(e, self.config) or attempt >= self.config.max_attempts - 1:
                    raise

                delay = calculate_delay(attempt, self.config)
                if isinstance(e, httpx.HTTPStatusError) and e.response.status_code == 429:
                    retry_after = e.response.headers.get("Retry-After")
                    if retry_after:
                        try:
                            delay = max(delay, float(retry_after))
                        except ValueError:
                            pass

                logger.warning(
                    "Retrying HTTP request",
                    method=method,
                    url=url,
                    attempt=attempt + 1,
                    delay=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)
        raise RuntimeError("unreachable")

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def get_json(self, url: str, **kwargs) -> Any:
        response = await self.get(url, **kwargs)
        return response.json()

    async def aclose(self) -> None:
        await self.client.aclose()
