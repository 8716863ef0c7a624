from functools import wraps
from typing import Callable, AsyncGenerator
import asyncio

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import DBAPIError
from fastapi import HTTPException, status

from dispatch_hub.utils.exceptions import ProviderBookingFailed
from dispatch_hub.utils.logger_config import setup_logger

logger = setup_logger()


def with_db_retry(max_retries: int = 3, delay: int = 1):
    """
    Decorator for database session dependencies with retry mechanism
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> AsyncGenerator[AsyncSession, None]:
            last_error = None
            for attempt in range(max_retries):
                try:
                    async for session in func(*args, **kwargs):
                        try:
                            yield session
                        except Exception:
                            await session.rollback()
                            raise
                        finally:
                            await session.close()
                    return
                except DBAPIError as e:
                    last_error = e
                    if attempt < max_retries - 1:
                        await asyncio.sleep(delay * (2 ** attempt))
                    continue

            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=f"Database connection failed after {max_retries} attempts"
            ) from last_error
        return wrapper
    return decorator


def with_provider_retry(max_attempts: int = 3, delay: float = 1.0, on_attempt: Callable | None = None):
    """
    Retry a courier API coroutine on retryable ProviderBookingFailed errors,
    sleeping delay * 2**attempt between tries. `on_attempt(attempt, error)` is
    called after every failed try so callers can record it.
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            last_error = None
            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)
                except ProviderBookingFailed as e:
                    last_error = e
                    if on_attempt is not None:
                        on_attempt(attempt + 1, e)
                    if not e.retryable or attempt == max_attempts - 1:
                        break
                    wait = delay * (2 ** attempt)
                    logger.warning(
                        f"Courier call failed (attempt {attempt + 1}/{max_attempts}), retrying in {wait}s: {e.message}"
                    )
                    await asyncio.sleep(wait)
            raise last_error
        return wrapper
    return decorator
