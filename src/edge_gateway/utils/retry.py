from typing import Callable, Any, Optional
import asyncio
from ..utils.logging import get_logger

logger = get_logger(__name__)


async def retry_call(
    func: Callable[..., Any],
    *args: Any,
    max_retries: int = 2,
    delay: float = 0.1,
    exceptions: tuple = (Exception,),
    **kwargs: Any
) -> Any:
    """
    Await `func` with a bounded number of retries and a fixed pause
    between attempts.

    Serial transactions are cheap and have to finish inside one polling
    tick, so there is no exponential growth here.

    Args:
        func: Coroutine function to call
        max_retries (int): Retries after the first attempt
        delay (float): Pause between attempts in seconds
        exceptions (tuple): Exception types to catch and retry on
    """
    attempt = 0
    last_exception: Optional[Exception] = None

    while attempt <= max_retries:
        try:
            return await func(*args, **kwargs)
        except exceptions as e:
            attempt += 1
            last_exception = e

            if attempt > max_retries:
                logger.debug(
                    f"Max retries ({max_retries}) exceeded for {func.__name__}. "
                    f"Last error: {str(e)}"
                )
                raise

            logger.warning(
                f"Attempt {attempt} failed for {func.__name__}. "
                f"Error: {str(e)}. Retrying in {delay:.2f}s"
            )
            if delay > 0:
                await asyncio.sleep(delay)

    # This should never be reached due to the raise in the loop
    raise last_exception or Exception("Unexpected retry failure")
