import functools
import time

from loguru import logger


def safe_job_wrapper(func):
    """
    Decorator for scheduled async jobs.

    Features:
    - Logs job name on entry and duration on exit
    - Logs exceptions with traceback instead of letting them kill the job
    - Preserves function metadata; returns None when the job failed
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        func_name = func.__name__
        logger.debug(f"Job {func_name} started")
        started = time.monotonic()

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            logger.opt(exception=True).error(
                f"Job {func_name} failed: {type(e).__name__}: {e}"
            )
            return None

        logger.debug(f"Job {func_name} finished in {time.monotonic() - started:.2f}s")
        return result

    return wrapper
