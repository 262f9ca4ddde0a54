import functools
import gzip
import inspect
import logging
import logging.handlers
import os
import shutil
import sys
from gzip import GzipFile
from typing import Callable

from .config import settings

logger = logging.getLogger("hycore")
logger.setLevel(settings.logging.level.upper())
formatter = logging.Formatter(
    "%(asctime)s %(levelname)s [%(module)s:%(funcName)s:%(lineno)d] %(message)s"
)


def rotator(source, dest):
    with open(source, "rb") as f_in:
        with gzip.open(dest + ".gz", "wb") as f_out:
            assert isinstance(f_out, GzipFile)
            shutil.copyfileobj(f_in, f_out)
    os.remove(source)


if settings.logging.to_file:
    logs_dir = settings.logging.file_path
    logs_dir.mkdir(parents=True, exist_ok=True)

    log_file_handler = logging.handlers.TimedRotatingFileHandler(
        logs_dir / "hycore.log", when="midnight"
    )
    log_file_handler.setFormatter(formatter)
    log_file_handler.rotator = rotator
    logger.addHandler(log_file_handler)

log_stream_handler = logging.StreamHandler(sys.stdout)
log_stream_handler.setFormatter(formatter)
logger.addHandler(log_stream_handler)


def log_exception[**P, R](
    prefix: str = "",
    default_return: R | None = None,
) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """
    Decorator that logs and swallows exceptions raised by the wrapped function.

    Meant for fire-and-forget callbacks (event handlers, pump tasks) where an
    exception has nobody to propagate to. Works for sync and async functions.
    The prefix may reference parameters by name, e.g.
    ``@log_exception("terminate {world_id}")``.
    """

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        sig = inspect.signature(func)

        def report(error: Exception, args: tuple, kwargs: dict) -> None:
            try:
                bound = sig.bind(*args, **kwargs)
                bound.apply_defaults()
                arguments = dict(bound.arguments)
            except TypeError as e:
                logger.warning(
                    f"Failed to bind arguments for {func.__qualname__}: {e}",
                    stacklevel=3,
                )
                arguments = {}

            params = ", ".join(f"{k}={v!r}" for k, v in arguments.items())
            args_str = f"[{params}] " if params else ""

            prefix_str = ""
            if prefix:
                try:
                    prefix_str = f"{prefix.format_map(arguments)}: "
                except (KeyError, ValueError, IndexError):
                    prefix_str = f"{prefix}: "

            logger.error(
                f"{args_str}{prefix_str}{type(error).__name__}: {error}",
                exc_info=error,
                stacklevel=3,
            )

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    report(e, args, kwargs)
                    return default_return  # type: ignore[return-value]

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(func)
        def sync_wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                report(e, args, kwargs)
                return default_return  # type: ignore[return-value]

        return sync_wrapper  # type: ignore[return-value]

    return decorator
