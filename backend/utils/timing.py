import time
import asyncio
import functools
import logging

logger = logging.getLogger("timing")


def _report(name: str, start: float) -> None:
    elapsed_ms = (time.perf_counter() - start) * 1000.0
    logger.info(f"[timing] {name} took {elapsed_ms:.2f} ms")


def timeit(label: str = None):
    """
    Log how long a service call or route handler takes (sync or async).

    Usage:
        @timeit("complete_login")
        async def complete_login(...):
            ...
    """

    def _decorate(func):
        name = label or getattr(func, "__qualname__", getattr(func, "__name__", "function"))

        if asyncio.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _aw(*args, **kwargs):
                start = time.perf_counter()
                try:
                    return await func(*args, **kwargs)
                finally:
                    _report(name, start)

            return _aw

        @functools.wraps(func)
        def _w(*args, **kwargs):
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                _report(name, start)

        return _w

    return _decorate
