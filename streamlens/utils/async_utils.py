"""
Helpers to run blocking calls from the asyncio pipeline
"""

import asyncio
from functools import partial
from typing import Any, Callable


async def run_blocking(func: Callable, *args, **kwargs) -> Any:
    """
    Run a blocking call without blocking the event loop.
    Offloads execution to the running event loop's default executor.

    :param func: The blocking callable.
    :param args: Positional arguments passed to func.
    :param kwargs: Keyword arguments passed to func.
    :return: The callable's result.
    """
    # Web3 HTTP, SQL, and requests calls are synchronous.
    # Use run_in_executor so the caller can await completion
    # while polling and other tasks keep running.
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(func, *args, **kwargs))
