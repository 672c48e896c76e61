"""
This module provides the few async primitives that we need, so that the
rest of the code does not depend on asyncio directly.
"""

import asyncio


async def sleep(seconds):
    """ An async sleep function. Uses asyncio.
    """
    await asyncio.sleep(seconds)


TimeoutError = asyncio.TimeoutError


async def wait_for(co, timeout):
    """ Wait for the given coroutine to complete, cancelling it when
    it takes longer than ``timeout`` seconds. Raises ``TimeoutError`` in
    that case.
    """
    return await asyncio.wait_for(co, timeout)


def spawn(co):
    """ Schedule a coroutine as an independent task and return the task.
    """
    return asyncio.ensure_future(co)


async def cancel_and_wait(tasks):
    """ Cancel the given tasks and wait until they have all finished.
    """
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


async def run_in_thread(func, *args):
    """ Run a blocking function in the default executor.
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, func, *args)
