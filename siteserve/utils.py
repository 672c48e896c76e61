"""
Some utilities for common tasks.
"""

from ._app import normalize_response
from ._compat import sleep
from .assets import Asset

__all__ = ["sleep", "normalize_response", "make_static_handler"]


def make_static_handler(asset):
    """
    Get a coroutine function that serves a single in-memory asset, with
    HTTP cache validation based on the fingerprint of the asset. Usage:

    .. code-block:: python

        handler = make_static_handler(table["static/style.css"])

        async def some_handler(request):
            return await handler(request)

    Handler behavior:

    * The ``etag`` header is set to the fingerprint of the asset body.
    * If the request has an ``if-none-match`` header that is exactly equal
      to the etag, the handler responds with 304 and no body (indicating
      to the client that the resource is still up-to-date). Only the
      ``etag`` header is sent along.
    * Otherwise, the asset body is returned with status 200, with the
      ``content-type`` and ``etag`` headers.

    There is no support for ranges or compression; assets are small and
    fixed for the lifetime of the process.
    """

    if not isinstance(asset, Asset):
        raise TypeError("make_static_handler() expects an Asset")

    content_type = asset.content_type
    etag = asset.etag
    body = asset.data

    async def static_handler(request):
        # If client already has the exact asset, send confirmation now
        if request.headers.get("if-none-match") == etag:
            return 304, {"etag": etag}, b""
        return 200, {"content-type": content_type, "etag": etag}, body

    return static_handler
