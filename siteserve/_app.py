"""
This module implements the adapter between a handler function and the
ASGI server. It also owns the lifespan of the background tasks that run
next to request handling.
"""

import sys
import json
import logging
import inspect

from . import _request
from ._request import HttpRequest, DisconnectedError
from ._compat import spawn, cancel_and_wait

# Initialize the logger
logger = logging.getLogger("siteserve")
logger.propagate = False
logger.setLevel(logging.INFO)
_handler = logging.StreamHandler(sys.stderr)
_handler.setFormatter(
    logging.Formatter(
        fmt="[%(levelname)s %(asctime)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )
)
logger.addHandler(_handler)


def normalize_response(response):
    """ Normalize the given response, by always returning a 3-element tuple
    (status, headers, body). The body is not "resolved"; it is safe
    to call this function multiple times on the same response.
    """
    # Get status, headers and body from the response
    if isinstance(response, tuple):
        if len(response) == 3:
            status, headers, body = response
        elif len(response) == 2:
            status = 200
            headers, body = response
        elif len(response) == 1:
            status, headers, body = 200, {}, response[0]
        else:
            raise ValueError(f"Handler returned {len(response)}-tuple.")
    else:
        status, headers, body = 200, {}, response

    # Validate status and headers
    if not isinstance(status, int):
        raise ValueError(f"Status code must be an int, not {type(status)}")
    if not isinstance(headers, dict):
        raise ValueError(f"Headers must be a dict, not {type(headers)}")

    return status, headers, body


def to_asgi(handler, *, background=(), on_error=None):
    """ Convert a request handler (a coroutine function) to an ASGI
    application, which can be served with an ASGI server, such as
    Hypercorn or Uvicorn.

    The ``background`` coroutine functions are started as tasks when the
    server starts up, and cancelled when it shuts down. They are supervised
    independently from request handling: a failing background task is
    logged, and never affects the requests.

    The ``on_error`` function, if given, is applied to the 500 response
    that is sent when the handler fails.
    """

    if not inspect.iscoroutinefunction(handler):
        raise TypeError(
            "siteserve.to_asgi() handler function must be a coroutine function."
        )
    for func in background:
        if not inspect.iscoroutinefunction(func):
            raise TypeError("siteserve.to_asgi() background must be coroutine functions.")

    background = tuple(background)

    async def application_wrapper(scope, receive, send):
        return await siteserve_application(
            handler, background, on_error, scope, receive, send
        )

    application_wrapper.__module__ = handler.__module__
    application_wrapper.__name__ = handler.__name__
    application_wrapper.__doc__ = handler.__doc__
    application_wrapper.siteserve_handler = handler
    return application_wrapper


async def siteserve_application(handler, background, on_error, scope, receive, send):

    if scope["type"] == "http":
        request = HttpRequest(scope, receive, send)
        await _handle_http(handler, request, on_error)
    elif scope["type"] == "lifespan":
        await _handle_lifespan(background, receive, send)
    else:
        logger.warning(f"Unknown ASGI type {scope['type']}")


async def _supervise(func):
    try:
        await func()
    except Exception as err:
        logger.error(f"Background task {func.__name__} failed: {err}", exc_info=err)
    else:
        logger.warning(f"Background task {func.__name__} stopped")


async def _handle_lifespan(background, receive, send):
    tasks = []
    while True:
        message = await receive()
        if message["type"] == "lifespan.startup":
            try:
                logger.info("Server is starting up")
                for func in background:
                    tasks.append(spawn(_supervise(func)))
            except Exception as err:  # pragma: no cover
                await send({"type": "lifespan.startup.failed", "message": str(err)})
            else:
                await send({"type": "lifespan.startup.complete"})
        elif message["type"] == "lifespan.shutdown":
            try:
                logger.info("Server is shutting down")
                await cancel_and_wait(tasks)
            except Exception as err:  # pragma: no cover
                await send({"type": "lifespan.shutdown.failed", "message": str(err)})
            else:
                await send({"type": "lifespan.shutdown.complete"})
            return
        else:
            logger.warning(f"Unknown lifespan message {message['type']}")


async def _handle_http(handler, request, on_error=None):

    try:

        # Call request handler to get the result
        where = "request handler"
        result = await handler(request)

        # Process the handler output
        where = "processing handler output"
        status, headers, body = normalize_response(result)
        # Convert the body
        if isinstance(body, bytes):
            pass
        elif isinstance(body, str):
            body = body.encode()
        elif isinstance(body, dict):
            try:
                body = json.dumps(body).encode()
            except Exception as err:
                raise ValueError(f"Could not JSON encode body: {err}")
        elif inspect.iscoroutine(body):
            raise ValueError("Body cannot be a coroutine, forgot await?")
        else:
            raise ValueError(f"Body cannot be {type(body)}.")

        # Send response. A 304 carries no content-length
        where = "sending response"
        if status != 304:
            headers.setdefault("content-length", str(len(body)))
        await request.accept(status, headers)
        await request.send(body, more=False)

    except DisconnectedError:
        pass  # Not really an error

    except Exception as err:
        # Process errors. We log them, and if possible send a 500
        error_text = f"{type(err).__name__} in {where}: {str(err)}"
        logger.error(error_text, exc_info=err)
        if request._app_state == _request.CONNECTING:
            status, headers, body = 500, {}, error_text
            if on_error is not None:
                status, headers, body = on_error((status, headers, body))
            await request.accept(status, headers)
            await request.send(body, more=False)
        elif request._app_state == _request.CONNECTED:
            await request.send(b"", more=False)  # At least close it
