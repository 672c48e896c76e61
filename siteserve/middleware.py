"""
The middleware that wraps every response of the site. A middleware is a
function that takes a handler and returns a new handler. The chain is
composed once at startup with ``build_pipeline()``.
"""

import time
import logging
import functools
import itertools

from ._app import normalize_response
from ._compat import wait_for, TimeoutError


logger = logging.getLogger("siteserve.http")

REQUEST_TIMEOUT = 10  # seconds

SECURITY_HEADERS = (
    ("strict-transport-security", "max-age=31536000; includeSubDomains; preload"),
    ("referrer-policy", "no-referrer"),
    (
        "content-security-policy",
        "default-src 'self'; style-src 'self' https://fonts.googleapis.com; "
        "font-src https://fonts.gstatic.com",
    ),
    ("x-frame-options", "DENY"),
    ("x-xss-protection", "1; mode=block"),
    ("x-content-type-options", "nosniff"),
)


def trace_requests(handler):
    """ Log the start and the completion of each request, with an id that
    ties the two lines together.
    """
    ids = itertools.count(1)

    @functools.wraps(handler)
    async def tracing_handler(request):
        rid = next(ids)
        t0 = time.perf_counter()
        logger.info(
            f"request{{id={rid} method={request.method} path={request.path}}}: "
            "started processing request"
        )
        try:
            status, headers, body = normalize_response(await handler(request))
        except Exception:
            latency = (time.perf_counter() - t0) * 1000
            logger.info(
                f"request{{id={rid}}}: failed processing request latency={latency:.1f} ms"
            )
            raise
        latency = (time.perf_counter() - t0) * 1000
        logger.info(
            f"request{{id={rid}}}: finished processing request "
            f"latency={latency:.1f} ms status={status}"
        )
        return status, headers, body

    return tracing_handler


def with_timeout(handler, seconds=REQUEST_TIMEOUT, on_timeout=None):
    """ Abort the handler when it has not produced a response within the
    given amount of seconds, and answer with 408. The ``on_timeout``
    function, if given, is applied to the 408 response.
    """

    @functools.wraps(handler)
    async def timeout_handler(request):
        try:
            return await wait_for(handler(request), seconds)
        except TimeoutError:
            logger.warning(f"Request to {request.path} timed out after {seconds}s")
            response = 408, {}, b""
            if on_timeout is not None:
                response = on_timeout(response)
            return response

    return timeout_handler


def set_security_headers(response):
    """ Set the security headers on the given response, replacing existing
    headers with the same name (regardless of case).
    """
    status, headers, body = normalize_response(response)
    names = set(name for name, _ in SECURITY_HEADERS)
    headers = {key: val for key, val in headers.items() if key.lower() not in names}
    headers.update(SECURITY_HEADERS)
    return status, headers, body


def with_security_headers(handler):
    """ Set the fixed security headers on every response.
    """

    @functools.wraps(handler)
    async def security_headers_handler(request):
        return set_security_headers(await handler(request))

    return security_headers_handler


def build_pipeline(handler, timeout=REQUEST_TIMEOUT):
    """ Wrap the handler in the middleware chain. From outer to inner:
    tracing, timeout, security headers.
    """
    handler = with_security_headers(handler)
    handler = with_timeout(handler, timeout, on_timeout=set_security_headers)
    handler = trace_requests(handler)
    return handler
