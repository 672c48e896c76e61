"""
This module implements a ``run()`` function to serve an ASGI app with the
ASGI server of choice, in the current process.
"""

import asyncio

from .certs import ALPN_PROTOCOLS


def run(app, server, bind="localhost:8080", *, certificates=None, **kwargs):
    """ Run the given ASGI app with the given ASGI server. Blocks until
    the server stops.

    Arguments:

    * ``app`` (required): The ASGI application object.
    * ``server`` (required): The name of the server to use, "hypercorn"
      or "uvicorn".
    * ``bind``: the "host:port" to listen on.
    * ``certificates``: a ``CertificateStore``. If given, the server terminates
      TLS with the certificate that is current in the store at each
      handshake. Only supported with Hypercorn.
    * ``kwargs``: additional settings for the underlying server.

    Raises ``OSError`` if the server cannot bind to the given address.
    """

    # Check server and bind
    assert isinstance(server, str), "siteserve.run() server arg must be a string."
    assert isinstance(bind, str), "siteserve.run() bind arg must be a string."
    assert ":" in bind, "siteserve.run() bind arg must be 'host:port'"
    bind = bind.replace("localhost", "127.0.0.1")

    # Select server function
    try:
        func = SERVERS[server.lower()]
    except KeyError:
        raise ValueError(f"Invalid server specified: {server!r}")
    if certificates is not None and func is not _run_hypercorn:
        raise ValueError(f"Server {server!r} does not support a certificate store.")

    # Delegate
    return func(app, bind, certificates, **kwargs)


def make_hypercorn_config(bind, certificates=None, **kwargs):
    """ Create the Hypercorn config. With a certificate store, the bind
    address is served over TLS, advertising h2 and http/1.1 via ALPN.
    """
    from hypercorn.config import Config

    if certificates is None:
        config = Config()
    else:

        class ResolverConfig(Config):
            @property
            def ssl_enabled(self):
                return True

            def create_ssl_context(self):
                return certificates.make_ssl_context()

        config = ResolverConfig()
        config.alpn_protocols = list(ALPN_PROTOCOLS)

    config.bind = [bind]
    for key, val in kwargs.items():
        if key == "insecure_bind" and isinstance(val, str):
            val = [val.replace("localhost", "127.0.0.1")]
        if not hasattr(config, key):
            raise TypeError(f"Invalid Hypercorn setting {key!r}")
        setattr(config, key, val)
    return config


def _run_hypercorn(app, bind, certificates=None, **kwargs):
    from hypercorn.asyncio import serve

    # Hypercorn docs say: "Hypercorn has two loggers, an access logger and an error logger.
    # By default neither will actively log." So we dont need to do anything.

    config = make_hypercorn_config(bind, certificates, **kwargs)
    return asyncio.run(serve(app, config))


def _run_uvicorn(app, bind, certificates=None, **kwargs):
    import uvicorn

    host, _, port = bind.partition(":")

    # Default to an error log_level, otherwise uvicorn is quite verbose
    kwargs.setdefault("log_level", "warning")
    kwargs.setdefault("lifespan", "on")

    config = uvicorn.Config(app, host=host, port=int(port), **kwargs)
    server = uvicorn.Server(config)
    try:
        return server.run()
    except SystemExit as err:
        # Uvicorn exits by itself when it cannot bind
        if not server.started:
            raise OSError(f"Uvicorn could not start on {bind}") from err
        raise


SERVERS = {"hypercorn": _run_hypercorn, "uvicorn": _run_uvicorn}
