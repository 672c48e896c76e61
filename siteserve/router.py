"""
Exact-path dispatch of requests to handlers.
"""

from .utils import make_static_handler


class Router:
    """ Maps exact paths to handlers. Only GET requests are dispatched;
    anything else, and any unknown path, gets a 404 without a body.

    The router is itself an async handler: ``await router(request)``.
    """

    __slots__ = ("_routes",)

    def __init__(self, bindings):
        routes = {}
        for path, handler in bindings:
            if not path.startswith("/"):
                raise ValueError(f"Route path must start with a slash: {path!r}")
            if path in routes:
                raise ValueError(f"Duplicate route {path!r}")
            routes[path] = handler
        self._routes = routes

    @classmethod
    def from_assets(cls, table, manifest):
        """ Create a router with one static handler per manifest entry
        ``(path, content_type, asset_name)``.
        """
        return cls(
            (path, make_static_handler(table[name])) for path, _, name in manifest
        )

    @property
    def paths(self):
        """ The bound paths, in order of registration.
        """
        return tuple(self._routes)

    async def __call__(self, request):
        handler = self._routes.get(request.path)
        if handler is None or request.method != "GET":
            return 404, {}, b""
        return await handler(request)
