"""
The site: the asset routes, wrapped in the middleware chain, as an ASGI app.
"""

from ._app import to_asgi
from .assets import SITE_ASSETS
from .router import Router
from .middleware import build_pipeline, set_security_headers, REQUEST_TIMEOUT


def make_site(table, *, manager=None, manifest=SITE_ASSETS, timeout=REQUEST_TIMEOUT):
    """ Create the ASGI application for the given ``AssetTable``.

    If a ``CertificateManager`` is given, its challenge responder answers
    ACME challenges, and the manager runs as a background task of the app.
    """
    handler = Router.from_assets(table, manifest)
    background = ()
    if manager is not None:
        handler = manager.responder.wrap(handler)
        background = (manager.run,)
    pipeline = build_pipeline(handler, timeout)

    async def site(request):
        return await pipeline(request)

    return to_asgi(site, background=background, on_error=set_security_headers)
