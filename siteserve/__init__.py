"""
Siteserve - serve a small static site over HTTPS, with automatic certificates.

The site consists of a fixed set of assets that are loaded once at startup.
Each asset is served with an etag (its content fingerprint), so that clients
can revalidate their cached copy. All responses carry a fixed set of security
headers. Certificates are obtained from Let's Encrypt and renewed in the
background, while the site keeps serving.
"""

from ._request import HttpRequest, DisconnectedError
from ._app import to_asgi
from ._run import run
from .assets import AssetTable, MissingAssetError, fingerprint
from .certs import CertificateBundle, CertificateStore
from .certmanager import AcmeSettings, CertificateManager
from .site import make_site
from . import utils


__all__ = [
    "HttpRequest",
    "DisconnectedError",
    "to_asgi",
    "run",
    "AssetTable",
    "MissingAssetError",
    "fingerprint",
    "CertificateBundle",
    "CertificateStore",
    "AcmeSettings",
    "CertificateManager",
    "make_site",
    "utils",
]


__version__ = "0.1.0"
