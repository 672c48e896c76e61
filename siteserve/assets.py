"""
The asset table: the fixed set of files that the site serves, loaded once
at startup from the bundle directory, each with its content fingerprint.

The bundle is produced ahead of time (rendered pages in ``pages/`` and raw
files in ``static/``); this module only reads it.
"""

import os
import base64
import hashlib
import logging
from collections import namedtuple
from collections.abc import Mapping


logger = logging.getLogger("siteserve.assets")


# The routes of the site: (path, content-type, asset name)
SITE_ASSETS = (
    ("/", "text/html; charset=utf-8", "pages/index.html"),
    ("/style.css", "text/css; charset=utf-8", "static/style.css"),
    ("/favicon.ico", "image/x-icon", "static/favicon.ico"),
    ("/resume.pdf", "application/pdf", "static/resume.pdf"),
)


class MissingAssetError(LookupError):
    """ Raised when a configured asset cannot be found in the bundle.
    """


def fingerprint(data):
    """ Get the fingerprint of the given bytes: the SHA-512/256 digest,
    encoded as URL-safe base64 without padding. The result can be used
    as-is in a header value.
    """
    digest = hashlib.new("sha512_256", data).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()


Asset = namedtuple("Asset", ["name", "content_type", "data", "etag"])


def make_asset(name, content_type, data):
    """ Create an Asset, computing its fingerprint.
    """
    if isinstance(data, str):
        data = data.encode()
    elif isinstance(data, (bytearray, memoryview)):
        data = bytes(data)
    elif not isinstance(data, bytes):
        raise ValueError("Asset bodies must be bytes or str.")
    return Asset(name, content_type, data, fingerprint(data))


class AssetTable(Mapping):
    """ A read-only mapping of asset name to ``Asset``. Populated once on
    construction; there is no way to change it afterwards.
    """

    __slots__ = ("_assets",)

    def __init__(self, assets=()):
        table = {}
        for asset in assets:
            if not isinstance(asset, Asset):
                raise TypeError("AssetTable expects Asset objects.")
            if asset.name in table:
                raise ValueError(f"Duplicate asset {asset.name!r}")
            table[asset.name] = asset
        object.__setattr__(self, "_assets", table)

    def __setattr__(self, name, value):
        raise TypeError("AssetTable is read-only.")

    def __getitem__(self, name):
        return self._assets[name]

    def __iter__(self):
        return iter(self._assets)

    def __len__(self):
        return len(self._assets)

    def __repr__(self):
        return f"<AssetTable with {len(self)} assets>"

    @classmethod
    def from_triples(cls, triples):
        """ Create a table from ``(name, content_type, bytes)`` triples.
        """
        return cls(make_asset(name, ctype, data) for name, ctype, data in triples)

    @classmethod
    def load(cls, bundle_dir, manifest=SITE_ASSETS):
        """ Load the assets named in the manifest from the bundle directory.
        Raises ``MissingAssetError`` if any of them cannot be read.
        """
        triples = []
        for _, content_type, name in manifest:
            filename = os.path.join(bundle_dir, *name.split("/"))
            try:
                with open(filename, "rb") as f:
                    data = f.read()
            except OSError as err:
                raise MissingAssetError(
                    f"Couldn't find static asset {name} ({err.strerror})"
                ) from err
            triples.append((name, content_type, data))
        table = cls.from_triples(triples)
        for asset in table.values():
            logger.info(f"Loaded asset {asset.name} ({len(asset.data)} bytes)")
        return table
