"""
Command line interface to serve the site.

    python -m siteserve --test                # plain HTTP on port 8080
    python -m siteserve                       # HTTPS on port 443, with ACME

Settings can also be given as environment variables, e.g.
``SITESERVE_BUNDLE=/srv/site``. Command line arguments take precedence.
"""

import os
import sys
import logging
import argparse

from ._run import run
from .assets import AssetTable, MissingAssetError
from .certmanager import (
    AcmeSettings,
    CertificateManager,
    LETS_ENCRYPT_PRODUCTION,
    LETS_ENCRYPT_STAGING,
)
from .site import make_site


logger = logging.getLogger("siteserve")

DEFAULTS = {
    "bundle": "assets",
    "domain": "bran.land",
    "contact": "mailto:bran@bran.land",
    "cache": "/home/www/certs",
    "test_bind": "0.0.0.0:8080",
    "bind": "0.0.0.0:443",
    "challenge_bind": "0.0.0.0:80",
    "log_level": "info",
}


def _env(name, default=None):
    return os.environ.get("SITESERVE_" + name.upper(), default)


def _env_list(name):
    value = _env(name)
    if value is None:
        return [DEFAULTS[name]]
    return [x.strip() for x in value.split(",") if x.strip()]


def make_parser():
    parser = argparse.ArgumentParser(
        prog="siteserve", description="Serve the site, over HTTPS with ACME certificates."
    )
    parser.add_argument(
        "--test",
        action="store_true",
        default=_env("test", "") not in ("", "0"),
        help="serve plain HTTP (default on port 8080), without certificates",
    )
    parser.add_argument(
        "--bundle",
        default=_env("bundle", DEFAULTS["bundle"]),
        help="directory with the rendered pages/ and static/ files",
    )
    parser.add_argument("--bind", default=_env("bind"), help="host:port to listen on")
    parser.add_argument(
        "--challenge-bind",
        default=_env("challenge_bind", DEFAULTS["challenge_bind"]),
        help="host:port for plain HTTP, to answer ACME challenges",
    )
    parser.add_argument(
        "--server", default=_env("server"), help="hypercorn (default) or uvicorn"
    )
    parser.add_argument(
        "--domain",
        action="append",
        help="domain to obtain a certificate for (can be repeated)",
    )
    parser.add_argument(
        "--contact",
        action="append",
        help="contact url for the ACME account, e.g. mailto:me@example.com",
    )
    parser.add_argument(
        "--cache",
        default=_env("cache", DEFAULTS["cache"]),
        help="directory to store certificates and account data in",
    )
    parser.add_argument(
        "--staging",
        action="store_true",
        default=_env("staging", "") not in ("", "0"),
        help="use the Let's Encrypt staging CA",
    )
    parser.add_argument(
        "--log-level",
        default=_env("log_level", DEFAULTS["log_level"]),
        help="the log level, e.g. debug, info, warning",
    )
    return parser


def main(argv=None):
    parser = make_parser()
    args = parser.parse_args(argv)
    server = args.server or "hypercorn"
    if not args.test and server.lower() != "hypercorn":
        parser.error(f"HTTPS with certificates needs hypercorn, not {server!r}")
    logger.setLevel(args.log_level.upper())

    try:
        table = AssetTable.load(args.bundle)
    except MissingAssetError as err:
        sys.exit(str(err))

    if args.test:
        bind = args.bind or DEFAULTS["test_bind"]
        app = make_site(table)
        logger.info(f"serving HTTP on {bind}")
        kwargs = {}
        certificates = None
    else:
        bind = args.bind or DEFAULTS["bind"]
        settings = AcmeSettings(
            domains=tuple(args.domain or _env_list("domain")),
            contacts=tuple(args.contact or _env_list("contact")),
            cache_dir=args.cache,
            directory_url=LETS_ENCRYPT_STAGING if args.staging else LETS_ENCRYPT_PRODUCTION,
        )
        manager = CertificateManager(settings)
        manager.load_cached()
        app = make_site(table, manager=manager)
        logger.info(f"serving HTTPS on {bind}")
        kwargs = {"insecure_bind": args.challenge_bind}
        certificates = manager.store

    try:
        run(app, server, bind, certificates=certificates, **kwargs)
    except OSError as err:
        sys.exit(f"Couldn't listen on {bind}: {err}")
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
