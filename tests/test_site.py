"""
Test the complete site: routes, caching and headers, as seen by a client.
"""

import asyncio
from types import SimpleNamespace

import siteserve
from siteserve.assets import SITE_ASSETS, fingerprint

from common import (
    ASSET_DATA,
    check_security_headers,
    make_server,
    make_table,
    run_tests,
)


def test_site_routes():

    app = siteserve.make_site(make_table())

    with make_server(app) as server:
        for path, content_type, name in SITE_ASSETS:
            data = ASSET_DATA[name]
            token = fingerprint(data)

            # First request: full response
            r1 = server.get(path)
            assert r1.status == 200
            assert r1.body == data
            assert r1.headers["content-type"] == content_type
            assert r1.headers["etag"] == token
            check_security_headers(r1.headers)

            # Revalidate: not modified
            r2 = server.get(path, headers={"if-none-match": token})
            assert r2.status == 304
            assert r2.body == b""
            assert r2.headers["etag"] == token
            assert "content-type" not in r2.headers
            check_security_headers(r2.headers)

            # Stale validator: full response again
            r3 = server.get(path, headers={"if-none-match": '"stale"'})
            assert r3.status == 200
            assert r3.body == data
            assert r3.headers["etag"] == token
            check_security_headers(r3.headers)

    assert not server.out


def test_site_not_found():

    app = siteserve.make_site(make_table())
    token = fingerprint(ASSET_DATA["static/style.css"])

    with make_server(app) as server:
        responses = [
            server.get("/index.html"),
            server.get("/static/style.css"),
            server.get("/style.css/"),
            server.get("/nope", headers={"if-none-match": token}),
            server.post("/style.css", data=b"x"),
            server.head("/"),
        ]

    for r in responses:
        assert r.status == 404
        assert r.body == b""
        assert "etag" not in r.headers
        assert "content-type" not in r.headers
        check_security_headers(r.headers)


def test_site_content_types():

    app = siteserve.make_site(make_table())

    with make_server(app) as server:
        responses = [server.get(path) for path, _, _ in SITE_ASSETS]
        ctypes = [r.headers["content-type"] for r in responses]

    assert ctypes == [
        "text/html; charset=utf-8",
        "text/css; charset=utf-8",
        "image/x-icon",
        "application/pdf",
    ]


def test_site_errors_carry_security_headers():
    async def crash(request):
        raise RuntimeError("asset handler broke")

    async def idle():
        await asyncio.sleep(9999)

    # A stand-in manager whose challenge wrapper breaks every request
    manager = SimpleNamespace(
        responder=SimpleNamespace(wrap=lambda handler: crash), run=idle
    )
    app = siteserve.make_site(make_table(), manager=manager)

    with make_server(app) as server:
        r = server.get("https://127.0.0.1:8443/")

    assert r.status == 500
    assert b"asset handler broke" in r.body
    check_security_headers(r.headers)
    assert "asset handler broke" in server.out


if __name__ == "__main__":
    run_tests(globals())
