"""
Test the exact-path router.
"""

import siteserve
from siteserve.router import Router
from siteserve.assets import SITE_ASSETS

from pytest import raises

from common import make_server, make_table, run_tests


async def hello(request):
    return 200, {"content-type": "text/plain"}, "hello"


def test_router_fails():
    with raises(ValueError) as err:
        Router([("/a", hello), ("/a", hello)])
    assert "duplicate" in str(err.value).lower()

    with raises(ValueError):
        Router([("a", hello)])


def test_router_dispatch():

    router = Router([("/", hello), ("/hello.txt", hello)])
    assert router.paths == ("/", "/hello.txt")

    async def handler(request):
        return await router(request)

    with make_server(handler) as server:
        r1 = server.get("/")
        r2 = server.get("/hello.txt")
        r3 = server.get("/hello.txt/")
        r4 = server.get("/Hello.txt")
        r5 = server.get("/hello")
        r6 = server.get("/nope")

    assert r1.status == 200 and r1.body == b"hello"
    assert r2.status == 200 and r2.body == b"hello"
    for r in (r3, r4, r5, r6):
        assert r.status == 404
        assert r.body == b""


def test_router_only_get():

    router = Router([("/", hello)])

    async def handler(request):
        return await router(request)

    with make_server(handler) as server:
        r1 = server.post("/", data=b"x")
        r2 = server.head("/")
        r3 = server.request("DELETE", "/")

    for r in (r1, r2, r3):
        assert r.status == 404
        assert r.body == b""


def test_router_from_assets():
    table = make_table()
    router = Router.from_assets(table, SITE_ASSETS)
    assert router.paths == ("/", "/style.css", "/favicon.ico", "/resume.pdf")

    async def handler(request):
        return await router(request)

    with make_server(siteserve.to_asgi(handler)) as server:
        for path, content_type, name in SITE_ASSETS:
            r = server.get(path)
            assert r.status == 200
            assert r.headers["content-type"] == content_type
            assert r.body == table[name].data

        r = server.get("/pages/index.html")
        assert r.status == 404
        assert "etag" not in r.headers
        assert "cache-control" not in r.headers


if __name__ == "__main__":
    run_tests(globals())
