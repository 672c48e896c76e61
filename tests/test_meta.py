"""
Test some meta stuff.
"""

import os
import siteserve


def test_namespace():
    assert siteserve.__version__

    ns = set(name for name in dir(siteserve) if not name.startswith("_"))

    # Submodules that get imported along
    ns.difference_update(
        {
            "testutils",
            "assets",
            "certs",
            "certmanager",
            "middleware",
            "router",
            "site",
        }
    )

    assert ns == {
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
    }
    assert ns == set(siteserve.__all__)


def test_newlines():
    # Let's be a bit pedantic about sanitizing whitespace :)

    root_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    for dirname in ("siteserve", "tests"):
        for root, dirs, files in os.walk(os.path.join(root_dir, dirname)):
            for fname in files:
                if fname.endswith((".py", ".md", ".rst", ".yml")):
                    with open(os.path.join(root, fname), "rb") as f:
                        text = f.read().decode()
                        assert "\r" not in text, f"{fname} has CR!"
                        assert "\t" not in text, f"{fname} has tabs!"


if __name__ == "__main__":
    test_namespace()
    test_newlines()
