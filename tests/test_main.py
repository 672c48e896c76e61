"""
Test the command line interface, without actually serving.
"""

import os

import pytest

import siteserve.__main__ as cli
from siteserve.certs import CertificateStore
from siteserve.certmanager import LETS_ENCRYPT_STAGING

from common import ASSET_DATA


def write_bundle(dirname):
    for name, data in ASSET_DATA.items():
        filename = os.path.join(dirname, *name.split("/"))
        os.makedirs(os.path.dirname(filename), exist_ok=True)
        with open(filename, "wb") as f:
            f.write(data)


class FakeRun:
    def __init__(self, exc=None):
        self.calls = []
        self.exc = exc

    def __call__(self, app, server, bind, *, certificates=None, **kwargs):
        self.calls.append((app, server, bind, certificates, kwargs))
        if self.exc is not None:
            raise self.exc


def test_parser_defaults():
    args = cli.make_parser().parse_args([])
    assert not args.test
    assert not args.staging
    assert args.bind is None
    assert args.challenge_bind == "0.0.0.0:80"
    assert args.domain is None


def test_missing_bundle(tmp_path):
    with pytest.raises(SystemExit) as err:
        cli.main(["--test", "--bundle", str(tmp_path)])
    assert "Couldn't find static asset pages/index.html" in str(err.value)


def test_main_test_mode(tmp_path, monkeypatch):
    write_bundle(str(tmp_path))
    fake_run = FakeRun()
    monkeypatch.setattr(cli, "run", fake_run)

    cli.main(["--test", "--bundle", str(tmp_path)])

    assert len(fake_run.calls) == 1
    app, server, bind, certificates, kwargs = fake_run.calls[0]
    assert callable(app)
    assert server == "hypercorn"
    assert bind == "0.0.0.0:8080"
    assert certificates is None
    assert kwargs == {}


def test_main_production_mode(tmp_path, monkeypatch):
    bundle_dir = str(tmp_path / "bundle")
    write_bundle(bundle_dir)
    fake_run = FakeRun()
    monkeypatch.setattr(cli, "run", fake_run)

    argv = ["--bundle", bundle_dir, "--cache", str(tmp_path / "certs")]
    argv += ["--domain", "example.test", "--staging", "--bind", "127.0.0.1:8443"]
    cli.main(argv)

    app, server, bind, certificates, kwargs = fake_run.calls[0]
    assert server == "hypercorn"
    assert bind == "127.0.0.1:8443"
    assert isinstance(certificates, CertificateStore)
    assert certificates.current is None  # nothing cached
    assert kwargs == {"insecure_bind": "0.0.0.0:80"}


def test_main_staging_settings(tmp_path, monkeypatch):
    write_bundle(str(tmp_path))
    monkeypatch.setattr(cli, "run", FakeRun())

    created = []
    original = cli.CertificateManager

    def make_manager(settings):
        manager = original(settings)
        created.append(manager)
        return manager

    monkeypatch.setattr(cli, "CertificateManager", make_manager)
    argv = ["--bundle", str(tmp_path), "--cache", str(tmp_path / "certs")]
    cli.main(argv + ["--domain", "a.test", "--domain", "b.test", "--staging"])

    settings = created[0].settings
    assert settings.domains == ("a.test", "b.test")
    assert settings.contacts == ("mailto:bran@bran.land",)
    assert settings.directory_url == LETS_ENCRYPT_STAGING


def test_main_bind_fails(tmp_path, monkeypatch):
    write_bundle(str(tmp_path))
    monkeypatch.setattr(cli, "run", FakeRun(OSError("address in use")))

    with pytest.raises(SystemExit) as err:
        cli.main(["--test", "--bundle", str(tmp_path), "--bind", "127.0.0.1:1"])
    assert "Couldn't listen on 127.0.0.1:1" in str(err.value)


def test_production_needs_hypercorn(tmp_path, monkeypatch):
    write_bundle(str(tmp_path))
    fake_run = FakeRun()
    monkeypatch.setattr(cli, "run", fake_run)

    with pytest.raises(SystemExit) as err:
        cli.main(["--bundle", str(tmp_path), "--server", "uvicorn"])
    assert err.value.code == 2
    assert not fake_run.calls

    # Plain HTTP can be served by uvicorn
    cli.main(["--test", "--bundle", str(tmp_path), "--server", "uvicorn"])
    assert fake_run.calls[0][1] == "uvicorn"
