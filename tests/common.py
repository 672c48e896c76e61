"""
Common utilities used in our test scripts.
"""

import time
import asyncio
import logging
import datetime

from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from siteserve.assets import AssetTable, SITE_ASSETS
from siteserve.testutils import MockTestServer


ASSET_DATA = {
    "pages/index.html": b"<!DOCTYPE html><html><body>Hello</body></html>",
    "static/style.css": b"body { color: #333; }\n",
    "static/favicon.ico": bytes(range(256)) * 4,
    "static/resume.pdf": b"%PDF-1.4\n" + b"\x00\xff" * 500 + b"\n%%EOF\n",
}


def run_tests(scope):
    for func in list(scope.values()):
        if callable(func) and func.__name__.startswith("test_"):
            print(f"Running {func.__name__} ...")
            func()
    print("Done")


def make_table():
    triples = [(name, ctype, ASSET_DATA[name]) for _, ctype, name in SITE_ASSETS]
    return AssetTable.from_triples(triples)


def filter_lines(lines):
    # Overloadable line filter
    skip = ("[INFO ",)
    return [line for line in lines if line and not line.startswith(skip)]


def make_server(app):
    server = MockTestServer(app)
    server.filter_lines = filter_lines
    return server


class LogCapturer(logging.Handler):
    def __init__(self, name="siteserve"):
        super().__init__()
        self.logger_name = name
        self.messages = []

    def emit(self, record):
        self.messages.append(record.getMessage())

    def __enter__(self):
        logging.getLogger(self.logger_name).addHandler(self)
        return self

    def __exit__(self, *args, **kwargs):
        logging.getLogger(self.logger_name).removeHandler(self)


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


def _key_pem(key):
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


def make_certificate(domains, not_before=None, not_after=None, public_key=None):
    """ Create a certificate for the given domains, signed by a throwaway CA.
    Returns ``(chain_pem, key_pem)``; ``key_pem`` is None when a public key
    is given.
    """
    not_before = not_before or utcnow() - datetime.timedelta(days=1)
    not_after = not_after or utcnow() + datetime.timedelta(days=89)

    ca_key = ec.generate_private_key(ec.SECP256R1())
    ca_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test CA")])
    ca_cert = (
        x509.CertificateBuilder()
        .subject_name(ca_name)
        .issuer_name(ca_name)
        .public_key(ca_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after + datetime.timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(ca_key, hashes.SHA256())
    )

    key_pem = None
    if public_key is None:
        key = ec.generate_private_key(ec.SECP256R1())
        public_key = key.public_key()
        key_pem = _key_pem(key)

    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(ca_name)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
            critical=False,
        )
        .sign(ca_key, hashes.SHA256())
    )
    chain_pem = cert.public_bytes(serialization.Encoding.PEM)
    chain_pem += ca_cert.public_bytes(serialization.Encoding.PEM)
    return chain_pem, key_pem


def run_until(loop, condition, timeout=5):
    """ Run the loop until the condition is true. Raises on timeout.
    """

    async def waiter():
        etime = time.time() + timeout
        while not condition():
            if time.time() > etime:
                raise RuntimeError("Condition not met in time")
            await asyncio.sleep(0.01)

    loop.run_until_complete(waiter())


def cancel_task(loop, task):
    task.cancel()
    loop.run_until_complete(asyncio.gather(task, return_exceptions=True))


EXPECTED_HEADERS = {
    "strict-transport-security": "max-age=31536000; includeSubDomains; preload",
    "referrer-policy": "no-referrer",
    "content-security-policy": "default-src 'self'; style-src 'self' "
    "https://fonts.googleapis.com; font-src https://fonts.gstatic.com",
    "x-frame-options": "DENY",
    "x-xss-protection": "1; mode=block",
    "x-content-type-options": "nosniff",
}


def check_security_headers(headers):
    for key, val in EXPECTED_HEADERS.items():
        assert headers[key] == val, key
