"""
Certificate material for the TLS listener.

A ``CertificateBundle`` is an immutable certificate chain + key, with a
ready-to-use ``ssl.SSLContext``. The ``CertificateStore`` holds the
current bundle; it is replaced as a whole when a certificate is renewed,
and every TLS handshake picks up whatever bundle is current at that
moment, via the SNI callback of the listener's context.

The ``DirCache`` persists certificates and ACME account data on disk.
"""

import os
import re
import ssl
import json
import base64
import hashlib
import logging
import tempfile
import datetime
from collections import namedtuple

from cryptography import x509


logger = logging.getLogger("siteserve.certs")

ALPN_PROTOCOLS = ["h2", "http/1.1"]

_PEM_RE = re.compile(
    rb"-----BEGIN ([A-Z0-9 ]+)-----\r?\n.*?\r?\n-----END \1-----\r?\n?", re.DOTALL
)


class CertificateError(ValueError):
    """ Raised when certificate material cannot be parsed or loaded.
    """


def split_pem(pem):
    """ Split PEM data into ``(label, block)`` tuples, e.g.
    ``("CERTIFICATE", b"-----BEGIN CERTIFICATE-----...")``.
    """
    if isinstance(pem, str):
        pem = pem.encode()
    return [(m.group(1).decode(), m.group(0)) for m in _PEM_RE.finditer(pem)]


def create_server_context():
    """ Create a TLS server context with our protocol settings, but without
    a certificate.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.set_alpn_protocols(ALPN_PROTOCOLS)
    return context


def _load_context(chain_pem, key_pem):
    context = create_server_context()
    with tempfile.TemporaryDirectory(prefix="siteserve-") as tmpdir:
        certfile = os.path.join(tmpdir, "chain.pem")
        keyfile = os.path.join(tmpdir, "key.pem")
        with open(certfile, "wb") as f:
            f.write(chain_pem)
        with open(keyfile, "wb") as f:
            f.write(key_pem)
        try:
            context.load_cert_chain(certfile, keyfile)
        except ssl.SSLError as err:
            raise CertificateError(f"Could not load certificate: {err}") from err
    return context


_BundleBase = namedtuple(
    "CertificateBundle",
    ["chain_pem", "key_pem", "domains", "not_before", "not_after", "context"],
)


class CertificateBundle(_BundleBase):
    """ An issued certificate: the PEM chain and private key, the names it
    covers, its validity window (aware datetimes, UTC), and an SSL context
    serving it.
    """

    __slots__ = ()

    @classmethod
    def from_pem(cls, pem, key_pem=None):
        """ Create a bundle from PEM data. If ``key_pem`` is not given, the
        private key is expected in ``pem`` (as stored by the DirCache).
        """
        blocks = split_pem(pem)
        if key_pem is not None:
            blocks += split_pem(key_pem)
        certs = [block for label, block in blocks if label == "CERTIFICATE"]
        keys = [block for label, block in blocks if label.endswith("PRIVATE KEY")]
        if not certs:
            raise CertificateError("No certificate found in PEM data")
        if len(keys) != 1:
            raise CertificateError(f"Expected one private key, found {len(keys)}")

        try:
            leaf = x509.load_pem_x509_certificate(certs[0])
        except ValueError as err:
            raise CertificateError(f"Invalid certificate: {err}") from err
        try:
            san = leaf.extensions.get_extension_for_class(x509.SubjectAlternativeName)
            domains = tuple(san.value.get_values_for_type(x509.DNSName))
        except x509.ExtensionNotFound:
            domains = ()

        chain_pem = b"".join(certs)
        return cls(
            chain_pem,
            keys[0],
            domains,
            leaf.not_valid_before_utc,
            leaf.not_valid_after_utc,
            _load_context(chain_pem, keys[0]),
        )

    def to_pem(self):
        """ Get the key and chain as one PEM blob.
        """
        return self.key_pem + self.chain_pem

    def is_valid(self, now=None):
        now = now or datetime.datetime.now(datetime.timezone.utc)
        return self.not_before <= now < self.not_after


class CertificateStore:
    """ Holds the current ``CertificateBundle``. There is one writer (the
    certificate manager) and many readers (the TLS handshakes). A swap
    replaces the reference to the bundle as a whole, so readers always
    see either the old or the new bundle, never a mix.
    """

    __slots__ = ("_current",)

    def __init__(self, bundle=None):
        self._current = bundle

    @property
    def current(self):
        """ The current bundle, or None if no certificate was obtained yet.
        """
        return self._current

    def swap(self, bundle):
        """ Make the given bundle current. Returns the previous one.
        """
        if not isinstance(bundle, CertificateBundle):
            raise TypeError("CertificateStore.swap() expects a CertificateBundle")
        previous, self._current = self._current, bundle
        return previous

    def resolve(self, sslobj, server_name, context):
        """ SNI callback: select the current certificate for a handshake.
        """
        bundle = self._current
        if bundle is None:
            logger.debug(f"No certificate yet, refusing handshake for {server_name}")
            return ssl.ALERT_DESCRIPTION_HANDSHAKE_FAILURE
        sslobj.context = bundle.context
        return None

    def make_ssl_context(self):
        """ Create the SSL context for the TLS listener. Certificates are
        resolved per handshake, so a renewed certificate is used from the
        first handshake after the swap onwards.
        """
        context = create_server_context()
        context.sni_callback = self.resolve
        return context


def _cache_key(*parts):
    digest = hashlib.sha256("\n".join(parts).encode()).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()


class DirCache:
    """ A directory holding cached certificates and ACME accounts. Cache
    entries are keyed by the domains (or contacts) together with the
    directory url of the CA, so that e.g. staging and production never mix.
    """

    def __init__(self, path):
        self.path = os.path.abspath(os.path.expanduser(path))

    def __repr__(self):
        return f"<DirCache {self.path}>"

    def certificate_filename(self, domains, directory_url):
        key = _cache_key(*domains, directory_url)
        return os.path.join(self.path, f"cached_cert_{key}.pem")

    def account_filename(self, contacts, directory_url):
        key = _cache_key(*contacts, directory_url)
        return os.path.join(self.path, f"cached_account_{key}.json")

    def _read(self, filename):
        try:
            with open(filename, "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None

    def _write(self, filename, data):
        os.makedirs(self.path, mode=0o700, exist_ok=True)
        fd, tmpname = tempfile.mkstemp(dir=self.path, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmpname, filename)
        except BaseException:
            os.remove(tmpname)
            raise

    def load_certificate(self, domains, directory_url):
        """ Load the cached certificate as a ``CertificateBundle``, or None
        if there is none, or it cannot be used.
        """
        filename = self.certificate_filename(domains, directory_url)
        data = self._read(filename)
        if data is None:
            return None
        try:
            return CertificateBundle.from_pem(data)
        except CertificateError as err:
            logger.warning(f"Ignoring cached certificate {filename}: {err}")
            return None

    def store_certificate(self, domains, directory_url, bundle):
        self._write(self.certificate_filename(domains, directory_url), bundle.to_pem())

    def load_account(self, contacts, directory_url):
        """ Load the cached account data (a dict), or None.
        """
        filename = self.account_filename(contacts, directory_url)
        data = self._read(filename)
        if data is None:
            return None
        try:
            return json.loads(data.decode())
        except ValueError as err:
            logger.warning(f"Ignoring cached account {filename}: {err}")
            return None

    def store_account(self, contacts, directory_url, account):
        data = json.dumps(account, indent=2).encode()
        self._write(self.account_filename(contacts, directory_url), data)
