"""
Automatic certificates from an ACME certificate authority (Let's Encrypt).

The ``CertificateManager`` keeps the ``CertificateStore`` of the TLS
listener supplied with a valid certificate. It runs as a background task
next to the server:

* On startup, a cached certificate is loaded from the cache directory, if
  there is a valid one (``UNINITIALIZED`` -> ``ACTIVE``). Otherwise a new
  certificate is ordered (``UNINITIALIZED`` -> ``ORDERING``).
* ``ORDERING``: register the account (once), create an order, answer the
  HTTP-01 challenges, finalize the order, persist the certificate, and make
  it current in the store (-> ``ACTIVE``). A failure is logged and the
  order is retried after an exponential backoff.
* ``ACTIVE``: sleep until the renewal window opens, then order again. The
  old certificate stays in use until the new one is swapped in.

The ACME protocol itself is done by the ``acme`` package, which is
synchronous, so orders run in a worker thread.
"""

import enum
import random
import logging
import datetime
from collections import namedtuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

import josepy as jose
from acme import challenges, client, errors, messages

from ._compat import sleep, run_in_thread
from .certs import CertificateBundle, CertificateStore, DirCache


logger = logging.getLogger("siteserve.acme")

LETS_ENCRYPT_PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"
LETS_ENCRYPT_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"

USER_AGENT = "siteserve"
CHALLENGE_PREFIX = "/.well-known/acme-challenge/"

# Sleep at most this long, so that clock changes are picked up
MAX_SLEEP = 24 * 3600


AcmeSettings = namedtuple(
    "AcmeSettings",
    [
        "domains",
        "contacts",
        "cache_dir",
        "directory_url",
        "renew_before",
        "backoff_initial",
        "backoff_max",
        "order_timeout",
        "min_order_interval",
    ],
    defaults=[
        LETS_ENCRYPT_PRODUCTION,
        datetime.timedelta(days=30),
        10.0,
        3600.0,
        90.0,
        3600.0,
    ],
)


class AcmeError(Exception):
    """ Raised when a certificate cannot be obtained from the CA.
    """


class AcmeState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    ORDERING = "ordering"
    ACTIVE = "active"


def make_csr(domains):
    """ Generate a new private key and a CSR for the given domains.
    Returns ``(key_pem, csr_pem)``.
    """
    key = ec.generate_private_key(ec.SECP256R1())
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([]))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return key_pem, csr.public_bytes(serialization.Encoding.PEM)


class ChallengeResponder:
    """ Serves the key authorizations of pending HTTP-01 challenges. The
    tokens are added from the thread that runs the order, and read by the
    request handlers.
    """

    def __init__(self):
        self._tokens = {}

    def add(self, token, key_authorization):
        self._tokens[token] = key_authorization

    def remove(self, token):
        self._tokens.pop(token, None)

    def get(self, token):
        return self._tokens.get(token)

    def wrap(self, handler):
        """ Wrap a handler so that challenge requests are answered, and
        all other requests over TLS are passed on. Plain HTTP requests
        only get to see the challenges; anything else is a 404.
        """

        async def challenge_handler(request):
            if request.path.startswith(CHALLENGE_PREFIX):
                key_authorization = self.get(request.path[len(CHALLENGE_PREFIX):])
                if key_authorization is None or request.method != "GET":
                    return 404, {}, b""
                logger.info(f"ACME event: answering challenge for {request.host}")
                headers = {"content-type": "application/octet-stream"}
                return 200, headers, key_authorization.encode()
            if request.scheme != "https":
                return 404, {}, b""
            return await handler(request)

        return challenge_handler


class AcmeSession:
    """ A connection to the ACME CA, for an account. This wraps the
    ``acme`` client, and is blocking.

    The ``account`` is the dict as returned by ``register()``, or None to
    create a new account key.
    """

    def __init__(self, directory_url, account=None):
        if account:
            self._key = jose.JWK.json_loads(account["key"])
            self._regr = messages.RegistrationResource.json_loads(
                account["registration"]
            )
        else:
            self._key = jose.JWKRSA(
                key=rsa.generate_private_key(public_exponent=65537, key_size=2048)
            )
            self._regr = None
        net = client.ClientNetwork(self._key, user_agent=USER_AGENT)
        directory = client.ClientV2.get_directory(directory_url, net)
        self._client = client.ClientV2(directory, net=net)

    def register(self, contacts):
        """ Register the account with the CA, or re-use the registration we
        have. Returns the account as a dict that can be stored.
        """
        if self._regr is not None:
            self._client.net.account = self._regr
        else:
            new_account = messages.NewRegistration(
                contact=tuple(contacts), terms_of_service_agreed=True
            )
            try:
                self._regr = self._client.new_account(new_account)
            except errors.ConflictError as err:
                # The key is already registered
                regr = messages.RegistrationResource(
                    uri=err.location, body=messages.Registration()
                )
                self._regr = self._client.query_registration(regr)
        return {"key": self._key.json_dumps(), "registration": self._regr.json_dumps()}

    def issue(self, csr_pem, responder, timeout=90):
        """ Order a certificate for the CSR, answering HTTP-01 challenges
        via the responder. Returns the PEM certificate chain.
        """
        orderr = self._client.new_order(csr_pem)
        tokens = []
        try:
            for authzr in orderr.authorizations:
                if authzr.body.status == messages.STATUS_VALID:
                    continue
                challb = self._select_http01(authzr)
                response, validation = challb.response_and_validation(self._key)
                token = challb.chall.encode("token")
                responder.add(token, validation)
                tokens.append(token)
                self._client.answer_challenge(challb, response)
            deadline = datetime.datetime.now() + datetime.timedelta(seconds=timeout)
            orderr = self._client.poll_and_finalize(orderr, deadline)
        finally:
            for token in tokens:
                responder.remove(token)
        return orderr.fullchain_pem

    def _select_http01(self, authzr):
        for challb in authzr.body.challenges:
            if isinstance(challb.chall, challenges.HTTP01):
                return challb
        name = authzr.body.identifier.value
        raise AcmeError(f"CA offers no http-01 challenge for {name}")


class CertificateManager:
    """ Obtains and renews the certificate for the configured domains,
    and keeps it current in the ``store``.
    """

    def __init__(self, settings, store=None, responder=None, session_factory=None):
        if not settings.domains:
            raise ValueError("CertificateManager needs at least one domain")
        self.settings = settings
        self.store = CertificateStore() if store is None else store
        self.responder = ChallengeResponder() if responder is None else responder
        self.cache = DirCache(settings.cache_dir)
        self.state = AcmeState.UNINITIALIZED
        self._session_factory = session_factory or AcmeSession
        self._failures = 0
        self._next_order = None

    def __repr__(self):
        domains = ", ".join(self.settings.domains)
        return f"<CertificateManager for {domains} ({self.state.value})>"

    def _set_state(self, state):
        if state is not self.state:
            logger.info(f"ACME event: {self.state.value} -> {state.value}")
            self.state = state

    def load_cached(self, now=None):
        """ Make the cached certificate current, if it is still valid.
        Returns the bundle or None.
        """
        s = self.settings
        bundle = self.cache.load_certificate(s.domains, s.directory_url)
        if bundle is not None and bundle.is_valid(now):
            logger.info(f"ACME event: loaded cached certificate from {self.cache.path}")
            self.deploy(bundle)
            return bundle
        if bundle is not None:
            logger.info("ACME event: cached certificate is expired")
        else:
            logger.info("ACME event: no cached certificate")
        self._set_state(AcmeState.ORDERING)
        return None

    def deploy(self, bundle):
        """ Make the given bundle the current certificate.
        """
        self.store.swap(bundle)
        self._set_state(AcmeState.ACTIVE)
        logger.info(
            f"ACME event: deployed certificate for {', '.join(bundle.domains)}, "
            f"valid until {bundle.not_after:%Y-%m-%d %H:%M:%S}"
        )

    def renewal_due(self):
        """ The moment at which the current certificate should be renewed
        (an aware datetime), or None if there is no certificate. This is
        the configured time before expiry, but never later than when
        two thirds of the lifetime have passed, and never earlier than
        halfway through the lifetime.
        """
        bundle = self.store.current
        if bundle is None:
            return None
        lifetime = bundle.not_after - bundle.not_before
        due = min(
            bundle.not_after - self.settings.renew_before,
            bundle.not_before + lifetime * 2 / 3,
        )
        return max(due, bundle.not_before + lifetime / 2)

    def backoff(self, failures):
        """ The time to wait (in seconds) before the next attempt, after
        the given number of consecutive failures.
        """
        s = self.settings
        delay = min(s.backoff_max, s.backoff_initial * 2 ** (failures - 1))
        return delay * random.uniform(0.5, 1.0)

    def order(self):
        """ Order a new certificate and store it in the cache. This is
        blocking. Returns a ``CertificateBundle``.
        """
        s = self.settings
        account = self.cache.load_account(s.contacts, s.directory_url)
        session = self._session_factory(s.directory_url, account)
        new_account = session.register(s.contacts)
        if new_account != account:
            self.cache.store_account(s.contacts, s.directory_url, new_account)
            logger.info("ACME event: stored account in cache")

        logger.info(f"ACME event: ordering certificate for {', '.join(s.domains)}")
        key_pem, csr_pem = make_csr(s.domains)
        chain_pem = session.issue(csr_pem, self.responder, s.order_timeout)
        if not chain_pem:
            raise AcmeError("CA returned no certificate")
        bundle = CertificateBundle.from_pem(chain_pem, key_pem)
        self.cache.store_certificate(s.domains, s.directory_url, bundle)
        logger.info("ACME event: stored certificate in cache")
        return bundle

    async def run(self):
        """ Keep the certificate valid, forever. Failures are logged and
        retried; this only returns by being cancelled.
        """
        if self.state is AcmeState.UNINITIALIZED:
            await run_in_thread(self.load_cached)

        while True:
            if self.state is AcmeState.ACTIVE:
                due = self.renewal_due()
                if due is not None and self._next_order is not None:
                    due = max(due, self._next_order)
                now = datetime.datetime.now(datetime.timezone.utc)
                if due is not None and due > now:
                    delay = (due - now).total_seconds()
                    logger.info(f"ACME event: renewal due at {due:%Y-%m-%d %H:%M:%S}")
                    await sleep(min(delay, MAX_SLEEP))
                    continue
                self._set_state(AcmeState.ORDERING)

            try:
                bundle = await run_in_thread(self.order)
            except Exception as err:
                self._failures += 1
                delay = self.backoff(self._failures)
                logger.error(
                    f"ACME error: {type(err).__name__}: {err} "
                    f"(attempt {self._failures}, retrying in {delay:.0f}s)"
                )
                # The current certificate, if any, stays in use meanwhile
                await sleep(delay)
                continue

            self._failures = 0
            # No new order within the minimum interval after a success
            interval = datetime.timedelta(seconds=self.settings.min_order_interval)
            self._next_order = datetime.datetime.now(datetime.timezone.utc) + interval
            self.deploy(bundle)
