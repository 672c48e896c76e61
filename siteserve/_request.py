"""
This module implements the HttpRequest class that is passed as an argument
into the handler functions.
"""


CONNECTING = 0
CONNECTED = 1
DONE = 2


class DisconnectedError(IOError):
    """ An error raised when the connection is disconnected by the client.
    Subclass of IOError. You don't need to catch these - it is considered
    ok for a handler to exit by this.
    """


class HttpRequest:
    """ Represents an HTTP request. An object of this class is passed to
    the request handler. It gives access to the request metadata, and
    provides ``accept()`` and ``send()`` to produce the response.
    """

    __slots__ = ("_scope", "_headers", "_receive", "_send", "_app_state")

    def __init__(self, scope, receive, send):
        assert scope["type"] == "http", f"Unexpected http scope type {scope['type']}"
        self._scope = scope
        self._headers = None
        self._receive = receive
        self._send = send
        self._app_state = CONNECTING  # CONNECTING -> CONNECTED -> DONE

    @property
    def scope(self):
        """ A dict representing the raw ASGI scope.
        """
        return self._scope

    @property
    def method(self):
        """ The HTTP method (string). E.g. 'HEAD', 'GET', 'PUT'.
        """
        return self._scope["method"]

    @property
    def headers(self):
        """ A dictionary representing the headers. Keys are lowercase
        strings. Values are decoded as latin-1, so that any header value
        a client sends maps one-to-one onto a string.
        """
        if self._headers is None:
            self._headers = dict(
                (key.decode("latin-1").lower(), val.decode("latin-1"))
                for key, val in self._scope["headers"]
            )
        return self._headers

    @property
    def url(self):
        """ The full (unquoted) url, composed of scheme, host, port and path.
        """
        return f"{self.scheme}://{self.host}:{self.port}{self.path}"

    @property
    def scheme(self):
        """ The URL scheme (string). E.g. 'http' or 'https'.
        """
        return self._scope["scheme"]

    @property
    def host(self):
        """ The requested host name, taken from the Host header,
        or ``scope['server'][0]`` if there is not Host header.
        """
        return self.headers.get("host", self._scope["server"][0]).split(":")[0]

    @property
    def port(self):
        """ The server's port (integer).
        """
        return self._scope["server"][1]

    @property
    def path(self):
        """ The path part of the URL (a string, with percent escapes decoded).
        """
        return self._scope.get("root_path", "") + self._scope["path"]

    async def accept(self, status=200, headers={}):
        """ Accept this http request. Sends the status code and headers.
        Handlers normally return ``(status, headers, body)`` instead;
        this is what is used to send that response.
        """
        if self._app_state != CONNECTING:
            raise IOError("Cannot accept an already accepted connection.")
        status = int(status)
        try:
            rawheaders = [(k.encode(), v.encode()) for k, v in headers.items()]
        except Exception:
            raise TypeError("Header keys and values must all be strings.")
        self._app_state = CONNECTED
        msg = {"type": "http.response.start", "status": status, "headers": rawheaders}
        await self._send(msg)

    async def send(self, data, more=True):
        """ Send (a chunk of) data, representing the response. Note that
        ``accept()`` must be called first.
        """
        more = bool(more)
        if isinstance(data, str):
            data = data.encode()
        elif not isinstance(data, bytes):
            raise TypeError(f"Can only send bytes/str over http, not {type(data)}.")
        message = {"type": "http.response.body", "body": data, "more_body": more}
        if self._app_state == CONNECTED:
            if not more:
                self._app_state = DONE
            await self._send(message)
        elif self._app_state == CONNECTING:
            raise IOError("Cannot send before calling accept.")
        else:
            raise IOError("Cannot send to a closed connection.")
