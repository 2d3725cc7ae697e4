"""
HTTP-01 challenge responder.

Serves ``GET /.well-known/acme-challenge/<token>`` for every challenge of one
order, for the lifetime of one renewal attempt.  The socket is bound when the
server is constructed, so a port conflict surfaces before the CA is told to
validate anything.

An unknown token still gets a 200 with a fixed diagnostic body instead of a
404: when probing by hand, "server up, token unknown" and "request never
reached us" look different.
"""
from __future__ import annotations

import functools
import logging
import threading
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from types import MappingProxyType
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

CHALLENGE_PATH = "/.well-known/acme-challenge/"
UNKNOWN_TOKEN_BODY = "Error no auth key for token"


@dataclass(frozen=True)
class Http01Challenge:
    url: str          # challenge URL at the CA, POSTed to mark it ready
    token: str
    key_auth: str
    domain: str


class _ChallengeHandler(BaseHTTPRequestHandler):
    """Serves only the ACME HTTP-01 challenge path; 404 for everything else."""

    def __init__(self, *args: object, key_auths: Mapping[str, str], **kwargs: object) -> None:
        self.key_auths = key_auths
        super().__init__(*args, **kwargs)

    def do_GET(self) -> None:
        if not self.path.startswith(CHALLENGE_PATH):
            self.send_response(404)
            self.end_headers()
            return

        token = self.path[len(CHALLENGE_PATH):]
        key_auth = self.key_auths.get(token)
        if key_auth is None:
            logger.error("Do not have an auth key for token %s", token)
            body = UNKNOWN_TOKEN_BODY.encode()
        else:
            logger.debug("Got request for auth key of token %s", token)
            body = key_auth.encode("ascii")

        self.send_response(200)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, fmt: str, *args: object) -> None:
        logger.debug("%s - %s", self.address_string(), fmt % args)


class ChallengeServer:
    """
    Minimal HTTP server for the HTTP-01 challenges of one order.

    Usage:
        with ChallengeServer(port, challenges) as srv:   # binds, may raise OSError
            # run srv.serve() on a worker thread, tell the CA to verify ...
        # leaving the block shuts down and releases the socket

    The token→key-authorization table is built once and is read-only, so
    request threads share it without locking.
    """

    def __init__(self, port: int, challenges: list[Http01Challenge], host: str = "0.0.0.0") -> None:
        self.key_auths: Mapping[str, str] = MappingProxyType(
            {c.token: c.key_auth for c in challenges}
        )
        handler = functools.partial(_ChallengeHandler, key_auths=self.key_auths)
        self._server: Optional[ThreadingHTTPServer] = ThreadingHTTPServer((host, port), handler)
        self._server.daemon_threads = True
        self._lock = threading.Lock()
        self._serving = False
        logger.debug("Challenge server bound to %s:%d serving %d token(s)", host, port, len(self.key_auths))

    @property
    def port(self) -> int:
        if self._server is None:
            raise RuntimeError("Challenge server is closed")
        return self._server.server_address[1]

    def serve(self) -> None:
        """
        Handle requests until shutdown() is called.  Blocks; run it on a
        worker thread and race it against whatever waits on the CA.
        Returns at once if the server was already shut down.
        """
        with self._lock:
            server = self._server
            if server is None:
                return
            self._serving = True
        server.serve_forever(poll_interval=0.1)

    def shutdown(self) -> None:
        """Stop serving and release the socket.  Safe to call twice."""
        with self._lock:
            server, self._server = self._server, None
            serving = self._serving
        if server is None:
            return
        # socketserver.shutdown waits for serve_forever, which may never have run
        if serving:
            server.shutdown()
        server.server_close()
        logger.debug("Challenge server stopped")

    def __enter__(self) -> "ChallengeServer":
        return self

    def __exit__(self, *_: object) -> None:
        self.shutdown()
