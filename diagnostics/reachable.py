"""
Check that the challenge server can be reached the way the CA will reach it.

Requests ``http://{domain}/.well-known/acme-challenge/{token}`` for every
requested domain, one after the other, with a short timeout.  Run before the
CA is told to validate, so a forwarding problem is reported with a hint
instead of as an invalid order.
"""
from __future__ import annotations

import logging
import socket
from typing import TYPE_CHECKING

import requests

from challenge.server import CHALLENGE_PATH, Http01Challenge
from renewal.errors import UnreachableError

if TYPE_CHECKING:
    from config import RenewConfig

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 0.25  # seconds

_FORWARD_SUGGESTION = (
    "Check if port 80 is forwarded to a port on this machine. If it is configure "
    "certrenew to use that port with the `--port` option. If not forward port 80 "
    "to this machine"
)


def local_ip() -> str:
    """This machine's address on the default route.  Nothing is sent."""
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.connect(("192.0.2.1", 80))
        return sock.getsockname()[0]


def _with_local_ip_note(error: UnreachableError) -> UnreachableError:
    try:
        error.with_note(f"This machine's local IP address: {local_ip()}")
    except OSError as exc:
        error.with_warning(f"Could not find this machine's local IP: {exc}")
    return error


def probe(domain: str, challenge: Http01Challenge, timeout: float = PROBE_TIMEOUT) -> None:
    url = f"http://{domain}{CHALLENGE_PATH}{challenge.token}"
    logger.debug("checking: %s", url)
    try:
        resp = requests.get(url, timeout=timeout)
    except (requests.Timeout, requests.ConnectionError) as exc:
        error = UnreachableError(
            f"Could not reach certrenew via {domain}",
            suggestion="Forward port 80 to this machine",
        )
        raise _with_local_ip_note(error) from exc

    if resp.status_code == 200:
        if resp.text != challenge.key_auth:
            raise UnreachableError(
                f"Reached a server via {domain} that is not certrenew's challenge server",
                suggestion=_FORWARD_SUGGESTION,
            )
        return

    if resp.status_code in (404, 503):
        message = f"Could not reach certrenew via {domain}"
    else:
        message = f"Could not reach certrenew via {domain}, got status code {resp.status_code}"
    error = UnreachableError(
        message,
        suggestion=_FORWARD_SUGGESTION,
        notes=["Another server is getting traffic for external port 80"],
    )
    raise _with_local_ip_note(error)


def check(config: RenewConfig, challenges: list[Http01Challenge]) -> None:
    """Probe every requested domain; raises UnreachableError on the first failure."""
    if not challenges:
        return
    challenge = challenges[0]
    for domain in config.domains:
        probe(domain, challenge)
