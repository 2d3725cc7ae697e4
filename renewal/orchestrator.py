"""
RenewalOrchestrator: one certificate request against the ACME CA.

Fail-fast sequence:
  account → order → authorizations → bind challenge server →
  (reachability probe) → challenges ready → poll order ⟷ serve →
  CSR + finalize → poll certificate → CertificateBundle

The challenge server and the order poll loop each run on a worker thread;
whichever finishes first decides the outcome.  The server only ever finishes
by failing, so the poll loop winning is the normal path.  Either way the
loser is stopped before renew() moves on: the poll loop through a
threading.Event it checks on every backoff sleep, the server by shutdown().
"""
from __future__ import annotations

import logging
import sys
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import IO, Callable, Optional

from cert.bundle import CertificateBundle
from challenge.server import ChallengeServer, Http01Challenge
from config import RenewConfig, settings
from diagnostics import port as port_diagnostics
from diagnostics import reachable
from protocol import crypto
from protocol.account import Account, Order, OrderState
from protocol.client import AuthorizationStatus, OrderStatus, make_client
from renewal.errors import (
    AuthorizationError,
    ChallengeServerError,
    NoHttp01ChallengeError,
    OrderInvalidError,
    OrderTimeoutError,
)
from renewal.output import line

logger = logging.getLogger(__name__)

POLL_DEADLINE = 10.0          # seconds, hard limit on waiting for "ready"
INITIAL_DELAY = 0.25          # seconds, doubled after every poll
CERTIFICATE_INTERVAL = 1.0    # seconds between certificate polls

HTTP01 = "http-01"


def create_account(config: RenewConfig) -> Account:
    """Register a throwaway account at the production or staging CA."""
    client = make_client(config.production)
    return Account.create(client, config.email)


def prepare_challenges(order: Order) -> list[Http01Challenge]:
    """
    One Http01Challenge per pending authorization.  Already valid
    authorizations need no challenge; any other status ends the attempt.
    """
    challenges = []
    for authz in order.authorizations():
        if authz.status is AuthorizationStatus.VALID:
            logger.debug("Authorization for %s already valid", authz.identifier)
            continue
        if authz.status is not AuthorizationStatus.PENDING:
            raise AuthorizationError(
                f"authorization for {authz.identifier} is {authz.status.value}, can not complete it"
            )

        challenge = next((c for c in authz.challenges if c.type == HTTP01), None)
        if challenge is None:
            raise NoHttp01ChallengeError(f"no http01 challenge found for {authz.identifier}")

        challenges.append(
            Http01Challenge(
                url=challenge.url,
                token=challenge.token,
                key_auth=order.key_authorization(challenge),
                domain=authz.identifier,
            )
        )
    return challenges


class InstantAcme:
    """
    The real ACME implementation used by ``runner.run``.

    Collaborators and timings are injectable so tests can drive it with a
    fake account and short deadlines.
    """

    def __init__(
        self,
        account_factory: Optional[Callable[[RenewConfig], Account]] = None,
        poll_deadline: float = POLL_DEADLINE,
        initial_delay: float = INITIAL_DELAY,
        certificate_interval: float = CERTIFICATE_INTERVAL,
        stdin: Optional[IO[str]] = None,
    ) -> None:
        self.account_factory = account_factory or create_account
        self.poll_deadline = poll_deadline
        self.initial_delay = initial_delay
        self.certificate_interval = certificate_interval
        self.stdin = stdin

    def renew(self, config: RenewConfig, out: IO[str], debug: bool = False) -> CertificateBundle:
        account = self.account_factory(config)
        order = account.new_order(config.domains)
        challenges = prepare_challenges(order)
        logger.debug("Prepared %d http-01 challenge(s)", len(challenges))

        try:
            state = self.validate(config, order, challenges, out)
            if state.status is OrderStatus.INVALID:
                raise OrderInvalidError(
                    "order is invalid",
                    suggestion="is the challenge server reachable? Try the debug flag to investigate",
                )
        except (OrderInvalidError, OrderTimeoutError) as exc:
            if debug:
                self._pause(out, exc)
            raise

        names = [c.domain for c in challenges] or list(config.domains)
        return self.issue(order, names, out)

    def validate(
        self,
        config: RenewConfig,
        order: Order,
        challenges: list[Http01Challenge],
        out: IO[str],
    ) -> OrderState:
        """
        Serve the challenges while the CA validates them.  Returns the order
        state once it is ready or invalid.
        """
        try:
            server = ChallengeServer(config.port, challenges)
        except OSError as exc:
            raise port_diagnostics.cant_bind_port(config, exc) from exc

        stop = threading.Event()
        with server, ThreadPoolExecutor(max_workers=2, thread_name_prefix="renewal") as pool:
            serving = pool.submit(server.serve)
            try:
                if config.reachability_check or settings.REACHABILITY_CHECK:
                    reachable.check(config, challenges)

                # every challenge is marked ready before the order is polled
                for challenge in challenges:
                    order.set_challenge_ready(challenge.url)
                if challenges:
                    line(out, f"Waiting for the CA to validate {len(challenges)} domain(s)")

                polling = pool.submit(self.wait_for_order_ready, order, stop)
                done, _ = wait([serving, polling], return_when=FIRST_COMPLETED)
                if polling in done:
                    return polling.result()

                error = serving.exception()
                raise ChallengeServerError("Challenge server ran into problem") from error
            finally:
                stop.set()
                server.shutdown()

    def wait_for_order_ready(self, order: Order, stop: Optional[threading.Event] = None) -> OrderState:
        """
        Poll the order until it is ready or invalid, backing off from
        ``initial_delay`` by doubling, for at most ``poll_deadline`` seconds.
        Returns early (with the last seen state) when *stop* is set.
        """
        stop = stop or threading.Event()
        deadline = time.monotonic() + self.poll_deadline
        delay = self.initial_delay
        tries = 0

        while True:
            state = order.refresh()
            tries += 1
            if state.status in (OrderStatus.READY, OrderStatus.INVALID):
                logger.debug("Order %s after %d poll(s)", state.status.value, tries)
                return state

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise OrderTimeoutError(
                    f"order is not ready in time, still {state.status.value} after {tries} poll(s)",
                    suggestion="the CA may be slow, try again later",
                )
            logger.debug("Order is %s, waiting %.2fs", state.status.value, delay)
            if stop.wait(min(delay, remaining)):
                return state
            delay *= 2

    def issue(self, order: Order, names: list[str], out: IO[str]) -> CertificateBundle:
        """Finalize *order* with a fresh key and CSR, then wait for the certificate."""
        key = crypto.generate_ec_key()
        order.finalize(crypto.create_csr(key, names))

        while True:
            full_chain = order.certificate()
            if full_chain is not None:
                break
            logger.debug("Certificate not issued yet, waiting %.1fs", self.certificate_interval)
            time.sleep(self.certificate_interval)

        line(out, "Certificate issued")
        return CertificateBundle.from_key_and_fullchain(crypto.private_key_to_pem(key), full_chain)

    def _pause(self, out: IO[str], error: Exception) -> None:
        logger.error(
            "ran into error (%s) while in debug mode, pausing execution so you can investigate.",
            error,
        )
        logger.debug("Tip: check if the uri's in the above debug traces are reachable")
        line(out, "Press enter to continue")
        stdin = self.stdin if self.stdin is not None else sys.stdin
        stdin.read(1)
