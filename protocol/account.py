"""
Account and Order: the stateful face of the ACME protocol.

AcmeClient is stateless; these two classes carry the account key, the
account URL, the directory and the most recent Replay-Nonce between calls,
so the renewal orchestrator only sees the operations it cares about:

  Account.create → new_order → authorizations / key_authorization →
  set_challenge_ready → refresh → finalize → certificate

An Order is used by one thread at a time; the orchestrator hands it from
the caller to the poll loop and back, never sharing it concurrently.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from josepy.jwk import JWKRSA

from protocol import jws as jwslib
from protocol.client import AcmeClient, AcmeError, AuthorizationStatus, OrderStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Challenge:
    type: str
    url: str
    token: str
    status: str = "pending"

    @classmethod
    def from_json(cls, body: dict) -> "Challenge":
        return cls(
            type=body.get("type", ""),
            url=body.get("url", ""),
            token=body.get("token", ""),
            status=body.get("status", "pending"),
        )


@dataclass(frozen=True)
class Authorization:
    identifier: str
    status: AuthorizationStatus
    challenges: list[Challenge] = field(default_factory=list)

    @classmethod
    def from_json(cls, body: dict) -> "Authorization":
        return cls(
            identifier=body.get("identifier", {}).get("value", ""),
            status=AuthorizationStatus(body.get("status", "pending")),
            challenges=[Challenge.from_json(c) for c in body.get("challenges", [])],
        )


@dataclass(frozen=True)
class OrderState:
    status: OrderStatus
    authorizations: list[str]
    finalize: str
    certificate: Optional[str] = None
    error: Optional[dict] = None

    @classmethod
    def from_json(cls, body: dict) -> "OrderState":
        return cls(
            status=OrderStatus(body.get("status", "pending")),
            authorizations=list(body.get("authorizations", [])),
            finalize=body.get("finalize", ""),
            certificate=body.get("certificate"),
            error=body.get("error"),
        )


class Account:
    def __init__(self, client: AcmeClient, key: JWKRSA, url: str, directory: dict, nonce: str) -> None:
        self.client = client
        self.key = key
        self.url = url
        self.directory = directory
        self._nonce = nonce

    @classmethod
    def create(cls, client: AcmeClient, contacts: list[str]) -> "Account":
        """Register a new account with a freshly generated key."""
        directory = client.get_directory()
        nonce = client.get_nonce(directory)
        key = jwslib.generate_account_key()
        url, nonce = client.create_account(key, contacts, nonce, directory)
        logger.debug("Registered ACME account %s", url)
        return cls(client, key, url, directory, nonce)

    def nonce(self) -> str:
        """Return a usable nonce, fetching one when the last was consumed."""
        nonce, self._nonce = self._nonce, ""
        return nonce or self.client.get_nonce(self.directory)

    def remember(self, nonce: str) -> None:
        self._nonce = nonce

    def new_order(self, domains: list[str]) -> "Order":
        body, order_url, nonce = self.client.create_order(
            domains, self.key, self.url, self.nonce(), self.directory
        )
        self.remember(nonce)
        logger.debug("Created order %s for %s", order_url, ", ".join(domains))
        return Order(self, order_url, OrderState.from_json(body))


class Order:
    def __init__(self, account: Account, url: str, state: OrderState) -> None:
        self.account = account
        self.url = url
        self.state = state

    def authorizations(self) -> list[Authorization]:
        result = []
        for auth_url in self.state.authorizations:
            body, _ = self._call("get_authorization", auth_url)
            result.append(Authorization.from_json(body))
        return result

    def key_authorization(self, challenge: Challenge) -> str:
        return jwslib.compute_key_authorization(challenge.token, self.account.key)

    def set_challenge_ready(self, challenge_url: str) -> None:
        logger.debug("Marking challenge %s ready", challenge_url)
        self._call("respond_to_challenge", challenge_url)

    def refresh(self) -> OrderState:
        body, _ = self._call("get_order", self.url)
        self.state = OrderState.from_json(body)
        return self.state

    def finalize(self, csr_der: bytes) -> OrderState:
        body, _ = self._call("finalize_order", self.state.finalize, csr_der)
        self.state = OrderState.from_json(body)
        return self.state

    def certificate(self) -> Optional[str]:
        """
        Return the PEM chain once issued, None while the CA is still
        processing.  Raises AcmeError if the order turned invalid.
        """
        state = self.refresh()
        if state.status is OrderStatus.INVALID:
            raise AcmeError(0, state.error or {"type": "invalid", "detail": "Order became invalid"})
        if state.status is not OrderStatus.VALID or not state.certificate:
            return None
        pem, _ = self._call("download_certificate", state.certificate)
        return pem

    def _call(self, method: str, url: str, *args: object) -> tuple:
        account = self.account
        result = getattr(account.client, method)(
            url, *args, account.key, account.url, account.nonce(), account.directory
        )
        account.remember(result[-1])
        return result
