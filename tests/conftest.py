"""
Shared pytest fixtures.

Certificates
------------
``make_bundle`` issues a leaf certificate from a throwaway CA with the
cryptography library, so the renewal decision can be tested against valid,
expired and staging certificates without any CA access.

Fakes
-----
``FakeAcme`` stands in for the real ACME implementation in runner tests;
``FakeOrder``/``FakeAccount`` drive ``InstantAcme`` without HTTP.
"""
from __future__ import annotations

import socket
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import IO, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from cert.bundle import CertificateBundle
from config import Output, RenewConfig
from protocol.account import Authorization, Challenge, OrderState
from protocol.client import AuthorizationStatus, OrderStatus


# ─── Certificate factory ──────────────────────────────────────────────────────

STAGING_ISSUER = "(STAGING) Let's Encrypt"
PRODUCTION_ISSUER = "Let's Encrypt"


def _pem(cert: x509.Certificate) -> str:
    return cert.public_bytes(serialization.Encoding.PEM).decode()


def make_bundle(
    domains: list[str],
    expires_in: timedelta = timedelta(days=60),
    staging: bool = False,
) -> CertificateBundle:
    """Leaf for *domains* expiring *expires_in* from now, plus its issuer as chain."""
    now = datetime.now(tz=timezone.utc)
    organization = STAGING_ISSUER if staging else PRODUCTION_ISSUER

    ca_key = ec.generate_private_key(ec.SECP256R1())
    ca_name = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
        x509.NameAttribute(NameOID.COMMON_NAME, "Test Intermediate R3"),
    ])
    ca_cert = (
        x509.CertificateBuilder()
        .subject_name(ca_name)
        .issuer_name(ca_name)
        .public_key(ca_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=365))
        .not_valid_after(now + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(ca_key, hashes.SHA256())
    )

    leaf_key = ec.generate_private_key(ec.SECP256R1())
    leaf_cert = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]))
        .issuer_name(ca_name)
        .public_key(leaf_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now + expires_in - timedelta(days=90))
        .not_valid_after(now + expires_in)
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
            critical=False,
        )
        .sign(ca_key, hashes.SHA256())
    )

    key_pem = leaf_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    return CertificateBundle(certificate=_pem(leaf_cert), private_key=key_pem, chain=(_pem(ca_cert),))


@pytest.fixture()
def cert_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "certs"
    directory.mkdir()
    return directory


@pytest.fixture()
def make_config(cert_dir: Path):
    """Factory for RenewConfig writing into a per-test directory."""

    def _make(
        domains: Optional[list[str]] = None,
        output: Output = Output.PEM_SEPARATE_KEY,
        **kwargs: object,
    ) -> RenewConfig:
        kwargs.setdefault("non_interactive", True)
        return RenewConfig.build(
            domains=domains or ["example.org"],
            certificate_path=cert_dir,
            output=output,
            **kwargs,
        )

    return _make


@pytest.fixture()
def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


# ─── ACME fakes ───────────────────────────────────────────────────────────────


class FakeAcme:
    """Records every renew() call and returns a fixed bundle."""

    def __init__(self, bundle: CertificateBundle) -> None:
        self.bundle = bundle
        self.calls: list[RenewConfig] = []

    def renew(self, config: RenewConfig, out: IO[str], debug: bool = False) -> CertificateBundle:
        self.calls.append(config)
        env = "production" if config.production else "staging"
        out.write(f"requesting {env} certificate\nissued\n")
        return self.bundle


def pending_authorization(domain: str, types: tuple[str, ...] = ("http-01", "dns-01")) -> Authorization:
    return Authorization(
        identifier=domain,
        status=AuthorizationStatus.PENDING,
        challenges=[
            Challenge(type=t, url=f"https://acme.test/chall/{domain}/{t}", token=f"tok-{domain}-{t}")
            for t in types
        ],
    )


class FakeOrder:
    """
    Order double.  ``statuses`` are returned by successive refresh() calls;
    the last one repeats.  ``events`` records the protocol calls in order.
    """

    def __init__(
        self,
        authorizations: list[Authorization],
        statuses: list[str],
        full_chain: str = "",
        pending_certificate_polls: int = 0,
    ) -> None:
        self._authorizations = authorizations
        self._statuses = list(statuses)
        self.full_chain = full_chain
        self.pending_certificate_polls = pending_certificate_polls
        self.events: list[tuple] = []
        self.csr: Optional[bytes] = None

    def authorizations(self) -> list[Authorization]:
        return self._authorizations

    def key_authorization(self, challenge: Challenge) -> str:
        return f"{challenge.token}.thumbprint"

    def set_challenge_ready(self, url: str) -> None:
        self.events.append(("ready", url))

    def refresh(self) -> OrderState:
        status = self._statuses.pop(0) if len(self._statuses) > 1 else self._statuses[0]
        self.events.append(("poll", status))
        return OrderState(
            status=OrderStatus(status),
            authorizations=[],
            finalize="https://acme.test/finalize",
        )

    def finalize(self, csr_der: bytes) -> OrderState:
        self.csr = csr_der
        self.events.append(("finalize",))
        return OrderState(status=OrderStatus.PROCESSING, authorizations=[], finalize="")

    def certificate(self) -> Optional[str]:
        self.events.append(("certificate",))
        if self.pending_certificate_polls:
            self.pending_certificate_polls -= 1
            return None
        return self.full_chain

    def polls(self) -> int:
        return sum(1 for e in self.events if e[0] == "poll")


class FakeAccount:
    def __init__(self, order: FakeOrder) -> None:
        self.order = order
        self.ordered: list[list[str]] = []

    def new_order(self, domains: list[str]) -> FakeOrder:
        self.ordered.append(list(domains))
        return self.order
