"""
Facts about an existing certificate, used to decide whether to renew.

Only the leaf certificate is parsed.  The renewal window is jittered between
8 and 10 days before expiry with a PRNG seeded by the certificate's not-after
timestamp: the same certificate always gets the same window, while a fleet of
hosts with different certificates spreads its load on the CA.
"""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional

from cryptography import x509
from cryptography.x509.oid import NameOID

from cert.bundle import CertificateBundle
from renewal.errors import CertParseError
from storage import filesystem

if TYPE_CHECKING:
    from config import RenewConfig

logger = logging.getLogger(__name__)

RENEW_PERIOD_MIN = timedelta(days=8)
RENEW_PERIOD_MAX = timedelta(days=10)


@dataclass(frozen=True)
class CertInfo:
    staging: bool
    expires_in: timedelta             # negative once expired
    seed: int                         # not-after as unix timestamp
    names: tuple[str, ...] = ()       # DNS names the certificate is valid for

    def renew_period(self) -> timedelta:
        """How long before expiry to renew, uniform in [8 days, 10 days)."""
        rng = random.Random(self.seed)
        seconds = rng.randrange(
            int(RENEW_PERIOD_MIN.total_seconds()), int(RENEW_PERIOD_MAX.total_seconds())
        )
        return timedelta(seconds=seconds)

    def should_renew(self) -> bool:
        return self.expires_in < self.renew_period()

    def is_expired(self) -> bool:
        return self.expires_in <= timedelta(0)

    def since_expired(self) -> timedelta:
        return abs(self.expires_in)


def analyze(bundle: CertificateBundle, now: Optional[datetime] = None) -> CertInfo:
    """
    Parse the leaf certificate of *bundle*.

    ``staging`` is set when any issuer organization name contains
    "STAGING" (Let's Encrypt's staging hierarchy does).
    Raises CertParseError when the leaf is not a valid PEM certificate.
    """
    try:
        cert = x509.load_pem_x509_certificate(bundle.certificate.encode())
    except ValueError as exc:
        raise CertParseError("failed to parse the signed certificate") from exc

    organizations = [
        attr.value for attr in cert.issuer.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)
    ]
    staging = any("STAGING" in str(o) for o in organizations)

    # cryptography >= 42 exposes .not_valid_after_utc (timezone-aware)
    try:
        not_after = cert.not_valid_after_utc
    except AttributeError:
        not_after = cert.not_valid_after.replace(tzinfo=timezone.utc)

    now = now or datetime.now(tz=timezone.utc)
    info = CertInfo(
        staging=staging,
        expires_in=not_after - now,
        seed=int(not_after.timestamp()),
        names=_names(cert),
    )
    logger.debug("Existing certificate: staging=%s expires_in=%s", info.staging, info.expires_in)
    return info


def _names(cert: x509.Certificate) -> tuple[str, ...]:
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        return tuple(san.value.get_values_for_type(x509.DNSName))
    except x509.ExtensionNotFound:
        return tuple(
            str(attr.value) for attr in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        )


def from_disk(config: RenewConfig) -> Optional[CertInfo]:
    """Analyze the certificate currently stored for *config*, if any."""
    bundle = filesystem.load(config)
    if bundle is None:
        return None
    return analyze(bundle)
