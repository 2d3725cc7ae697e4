"""
Top-level renewal run.

  force  → request straight away
  else   → advise on the existing certificate, stop on refusal
  production → a staging dry-run first, then the production request

The dry-run catches a broken setup (port forwarding, DNS) against the
staging CA, whose rate limits are far more forgiving than production's.
"""
from __future__ import annotations

import logging
from typing import IO, Optional, Protocol

from cert import info as cert_info
from cert.bundle import CertificateBundle
from config import RenewConfig
from renewal import advise
from renewal.errors import CertParseError, error_chain
from renewal.output import IndentedOutput, line

logger = logging.getLogger(__name__)


class AcmeImpl(Protocol):
    """Anything that can turn a RenewConfig into a signed bundle."""

    def renew(self, config: RenewConfig, out: IO[str], debug: bool = False) -> CertificateBundle:
        ...


def check(config: RenewConfig, out: IO[str], stdin: Optional[IO[str]] = None) -> advise.CheckResult:
    """
    Advise on *config* given the certificate on disk.  A certificate that
    can not be read does not stop the run: it is reported and renewal goes
    ahead as a Warn result.
    """
    try:
        existing = cert_info.from_disk(config)
    except CertParseError as exc:
        line(out, "Warning: renew advise impossible")
        for i, err in enumerate(error_chain(exc)):
            line(out, f"   {i}: {err}")
        line(out, "Note: This might mean the previous certificate is corrupt or broken")
        return advise.Warn("Renewing anyway, previous certificate could not be checked")
    return advise.given_existing(config, existing, out, stdin)


def run(
    acme_impl: AcmeImpl,
    out: IO[str],
    config: RenewConfig,
    debug: bool = False,
    stdin: Optional[IO[str]] = None,
) -> Optional[CertificateBundle]:
    """Returns the new bundle, or None when renewal was refused."""
    if config.force:
        logger.debug("Forced renewal, skipping advice")
        return acme_impl.renew(config, out, debug)

    result = check(config, out, stdin)
    if isinstance(result, advise.Refuse):
        if result.status is not None:
            line(out, result.status)
        line(out, result.warning)
        return None
    if isinstance(result, advise.Warn):
        line(out, result.warning)
    else:
        line(out, result.status)

    if config.production:
        line(out, "checking if the request can complete against the staging environment")
        acme_impl.renew(config.staging(), IndentedOutput(out), debug)
        line(out, "requesting production certificate")

    return acme_impl.renew(config, out, debug)
