"""
Pre-flight advice: should this renewal attempt go ahead?

Compares the request with the certificate already on disk and decides to
accept, refuse or warn.  Some outcomes need the operator's confirmation; a
run without a terminal (or with --non-interactive) never blocks waiting for
one and treats the missing answer as "no".

``force`` bypasses this module entirely; the caller checks it first.
"""
from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from datetime import timedelta
from typing import IO, Optional, Union

from cert.info import CertInfo
from config import RenewConfig
from renewal.output import line

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Refuse:
    status: Optional[str]
    warning: str
    accepted = False


@dataclass(frozen=True)
class Accept:
    status: str
    accepted = True


@dataclass(frozen=True)
class NoCert:
    status: str = "No existing certificate found, requesting fresh issuance"
    accepted = True


@dataclass(frozen=True)
class Warn:
    warning: str
    accepted = True


CheckResult = Union[Refuse, Accept, NoCert, Warn]


def given_existing(
    config: RenewConfig,
    cert: Optional[CertInfo],
    out: IO[str],
    stdin: Optional[IO[str]] = None,
) -> CheckResult:
    """Decide on the attempt described by *config* given the existing *cert*."""
    if cert is None:
        return NoCert()

    missing = missing_domains(config, cert)
    if missing:
        if len(missing) == 1:
            question = (
                "Certificate will not be valid for (sub)domain that is currently valid, "
                f"that (sub)domain is: {missing[0]}"
            )
        else:
            listed = "\n\t-".join(missing)
            question = (
                "Certificate will not be valid for (sub)domains that are currently valid, "
                f"these are:\n\t-{listed}"
            )
        if not ask_confirmation(out, config, question, stdin):
            return Refuse(status=None, warning="Not renewing, while domains are missing")

    logger.debug(
        "Deciding: production=%s staging=%s should_renew=%s expired=%s",
        config.production, cert.staging, cert.should_renew(), cert.is_expired(),
    )

    if not config.production:
        if cert.staging:
            return Accept("Requesting staging cert, certificates will not be valid")
        if cert.is_expired():
            return Accept(
                "Requesting staging cert. Overwriting expired production certificate "
                f"(expired {days_hours(cert.since_expired())} ago). "
                "Certificate will not be valid"
            )
        question = (
            "Found still valid production cert, continuing will overwrite it "
            "with a staging certificate"
        )
        if not config.overwrite_production and not ask_confirmation(out, config, question, stdin):
            return Refuse(status=None, warning="Not overwriting valid production cert")
        return Accept("Requesting staging cert, certificates will not be valid")

    if cert.staging:
        return Accept("Requesting production cert, existing certificate is staging")

    if cert.should_renew():
        if cert.is_expired():
            return Accept(
                "Renewing production cert: existing certificate expired "
                f"{days_hours(cert.since_expired())} ago"
            )
        return Accept(
            "Renewing production cert: existing certificate expires soon: "
            f"{days_hours(cert.expires_in)}"
        )

    status = f"Production cert not yet due for renewal, expires in: {days_hours(cert.expires_in)}"
    if config.renew_early:
        return Accept(status)
    return Refuse(status=status, warning="Quitting, you can force renewal using --renew-early")


def missing_domains(config: RenewConfig, cert: CertInfo) -> list[str]:
    """
    Domains the existing certificate covers that the new request drops.

    Domains added by the request are not reported: more coverage can not
    make a currently working name stop working.
    """
    requested = set(config.domains)
    return [name for name in cert.names if name not in requested]


def days_hours(duration: timedelta) -> str:
    """Format as "N days, M hours", truncating like whole days/hours."""
    total_hours = int(duration.total_seconds() // 3600)
    return f"{total_hours // 24} days, {total_hours % 24} hours"


def ask_confirmation(
    out: IO[str],
    config: RenewConfig,
    question: str,
    stdin: Optional[IO[str]] = None,
) -> bool:
    """
    Ask *question*; True only if the operator answers with a leading y/Y.

    Without a way to ask (non-interactive config or stdin not a terminal)
    the answer is no.  EOF is a no as well.
    """
    stdin = stdin if stdin is not None else sys.stdin
    line(out, question)

    if config.non_interactive or not stdin.isatty():
        line(out, "Need user confirmation however no user input possible")
        return False

    line(out, "Continue? y/n")
    answer = stdin.readline()
    if answer[:1] in ("y", "Y"):
        return True
    line(out, "Quitting, user requested exit")
    return False
