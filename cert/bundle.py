"""
CertificateBundle: private key, leaf certificate and chain, all PEM text.

A bundle is immutable and passed by value through the pipeline; the repr
never shows key or certificate material.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field

from renewal.errors import CertParseError

_PEM_BLOCK = re.compile(
    r"-----BEGIN (?P<label>[A-Z0-9 ]+)-----\r?\n.*?-----END (?P=label)-----\r?\n?",
    re.DOTALL,
)


def pem_blocks(text: str) -> list[tuple[str, str]]:
    """Return (label, block) pairs for every PEM block in *text*, in order."""
    return [(m.group("label"), m.group(0).strip() + "\n") for m in _PEM_BLOCK.finditer(text)]


@dataclass(frozen=True)
class CertificateBundle:
    certificate: str
    private_key: str
    chain: tuple[str, ...] = field(default_factory=tuple)

    def __repr__(self) -> str:
        return (
            "CertificateBundle(certificate='censored for security', "
            "private_key='censored for security', "
            f"chain=[{', '.join('censored for security' for _ in self.chain)}])"
        )

    @property
    def full_chain(self) -> str:
        """Leaf followed by the chain, the order reverse proxies expect."""
        return self.certificate + "".join(self.chain)

    @classmethod
    def from_key_and_fullchain(cls, private_key: str, full_chain: str) -> "CertificateBundle":
        """
        Build a bundle from the CA's PEM chain download.  The first
        certificate must be the leaf; the rest are kept in the order received
        (root last).
        """
        certs = [block for label, block in pem_blocks(full_chain) if label == "CERTIFICATE"]
        if not certs:
            raise CertParseError("no certificates in full chain")
        if len(certs) < 2:
            raise CertParseError("no chain certificates in full chain")
        return cls(certificate=certs[0], private_key=private_key, chain=tuple(certs[1:]))
