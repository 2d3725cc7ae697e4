"""
Certificate private-key generation and CSR creation.

Boundary: this module owns everything cryptographic that is specific to the
issued certificate.  Account-key operations (JWK, JWS) live in protocol/jws.py.
"""
from __future__ import annotations

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec


def generate_ec_key() -> ec.EllipticCurvePrivateKey:
    """Generate an EC P-256 private key for the certificate."""
    return ec.generate_private_key(ec.SECP256R1())


def private_key_to_pem(key: ec.EllipticCurvePrivateKey) -> str:
    """Serialize a private key to an unencrypted PKCS8 PEM string."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def create_csr(private_key: ec.EllipticCurvePrivateKey, domains: list[str]) -> bytes:
    """
    Create a DER-encoded CSR covering exactly *domains* as
    SubjectAlternativeNames.  The subject is left empty; ACME CAs take the
    identifiers from the SAN extension.
    """
    names = list(dict.fromkeys(domains))  # deduplicate, preserve order
    if not names:
        raise ValueError("a CSR needs at least one domain")

    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([]))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in names]),
            critical=False,
        )
    )

    csr = builder.sign(private_key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.DER)
