"""
Certificate storage in the layouts reverse proxies expect.

  pem                 <cert>            leaf + chain + key
  pem-separate-key    <cert>, <key>     leaf + chain | key
  pem-separate-chain  <cert>, <chain>   leaf + key   | chain
  pem-all-separate    <cert>, <key>, <chain>
  der                 <cert>, <key>, <chain stem>_<n>.der per chain item

All writes are atomic: temp file + fsync + atomic rename.  Private keys are
written with mode 0o600.
"""
from __future__ import annotations

import logging
import stat
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from cert.bundle import CertificateBundle, pem_blocks
from config import Output
from renewal.errors import CertParseError
from storage.atomic import atomic_write_bytes, atomic_write_text

if TYPE_CHECKING:
    from config import RenewConfig

logger = logging.getLogger(__name__)

_KEY_MODE = stat.S_IRUSR | stat.S_IWUSR  # 0o600


# ─── Loading ──────────────────────────────────────────────────────────────────


def load(config: RenewConfig) -> Optional[CertificateBundle]:
    """
    Read the certificate stored for *config*.

    Returns None when no certificate file exists.  A missing key or chain
    file leaves that part of the bundle empty; the leaf alone is enough to
    decide whether to renew.  Raises CertParseError on unreadable content.
    """
    paths = config.output_config
    if not paths.cert_path.exists():
        logger.debug("No certificate at %s", paths.cert_path)
        return None

    if paths.output is Output.DER:
        return _load_der(config)
    return _load_pem(config)


def _load_pem(config: RenewConfig) -> CertificateBundle:
    paths = config.output_config
    try:
        text = paths.cert_path.read_text()
    except (OSError, UnicodeDecodeError) as exc:
        raise CertParseError(f"could not read {paths.cert_path}") from exc

    blocks = pem_blocks(text)
    certs = [block for label, block in blocks if label == "CERTIFICATE"]
    keys = [block for label, block in blocks if label.endswith("PRIVATE KEY")]
    if not certs:
        raise CertParseError(f"can not find a certificate label in the pem content of {paths.cert_path}")

    leaf, chain = certs[0], certs[1:]
    key = keys[0] if keys else ""

    try:
        if paths.output.separate_key and paths.key_path.exists():
            key_blocks = pem_blocks(paths.key_path.read_text())
            key = next((b for label, b in key_blocks if label.endswith("PRIVATE KEY")), "")
        if paths.output.separate_chain and paths.chain_path.exists():
            chain = [b for label, b in pem_blocks(paths.chain_path.read_text()) if label == "CERTIFICATE"]
    except (OSError, UnicodeDecodeError) as exc:
        raise CertParseError("could not read the private key or chain file") from exc

    return CertificateBundle(certificate=leaf, private_key=key, chain=tuple(chain))


def _load_der(config: RenewConfig) -> CertificateBundle:
    paths = config.output_config
    try:
        leaf = _der_to_pem(paths.cert_path.read_bytes())
        chain = tuple(_der_to_pem(p.read_bytes()) for p in _der_chain_paths(paths.chain_path))
    except (OSError, ValueError) as exc:
        raise CertParseError(f"could not read der certificate {paths.cert_path}") from exc

    key = ""
    if paths.key_path.exists():
        try:
            private_key = serialization.load_der_private_key(paths.key_path.read_bytes(), password=None)
        except ValueError as exc:
            raise CertParseError(f"could not read der private key {paths.key_path}") from exc
        key = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode()

    return CertificateBundle(certificate=leaf, private_key=key, chain=chain)


def _der_to_pem(der: bytes) -> str:
    return x509.load_der_x509_certificate(der).public_bytes(serialization.Encoding.PEM).decode()


def _der_chain_paths(chain_path: Path) -> list[Path]:
    paths = []
    candidate = _der_chain_path(chain_path, 0)
    while candidate.exists():
        paths.append(candidate)
        candidate = _der_chain_path(chain_path, len(paths))
    return paths


def _der_chain_path(chain_path: Path, index: int) -> Path:
    return chain_path.with_name(f"{chain_path.stem}_{index}{chain_path.suffix}")


# ─── Storing ──────────────────────────────────────────────────────────────────


def store(config: RenewConfig, bundle: CertificateBundle) -> list[Path]:
    """Write *bundle* in the configured layout. Returns the written paths."""
    paths = config.output_config
    output = paths.output

    if output is Output.DER:
        return _store_der(config, bundle)

    written: list[Path] = []
    chain = "".join(bundle.chain)

    if output is Output.PEM:
        atomic_write_text(paths.cert_path, bundle.certificate + chain + bundle.private_key, mode=_KEY_MODE)
        written.append(paths.cert_path)
    elif output is Output.PEM_SEPARATE_KEY:
        atomic_write_text(paths.cert_path, bundle.certificate + chain)
        atomic_write_text(paths.key_path, bundle.private_key, mode=_KEY_MODE)
        written += [paths.cert_path, paths.key_path]
    elif output is Output.PEM_SEPARATE_CHAIN:
        atomic_write_text(paths.cert_path, bundle.certificate + bundle.private_key, mode=_KEY_MODE)
        atomic_write_text(paths.chain_path, chain)
        written += [paths.cert_path, paths.chain_path]
    else:
        atomic_write_text(paths.cert_path, bundle.certificate)
        atomic_write_text(paths.key_path, bundle.private_key, mode=_KEY_MODE)
        atomic_write_text(paths.chain_path, chain)
        written += [paths.cert_path, paths.key_path, paths.chain_path]

    logger.info("Stored certificate as %s: %s", output.value, ", ".join(map(str, written)))
    return written


def _store_der(config: RenewConfig, bundle: CertificateBundle) -> list[Path]:
    paths = config.output_config
    leaf = x509.load_pem_x509_certificate(bundle.certificate.encode())
    key = serialization.load_pem_private_key(bundle.private_key.encode(), password=None)

    atomic_write_bytes(paths.cert_path, leaf.public_bytes(serialization.Encoding.DER))
    atomic_write_bytes(
        paths.key_path,
        key.private_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ),
        mode=_KEY_MODE,
    )
    written = [paths.cert_path, paths.key_path]

    for index, pem in enumerate(bundle.chain):
        chain_cert = x509.load_pem_x509_certificate(pem.encode())
        path = _der_chain_path(paths.chain_path, index)
        atomic_write_bytes(path, chain_cert.public_bytes(serialization.Encoding.DER))
        written.append(path)

    # drop leftovers of a previous, longer chain so loading stays exact
    for stale in _der_chain_paths(paths.chain_path)[len(bundle.chain):]:
        stale.unlink()

    logger.info("Stored certificate as der: %s", ", ".join(map(str, written)))
    return written
