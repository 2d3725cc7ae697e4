"""
Application configuration.

Two layers:
  * ``Settings`` — process environment via Pydantic Settings.  All values can
    be overridden by environment variables or a .env file.
  * ``RenewConfig`` — the immutable description of one renewal run, built from
    the command line.  The staging dry-run works on a copy made with
    ``RenewConfig.staging()``; nothing ever mutates a config in place.
"""
from __future__ import annotations

import enum
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Logging ────────────────────────────────────────────────────────────
    LOG_LEVEL: str = "WARNING"

    # ── CA endpoints ───────────────────────────────────────────────────────
    ACME_DIRECTORY_PRODUCTION: str = "https://acme-v02.api.letsencrypt.org/directory"
    ACME_DIRECTORY_STAGING: str = "https://acme-staging-v02.api.letsencrypt.org/directory"

    # ── ACME TLS (for testing against Pebble / self-signed CAs) ───────────
    ACME_CA_BUNDLE: str = ""       # Path to CA cert bundle; empty = system default
    ACME_INSECURE: bool = False    # Skip TLS verification (never use in production)
    HTTP_TIMEOUT: int = 30

    # ── Diagnostics ────────────────────────────────────────────────────────
    REACHABILITY_CHECK: bool = False
    HAPROXY_CONFIG_PATH: str = "/etc/haproxy/haproxy.cfg"

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {allowed}")
        return v.upper()


# Module-level singleton — import and use everywhere.
settings = Settings()


# ─── Output layout ────────────────────────────────────────────────────────────


class Encoding(str, enum.Enum):
    PEM = "pem"
    DER = "der"

    @property
    def extension(self) -> str:
        return self.value


class Output(str, enum.Enum):
    """
    How to store the issued key, certificate and chain.

      pem                 certificate, chain and key in one file (haproxy)
      pem-separate-key    certificate + chain in one file, key apart (nginx, apache)
      pem-separate-chain  certificate + key in one file, chain apart
      pem-all-separate    every item in its own file
      der                 DER encoded; certificate, key and each chain item apart
    """

    PEM = "pem"
    PEM_SEPARATE_KEY = "pem-separate-key"
    PEM_SEPARATE_CHAIN = "pem-separate-chain"
    PEM_ALL_SEPARATE = "pem-all-separate"
    DER = "der"

    @property
    def encoding(self) -> Encoding:
        return Encoding.DER if self is Output.DER else Encoding.PEM

    @property
    def separate_key(self) -> bool:
        return self in (Output.PEM_SEPARATE_KEY, Output.PEM_ALL_SEPARATE, Output.DER)

    @property
    def separate_chain(self) -> bool:
        return self in (Output.PEM_SEPARATE_CHAIN, Output.PEM_ALL_SEPARATE, Output.DER)


def name(domains: List[str]) -> str:
    """
    Base name for derived file names: the second-level label of the
    shortest domain, e.g. ``example`` for ``www.example.org``.
    """
    shortest = min(domains, key=len)
    if "." not in shortest:
        raise ValueError(
            f"shortest domain {shortest!r} has no top level domain (org/net/com etc)"
        )
    without_tld = shortest.rsplit(".", 1)[0]
    return without_tld.rsplit(".", 1)[-1]


def fix_extension(encoding: Encoding, path: Path) -> Path:
    """Append the encoding's extension, refusing a known but wrong one."""
    suffix = path.suffix.lstrip(".")
    if not suffix:
        return path.with_suffix(f".{encoding.extension}")
    if suffix == encoding.extension:
        return path
    if suffix in {e.extension for e in Encoding}:
        raise ValueError(
            f"File path {path} has wrong extension \"{suffix}\", only valid extension "
            f"is {encoding.extension}. Leave out the extension, the correct one is "
            "added for you"
        )
    return path.with_name(f"{path.name}.{encoding.extension}")


def derive_path(cert_path: Path, base: str, kind: str, extension: str) -> Path:
    directory = cert_path if cert_path.is_dir() else cert_path.parent
    return directory / f"{base}_{kind}.{extension}"


class OutputConfig(BaseModel):
    """Resolved on-disk locations for one certificate."""

    model_config = ConfigDict(frozen=True)

    output: Output = Output.PEM_SEPARATE_KEY
    cert_path: Path
    key_path: Path
    chain_path: Path

    @classmethod
    def resolve(
        cls,
        output: Output,
        certificate_path: Path,
        domains: List[str],
        key_path: Optional[Path] = None,
        chain_path: Optional[Path] = None,
    ) -> "OutputConfig":
        encoding = output.encoding
        base = name(domains)
        if certificate_path.is_dir():
            cert = derive_path(certificate_path, base, "cert", encoding.extension)
        else:
            cert = fix_extension(encoding, certificate_path)

        key = (
            fix_extension(encoding, key_path)
            if key_path is not None
            else derive_path(certificate_path, base, "key", encoding.extension)
        )
        chain = (
            fix_extension(encoding, chain_path)
            if chain_path is not None
            else derive_path(certificate_path, base, "chain", encoding.extension)
        )
        return cls(output=output, cert_path=cert, key_path=key, chain_path=chain)


# ─── Per-run configuration ────────────────────────────────────────────────────


class RenewConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    domains: List[str]
    email: List[str] = []
    production: bool = False
    port: int = 80
    output_config: OutputConfig
    reload: Optional[str] = None
    renew_early: bool = False
    overwrite_production: bool = False
    non_interactive: bool = False   # do not ask questions
    force: bool = False
    reachability_check: bool = False

    @field_validator("domains")
    @classmethod
    def validate_domains(cls, v: List[str]) -> List[str]:
        domains = [d.strip().lower() for d in v if d.strip()]
        if not domains:
            raise ValueError("at least one domain is required")
        duplicates = sorted({d for d in domains if domains.count(d) > 1})
        if duplicates:
            raise ValueError(f"duplicate domain(s): {', '.join(duplicates)}")
        return domains

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: List[str]) -> List[str]:
        for address in v:
            if "@" not in address:
                raise ValueError(f"not an email address: {address!r}")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    def staging(self) -> "RenewConfig":
        """Copy of this config that targets the staging environment."""
        return self.model_copy(update={"production": False})

    @classmethod
    def build(
        cls,
        domains: List[str],
        certificate_path: Path,
        output: Output = Output.PEM_SEPARATE_KEY,
        key_path: Optional[Path] = None,
        chain_path: Optional[Path] = None,
        **kwargs: object,
    ) -> "RenewConfig":
        output_config = OutputConfig.resolve(
            output, certificate_path, domains, key_path=key_path, chain_path=chain_path
        )
        return cls(domains=domains, output_config=output_config, **kwargs)
