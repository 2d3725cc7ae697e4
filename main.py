"""
certrenew — CLI entry point.

Usage:
  certrenew run -d example.org                       # staging certificate
  certrenew run -d example.org -d www.example.org --production --email me@example.org
  certrenew run -d example.org --production --reload haproxy
  certrenew --debug run -d example.org               # pause on validation errors
"""
from __future__ import annotations

import argparse
import logging
import subprocess
import sys
from pathlib import Path
from typing import IO, Optional

import structlog
from pydantic import ValidationError

log = logging.getLogger(__name__)


# ── Logging setup ─────────────────────────────────────────────────────────────


def configure_logging(debug: bool) -> None:
    from config import settings

    level = logging.DEBUG if debug else getattr(logging, settings.LOG_LEVEL)
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


# ── Renewal run ───────────────────────────────────────────────────────────────


def build_config(args: argparse.Namespace):
    from config import Output, RenewConfig, settings

    return RenewConfig.build(
        domains=args.domain,
        certificate_path=args.certificate_path,
        output=Output(args.output),
        key_path=args.key_path,
        chain_path=args.chain_path,
        email=args.email or [],
        production=args.production,
        port=args.port,
        reload=args.reload,
        renew_early=args.renew_early,
        overwrite_production=args.overwrite_production,
        non_interactive=args.non_interactive,
        force=args.force,
        reachability_check=args.reachability_check or settings.REACHABILITY_CHECK,
    )


def reload_service(service: str, out: IO[str]) -> None:
    """Ask systemd to reload *service* so it picks up the new certificate."""
    from renewal.output import line

    log.info("Reloading %s", service)
    result = subprocess.run(["systemctl", "reload", service], capture_output=True, text=True)
    if result.returncode != 0:
        raise RuntimeError(
            f"could not reload {service}: systemctl exited with {result.returncode}: "
            f"{result.stderr.strip()}"
        )
    line(out, f"reloaded {service}")


def run_renewal(args: argparse.Namespace, out: Optional[IO[str]] = None) -> int:
    """Execute one renewal run and return the process exit code."""
    from protocol.client import AcmeError
    from renewal.errors import RenewalError
    from renewal.orchestrator import InstantAcme
    from renewal.runner import run
    from storage import filesystem

    out = out if out is not None else sys.stdout
    try:
        config = build_config(args)
    except (ValidationError, ValueError) as exc:
        print(f"Error: invalid arguments\n{exc}", file=sys.stderr)
        return 2

    log.info("Starting renewal for %d domain(s): %s", len(config.domains), ", ".join(config.domains))

    try:
        bundle = run(InstantAcme(), out, config, debug=args.debug)
        if bundle is None:
            return 0
        written = filesystem.store(config, bundle)
        log.info("Stored %s", ", ".join(map(str, written)))
        if config.reload:
            reload_service(config.reload, out)
    except RenewalError as exc:
        print(exc.report(), file=sys.stderr)
        return 1
    except (AcmeError, OSError, RuntimeError) as exc:
        log.debug("Renewal failed", exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    return 0


# ── CLI ───────────────────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="certrenew",
        description="Hands-off Let's Encrypt certificate renewal using HTTP-01 challenges",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  certrenew run -d example.org
  certrenew run -d example.org -d www.example.org --production --email me@example.org
  certrenew run -d example.org --production --output pem --certificate-path /etc/ssl/example.org
        """,
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Verbose logging; pause on validation errors so the challenge server can be inspected",
    )
    commands = parser.add_subparsers(dest="command")

    run_cmd = commands.add_parser("run", help="Renew certificates now")
    run_cmd.add_argument(
        "-d", "--domain",
        action="append",
        required=True,
        metavar="DOMAIN",
        help="Domain to request a certificate for; repeat for multiple subdomains",
    )
    run_cmd.add_argument(
        "--email",
        action="append",
        metavar="ADDRESS",
        help="Contact address for the ACME account; may be repeated",
    )
    run_cmd.add_argument(
        "--production",
        action="store_true",
        help="Use the Let's Encrypt production environment (default: staging)",
    )
    run_cmd.add_argument(
        "-p", "--port",
        type=int,
        default=80,
        help="Internal port that external port 80 is forwarded to (default: 80)",
    )
    run_cmd.add_argument(
        "-r", "--reload",
        metavar="SERVICE",
        help="Systemd service to reload after renewal",
    )
    run_cmd.add_argument(
        "--renew-early",
        action="store_true",
        help="Renew a certificate even if it is not due yet",
    )
    run_cmd.add_argument(
        "--force",
        action="store_true",
        help="Ignore existing certificates and always renew",
    )
    run_cmd.add_argument(
        "--overwrite-production",
        action="store_true",
        help="Request a staging certificate even if that overwrites a valid production certificate",
    )
    run_cmd.add_argument(
        "--non-interactive",
        action="store_true",
        help="Never ask questions; answer no where confirmation is needed",
    )
    run_cmd.add_argument(
        "-o", "--output",
        default="pem-separate-key",
        choices=["pem", "pem-separate-key", "pem-separate-chain", "pem-all-separate", "der"],
        help="How to encode and split the certificate, key and chain (default: pem-separate-key)",
    )
    run_cmd.add_argument(
        "-c", "--certificate-path",
        type=Path,
        default=Path("."),
        help="File (or directory) to write the certificate to; the extension is fixed automatically",
    )
    run_cmd.add_argument(
        "--key-path",
        type=Path,
        help="Where to write the private key when stored separately",
    )
    run_cmd.add_argument(
        "--chain-path",
        type=Path,
        help="Where to write the chain when stored separately",
    )
    run_cmd.add_argument(
        "--reachability-check",
        action="store_true",
        help="Check the challenge server is reachable through every domain before validation",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command != "run":
        parser.print_help()
        sys.exit(1)

    configure_logging(args.debug)
    sys.exit(run_renewal(args))


if __name__ == "__main__":
    main()
