"""
Tests for the per-run configuration, error reports and the CLI entry point.
"""
from __future__ import annotations

import io
from datetime import timedelta

import pytest
from pydantic import ValidationError

import main
from config import Output, RenewConfig
from renewal import orchestrator
from renewal.errors import OrderInvalidError, RenewalError
from tests.conftest import FakeAcme, make_bundle


# ─── RenewConfig ──────────────────────────────────────────────────────────────

def test_domains_are_normalised(tmp_path):
    config = RenewConfig.build([" Example.ORG ", "www.example.org"], tmp_path)
    assert config.domains == ["example.org", "www.example.org"]


@pytest.mark.parametrize(
    "domains",
    [[], ["  "], ["example.org", "EXAMPLE.org"]],
)
def test_invalid_domains_rejected(tmp_path, domains):
    with pytest.raises((ValidationError, ValueError)):
        RenewConfig.build(domains, tmp_path)


def test_port_range_checked(tmp_path):
    with pytest.raises(ValidationError):
        RenewConfig.build(["example.org"], tmp_path, port=0)


def test_email_checked(tmp_path):
    with pytest.raises(ValidationError):
        RenewConfig.build(["example.org"], tmp_path, email=["not-an-address"])


def test_staging_copy_leaves_original(tmp_path):
    config = RenewConfig.build(["example.org"], tmp_path, production=True)
    staging = config.staging()

    assert config.production
    assert not staging.production
    assert staging.domains == config.domains
    with pytest.raises(ValidationError):
        config.production = False


# ─── Error reports ────────────────────────────────────────────────────────────

def test_report_renders_chain_notes_and_suggestion():
    try:
        try:
            raise ConnectionResetError("peer closed")
        except ConnectionResetError as exc:
            raise OrderInvalidError("order is invalid", suggestion="is the server reachable?") from exc
    except RenewalError as err:
        err.with_note("port: 80").with_warning("Users: nginx")
        report = err.report()

    assert report.splitlines() == [
        "Error: order is invalid",
        "Caused by:",
        "   0: peer closed",
        "Note: port: 80",
        "Warning: Users: nginx",
        "Suggestion: is the server reachable?",
    ]


# ─── CLI ──────────────────────────────────────────────────────────────────────

def test_parser_defaults():
    args = main.build_parser().parse_args(["run", "-d", "example.org", "-d", "www.example.org"])
    assert args.domain == ["example.org", "www.example.org"]
    assert args.port == 80
    assert args.output == "pem-separate-key"
    assert not args.production


def test_build_config_from_args(tmp_path):
    args = main.build_parser().parse_args([
        "run", "-d", "example.org", "--production", "--output", "der",
        "--certificate-path", str(tmp_path), "--email", "me@example.org", "--non-interactive",
    ])
    config = main.build_config(args)
    assert config.production
    assert config.non_interactive
    assert config.output_config.output is Output.DER
    assert config.output_config.cert_path == tmp_path / "example_cert.der"


def test_run_renewal_stores_bundle(tmp_path, monkeypatch):
    fake = FakeAcme(make_bundle(["example.org"], timedelta(days=90)))
    monkeypatch.setattr(orchestrator, "InstantAcme", lambda: fake)
    args = main.build_parser().parse_args(
        ["run", "-d", "example.org", "--certificate-path", str(tmp_path), "--non-interactive"]
    )
    out = io.StringIO()

    assert main.run_renewal(args, out) == 0

    assert (tmp_path / "example_cert.pem").exists()
    assert (tmp_path / "example_key.pem").exists()
    assert len(fake.calls) == 1


def test_run_renewal_reports_failure(tmp_path, monkeypatch, capsys):
    class FailingAcme:
        def renew(self, config, out, debug=False):
            raise OrderInvalidError("order is invalid", suggestion="is the challenge server reachable?")

    monkeypatch.setattr(orchestrator, "InstantAcme", FailingAcme)
    args = main.build_parser().parse_args(
        ["run", "-d", "example.org", "--certificate-path", str(tmp_path), "--non-interactive"]
    )

    assert main.run_renewal(args, io.StringIO()) == 1

    err = capsys.readouterr().err
    assert "Error: order is invalid" in err
    assert "Suggestion: is the challenge server reachable?" in err
    assert not (tmp_path / "example_cert.pem").exists()


def test_run_renewal_rejects_bad_arguments(tmp_path, capsys):
    args = main.build_parser().parse_args(
        ["run", "-d", "example.org", "-d", "example.org", "--certificate-path", str(tmp_path)]
    )
    assert main.run_renewal(args, io.StringIO()) == 2
    assert "invalid arguments" in capsys.readouterr().err


def test_reload_failure_is_reported(tmp_path, monkeypatch):
    class Completed:
        returncode = 5
        stderr = "Unit nginx.service not loaded."

    monkeypatch.setattr(main.subprocess, "run", lambda *a, **kw: Completed())
    with pytest.raises(RuntimeError, match="not loaded"):
        main.reload_service("nginx", io.StringIO())
