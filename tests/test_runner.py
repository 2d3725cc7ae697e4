"""
Tests for the top-level run: advice, staging dry-run and forced renewal.
"""
from __future__ import annotations

import io
from datetime import timedelta

import pytest

from renewal.output import IndentedOutput
from renewal.runner import run
from storage import filesystem
from tests.conftest import FakeAcme, make_bundle


@pytest.fixture()
def acme():
    return FakeAcme(make_bundle(["example.org"]))


def test_fresh_issuance_in_production_runs_staging_first(make_config, acme):
    """No certificate on disk, production: dry-run on staging, then production."""
    out = io.StringIO()
    config = make_config(production=True)

    bundle = run(acme, out, config)

    assert bundle is acme.bundle
    assert [c.production for c in acme.calls] == [False, True]
    assert acme.calls[0] == config.staging()
    assert out.getvalue() == (
        "No existing certificate found, requesting fresh issuance\n"
        "checking if the request can complete against the staging environment\n"
        "\trequesting staging certificate\n"
        "\tissued\n"
        "requesting production certificate\n"
        "requesting production certificate\n"
        "issued\n"
    )


def test_staging_request_has_no_dry_run(make_config, acme):
    out = io.StringIO()
    run(acme, out, make_config(production=False))

    assert [c.production for c in acme.calls] == [False]
    assert "\t" not in out.getvalue()


def test_refusal_returns_none_without_renewing(make_config, acme):
    config = make_config(production=True)
    filesystem.store(config, make_bundle(["example.org"], timedelta(days=60)))
    out = io.StringIO()

    assert run(acme, out, config) is None
    assert acme.calls == []
    lines = out.getvalue().splitlines()
    assert lines[0].startswith("Production cert not yet due for renewal, expires in: 59 days")
    assert lines[1] == "Quitting, you can force renewal using --renew-early"


def test_refusal_without_status_only_warns(make_config, acme):
    # valid production cert, staging request, no terminal to confirm on
    config = make_config(production=False)
    filesystem.store(config, make_bundle(["example.org"], timedelta(days=60)))
    out = io.StringIO()

    assert run(acme, out, config) is None
    assert out.getvalue().splitlines()[-1] == "Not overwriting valid production cert"


def test_force_skips_advice(make_config, acme):
    config = make_config(production=True, force=True)
    filesystem.store(config, make_bundle(["example.org"], timedelta(days=60)))
    out = io.StringIO()

    run(acme, out, config)

    # no advice and no staging dry-run
    assert [c.production for c in acme.calls] == [True]
    assert "not yet due" not in out.getvalue()


def test_corrupt_certificate_warns_and_renews(make_config, acme, cert_dir):
    config = make_config(production=False)
    (cert_dir / "example_cert.pem").write_text(
        "-----BEGIN CERTIFICATE-----\nbm90IGEgY2VydA==\n-----END CERTIFICATE-----\n"
    )
    out = io.StringIO()

    assert run(acme, out, config) is acme.bundle

    lines = out.getvalue().splitlines()
    assert lines[0] == "Warning: renew advise impossible"
    assert lines[1] == "   0: failed to parse the signed certificate"
    assert lines[2].startswith("   1: ")
    assert "Note: This might mean the previous certificate is corrupt or broken" in lines
    assert len(acme.calls) == 1


def test_expired_staging_replaced_with_production(make_config, acme):
    config = make_config(production=True)
    filesystem.store(config, make_bundle(["example.org"], timedelta(days=-1), staging=True))
    out = io.StringIO()

    run(acme, out, config)

    assert out.getvalue().startswith("Requesting production cert, existing certificate is staging\n")
    assert len(acme.calls) == 2


# ─── IndentedOutput ───────────────────────────────────────────────────────────

def test_indented_output_handles_partial_writes():
    out = io.StringIO()
    indented = IndentedOutput(out)

    indented.write("one")
    indented.write(" line\ntwo\n")
    indented.write("three\n")

    assert out.getvalue() == "\tone line\n\ttwo\n\tthree\n"


def test_indented_output_nests():
    out = io.StringIO()
    IndentedOutput(IndentedOutput(out)).write("deep\n")
    assert out.getvalue() == "\t\tdeep\n"
