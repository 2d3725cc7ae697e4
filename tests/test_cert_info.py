"""
Tests for certificate analysis and the jittered renewal window.
"""
from __future__ import annotations

from datetime import timedelta

import pytest

from cert import info as cert_info
from cert.bundle import CertificateBundle
from cert.info import RENEW_PERIOD_MAX, RENEW_PERIOD_MIN, CertInfo
from renewal.errors import CertParseError
from storage import filesystem
from tests.conftest import make_bundle


def _info(expires_in: timedelta, seed: int = 1_700_000_000, staging: bool = False) -> CertInfo:
    return CertInfo(staging=staging, expires_in=expires_in, seed=seed)


# ─── Renewal window ───────────────────────────────────────────────────────────

@pytest.mark.parametrize("seed", [0, 1, 42, 1_700_000_000, 2**63 - 1])
def test_renew_period_within_bounds(seed):
    period = _info(timedelta(days=30), seed=seed).renew_period()
    assert RENEW_PERIOD_MIN <= period < RENEW_PERIOD_MAX


def test_renew_period_is_stable_for_a_seed():
    info = _info(timedelta(days=30), seed=123456)
    assert info.renew_period() == info.renew_period()
    assert _info(timedelta(days=1), seed=123456).renew_period() == info.renew_period()


def test_renew_period_differs_between_seeds():
    periods = {_info(timedelta(days=30), seed=s).renew_period() for s in range(20)}
    assert len(periods) > 1


def test_should_renew_follows_window():
    assert _info(timedelta(days=7)).should_renew()
    assert not _info(timedelta(days=11)).should_renew()


def test_expiry_helpers():
    expired = _info(timedelta(days=-2, hours=-3))
    assert expired.is_expired()
    assert expired.since_expired() == timedelta(days=2, hours=3)
    assert _info(timedelta(0)).is_expired()
    assert not _info(timedelta(seconds=1)).is_expired()


# ─── Parsing ──────────────────────────────────────────────────────────────────

def test_analyze_production_certificate():
    info = cert_info.analyze(make_bundle(["example.org", "www.example.org"], timedelta(days=60)))
    assert not info.staging
    assert timedelta(days=59) < info.expires_in <= timedelta(days=60)
    assert info.names == ("example.org", "www.example.org")


def test_analyze_staging_certificate():
    assert cert_info.analyze(make_bundle(["example.org"], staging=True)).staging


def test_analyze_expired_certificate_has_negative_expiry():
    info = cert_info.analyze(make_bundle(["example.org"], timedelta(days=-3)))
    assert info.is_expired()
    assert info.expires_in < timedelta(0)


def test_seed_is_not_after_timestamp():
    bundle = make_bundle(["example.org"], timedelta(days=30))
    first = cert_info.analyze(bundle)
    second = cert_info.analyze(bundle)
    assert first.seed == second.seed
    assert first.renew_period() == second.renew_period()


def test_analyze_malformed_leaf_raises_chained_error():
    bundle = CertificateBundle(
        certificate="-----BEGIN CERTIFICATE-----\nbm9wZQ==\n-----END CERTIFICATE-----\n",
        private_key="",
    )
    with pytest.raises(CertParseError) as exc_info:
        cert_info.analyze(bundle)
    assert exc_info.value.__cause__ is not None


def test_from_disk(make_config):
    config = make_config()
    assert cert_info.from_disk(config) is None

    filesystem.store(config, make_bundle(["example.org"], staging=True))
    assert cert_info.from_disk(config).staging
