"""Tests for one-time code issuance and single-use consumption."""

import threading

import pytest

from siteauth.service.errors import NotFoundError
from siteauth.service.otp import OtpIssuer
from siteauth.storage.memory import MemoryStore
from siteauth.storage.models import OtpPurpose

EMAIL = "crew.lead@example.com"


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def issuer(store, clock):
    return OtpIssuer(store, "x" * 40, length=6, ttl_minutes=10, clock=clock)


def test_issued_code_is_numeric_and_stored_hashed(issuer, store):
    issue = issuer.issue(EMAIL, OtpPurpose.VERIFY_EMAIL)
    assert len(issue.code) == 6 and issue.code.isdigit()
    record = store.get_otp(EMAIL, OtpPurpose.VERIFY_EMAIL)
    assert record is not None
    assert issue.code not in record.code_hash


def test_code_verifies_once(issuer):
    issue = issuer.issue(EMAIL, OtpPurpose.VERIFY_EMAIL)
    assert issuer.verify(EMAIL, issue.code, OtpPurpose.VERIFY_EMAIL) is True
    with pytest.raises(NotFoundError):
        issuer.verify(EMAIL, issue.code, OtpPurpose.VERIFY_EMAIL)


def test_email_case_does_not_matter(issuer):
    issue = issuer.issue(EMAIL, OtpPurpose.VERIFY_EMAIL)
    assert issuer.verify(EMAIL.upper(), issue.code, OtpPurpose.VERIFY_EMAIL)


def test_code_for_one_purpose_fails_for_the_other(issuer):
    issue = issuer.issue(EMAIL, OtpPurpose.VERIFY_EMAIL)
    issuer.issue(EMAIL, OtpPurpose.RESET_PASSWORD)
    with pytest.raises(NotFoundError):
        issuer.verify(EMAIL, issue.code, OtpPurpose.RESET_PASSWORD)
    # The failed cross-purpose attempt leaves the right code intact
    assert issuer.verify(EMAIL, issue.code, OtpPurpose.VERIFY_EMAIL)


def test_reissue_replaces_previous_code(issuer):
    first = issuer.issue(EMAIL, OtpPurpose.VERIFY_EMAIL)
    second = issuer.issue(EMAIL, OtpPurpose.VERIFY_EMAIL)
    if first.code != second.code:
        with pytest.raises(NotFoundError):
            issuer.verify(EMAIL, first.code, OtpPurpose.VERIFY_EMAIL)
    assert issuer.verify(EMAIL, second.code, OtpPurpose.VERIFY_EMAIL)


def test_expired_code_is_rejected(issuer, clock):
    issue = issuer.issue(EMAIL, OtpPurpose.VERIFY_EMAIL)
    clock.advance(minutes=10)
    assert issuer.check_only(EMAIL, issue.code, OtpPurpose.VERIFY_EMAIL) is False
    with pytest.raises(NotFoundError):
        issuer.verify(EMAIL, issue.code, OtpPurpose.VERIFY_EMAIL)


def test_confirm_is_single_shot_but_keeps_code(issuer):
    issue = issuer.issue(EMAIL, OtpPurpose.RESET_PASSWORD)
    assert issuer.confirm(EMAIL, issue.code, OtpPurpose.RESET_PASSWORD)
    with pytest.raises(NotFoundError):
        issuer.confirm(EMAIL, issue.code, OtpPurpose.RESET_PASSWORD)
    assert issuer.check_only(EMAIL, issue.code, OtpPurpose.RESET_PASSWORD)
    assert issuer.verify(EMAIL, issue.code, OtpPurpose.RESET_PASSWORD)


def test_revoke_drops_the_code(issuer):
    issue = issuer.issue(EMAIL, OtpPurpose.VERIFY_EMAIL)
    issuer.revoke(EMAIL, OtpPurpose.VERIFY_EMAIL)
    assert issuer.check_only(EMAIL, issue.code, OtpPurpose.VERIFY_EMAIL) is False


def test_concurrent_verification_has_one_winner(issuer):
    issue = issuer.issue(EMAIL, OtpPurpose.VERIFY_EMAIL)
    results = []
    barrier = threading.Barrier(8)

    def _attempt():
        barrier.wait()
        try:
            results.append(issuer.verify(EMAIL, issue.code, OtpPurpose.VERIFY_EMAIL))
        except NotFoundError:
            results.append(False)

    threads = [threading.Thread(target=_attempt) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count(True) == 1
    assert results.count(False) == 7


def test_configured_length_is_respected(store, clock):
    issuer = OtpIssuer(store, "y" * 40, length=8, clock=clock)
    issue = issuer.issue(EMAIL, OtpPurpose.RESET_PASSWORD)
    assert len(issue.code) == 8
