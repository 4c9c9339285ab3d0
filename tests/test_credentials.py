"""Tests for platform credential reference resolution."""

import pytest

from core.credentials import is_credential_reference, resolve_credentials
from core.errors import AutomationError, ErrorCode


ENV = {
    "SR_LOGIN": "agent@example.com",
    "SR_PASSWORD": "hunter22",
    "SR_STATE": '{"cookies": []}',
    "SR_PROFILE": "/var/lib/leasebot/profiles/sr",
}


def test_reference_detection():
    assert is_credential_reference("env:FOO") is True
    assert is_credential_reference("secret:FOO") is True
    assert is_credential_reference("plain-password") is False
    assert is_credential_reference(None) is False


def test_login_and_password_references_resolve():
    resolved = resolve_credentials(
        "spareroom",
        {"loginIdRef": "env:SR_LOGIN", "passwordRef": "secret:SR_PASSWORD"},
        ENV,
    )
    assert resolved["login_id"] == "agent@example.com"
    assert resolved["password"] == "hunter22"


def test_inline_keys_must_still_be_references():
    resolved = resolve_credentials("roomies", {"email": "env:SR_LOGIN", "password": "env:SR_PASSWORD"}, ENV)
    assert resolved["email"] == "agent@example.com"
    assert resolved["login_id"] == "agent@example.com"


def test_plaintext_password_is_forbidden():
    with pytest.raises(AutomationError) as exc_info:
        resolve_credentials("spareroom", {"loginIdRef": "env:SR_LOGIN", "password": "hunter22"}, ENV)

    assert exc_info.value.code == ErrorCode.CREDENTIAL_PLAINTEXT_FORBIDDEN.value
    assert exc_info.value.retryable is False
    assert exc_info.value.details["field"] == "password"


def test_unset_reference_is_missing():
    with pytest.raises(AutomationError) as exc_info:
        resolve_credentials("spareroom", {"loginIdRef": "env:SR_LOGIN", "passwordRef": "env:NOPE"}, ENV)

    assert exc_info.value.code == ErrorCode.CREDENTIAL_MISSING.value
    assert "env:NOPE" in str(exc_info.value)


def test_missing_login_id_without_session():
    with pytest.raises(AutomationError) as exc_info:
        resolve_credentials("leasebreak", {"passwordRef": "env:SR_PASSWORD"}, ENV)
    assert exc_info.value.code == ErrorCode.CREDENTIAL_MISSING.value
    assert exc_info.value.details["field"] == "loginId"


def test_missing_password_without_session():
    with pytest.raises(AutomationError) as exc_info:
        resolve_credentials("leasebreak", {"loginIdRef": "env:SR_LOGIN"}, ENV)
    assert exc_info.value.details["field"] == "password"


def test_storage_state_replaces_login_pair():
    resolved = resolve_credentials("renthop", {"storageStateRef": "env:SR_STATE"}, ENV)
    assert resolved["storage_state"] == '{"cookies": []}'
    assert resolved["login_id"] is None


def test_user_data_dir_skips_storage_state():
    resolved = resolve_credentials(
        "furnishedfinder",
        {"userDataDirRef": "env:SR_PROFILE", "storageStateRef": "env:UNSET_STATE"},
        ENV,
    )
    assert resolved["user_data_dir"] == "/var/lib/leasebot/profiles/sr"
    assert "storage_state" not in resolved


def test_empty_credentials_are_missing():
    with pytest.raises(AutomationError) as exc_info:
        resolve_credentials("spareroom", None, {})
    assert exc_info.value.code == ErrorCode.CREDENTIAL_MISSING.value
