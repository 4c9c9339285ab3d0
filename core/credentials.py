"""
Platform credential resolution.

Account credentials are stored as references only:

    {"loginIdRef": "env:SPAREROOM_LOGIN", "password": "secret:SPAREROOM_PASSWORD"}

`env:NAME` and `secret:NAME` both resolve against the supplied environment
mapping (secret stores are surfaced to the process as environment
variables). A bare value is rejected as plaintext.
"""

import os
from typing import Any, Dict, Mapping, Optional

from core.errors import credential_missing, credential_plaintext_forbidden

REFERENCE_PREFIXES = ("env:", "secret:")

# (resolved field, reference keys tried first, inline keys tried after)
CREDENTIAL_FIELDS = (
    ("login_id", ("loginIdRef",), ("loginId",)),
    ("username", ("usernameRef",), ("username",)),
    ("email", ("emailRef",), ("email",)),
    ("password", ("passwordRef",), ("password",)),
    ("storage_state", ("storageStateRef", "sessionRef"), ("storageState", "session")),
    ("storage_state_path", ("storageStatePathRef",), ("storageStatePath",)),
    ("user_data_dir", ("userDataDirRef",), ("userDataDir",)),
)


def is_credential_reference(value: Any) -> bool:
    return isinstance(value, str) and value.strip().startswith(REFERENCE_PREFIXES)


def resolve_reference(reference: Any, env: Mapping[str, str], platform: str, key: str) -> str:
    """Resolve one env:/secret: pointer or raise a fatal credential error naming the field."""
    if not isinstance(reference, str) or not reference.strip():
        raise credential_missing(platform, key)

    normalized = reference.strip()
    if not normalized.startswith(REFERENCE_PREFIXES):
        raise credential_plaintext_forbidden(platform, key)

    name = normalized.split(":", 1)[1]
    resolved = env.get(name)
    if resolved is None or resolved == "":
        raise credential_missing(platform, key, normalized)
    return resolved


def _resolve_field(
    raw: Mapping[str, Any],
    env: Mapping[str, str],
    platform: str,
    ref_keys: tuple,
    inline_keys: tuple,
) -> Optional[str]:
    for key in ref_keys:
        if raw.get(key):
            return resolve_reference(raw[key], env, platform, key)
    for key in inline_keys:
        value = raw.get(key)
        if value is None or value == "":
            continue
        if not isinstance(value, str):
            raise credential_plaintext_forbidden(platform, key)
        return resolve_reference(value, env, platform, key)
    return None


def resolve_credentials(
    platform: str,
    raw_credentials: Optional[Mapping[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Dict[str, Optional[str]]:
    """
    Resolve an account's credential map into concrete values.

    A stored session (storage_state, storage_state_path or user_data_dir)
    replaces the login/password pair. Without one, a login id (or username /
    email) and a password are required. When a persistent profile directory
    is configured, storage-state references are not resolved.

    Raises:
        AutomationError: CREDENTIAL_PLAINTEXT_FORBIDDEN or CREDENTIAL_MISSING,
            both non-retryable.
    """
    raw = raw_credentials or {}
    environ = os.environ if env is None else env
    resolved: Dict[str, Optional[str]] = {}

    user_data_dir = _resolve_field(raw, environ, platform, ("userDataDirRef",), ("userDataDir",))
    if user_data_dir:
        resolved["user_data_dir"] = user_data_dir

    for name, ref_keys, inline_keys in CREDENTIAL_FIELDS:
        if name == "user_data_dir":
            continue
        if name == "storage_state" and user_data_dir:
            continue
        value = _resolve_field(raw, environ, platform, ref_keys, inline_keys)
        if value:
            resolved[name] = value

    has_session = bool(
        resolved.get("storage_state") or resolved.get("storage_state_path") or resolved.get("user_data_dir")
    )
    has_login_id = bool(resolved.get("login_id") or resolved.get("username") or resolved.get("email"))

    if not has_session:
        if not has_login_id:
            raise credential_missing(platform, "loginId")
        if not resolved.get("password"):
            raise credential_missing(platform, "password")

    resolved["login_id"] = resolved.get("login_id") or resolved.get("username") or resolved.get("email")
    return resolved
