"""Pytest configuration and fixtures for lease bot worker tests."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))


class FakeClock:
    """Millisecond clock whose sleep advances time instead of waiting."""

    def __init__(self, start_ms: float = 1_000_000):
        self.now = start_ms
        self.sleeps = []

    def now_ms(self) -> float:
        return self.now

    async def sleep(self, delay_ms: float) -> None:
        self.sleeps.append(delay_ms)
        self.now += delay_ms

    def advance(self, delay_ms: float) -> None:
        self.now += delay_ms


class RecordingSessionManager:
    """Session manager that hands out no session and records refreshes."""

    def __init__(self):
        self.gets = []
        self.refreshes = []

    async def get(self, platform, account, action=None, attempt=1):
        self.gets.append((platform, action, attempt))
        return None

    async def refresh(self, platform, account, action=None, reason=None, error=None):
        self.refreshes.append((platform, action, reason))


class ScriptedRunner:
    """RPA runner that replays a list of results; exceptions are raised."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.calls = []

    async def run(self, platform, action, account=None, payload=None, session=None, attempt=1):
        self.calls.append({
            "platform": platform,
            "action": action,
            "account": account,
            "payload": payload,
            "attempt": attempt,
        })
        if not self.results:
            if action == "ingest":
                return {"messages": []}
            return {"external_message_id": f"{platform}-ok", "channel": "in_app", "status": "sent"}
        result = self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result

    async def close(self):
        return None


class FakeRegistry:
    """Connector registry stand-in: canned inboxes, recorded sends."""

    supported_platforms = ["spareroom", "roomies", "leasebreak", "renthop", "furnishedfinder"]

    def __init__(self, inbox=None, send_error=None):
        self.inbox = inbox or {}
        self.send_error = send_error
        self.sent = []
        self.closed = False

    async def ingest_messages_for_account(self, account):
        return list(self.inbox.get(account["id"], []))

    async def send_message_for_account(self, account, outbound):
        self.sent.append((account, outbound))
        if self.send_error is not None:
            raise self.send_error
        return {
            "external_message_id": f"out-{len(self.sent)}",
            "channel": "in_app",
            "provider_status": "sent",
        }

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def session_manager():
    return RecordingSessionManager()


@pytest.fixture
def credential_env():
    return {
        "SPAREROOM_LOGIN": "agent@example.com",
        "SPAREROOM_PASSWORD": "hunter22",
    }


@pytest.fixture
def spareroom_account():
    return {
        "id": "acct-1",
        "platform": "spareroom",
        "credentials": {
            "loginIdRef": "env:SPAREROOM_LOGIN",
            "passwordRef": "secret:SPAREROOM_PASSWORD",
        },
    }


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "leasebot.db"


@pytest.fixture(autouse=True)
def isolated_events_file(tmp_path, monkeypatch):
    """Keep reliability events written during tests out of the repo."""
    from core import event_log
    monkeypatch.setattr(event_log, "EVENTS_FILE", tmp_path / "events.jsonl")
    return tmp_path / "events.jsonl"
