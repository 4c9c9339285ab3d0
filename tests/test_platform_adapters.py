"""Tests for platform adapter definitions and overrides."""

import json

from config.platform_adapters import (
    REQUIRED_RPA_PLATFORMS,
    build_adapter_registry,
    is_required_rpa_platform,
    load_adapter_overrides,
)


def test_registry_covers_every_platform():
    adapters = build_adapter_registry()
    assert set(adapters) == set(REQUIRED_RPA_PLATFORMS)
    for platform, adapter in adapters.items():
        assert adapter.platform == platform
        assert adapter.selectors["composer"]
        assert adapter.selectors["submit"]


def test_urls_are_built_from_base():
    adapter = build_adapter_registry()["roomies"]
    assert adapter.inbox_url == "https://www.roomies.com/messages"
    assert adapter.thread_url("abc 1/2") == "https://www.roomies.com/messages/abc%201%2F2"


def test_spareroom_thread_url_uses_query_string():
    adapter = build_adapter_registry()["spareroom"]
    assert adapter.thread_url("998") == "https://www.spareroom.com/roommate/mythreads_beta.pl?thread_id=998"


def test_selector_list_normalizes_strings():
    adapter = build_adapter_registry()["leasebreak"]
    assert adapter.selector_list("composer") == ["textarea[name='message']"]
    assert adapter.selector_list("missing") == []


def test_overrides_merge_selectors():
    adapters = build_adapter_registry({
        "renthop": {"base_url": "https://staging.renthop.test", "selectors": {"composer": "#reply"}},
    })
    adapter = adapters["renthop"]
    assert adapter.base_url == "https://staging.renthop.test"
    assert adapter.selectors["composer"] == "#reply"
    assert adapter.selectors["submit"] == "button[data-testid='send-button']"


def test_inline_overrides_win_over_path(tmp_path):
    path = tmp_path / "overrides.json"
    path.write_text(json.dumps({"roomies": {"inbox_path": "/from-file"}}), encoding="utf-8")
    env = {
        "LEASE_BOT_PLATFORM_ADAPTER_OVERRIDES_JSON": json.dumps({"roomies": {"inbox_path": "/inline"}}),
        "LEASE_BOT_PLATFORM_ADAPTER_OVERRIDES_PATH": str(path),
    }
    assert load_adapter_overrides(env) == {"roomies": {"inbox_path": "/inline"}}
    assert load_adapter_overrides({"LEASE_BOT_PLATFORM_ADAPTER_OVERRIDES_PATH": str(path)}) == {
        "roomies": {"inbox_path": "/from-file"}
    }


def test_bad_overrides_are_ignored():
    assert load_adapter_overrides({"LEASE_BOT_PLATFORM_ADAPTER_OVERRIDES_JSON": "{not json"}) == {}
    assert load_adapter_overrides({"LEASE_BOT_PLATFORM_ADAPTER_OVERRIDES_JSON": "[1, 2]"}) == {}
    assert load_adapter_overrides({}) == {}


def test_required_platform_check():
    assert is_required_rpa_platform("furnishedfinder") is True
    assert is_required_rpa_platform("craigslist") is False
