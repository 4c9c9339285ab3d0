#!/usr/bin/env python3
"""
Platform Adapter Definitions
============================

Navigation targets and element locators for each supported listing
platform. The RPA runner treats these as opaque configuration.

Overrides can be supplied per platform as JSON, either inline
(LEASE_BOT_PLATFORM_ADAPTER_OVERRIDES_JSON) or from a file
(LEASE_BOT_PLATFORM_ADAPTER_OVERRIDES_PATH). Top-level keys replace the
defaults; `selectors` are merged key by key.

Usage:
    from config.platform_adapters import build_adapter_registry, load_adapter_overrides

    adapters = build_adapter_registry(load_adapter_overrides())
    adapter = adapters["spareroom"]
    adapter.thread_url("12345")
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote, urljoin

logger = logging.getLogger("platform_adapters")

REQUIRED_RPA_PLATFORMS = ("spareroom", "roomies", "leasebreak", "renthop", "furnishedfinder")


@dataclass(frozen=True)
class PlatformAdapter:
    """Adapter for one platform. `thread_path` uses a {thread_id} placeholder."""
    platform: str
    base_url: str
    inbox_path: str
    thread_path: str
    selectors: Dict[str, Any] = field(default_factory=dict)
    auth_required_url_patterns: List[str] = field(default_factory=list)
    auth_required_text: List[str] = field(default_factory=list)

    @property
    def inbox_url(self) -> str:
        return urljoin(self.base_url, self.inbox_path)

    def thread_url(self, thread_id: str) -> str:
        path = self.thread_path.format(thread_id=quote(str(thread_id), safe=""))
        return urljoin(self.base_url, path)

    def selector_list(self, name: str) -> List[str]:
        value = self.selectors.get(name)
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return [item for item in value if isinstance(item, str) and item]


PLATFORM_ADAPTER_DEFINITIONS: Dict[str, Dict[str, Any]] = {
    "spareroom": {
        "platform": "spareroom",
        "base_url": "https://www.spareroom.com",
        # US site lives under /roommate/*; thread URLs vary between message UIs
        "inbox_path": "/roommate/mythreads_beta.pl",
        "thread_path": "/roommate/mythreads_beta.pl?thread_id={thread_id}",
        "auth_required_url_patterns": ["/roommate/logon.pl"],
        "auth_required_text": ["to view this content you will need to either"],
        "selectors": {
            "challenge": ["iframe[src*='challenge']", "#challenge-form", "[data-cy='bot-check']"],
            "captcha": ["iframe[title*='captcha']", "[data-sitekey]", "#g-recaptcha-response"],
            "message_items": [
                "a.thread_item.thread_in[data-thread-id][data-message-id]",
                "[data-thread-id][data-message-id]",
            ],
            "message_body": ["span.snippet"],
            "lead_name": ["span.name"],
            "composer": "textarea[name='message']",
            "submit": "button[type='submit'][name='btnSubmit']",
        },
    },
    "roomies": {
        "platform": "roomies",
        "base_url": "https://www.roomies.com",
        "inbox_path": "/messages",
        "thread_path": "/messages/{thread_id}",
        "selectors": {
            "challenge": ["#challenge-stage", "[data-testid='challenge-page']"],
            "captcha": ["iframe[src*='recaptcha']", "[name='cf-turnstile-response']"],
            "message_items": ["[data-thread-id][data-message-id]", "[data-testid='message-row']"],
            "message_body": ["[data-testid='message-preview']", ".message-snippet"],
            "composer": "textarea[name='body']",
            "submit": "button[data-testid='send-message']",
        },
    },
    "leasebreak": {
        "platform": "leasebreak",
        "base_url": "https://www.leasebreak.com",
        "inbox_path": "/messages",
        "thread_path": "/messages/{thread_id}",
        "selectors": {
            "challenge": ["#cf-challenge-running", ".challenge-form"],
            "captcha": ["iframe[src*='hcaptcha']", "[data-testid='captcha-container']"],
            "message_items": ["[data-thread-id][data-message-id]", ".message-row"],
            "message_body": [".message-preview", "[data-testid='message-body']"],
            "composer": "textarea[name='message']",
            "submit": "button[type='submit']",
        },
    },
    "renthop": {
        "platform": "renthop",
        "base_url": "https://www.renthop.com",
        "inbox_path": "/account/messages",
        "thread_path": "/account/messages/{thread_id}",
        "selectors": {
            "challenge": ["#challenge-form", "[data-testid='challenge-screen']"],
            "captcha": ["iframe[src*='recaptcha']", "[name='cf-turnstile-response']"],
            "message_items": ["[data-thread-id][data-message-id]", "[data-testid='message-item']"],
            "message_body": ["[data-testid='message-snippet']", ".message-text"],
            "composer": "textarea[name='message']",
            "submit": "button[data-testid='send-button']",
        },
    },
    "furnishedfinder": {
        "platform": "furnishedfinder",
        "base_url": "https://www.furnishedfinder.com",
        "inbox_path": "/messaging/inbox",
        "thread_path": "/messaging/thread/{thread_id}",
        "selectors": {
            "challenge": ["#challenge-stage", "[data-testid='bot-challenge']"],
            "captcha": ["iframe[src*='captcha']", "[data-testid='captcha-frame']"],
            "message_items": ["[data-thread-id][data-message-id]", ".thread-row"],
            "message_body": ["[data-testid='thread-preview']", ".thread-preview"],
            "composer": "textarea[name='messageBody']",
            "submit": "button[data-testid='thread-send']",
        },
    },
}

ADAPTER_FIELDS = (
    "platform", "base_url", "inbox_path", "thread_path", "selectors",
    "auth_required_url_patterns", "auth_required_text",
)


def build_adapter(definition: Dict[str, Any]) -> PlatformAdapter:
    return PlatformAdapter(**{k: definition[k] for k in ADAPTER_FIELDS if k in definition})


def build_adapter_registry(overrides: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, PlatformAdapter]:
    """One adapter per required platform, with overrides merged in."""
    overrides = overrides or {}
    registry: Dict[str, PlatformAdapter] = {}
    for platform in REQUIRED_RPA_PLATFORMS:
        base = PLATFORM_ADAPTER_DEFINITIONS[platform]
        override = overrides.get(platform) or {}
        merged = {**base, **override}
        merged["selectors"] = {**base.get("selectors", {}), **(override.get("selectors") or {})}
        registry[platform] = build_adapter(merged)
    return registry


def load_adapter_overrides(env: Optional[Mapping[str, str]] = None) -> Dict[str, Dict[str, Any]]:
    """
    Read adapter overrides from the environment.

    Inline JSON wins over the file path. Unparseable input is logged and
    ignored so a bad override never takes the worker down.
    """
    env = os.environ if env is None else env
    inline = (env.get("LEASE_BOT_PLATFORM_ADAPTER_OVERRIDES_JSON") or "").strip()
    path = (env.get("LEASE_BOT_PLATFORM_ADAPTER_OVERRIDES_PATH") or "").strip()

    try:
        if inline:
            parsed = json.loads(inline)
        elif path:
            parsed = json.loads(Path(path).read_text(encoding="utf-8"))
        else:
            return {}
    except (OSError, ValueError) as e:
        logger.warning("Failed to parse platform adapter overrides: %s", e)
        return {}

    if not isinstance(parsed, dict):
        logger.warning("Platform adapter overrides must be a JSON object")
        return {}
    return {k: v for k, v in parsed.items() if isinstance(v, dict)}


def is_required_rpa_platform(platform: str) -> bool:
    return platform in REQUIRED_RPA_PLATFORMS
