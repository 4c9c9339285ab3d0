"""
Configuration loader for the lease bot worker.

Environment variables (optionally from a .env file) become WorkerSettings;
per-platform reliability overrides come from a YAML policy file.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import load_dotenv

from core.circuit_breaker import CircuitBreakerPolicy, DEFAULT_CIRCUIT_BREAKER_POLICY
from core.pacing import AntiBotPolicy, DEFAULT_ANTI_BOT_POLICY, PLATFORM_ANTI_BOT_POLICIES
from core.retry import RetryPolicy, DEFAULT_RETRY_POLICY

logger = logging.getLogger("config")

PROJECT_ROOT = Path(__file__).parent.parent
DEFAULT_DB_PATH = PROJECT_ROOT / ".hive-mind" / "leasebot.db"
DEFAULT_RELIABILITY_POLICY_PATH = PROJECT_ROOT / "config" / "reliability.yaml"

SEND_MODES = ("draft_only", "auto_send")
DECISION_PROVIDERS = ("heuristic", "anthropic")

def _parse_int(value: Optional[str], fallback: int, minimum: Optional[int] = None) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return fallback
    if minimum is not None and parsed < minimum:
        return minimum
    return parsed


def _parse_bool(value: Optional[str], fallback: bool = False) -> bool:
    if value is None:
        return fallback
    normalized = str(value).strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True
    if normalized in ("0", "false", "no", "off"):
        return False
    return fallback


def parse_csv(value: Optional[str]) -> List[str]:
    if not isinstance(value, str):
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class WorkerSettings:
    """Runtime settings for one worker process."""
    batch_size: int = 20
    poll_interval_ms: int = 15_000
    run_once: bool = False
    claim_ttl_ms: int = 60_000
    worker_id: str = ""
    allow_lead_names: List[str] = field(default_factory=list)
    max_message_age_minutes: int = 60
    slot_option_limit: int = 4
    decision_provider: str = "heuristic"
    anthropic_api_key: Optional[str] = None
    anthropic_model: Optional[str] = None
    playbook: str = ""
    default_send_mode: str = "draft_only"
    rpa_runtime: str = "mock"
    app_env: str = "development"
    ingest_p95_target_ms: int = 60_000
    db_path: Path = DEFAULT_DB_PATH
    reliability_policy_path: Optional[Path] = None
    log_level: str = "INFO"

    def __post_init__(self):
        if not self.worker_id:
            self.worker_id = f"worker-{os.getpid()}"

    @property
    def is_production(self) -> bool:
        return self.app_env.strip().lower() == "production"


def load_playbook(inline: Optional[str] = None, path: Optional[str] = None) -> str:
    """
    Inline playbook text wins, otherwise the file at path is read. Called once
    per load_worker_settings; the text then lives on WorkerSettings.

    An unreadable path yields an empty playbook and a warning.
    """
    if isinstance(inline, str) and inline.strip():
        return inline
    if not path:
        return ""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        logger.warning("Could not read AI playbook %s: %s", path, e)
        return ""
    return text


def load_worker_settings(env: Optional[Mapping[str, str]] = None) -> WorkerSettings:
    """Build WorkerSettings from the environment (loads .env when env is not given)."""
    if env is None:
        load_dotenv()
        env = os.environ

    provider = (env.get("AI_DECISION_PROVIDER") or "heuristic").strip().lower()
    if provider not in DECISION_PROVIDERS:
        logger.warning("Unknown AI_DECISION_PROVIDER %r, using heuristic", provider)
        provider = "heuristic"

    send_mode = (env.get("PLATFORM_DEFAULT_SEND_MODE") or "draft_only").strip()
    if send_mode not in SEND_MODES:
        send_mode = "draft_only"

    policy_path = env.get("LEASE_BOT_RELIABILITY_POLICY_PATH")

    return WorkerSettings(
        batch_size=_parse_int(env.get("WORKER_QUEUE_BATCH_SIZE"), 20, minimum=1),
        poll_interval_ms=_parse_int(env.get("WORKER_POLL_INTERVAL_MS"), 15_000, minimum=0),
        run_once=_parse_bool(env.get("WORKER_RUN_ONCE"), False),
        claim_ttl_ms=_parse_int(env.get("WORKER_CLAIM_TTL_MS"), 60_000, minimum=1000),
        worker_id=(env.get("WORKER_INSTANCE_ID") or "").strip(),
        allow_lead_names=parse_csv(env.get("WORKER_AUTOREPLY_ALLOW_LEAD_NAMES")),
        max_message_age_minutes=_parse_int(env.get("WORKER_AUTOREPLY_MAX_MESSAGE_AGE_MINUTES"), 60, minimum=0),
        slot_option_limit=_parse_int(env.get("WORKER_AUTOREPLY_SLOT_OPTION_LIMIT"), 4, minimum=1),
        decision_provider=provider,
        anthropic_api_key=env.get("ANTHROPIC_API_KEY") or None,
        anthropic_model=env.get("ANTHROPIC_MODEL") or None,
        playbook=load_playbook(env.get("WORKER_AI_PLAYBOOK"), env.get("WORKER_AI_PLAYBOOK_PATH")),
        default_send_mode=send_mode,
        rpa_runtime=(env.get("LEASE_BOT_RPA_RUNTIME") or "mock").strip().lower(),
        app_env=(env.get("LEASE_BOT_APP_ENV") or "development").strip().lower(),
        ingest_p95_target_ms=_parse_int(env.get("LEASE_BOT_INGEST_P95_TARGET_MS"), 60_000, minimum=1),
        db_path=Path(env.get("LEASE_BOT_DB_PATH") or DEFAULT_DB_PATH),
        reliability_policy_path=Path(policy_path) if policy_path else None,
        log_level=(env.get("LEASE_BOT_LOG_LEVEL") or "INFO").strip().upper(),
    )


# =============================================================================
# RELIABILITY POLICY
# =============================================================================

@dataclass
class ReliabilityPolicy:
    """Default and per-platform anti-bot, breaker and retry policies."""
    anti_bot: AntiBotPolicy = DEFAULT_ANTI_BOT_POLICY
    circuit_breaker: CircuitBreakerPolicy = DEFAULT_CIRCUIT_BREAKER_POLICY
    retry: RetryPolicy = DEFAULT_RETRY_POLICY
    platform_anti_bot: Dict[str, AntiBotPolicy] = field(
        default_factory=lambda: dict(PLATFORM_ANTI_BOT_POLICIES)
    )
    platform_circuit_breaker: Dict[str, CircuitBreakerPolicy] = field(default_factory=dict)
    platform_retry: Dict[str, RetryPolicy] = field(default_factory=dict)

    def anti_bot_for(self, platform: str) -> AntiBotPolicy:
        return self.platform_anti_bot.get(platform, self.anti_bot)

    def circuit_breaker_for(self, platform: str) -> CircuitBreakerPolicy:
        return self.platform_circuit_breaker.get(platform, self.circuit_breaker)

    def retry_for(self, platform: str) -> RetryPolicy:
        return self.platform_retry.get(platform, self.retry)


def _section(data: Any, key: str) -> Dict[str, Any]:
    value = data.get(key) if isinstance(data, dict) else None
    return value if isinstance(value, dict) else {}


def build_reliability_policy(data: Optional[Dict[str, Any]]) -> ReliabilityPolicy:
    """
    Merge a parsed policy document over the defaults.

    Expected shape:
        defaults: {anti_bot: {...}, circuit_breaker: {...}, retry: {...}}
        platforms:
          spareroom: {anti_bot: {...}, circuit_breaker: {...}, retry: {...}}
    """
    data = data or {}
    defaults = _section(data, "defaults")

    policy = ReliabilityPolicy(
        anti_bot=AntiBotPolicy.from_dict(_section(defaults, "anti_bot"), DEFAULT_ANTI_BOT_POLICY),
        circuit_breaker=CircuitBreakerPolicy.from_dict(
            _section(defaults, "circuit_breaker"), DEFAULT_CIRCUIT_BREAKER_POLICY
        ),
        retry=RetryPolicy.from_dict(_section(defaults, "retry"), DEFAULT_RETRY_POLICY),
    )

    for platform, overrides in _section(data, "platforms").items():
        if not isinstance(overrides, dict):
            continue
        if "anti_bot" in overrides:
            base = PLATFORM_ANTI_BOT_POLICIES.get(platform, policy.anti_bot)
            policy.platform_anti_bot[platform] = AntiBotPolicy.from_dict(_section(overrides, "anti_bot"), base)
        if "circuit_breaker" in overrides:
            policy.platform_circuit_breaker[platform] = CircuitBreakerPolicy.from_dict(
                _section(overrides, "circuit_breaker"), policy.circuit_breaker
            )
        if "retry" in overrides:
            policy.platform_retry[platform] = RetryPolicy.from_dict(_section(overrides, "retry"), policy.retry)

    return policy


def load_reliability_policy(path: Optional[Path] = None) -> ReliabilityPolicy:
    """Load the YAML policy file; a missing file means built-in defaults."""
    target = Path(path) if path else DEFAULT_RELIABILITY_POLICY_PATH
    if not target.exists():
        logger.info("No reliability policy at %s, using defaults", target)
        return ReliabilityPolicy()

    with open(target, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Reliability policy {target} must be a mapping")
    return build_reliability_policy(data)
