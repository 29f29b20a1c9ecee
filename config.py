"""
Runtime configuration for the remediation MCP server.

All settings come from environment variables so the server can be launched
unchanged by any MCP client.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from errors import ConfigurationError


# Defaults
DEFAULT_DB_PATH = Path.home() / ".kube-remediate" / "runtime.db"
DEFAULT_AI_PROVIDER = "anthropic"
DEFAULT_AI_MODEL = "claude-sonnet-4-5"
DEFAULT_AI_MAX_TOKENS = 4096
DEFAULT_KUBECTL_TIMEOUT_SECONDS = 30
AI_BACKEND_BREAKER = "ai-backend"


@dataclass
class RuntimeConfig:
    """Resolved server configuration."""
    session_dir: Optional[str] = None
    db_path: Path = DEFAULT_DB_PATH
    ai_provider: str = DEFAULT_AI_PROVIDER
    ai_model: str = DEFAULT_AI_MODEL
    ai_max_tokens: int = DEFAULT_AI_MAX_TOKENS
    anthropic_api_key: Optional[str] = None
    anthropic_base_url: Optional[str] = None
    kubeconfig: Optional[str] = None
    kube_context: Optional[str] = None
    kubectl_timeout_seconds: int = DEFAULT_KUBECTL_TIMEOUT_SECONDS
    circuit_breaker: Dict[str, Any] = field(default_factory=lambda: {
        "failure_threshold": 3,
        "cooldown_period_ms": 30000,
        "half_open_max_attempts": 1,
    })
    log_level: str = "INFO"


def _int_setting(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(
            f"{name} must be an integer, got {raw!r}",
            operation="load_config",
            component="config",
            suggested_actions=[f"Set {name} to a whole number or unset it"]
        )


def load_config(env: Optional[Mapping[str, str]] = None) -> RuntimeConfig:
    """Build a RuntimeConfig from the environment (or an explicit mapping)."""
    if env is None:
        env = os.environ

    db_path = env.get("REMEDIATE_DB_PATH")

    return RuntimeConfig(
        session_dir=env.get("REMEDIATE_SESSION_DIR") or None,
        db_path=Path(db_path).expanduser() if db_path else DEFAULT_DB_PATH,
        ai_provider=env.get("AI_PROVIDER", DEFAULT_AI_PROVIDER).lower(),
        ai_model=env.get("AI_MODEL", DEFAULT_AI_MODEL),
        ai_max_tokens=_int_setting(env, "AI_MAX_TOKENS", DEFAULT_AI_MAX_TOKENS),
        anthropic_api_key=env.get("ANTHROPIC_API_KEY") or None,
        anthropic_base_url=env.get("ANTHROPIC_BASE_URL") or None,
        kubeconfig=env.get("KUBECONFIG") or None,
        kube_context=env.get("KUBE_CONTEXT") or None,
        kubectl_timeout_seconds=_int_setting(
            env, "KUBECTL_TIMEOUT_SECONDS", DEFAULT_KUBECTL_TIMEOUT_SECONDS
        ),
        circuit_breaker={
            "failure_threshold": _int_setting(env, "CIRCUIT_FAILURE_THRESHOLD", 3),
            "cooldown_period_ms": _int_setting(env, "CIRCUIT_COOLDOWN_MS", 30000),
            "half_open_max_attempts": _int_setting(env, "CIRCUIT_HALF_OPEN_MAX_ATTEMPTS", 1),
        },
        log_level=env.get("LOG_LEVEL", "INFO").upper()
    )
