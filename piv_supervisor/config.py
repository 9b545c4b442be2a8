"""
Supervisor configuration.

Values come from dataclass defaults, then an optional JSON config file, then
environment variables (highest precedence).

JSON layout mirrors the dataclasses:
  {
    "monitor": {"interval_s": 900, "heartbeat_stale_ms": 900000, ...},
    "interventor": {"dev_kit_dir": "/path/to/dev-kit", ...},
    "memory": {"search_limit": 5, ...},
    "telegram": {"token": "...", "chat_id": 12345}
  }
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union, get_args, get_origin

logger = logging.getLogger("piv.config")

PIV_HOME = Path.home() / ".piv"
DEFAULT_CONFIG_PATH = PIV_HOME / "supervisor.json"

DEFAULT_INTERVAL_MS = 15 * 60 * 1000
DEFAULT_HEARTBEAT_STALE_MS = 15 * 60 * 1000
DEFAULT_MAX_RESTART_ATTEMPTS = 3

MEMORY_ENTITY_CONTEXT = (
    "This is an error fix record from a PIV supervisor agent. Extract the error "
    "pattern, root cause, fix approach, and outcome as separate searchable facts."
)


@dataclass
class MonitorConfig:
    interval_ms: int = DEFAULT_INTERVAL_MS
    heartbeat_stale_ms: int = DEFAULT_HEARTBEAT_STALE_MS
    max_restart_attempts: int = DEFAULT_MAX_RESTART_ATTEMPTS
    registry_path: Optional[str] = None
    improvement_log_path: str = str(PIV_HOME / "improvement-log.md")
    supervisor_pid_path: str = str(PIV_HOME / "supervisor.pid")
    manifest_relpath: str = ".agents/manifest.yaml"
    orchestrator_command: List[str] = field(
        default_factory=lambda: ["npx", "tsx", ".claude/orchestrator/src/index.ts"])
    kill_grace_s: float = 2.0


@dataclass
class InterventorConfig:
    dev_kit_dir: str = str(Path.cwd())
    diagnosis_budget_usd: float = 0.50
    fix_budget_usd: float = 2.00
    diagnosis_max_turns: int = 15
    fix_max_turns: int = 30
    timeout_ms: int = 300_000
    agent_command: str = "claude"
    agent_model: Optional[str] = None
    framework_prefixes: List[str] = field(
        default_factory=lambda: [".claude/commands/", ".claude/orchestrator/"])
    project_prefixes: List[str] = field(default_factory=lambda: ["src/", "tests/"])
    # Validation runs from <dev_kit_dir>/<framework_validation_subdir>
    framework_validation_subdir: str = "supervisor"
    framework_typecheck_command: List[str] = field(
        default_factory=lambda: ["npx", "tsc", "--noEmit"])
    framework_test_command: List[str] = field(
        default_factory=lambda: ["npx", "vitest", "run"])
    project_validation_subdir: str = ".claude/orchestrator"
    project_typecheck_command: List[str] = field(
        default_factory=lambda: ["npx", "tsc", "--noEmit"])
    project_test_command: List[str] = field(
        default_factory=lambda: ["npx", "vitest", "run"])
    typecheck_timeout_s: int = 60
    test_timeout_s: int = 120

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0


@dataclass
class MemoryConfig:
    api_key: Optional[str] = None
    enabled: bool = False
    base_url: str = "https://api.supermemory.ai"
    container_tag_prefix: str = "project_"
    search_threshold: float = 0.4
    search_limit: int = 5
    request_timeout_s: float = 15.0
    entity_context: str = MEMORY_ENTITY_CONTEXT


@dataclass
class TelegramConfig:
    token: Optional[str] = None
    chat_id: Optional[int] = None
    request_timeout_s: float = 10.0

    @property
    def configured(self) -> bool:
        return bool(self.token) and self.chat_id is not None


@dataclass
class SupervisorConfig:
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    interventor: InterventorConfig = field(default_factory=InterventorConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)


def _env_int(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}")
        return None


def _env_float(name: str) -> Optional[float]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}")
        return None


def _env_str(name: str) -> Optional[str]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    return raw


def _coerce(declared: Any, value: Any) -> Any:
    """Convert a JSON value to a dataclass field's declared type.

    Raises ValueError or TypeError when the value does not fit.
    """
    if get_origin(declared) is Union:
        if value is None:
            return None
        declared = next(a for a in get_args(declared) if a is not type(None))
    if declared is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ("true", "false"):
            return value.strip().lower() == "true"
        raise ValueError(f"expected true/false, got {value!r}")
    if declared is int:
        if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
            raise ValueError(f"expected an integer, got {value!r}")
        return int(value)
    if declared is float:
        if isinstance(value, bool):
            raise ValueError(f"expected a number, got {value!r}")
        return float(value)
    if declared is str:
        if not isinstance(value, (str, int, float)) or isinstance(value, bool):
            raise ValueError(f"expected a string, got {value!r}")
        return str(value)
    if get_origin(declared) is list:
        if not isinstance(value, list):
            raise ValueError(f"expected a list, got {value!r}")
        return [str(item) for item in value]
    return value


def _apply_section(target: Any, values: Dict[str, Any]) -> None:
    declared = {f.name: f.type for f in fields(target)}
    section = type(target).__name__
    for key, value in values.items():
        if key not in declared:
            logger.warning(f"Unknown config key '{key}' in [{section}]")
            continue
        try:
            setattr(target, key, _coerce(declared[key], value))
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring config {section}.{key}: {e}")


def _load_json(path: Path) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    return data


def _apply_env(config: SupervisorConfig) -> None:
    mon = config.monitor
    value = _env_int("PIV_MONITOR_INTERVAL_MS")
    if value is not None:
        mon.interval_ms = value
    value = _env_int("PIV_HEARTBEAT_STALE_MS")
    if value is not None:
        mon.heartbeat_stale_ms = value
    value = _env_int("PIV_MAX_RESTART_ATTEMPTS")
    if value is not None:
        mon.max_restart_attempts = value
    mon.registry_path = _env_str("PIV_REGISTRY_PATH") or mon.registry_path
    mon.improvement_log_path = _env_str("PIV_IMPROVEMENT_LOG_PATH") or mon.improvement_log_path
    mon.supervisor_pid_path = _env_str("PIV_SUPERVISOR_PID_PATH") or mon.supervisor_pid_path

    itv = config.interventor
    itv.dev_kit_dir = _env_str("PIV_DEV_KIT_DIR") or itv.dev_kit_dir
    itv.agent_command = _env_str("PIV_AGENT_COMMAND") or itv.agent_command
    budget = _env_float("PIV_DIAGNOSIS_BUDGET_USD")
    if budget is not None:
        itv.diagnosis_budget_usd = budget
    budget = _env_float("PIV_FIX_BUDGET_USD")
    if budget is not None:
        itv.fix_budget_usd = budget
    value = _env_int("PIV_DIAGNOSIS_MAX_TURNS")
    if value is not None:
        itv.diagnosis_max_turns = value
    value = _env_int("PIV_FIX_MAX_TURNS")
    if value is not None:
        itv.fix_max_turns = value
    value = _env_int("PIV_INTERVENTION_TIMEOUT_MS")
    if value is not None:
        itv.timeout_ms = value

    mem = config.memory
    mem.api_key = _env_str("SUPERMEMORY_API_KEY") or mem.api_key
    mem.container_tag_prefix = _env_str("PIV_MEMORY_CONTAINER_PREFIX") or mem.container_tag_prefix
    threshold = _env_float("PIV_MEMORY_SEARCH_THRESHOLD")
    if threshold is not None:
        mem.search_threshold = threshold
    value = _env_int("PIV_MEMORY_SEARCH_LIMIT")
    if value is not None:
        mem.search_limit = value

    tg = config.telegram
    tg.token = _env_str("TELEGRAM_BOT_TOKEN") or tg.token
    chat_id = _env_int("TELEGRAM_CHAT_ID")
    if chat_id is not None:
        tg.chat_id = chat_id


def load_config(config_path: Optional[str] = None) -> SupervisorConfig:
    """Build the supervisor config from defaults, JSON file and environment.

    An explicit config_path must exist; the default path is optional.
    """
    config = SupervisorConfig()
    memory_switch: Optional[bool] = None

    path = Path(config_path).expanduser() if config_path else DEFAULT_CONFIG_PATH
    if config_path or path.exists():
        data = _load_json(path)
        monitor_values = dict(data.get("monitor") or {})
        # interval_s is accepted as a convenience alias in JSON
        interval_s = monitor_values.pop("interval_s", None)
        memory_values = dict(data.get("memory") or {})
        if "enabled" in memory_values:
            memory_switch = bool(memory_values.pop("enabled"))

        _apply_section(config.monitor, monitor_values)
        _apply_section(config.interventor, dict(data.get("interventor") or {}))
        _apply_section(config.memory, memory_values)
        _apply_section(config.telegram, dict(data.get("telegram") or {}))
        if interval_s is not None:
            try:
                config.monitor.interval_ms = int(_coerce(float, interval_s) * 1000)
            except (TypeError, ValueError) as e:
                logger.warning(f"Ignoring config MonitorConfig.interval_s: {e}")
        logger.debug(f"Loaded config file {path}")

    _apply_env(config)

    # Memory is on whenever a credential is present, unless explicitly switched off
    config.memory.enabled = bool(config.memory.api_key) and memory_switch is not False
    return config
