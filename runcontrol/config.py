"""
Run Control Configuration

Settings come from, lowest precedence first:
1. Built-in defaults
2. <state_dir>/config.yaml
3. RUNCONTROL_* environment variables

    # .runcontrol/config.yaml
    project_root: .
    claim_ttl_minutes: 45
    check_timeout_seconds: 300
    log_level: INFO

build_engine() wires the components with explicit collaborators; there
are no module-level singletons.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict, Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .audit_log import AuditLog
from .check_executor import CheckExecutor, DEFAULT_TIMEOUT_SECONDS
from .claim_coordinator import ClaimCoordinator, DEFAULT_CLAIM_TTL_MINUTES
from .plan_reader import PlanReader
from .run_model import RunControlError
from .run_store import RunStore
from .state_machine import StateMachine
from .verification_recorder import VerificationRecorder

logger = logging.getLogger("config")

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
DEFAULT_STATE_DIR = ".runcontrol"
CONFIG_FILE_NAME = "config.yaml"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

ENV_OVERRIDES = {
    "RUNCONTROL_STATE_DIR": "state_dir",
    "RUNCONTROL_PROJECT_ROOT": "project_root",
    "RUNCONTROL_CLAIM_TTL_MINUTES": "claim_ttl_minutes",
    "RUNCONTROL_CHECK_TIMEOUT": "check_timeout_seconds",
    "RUNCONTROL_LOG_LEVEL": "log_level",
}


class ConfigError(RunControlError):
    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(code="INVALID_CONFIG", message=message, details=details)


# -----------------------------------------------------------------------------
# Config Model
# -----------------------------------------------------------------------------
class RunControlConfig(BaseModel):
    """Validated engine settings."""
    state_dir: Path = Field(default=Path(DEFAULT_STATE_DIR))
    project_root: Path = Field(default=Path("."))
    claim_ttl_minutes: int = Field(default=DEFAULT_CLAIM_TTL_MINUTES, gt=0)
    check_timeout_seconds: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level '{value}'")
        return level

    @property
    def runs_dir(self) -> Path:
        return self.state_dir / "runs"

    @property
    def events_file(self) -> Path:
        return self.state_dir / "events.jsonl"

    @property
    def runs_jsonl(self) -> Path:
        return self.state_dir / "runs.jsonl"


def read_yaml_file(file_path: Path) -> dict:
    """Read and parse a YAML file."""
    if not file_path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")
    with open(file_path, "r") as f:
        return yaml.safe_load(f) or {}


def load_config(
    state_dir: Optional[Path] = None,
    environ: Optional[Dict[str, str]] = None,
) -> RunControlConfig:
    """
    Build the config from defaults, the YAML file and the environment.

    Raises:
        ConfigError: on unreadable YAML or invalid values
    """
    env = os.environ if environ is None else environ
    values: Dict[str, Any] = {}

    base_dir = Path(state_dir or env.get("RUNCONTROL_STATE_DIR") or DEFAULT_STATE_DIR)
    config_file = base_dir / CONFIG_FILE_NAME
    if config_file.exists():
        try:
            data = read_yaml_file(config_file)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_file}: {e}", {"path": str(config_file)})
        if not isinstance(data, dict):
            raise ConfigError(f"{config_file} must contain a mapping", {"path": str(config_file)})
        values.update(data)

    for env_name, key in ENV_OVERRIDES.items():
        if env.get(env_name):
            values[key] = env[env_name]
    values["state_dir"] = base_dir

    try:
        config = RunControlConfig(**values)
    except ValidationError as e:
        raise ConfigError(
            f"Invalid configuration: {e.error_count()} error(s)",
            {"errors": [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]},
        )

    logger.debug(f"Loaded config from {config_file if config_file.exists() else 'defaults'}")
    return config


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


# -----------------------------------------------------------------------------
# Engine Wiring
# -----------------------------------------------------------------------------
@dataclass
class Engine:
    """All engine components sharing one store and audit log."""
    config: RunControlConfig
    audit_log: AuditLog
    store: RunStore
    plan_reader: PlanReader
    state_machine: StateMachine
    recorder: VerificationRecorder
    coordinator: ClaimCoordinator


def build_engine(config: Optional[RunControlConfig] = None) -> Engine:
    """Create every component from a config (loaded from disk if omitted)."""
    config = config or load_config()
    audit_log = AuditLog(config.events_file)
    store = RunStore(config.runs_dir, audit_log=audit_log, project_root=config.project_root)
    plan_reader = PlanReader(config.project_root)
    state_machine = StateMachine(store, audit_log)
    recorder = VerificationRecorder(
        store,
        state_machine,
        plan_reader,
        audit_log=audit_log,
        executor=CheckExecutor(cwd=config.project_root, default_timeout=config.check_timeout_seconds),
    )
    coordinator = ClaimCoordinator(
        store,
        state_machine=state_machine,
        audit_log=audit_log,
        default_ttl_minutes=config.claim_ttl_minutes,
    )
    return Engine(
        config=config,
        audit_log=audit_log,
        store=store,
        plan_reader=plan_reader,
        state_machine=state_machine,
        recorder=recorder,
        coordinator=coordinator,
    )
