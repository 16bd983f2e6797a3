import os
from dataclasses import dataclass
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent

TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class EngineConfig:
    # emit one log line per evaluated rule; persisted executions are unaffected
    log_executions: bool = False

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            log_executions=os.getenv("RULE_ENGINE_LOG", "").strip().lower() in TRUTHY,
        )
