from __future__ import annotations
import os
from typing import Any, Dict

from pydantic import BaseModel, Field


class EngineConfig(BaseModel):
    """Engine-wide defaults; per-node modifiers in the source override them."""
    max_workers: int = Field(default=16, ge=1, description="Concurrently running step handlers")
    retry_base_delay: float = Field(default=1.0, ge=0.0, description="Seconds, when '@n:strategy' gives no base")
    retry_multiplier: float = Field(default=2.0, gt=0.0)
    circuit_cooldown: float = Field(default=30.0, ge=0.0, description="Seconds, when '@@{n}' gives no cooldown")
    max_loop_iterations: int = Field(default=100, ge=1, description="Cap for '*', '+' and '{m,}' loops")
    drain_background: bool = Field(default=True, description="Wait for forked and detached work before returning")

    @classmethod
    def from_env(cls, prefix: str = "FLOWSCRIPT_", **overrides: Any) -> "EngineConfig":
        """Read ``FLOWSCRIPT_MAX_WORKERS`` and friends; explicit overrides win."""
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = os.getenv(prefix + name.upper())
            if raw is not None:
                values[name] = raw
        values.update(overrides)
        return cls.model_validate(values)
