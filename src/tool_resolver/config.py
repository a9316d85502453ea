# config.py
# Resolver settings. Values come from the environment (and a local .env)
# so the CLI and embedding applications share one source of truth.

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from tool_resolver.models import ToolKind

DEFAULT_SYNTH_MODEL = "anthropic/claude-3.5-haiku"

DEFAULT_TIER_TIMEOUTS: dict[ToolKind, float] = {
    ToolKind.NATIVE_API: 15.0,
    ToolKind.OS_SCRIPT: 20.0,
    ToolKind.CLI: 20.0,
    ToolKind.UI_AUTOMATION: 30.0,
    ToolKind.GENERATED_SCRIPT: 30.0,
    ToolKind.VISION_FALLBACK: 60.0,
}


class ResolverConfig(BaseModel):
    cache_dir: Path = Field(
        default_factory=lambda: Path.home() / ".cache" / "tool-resolver" / "scripts"
    )
    manifest_dir: Path = Field(default_factory=lambda: Path("plugins"))
    idle_horizon_days: float = Field(default=30.0, gt=0)
    validation_timeout: float = Field(default=10.0, gt=0)
    synthesis_timeout: float = Field(default=60.0, gt=0)
    failure_ring_size: int = Field(default=20, ge=1)
    cleanup_interval: float = Field(default=3600.0, gt=0)
    synthesis_model: str = DEFAULT_SYNTH_MODEL
    tier_timeouts: dict[ToolKind, float] = Field(
        default_factory=lambda: dict(DEFAULT_TIER_TIMEOUTS)
    )

    def tier_timeout(self, kind: ToolKind) -> float:
        return self.tier_timeouts.get(kind, DEFAULT_TIER_TIMEOUTS[kind])

    @classmethod
    def from_env(cls) -> "ResolverConfig":
        load_dotenv()

        values: dict = {}
        env_map = {
            "TOOL_RESOLVER_CACHE_DIR": "cache_dir",
            "TOOL_RESOLVER_MANIFEST_DIR": "manifest_dir",
            "TOOL_RESOLVER_IDLE_HORIZON_DAYS": "idle_horizon_days",
            "TOOL_RESOLVER_VALIDATION_TIMEOUT": "validation_timeout",
            "TOOL_RESOLVER_SYNTH_TIMEOUT": "synthesis_timeout",
            "TOOL_RESOLVER_FAILURE_RING_SIZE": "failure_ring_size",
            "TOOL_RESOLVER_CLEANUP_INTERVAL": "cleanup_interval",
            "TOOL_RESOLVER_SYNTH_MODEL": "synthesis_model",
        }
        for env_name, field in env_map.items():
            raw = os.getenv(env_name)
            if raw:
                values[field] = raw
        # pydantic coerces the strings to the declared field types
        return cls.model_validate(values)
