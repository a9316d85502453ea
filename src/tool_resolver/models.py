# models.py
# Data contracts for the tiered capability resolver.
# No business logic lives here. Pure schema and validation.

import uuid
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ToolKind(IntEnum):
    """Execution strategy of a manifest. Lower value = tried first."""

    NATIVE_API = 0
    OS_SCRIPT = 1
    CLI = 2
    UI_AUTOMATION = 3
    GENERATED_SCRIPT = 4
    VISION_FALLBACK = 5

    @property
    def label(self) -> str:
        return _KIND_LABELS[self]

    @classmethod
    def parse(cls, value: "str | int | ToolKind") -> "ToolKind":
        """Accept enum members, ints, labels ("NativeAPI") and legacy names ("api")."""
        if isinstance(value, ToolKind):
            return value
        if isinstance(value, int):
            return cls(value)
        key = str(value).strip().lower().replace("_", "").replace("-", "")
        try:
            return _KIND_ALIASES[key]
        except KeyError:
            raise ValueError(f"Unknown tool kind: {value!r}") from None


_KIND_LABELS = {
    ToolKind.NATIVE_API: "NativeAPI",
    ToolKind.OS_SCRIPT: "OSScript",
    ToolKind.CLI: "CLI",
    ToolKind.UI_AUTOMATION: "UIAutomation",
    ToolKind.GENERATED_SCRIPT: "GeneratedScript",
    ToolKind.VISION_FALLBACK: "VisionFallback",
}

_KIND_ALIASES = {
    "nativeapi": ToolKind.NATIVE_API,
    "api": ToolKind.NATIVE_API,
    "osscript": ToolKind.OS_SCRIPT,
    "script": ToolKind.OS_SCRIPT,
    "applescript": ToolKind.OS_SCRIPT,
    "cli": ToolKind.CLI,
    "shortcut": ToolKind.CLI,
    "uiautomation": ToolKind.UI_AUTOMATION,
    "uia": ToolKind.UI_AUTOMATION,
    "generatedscript": ToolKind.GENERATED_SCRIPT,
    "generated": ToolKind.GENERATED_SCRIPT,
    "visionfallback": ToolKind.VISION_FALLBACK,
    "vision": ToolKind.VISION_FALLBACK,
}


class CacheStatus(str, Enum):
    ACTIVE = "Active"
    QUARANTINED = "Quarantined"
    EVICTED = "Evicted"


class AttemptOutcome(str, Enum):
    SUCCESS = "Success"
    FAILURE = "Failure"
    SKIPPED = "Skipped-not-applicable"


class ErrorClass(str, Enum):
    NOT_APPLICABLE = "NotApplicable"
    TIMEOUT = "Timeout"
    TARGET_MISSING = "TargetMissing"
    AUTH_MISSING = "AuthMissing"
    PERMISSION_DENIED = "PermissionDenied"
    VALIDATION_FAILED = "ValidationFailed"
    EXECUTION_FAILED = "ExecutionFailed"
    UNKNOWN = "Unknown"


class FallbackClassification(str, Enum):
    MISSING_APPLICATION = "MissingApplication"
    MISSING_AUTHORIZATION = "MissingAuthorization"
    MISSING_PERMISSION = "MissingPermission"
    MISSING_SCRIPT = "MissingScript"
    UNKNOWN_ACTION = "UnknownAction"


class ResolutionState(str, Enum):
    PENDING = "PENDING"
    TRY_TIER = "TRY_TIER"
    ADVANCE = "ADVANCE"
    SUCCESS = "SUCCESS"
    EXHAUSTED = "EXHAUSTED"
    FALLBACK = "FALLBACK"
    DONE = "DONE"


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class ParameterSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str = Field(default="string", description="JSON-schema type name.")
    description: str = ""
    required: bool = True


class ToolManifest(BaseModel):
    """A resolvable capability. Replaced wholesale, never mutated."""

    model_config = ConfigDict(frozen=True)

    action_name: str = Field(..., min_length=1, description="Unique within a kind.")
    kind: ToolKind
    parameter_schema: dict[str, ParameterSpec] = Field(default_factory=dict)
    description: str = ""
    source_discoverer: str = Field(..., description='Discoverer name, or "cache" when promoted.')
    invocation: dict[str, Any] = Field(
        default_factory=dict,
        description="Opaque executor details (script body, argv template, URL…).",
    )

    def required_parameters(self) -> list[str]:
        return sorted(name for name, spec in self.parameter_schema.items() if spec.required)

    def to_function_declaration(self) -> dict[str, Any]:
        return {
            "name": self.action_name,
            "description": self.description,
            "parameters": {
                "type": "object",
                "properties": {
                    name: {"type": spec.type, "description": spec.description}
                    for name, spec in sorted(self.parameter_schema.items())
                },
                "required": self.required_parameters(),
            },
        }


class ActionSignature(BaseModel):
    """Normalized key for "the same capability need"."""

    model_config = ConfigDict(frozen=True)

    action_name: str
    parameter_names: tuple[str, ...]
    platform: str
    digest: str = Field(..., description="Hex SHA-256 over the three fields above.")

    def __str__(self) -> str:
        return self.digest


# ---------------------------------------------------------------------------
# Script cache
# ---------------------------------------------------------------------------


class CacheEntry(BaseModel):
    """A persisted generated script with its reliability counters."""

    signature: str
    action_name: str
    parameter_names: list[str] = Field(default_factory=list)
    platform: str
    language: str
    script_body: str
    created_at: datetime = Field(default_factory=utcnow)
    last_used_at: datetime = Field(default_factory=utcnow)
    success_count: int = Field(default=0, ge=0)
    failure_count: int = Field(default=0, ge=0)
    status: CacheStatus = CacheStatus.ACTIVE
    quarantine_strikes: int = Field(
        default=0, ge=0, description="Consecutive failures since quarantine."
    )
    origin_request_id: str | None = Field(
        default=None, description="Request whose parameters drove the validation run."
    )

    @property
    def total_runs(self) -> int:
        return self.success_count + self.failure_count

    @property
    def failure_ratio(self) -> float:
        if self.total_runs == 0:
            return 0.0
        return self.failure_count / self.total_runs


class GeneratedScript(BaseModel):
    """A generation that produced an Active cache entry."""

    entry: CacheEntry
    validation_output: str = Field(
        default="", description="Output of the validation run, shared by every waiter."
    )


class GenerationFailure(BaseModel):
    signature: str
    action_name: str
    error_class: ErrorClass = ErrorClass.VALIDATION_FAILED
    message: str = ""
    cause: ErrorClass | None = Field(
        default=None, description="Classified error of a failed validation run."
    )
    detail: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Requests and execution
# ---------------------------------------------------------------------------


class PlatformContext(BaseModel):
    """Live host context supplied by the upstream intent parser."""

    platform: str = Field(..., description='"macos", "windows" or "linux".')
    front_app: str | None = None
    extras: dict[str, Any] = Field(default_factory=dict)


class ActionRequest(BaseModel):
    action_name: str = Field(..., min_length=1)
    parameters: dict[str, Any] = Field(default_factory=dict)
    context: PlatformContext
    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex)


class TierResult(BaseModel):
    """What every tier executor returns."""

    success: bool
    error_class: ErrorClass | None = None
    output: str = ""
    detail: dict[str, Any] = Field(default_factory=dict)


class ExecutionAttempt(BaseModel):
    tier: ToolKind
    started_at: datetime = Field(default_factory=utcnow)
    outcome: AttemptOutcome
    error_class: ErrorClass | None = None
    message: str = ""
    detail: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Fallback
# ---------------------------------------------------------------------------


class FailureRecord(BaseModel):
    action_name: str
    signature: str | None = None
    classification: FallbackClassification
    error_classes: list[ErrorClass] = Field(default_factory=list)
    message: str = ""
    recorded_at: datetime = Field(default_factory=utcnow)


class FallbackResponse(BaseModel):
    classification: FallbackClassification
    remediation_message: str
    suggested_user_actions: list[str] = Field(default_factory=list)
    failure_record: FailureRecord | None = None


class ResolutionResult(BaseModel):
    """Caller-visible outcome: silent success or one structured remediation."""

    request_id: str
    action_name: str
    signature: str
    success: bool
    tier: ToolKind | None = None
    output: str = ""
    attempts: list[ExecutionAttempt] = Field(default_factory=list)
    states: list[ResolutionState] = Field(default_factory=list)
    fallback: FallbackResponse | None = None
