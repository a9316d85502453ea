# fallback.py
# Fallback Policy: turns an exhausted attempt list into one structured
# remediation, and remembers it in a bounded per-action FailureRecord ring.
#
# Classification priority (first match wins):
#   MissingApplication > MissingAuthorization > MissingPermission
#   > MissingScript > UnknownAction
#
# The ring is read by the synthesizer and the upstream prompting layer.
# The cause of a failed validation run counts like a tier's own error
# class. Nothing here changes tier order.

import logging
import threading
from collections import deque
from collections.abc import Sequence
from typing import Any
from urllib.parse import quote

from tool_resolver.models import (
    AttemptOutcome,
    ErrorClass,
    ExecutionAttempt,
    FailureRecord,
    FallbackClassification,
    FallbackResponse,
    ToolKind,
)

logger = logging.getLogger(__name__)

APP_NAME = "the assistant"

OAUTH_URLS = {
    "google": "https://accounts.google.com/o/oauth2/v2/auth",
    "microsoft": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
    "github": "https://github.com/login/oauth/authorize",
    "slack": "https://slack.com/oauth/v2/authorize",
    "discord": "https://discord.com/api/oauth2/authorize",
    "zoom": "https://zoom.us/oauth/authorize",
    "dropbox": "https://www.dropbox.com/oauth2/authorize",
    "box": "https://account.box.com/api/oauth2/authorize",
}

_MAC_APP_STORE_SEARCH = (
    "macappstore://search.itunes.apple.com/WebObjects/MZSearch.woa/wa/search?media=software&term="
)

_MAC_PERMISSION_PANES = {
    "accessibility": "Accessibility",
    "automation": "Automation",
    "screen_recording": "Screen Recording",
    "microphone": "Microphone",
    "camera": "Camera",
    "files": "Files and Folders",
}

_WINDOWS_PERMISSION_PANES = {
    "accessibility": "Accessibility",
    "microphone": "Microphone",
    "camera": "Camera",
    "files": "File system",
}


# ---------------------------------------------------------------------------
# FailureLog
# ---------------------------------------------------------------------------


class FailureLog:
    """Bounded FailureRecord ring per action name. Thread-safe."""

    def __init__(self, maxlen: int = 20) -> None:
        self._maxlen = maxlen
        self._lock = threading.Lock()
        self._records: dict[str, deque[FailureRecord]] = {}

    def append(self, record: FailureRecord) -> None:
        with self._lock:
            ring = self._records.get(record.action_name)
            if ring is None:
                ring = self._records[record.action_name] = deque(maxlen=self._maxlen)
            ring.append(record)

    def records_for(self, action_name: str) -> list[FailureRecord]:
        with self._lock:
            return list(self._records.get(action_name, ()))

    def actions(self) -> list[str]:
        with self._lock:
            return sorted(self._records)


# ---------------------------------------------------------------------------
# Remediation payloads
# ---------------------------------------------------------------------------


def _error_classes(attempt: ExecutionAttempt) -> list[ErrorClass]:
    """The attempt's own class plus the cause of a failed validation run."""
    classes = [attempt.error_class] if attempt.error_class is not None else []
    cause = attempt.detail.get("cause")
    if cause is not None:
        classes.append(ErrorClass(cause))
    return classes


def _first_detail(attempts: Sequence[ExecutionAttempt], error_class: ErrorClass, key: str) -> Any:
    for attempt in attempts:
        if error_class in _error_classes(attempt) and attempt.detail.get(key):
            return attempt.detail[key]
    return None


def _install_steps(app: str | None, platform: str) -> list[str]:
    steps: list[str] = []
    if platform == "macos":
        if app:
            steps.append(f"Search the Mac App Store: {_MAC_APP_STORE_SEARCH}{quote(app)}")
        steps.append("Or download it from the vendor's official website")
    elif platform == "windows":
        if app:
            steps.append(f"Search the Microsoft Store: ms-windows-store://search/?query={quote(app)}")
        steps.append("Or download it from the vendor's official website")
    else:
        steps.append("Install it with your distribution's package manager")
    steps.append("Make sure the application or service is running and reachable, then retry")
    return steps


def _permission_steps(permission: str | None, platform: str) -> list[str]:
    key = (permission or "").lower().replace(" ", "_")
    if platform == "macos":
        pane = _MAC_PERMISSION_PANES.get(key, "the relevant category")
        return [
            "Open System Settings > Privacy & Security",
            f"Select {pane}",
            f"Allow {APP_NAME} in the list of apps",
            f"Restart {APP_NAME} if the change does not take effect",
        ]
    if platform == "windows":
        pane = _WINDOWS_PERMISSION_PANES.get(key, "the relevant category")
        return [
            f"Open Settings > Privacy & security > {pane}",
            "Turn access on",
            f"Allow {APP_NAME} in the list of apps",
        ]
    return [
        "Check the file and device permissions of the user running the assistant",
        "Grant the missing access and retry",
    ]


def _script_steps(action_name: str) -> list[str]:
    steps = [
        "Describe step by step what you want done",
        "Check that the application this action needs is installed",
        "Try again later; a new script will be generated on the next request",
    ]
    lowered = action_name.lower()
    if "calendar" in lowered or "event" in lowered:
        steps.append("Set up Calendar integration and grant calendar access if needed")
    if "mail" in lowered or "email" in lowered or "message" in lowered:
        steps.append("Set up the mail account in your mail application if needed")
    return steps


# ---------------------------------------------------------------------------
# FallbackPolicy
# ---------------------------------------------------------------------------


class FallbackPolicy:
    """
    Classify total failure and emit the remediation for the prompting layer.

    Example:
        policy = FallbackPolicy(FailureLog())
        response = policy.classify("send_message", attempts, platform="macos")
    """

    def __init__(self, failure_log: FailureLog) -> None:
        self._failure_log = failure_log

    @property
    def failure_log(self) -> FailureLog:
        return self._failure_log

    def _classification(self, attempts: Sequence[ExecutionAttempt]) -> FallbackClassification:
        classes = {c for a in attempts for c in _error_classes(a)}
        if ErrorClass.TARGET_MISSING in classes:
            return FallbackClassification.MISSING_APPLICATION
        if ErrorClass.AUTH_MISSING in classes:
            return FallbackClassification.MISSING_AUTHORIZATION
        if ErrorClass.PERMISSION_DENIED in classes:
            return FallbackClassification.MISSING_PERMISSION
        generation_failed = any(
            a.tier is ToolKind.GENERATED_SCRIPT and a.detail.get("generation")
            for a in attempts
            if a.outcome is AttemptOutcome.FAILURE
        )
        if generation_failed or ErrorClass.VALIDATION_FAILED in classes:
            return FallbackClassification.MISSING_SCRIPT
        return FallbackClassification.UNKNOWN_ACTION

    def classify(
        self,
        action_name: str,
        attempts: Sequence[ExecutionAttempt],
        platform: str = "",
        signature: str | None = None,
    ) -> FallbackResponse:
        classification = self._classification(attempts)
        message, steps = self._remediation(classification, action_name, attempts, platform)

        record = FailureRecord(
            action_name=action_name,
            signature=signature,
            classification=classification,
            error_classes=[a.error_class for a in attempts if a.error_class is not None],
            message=message,
        )
        self._failure_log.append(record)
        logger.info("Action %r exhausted all tiers: %s", action_name, classification.value)

        return FallbackResponse(
            classification=classification,
            remediation_message=message,
            suggested_user_actions=steps,
            failure_record=record,
        )

    def _remediation(
        self,
        classification: FallbackClassification,
        action_name: str,
        attempts: Sequence[ExecutionAttempt],
        platform: str,
    ) -> tuple[str, list[str]]:
        if classification is FallbackClassification.MISSING_APPLICATION:
            app = _first_detail(attempts, ErrorClass.TARGET_MISSING, "application")
            name = f'"{app}"' if app else "The application this action needs"
            return (
                f"{name} is not installed or not reachable, so {action_name!r} could not run.",
                _install_steps(app, platform),
            )

        if classification is FallbackClassification.MISSING_AUTHORIZATION:
            provider = _first_detail(attempts, ErrorClass.AUTH_MISSING, "provider")
            url = OAUTH_URLS.get(str(provider).lower()) if provider else None
            steps = []
            if url:
                steps.append(f"Open the {provider} authorization page: {url}")
            steps += [
                "Sign in and grant the requested access",
                f"Reconnect the account in {APP_NAME}'s settings, then retry",
            ]
            who = provider or "the service"
            return (f"Authorization for {who} is missing or has expired.", steps)

        if classification is FallbackClassification.MISSING_PERMISSION:
            permission = _first_detail(attempts, ErrorClass.PERMISSION_DENIED, "permission")
            what = f"The {permission} permission" if permission else "A system permission"
            return (
                f"{what} was denied, so {action_name!r} could not run.",
                _permission_steps(permission, platform),
            )

        if classification is FallbackClassification.MISSING_SCRIPT:
            return (
                f"No working automation exists yet for {action_name!r} and generating one failed.",
                _script_steps(action_name),
            )

        return (
            f"{action_name!r} is not something that can be done automatically here. "
            "Please describe what you want done and it can be done manually.",
            [
                "Rephrase the request",
                "Break the task into simpler steps",
                "Do it manually and describe the steps for next time",
            ],
        )
