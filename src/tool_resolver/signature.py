# signature.py
# ActionSignature derivation for cache keys and generation coalescing.
#
# Two requests share a signature when they name the same action with the
# same parameter names on the same platform. Argument values never enter
# the hash.
#
# stdlib only, no external dependencies.

import hashlib
import json
import re
from collections.abc import Iterable, Mapping
from typing import Any

from tool_resolver.models import ActionSignature

_PLATFORM_ALIASES = {
    "darwin": "macos",
    "mac": "macos",
    "osx": "macos",
    "win32": "windows",
    "win": "windows",
}


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _sha256(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _serialize(payload: dict[str, Any]) -> str:
    """Deterministic serialization. sort_keys is non-negotiable."""
    return json.dumps(payload, sort_keys=True, ensure_ascii=False)


def normalize_action_name(action_name: str) -> str:
    return re.sub(r"[\s\-]+", "_", action_name.strip().lower())


def normalize_platform(platform: str) -> str:
    key = platform.strip().lower()
    return _PLATFORM_ALIASES.get(key, key)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def compute_signature(
    action_name: str,
    parameters: Mapping[str, Any] | Iterable[str],
    platform: str,
) -> ActionSignature:
    """
    Hash (action name, sorted parameter-name set, platform).

    `parameters` may be the argument mapping itself or just its names.
    """
    names = tuple(sorted({str(name) for name in parameters}))
    action = normalize_action_name(action_name)
    target = normalize_platform(platform)
    digest = _sha256(
        _serialize({"action": action, "parameters": list(names), "platform": target})
    )
    return ActionSignature(
        action_name=action,
        parameter_names=names,
        platform=target,
        digest=digest,
    )
