# catalog.py
# In-memory Tool Catalog.
#
# The catalog is a copy-on-write snapshot: every write builds a fresh
# immutable mapping and swaps the reference. Readers never lock and never
# see a half-built catalog.

import logging
import threading
from collections import Counter
from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Any

from tool_resolver.models import CacheEntry, ParameterSpec, ToolKind, ToolManifest

logger = logging.getLogger(__name__)

PROMOTED_SOURCE = "cache"

Snapshot = Mapping[str, tuple[ToolManifest, ...]]


def manifest_from_entry(entry: CacheEntry) -> ToolManifest:
    """Synthetic GeneratedScript manifest for a cached script."""
    return ToolManifest(
        action_name=entry.action_name,
        kind=ToolKind.GENERATED_SCRIPT,
        parameter_schema={
            name: ParameterSpec(type="string", required=True)
            for name in entry.parameter_names
        },
        description=f"Generated {entry.language} script for {entry.action_name}",
        source_discoverer=PROMOTED_SOURCE,
        invocation={
            "signature": entry.signature,
            "language": entry.language,
            "script": entry.script_body,
        },
    )


def _build_snapshot(
    discovered: Iterable[ToolManifest],
    promoted: Mapping[str, ToolManifest],
) -> Snapshot:
    by_key: dict[tuple[str, ToolKind], ToolManifest] = {}
    for manifest in discovered:
        key = (manifest.action_name, manifest.kind)
        if key in by_key:
            logger.warning(
                "Duplicate %s manifest for %r from %s ignored (kept %s)",
                manifest.kind.label,
                manifest.action_name,
                manifest.source_discoverer,
                by_key[key].source_discoverer,
            )
            continue
        by_key[key] = manifest

    # Promoted scripts are merged in after discovery.
    for manifest in promoted.values():
        by_key[(manifest.action_name, manifest.kind)] = manifest

    grouped: dict[str, list[ToolManifest]] = {}
    for (action_name, _kind), manifest in by_key.items():
        grouped.setdefault(action_name, []).append(manifest)

    return MappingProxyType(
        {
            action_name: tuple(sorted(manifests, key=lambda m: m.kind))
            for action_name, manifests in sorted(grouped.items())
        }
    )


# ---------------------------------------------------------------------------
# ToolCatalog
# ---------------------------------------------------------------------------


class ToolCatalog:
    """
    Table of resolvable capabilities keyed by action name.

    Within one kind an action name is unique; across kinds the manifests
    for one action are alternative strategies, ordered by tier priority.

    Example:
        catalog = ToolCatalog()
        catalog.rebuild(discover_all(discoverers))
        for manifest in catalog.lookup("send_message"):
            ...
    """

    def __init__(self, manifests: Iterable[ToolManifest] = ()) -> None:
        self._write_lock = threading.Lock()
        self._discovered: tuple[ToolManifest, ...] = tuple(manifests)
        self._promoted: dict[str, ToolManifest] = {}
        self._snapshot: Snapshot = _build_snapshot(self._discovered, self._promoted)

    # ------------------------------------------------------------------
    # Reads (lock-free)
    # ------------------------------------------------------------------

    def lookup(self, action_name: str) -> list[ToolManifest]:
        """Manifests for `action_name` in tier order; [] when none exist."""
        return list(self._snapshot.get(action_name, ()))

    def snapshot(self) -> Snapshot:
        return self._snapshot

    def action_names(self) -> list[str]:
        return list(self._snapshot)

    def promoted(self, action_name: str) -> ToolManifest | None:
        for manifest in self._snapshot.get(action_name, ()):
            if manifest.kind is ToolKind.GENERATED_SCRIPT and manifest.source_discoverer == PROMOTED_SOURCE:
                return manifest
        return None

    def function_declarations(self) -> list[dict[str, Any]]:
        """One declaration per action name, taken from its first-tier manifest."""
        return [
            manifests[0].to_function_declaration()
            for manifests in self._snapshot.values()
            if manifests
        ]

    def __len__(self) -> int:
        return sum(len(manifests) for manifests in self._snapshot.values())

    # ------------------------------------------------------------------
    # Writes (copy-on-write swap)
    # ------------------------------------------------------------------

    def rebuild(self, discovery_results: Iterable[ToolManifest]) -> None:
        """Replace all discovered manifests atomically; promoted ones survive."""
        discovered = tuple(discovery_results)
        with self._write_lock:
            snapshot = _build_snapshot(discovered, self._promoted)
            self._discovered = discovered
            self._snapshot = snapshot

        counts = Counter(m.kind.label for m in discovered)
        logger.info(
            "Catalog rebuilt: %d manifest(s) across %d action(s) %s",
            len(self),
            len(snapshot),
            dict(sorted(counts.items())),
        )

    def promote(self, entry: CacheEntry) -> ToolManifest:
        """Insert the GeneratedScript manifest for an Active cache entry."""
        manifest = manifest_from_entry(entry)
        with self._write_lock:
            previous = self._promoted.get(entry.action_name)
            promoted = dict(self._promoted)
            promoted[entry.action_name] = manifest
            self._snapshot = _build_snapshot(self._discovered, promoted)
            self._promoted = promoted

        if previous is not None and previous.invocation.get("signature") != entry.signature:
            logger.info(
                "Promoted script for %r replaced (signature %s -> %s)",
                entry.action_name,
                str(previous.invocation.get("signature"))[:12],
                entry.signature[:12],
            )
        else:
            logger.info("Promoted cached script for %r", entry.action_name)
        return manifest

    def demote(self, entry: CacheEntry) -> bool:
        """Remove the promoted manifest for `entry`; False if it was not promoted."""
        with self._write_lock:
            current = self._promoted.get(entry.action_name)
            if current is None or current.invocation.get("signature") != entry.signature:
                return False
            promoted = dict(self._promoted)
            del promoted[entry.action_name]
            self._snapshot = _build_snapshot(self._discovered, promoted)
            self._promoted = promoted

        logger.info("Removed promoted script for %r", entry.action_name)
        return True
