# discovery.py
# Discoverers: scan the host for capabilities and emit ToolManifests.
#
# The catalog does not care how a manifest was found. Each discoverer is
# an object with a `name` and a `discover()` method; discover_all() runs
# them in order and isolates their failures.

import logging
import plistlib
import re
import shutil
import subprocess
import xml.etree.ElementTree as ET
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, Protocol

import yaml
from pydantic import ValidationError

from tool_resolver.models import ParameterSpec, ToolKind, ToolManifest

logger = logging.getLogger(__name__)


class ManifestError(Exception):
    """Raised when a manifest document cannot be turned into a ToolManifest."""


class Discoverer(Protocol):
    name: str

    def discover(self) -> list[ToolManifest]: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", text.strip().lower()).strip("_")


def _parameter_schema(parameters: Mapping[str, Any] | None) -> dict[str, ParameterSpec]:
    """Accept JSON-schema style {"properties": …, "required": […]}."""
    if not parameters:
        return {}
    properties = parameters.get("properties") or {}
    required = set(parameters.get("required") or [])
    schema: dict[str, ParameterSpec] = {}
    for name, spec in properties.items():
        spec = spec or {}
        schema[str(name)] = ParameterSpec(
            type=str(spec.get("type", "string")),
            description=str(spec.get("description", "")),
            required=name in required,
        )
    return schema


def manifest_from_document(document: Mapping[str, Any], source: str) -> ToolManifest:
    """
    Convert one manifest document into a ToolManifest.

    `action` groups alternative strategies under one action name; when it
    is absent the document's `name` is used.
    """
    try:
        name = document["name"]
        kind = ToolKind.parse(document.get("kind", "script"))
    except KeyError as exc:
        raise ManifestError(f"Manifest from {source} missing field {exc}") from exc
    except ValueError as exc:
        raise ManifestError(f"Manifest {document.get('name')!r} from {source}: {exc}") from exc

    invocation = dict(document.get("invocation") or {})
    if document.get("scopes"):
        invocation.setdefault("scopes", list(document["scopes"]))

    try:
        return ToolManifest(
            action_name=str(document.get("action") or name),
            kind=kind,
            parameter_schema=_parameter_schema(document.get("parameters")),
            description=str(document.get("description", "")),
            source_discoverer=source,
            invocation=invocation,
        )
    except ValidationError as exc:
        raise ManifestError(f"Manifest {name!r} from {source} is invalid: {exc}") from exc


# sdef value types mapped onto JSON-schema types; anything else is a string.
_SDEF_TYPES = {
    "text": "string",
    "integer": "number",
    "real": "number",
    "number": "number",
    "boolean": "boolean",
    "list": "array",
    "record": "object",
    "date": "string",
    "file": "string",
}


def manifests_from_sdef(sdef: str, application: str, source: str = "script_dictionary") -> list[ToolManifest]:
    """
    One OSScript manifest per `<command>` in a scripting dictionary.

    The action name is `<application>_<command>`; the invocation is the
    application/verb pair the OS-script executor turns into a `tell` block.
    Commands repeated across suites are kept once.
    """
    root = ET.fromstring(sdef)
    manifests: list[ToolManifest] = []
    seen: set[str] = set()
    for command in root.iter("command"):
        verb = (command.get("name") or "").strip()
        action_name = f"{_slug(application)}_{_slug(verb)}"
        if not _slug(verb) or action_name in seen:
            continue
        seen.add(action_name)

        schema: dict[str, ParameterSpec] = {}
        for parameter in command.findall("parameter"):
            name = _slug(parameter.get("name") or "")
            if not name:
                continue
            schema[name] = ParameterSpec(
                type=_SDEF_TYPES.get(parameter.get("type", ""), "string"),
                description=parameter.get("description", ""),
                required=parameter.get("optional") != "yes",
            )

        manifests.append(
            ToolManifest(
                action_name=action_name,
                kind=ToolKind.OS_SCRIPT,
                parameter_schema=schema,
                description=command.get("description") or f"AppleScript '{verb}' command of {application}",
                source_discoverer=source,
                invocation={"application": application, "verb": verb, "language": "applescript"},
            )
        )
    return manifests


def _bundle_name(bundle: Path) -> str:
    try:
        with (bundle / "Contents" / "Info.plist").open("rb") as fh:
            info = plistlib.load(fh)
    except (OSError, plistlib.InvalidFileException, ValueError):
        return bundle.stem
    return str(info.get("CFBundleName") or bundle.stem)


# ---------------------------------------------------------------------------
# Discoverers
# ---------------------------------------------------------------------------


class ManifestDirectoryDiscoverer:
    """
    Reads `<root>/<plugin>/manifest.yml`. A file may hold several YAML
    documents separated by `---`, one per strategy.
    """

    name = "manifest_dir"

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def discover(self) -> list[ToolManifest]:
        if not self._root.is_dir():
            logger.debug("Manifest directory %s does not exist", self._root)
            return []

        manifests: list[ToolManifest] = []
        for path in sorted(self._root.glob("*/manifest.y*ml")):
            try:
                documents = list(yaml.safe_load_all(path.read_text(encoding="utf-8")))
            except (OSError, yaml.YAMLError) as exc:
                logger.warning("Cannot read %s: %s", path, exc)
                continue
            for document in documents:
                if not document:
                    continue
                try:
                    manifests.append(manifest_from_document(document, self.name))
                except ManifestError as exc:
                    logger.warning("%s: %s", path, exc)
        return manifests


class ShortcutsDiscoverer:
    """macOS Shortcuts, run through the `shortcuts` command-line tool."""

    name = "shortcuts"

    def __init__(self, timeout: float = 10.0) -> None:
        self._timeout = timeout

    def discover(self) -> list[ToolManifest]:
        if shutil.which("shortcuts") is None:
            return []
        completed = subprocess.run(
            ["shortcuts", "list"],
            capture_output=True,
            text=True,
            timeout=self._timeout,
            check=True,
        )
        manifests = []
        for line in completed.stdout.splitlines():
            title = line.strip()
            if not title or not _slug(title):
                continue
            manifests.append(
                ToolManifest(
                    action_name=_slug(title),
                    kind=ToolKind.CLI,
                    parameter_schema={
                        "input": ParameterSpec(type="string", required=False),
                    },
                    description=f"User Shortcut: {title}",
                    source_discoverer=self.name,
                    invocation={"command": ["shortcuts", "run", title]},
                )
            )
        return manifests


class ScriptDictionaryDiscoverer:
    """
    macOS application scripting dictionaries. Every `.app` bundle under
    `applications_dir` is passed to `sdef`; bundles without a dictionary
    are skipped.
    """

    name = "script_dictionary"

    def __init__(self, applications_dir: str | Path = "/Applications", timeout: float = 10.0) -> None:
        self._dir = Path(applications_dir)
        self._timeout = timeout

    def discover(self) -> list[ToolManifest]:
        if shutil.which("sdef") is None or not self._dir.is_dir():
            return []

        manifests: list[ToolManifest] = []
        for bundle in sorted(self._dir.glob("*.app")):
            try:
                completed = subprocess.run(
                    ["sdef", str(bundle)],
                    capture_output=True,
                    text=True,
                    timeout=self._timeout,
                    check=True,
                )
            except (OSError, subprocess.SubprocessError) as exc:
                logger.debug("No scripting dictionary for %s: %s", bundle.name, exc)
                continue
            try:
                manifests.extend(manifests_from_sdef(completed.stdout, _bundle_name(bundle), self.name))
            except ET.ParseError as exc:
                logger.warning("Unreadable scripting dictionary for %s: %s", bundle.name, exc)
        return manifests


class PathToolDiscoverer:
    """
    Command-line tools from a table of action name → argv template. A
    template is kept only when its program is on PATH.

        PathToolDiscoverer({"open_url": ["xdg-open", "{url}"]})
    """

    name = "path"

    def __init__(self, templates: Mapping[str, list[str]]) -> None:
        self._templates = dict(templates)

    def discover(self) -> list[ToolManifest]:
        manifests = []
        for action_name, argv in sorted(self._templates.items()):
            if not argv or shutil.which(argv[0]) is None:
                continue
            placeholders = sorted(
                {m for arg in argv for m in re.findall(r"\{(\w+)\}", str(arg))}
            )
            manifests.append(
                ToolManifest(
                    action_name=action_name,
                    kind=ToolKind.CLI,
                    parameter_schema={p: ParameterSpec() for p in placeholders},
                    description=f"Run {argv[0]}",
                    source_discoverer=self.name,
                    invocation={"command": list(argv)},
                )
            )
        return manifests


def discover_all(discoverers: Iterable[Discoverer]) -> list[ToolManifest]:
    """Concatenate every discoverer's output; a failing discoverer contributes nothing."""
    results: list[ToolManifest] = []
    for discoverer in discoverers:
        try:
            found = discoverer.discover()
        except Exception as exc:
            logger.warning("Discoverer %s failed: %s", getattr(discoverer, "name", discoverer), exc)
            continue
        logger.debug("Discoverer %s found %d manifest(s)", discoverer.name, len(found))
        results.extend(found)
    return results
