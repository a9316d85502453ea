# executors.py
# Tier executors: one handler per ToolKind behind a single contract:
#
#     async def executor(manifest, parameters) -> TierResult
#
# The engine imports the handler table and never spawns processes itself.
# NativeAPI, OSScript, CLI and GeneratedScript have built-in handlers;
# UIAutomation and VisionFallback drivers are injected by the host app.

import asyncio
import json
import logging
import os
import re
import sys
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import httpx

from tool_resolver.models import ErrorClass, TierResult, ToolKind, ToolManifest

logger = logging.getLogger(__name__)

Executor = Callable[[ToolManifest, dict[str, Any]], Awaitable[TierResult]]

_OUTPUT_LIMIT = 4000


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

# (regex on stderr/stdout, error class). First match wins, so the more
# specific permission and auth patterns come before generic "not found".
_ERROR_PATTERNS: list[tuple[re.Pattern[str], ErrorClass]] = [
    (re.compile(r"-1743|not authori[sz]ed to send apple events|assistive access|"
                r"accessibility (?:access|permission)|operation not permitted|"
                r"permission denied|access is denied|EACCES", re.I),
     ErrorClass.PERMISSION_DENIED),
    (re.compile(r"\b401\b|unauthori[sz]ed|invalid[_ ]token|token (?:has )?expired|"
                r"not (?:signed|logged) in|re-?authenticate|oauth|consent required", re.I),
     ErrorClass.AUTH_MISSING),
    (re.compile(r"-1728|-600\b|can.t get application|application isn.t running|"
                r"unable to find application|command not found|no such file or directory|"
                r"is not recognized as (?:the name of )?a cmdlet|ENOENT|"
                r"connection refused|name or service not known", re.I),
     ErrorClass.TARGET_MISSING),
]


def classify_error(text: str, returncode: int | None = None) -> ErrorClass:
    """Map process output and exit status onto the error taxonomy."""
    for pattern, error_class in _ERROR_PATTERNS:
        if pattern.search(text or ""):
            return error_class
    # POSIX shells: 126 = found but not executable, 127 = not found
    if returncode == 126:
        return ErrorClass.PERMISSION_DENIED
    if returncode == 127:
        return ErrorClass.TARGET_MISSING
    if returncode is not None and returncode != 0:
        return ErrorClass.EXECUTION_FAILED
    return ErrorClass.UNKNOWN


def _truncate(text: str) -> str:
    return text[:_OUTPUT_LIMIT] if len(text) > _OUTPUT_LIMIT else text


# ---------------------------------------------------------------------------
# Script runner
# ---------------------------------------------------------------------------


def interpreter_for(language: str, script: str) -> list[str]:
    """argv that runs `script` inline for `language`."""
    lang = language.lower()
    if lang == "applescript":
        return ["osascript", "-e", script]
    if lang == "jxa":
        return ["osascript", "-l", "JavaScript", "-e", script]
    if lang == "powershell":
        return ["powershell", "-NoProfile", "-NonInteractive", "-Command", script]
    if lang == "python":
        return [sys.executable, "-c", script]
    if lang in ("shell", "sh", "bash"):
        return ["/bin/sh", "-c", script]
    raise ValueError(f"No interpreter for script language {language!r}")


def language_for_platform(platform: str) -> str:
    return {"macos": "applescript", "windows": "powershell"}.get(platform, "shell")


class ScriptRunner:
    """
    Runs one external process and turns its exit into a TierResult.

    Parameters reach the process twice: as JSON on stdin and as
    TOOL_PARAM_<NAME> environment variables. Timeouts are the caller's
    job (asyncio.wait_for); when the awaiting task is cancelled, the child
    is killed before the cancellation propagates.
    """

    async def run_argv(self, argv: list[str], parameters: Mapping[str, Any]) -> TierResult:
        env = dict(os.environ)
        for name, value in parameters.items():
            env[f"TOOL_PARAM_{str(name).upper()}"] = (
                value if isinstance(value, str) else json.dumps(value)
            )
        payload = json.dumps(dict(parameters), default=str).encode("utf-8")

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError as exc:
            return TierResult(
                success=False,
                error_class=ErrorClass.TARGET_MISSING,
                output=str(exc),
                detail={"program": argv[0]},
            )
        except PermissionError as exc:
            return TierResult(
                success=False,
                error_class=ErrorClass.PERMISSION_DENIED,
                output=str(exc),
                detail={"program": argv[0]},
            )

        try:
            stdout, stderr = await proc.communicate(payload)
        except BaseException:
            # Timeout or request cancellation: never leak the child.
            _terminate(proc)
            raise

        out = stdout.decode("utf-8", errors="replace").strip()
        err = stderr.decode("utf-8", errors="replace").strip()
        if proc.returncode == 0:
            return TierResult(success=True, output=_truncate(out))

        return TierResult(
            success=False,
            error_class=classify_error(f"{err}\n{out}", proc.returncode),
            output=_truncate(err or out),
            detail={"program": argv[0], "returncode": proc.returncode},
        )

    async def run_script(self, script: str, language: str, parameters: Mapping[str, Any]) -> TierResult:
        return await self.run_argv(interpreter_for(language, script), parameters)


def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        logger.debug("Killed child process pid=%s", proc.pid)


# ---------------------------------------------------------------------------
# Built-in handlers
# ---------------------------------------------------------------------------


def _applescript_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    text = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def build_tell_script(application: str, verb: str, parameters: Mapping[str, Any]) -> str:
    """`tell application "X" to <verb> with properties {k:v, …}`."""
    script = f'tell application "{application}" to {verb}'
    if parameters:
        props = ", ".join(
            f"{name}:{_applescript_literal(value)}" for name, value in sorted(parameters.items())
        )
        script += f" with properties {{{props}}}"
    return script


def _fill_template(argv: list[str], parameters: Mapping[str, Any]) -> list[str]:
    filled: list[str] = []
    for arg in argv:
        try:
            filled.append(str(arg).format(**parameters))
        except (KeyError, IndexError) as exc:
            raise ValueError(f"Missing parameter for argument {arg!r}: {exc}") from exc
    return filled


def make_os_script_executor(runner: ScriptRunner, platform: str) -> Executor:
    async def _execute(manifest: ToolManifest, parameters: dict[str, Any]) -> TierResult:
        inv = manifest.invocation
        language = inv.get("language") or language_for_platform(platform)
        if "script" in inv:
            script = inv["script"]
        elif "application" in inv and "verb" in inv:
            script = build_tell_script(inv["application"], inv["verb"], parameters)
        else:
            return TierResult(
                success=False,
                error_class=ErrorClass.NOT_APPLICABLE,
                output="Manifest has no script or application/verb invocation.",
            )
        result = await runner.run_script(script, language, parameters)
        if not result.success and "application" in inv:
            result.detail.setdefault("application", inv["application"])
        return result

    return _execute


def make_cli_executor(runner: ScriptRunner) -> Executor:
    async def _execute(manifest: ToolManifest, parameters: dict[str, Any]) -> TierResult:
        command = manifest.invocation.get("command")
        if not command:
            return TierResult(
                success=False,
                error_class=ErrorClass.NOT_APPLICABLE,
                output="Manifest has no command template.",
            )
        try:
            argv = _fill_template(list(command), parameters)
        except ValueError as exc:
            return TierResult(success=False, error_class=ErrorClass.EXECUTION_FAILED, output=str(exc))
        result = await runner.run_argv(argv, parameters)
        if not result.success:
            result.detail.setdefault("application", argv[0])
        return result

    return _execute


def make_generated_script_executor(runner: ScriptRunner) -> Executor:
    async def _execute(manifest: ToolManifest, parameters: dict[str, Any]) -> TierResult:
        inv = manifest.invocation
        if "script" not in inv:
            return TierResult(
                success=False,
                error_class=ErrorClass.NOT_APPLICABLE,
                output="Generated manifest has no script body.",
            )
        return await runner.run_script(inv["script"], inv.get("language", "shell"), parameters)

    return _execute


def make_native_api_executor(client: httpx.AsyncClient) -> Executor:
    """
    HTTP call described by the manifest:
        {"method": "POST", "url": "https://…/{id}", "headers": {…}, "provider": "google"}

    Parameters fill `{placeholders}` in the URL and are sent as the JSON body
    (or query string for GET).
    """

    async def _execute(manifest: ToolManifest, parameters: dict[str, Any]) -> TierResult:
        inv = manifest.invocation
        url = inv.get("url")
        if not url:
            return TierResult(
                success=False,
                error_class=ErrorClass.NOT_APPLICABLE,
                output="Manifest has no URL.",
            )
        method = str(inv.get("method", "POST")).upper()
        detail = {"application": inv.get("service", manifest.action_name)}
        if inv.get("provider"):
            detail["provider"] = inv["provider"]

        try:
            target = str(url).format(**parameters)
        except (KeyError, IndexError) as exc:
            return TierResult(
                success=False,
                error_class=ErrorClass.EXECUTION_FAILED,
                output=f"Missing URL parameter: {exc}",
            )

        request_kwargs: dict[str, Any] = {"headers": inv.get("headers", {})}
        if method == "GET":
            request_kwargs["params"] = parameters
        else:
            request_kwargs["json"] = parameters

        try:
            response = await client.request(method, target, **request_kwargs)
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            return TierResult(
                success=False, error_class=ErrorClass.TARGET_MISSING, output=str(exc), detail=detail
            )
        except httpx.TimeoutException as exc:
            return TierResult(
                success=False, error_class=ErrorClass.TIMEOUT, output=str(exc), detail=detail
            )
        except httpx.HTTPError as exc:
            return TierResult(
                success=False, error_class=ErrorClass.EXECUTION_FAILED, output=str(exc), detail=detail
            )

        status = response.status_code
        body = _truncate(response.text)
        if status < 400:
            return TierResult(success=True, output=body)

        if status == 401:
            error_class = ErrorClass.AUTH_MISSING
        elif status == 403:
            error_class = ErrorClass.PERMISSION_DENIED
        elif status in (404, 410, 502, 503):
            error_class = ErrorClass.TARGET_MISSING
        else:
            error_class = ErrorClass.EXECUTION_FAILED
        return TierResult(
            success=False,
            error_class=error_class,
            output=f"{method} {target} → {status}: {body}",
            detail={**detail, "status": status},
        )

    return _execute


def default_executors(
    platform: str,
    runner: ScriptRunner | None = None,
    http_client: httpx.AsyncClient | None = None,
    extra: Mapping[ToolKind, Executor] | None = None,
) -> dict[ToolKind, Executor]:
    """Handler table keyed by kind. `extra` adds or overrides handlers."""
    runner = runner or ScriptRunner()
    table: dict[ToolKind, Executor] = {
        ToolKind.OS_SCRIPT: make_os_script_executor(runner, platform),
        ToolKind.CLI: make_cli_executor(runner),
        ToolKind.GENERATED_SCRIPT: make_generated_script_executor(runner),
    }
    if http_client is not None:
        table[ToolKind.NATIVE_API] = make_native_api_executor(http_client)
    if extra:
        table.update(extra)
    return table
