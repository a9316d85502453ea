import asyncio
import json
import sys
from unittest.mock import MagicMock, patch

import httpx
import pytest

from tool_resolver import executors
from tool_resolver.executors import (
    ScriptRunner,
    build_tell_script,
    classify_error,
    default_executors,
    interpreter_for,
    language_for_platform,
    make_cli_executor,
    make_generated_script_executor,
    make_native_api_executor,
    make_os_script_executor,
)
from tool_resolver.models import ErrorClass, ToolKind, ToolManifest


def _manifest(kind: ToolKind, **invocation) -> ToolManifest:
    return ToolManifest(
        action_name="create_note",
        kind=kind,
        source_discoverer="test",
        invocation=invocation,
    )


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("text, expected", [
    ("execution error: Not authorized to send Apple events to Notes. (-1743)", ErrorClass.PERMISSION_DENIED),
    ("osascript is not allowed assistive access", ErrorClass.PERMISSION_DENIED),
    ("HTTP 401 Unauthorized", ErrorClass.AUTH_MISSING),
    ("error: token expired, please re-authenticate", ErrorClass.AUTH_MISSING),
    ("Can't get application \"Foo\". (-1728)", ErrorClass.TARGET_MISSING),
    ("sh: 1: frobnicate: command not found", ErrorClass.TARGET_MISSING),
    ("'Get-Foo' is not recognized as the name of a cmdlet", ErrorClass.TARGET_MISSING),
])
def test_classify_error_patterns(text, expected):
    assert classify_error(text, 1) is expected


def test_classify_error_exit_codes():
    assert classify_error("", 126) is ErrorClass.PERMISSION_DENIED
    assert classify_error("", 127) is ErrorClass.TARGET_MISSING
    assert classify_error("something broke", 2) is ErrorClass.EXECUTION_FAILED
    assert classify_error("") is ErrorClass.UNKNOWN


def test_interpreters_and_languages():
    assert interpreter_for("applescript", "x") == ["osascript", "-e", "x"]
    assert interpreter_for("python", "x") == [sys.executable, "-c", "x"]
    assert interpreter_for("sh", "x") == ["/bin/sh", "-c", "x"]
    with pytest.raises(ValueError):
        interpreter_for("cobol", "x")
    assert language_for_platform("macos") == "applescript"
    assert language_for_platform("windows") == "powershell"
    assert language_for_platform("linux") == "shell"


def test_build_tell_script_quotes_values():
    script = build_tell_script("Notes", "make new note", {"name": "Groceries", "body": 'say "hi"', "pinned": True})
    assert script == (
        'tell application "Notes" to make new note with properties '
        '{body:"say \\"hi\\"", name:"Groceries", pinned:true}'
    )


# ---------------------------------------------------------------------------
# ScriptRunner
# ---------------------------------------------------------------------------

def test_runner_passes_parameters_via_env_and_stdin():
    script = (
        "import json, os, sys\n"
        "data = json.load(sys.stdin)\n"
        "print(os.environ['TOOL_PARAM_TITLE'], data['count'], os.environ['TOOL_PARAM_COUNT'])"
    )
    result = asyncio.run(ScriptRunner().run_script(script, "python", {"title": "Groceries", "count": 3}))
    assert result.success
    assert result.output == "Groceries 3 3"


def test_runner_classifies_failure_output():
    script = "import sys; sys.stderr.write('Permission denied'); sys.exit(1)"
    result = asyncio.run(ScriptRunner().run_script(script, "python", {}))
    assert not result.success
    assert result.error_class is ErrorClass.PERMISSION_DENIED
    assert result.output == "Permission denied"
    assert result.detail["returncode"] == 1


def test_runner_missing_program_is_target_missing():
    result = asyncio.run(ScriptRunner().run_argv(["no-such-program-for-tool-resolver"], {}))
    assert not result.success
    assert result.error_class is ErrorClass.TARGET_MISSING


def test_runner_kills_child_on_timeout():
    runner = ScriptRunner()

    async def scenario():
        with patch("tool_resolver.executors._terminate", wraps=executors._terminate) as terminate:
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(
                    runner.run_script("import time; time.sleep(30)", "python", {}), timeout=1.0
                )
            proc = terminate.call_args.args[0]
            return await asyncio.wait_for(proc.wait(), timeout=5)

    returncode = asyncio.run(scenario())
    assert returncode != 0


# ---------------------------------------------------------------------------
# Built-in handlers
# ---------------------------------------------------------------------------

def test_cli_executor_fills_template():
    execute = make_cli_executor(ScriptRunner())
    manifest = _manifest(ToolKind.CLI, command=[sys.executable, "-c", "print('{title}')"])
    result = asyncio.run(execute(manifest, {"title": "Groceries"}))
    assert result.success
    assert result.output == "Groceries"


def test_cli_executor_edge_cases():
    execute = make_cli_executor(ScriptRunner())

    no_command = asyncio.run(execute(_manifest(ToolKind.CLI), {}))
    assert no_command.error_class is ErrorClass.NOT_APPLICABLE

    missing_param = asyncio.run(execute(_manifest(ToolKind.CLI, command=["echo", "{title}"]), {}))
    assert missing_param.error_class is ErrorClass.EXECUTION_FAILED

    missing_program = asyncio.run(
        execute(_manifest(ToolKind.CLI, command=["no-such-program-for-tool-resolver"]), {})
    )
    assert missing_program.error_class is ErrorClass.TARGET_MISSING
    assert missing_program.detail["application"] == "no-such-program-for-tool-resolver"


def test_os_script_executor():
    execute = make_os_script_executor(ScriptRunner(), "linux")

    ok = asyncio.run(execute(_manifest(ToolKind.OS_SCRIPT, script="print('done')", language="python"), {}))
    assert ok.success and ok.output == "done"

    empty = asyncio.run(execute(_manifest(ToolKind.OS_SCRIPT), {}))
    assert empty.error_class is ErrorClass.NOT_APPLICABLE


def test_generated_script_executor_uses_manifest_language():
    execute = make_generated_script_executor(ScriptRunner())
    manifest = _manifest(
        ToolKind.GENERATED_SCRIPT,
        signature="abc",
        language="python",
        script="import os; print(os.environ['TOOL_PARAM_TITLE'].upper())",
    )
    result = asyncio.run(execute(manifest, {"title": "note"}))
    assert result.output == "NOTE"


# ---------------------------------------------------------------------------
# Native API handler
# ---------------------------------------------------------------------------

def _run_native(handler, manifest, parameters):
    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await make_native_api_executor(client)(manifest, parameters)

    return asyncio.run(scenario())


def test_native_api_post_sends_json_body():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, text="created")

    manifest = _manifest(ToolKind.NATIVE_API, url="https://api.example.com/notebooks/{notebook}/notes")
    result = _run_native(handler, manifest, {"notebook": "home", "title": "Groceries"})

    assert result.success and result.output == "created"
    assert seen == {
        "method": "POST",
        "path": "/notebooks/home/notes",
        "body": {"notebook": "home", "title": "Groceries"},
    }


def test_native_api_get_sends_query():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=request.url.params["q"])

    manifest = _manifest(ToolKind.NATIVE_API, method="get", url="https://api.example.com/search")
    assert _run_native(handler, manifest, {"q": "milk"}).output == "milk"


@pytest.mark.parametrize("status, expected", [
    (401, ErrorClass.AUTH_MISSING),
    (403, ErrorClass.PERMISSION_DENIED),
    (404, ErrorClass.TARGET_MISSING),
    (500, ErrorClass.EXECUTION_FAILED),
])
def test_native_api_status_mapping(status, expected):
    manifest = _manifest(ToolKind.NATIVE_API, url="https://api.example.com/x", provider="google")
    result = _run_native(lambda request: httpx.Response(status), manifest, {})
    assert not result.success
    assert result.error_class is expected
    assert result.detail["provider"] == "google"
    assert result.detail["status"] == status


def test_native_api_connect_error_is_target_missing():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    manifest = _manifest(ToolKind.NATIVE_API, url="https://localhost:1/x")
    result = _run_native(handler, manifest, {})
    assert result.error_class is ErrorClass.TARGET_MISSING


# ---------------------------------------------------------------------------
# Handler table
# ---------------------------------------------------------------------------

def test_default_executors_table():
    table = default_executors("linux")
    assert set(table) == {ToolKind.OS_SCRIPT, ToolKind.CLI, ToolKind.GENERATED_SCRIPT}

    async def vision(manifest, parameters):
        raise NotImplementedError

    table = default_executors(
        "linux", http_client=MagicMock(spec=httpx.AsyncClient), extra={ToolKind.VISION_FALLBACK: vision}
    )
    assert ToolKind.NATIVE_API in table
    assert table[ToolKind.VISION_FALLBACK] is vision
