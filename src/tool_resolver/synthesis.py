# synthesis.py
# Code-synthesis collaborator for the Script Generator.
#
# The generator hands over the action, its parameters, the live platform
# context and past FailureRecords for the action; the collaborator returns
# a candidate script body. The core never interprets that body.

import json
import os
import re
from typing import Any, Protocol

from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from tool_resolver.models import FailureRecord, PlatformContext


class SynthesisError(Exception):
    """Raised when the collaborator returns no usable script."""


class SynthesisRequest(BaseModel):
    action_name: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    context: PlatformContext
    language: str
    prior_failures: list[FailureRecord] = Field(default_factory=list)


class CodeSynthesizer(Protocol):
    async def synthesize(self, request: SynthesisRequest) -> str: ...


# ---------------------------------------------------------------------------
# System Prompt
# ---------------------------------------------------------------------------

SYNTHESIS_SYSTEM_PROMPT = """\
You are a script generation expert. You write small, self-contained automation \
scripts that perform exactly one action on the user's computer.

Rules:
1. Respond with ONLY the script inside one fenced code block. No explanations.
2. Read parameters from environment variables named TOOL_PARAM_<NAME> (upper case). \
The same parameters are also available as a JSON object on standard input.
3. Exit with status 0 on success. On failure write one short line to standard \
error and exit non-zero.
4. Never prompt for input and never open dialogs that wait for the user.
5. Do not hard-code the example parameter values you are shown.

Language conventions:
- applescript: use `on run` with `system attribute "TOOL_PARAM_<NAME>"`; use \
System Events only when the target application has no scripting dictionary.
- powershell: use `$env:TOOL_PARAM_<NAME>`; prefer cmdlets and COM objects over \
UI automation.
- shell: POSIX sh only.\
"""


def build_user_prompt(request: SynthesisRequest) -> str:
    lines = [f"Generate a {request.language} script to: {request.action_name}", ""]
    lines.append(f"Platform: {request.context.platform}")
    if request.context.front_app:
        lines.append(f"Frontmost application: {request.context.front_app}")
    for key, value in sorted(request.context.extras.items()):
        lines.append(f"{key}: {value}")
    lines.append("")

    if request.parameters:
        lines.append("Parameters (names are fixed, values are examples):")
        lines.append(json.dumps(request.parameters, indent=2, sort_keys=True, default=str))
        lines.append("")

    if request.prior_failures:
        lines.append("Earlier attempts at this action failed. Avoid repeating them:")
        for record in request.prior_failures[-5:]:
            classes = ", ".join(c.value for c in record.error_classes) or "unknown"
            lines.append(f"- {record.classification.value} ({classes}): {record.message}")
        lines.append("")

    lines.append("Script:")
    return "\n".join(lines)


def extract_script(response: str) -> str:
    """Pull the script out of a fenced block, or take the text after 'Script:'."""
    fenced = re.search(r"```[\w+-]*[ \t]*\n(.*?)\n?```", response, re.DOTALL)
    if fenced:
        return fenced.group(1).strip()
    marker = re.search(r"Script:\s*(.*)", response, re.DOTALL)
    if marker:
        return marker.group(1).strip()
    return response.strip()


# ---------------------------------------------------------------------------
# OpenAISynthesizer
# ---------------------------------------------------------------------------


class OpenAISynthesizer:
    """
    Chat-completions synthesizer. Defaults to OpenRouter; pass a client to
    target any OpenAI-compatible endpoint.

    Example:
        synthesizer = OpenAISynthesizer(model="anthropic/claude-3.5-haiku")
        body = await synthesizer.synthesize(request)
    """

    def __init__(self, model: str, client: AsyncOpenAI | None = None) -> None:
        self._model = model
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        # Built on first use so a missing key only matters when generating.
        if self._client is None:
            self._client = AsyncOpenAI(
                base_url="https://openrouter.ai/api/v1",
                api_key=os.getenv("OPENROUTER_API_KEY"),
            )
        return self._client

    async def synthesize(self, request: SynthesisRequest) -> str:
        response = await self._get_client().chat.completions.create(
            model=self._model,
            messages=[
                {"role": "system", "content": SYNTHESIS_SYSTEM_PROMPT},
                {"role": "user", "content": build_user_prompt(request)},
            ],
        )
        content = response.choices[0].message.content or ""
        script = extract_script(content)
        if not script:
            raise SynthesisError(f"Empty script returned for {request.action_name!r}")
        return script
