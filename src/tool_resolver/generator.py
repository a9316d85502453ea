# generator.py
# Script Generator: synthesizes, validates and caches a script for an
# ActionSignature that has no working tool.
#
# At most one generation runs per signature. The first caller registers an
# InFlightGenerationTicket whose task does the work; every caller, the
# first included, awaits that task through asyncio.shield, so cancelling a
# caller never cancels the shared generation. All callers get the same
# GeneratedScript or GenerationFailure.
#
# A caller that arrives after a generation has finished finds the Active
# entry in the cache and is handed that instead of starting another one.

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from tool_resolver.cache import ScriptCache
from tool_resolver.executors import ScriptRunner, language_for_platform
from tool_resolver.fallback import FailureLog
from tool_resolver.models import (
    ActionSignature,
    CacheEntry,
    CacheStatus,
    ErrorClass,
    GeneratedScript,
    GenerationFailure,
    PlatformContext,
    utcnow,
)
from tool_resolver.synthesis import CodeSynthesizer, SynthesisRequest

logger = logging.getLogger(__name__)

GenerationOutcome = GeneratedScript | GenerationFailure


@dataclass
class InFlightGenerationTicket:
    """A generation currently running for one signature."""

    signature: str
    action_name: str
    originator: str | None
    task: "asyncio.Task[GenerationOutcome]"
    started_at: datetime = field(default_factory=utcnow)
    waiters: int = 1


class ScriptGenerator:
    """
    Example:
        generator = ScriptGenerator(synthesizer, cache, ScriptRunner(), failure_log)
        outcome = await generator.generate(signature, "create_note", {"title": "x"}, context)
        if isinstance(outcome, GeneratedScript):
            ...
    """

    def __init__(
        self,
        synthesizer: CodeSynthesizer,
        cache: ScriptCache,
        runner: ScriptRunner | None = None,
        failure_log: FailureLog | None = None,
        validation_timeout: float = 10.0,
        synthesis_timeout: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._synthesizer = synthesizer
        self._cache = cache
        self._runner = runner or ScriptRunner()
        self._failure_log = failure_log
        self._validation_timeout = validation_timeout
        self._synthesis_timeout = synthesis_timeout
        self._clock = clock
        self._tickets: dict[str, InFlightGenerationTicket] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def in_flight(self, signature: str) -> InFlightGenerationTicket | None:
        return self._tickets.get(signature)

    async def generate(
        self,
        signature: ActionSignature,
        action_name: str,
        parameters: dict[str, Any],
        context: PlatformContext,
        request_id: str | None = None,
    ) -> GenerationOutcome:
        ticket = self._tickets.get(signature.digest)
        if ticket is not None:
            ticket.waiters += 1
            logger.info(
                "Joining in-flight generation for %r (%d waiter(s))",
                action_name,
                ticket.waiters,
            )
            return await asyncio.shield(ticket.task)

        cached = self._cache.get(signature.digest)
        if cached is not None:
            logger.info("Reusing script generated meanwhile for %r", action_name)
            return GeneratedScript(entry=cached)

        task = asyncio.create_task(
            self._run(signature, action_name, dict(parameters), context, request_id),
            name=f"generate-{signature.digest[:12]}",
        )
        ticket = InFlightGenerationTicket(
            signature=signature.digest,
            action_name=action_name,
            originator=request_id,
            task=task,
        )
        self._tickets[signature.digest] = ticket
        logger.info("Generating script for %r (%s)", action_name, signature.digest[:12])
        return await asyncio.shield(ticket.task)

    # ------------------------------------------------------------------
    # Generation task
    # ------------------------------------------------------------------

    async def _run(
        self,
        signature: ActionSignature,
        action_name: str,
        parameters: dict[str, Any],
        context: PlatformContext,
        request_id: str | None,
    ) -> GenerationOutcome:
        try:
            outcome = await self._synthesize_and_validate(
                signature, action_name, parameters, context, request_id
            )
        finally:
            ticket = self._tickets.get(signature.digest)
            if ticket is not None and ticket.task is asyncio.current_task():
                del self._tickets[signature.digest]

        if isinstance(outcome, GenerationFailure):
            logger.warning("Generation for %r failed: %s", action_name, outcome.message)
        else:
            logger.info("Generation for %r succeeded", action_name)
        return outcome

    async def _synthesize_and_validate(
        self,
        signature: ActionSignature,
        action_name: str,
        parameters: dict[str, Any],
        context: PlatformContext,
        request_id: str | None,
    ) -> GenerationOutcome:
        language = language_for_platform(signature.platform)
        prior = self._failure_log.records_for(action_name) if self._failure_log else []
        request = SynthesisRequest(
            action_name=action_name,
            parameters=parameters,
            context=context,
            language=language,
            prior_failures=prior,
        )

        try:
            script = await asyncio.wait_for(
                self._synthesizer.synthesize(request), timeout=self._synthesis_timeout
            )
        except asyncio.TimeoutError:
            return GenerationFailure(
                signature=signature.digest,
                action_name=action_name,
                error_class=ErrorClass.TIMEOUT,
                message=f"Script synthesis timed out after {self._synthesis_timeout:g}s.",
            )
        except Exception as exc:
            logger.debug("Synthesizer raised", exc_info=True)
            return GenerationFailure(
                signature=signature.digest,
                action_name=action_name,
                error_class=ErrorClass.UNKNOWN,
                message=f"Script synthesis failed: {exc}",
            )

        if not script or not script.strip():
            return GenerationFailure(
                signature=signature.digest,
                action_name=action_name,
                message="Synthesizer returned an empty script.",
            )

        try:
            result = await asyncio.wait_for(
                self._runner.run_script(script, language, parameters),
                timeout=self._validation_timeout,
            )
        except asyncio.TimeoutError:
            return GenerationFailure(
                signature=signature.digest,
                action_name=action_name,
                cause=ErrorClass.TIMEOUT,
                message=f"Validation run timed out after {self._validation_timeout:g}s.",
            )
        except ValueError as exc:
            return GenerationFailure(
                signature=signature.digest, action_name=action_name, message=str(exc)
            )

        if not result.success:
            cause = result.error_class or ErrorClass.EXECUTION_FAILED
            return GenerationFailure(
                signature=signature.digest,
                action_name=action_name,
                cause=cause,
                detail=dict(result.detail),
                message=f"Validation run failed ({cause.value}): {result.output}",
            )

        now = self._clock()
        entry = CacheEntry(
            signature=signature.digest,
            action_name=action_name,
            parameter_names=list(signature.parameter_names),
            platform=signature.platform,
            language=language,
            script_body=script,
            created_at=now,
            last_used_at=now,
            success_count=1,
            failure_count=0,
            status=CacheStatus.ACTIVE,
            origin_request_id=request_id,
        )

        try:
            entry = self._cache.put(entry)
        except OSError:
            logger.exception("Could not persist generated script for %r", action_name)
        return GeneratedScript(entry=entry, validation_output=result.output)
