# engine.py
# Resolution Engine: walks the fixed tier order for one action request.
#
# Control flow:
#   PENDING → TRY_TIER(i) → SUCCESS
#                         → ADVANCE → TRY_TIER(i+1) → … → EXHAUSTED
#   EXHAUSTED → FALLBACK → DONE
#
# Tier order is ToolKind order and nothing else. A success ends the walk.
# Tier failures are recorded and swallowed here; only exhaustion reaches
# the caller, and always as a FallbackResponse.

import asyncio
import logging
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta
from typing import Any

import httpx

from tool_resolver.cache import CacheStore, ScriptCache
from tool_resolver.catalog import PROMOTED_SOURCE, ToolCatalog, manifest_from_entry
from tool_resolver.config import ResolverConfig
from tool_resolver.discovery import Discoverer, discover_all
from tool_resolver.executors import Executor, ScriptRunner, default_executors
from tool_resolver.fallback import FailureLog, FallbackPolicy
from tool_resolver.generator import ScriptGenerator
from tool_resolver.models import (
    ActionRequest,
    ActionSignature,
    AttemptOutcome,
    ErrorClass,
    ExecutionAttempt,
    GenerationFailure,
    ResolutionResult,
    ResolutionState,
    TierResult,
    ToolKind,
    ToolManifest,
    utcnow,
)
from tool_resolver.signature import compute_signature
from tool_resolver.synthesis import CodeSynthesizer, OpenAISynthesizer

logger = logging.getLogger(__name__)


class ResolutionEngine:
    """
    Orchestrates catalog, cache, generator, executors and fallback for
    one request at a time; many requests may run concurrently.

    Example:
        engine = build_engine(ResolverConfig.from_env(), platform="macos", discoverers=[...])
        result = await engine.resolve(
            ActionRequest(
                action_name="send_message",
                parameters={"to": "a@b.com"},
                context=PlatformContext(platform="macos"),
            )
        )
    """

    def __init__(
        self,
        catalog: ToolCatalog,
        cache: ScriptCache,
        executors: Mapping[ToolKind, Executor],
        fallback: FallbackPolicy,
        generator: ScriptGenerator | None = None,
        config: ResolverConfig | None = None,
    ) -> None:
        self._catalog = catalog
        self._cache = cache
        self._executors = dict(executors)
        self._fallback = fallback
        self._generator = generator
        self._config = config or ResolverConfig()

    @property
    def catalog(self) -> ToolCatalog:
        return self._catalog

    @property
    def cache(self) -> ScriptCache:
        return self._cache

    @property
    def fallback(self) -> FallbackPolicy:
        return self._fallback

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(self, action_name: str, signature: ActionSignature) -> dict[ToolKind, ToolManifest]:
        """
        One manifest per populated tier.

        Promoted manifests only count when the cache still holds an Active
        entry for this exact signature; the cache is authoritative.
        """
        plan: dict[ToolKind, ToolManifest] = {}
        for manifest in self._catalog.lookup(action_name):
            if manifest.source_discoverer == PROMOTED_SOURCE:
                continue
            plan.setdefault(manifest.kind, manifest)

        entry = self._cache.get(signature.digest)
        if entry is not None:
            promoted = self._catalog.promoted(action_name)
            if promoted is not None and promoted.invocation.get("signature") == entry.signature:
                plan[ToolKind.GENERATED_SCRIPT] = promoted
            else:
                plan[ToolKind.GENERATED_SCRIPT] = manifest_from_entry(entry)
        return plan

    # ------------------------------------------------------------------
    # Tier execution
    # ------------------------------------------------------------------

    async def _try_tier(
        self, kind: ToolKind, manifest: ToolManifest, parameters: dict[str, Any]
    ) -> ExecutionAttempt:
        started = utcnow()
        executor = self._executors.get(kind)
        if executor is None:
            return ExecutionAttempt(
                tier=kind,
                started_at=started,
                outcome=AttemptOutcome.SKIPPED,
                error_class=ErrorClass.NOT_APPLICABLE,
                message=f"No executor registered for {kind.label}.",
            )

        timeout = self._config.tier_timeout(kind)
        try:
            result = await asyncio.wait_for(executor(manifest, dict(parameters)), timeout=timeout)
        except asyncio.TimeoutError:
            result = TierResult(
                success=False,
                error_class=ErrorClass.TIMEOUT,
                output=f"{kind.label} timed out after {timeout:g}s.",
            )
        except Exception as exc:
            logger.debug("%s executor raised for %r", kind.label, manifest.action_name, exc_info=True)
            result = TierResult(success=False, error_class=ErrorClass.UNKNOWN, output=str(exc))

        return _attempt_from_result(kind, started, result, manifest)

    async def _try_generation(self, request: ActionRequest, signature: ActionSignature) -> ExecutionAttempt:
        started = utcnow()
        detail = {"generation": True, "signature": signature.digest}
        if self._generator is None:
            return ExecutionAttempt(
                tier=ToolKind.GENERATED_SCRIPT,
                started_at=started,
                outcome=AttemptOutcome.SKIPPED,
                error_class=ErrorClass.NOT_APPLICABLE,
                message="Script generation is disabled.",
            )

        try:
            outcome = await self._generator.generate(
                signature,
                request.action_name,
                request.parameters,
                request.context,
                request_id=request.request_id,
            )
        except Exception as exc:
            logger.debug("Generation raised for %r", request.action_name, exc_info=True)
            outcome = GenerationFailure(
                signature=signature.digest,
                action_name=request.action_name,
                error_class=ErrorClass.UNKNOWN,
                message=str(exc),
            )

        if isinstance(outcome, GenerationFailure):
            if outcome.cause is not None:
                detail = {**outcome.detail, **detail, "cause": outcome.cause}
            return ExecutionAttempt(
                tier=ToolKind.GENERATED_SCRIPT,
                started_at=started,
                outcome=AttemptOutcome.FAILURE,
                error_class=outcome.error_class,
                message=outcome.message,
                detail=detail,
            )

        entry = outcome.entry
        if entry.origin_request_id == request.request_id:
            # The validation run already executed this request's parameters.
            return ExecutionAttempt(
                tier=ToolKind.GENERATED_SCRIPT,
                started_at=started,
                outcome=AttemptOutcome.SUCCESS,
                message=outcome.validation_output,
                detail=detail,
            )

        # Coalesced waiter or late arrival: run the shared script with our own parameters.
        attempt = await self._try_tier(
            ToolKind.GENERATED_SCRIPT, manifest_from_entry(entry), request.parameters
        )
        if attempt.outcome is not AttemptOutcome.SKIPPED:
            self._cache.record_outcome(entry.signature, attempt.outcome is AttemptOutcome.SUCCESS)
        return attempt

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def resolve(self, request: ActionRequest) -> ResolutionResult:
        """
        Run the state machine for one request.

        Never raises for tier failures; cancellation of the calling task
        propagates to the running executor.
        """
        states = [ResolutionState.PENDING]
        signature = compute_signature(
            request.action_name, request.parameters, request.context.platform
        )
        plan = self.plan(request.action_name, signature)
        attempts: list[ExecutionAttempt] = []

        logger.debug(
            "Resolving %r (%s) with tiers %s",
            request.action_name,
            signature.digest[:12],
            [k.label for k in sorted(plan)],
        )

        for kind in ToolKind:
            states.append(ResolutionState.TRY_TIER)
            manifest = plan.get(kind)

            if manifest is None and kind is ToolKind.GENERATED_SCRIPT:
                attempt = await self._try_generation(request, signature)
            elif manifest is None:
                attempt = ExecutionAttempt(
                    tier=kind,
                    outcome=AttemptOutcome.SKIPPED,
                    error_class=ErrorClass.NOT_APPLICABLE,
                )
            else:
                attempt = await self._try_tier(kind, manifest, request.parameters)
                cached_signature = manifest.invocation.get("signature")
                if (
                    kind is ToolKind.GENERATED_SCRIPT
                    and cached_signature
                    and attempt.outcome is not AttemptOutcome.SKIPPED
                ):
                    self._cache.record_outcome(
                        cached_signature, attempt.outcome is AttemptOutcome.SUCCESS
                    )

            attempts.append(attempt)
            logger.debug(
                "%s for %r: %s %s",
                kind.label,
                request.action_name,
                attempt.outcome.value,
                attempt.error_class.value if attempt.error_class else "",
            )

            if attempt.outcome is AttemptOutcome.SUCCESS:
                states += [ResolutionState.SUCCESS, ResolutionState.DONE]
                logger.info("Resolved %r via %s", request.action_name, kind.label)
                return ResolutionResult(
                    request_id=request.request_id,
                    action_name=request.action_name,
                    signature=signature.digest,
                    success=True,
                    tier=kind,
                    output=attempt.message,
                    attempts=attempts,
                    states=states,
                )
            states.append(ResolutionState.ADVANCE)

        states += [ResolutionState.EXHAUSTED, ResolutionState.FALLBACK]
        response = self._fallback.classify(
            request.action_name,
            attempts,
            platform=signature.platform,
            signature=signature.digest,
        )
        states.append(ResolutionState.DONE)
        return ResolutionResult(
            request_id=request.request_id,
            action_name=request.action_name,
            signature=signature.digest,
            success=False,
            attempts=attempts,
            states=states,
            fallback=response,
        )


def _attempt_from_result(
    kind: ToolKind, started: datetime, result: TierResult, manifest: ToolManifest
) -> ExecutionAttempt:
    if result.success:
        return ExecutionAttempt(
            tier=kind,
            started_at=started,
            outcome=AttemptOutcome.SUCCESS,
            message=result.output,
            detail=dict(result.detail),
        )
    error_class = result.error_class or ErrorClass.EXECUTION_FAILED
    outcome = (
        AttemptOutcome.SKIPPED
        if error_class is ErrorClass.NOT_APPLICABLE
        else AttemptOutcome.FAILURE
    )
    return ExecutionAttempt(
        tier=kind,
        started_at=started,
        outcome=outcome,
        error_class=error_class,
        message=result.output,
        detail={"source": manifest.source_discoverer, **result.detail},
    )


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_engine(
    config: ResolverConfig,
    platform: str,
    discoverers: Iterable[Discoverer] = (),
    synthesizer: CodeSynthesizer | None = None,
    executors: Mapping[ToolKind, Executor] | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> ResolutionEngine:
    """Assemble a ready engine: discovery, cache load, promotion."""
    catalog = ToolCatalog()
    catalog.rebuild(discover_all(discoverers))

    cache = ScriptCache(
        CacheStore(config.cache_dir),
        catalog=catalog,
        idle_horizon=timedelta(days=config.idle_horizon_days),
    )
    cache.promote_all()

    failure_log = FailureLog(maxlen=config.failure_ring_size)
    runner = ScriptRunner()
    generator = ScriptGenerator(
        synthesizer or OpenAISynthesizer(model=config.synthesis_model),
        cache,
        runner=runner,
        failure_log=failure_log,
        validation_timeout=config.validation_timeout,
        synthesis_timeout=config.synthesis_timeout,
    )
    table = default_executors(platform, runner=runner, http_client=http_client, extra=executors)

    return ResolutionEngine(
        catalog=catalog,
        cache=cache,
        executors=table,
        fallback=FallbackPolicy(failure_log),
        generator=generator,
        config=config,
    )
