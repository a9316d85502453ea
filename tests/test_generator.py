import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from tool_resolver.cache import CacheStore, ScriptCache
from tool_resolver.fallback import FailureLog
from tool_resolver.generator import ScriptGenerator
from tool_resolver.models import (
    CacheStatus,
    ErrorClass,
    FailureRecord,
    FallbackClassification,
    GeneratedScript,
    GenerationFailure,
    PlatformContext,
    TierResult,
)
from tool_resolver.signature import compute_signature


class FakeRunner:
    def __init__(self, result: TierResult, delay: float = 0.0) -> None:
        self.result = result
        self.delay = delay
        self.calls: list[tuple[str, str, dict]] = []

    async def run_script(self, script, language, parameters):
        self.calls.append((script, language, dict(parameters)))
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.result


def _synthesizer(script: str = "echo ok", delay: float = 0.01) -> MagicMock:
    async def synthesize(request):
        await asyncio.sleep(delay)
        return script

    synth = MagicMock()
    synth.synthesize = AsyncMock(side_effect=synthesize)
    return synth


@pytest.fixture
def cache(tmp_path):
    return ScriptCache(CacheStore(tmp_path / "scripts"))


CONTEXT = PlatformContext(platform="linux")
SIGNATURE = compute_signature("create_note", {"title": "x"}, "linux")


# ---------------------------------------------------------------------------
# Single-flight coalescing
# ---------------------------------------------------------------------------

def test_concurrent_requests_share_one_generation(cache):
    synth = _synthesizer()
    runner = FakeRunner(TierResult(success=True, output="note created"))
    generator = ScriptGenerator(synth, cache, runner=runner)

    async def scenario():
        return await asyncio.gather(*(
            generator.generate(SIGNATURE, "create_note", {"title": f"n{i}"}, CONTEXT, request_id=f"r{i}")
            for i in range(5)
        ))

    results = asyncio.run(scenario())

    assert synth.synthesize.await_count == 1
    assert len(runner.calls) == 1
    assert all(r is results[0] for r in results)
    assert isinstance(results[0], GeneratedScript)
    assert results[0].entry.origin_request_id == "r0"
    assert generator.in_flight(SIGNATURE.digest) is None


def test_success_is_cached_with_validation_output(cache):
    runner = FakeRunner(TierResult(success=True, output="note created"))
    generator = ScriptGenerator(_synthesizer(), cache, runner=runner)

    outcome = asyncio.run(
        generator.generate(SIGNATURE, "create_note", {"title": "x"}, CONTEXT, request_id="req")
    )

    entry = outcome.entry
    assert entry.status is CacheStatus.ACTIVE
    assert (entry.success_count, entry.failure_count) == (1, 0)
    assert entry.parameter_names == ["title"]
    assert entry.language == "shell"
    assert outcome.validation_output == "note created"
    assert cache.get(SIGNATURE.digest).script_body == "echo ok"
    assert runner.calls == [("echo ok", "shell", {"title": "x"})]


def test_late_caller_reuses_cached_script(cache):
    synth = _synthesizer()
    runner = FakeRunner(TierResult(success=True, output="note created"))
    generator = ScriptGenerator(synth, cache, runner=runner)

    asyncio.run(generator.generate(SIGNATURE, "create_note", {"title": "a"}, CONTEXT, request_id="a"))
    late = asyncio.run(
        generator.generate(SIGNATURE, "create_note", {"title": "b"}, CONTEXT, request_id="b")
    )

    assert synth.synthesize.await_count == 1
    assert len(runner.calls) == 1
    assert late.entry.origin_request_id == "a"
    assert late.validation_output == ""
    assert cache.peek(SIGNATURE.digest).success_count == 1


def test_failed_validation_is_not_cached(cache):
    synth = _synthesizer()
    runner = FakeRunner(TierResult(success=False, error_class=ErrorClass.EXECUTION_FAILED, output="boom"))
    generator = ScriptGenerator(synth, cache, runner=runner)

    outcome = asyncio.run(generator.generate(SIGNATURE, "create_note", {"title": "x"}, CONTEXT))

    assert isinstance(outcome, GenerationFailure)
    assert outcome.error_class is ErrorClass.VALIDATION_FAILED
    assert outcome.cause is ErrorClass.EXECUTION_FAILED
    assert "boom" in outcome.message
    assert len(cache) == 0
    assert generator.in_flight(SIGNATURE.digest) is None

    # No negative caching: the next request tries again.
    asyncio.run(generator.generate(SIGNATURE, "create_note", {"title": "x"}, CONTEXT))
    assert synth.synthesize.await_count == 2


def test_cancelled_originator_leaves_no_state_behind(cache):
    async def scenario():
        release = asyncio.Event()

        async def slow(request):
            await release.wait()
            return "echo ok"

        synth = MagicMock()
        synth.synthesize = AsyncMock(side_effect=slow)
        runner = FakeRunner(TierResult(success=True, output="validated"))
        generator = ScriptGenerator(synth, cache, runner=runner)

        first = asyncio.create_task(
            generator.generate(SIGNATURE, "create_note", {"title": "a"}, CONTEXT, request_id="a")
        )
        second = asyncio.create_task(
            generator.generate(SIGNATURE, "create_note", {"title": "b"}, CONTEXT, request_id="b")
        )
        for _ in range(3):
            await asyncio.sleep(0)
        ticket = generator.in_flight(SIGNATURE.digest)
        assert ticket is not None
        assert ticket.waiters == 2

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        assert not ticket.task.cancelled()

        release.set()
        outcome = await second
        return generator, outcome

    generator, outcome = asyncio.run(scenario())
    assert isinstance(outcome, GeneratedScript)
    assert outcome.entry.origin_request_id == "a"
    assert outcome.validation_output == "validated"
    assert cache.get(SIGNATURE.digest) is not None
    assert generator.in_flight(SIGNATURE.digest) is None


# ---------------------------------------------------------------------------
# Failure modes
# ---------------------------------------------------------------------------

def test_synthesizer_exception_becomes_generation_failure(cache):
    synth = MagicMock()
    synth.synthesize = AsyncMock(side_effect=RuntimeError("model unavailable"))
    generator = ScriptGenerator(synth, cache, runner=FakeRunner(TierResult(success=True)))

    outcome = asyncio.run(generator.generate(SIGNATURE, "create_note", {}, CONTEXT))

    assert isinstance(outcome, GenerationFailure)
    assert outcome.error_class is ErrorClass.UNKNOWN
    assert "model unavailable" in outcome.message


def test_empty_script_is_rejected(cache):
    runner = FakeRunner(TierResult(success=True))
    generator = ScriptGenerator(_synthesizer(script="   "), cache, runner=runner)

    outcome = asyncio.run(generator.generate(SIGNATURE, "create_note", {}, CONTEXT))

    assert isinstance(outcome, GenerationFailure)
    assert runner.calls == []


def test_validation_timeout(cache):
    runner = FakeRunner(TierResult(success=True), delay=1.0)
    generator = ScriptGenerator(_synthesizer(), cache, runner=runner, validation_timeout=0.05)

    outcome = asyncio.run(generator.generate(SIGNATURE, "create_note", {}, CONTEXT))

    assert isinstance(outcome, GenerationFailure)
    assert "timed out" in outcome.message
    assert len(cache) == 0


def test_prior_failures_reach_synthesizer(cache):
    log = FailureLog()
    log.append(FailureRecord(
        action_name="create_note",
        classification=FallbackClassification.MISSING_SCRIPT,
        error_classes=[ErrorClass.VALIDATION_FAILED],
        message="earlier attempt failed",
    ))
    synth = _synthesizer()
    generator = ScriptGenerator(synth, cache, runner=FakeRunner(TierResult(success=True)), failure_log=log)

    asyncio.run(generator.generate(SIGNATURE, "create_note", {"title": "x"}, CONTEXT))

    request = synth.synthesize.await_args.args[0]
    assert request.language == "shell"
    assert [r.message for r in request.prior_failures] == ["earlier attempt failed"]


def test_synthesis_timeout(cache):
    runner = FakeRunner(TierResult(success=True))
    generator = ScriptGenerator(
        _synthesizer(delay=1.0), cache, runner=runner, synthesis_timeout=0.05
    )

    outcome = asyncio.run(generator.generate(SIGNATURE, "create_note", {}, CONTEXT))

    assert isinstance(outcome, GenerationFailure)
    assert outcome.error_class is ErrorClass.TIMEOUT
    assert "timed out" in outcome.message
    assert runner.calls == []
    assert generator.in_flight(SIGNATURE.digest) is None


def test_validation_failure_keeps_classified_cause(cache):
    denied = TierResult(
        success=False,
        error_class=ErrorClass.PERMISSION_DENIED,
        output="Not authorized to send Apple events to Notes. (-1743)",
        detail={"permission": "automation"},
    )
    generator = ScriptGenerator(_synthesizer(), cache, runner=FakeRunner(denied))

    outcome = asyncio.run(generator.generate(SIGNATURE, "create_note", {"title": "x"}, CONTEXT))

    assert outcome.error_class is ErrorClass.VALIDATION_FAILED
    assert outcome.cause is ErrorClass.PERMISSION_DENIED
    assert outcome.detail == {"permission": "automation"}
