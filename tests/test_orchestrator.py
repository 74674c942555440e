import pytest

from forefront.agents import FALLBACK_APOLOGY
from forefront.orchestrator import ProgressCallbacks
from forefront.schemas import ChainedResponse, OrchestratorRequest, OrchestratorResponse
from tests.fakes import IMAGE_URL, FakeBackend, completion, tool_call

IMAGE_INTENT = {"type": "image-generation", "needsImageGeneration": True, "complexity": "medium", "confidence": 0.9}
RESEARCH_PLAN = {
    "reasoning": "search then write",
    "estimatedTime": 20,
    "steps": [
        {"stepNumber": 1, "purpose": "web-search", "recommendedModel": "sonar-pro"},
        {"stepNumber": 2, "purpose": "text-generation", "inputFrom": 1},
    ],
}


def request(message: str, **kwargs) -> OrchestratorRequest:
    return OrchestratorRequest(message=message, **kwargs)


@pytest.mark.asyncio
async def test_image_request_runs_enhancement_then_image(orchestrator_factory):
    orchestrator, backend = orchestrator_factory(FakeBackend(classification=IMAGE_INTENT))
    result = await orchestrator.execute(request("generate an image of a cat in a garden"))

    assert isinstance(result, ChainedResponse)
    assert [s.purpose for s in result.steps] == ["prompt-enhancement", "image-generation"]
    assert result.steps[-1].type == "image"
    assert result.steps[-1].content == IMAGE_URL
    assert result.steps[-1].metadata["prompt"] == "A cat in a sunlit garden, watercolor style"
    assert result.steps[0].metadata["extractionKind"] == "structured"
    assert result.intent.needs_chaining is True
    assert [c.purpose for c in result.intent.chain_steps] == ["prompt-enhancement", "image-generation"]
    assert result.metadata["plan"]["source"] == "fallback"


@pytest.mark.asyncio
async def test_follow_up_reference_is_resolved_from_the_session(orchestrator_factory):
    orchestrator, backend = orchestrator_factory(FakeBackend(classification=IMAGE_INTENT))
    first = await orchestrator.execute(request("generate an image of a cat in a garden", session_id="s1"))
    session = orchestrator.sessions.get("s1")
    assert session.tracker.get_most_recent("prompt").content == "A cat in a sunlit garden, watercolor style"
    assert session.tracker.get_most_recent("image").content == IMAGE_URL
    assert first.metadata["sessionId"] == "s1"

    await orchestrator.execute(request("generate another image using that prompt", session_id="s1"))
    planner_prompt = backend.calls_with("You are the Workflow Planner")[-1]["user"]
    assert "A cat in a sunlit garden, watercolor style" in planner_prompt
    assert "that prompt" not in planner_prompt
    assert session.tracker.current_turn_index == 2


@pytest.mark.asyncio
async def test_chained_workflow_reports_progress_and_composes(orchestrator_factory):
    backend = FakeBackend(
        classification={
            "type": "chained",
            "needsChaining": True,
            "needsWebSearch": True,
            "complexity": "high",
            "confidence": 0.9,
        },
        plan=RESEARCH_PLAN,
    )
    orchestrator, _ = orchestrator_factory(backend)
    events = []
    callbacks = ProgressCallbacks(
        on_step_start=lambda payload: events.append(("start", payload["step"])),
        on_step_complete=lambda payload: events.append(("complete", payload["step"])),
        on_coordinator_update=lambda payload: events.append(("coordinator", payload["step"])),
    )
    result = await orchestrator.execute(request("research GPU prices and then write a short report"), callbacks)

    assert isinstance(result, ChainedResponse)
    assert [s.purpose for s in result.steps] == ["web-search", "text-generation", "final-composition"]
    assert events == [
        ("start", 1),
        ("coordinator", 1),
        ("complete", 1),
        ("start", 2),
        ("complete", 2),
        ("start", 3),
        ("complete", 3),
    ]
    assert result.steps[0].metadata["citations"] == ["https://source.test/a"]
    assert result.steps[1].content == "Written content."
    assert result.steps[2].content == "Final composed answer."
    assert result.metadata["plan"]["source"] == "model"
    writer_input = backend.calls_with("You are a Technical Writer")[0]["user"]
    assert "Research summary." in writer_input
    assert "- finding one" in writer_input
    composer_input = backend.calls_with("You are the Final Composer")[0]["user"]
    assert "Step 1 (web-search)" in composer_input
    assert "Step 2 (text-generation)" in composer_input
    search_request = [c for c in backend.calls if c["provider"] == "perplexity"][0]["request"]
    assert search_request["search"]["recency"] == "week"


@pytest.mark.asyncio
async def test_image_intent_without_image_step_uses_enhancement_chain(orchestrator_factory):
    backend = FakeBackend(
        classification=IMAGE_INTENT,
        plan={"reasoning": "r", "steps": [{"stepNumber": 1, "purpose": "text-generation"}]},
    )
    orchestrator, _ = orchestrator_factory(backend)
    result = await orchestrator.execute(request("generate an image of a cat in a garden"))
    assert [s.purpose for s in result.steps] == ["prompt-enhancement", "image-generation"]


@pytest.mark.asyncio
async def test_tool_calling_path_executes_tools_and_answers(orchestrator_factory):
    backend = FakeBackend(
        classification={"type": "factual", "needsWebSearch": True, "complexity": "low", "confidence": 0.9},
        tool_replies=[completion("", tool_calls=[tool_call("search_web", {"query": "GPU prices"})])],
    )
    orchestrator, _ = orchestrator_factory(backend)
    result = await orchestrator.execute(request("What's the latest on GPU prices?", session_id="s2"))

    assert isinstance(result, OrchestratorResponse)
    assert result.content == backend.answer
    assert result.metadata["path"] == "tool-calling"
    assert result.metadata["citations"] == ["https://news.test/1"]
    assert result.metadata["retried"] is False
    assert result.metadata["quickRoute"] == "sonar-pro"
    final_messages = backend.calls[-1]["request"]["messages"]
    assert final_messages[-1]["role"] == "tool"
    assert final_messages[-2]["tool_calls"][0]["function"]["name"] == "search_web"
    tracker = orchestrator.sessions.get("s2").tracker
    assert tracker.get_most_recent("search-result").metadata["query"] == "GPU prices"


@pytest.mark.asyncio
async def test_missing_required_tool_triggers_exactly_one_retry(orchestrator_factory):
    backend = FakeBackend(
        classification={"type": "simple", "complexity": "low", "confidence": 0.9},
        tool_replies=[
            completion("GPU prices have been falling lately."),
            completion("", tool_calls=[tool_call("search_web", {"query": "latest GPU prices"})]),
        ],
    )
    orchestrator, _ = orchestrator_factory(backend)
    result = await orchestrator.execute(request("search the web for the latest GPU prices"))

    tool_model_calls = backend.tool_calls_made()
    assert len(tool_model_calls) == 2
    assert tool_model_calls[0]["request"]["tool_choice"] == "auto"
    assert tool_model_calls[1]["request"]["tool_choice"] == "required"
    assert tool_model_calls[1]["request"]["temperature"] == 0.3
    assert "USER REQUIREMENTS (MANDATORY)" in tool_model_calls[1]["system"]
    assert result.metadata["retried"] is True
    assert result.metadata["violations"] == []
    assert result.content == backend.answer
    assert result.metadata["citations"] == ["https://news.test/1"]


@pytest.mark.asyncio
async def test_failed_retry_keeps_the_first_answer(orchestrator_factory):
    backend = FakeBackend(
        classification={"type": "simple", "complexity": "low", "confidence": 0.9},
        tool_replies=[completion("first answer"), completion("second answer")],
    )
    orchestrator, _ = orchestrator_factory(backend)
    result = await orchestrator.execute(request("search the web for the latest GPU prices"))
    assert len(backend.tool_calls_made()) == 2
    assert result.content == "first answer"
    assert result.metadata["violations"] == ["User's request requires tool 'search_web' but it was not selected"]


@pytest.mark.asyncio
async def test_explicit_image_request_is_chained_even_when_classified_simple(orchestrator_factory):
    backend = FakeBackend(classification={"type": "simple", "complexity": "low", "confidence": 0.9})
    orchestrator, _ = orchestrator_factory(backend)
    result = await orchestrator.execute(request("draw a cat for me"))

    assert isinstance(result, ChainedResponse)
    assert [s.purpose for s in result.steps] == ["prompt-enhancement", "image-generation"]
    assert backend.tool_calls_made() == []
    replicate = [c for c in backend.calls if c["provider"] == "replicate"]
    assert [c["request"]["prompt"] for c in replicate] == ["A cat in a sunlit garden, watercolor style"]


@pytest.mark.asyncio
async def test_image_tool_call_on_the_fast_path_runs_the_enhancement_chain(orchestrator_factory):
    backend = FakeBackend(
        classification={"type": "simple", "complexity": "low", "confidence": 0.9},
        tool_replies=[completion("", tool_calls=[tool_call("generate_image", {"prompt": "a sunset"})])],
    )
    orchestrator, _ = orchestrator_factory(backend)
    events = []
    callbacks = ProgressCallbacks(on_step_start=lambda payload: events.append(payload["purpose"]))
    result = await orchestrator.execute(request("show me a sunset over the sea"), callbacks)

    assert isinstance(result, ChainedResponse)
    assert result.metadata["escalatedFrom"] == "tool-calling"
    assert result.intent.needs_image_generation is True
    assert events == ["prompt-enhancement", "image-generation"]
    replicate = [c for c in backend.calls if c["provider"] == "replicate"]
    assert [c["request"]["prompt"] for c in replicate] == ["A cat in a sunlit garden, watercolor style"]
    assert result.steps[-1].content == IMAGE_URL


@pytest.mark.asyncio
async def test_requests_without_a_session_id_are_not_kept(orchestrator_factory):
    orchestrator, _ = orchestrator_factory()
    for _ in range(25):
        result = await orchestrator.execute(request("hello there"))
        assert result.metadata["sessionId"]
    assert len(orchestrator.sessions) == 0

    await orchestrator.execute(request("hello there", session_id="kept"))
    assert len(orchestrator.sessions) == 1


@pytest.mark.asyncio
async def test_low_confidence_short_answer_retries_on_fallback_model(orchestrator_factory):
    backend = FakeBackend(
        classification={"type": "reasoning", "complexity": "medium", "confidence": 0.4},
        tool_replies=[completion("Short.")],
    )
    orchestrator, _ = orchestrator_factory(backend)
    result = await orchestrator.execute(request("why is the sky blue"))
    assert result.model == "gemini-2.0-flash"
    assert result.content == backend.answer
    assert result.metadata["fallbackUsed"] is True


@pytest.mark.asyncio
async def test_confident_short_answer_is_kept(orchestrator_factory):
    backend = FakeBackend(tool_replies=[completion("Hello!")])
    orchestrator, _ = orchestrator_factory(backend)
    result = await orchestrator.execute(request("hi"))
    assert result.content == "Hello!"
    assert result.model == "llama-3.3-70b-versatile"


@pytest.mark.asyncio
async def test_model_override_skips_orchestration(orchestrator_factory):
    orchestrator, backend = orchestrator_factory()
    result = await orchestrator.execute(request("why is the sky blue", model="gemini-2.0-flash"))
    assert result.model == "gemini-2.0-flash"
    assert result.metadata["modelUsed"] == "gemini-2.0-flash"
    assert backend.tool_calls_made() == []


@pytest.mark.asyncio
async def test_model_override_does_not_block_image_generation(orchestrator_factory):
    orchestrator, _ = orchestrator_factory(FakeBackend(classification=IMAGE_INTENT))
    result = await orchestrator.execute(request("generate an image of a cat in a garden", model="gemini-2.0-flash"))
    assert isinstance(result, ChainedResponse)


@pytest.mark.asyncio
async def test_provider_outage_falls_back_to_fallback_model(orchestrator_factory):
    orchestrator, backend = orchestrator_factory(FakeBackend(failing={"groq"}))
    result = await orchestrator.execute(request("explain attention"))
    assert result.model == "gemini-2.0-flash"
    assert result.content == backend.answer
    assert result.metadata["fallbackUsed"] is True
    assert "groq request failed" in result.metadata["error"]


@pytest.mark.asyncio
async def test_total_outage_returns_apology(orchestrator_factory):
    orchestrator, _ = orchestrator_factory(FakeBackend(failing={"groq", "google"}))
    result = await orchestrator.execute(request("explain attention"))
    assert result.content == FALLBACK_APOLOGY
    assert result.metadata["fallbackUsed"] is True


@pytest.mark.asyncio
async def test_history_is_summarized_into_the_prompt(orchestrator_factory):
    backend = FakeBackend(classification={"type": "coding", "complexity": "medium", "confidence": 0.9})
    orchestrator, _ = orchestrator_factory(backend)
    history = [
        {"role": "user" if i % 2 == 0 else "assistant", "content": f"turn {i} about neural network training"}
        for i in range(20)
    ]
    await orchestrator.execute(
        OrchestratorRequest.model_validate({"message": "fix my training loop", "conversationHistory": history})
    )
    assert backend.calls_with("You are the Conversation Summarizer")
    messages = backend.tool_calls_made()[0]["request"]["messages"]
    assert messages[1]["content"].startswith("[Summary of earlier conversation (16 messages)]")
    assert messages[-1] == {"role": "user", "content": "fix my training loop"}
