"""Request controller.

classify -> (tool-calling fast path | planned workflow) -> validate -> respond,
with a single fallback model behind every path.
"""

import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from . import agents
from .advanced_context import AdvancedContextManager
from .config import AppSettings
from .context_manager import (
    LEVEL_PRESETS,
    ConversationContextManager,
    config_for_level,
    create_context_summary,
    suggest_context_level,
)
from .coordinator import StepCoordinator
from .entity_tracker import ReferenceResolver, track_tool_result
from .extraction import extract_structured
from .instructions import parse_instructions, validate_against_instructions
from .llm import message_content, message_tool_calls
from .models import get_model, preferred_model
from .planner import apply_model_preferences, generate_execution_plan, generate_fallback_plan
from .providers import ProviderRegistry
from .router import classify_query, quick_route
from .schemas import (
    ChainedResponse,
    ChainStepResult,
    ChatMessage,
    ModelPreferences,
    OrchestratorRequest,
    OrchestratorResponse,
    ParsedInstructions,
    PlannedStep,
    QueryIntent,
    ToolCall,
    ToolExecutionResult,
)
from .sessions import ConversationSession, SessionStore
from .tools import FOREFRONT_TOOLS, ToolExecutor

logger = logging.getLogger("uvicorn.error")

ProgressHandler = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]
OrchestratorResult = Union[OrchestratorResponse, ChainedResponse]

STEP_CONTEXT_LEVEL = {
    "prompt-enhancement": "minimal",
    "image-generation": "minimal",
    "web-search": "standard",
    "code-generation": "standard",
    "text-generation": "standard",
    "reasoning": "full",
    "final-composition": "full",
}
STEP_ENTITY_TYPE = {
    "prompt-enhancement": "prompt",
    "image-generation": "image",
    "code-generation": "code",
    "web-search": "search-result",
    "reasoning": "analysis",
    "text-generation": "explanation",
}
STEP_TOOL = {
    "web-search": "search_web",
    "prompt-enhancement": "enhance_prompt",
    "image-generation": "generate_image",
    "code-generation": "execute_code",
}
LEVEL_ORDER = list(LEVEL_PRESETS)


@dataclass
class ProgressCallbacks:
    on_step_start: Optional[ProgressHandler] = None
    on_step_complete: Optional[ProgressHandler] = None
    on_coordinator_update: Optional[ProgressHandler] = None

    async def emit(self, name: str, payload: Dict[str, Any]) -> None:
        handler = getattr(self, name, None)
        if handler is None:
            return
        result = handler(payload)
        if inspect.isawaitable(result):
            await result


@dataclass
class Turn:
    """Everything one request carries between pipeline stages."""

    request: OrchestratorRequest
    message: str
    intent: QueryIntent
    instructions: ParsedInstructions
    session: ConversationSession
    started: float
    quick_hint: Optional[str] = None

    @property
    def history(self) -> List[ChatMessage]:
        return self.request.context.conversation_history

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


class Orchestrator:
    def __init__(self, settings: AppSettings, registry: ProviderRegistry, sessions: Optional[SessionStore] = None):
        self.settings = settings
        self.registry = registry
        self.sessions = sessions or SessionStore()
        self.context_manager = ConversationContextManager(registry, settings.summarizer_model)
        self.model_context = AdvancedContextManager(registry, settings.summarizer_model)
        self.tools = ToolExecutor(
            registry,
            text_model=settings.tool_model,
            search_model=settings.search_model,
            image_model=settings.image_model,
        )
        self.coordinator = StepCoordinator(registry, settings.coordinator_model)

    async def execute(
        self,
        request: OrchestratorRequest,
        callbacks: Optional[ProgressCallbacks] = None,
        session: Optional[ConversationSession] = None,
    ) -> OrchestratorResult:
        started = time.monotonic()
        callbacks = callbacks or ProgressCallbacks()
        session = session or self.sessions.get_or_create(request.session_id)
        session.tracker.next_turn()
        intent: Optional[QueryIntent] = None
        try:
            hint = quick_route(request.message)
            if hint:
                logger.info("Quick route suggests %s (advisory)", hint)
            intent = await classify_query(
                self.registry, request.message, request.context, self.settings.classifier_model
            )
            logger.info(
                "Intent: type=%s complexity=%s confidence=%.2f chaining=%s image=%s",
                intent.type,
                intent.complexity,
                intent.confidence,
                intent.needs_chaining,
                intent.needs_image_generation,
            )
            instructions = parse_instructions(request.message)
            if "generate_image" in instructions.tool_requirements.must_use_tools and not intent.needs_image_generation:
                logger.info("User asked for an image; routing to the planned workflow")
                intent = intent.model_copy(update={"needs_image_generation": True})
            message = request.message
            if instructions.references.has_references:
                message = ReferenceResolver(session.tracker).resolve_all(message, instructions.references)
            turn = Turn(request, message, intent, instructions, session, started, hint)

            override = get_model(request.model) if request.model else None
            if override is not None and override.provider != "replicate" and not intent.needs_image_generation:
                logger.info("Model override %s; skipping orchestration", override.id)
                return await self.respond_on_model(override.id, turn)
            if intent.needs_chaining or intent.needs_image_generation:
                return await self.planned_workflow(turn, callbacks)
            return await self.tool_calling(turn, callbacks)
        except Exception as exc:
            logger.exception("Orchestration failed; answering with %s", self.settings.fallback_model)
            return await self.fallback(request, session, started, intent, str(exc))

    # Single-model answers

    def build_system_prompt(self, turn: Turn) -> str:
        context = turn.request.context
        intent = turn.intent
        capabilities = []
        if intent.needs_web_search:
            capabilities.append(agents.CAPABILITY_LINES["web"])
        if intent.needs_reasoning:
            capabilities.append(agents.CAPABILITY_LINES["reasoning"])
        if intent.needs_image_generation:
            capabilities.append(agents.CAPABILITY_LINES["image"])
        capabilities.append(agents.CAPABILITY_LINES["tools"])
        highlight = f'- Student highlighted: "{context.highlighted_text}"\n' if context.highlighted_text else ""
        return agents.ASSISTANT_SYSTEM.format(
            module=context.module_title or "General Learning",
            slide=(context.current_slide or {}).get("title") or "N/A",
            highlight=highlight,
            capabilities="\n".join(capabilities),
        )

    def context_level_for(self, intent: QueryIntent) -> str:
        suggested = suggest_context_level(intent)
        default = self.settings.default_context_level
        if default not in LEVEL_ORDER:
            return suggested
        return max(suggested, default, key=LEVEL_ORDER.index)

    async def conversation_messages(self, turn: Turn, system_prompt: str) -> List[Dict[str, Any]]:
        managed = await self.context_manager.manage_context(
            turn.history, turn.message, config_for_level(self.context_level_for(turn.intent))
        )
        logger.info(create_context_summary(managed))
        return (
            [{"role": "system", "content": system_prompt}]
            + [m.to_wire() for m in managed.messages]
            + [{"role": "user", "content": turn.message}]
        )

    async def respond_on_model(self, model_id: str, turn: Turn, fallback_used: bool = False) -> OrchestratorResponse:
        spec = get_model(model_id)
        if spec is None:
            raise ValueError(f"Model not found: {model_id}")
        messages = await self.conversation_messages(turn, self.build_system_prompt(turn))
        resp = await self.registry.invoke(
            spec.id,
            {
                "messages": messages,
                "temperature": spec.default_temperature,
                "max_tokens": min(self.settings.max_output_tokens, spec.max_output_tokens or self.settings.max_output_tokens),
            },
        )
        metadata: Dict[str, Any] = {
            "executionTime": turn.elapsed_ms(),
            "modelUsed": spec.id,
            "fallbackUsed": fallback_used,
            "sessionId": turn.session.session_id,
        }
        for key, wire in (("citations", "citations"), ("search_results", "searchResults"), ("videos", "videos"), ("images", "images")):
            if resp.get(key):
                metadata[wire] = resp[key]
        return OrchestratorResponse(content=message_content(resp), model=spec.id, intent=turn.intent, metadata=metadata)

    async def fallback(
        self,
        request: OrchestratorRequest,
        session: ConversationSession,
        started: float,
        intent: Optional[QueryIntent],
        error: str,
    ) -> OrchestratorResponse:
        turn = Turn(
            request,
            request.message,
            intent or QueryIntent(),
            parse_instructions(""),
            session,
            started,
        )
        try:
            response = await self.respond_on_model(self.settings.fallback_model, turn, fallback_used=True)
            response.metadata["error"] = error
            return response
        except Exception as exc:
            logger.error("Fallback model %s failed: %s", self.settings.fallback_model, exc)
            return OrchestratorResponse(
                content=agents.FALLBACK_APOLOGY,
                model=self.settings.fallback_model,
                intent=intent,
                metadata={
                    "executionTime": turn.elapsed_ms(),
                    "fallbackUsed": True,
                    "error": error,
                    "sessionId": session.session_id,
                },
            )

    # Tool-calling fast path

    async def _call_tools_model(self, messages: List[Dict[str, Any]], temperature: float, tool_choice: str) -> Dict[str, Any]:
        return await self.registry.invoke(
            self.settings.tool_model,
            {
                "messages": messages,
                "temperature": temperature,
                "max_tokens": 1024,
                "tools": FOREFRONT_TOOLS,
                "tool_choice": tool_choice,
            },
        )

    def selected_models(self, tool_names: List[str], instructions: ParsedInstructions) -> str:
        models = []
        if "generate_image" in tool_names:
            models.append(preferred_model(instructions.model_preferences.image, self.settings.image_model))
        if "search_web" in tool_names:
            models.append(preferred_model(instructions.model_preferences.search, self.settings.search_model))
        return ", ".join(models) or self.settings.tool_model

    async def tool_calling(self, turn: Turn, callbacks: ProgressCallbacks) -> OrchestratorResult:
        messages = await self.conversation_messages(turn, self.build_system_prompt(turn))
        first = await self._call_tools_model(messages, 0.7, "auto")
        calls = [ToolCall.from_openai(raw) for raw in message_tool_calls(first)]
        names = [c.function_name for c in calls]
        report = validate_against_instructions(turn.instructions, self.selected_models(names, turn.instructions), names)
        retried = False
        violations = list(report.violations)
        if not report.valid:
            logger.warning("Instruction violations: %s", "; ".join(report.violations))
            must_use = turn.instructions.tool_requirements.must_use_tools
            retry_messages = [dict(m) for m in messages]
            retry_messages[0]["content"] += agents.RETRY_SUFFIX.format(
                violations="\n".join(f"- {v}" for v in report.violations),
                required_tools=f"Required tools: {', '.join(must_use)}" if must_use else "",
            )
            retried = True
            retry = await self._call_tools_model(retry_messages, 0.3, "required" if must_use else "auto")
            retry_calls = [ToolCall.from_openai(raw) for raw in message_tool_calls(retry)]
            retry_names = [c.function_name for c in retry_calls]
            retry_report = validate_against_instructions(
                turn.instructions, self.selected_models(retry_names, turn.instructions), retry_names
            )
            if retry_report.valid:
                logger.info("Retry satisfied the user's instructions")
                first, calls, messages, violations = retry, retry_calls, retry_messages, []
            else:
                logger.warning("Retry still violates instructions; keeping the first result")

        if any(c.function_name == "generate_image" for c in calls):
            # Images are only generated behind a prompt-enhancement step.
            logger.info("Tool model asked for an image; switching to the planned workflow")
            turn.intent = turn.intent.model_copy(update={"needs_image_generation": True})
            chained = await self.planned_workflow(turn, callbacks)
            chained.metadata["escalatedFrom"] = "tool-calling"
            return chained

        metadata: Dict[str, Any] = {
            "path": "tool-calling",
            "retried": retried,
            "violations": violations,
            "quickRoute": turn.quick_hint,
            "sessionId": turn.session.session_id,
        }
        if not calls:
            response = OrchestratorResponse(
                content=message_content(first),
                model=self.settings.tool_model,
                intent=turn.intent,
                metadata={**metadata, "executionTime": turn.elapsed_ms(), "modelUsed": self.settings.tool_model, "fallbackUsed": False},
            )
            return await self.low_confidence_retry(turn, response)

        results = await self.tools.execute_all(calls, turn.instructions.model_preferences)
        for call, result in zip(calls, results):
            track_tool_result(turn.session.tracker, call.function_name, result, {"model": result.metadata.get("model")})
        metadata["toolResults"] = [r.model_dump(by_alias=True) for r in results]

        follow_up = messages + [
            {"role": "assistant", "content": message_content(first), "tool_calls": [c.to_openai() for c in calls]}
        ] + [r.to_message() for r in results]
        final = await self.registry.invoke(
            self.settings.tool_model,
            {"messages": follow_up, "temperature": 0.7, "max_tokens": self.settings.max_output_tokens},
        )
        metadata.update(self._search_metadata(results))
        return OrchestratorResponse(
            content=message_content(final),
            model=self.settings.tool_model,
            intent=turn.intent,
            metadata={**metadata, "executionTime": turn.elapsed_ms(), "modelUsed": self.settings.tool_model, "fallbackUsed": False},
        )

    @staticmethod
    def _search_metadata(results: List[ToolExecutionResult]) -> Dict[str, Any]:
        merged: Dict[str, List[Any]] = {"citations": [], "videos": [], "images": []}
        for result in results:
            if result.name != "search_web":
                continue
            for key in merged:
                merged[key].extend(result.metadata.get(key) or [])
        return {key: value for key, value in merged.items() if value}

    async def low_confidence_retry(self, turn: Turn, response: OrchestratorResponse) -> OrchestratorResponse:
        intent = turn.intent
        if intent.confidence >= self.settings.low_confidence_threshold:
            return response
        if len(response.content) >= self.settings.short_answer_chars:
            return response
        fallback = get_model(intent.fallback_model)
        if fallback is None or fallback.id == response.model or fallback.provider == "replicate":
            return response
        logger.info(
            "Low confidence (%.2f) and short answer; retrying on %s", intent.confidence, fallback.id
        )
        try:
            return await self.respond_on_model(fallback.id, turn, fallback_used=True)
        except Exception as exc:
            logger.warning("Low-confidence retry on %s failed: %s", fallback.id, exc)
            return response

    # Planned workflow

    async def planned_workflow(self, turn: Turn, callbacks: ProgressCallbacks) -> ChainedResponse:
        plan = await generate_execution_plan(
            self.registry,
            turn.message,
            turn.intent,
            turn.history,
            model=self.settings.planner_model,
            fallback_model=self.settings.fallback_model,
            fixer_model=self.settings.classifier_model,
        )
        if turn.intent.needs_image_generation and not any(s.purpose == "image-generation" for s in plan.steps):
            logger.warning("Image requested but the plan has no image step; using the enhancement chain")
            plan = generate_fallback_plan(turn.intent)
        plan = apply_model_preferences(plan, turn.instructions.model_preferences)
        turn.intent = turn.intent.model_copy(update={"needs_chaining": True, "chain_steps": plan.to_chain_steps()})
        logger.info(
            "Plan (%s): %s", plan.source, " -> ".join(f"{s.purpose}[{s.recommended_model}]" for s in plan.steps)
        )

        selected_tools = [STEP_TOOL[s.purpose] for s in plan.steps if s.purpose in STEP_TOOL]
        report = validate_against_instructions(
            turn.instructions, ", ".join(s.recommended_model for s in plan.steps), selected_tools
        )
        if not report.valid:
            logger.warning("Plan violates user instructions: %s", "; ".join(report.violations))

        results: List[ChainStepResult] = []
        inputs: Dict[int, str] = {}
        total = len(plan.steps)
        for index, step in enumerate(plan.steps):
            await callbacks.emit(
                "on_step_start",
                {"step": step.step_number, "purpose": step.purpose, "model": step.recommended_model, "totalSteps": total},
            )
            result = await self.run_step(turn, step, inputs, results)
            results.append(result)
            next_step = plan.steps[index + 1] if index + 1 < total else None
            handoff = result.content
            if next_step is not None and next_step.purpose != "final-composition":
                coordinated = await self.coordinator.coordinate(step.purpose, next_step.purpose, result.content, turn.message)
                handoff = coordinated.text
                result.metadata.update(
                    {
                        "coordinatorNotes": coordinated.notes,
                        "extractedForNextStep": coordinated.text,
                        "extractionKind": coordinated.kind,
                    }
                )
                await callbacks.emit(
                    "on_coordinator_update",
                    {"step": step.step_number, "nextStep": next_step.step_number, "notes": coordinated.notes, "kind": coordinated.kind},
                )
            inputs[step.step_number] = handoff
            entity_type = STEP_ENTITY_TYPE.get(step.purpose)
            if entity_type:
                turn.session.tracker.track_entity(
                    entity_type, handoff if step.purpose == "prompt-enhancement" else result.content, {"model": result.model, "step": step.step_number}
                )
            await callbacks.emit("on_step_complete", result.model_dump(by_alias=True))

        return ChainedResponse(
            steps=results,
            total_execution_time=turn.elapsed_ms(),
            intent=turn.intent,
            metadata={
                "path": "planned-workflow",
                "plan": {"reasoning": plan.reasoning, "source": plan.source, "estimatedTime": plan.estimated_time},
                "violations": report.violations,
                "quickRoute": turn.quick_hint,
                "sessionId": turn.session.session_id,
            },
        )

    async def step_context(self, turn: Turn, step: PlannedStep, system_prompt: str) -> str:
        level = STEP_CONTEXT_LEVEL.get(step.purpose, "standard")
        managed = await self.context_manager.manage_context(turn.history, turn.message, config_for_level(level))
        if not managed.messages:
            return ""
        window = await self.model_context.get_context_for_model(
            step.recommended_model, managed.messages, turn.message, system_prompt, level=level
        )
        return "\n".join(f"{m.role}: {m.content}" for m in window.messages)

    async def run_step(
        self,
        turn: Turn,
        step: PlannedStep,
        inputs: Dict[int, str],
        previous: List[ChainStepResult],
    ) -> ChainStepResult:
        started = time.monotonic()
        step_input = inputs.get(step.input_from) if step.input_from is not None else None

        if step.purpose == "image-generation":
            image = await self.tools.generate_image(
                f"step-{step.step_number}",
                {"prompt": step_input or turn.message},
                ModelPreferences(image=[step.recommended_model]),
            )
            url = image.metadata["imageUrl"]
            return ChainStepResult(
                step=step.step_number,
                model=image.metadata["model"],
                content=url,
                type="image",
                purpose=step.purpose,
                execution_time=int((time.monotonic() - started) * 1000),
                metadata={
                    "imageUrl": url,
                    "prompt": image.metadata["prompt"],
                    "aspectRatio": image.metadata["aspectRatio"],
                    "artifacts": [{"type": "image", "url": url}],
                },
            )

        role = agents.role_for_purpose(step.purpose)
        system_prompt = step.system_prompt or role.system_prompt
        context_text = await self.step_context(turn, step, system_prompt)
        if step.purpose == "final-composition":
            previous_outputs = [{"step": r.step, "purpose": r.purpose, "output": r.content} for r in previous]
        elif step_input is not None:
            source = next((r for r in previous if r.step == step.input_from), None)
            previous_outputs = [
                {"step": step.input_from, "purpose": source.purpose if source else "previous", "output": step_input}
            ]
        else:
            previous_outputs = None
        envelope = agents.build_message_envelope(
            role,
            context_text,
            turn.message,
            step.instructions,
            previous_outputs,
            step.expected_output_schema or None,
        )
        spec = get_model(step.recommended_model)
        request: Dict[str, Any] = {
            "messages": [{"role": "system", "content": system_prompt}, {"role": "user", "content": envelope}],
            "temperature": spec.default_temperature if spec else 0.7,
            "max_tokens": min(self.settings.max_output_tokens, spec.max_output_tokens) if spec else self.settings.max_output_tokens,
        }
        if step.purpose == "web-search":
            request["search"] = {"recency": "week", "images": True, "videos": True}
        resp = await self.registry.invoke(step.recommended_model, request)
        content = message_content(resp)
        metadata: Dict[str, Any] = {"contextLevel": STEP_CONTEXT_LEVEL.get(step.purpose, "standard")}
        for key, wire in (("citations", "citations"), ("search_results", "searchResults"), ("videos", "videos"), ("images", "images")):
            if resp.get(key):
                metadata[wire] = resp[key]

        if step.purpose in ("final-composition", "text-generation"):
            parsed = extract_structured(content, ("narrative", "content"))
            if parsed.kind == "structured":
                content = parsed.text
                if parsed.data and parsed.data.get("artifacts"):
                    metadata["artifacts"] = parsed.data["artifacts"]
        return ChainStepResult(
            step=step.step_number,
            model=step.recommended_model,
            content=content,
            type="code" if step.purpose == "code-generation" else "text",
            purpose=step.purpose,
            execution_time=int((time.monotonic() - started) * 1000),
            metadata=metadata,
        )
