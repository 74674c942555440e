import json
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


IntentType = Literal[
    "factual",
    "reasoning",
    "coding",
    "multimodal",
    "simple",
    "tool-use",
    "image-generation",
    "image-prompt-help",
    "chained",
]
Complexity = Literal["low", "medium", "high"]
ContextLevel = Literal["minimal", "standard", "full", "extended"]
StepPurpose = Literal[
    "web-search",
    "prompt-enhancement",
    "image-generation",
    "code-generation",
    "text-generation",
    "reasoning",
    "final-composition",
]
EntityType = Literal["prompt", "image", "code", "search-result", "analysis", "explanation"]
ResultType = Literal["text", "image", "video", "code"]
ExtractionKind = Literal["structured", "heuristic", "raw"]


class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""

    model_config = {"alias_generator": to_camel, "populate_by_name": True, "protected_namespaces": ()}


class ChatMessage(CamelModel):
    role: Literal["system", "user", "assistant", "tool"]
    content: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def coerce_content(cls, data: Any) -> Any:
        if isinstance(data, dict) and not isinstance(data.get("content", ""), str):
            data = {**data, "content": json.dumps(data.get("content"), ensure_ascii=True)}
        return data

    def to_wire(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


class RequestContext(CamelModel):
    module_title: Optional[str] = None
    current_slide: Optional[Dict[str, Any]] = None
    highlighted_text: Optional[str] = None
    conversation_history: List[ChatMessage] = Field(default_factory=list)
    user_id: Optional[str] = None
    module_id: Optional[str] = None
    slide_id: Optional[str] = None


class OrchestratorRequest(CamelModel):
    message: str
    model: Optional[str] = None
    session_id: Optional[str] = None
    context: RequestContext = Field(default_factory=RequestContext)
    user_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        payload = dict(data)
        # Accept a top-level history for callers that do not nest it.
        history = payload.pop("conversationHistory", None) or payload.pop("conversation_history", None)
        if history is not None:
            context = dict(payload.get("context") or {})
            context.setdefault("conversationHistory", history)
            payload["context"] = context
        return payload


class ChainStep(CamelModel):
    step: int
    model_id: str
    purpose: StepPurpose
    input_from: Optional[int] = None


class QueryIntent(CamelModel):
    type: IntentType = "simple"
    needs_web_search: bool = False
    needs_reasoning: bool = False
    needs_multimodal: bool = False
    needs_tool_use: bool = False
    needs_image_generation: bool = False
    needs_image_prompt_help: bool = False
    needs_code_generation: bool = False
    needs_text_generation: bool = False
    needs_chaining: bool = False
    complexity: Complexity = "medium"
    confidence: float = 0.5
    suggested_model: str = "llama-3.3-70b-versatile"
    fallback_model: Optional[str] = None
    reasoning: Optional[str] = None
    chain_steps: Optional[List[ChainStep]] = None

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, value: Any) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0.5
        return max(0.0, min(1.0, number))


class PlannedStep(CamelModel):
    step_id: str
    step_number: int
    purpose: StepPurpose
    recommended_model: str
    system_prompt: str = ""
    instructions: str = ""
    expected_output_schema: Dict[str, Any] = Field(default_factory=dict)
    input_from: Optional[int] = None


class ExecutionPlan(CamelModel):
    reasoning: str = ""
    estimated_time: float = 0.0
    steps: List[PlannedStep] = Field(default_factory=list)
    source: Literal["model", "fallback"] = "model"

    def to_chain_steps(self) -> List[ChainStep]:
        return [
            ChainStep(
                step=s.step_number,
                model_id=s.recommended_model,
                purpose=s.purpose,
                input_from=s.input_from,
            )
            for s in self.steps
        ]


class ContextConfig(CamelModel):
    level: ContextLevel = "standard"
    max_tokens: int = 2000
    include_recent: int = 4
    relevance_threshold: float = 0.6


class ManagedContext(CamelModel):
    messages: List[ChatMessage] = Field(default_factory=list)
    token_count: int = 0
    context_level: ContextLevel = "standard"
    filtered_count: int = 0
    total_available: int = 0
    has_summary: bool = False
    summarized_count: int = 0


class ContextWindow(ManagedContext):
    model_id: str = ""
    max_token_budget: int = 0
    strategy: Dict[str, Any] = Field(default_factory=dict)
    compression_applied: bool = False


class TrackedEntity(CamelModel):
    id: str
    type: EntityType
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    turn_index: int = 0

    model_config = {"frozen": True}


class ModelPreferences(CamelModel):
    search: List[str] = Field(default_factory=list)
    image: List[str] = Field(default_factory=list)
    reasoning: List[str] = Field(default_factory=list)
    text: List[str] = Field(default_factory=list)
    vision: List[str] = Field(default_factory=list)


class ToolRequirements(CamelModel):
    must_use_tools: List[str] = Field(default_factory=list)
    preferred_tools: List[str] = Field(default_factory=list)


class References(CamelModel):
    has_references: bool = False
    reference_type: Optional[str] = None
    reference_indicators: List[str] = Field(default_factory=list)


class WorkflowHints(CamelModel):
    is_multi_step: bool = False
    steps: List[str] = Field(default_factory=list)


class ParsedInstructions(CamelModel):
    model_preferences: ModelPreferences = Field(default_factory=ModelPreferences)
    tool_requirements: ToolRequirements = Field(default_factory=ToolRequirements)
    references: References = Field(default_factory=References)
    workflow: WorkflowHints = Field(default_factory=WorkflowHints)


class ValidationReport(CamelModel):
    valid: bool = True
    violations: List[str] = Field(default_factory=list)


class ToolCall(CamelModel):
    id: str
    function_name: str
    # JSON-encoded, exactly as the function-calling model returned it.
    arguments: str = "{}"

    @classmethod
    def from_openai(cls, raw: Dict[str, Any]) -> "ToolCall":
        function = raw.get("function") or {}
        arguments = function.get("arguments", "{}")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        return cls(id=str(raw.get("id") or ""), function_name=str(function.get("name") or ""), arguments=arguments)

    def to_openai(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.function_name, "arguments": self.arguments},
        }


class ToolExecutionResult(CamelModel):
    tool_call_id: str
    role: Literal["tool"] = "tool"
    name: str
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_message(self) -> Dict[str, Any]:
        return {"role": "tool", "tool_call_id": self.tool_call_id, "name": self.name, "content": self.content}


class ChainStepResult(CamelModel):
    step: int
    model: str
    content: str
    type: ResultType = "text"
    purpose: StepPurpose
    execution_time: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)


class OrchestratorResponse(CamelModel):
    content: str
    model: str
    intent: Optional[QueryIntent] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ChainedResponse(CamelModel):
    is_chained: Literal[True] = True
    steps: List[ChainStepResult] = Field(default_factory=list)
    total_execution_time: int = 0
    intent: QueryIntent
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ExtractionResult(CamelModel):
    kind: ExtractionKind
    text: str
    data: Optional[Dict[str, Any]] = None
    notes: str = ""
