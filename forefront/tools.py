import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional

from . import agents
from .llm import message_content
from .models import preferred_model
from .replicate import DEFAULT_ASPECT_RATIO
from .schemas import ModelPreferences, ToolCall, ToolExecutionResult

logger = logging.getLogger("uvicorn.error")


def _function(name: str, description: str, properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


FOREFRONT_TOOLS: List[Dict[str, Any]] = [
    _function(
        "generate_image",
        "Generate an image with Seedream 4. Use when the user wants an image actually created. If the user "
        "refers to an earlier prompt (\"using that prompt\", \"with it\"), pass the actual prompt text.",
        {
            "prompt": {"type": "string", "description": "Detailed, vivid image prompt."},
            "aspectRatio": {
                "type": "string",
                "description": "Aspect ratio for the image",
                "enum": ["1:1", "4:3", "16:9", "9:16", "3:2", "2:3"],
            },
        },
        ["prompt"],
    ),
    _function(
        "enhance_prompt",
        "Turn a short image prompt into a detailed one with style, lighting, mood and composition.",
        {
            "originalPrompt": {"type": "string", "description": "The prompt to enhance"},
            "style": {
                "type": "string",
                "description": "Optional style preference",
                "enum": ["photorealistic", "artistic", "cinematic", "anime", "oil-painting", "watercolor", "3d-render"],
            },
        },
        ["originalPrompt"],
    ),
    _function(
        "search_web",
        "Search the web for current information with Perplexity Sonar. Returns an answer with citations, "
        "images and videos.",
        {
            "query": {"type": "string", "description": "Clear, specific search query"},
            "searchRecency": {
                "type": "string",
                "description": "How recent results should be",
                "enum": ["hour", "day", "week", "month", "year"],
            },
            "includeVideos": {"type": "boolean", "description": "Include video results"},
            "includeImages": {"type": "boolean", "description": "Include image results"},
        },
        ["query"],
    ),
    _function(
        "execute_code",
        "Run Python code for calculations or demonstrations and return the result.",
        {
            "code": {"type": "string", "description": "The Python code to execute"},
            "language": {"type": "string", "description": "Programming language", "enum": ["python"]},
        },
        ["code"],
    ),
    _function(
        "analyze_data",
        "Analyze structured data (JSON, CSV) and report insights and statistics.",
        {
            "data": {"type": "string", "description": "The data, as JSON or CSV"},
            "analysisType": {
                "type": "string",
                "description": "Type of analysis",
                "enum": ["descriptive", "statistical", "visualization", "trend-analysis"],
            },
            "question": {"type": "string", "description": "Optional question about the data"},
        },
        ["data", "analysisType"],
    ),
    _function(
        "explain_concept",
        "Explain an AI/ML concept with examples and analogies. Use for \"explain\", \"what is\", \"how does X work\".",
        {
            "concept": {"type": "string", "description": "The concept to explain"},
            "depth": {
                "type": "string",
                "description": "Depth of the explanation",
                "enum": ["beginner", "intermediate", "advanced", "expert"],
            },
            "includeExamples": {"type": "boolean", "description": "Include code examples"},
        },
        ["concept"],
    ),
]


def get_tool(name: str) -> Optional[Dict[str, Any]]:
    return next((t for t in FOREFRONT_TOOLS if t["function"]["name"] == name), None)


def tool_names() -> List[str]:
    return [t["function"]["name"] for t in FOREFRONT_TOOLS]


class ToolExecutor:
    def __init__(
        self,
        registry: Any,
        text_model: str = "llama-3.3-70b-versatile",
        search_model: str = "sonar-pro",
        image_model: str = "seedream-4",
    ):
        self.registry = registry
        self.text_model = text_model
        self.search_model = search_model
        self.image_model = image_model
        self.handlers = {
            "generate_image": self.generate_image,
            "enhance_prompt": self.enhance_prompt,
            "search_web": self.search_web,
            "execute_code": self.execute_code,
            "analyze_data": self.analyze_data,
            "explain_concept": self.explain_concept,
        }

    async def execute_all(
        self,
        tool_calls: List[ToolCall],
        preferences: Optional[ModelPreferences] = None,
    ) -> List[ToolExecutionResult]:
        return list(await asyncio.gather(*(self.execute(call, preferences) for call in tool_calls)))

    async def execute(self, call: ToolCall, preferences: Optional[ModelPreferences] = None) -> ToolExecutionResult:
        started = time.monotonic()
        name = call.function_name
        try:
            handler = self.handlers.get(name)
            if handler is None:
                raise ValueError(f"Unknown tool: {name}")
            args = json.loads(call.arguments or "{}")
            if not isinstance(args, dict):
                raise ValueError("tool arguments must be a JSON object")
            result = await handler(call.id, args, preferences or ModelPreferences())
        except Exception as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            return ToolExecutionResult(
                tool_call_id=call.id,
                name=name,
                content=f"Error executing {name}: {exc}",
                metadata={
                    "error": True,
                    "errorMessage": str(exc),
                    "executionTime": int((time.monotonic() - started) * 1000),
                },
            )
        result.metadata["executionTime"] = int((time.monotonic() - started) * 1000)
        return result

    async def _text(self, system: str, user: str, temperature: float, max_tokens: int) -> str:
        resp = await self.registry.invoke(
            self.text_model,
            {
                "messages": [{"role": "system", "content": system}, {"role": "user", "content": user}],
                "temperature": temperature,
                "max_tokens": max_tokens,
            },
        )
        return message_content(resp)

    async def generate_image(self, call_id: str, args: Dict[str, Any], prefs: ModelPreferences) -> ToolExecutionResult:
        prompt = str(args.get("prompt") or "").strip()
        if not prompt:
            raise ValueError("prompt is required")
        aspect = args.get("aspectRatio") or DEFAULT_ASPECT_RATIO
        model = preferred_model(prefs.image, self.image_model)
        resp = await self.registry.invoke(model, {"prompt": prompt, "aspect_ratio": aspect})
        url = resp.get("image_url") or message_content(resp)
        if not url:
            raise RuntimeError("Failed to generate image")
        return ToolExecutionResult(
            tool_call_id=call_id,
            name="generate_image",
            content=f"Successfully generated image: {url}",
            metadata={"type": "image", "imageUrl": url, "prompt": prompt, "aspectRatio": aspect, "model": model},
        )

    async def enhance_prompt(self, call_id: str, args: Dict[str, Any], prefs: ModelPreferences) -> ToolExecutionResult:
        original = str(args.get("originalPrompt") or "")
        style = args.get("style")
        style_clause = f"\n- Focus on a {style} style." if style else ""
        enhanced = await self._text(
            agents.PROMPT_ENHANCER_SYSTEM.format(style_clause=style_clause),
            f"Enhance this prompt: {original}",
            0.7,
            500,
        )
        return ToolExecutionResult(
            tool_call_id=call_id,
            name="enhance_prompt",
            content=enhanced.strip() or original,
            metadata={"type": "text", "originalPrompt": original, "style": style, "model": self.text_model},
        )

    async def search_web(self, call_id: str, args: Dict[str, Any], prefs: ModelPreferences) -> ToolExecutionResult:
        query = str(args.get("query") or "").strip()
        if not query:
            raise ValueError("query is required")
        model = preferred_model(prefs.search, self.search_model)
        resp = await self.registry.invoke(
            model,
            {
                "messages": [{"role": "user", "content": query}],
                "temperature": 0.2,
                "search": {
                    "recency": args.get("searchRecency") or "week",
                    "images": args.get("includeImages", True),
                    "videos": args.get("includeVideos", True),
                },
            },
        )
        return ToolExecutionResult(
            tool_call_id=call_id,
            name="search_web",
            content=message_content(resp) or "No results found",
            metadata={
                "type": "text",
                "citations": resp.get("citations") or [],
                "searchResults": resp.get("search_results") or [],
                "videos": resp.get("videos") or [],
                "images": resp.get("images") or [],
                "query": query,
                "model": model,
            },
        )

    async def execute_code(self, call_id: str, args: Dict[str, Any], prefs: ModelPreferences) -> ToolExecutionResult:
        # No sandbox is wired in; the code is echoed back for the answer model.
        code = str(args.get("code") or "")
        language = args.get("language") or "python"
        return ToolExecutionResult(
            tool_call_id=call_id,
            name="execute_code",
            content=(
                f"Code execution sandbox is not available. Would execute:\n```{language}\n{code}\n```"
            ),
            metadata={"type": "code", "code": code, "language": language, "implemented": False},
        )

    async def analyze_data(self, call_id: str, args: Dict[str, Any], prefs: ModelPreferences) -> ToolExecutionResult:
        data = str(args.get("data") or "")
        analysis_type = args.get("analysisType") or "descriptive"
        question = args.get("question")
        analysis = await self._text(
            agents.DATA_ANALYST_SYSTEM.format(
                analysis_type=analysis_type,
                question_line=f"Question: {question}" if question else "",
            ),
            f"Data:\n{data}",
            0.3,
            2000,
        )
        return ToolExecutionResult(
            tool_call_id=call_id,
            name="analyze_data",
            content=analysis or "Failed to analyze data",
            metadata={"type": "text", "analysisType": analysis_type, "dataSize": len(data), "model": self.text_model},
        )

    async def explain_concept(self, call_id: str, args: Dict[str, Any], prefs: ModelPreferences) -> ToolExecutionResult:
        concept = str(args.get("concept") or "")
        depth = args.get("depth") or "intermediate"
        explanation = await self._text(
            agents.CONCEPT_EXPLAINER_SYSTEM.format(
                depth=depth, examples="Yes" if args.get("includeExamples") else "No"
            ),
            f"Explain: {concept}",
            0.7,
            2000,
        )
        return ToolExecutionResult(
            tool_call_id=call_id,
            name="explain_concept",
            content=explanation or "Failed to explain concept",
            metadata={"type": "text", "concept": concept, "depth": depth, "model": self.text_model},
        )
