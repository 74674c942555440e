import logging
from typing import Any, Dict, Tuple

from . import agents
from .extraction import extract_structured
from .llm import message_content
from .schemas import ExtractionResult

logger = logging.getLogger("uvicorn.error")

# Fields to prefer when a schema-shaped output feeds a step of this purpose.
FIELDS_FOR_NEXT: Dict[str, Tuple[str, ...]] = {
    "image-generation": ("optimizedPrompt", "prompt", "visualDirection"),
    "prompt-enhancement": ("analysis",),
    "code-generation": ("analysis", "code"),
    "text-generation": ("analysis", "content"),
    "reasoning": ("analysis",),
}


def _with_findings(result: ExtractionResult) -> ExtractionResult:
    findings = (result.data or {}).get("keyFindings")
    if isinstance(findings, list) and findings:
        lines = "\n".join(f"- {item}" for item in findings if item)
        return result.model_copy(update={"text": f"{result.text}\n\nKey findings:\n{lines}".strip()})
    return result


class StepCoordinator:
    """Prepares one step's output as the next step's input."""

    def __init__(self, registry: Any, model: str = "llama-3.1-8b-instant"):
        self.registry = registry
        self.model = model

    async def coordinate(
        self,
        previous_purpose: str,
        next_purpose: str,
        output: str,
        user_message: str,
    ) -> ExtractionResult:
        parsed = extract_structured(output, FIELDS_FOR_NEXT.get(next_purpose))
        if parsed.kind == "structured":
            if next_purpose != "image-generation":
                parsed = _with_findings(parsed)
            return parsed.model_copy(update={"notes": f"Used structured {previous_purpose} output"})

        rule = agents.COORDINATOR_RULES.get((previous_purpose, next_purpose)) or agents.COORDINATOR_DEFAULT_RULE.format(
            next_purpose=next_purpose
        )
        try:
            resp = await self.registry.invoke(
                self.model,
                {
                    "messages": [
                        {"role": "system", "content": f"{agents.COORDINATOR_SYSTEM}\nRULE:\n{rule}"},
                        {
                            "role": "user",
                            "content": f"USER REQUEST: {user_message}\n\n"
                            f"OUTPUT OF {previous_purpose.upper()} STEP:\n{output}",
                        },
                    ],
                    "temperature": 0.2,
                    "max_tokens": 600,
                },
            )
            text = message_content(resp).strip()
            if not text:
                raise ValueError("coordinator returned no text")
        except Exception as exc:
            logger.warning("Coordinator failed between %s and %s: %s", previous_purpose, next_purpose, exc)
            return ExtractionResult(
                kind="raw",
                text=output,
                notes=f"Coordinator unavailable; passed {previous_purpose} output through unchanged",
            )

        if next_purpose == "image-generation":
            # Models sometimes keep a label or fence around the prompt.
            cleaned = extract_structured(text, FIELDS_FOR_NEXT["image-generation"])
            if cleaned.kind != "raw" and cleaned.text:
                text = cleaned.text
        logger.info("Coordinated %s -> %s (%s chars)", previous_purpose, next_purpose, len(text))
        return ExtractionResult(
            kind="heuristic",
            text=text,
            notes=f"Extracted {previous_purpose} output for {next_purpose}",
        )
