import json
from typing import Any, Dict, List, Optional

import httpx


ALLOWED_ROLES = {"system", "user", "assistant", "tool"}


class ProviderError(RuntimeError):
    """A model provider could not serve the request."""

    def __init__(self, provider: str, detail: str, status_code: Optional[int] = None):
        self.provider = provider
        self.detail = detail
        self.status_code = status_code
        suffix = f" ({status_code})" if status_code else ""
        super().__init__(f"{provider} request failed{suffix}: {detail}")


def message_content(response: Dict[str, Any]) -> str:
    try:
        message = (response.get("choices") or [{}])[0].get("message") or {}
    except (AttributeError, IndexError):
        return ""
    content = message.get("content")
    if content is None or content == "":
        content = message.get("reasoning") or message.get("reasoning_content") or ""
    return content if isinstance(content, str) else json.dumps(content, ensure_ascii=True)


def message_tool_calls(response: Dict[str, Any]) -> List[Dict[str, Any]]:
    try:
        message = (response.get("choices") or [{}])[0].get("message") or {}
    except (AttributeError, IndexError):
        return []
    calls = message.get("tool_calls") or []
    return [c for c in calls if isinstance(c, dict)]


def extract_error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
        if isinstance(data, dict):
            return json.dumps(data, ensure_ascii=True)
    except Exception:
        pass
    try:
        return response.text
    except Exception:
        return ""


def sanitize_messages(messages: Any) -> List[Dict[str, Any]]:
    if not isinstance(messages, list):
        return []
    sanitized: List[Dict[str, Any]] = []
    for msg in messages:
        if not isinstance(msg, dict):
            continue
        role = msg.get("role")
        if role not in ALLOWED_ROLES:
            continue
        content = msg.get("content")
        tool_calls = msg.get("tool_calls")
        if role == "assistant" and tool_calls:
            # Assistant turns that only carry tool calls have no text.
            sanitized.append({"role": role, "content": content or "", "tool_calls": tool_calls})
            continue
        if content is None:
            continue
        if isinstance(content, str):
            if not content.strip():
                continue
            cleaned_content: Any = content
        elif isinstance(content, list):
            cleaned_content = [
                item
                for item in content
                if isinstance(item, dict) and item.get("type") and (item.get("text") or item.get("image_url"))
            ]
            if not cleaned_content:
                continue
        else:
            cleaned_content = json.dumps(content, ensure_ascii=True)
        entry: Dict[str, Any] = {"role": role, "content": cleaned_content}
        if role == "tool":
            entry["tool_call_id"] = msg.get("tool_call_id") or ""
            if msg.get("name"):
                entry["name"] = msg["name"]
        sanitized.append(entry)
    return sanitized


class ChatCompletionsClient:
    """OpenAI-compatible chat completions over httpx (Groq)."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        provider: str = "groq",
        timeout: float = 60.0,
        max_output_tokens: Optional[int] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.provider = provider
        self.max_output_tokens = max_output_tokens
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.7,
        max_tokens: int = 1024,
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[Any] = None,
        response_format: Optional[dict] = None,
    ) -> Dict[str, Any]:
        final_max_tokens = max_tokens
        if self.max_output_tokens:
            final_max_tokens = min(max_tokens, self.max_output_tokens)
        cleaned = sanitize_messages(messages)
        if not cleaned:
            raise ValueError("messages must include at least one non-empty entry")
        if not model:
            raise ValueError("model is required")
        payload: Dict[str, Any] = {
            "model": model,
            "messages": cleaned,
            "temperature": temperature,
            "max_completion_tokens": final_max_tokens,
            "stream": False,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = tool_choice or "auto"
        if response_format:
            payload["response_format"] = response_format
        try:
            resp = await self.client.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=self._headers(),
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ProviderError(self.provider, extract_error_detail(exc.response), exc.response.status_code) from exc
        except httpx.RequestError as exc:
            raise ProviderError(self.provider, str(exc)) from exc
        data = resp.json()
        if isinstance(data, dict):
            data["_model_used"] = model
        return data

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
