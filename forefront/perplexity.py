from typing import Any, Dict, List, Optional

import httpx

from .llm import sanitize_messages

SEARCH_RECENCY = {"hour", "day", "week", "month", "year"}


class PerplexityClient:
    def __init__(self, api_key: Optional[str], base_url: str = "https://api.perplexity.ai", timeout: float = 60.0):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        model: str = "sonar-pro",
        include_images: bool = True,
        include_videos: bool = True,
        search_recency: Optional[str] = None,
        search_domains: Optional[List[str]] = None,
        temperature: float = 0.2,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        payload: Dict[str, Any] = {
            "model": model,
            "messages": sanitize_messages(messages),
            "temperature": temperature,
            "return_citations": True,
            "return_images": include_images,
            "return_related_questions": False,
        }
        if max_tokens:
            payload["max_tokens"] = max_tokens
        if include_videos:
            payload["media_response"] = {"overrides": {"return_videos": True}}
        if search_recency:
            cleaned = str(search_recency).strip().lower()
            if cleaned in SEARCH_RECENCY:
                payload["search_recency_filter"] = cleaned
        if search_domains:
            payload["search_domain_filter"] = list(search_domains)
        return await self._post(f"{self.base_url}/chat/completions", payload)

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except Exception:
                detail = e.response.text
            return {"error": "http_status", "status_code": e.response.status_code, "detail": detail}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
