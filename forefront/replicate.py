from typing import Any, Dict, List, Optional

import httpx

# Registry id -> Replicate model slug.
REPLICATE_MODELS = {"seedream-4": "bytedance/seedream-4"}
DEFAULT_ASPECT_RATIO = "4:3"


class ReplicateClient:
    def __init__(self, api_token: Optional[str], base_url: str = "https://api.replicate.com/v1", timeout: float = 120.0):
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.api_token)

    async def generate_image(
        self,
        prompt: str,
        model: str = "seedream-4",
        aspect_ratio: str = DEFAULT_ASPECT_RATIO,
    ) -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        slug = REPLICATE_MODELS.get(model, model)
        url = f"{self.base_url}/models/{slug}/predictions"
        payload = {"input": {"prompt": prompt, "aspect_ratio": aspect_ratio or DEFAULT_ASPECT_RATIO}}
        # Prefer: wait keeps the prediction synchronous for short generations.
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_token}",
            "Prefer": "wait",
        }
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except Exception:
                detail = e.response.text
            return {"error": "http_status", "status_code": e.response.status_code, "detail": detail}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}
        urls = _output_urls(data.get("output"))
        if not urls:
            return {"error": "no_output", "detail": data.get("error") or data.get("status") or "empty output"}
        return {"url": urls[0], "urls": urls, "id": data.get("id"), "status": data.get("status")}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


def _output_urls(output: Any) -> List[str]:
    if isinstance(output, str):
        return [output]
    if isinstance(output, list):
        return [str(item) for item in output if item]
    return []
