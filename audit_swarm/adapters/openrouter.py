import httpx
from typing import Optional, Dict, Any
from audit_swarm.config import get_settings
from audit_swarm.adapters.base import BaseModelAdapter

settings = get_settings()

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

class OpenRouterAdapter(BaseModelAdapter):
    name = "openrouter"

    def __init__(self, base_url: str = OPENROUTER_BASE_URL):
        self.api_key = settings.OPENROUTER_API_KEY
        self.base_url = base_url
        self.default_model = settings.DEFAULT_MODEL_OPENROUTER

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        reasoning_budget: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Calls OpenRouter chat completions. Reasoning budget is forwarded as
        `reasoning.max_tokens` for models that support thinking.
        """
        target_model = model or self.default_model

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "X-Title": "Audit Swarm",
        }

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        payload: Dict[str, Any] = {
            "model": target_model,
            "messages": messages,
            "response_format": {"type": "json_object"},
        }
        if max_tokens:
            payload["max_tokens"] = max_tokens
        if reasoning_budget:
            payload["reasoning"] = {"max_tokens": reasoning_budget}
        if temperature is not None:
            payload["temperature"] = temperature

        async with httpx.AsyncClient() as client:
            resp = await client.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=headers,
                timeout=settings.REASONING_TIMEOUT_SECONDS,
            )
            resp.raise_for_status()
            data = resp.json()

            choices = data.get("choices") or []
            content = ""
            if choices:
                content = (choices[0].get("message") or {}).get("content") or ""

            tokens = 0
            usage = data.get("usage", {})
            if usage:
                tokens = usage.get("total_tokens", 0) or 0

            return {
                "response": content,
                "model": target_model,
                "provider": self.name,
                "tokens_used": tokens,
            }
