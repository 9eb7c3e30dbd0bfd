from typing import Optional, Dict, Any
from groq import AsyncGroq
from audit_swarm.config import get_settings
from audit_swarm.adapters.base import BaseModelAdapter

settings = get_settings()

class GroqAdapter(BaseModelAdapter):
    name = "groq"

    def __init__(self, client: Optional[AsyncGroq] = None):
        self.client = client or AsyncGroq(
            api_key=settings.GROQ_API_KEY,
            timeout=settings.REASONING_TIMEOUT_SECONDS,
            max_retries=0,
        )
        self.default_model = settings.DEFAULT_MODEL_GROQ

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
        Calls Groq chat completions in JSON mode. Groq has no thinking budget,
        so `reasoning_budget` is ignored.
        """
        target_model = model or self.default_model
        messages = []

        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})

        messages.append({"role": "user", "content": prompt})

        params: Dict[str, Any] = {"response_format": {"type": "json_object"}}
        if max_tokens:
            params["max_tokens"] = max_tokens
        if temperature is not None:
            params["temperature"] = temperature

        completion = await self.client.chat.completions.create(
            model=target_model,
            messages=messages,
            **params
        )

        tokens = 0
        if hasattr(completion, "usage") and completion.usage:
            tokens = getattr(completion.usage, "total_tokens", 0) or 0

        return {
            "response": completion.choices[0].message.content or "",
            "model": target_model,
            "provider": self.name,
            "tokens_used": tokens,
        }
