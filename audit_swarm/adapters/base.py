from abc import ABC, abstractmethod
from typing import Optional, Dict, Any

class BaseModelAdapter(ABC):
    """
    Abstract base class for reasoning service providers.
    Enforces a common interface for generation.
    """

    name: str = "base"

    @abstractmethod
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
        Generates text from the provider.

        Args:
            prompt: User input
            system_prompt: Optional system instruction
            model: Model override
            max_tokens: Upper bound on output size
            reasoning_budget: Thinking-token budget, where the provider supports one
            temperature: Sampling temperature

        Returns:
            Dict containing:
                - response: str
                - model: str
                - provider: str
                - tokens_used: int
        """
        pass
