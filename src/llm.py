"""LLM client using LiteLLM for model abstraction."""

from typing import Any, Dict, List, Optional, Protocol

from litellm import completion

from config import settings


class TextGenerator(Protocol):
    """Minimal completion surface the agent services depend on."""

    @property
    def configured(self) -> bool: ...

    def generate_text(self, prompt: str, system: str | None = None) -> str: ...


class LLMClient:
    """Wrapper around LiteLLM for consistent LLM access."""

    def __init__(self, model: Optional[str] = None, api_key: Optional[str] = None):
        """Initialize the client with the configured model and key if omitted."""
        self.model = self._normalize_model_name(model or settings.llm.model)
        self.api_key = api_key if api_key is not None else settings.llm.api_key

    @property
    def configured(self) -> bool:
        """Return True when an API key is available for completions."""
        return bool(self.api_key)

    def _normalize_model_name(self, model: str) -> str:
        """Normalize model name for LiteLLM compatibility.

        Bare Gemini model names are routed through the ``gemini/`` provider
        prefix, and ``provider:model`` strings use LiteLLM's slash form.
        For example: 'gemini-3-pro-preview' becomes 'gemini/gemini-3-pro-preview'.
        """
        if ":" in model and "/" not in model:
            provider, name = model.split(":", 1)
            return f"{provider}/{name}"
        if model.startswith("gemini-"):
            return f"gemini/{model}"
        return model

    def _litellm_kwargs(self) -> Dict[str, Any]:
        """Build LiteLLM keyword arguments from settings."""
        extra: Dict[str, Any] = {}
        if settings.llm.base_url:
            extra["api_base"] = settings.llm.base_url
        if self.api_key:
            extra["api_key"] = self.api_key
        return extra

    def complete_sync(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.7,
        max_tokens: int = 4000,
        **kwargs,
    ) -> str:
        """Synchronous completion request.

        Args:
            messages: List of message dicts with 'role' and 'content'
            temperature: Sampling temperature
            max_tokens: Maximum response tokens
            **kwargs: Additional LiteLLM parameters

        Returns:
            Response text
        """
        response = completion(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=settings.llm.timeout,
            **self._litellm_kwargs(),
            **kwargs,
        )
        return response.choices[0].message.content or ""

    def generate_text(self, prompt: str, system: str | None = None) -> str:
        """Run a single-prompt completion and return the stripped text."""
        messages: List[Dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return (self.complete_sync(messages) or "").strip()


# Global instance
llm_client = LLMClient()
