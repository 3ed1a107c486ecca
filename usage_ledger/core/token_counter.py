"""
Token counting and usage tracking.

Normalises token usage reported by model providers into one shape.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Token counts arrive from the model call; nothing here estimates them.
    Optional components are ``None`` when the provider did not report them.
    """
    input_tokens: int
    output_tokens: int
    cache_read_tokens: Optional[int] = None
    cache_write_tokens: Optional[int] = None
    reasoning_tokens: Optional[int] = None
    reported_total_tokens: Optional[int] = None

    def __post_init__(self):
        """Validate token counts are non-negative."""
        for name in ("input_tokens", "output_tokens", "cache_read_tokens",
                     "cache_write_tokens", "reasoning_tokens", "reported_total_tokens"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens as reported, falling back to input + output."""
        if self.reported_total_tokens is not None:
            return self.reported_total_tokens
        return self.input_tokens + self.output_tokens

    def details(self) -> Dict[str, int]:
        """Usage breakdown with only the components that are present."""
        result = {"input": self.input_tokens, "output": self.output_tokens}
        if self.cache_read_tokens:
            result["cache_read"] = self.cache_read_tokens
        if self.cache_write_tokens:
            result["cache_write"] = self.cache_write_tokens
        if self.reasoning_tokens:
            result["reasoning"] = self.reasoning_tokens
        result["total"] = self.total_tokens
        return result

    @classmethod
    def from_openai(cls, usage: Any) -> "TokenUsage":
        """Build from an OpenAI ``CompletionUsage`` object."""
        prompt_details = getattr(usage, "prompt_tokens_details", None)
        completion_details = getattr(usage, "completion_tokens_details", None)
        cached = getattr(prompt_details, "cached_tokens", None) if prompt_details else None
        reasoning = getattr(completion_details, "reasoning_tokens", None) if completion_details else None
        total = getattr(usage, "total_tokens", None)
        return cls(
            input_tokens=usage.prompt_tokens or 0,
            output_tokens=usage.completion_tokens or 0,
            cache_read_tokens=cached if isinstance(cached, int) else None,
            reasoning_tokens=reasoning if isinstance(reasoning, int) else None,
            reported_total_tokens=total if isinstance(total, int) else None,
        )
