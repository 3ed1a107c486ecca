"""
Guarded OpenAI client wrapper.

Checks the user's usage limit before each call and charges the call to the
ledger after it.
"""

from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.engine import UsageLedger
from ..core.guardrails import UsageBlocked
from ..core.token_counter import TokenUsage


class GuardedOpenAI:
    """OpenAI client wrapper that enforces limits and records usage.

    A blocked user never reaches the model. A completed call is always
    recorded; ledger failures are loud so no usage goes unbilled silently.
    """

    def __init__(
        self,
        ledger: UsageLedger,
        user_id: str,
        model: str,
        task_type: str,
        api_key: Optional[str] = None,
        provider: str = "openai",
    ):
        """Initialize guarded OpenAI client.

        Args:
            ledger: Usage ledger to check and charge
            user_id: User the calls are made for (required)
            model: Model name (required)
            task_type: Task identifier for the usage record (required)
            api_key: The user's own API key; when given, calls cost this
                system nothing and skip the limit check
            provider: Provider label stored on the call record

        Raises:
            ValueError: If user_id, model or task_type is missing/empty
        """
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required and cannot be empty")
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if not task_type or not task_type.strip():
            raise ValueError("task_type is required and cannot be empty")

        self.ledger = ledger
        self.user_id = user_id
        self.model = model
        self.task_type = task_type
        self.provider = provider
        self.is_external_key = api_key is not None
        self.client = OpenAI(api_key=api_key) if api_key else OpenAI()

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        conversation_id: Optional[str] = None,
        **kwargs: Any
    ) -> Any:
        """Create chat completion with limit check and usage recording.

        Args:
            messages: List of message dictionaries (required)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            conversation_id: Conversation to attach the call record to
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response

        Raises:
            ValueError: If messages is empty or the response lacks usage
            UsageBlocked: If the user may not make the call
            OpenAI API errors: Propagated without modification
            LedgerWriteError: If the usage record could not be committed
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        check = self.ledger.guard.check_usage_limit(self.user_id, self.is_external_key)
        if not check.allowed:
            raise UsageBlocked(check)

        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs
        )

        usage = response.usage
        if not usage:
            raise ValueError("OpenAI response missing usage information")

        self.ledger.recorder.record_token_usage(
            user_id=self.user_id,
            provider=self.provider,
            model_id=self.model,
            task_type=self.task_type,
            usage=TokenUsage.from_openai(usage),
            is_external_key=self.is_external_key,
            conversation_id=conversation_id,
        )

        return response
