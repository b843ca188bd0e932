"""
Completion Provider Base Class
==============================

Abstract base class for upstream completion providers. Implementations
map their SDK's failures onto MeterProxyError codes:

    MPX-UPS-001  5xx, 429 or transport failure (retryable)
    MPX-UPS-002  other 4xx (not retryable)
    MPX-UPS-003  no answer within the configured timeout (retryable)
    MPX-RSP-001  2xx with an unusable body
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict


@dataclass(frozen=True)
class Completion:
    """Generated text plus the units the provider charged for it."""

    content: str
    units_used: int
    provider: str
    model: str


class CompletionProvider(ABC):
    """
    Uniform contract over completion backends.

    Implementations must:
    - Honor a bounded timeout on every call
    - Report the provider's own usage count as ``units_used``
    - Raise MeterProxyError, never SDK exceptions
    """

    name: str = "unknown"

    @abstractmethod
    async def complete(self, prompt: str, max_tokens: int) -> Completion:
        """
        Generate a completion for a single user prompt.

        Args:
            prompt: The user prompt to respond to
            max_tokens: Maximum tokens in the response

        Returns:
            Completion with content and units used

        Raises:
            MeterProxyError: On upstream or malformed-response failure
        """

    @abstractmethod
    def get_model_info(self) -> Dict[str, Any]:
        """Return metadata about the configured model."""
