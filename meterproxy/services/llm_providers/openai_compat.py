"""
OpenAI-Compatible Completion Provider
=====================================

Backs both OpenAI and Venice.ai, which exposes the same Chat Completions
API at a different base URL. Uses the official openai SDK with async
support; SDK retries are disabled so a request never outlives the
configured timeout.
"""

import asyncio
import logging
from typing import Any, Dict

import httpx
from openai import (
    APIConnectionError,
    APIResponseValidationError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
)

from meterproxy.core.errors import MeterProxyError
from .base import Completion, CompletionProvider

logger = logging.getLogger(__name__)


class OpenAICompatibleProvider(CompletionProvider):
    def __init__(
        self,
        name: str,
        api_key: str,
        base_url: str,
        model: str,
        timeout_s: float = 30.0,
        client: AsyncOpenAI | None = None,
    ):
        self.name = name
        self.model_name = model
        self.timeout_s = timeout_s
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            max_retries=0,
            timeout=httpx.Timeout(timeout_s, connect=min(timeout_s, 10.0)),
        )

    async def complete(self, prompt: str, max_tokens: int) -> Completion:
        """Generate a single-turn completion and report its token usage."""
        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model_name,
                    messages=[{"role": "user", "content": prompt}],
                    max_tokens=max_tokens,
                ),
                timeout=self.timeout_s,
            )
        except (APITimeoutError, asyncio.TimeoutError) as e:
            raise MeterProxyError(
                "MPX-UPS-003",
                detail=f"{self.name} did not answer within {self.timeout_s}s",
                context={"provider": self.name},
            ) from e
        except APIConnectionError as e:
            raise MeterProxyError(
                "MPX-UPS-001",
                detail=f"{self.name} connection failed: {e}",
                context={"provider": self.name},
            ) from e
        except APIStatusError as e:
            retryable = e.status_code >= 500 or e.status_code == 429
            raise MeterProxyError(
                "MPX-UPS-001" if retryable else "MPX-UPS-002",
                detail=f"{self.name} returned HTTP {e.status_code}",
                context={"provider": self.name, "status": e.status_code},
            ) from e
        except APIResponseValidationError as e:
            raise MeterProxyError(
                "MPX-RSP-001",
                detail=f"{self.name} response failed validation",
                context={"provider": self.name},
            ) from e

        choices = getattr(response, "choices", None)
        usage = getattr(response, "usage", None)
        if not choices or usage is None or usage.total_tokens is None:
            raise MeterProxyError(
                "MPX-RSP-001",
                detail=f"{self.name} response missing choices or usage",
                context={"provider": self.name, "model": self.model_name},
            )

        content = choices[0].message.content or ""
        logger.debug(
            "%s completion: model=%s total_tokens=%d", self.name, self.model_name, usage.total_tokens
        )
        return Completion(
            content=content,
            units_used=int(usage.total_tokens),
            provider=self.name,
            model=getattr(response, "model", None) or self.model_name,
        )

    def get_model_info(self) -> Dict[str, Any]:
        return {
            "provider": self.name,
            "model": self.model_name,
            "timeout_s": self.timeout_s,
        }
