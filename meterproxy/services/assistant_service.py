"""
Assistant Service: Metered Completion Flow
==========================================

PURPOSE:
    Orchestrates one metered completion for an authenticated user:

        read latest subscription → check_quota → reserve estimate
            → call completion provider (bounded timeout)
            → settle actual cost  |  release on failure
            → append usage record

    The estimate is the request's ``max_tokens``. The provider's own
    ``total_tokens`` is what ends up charged.

    Provider configuration is resolved before anything is reserved, so a
    misconfigured deployment never holds quota.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from meterproxy.services.llm_providers import CompletionProvider
from meterproxy.services.quota_ledger import QuotaCheck
from meterproxy.services.usage_meter import Reservation, UsageMeter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssistantReply:
    content: str
    tokens_used: int
    remaining: int
    provider: str
    model: str


@dataclass(frozen=True)
class AssistantDenied:
    """Admission denial returned instead of a reply."""

    check: QuotaCheck


class AssistantService:
    def __init__(
        self,
        meter: UsageMeter,
        provider_factory: Callable[[], CompletionProvider],
    ) -> None:
        self.meter = meter
        self._provider_factory = provider_factory
        self._provider: Optional[CompletionProvider] = None

    @property
    def provider(self) -> CompletionProvider:
        # Configuration errors surface on first use and are retried on the next request
        if self._provider is None:
            self._provider = self._provider_factory()
        return self._provider

    async def ask(
        self,
        user_id: str,
        prompt: str,
        max_tokens: int,
        request_id: Optional[str] = None,
    ) -> AssistantReply | AssistantDenied:
        provider = self.provider
        request_id = request_id or uuid.uuid4().hex

        admission = await asyncio.to_thread(self.meter.reserve, user_id, max_tokens)
        if not admission.allowed:
            return AssistantDenied(admission.check)

        reservation = admission.reservation
        try:
            completion = await provider.complete(prompt, max_tokens)
        except asyncio.CancelledError:
            logger.info("Assistant request %s cancelled; releasing %d units", request_id, reservation.units)
            await self._release(reservation)
            raise
        except Exception:
            await self._release(reservation)
            raise

        updated = await asyncio.to_thread(
            self.meter.settle,
            reservation,
            completion.units_used,
            request_id,
            completion.provider,
            completion.model,
        )
        remaining = updated.remaining if updated is not None else 0
        logger.info(
            "Assistant request %s for user %s: %d tokens via %s/%s, %d remaining",
            request_id,
            user_id,
            completion.units_used,
            completion.provider,
            completion.model,
            remaining,
        )
        return AssistantReply(
            content=completion.content,
            tokens_used=completion.units_used,
            remaining=max(0, remaining),
            provider=completion.provider,
            model=completion.model,
        )

    async def _release(self, reservation: Reservation) -> None:
        """Give back a reservation after a failed completion.

        The release runs in a worker thread and is shielded, so it finishes
        even if the request is cancelled again meanwhile. A release failure
        is logged; the caller re-raises the completion's own error.
        """
        try:
            await asyncio.shield(asyncio.to_thread(self.meter.cancel, reservation))
        except Exception:
            logger.exception(
                "Could not release %d units on subscription %s",
                reservation.units,
                reservation.subscription_id,
            )
