"""
Assistant endpoint: one metered completion per request.

POST /api/assistant
    200  {response, tokens_used, remaining, provider, model}
    400  empty prompt
    401  missing or invalid API key
    403  {error, remaining} when the quota ledger denies the request
    502/504  upstream failure (nothing charged)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from meterproxy.auth.api_key_auth import AuthenticatedUser, get_current_user
from meterproxy.core.errors import MeterProxyError
from meterproxy.services.assistant_service import AssistantDenied, AssistantService

logger = logging.getLogger(__name__)

router = APIRouter()


class AssistantRequest(BaseModel):
    prompt: Optional[str] = None
    max_tokens: Optional[int] = Field(default=None, alias="maxTokens", gt=0)

    model_config = {"populate_by_name": True}


class AssistantResponse(BaseModel):
    response: str
    tokens_used: int
    remaining: int
    provider: str
    model: str


def get_assistant_service(request: Request) -> AssistantService:
    return request.app.state.assistant


@router.post("/assistant", response_model=AssistantResponse)
async def ask_assistant(
    body: AssistantRequest,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    assistant: AssistantService = Depends(get_assistant_service),
):
    if not body.prompt or not body.prompt.strip():
        raise MeterProxyError("MPX-API-001", detail="empty prompt")

    settings = request.app.state.settings
    max_tokens = min(body.max_tokens or settings.default_max_tokens, settings.max_tokens_limit)

    result = await assistant.ask(user.user_id, body.prompt, max_tokens, request_id=request.state.request_id)
    if isinstance(result, AssistantDenied):
        return JSONResponse(
            status_code=403,
            content={"error": result.check.message, "remaining": result.check.remaining},
        )

    return AssistantResponse(
        response=result.content,
        tokens_used=result.tokens_used,
        remaining=result.remaining,
        provider=result.provider,
        model=result.model,
    )
