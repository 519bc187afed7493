from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from ...domain.errors import ConfigurationError, UpstreamExhaustedError
from ...services.gemini_proxy import GenerateRequest, GenerativeProxy, get_generative_proxy

logger = logging.getLogger(__name__)

router = APIRouter(tags=["gemini"])


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


@router.post("/gemini")
async def generate(request: Request, proxy: GenerativeProxy = Depends(get_generative_proxy)) -> JSONResponse:
    try:
        body = await request.json()
    except ValueError:
        body = None
    try:
        req = GenerateRequest.model_validate(body if isinstance(body, dict) else {})
    except ValidationError as exc:
        if any(err.get("loc", ())[:1] == ("prompt",) for err in exc.errors()):
            return _error(status.HTTP_400_BAD_REQUEST, "Missing or invalid prompt")
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid request body")

    try:
        result = await proxy.generate(req)
    except ConfigurationError as exc:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))
    except UpstreamExhaustedError as exc:
        logger.warning("gemini_upstream_exhausted", extra={"attempts": exc.attempts, "err": str(exc)})
        return _error(status.HTTP_502_BAD_GATEWAY, str(exc) or "Failed to generate content", tokenReport=exc.token_report)
    except Exception:
        logger.exception("gemini_unexpected_error")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")
    return JSONResponse(content=result)
