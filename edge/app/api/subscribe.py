"""Newsletter subscription endpoint.

The route is a thin adapter: every method is routed here so that the gate,
not the framework, decides between 204, 405 and the POST pipeline.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from edge.app.core.config import settings
from edge.app.middleware.request_id import get_request_id
from edge.app.services.gate import GateRequest, GateResponse, SubscriptionGate
from edge.app.services.rate_limit import FixedWindowRateLimiter, get_rate_limiter
from edge.app.services.subscription import SubscriptionSink, get_subscription_sink

router = APIRouter(prefix="/api", tags=["subscribe"])

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def get_subscription_gate(
    limiter: Annotated[FixedWindowRateLimiter, Depends(get_rate_limiter)],
    sink: Annotated[SubscriptionSink, Depends(get_subscription_sink)],
) -> SubscriptionGate:
    return SubscriptionGate(
        limiter=limiter,
        sink=sink,
        allowed_origins=settings.allowed_origins,
        enforce_referer=settings.enforce_referer,
        body_read_timeout=settings.body_read_timeout_seconds,
    )


GateDep = Annotated[SubscriptionGate, Depends(get_subscription_gate)]


def to_http_response(result: GateResponse) -> Response:
    if result.body is None:
        return Response(status_code=result.status_code, headers=result.headers)
    return JSONResponse(content=result.body, status_code=result.status_code, headers=result.headers)


@router.api_route("/subscribe", methods=ALL_METHODS, response_model=None)
async def subscribe(request: Request, gate: GateDep) -> Response:
    """Validate, rate-limit and record a newsletter sign-up."""
    result = await gate.handle(
        GateRequest(
            method=request.method,
            headers=request.headers,
            client_host=request.client.host if request.client else None,
            stream=request.stream(),
            request_id=get_request_id(request),
        )
    )
    return to_http_response(result)
