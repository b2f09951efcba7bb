"""Middleware package for the edge service."""

from edge.app.middleware.request_id import RequestIdMiddleware, get_request_id
from edge.app.middleware.request_size import RequestSizeLimitMiddleware

__all__ = [
    "RequestIdMiddleware",
    "RequestSizeLimitMiddleware",
    "get_request_id",
]
