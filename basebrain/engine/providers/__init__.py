"""Model streaming clients."""
from .base import ModelClient, build_request_body, event_from_payload, parse_event_line
from .http_provider import HttpModelClient

__all__ = [
    "ModelClient",
    "HttpModelClient",
    "build_request_body",
    "event_from_payload",
    "parse_event_line",
]
