"""Provider client implementations."""

from .fake import FakeProvider, dropped_response, text_response, tool_call_response
from .openai import OpenAIClient, turns_to_messages
from .registry import ProviderClient, get_backend, list_backends, register_backend

__all__ = [
    "FakeProvider",
    "OpenAIClient",
    "ProviderClient",
    "dropped_response",
    "get_backend",
    "list_backends",
    "register_backend",
    "text_response",
    "tool_call_response",
    "turns_to_messages",
]
