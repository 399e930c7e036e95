"""Chat providers and the per-session conversation service."""

from yona.daemon.chat.base import ChatChunk, ChatProvider
from yona.daemon.chat.echo_provider import EchoChatProvider
from yona.daemon.chat.openai_provider import OpenAIChatProvider
from yona.daemon.chat.service import ChatService

__all__ = [
    "ChatChunk",
    "ChatProvider",
    "ChatService",
    "EchoChatProvider",
    "OpenAIChatProvider",
]
