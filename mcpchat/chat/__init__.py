"""
Chat layer: tool aggregation, the model client and the function-calling loop.
"""

from mcpchat.chat.loop import ChatEngine, ChatTurnResult, ToolCallRecord
from mcpchat.chat.model import ChatMessage, GeminiModelClient, ModelClient, ModelError
from mcpchat.chat.tools import ServerTools, ToolIndex, get_all_tools

__all__ = [
    "ChatEngine",
    "ChatTurnResult",
    "ToolCallRecord",
    "ChatMessage",
    "ModelClient",
    "GeminiModelClient",
    "ModelError",
    "ServerTools",
    "ToolIndex",
    "get_all_tools",
]
