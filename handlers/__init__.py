"""Node handlers and the node-type registry."""
from handlers.base import (
    Advance, Complete, Fail, HandlerRegistry, HandlerResult, NodeHandler, Suspend,
)
from handlers.nodes import (
    ApiCallHandler, ConditionHandler, HandoffHandler, InputHandler, MessageHandler,
    QuickReplyHandler, StartHandler, create_default_registry,
    flatten_response, interpolate,
)

__all__ = [
    "Advance", "Complete", "Fail", "Suspend", "HandlerResult",
    "NodeHandler", "HandlerRegistry",
    "StartHandler", "MessageHandler", "QuickReplyHandler", "InputHandler", "ConditionHandler",
    "ApiCallHandler", "HandoffHandler", "create_default_registry",
    "flatten_response", "interpolate",
]
