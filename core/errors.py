"""
Error taxonomy for the flow engine.

ConfigurationError — bad flow authoring. Never retried, session fails.
TransientError     — delivery / integration failure. Retried inside the handler.
SessionBusyError   — another turn holds the session. Not a session failure.
ClaimLostError     — the lease could not be renewed mid-turn. The turn stops.
"""
from __future__ import annotations

from typing import Optional


class FlowEngineError(Exception):
    """Base exception for all engine errors."""

    code = "engine_error"

    def __init__(self, message: str, node_id: Optional[str] = None, code: str = None):
        self.node_id = node_id
        if code:
            self.code = code
        super().__init__(message)


# ── Configuration ────────────────────────────────────────────

class ConfigurationError(FlowEngineError):
    code = "configuration_error"


class NoStartNodeError(ConfigurationError):
    code = "no_start_node"


class NoOutgoingEdgeError(ConfigurationError):
    code = "no_outgoing_edge"


class UnknownNodeTypeError(ConfigurationError):
    code = "unknown_node_type"


class DanglingEdgeError(ConfigurationError):
    code = "dangling_edge"


class StepLimitExceededError(ConfigurationError):
    code = "step_limit_exceeded"


class InvalidConditionError(ConfigurationError):
    code = "invalid_condition"


class FlowValidationError(ConfigurationError):
    code = "flow_invalid"

    def __init__(self, flow_id: str, errors: list[str], warnings: list[str] = None):
        self.flow_id = flow_id
        self.errors = errors
        self.warnings = warnings or []
        super().__init__(f"Invalid flow '{flow_id}': {'; '.join(errors)}")


# ── Transient ────────────────────────────────────────────────

class TransientError(FlowEngineError):
    code = "transient_error"

    def __init__(self, message: str, node_id: Optional[str] = None, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message, node_id=node_id)


class DeliveryError(TransientError):
    code = "delivery_error"


class IntegrationError(TransientError):
    code = "integration_error"

    def __init__(self, message: str, node_id: Optional[str] = None,
                 retryable: bool = True, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message, node_id=node_id, retryable=retryable)


# ── Session / concurrency ────────────────────────────────────

class SessionBusyError(FlowEngineError):
    code = "busy"


class SessionConflictError(FlowEngineError):
    code = "session_conflict"


class AbortedTurnError(FlowEngineError):
    code = "aborted"


class UnmatchedReplyError(FlowEngineError):
    code = "unmatched_reply"


class ClaimLostError(FlowEngineError):
    """The turn's claim was taken over; nothing more may be done on its behalf."""
    code = "claim_lost"
