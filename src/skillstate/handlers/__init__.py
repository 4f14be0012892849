"""State handlers."""

from skillstate.handlers.base import StateHandler
from skillstate.handlers.durable import DynamoStateHandler, S3StateHandler, ShadowStateHandler
from skillstate.handlers.reconciling import ReconcilingStateHandler
from skillstate.handlers.session import SessionStateHandler

__all__ = [
    "DynamoStateHandler",
    "ReconcilingStateHandler",
    "S3StateHandler",
    "SessionStateHandler",
    "ShadowStateHandler",
    "StateHandler",
]
