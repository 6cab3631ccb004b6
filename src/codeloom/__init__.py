"""
codeloom: a program that lives in a chat channel.

Public API re-exports from kernel/ (machinery) and the session layer.
"""
from .kernel.schema import (
    Fragment,
    FragmentOutcome,
    GatewayEvent,
    GatewayEventKind,
    Marker,
    MessageEvent,
    OutcomeStatus,
    RefreshReport,
    Resolution,
    ResolutionStatus,
)
from .kernel.store import FragmentStore
from .kernel.registry import HandlerRegistry
from .kernel.context import ExecutionContext
from .kernel.resolver import DependencyResolver
from .kernel.engine import ReevaluationEngine
from .kernel.router import EventRouter
from .authorization import AuthorizationFilter
from .reporting import AnnotationService, ErrorReporter
from .session import LiveSession

__version__ = "0.1.0"

__all__ = [
    # Schema
    "Fragment",
    "FragmentOutcome",
    "GatewayEvent",
    "GatewayEventKind",
    "Marker",
    "MessageEvent",
    "OutcomeStatus",
    "RefreshReport",
    "Resolution",
    "ResolutionStatus",
    # Kernel
    "FragmentStore",
    "HandlerRegistry",
    "ExecutionContext",
    "DependencyResolver",
    "ReevaluationEngine",
    "EventRouter",
    # Session layer
    "AuthorizationFilter",
    "AnnotationService",
    "ErrorReporter",
    "LiveSession",
]
