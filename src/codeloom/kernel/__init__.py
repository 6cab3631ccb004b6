"""
Kernel: the re-evaluation machinery.

This module contains the execution infrastructure:
- schema: Fragment, event and outcome data structures
- store: Ordered, bounded fragment collection
- registry: Handler registry rebuilt on every refresh
- context: Shared namespace and per-fragment globals
- resolver: Capability resolution with install-and-restart
- engine: Serialized full re-evaluation (refresh)
- router: Handler dispatch for ordinary messages

The kernel knows nothing about transports. Transport = gateway. Kernel = machinery.
"""
from .schema import (
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
    extract_code_blocks,
)
from .store import FragmentStore
from .registry import HandlerRegistry
from .context import ExecutionContext
from .resolver import DependencyResolver
from .engine import ReevaluationEngine
from .router import EventRouter

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
    "extract_code_blocks",
    # Store
    "FragmentStore",
    # Registry
    "HandlerRegistry",
    # Context
    "ExecutionContext",
    # Resolver
    "DependencyResolver",
    # Engine
    "ReevaluationEngine",
    # Router
    "EventRouter",
]
