from __future__ import annotations

import builtins
import sys
from types import SimpleNamespace
from typing import Any, Callable, Dict, Optional

from .registry import HandlerFn, HandlerRegistry
from .resolver import DependencyResolver
from .schema import Fragment


class ExecutionContext:
    """Shared state every fragment evaluates against.

    `shared` lives as long as the process: refreshes never replace it, so
    values a fragment stored survive edits to unrelated fragments. The
    handler registry is the opposite: emptied at the start of every refresh.

    The output_sink enables the I/O Membrane: fragments call `emit()` and the
    entry point decides where the text goes.
    """

    def __init__(
        self,
        resolver: Optional[DependencyResolver] = None,
        gateway: Optional[Any] = None,
        output_sink: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.shared = SimpleNamespace()
        self.handlers = HandlerRegistry()
        self.resolver = resolver or DependencyResolver(output_sink=output_sink)
        self.gateway = gateway
        self.output_sink = output_sink

    def emit(self, content: str) -> None:
        """Send output to the configured sink, or stderr as fallback."""
        if self.output_sink:
            self.output_sink(content)
        else:
            print(content, file=sys.stderr)

    def reset_shared(self) -> None:
        """Empty the shared namespace in place; its identity is kept."""
        self.shared.__dict__.clear()

    def clear_handlers(self) -> None:
        self.handlers.clear()

    def fragment_globals(self, fragment: Fragment) -> Dict[str, Any]:
        """Fresh module globals for one fragment's blocks."""

        def on_message(handler: HandlerFn) -> HandlerFn:
            return self.handlers.register(handler, fragment_id=fragment.id)

        return {
            "__name__": f"fragment_{fragment.id}",
            "__builtins__": builtins,
            "shared": self.shared,
            "handlers": self.handlers,
            "on_message": on_message,
            "require": self.resolver.resolve,
            "gateway": self.gateway,
            "fragment": fragment,
            "emit": self.emit,
            "context": self,
        }
