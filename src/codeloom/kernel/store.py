from __future__ import annotations

from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from ..errors import StoreCapacityError
from .schema import Fragment

# Type alias for store change hooks
# Signature: (op, fragment_id) -> None, op is "upsert", "remove" or "replace_all"
StoreChangeHook = Callable[[str, Optional[str]], None]

DEFAULT_CAPACITY = 100


class FragmentStore:
    """
    Ordered collection of fragments keyed by message id.

    Order is first-seen order: a new id appends, an edit keeps its slot,
    a removal closes the gap. Capacity is a hard bound.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        # dicts keep insertion order, and replacing a value keeps the key's slot
        self._fragments: Dict[str, Fragment] = {}
        self._on_change: list[StoreChangeHook] = []

    @property
    def capacity(self) -> int:
        return self._capacity

    def add_change_hook(self, callback: StoreChangeHook) -> None:
        """Register a callback fired after every successful mutation."""
        self._on_change.append(callback)

    def remove_change_hook(self, callback: StoreChangeHook) -> None:
        self._on_change.remove(callback)

    def _fire_change_hooks(self, op: str, fragment_id: Optional[str]) -> None:
        for hook in self._on_change:
            hook(op, fragment_id)

    def upsert(self, fragment: Fragment) -> bool:
        """
        Insert or replace a fragment.

        Returns True when the fragment is new.

        Raises:
            StoreCapacityError: a new fragment would exceed capacity.
        """
        is_new = fragment.id not in self._fragments
        if is_new and len(self._fragments) >= self._capacity:
            raise StoreCapacityError(
                f"Fragment store is full ({self._capacity}); "
                f"cannot add message {fragment.id}"
            )
        self._fragments[fragment.id] = fragment
        self._fire_change_hooks("upsert", fragment.id)
        return is_new

    def remove(self, fragment_id: str) -> bool:
        """Remove a fragment. Returns False when the id was not stored."""
        if self._fragments.pop(fragment_id, None) is None:
            return False
        self._fire_change_hooks("remove", fragment_id)
        return True

    def replace_all(self, fragments: Iterable[Fragment]) -> None:
        """Replace the whole collection, keeping the given order."""
        incoming: Dict[str, Fragment] = {}
        for fragment in fragments:
            incoming[fragment.id] = fragment
        if len(incoming) > self._capacity:
            raise StoreCapacityError(
                f"{len(incoming)} fragments exceed store capacity {self._capacity}"
            )
        self._fragments = incoming
        self._fire_change_hooks("replace_all", None)

    def get(self, fragment_id: str) -> Optional[Fragment]:
        return self._fragments.get(fragment_id)

    def ids(self) -> List[str]:
        return list(self._fragments)

    def snapshot(self) -> Tuple[Fragment, ...]:
        """Current fragments, in order, decoupled from later mutation."""
        return tuple(self._fragments.values())

    def __iter__(self) -> Iterator[Fragment]:
        return iter(self.snapshot())

    def __len__(self) -> int:
        return len(self._fragments)

    def __contains__(self, fragment_id: object) -> bool:
        return fragment_id in self._fragments
