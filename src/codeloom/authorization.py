"""
AuthorizationFilter: who may write the program.

Holds the static allow-list of trusted authors and the designated fragment
channels. It answers one question for the session: "Is this message a
fragment?"
"""
from __future__ import annotations

from typing import Iterable

from .kernel.schema import MessageEvent


class AuthorizationFilter:
    """Static allow-list of trusted authors and fragment channels."""

    def __init__(self, trusted_authors: Iterable[str], code_channels: Iterable[str]):
        self._trusted = frozenset(str(a) for a in trusted_authors)
        # Ordered: backfill walks channels in configured order.
        self._channels = tuple(dict.fromkeys(str(c) for c in code_channels))

    @property
    def code_channels(self) -> tuple[str, ...]:
        return self._channels

    @property
    def trusted_authors(self) -> frozenset[str]:
        return self._trusted

    def is_trusted(self, author_id: str) -> bool:
        return author_id in self._trusted

    def is_code_channel(self, channel_id: str) -> bool:
        return channel_id in self._channels

    def is_fragment(self, message: MessageEvent) -> bool:
        """A trusted, non-self message posted in a designated channel."""
        if message.is_self:
            return False
        return self.is_code_channel(message.channel_id) and self.is_trusted(message.author_id)
