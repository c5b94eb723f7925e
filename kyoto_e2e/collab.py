"""Collaboration feature flags of the application under test."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Iterable


CRITICAL_ERROR_PATTERNS = ("PartyKit", "authentication")


@dataclass(frozen=True)
class CollaborationSettings:
    # Relay host for the PartyKit backend; empty means local-only mode.
    partykit_host: str = field(default_factory=lambda: os.getenv("VITE_PARTYKIT_HOST", "").strip())
    # Public key for the Liveblocks backend.
    liveblocks_public_key: str = field(
        default_factory=lambda: os.getenv("VITE_LIVEBLOCKS_PUBLIC_KEY", "").strip()
    )

    @property
    def partykit_enabled(self) -> bool:
        return bool(self.partykit_host)

    @property
    def liveblocks_enabled(self) -> bool:
        return bool(self.liveblocks_public_key)


def critical_errors(messages: Iterable[str], patterns: Iterable[str] = CRITICAL_ERROR_PATTERNS) -> list[str]:
    """Return the page error messages that mention any of the given substrings."""
    pats = tuple(patterns)
    return [m for m in messages if any(p in m for p in pats)]
