"""State/store layer.

This package holds the single authoritative copy of every entity's latest
snapshot. Only the upstream connector writes to it; client sessions read
point-in-time copies.
"""

from hassrelay.state.store import EntityStateCache

__all__ = ["EntityStateCache"]
