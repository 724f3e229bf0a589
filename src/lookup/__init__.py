# src/lookup/__init__.py
"""
Client side of the external finder/verifier service.

  - client.LookupClient: httpx adapter returning normalized LookupResult values
  - rate_limit.LookupThrottle: Redis-backed concurrency + RPS guard shared by workers
"""

from __future__ import annotations

from .client import LookupClient, LookupResult
from .rate_limit import LookupThrottle

__all__ = ["LookupClient", "LookupResult", "LookupThrottle"]
