"""GC (Garbage Collection) service for Explorable.

Background cleanup of:
- Sandbox instances past their TTL (ExpiredInstanceGC)
- Project runs that stopped making progress (StaleRunGC)
"""

from explorable.services.gc.base import GCResult, GCTask
from explorable.services.gc.scheduler import GCScheduler

__all__ = ["GCResult", "GCScheduler", "GCTask"]
