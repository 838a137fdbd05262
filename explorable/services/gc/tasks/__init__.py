"""GC tasks for cleaning up various resources."""

from explorable.services.gc.tasks.expired_instance import ExpiredInstanceGC
from explorable.services.gc.tasks.stale_run import StaleRunGC

__all__ = ["ExpiredInstanceGC", "StaleRunGC"]
