"""Safety module - resource guards for supervised workers."""

from .guards import MemoryGuard

__all__ = ["MemoryGuard"]
