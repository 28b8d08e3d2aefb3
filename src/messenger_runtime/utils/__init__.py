"""Utility exports for concurrency helpers."""

from messenger_runtime.utils.concurrency import EMPTY, Built, Empty, OnceSlot

__all__ = [
    "EMPTY",
    "Built",
    "Empty",
    "OnceSlot",
]
