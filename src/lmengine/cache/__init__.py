"""Cache subpackage: fixed-capacity KV cache slots."""

from lmengine.cache.protocol import KVCacheProtocol
from lmengine.cache.slotted import BatchedSlotCacheView, CacheLayout, CacheSlot, CacheSlotPool

__all__ = [
    "BatchedSlotCacheView",
    "CacheLayout",
    "CacheSlot",
    "CacheSlotPool",
    "KVCacheProtocol",
]
