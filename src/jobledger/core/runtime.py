from __future__ import annotations

from typing import TYPE_CHECKING

from jobledger.core.locks import IdentityLocks

if TYPE_CHECKING:
    from jobledger.core.bulk_import import BulkImportRegistry
    from jobledger.core.dedup import DuplicateGroupCache

_IDENTITY_LOCKS: IdentityLocks | None = None
_GROUP_CACHE: DuplicateGroupCache | None = None
_BULK_IMPORTS: BulkImportRegistry | None = None


def get_identity_locks() -> IdentityLocks:
    global _IDENTITY_LOCKS
    if _IDENTITY_LOCKS is None:
        _IDENTITY_LOCKS = IdentityLocks()
    return _IDENTITY_LOCKS


def get_group_cache() -> DuplicateGroupCache:
    global _GROUP_CACHE
    if _GROUP_CACHE is None:
        from jobledger.core.dedup import DuplicateGroupCache

        _GROUP_CACHE = DuplicateGroupCache()
    return _GROUP_CACHE


def get_bulk_import_registry() -> BulkImportRegistry:
    global _BULK_IMPORTS
    if _BULK_IMPORTS is None:
        from jobledger.core.bulk_import import BulkImportRegistry

        _BULK_IMPORTS = BulkImportRegistry()
    return _BULK_IMPORTS
