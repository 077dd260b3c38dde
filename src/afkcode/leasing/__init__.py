from afkcode.leasing.errors import ClaimConflictError, LeasingError, LockTimeoutError
from afkcode.leasing.items import MarkerType, WorkItem
from afkcode.leasing.lock import ClaimLock
from afkcode.leasing.parser import find_checklist_files, parse_all, parse_file
from afkcode.leasing.registry import WorkLeasingRegistry, release_checkout, restore_marker
from afkcode.leasing.scanner import ScanResult, has_incomplete_items, scan_all_checklists
from afkcode.leasing.selector import LeaseFilters

__all__ = [
    "ClaimConflictError",
    "ClaimLock",
    "LeaseFilters",
    "LeasingError",
    "LockTimeoutError",
    "MarkerType",
    "ScanResult",
    "WorkItem",
    "WorkLeasingRegistry",
    "find_checklist_files",
    "has_incomplete_items",
    "parse_all",
    "parse_file",
    "release_checkout",
    "restore_marker",
    "scan_all_checklists",
]
