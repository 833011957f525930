"""
Out-of-band maintenance: index reconciliation and cache housekeeping.

Module store and index upsert are separate writes, so a crash between them
leaves a record without an index entry, and a failed removal leaves an entry
without a record. reconcile_index repairs both directions and is safe to
run repeatedly.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from . import dao
from .errors import FederatedMemoryError
from ..util.logging import audit_event, logger


@dataclass
class MaintenanceReport:
    """Comprehensive maintenance operation report."""
    operation: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    issues_found: int = 0
    issues_resolved: int = 0
    actions_taken: List[str] = None
    recommendations: List[str] = None
    errors: List[str] = None
    metadata: Dict[str, Any] = None

    def __post_init__(self):
        if self.actions_taken is None:
            self.actions_taken = []
        if self.recommendations is None:
            self.recommendations = []
        if self.errors is None:
            self.errors = []
        if self.metadata is None:
            self.metadata = {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert report to dictionary for serialization."""
        data = {
            "operation": self.operation,
            "started_at": self.started_at.isoformat(),
            "issues_found": self.issues_found,
            "issues_resolved": self.issues_resolved,
            "actions_taken": self.actions_taken,
            "recommendations": self.recommendations,
            "errors": self.errors,
            "metadata": self.metadata
        }
        if self.completed_at:
            data["completed_at"] = self.completed_at.isoformat()
        return data


async def _reconcile_owner(module, cmi, owner_id: str, prune: bool, report: MaintenanceReport) -> None:
    record_ids = await module.list_record_ids(owner_id)
    entries = await cmi.list_entries(owner_id, [module.module_id])
    indexed = {entry.remote_memory_id for entry in entries}
    live = set(record_ids)

    for record_id in record_ids:
        if record_id in indexed:
            continue
        report.issues_found += 1
        try:
            record = await module.fetch_record(owner_id, record_id)
            if record is None:
                continue
            await module.reindex_record(record)
        except (FederatedMemoryError, ValueError) as e:
            report.errors.append(f"{module.module_id}/{record_id}: {e}")
            continue
        report.issues_resolved += 1
        report.actions_taken.append(f"Indexed {module.module_id}/{record_id} for owner {owner_id}")

    for entry in entries:
        if entry.remote_memory_id in live:
            continue
        report.issues_found += 1
        if not prune:
            report.recommendations.append(
                f"Remove dangling entry {module.module_id}/{entry.remote_memory_id} for owner {owner_id}"
            )
            continue
        await cmi.remove_index(owner_id, module.module_id, entry.remote_memory_id)
        report.issues_resolved += 1
        report.actions_taken.append(f"Removed dangling entry {module.module_id}/{entry.remote_memory_id}")


async def reconcile_index(core, owner_ids: Optional[Iterable[str]] = None, prune: bool = True) -> MaintenanceReport:
    """
    Bring the central index in line with module storage.

    Records without an entry are (re)indexed, embedding them first if they
    have no stored vector. Entries whose record is gone are removed unless
    prune is False, in which case they are only reported.

    Args:
        core: anything exposing ``registry`` and ``cmi`` (normally a MemoryCore)
        owner_ids: restrict the sweep to these owners
        prune: remove dangling entries

    Returns:
        MaintenanceReport: counts, actions and per-record errors
    """
    report = MaintenanceReport(operation="reconcile_index", started_at=datetime.now())
    start_time = time.time()
    requested = list(owner_ids) if owner_ids is not None else None

    for module in core.registry.modules():
        if not module.participates_in_index:
            continue

        if requested is not None:
            owners = requested
        else:
            index_owners = await asyncio.to_thread(dao.list_index_owner_ids, core.cmi.db_path, module.module_id)
            owners = sorted(set(await module.list_owner_ids()) | set(index_owners))

        for owner_id in owners:
            await _reconcile_owner(module, core.cmi, owner_id, prune, report)

    report.completed_at = datetime.now()
    report.metadata["modules"] = [m.module_id for m in core.registry.modules() if m.participates_in_index]

    status = "success" if not report.errors else "partial"
    logger.log_maintenance_task("reconcile_index", start_time, time.time(), status, {
        "issues_found": report.issues_found,
        "issues_resolved": report.issues_resolved,
        "errors": len(report.errors),
    })
    audit_event(
        event_type="maintenance.reconcile_index",
        identifiers={"prune": prune},
        payload={"issues_found": report.issues_found, "issues_resolved": report.issues_resolved}
    )
    return report


async def clear_embedding_cache(service) -> MaintenanceReport:
    """Drop every cached embedding held by service's cache."""
    report = MaintenanceReport(operation="clear_embedding_cache", started_at=datetime.now())
    start_time = time.time()

    removed = await service.clear_cache()
    report.metadata["removed"] = removed
    report.actions_taken.append(f"Removed {removed} cached embeddings")
    report.completed_at = datetime.now()

    logger.log_maintenance_task("clear_embedding_cache", start_time, time.time(), details={"removed": removed})
    return report


async def purge_expired_cache(backend) -> int:
    """Delete expired rows from a persistent cache backend. Other backends expire lazily."""
    purge = getattr(backend, "purge_expired", None)
    if purge is None:
        return 0

    start_time = time.time()
    removed = await purge()
    logger.log_maintenance_task("purge_expired_cache", start_time, time.time(), details={"removed": removed})
    return removed
