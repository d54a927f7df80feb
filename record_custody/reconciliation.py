"""
Orphan key reconciliation
=========================

A key stays under its content handle when the uploader never calls
associate (crash, lost request, failed ledger commit). This sweep finds
such keys once they are older than a threshold and cross-checks each one
against the ledger:

    committed record found   -> rekey to the record handle
    definitively not found   -> purge
    ledger error             -> keep; never purge under uncertainty
    record handle occupied   -> keep and report

Intended to be run periodically (cron, admin endpoint, or
``tools/sweep_orphans.py``).
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from .custody import CONTENT_PREFIX, KeyPhase
from .errors import HandleConflict, KeyNotFound
from .gateway import CustodyGateway


logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_SECONDS = 24 * 3600


@dataclass
class ReconciliationReport:
    scanned: int = 0
    associated: List[Dict[str, Any]] = field(default_factory=list)
    purged: List[str] = field(default_factory=list)
    kept: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def sweep_orphans(
    gateway: CustodyGateway,
    max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
    now: Optional[float] = None,
    dry_run: bool = False
) -> ReconciliationReport:
    """
    Reconcile content-handle keys older than ``max_age_seconds``.

    Args:
        gateway: Gateway whose store and ledger are reconciled
        max_age_seconds: Minimum age before a key counts as orphaned
        now: Reference time (epoch seconds); defaults to the current time
        dry_run: Report decisions without changing the store

    Returns:
        ReconciliationReport listing every decision taken
    """
    now = time.time() if now is None else now
    report = ReconciliationReport()
    orphans = gateway.store.list_records(phase=KeyPhase.ENCRYPTED, older_than=now - max_age_seconds)
    report.scanned = len(orphans)
    logger.info("Reconciliation: %d orphan candidates older than %ds", len(orphans), max_age_seconds)

    for rec in orphans:
        content_hash = rec.handle[len(CONTENT_PREFIX):]
        try:
            record_id = gateway.ledger.find_record_by_content_hash(content_hash)
        except Exception as e:
            logger.warning("Reconciliation: ledger lookup failed for %s: %r", rec.handle, e)
            report.kept.append({"handle": rec.handle, "reason": "ledger_error"})
            continue

        if dry_run:
            if record_id is None:
                report.purged.append(rec.handle)
            else:
                report.associated.append({"handle": rec.handle, "record_id": record_id})
            continue

        try:
            if record_id is None:
                gateway.purge(rec.handle, reason="orphaned: no committed record")
                report.purged.append(rec.handle)
            else:
                gateway.associate(content_hash, record_id)
                report.associated.append({"handle": rec.handle, "record_id": record_id})
        except HandleConflict:
            report.kept.append({"handle": rec.handle, "reason": "record_handle_occupied"})
        except KeyNotFound:
            # associated or purged concurrently; nothing left to do
            report.kept.append({"handle": rec.handle, "reason": "already_moved"})

    gateway.audit.reconciliation_completed(
        scanned=report.scanned,
        associated=len(report.associated),
        purged=len(report.purged),
        kept=len(report.kept),
        dry_run=dry_run,
    )
    return report
