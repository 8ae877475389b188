"""
Reconciler - Removes blobs whose image record no longer exists.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .blob_ref import Tier
from .errors import NotFoundError, ProcessingError
from .state_store import StateStore
from .storage_router import StorageRouter


@dataclass
class ReconcileStats:
    """
    Results of one reconciliation sweep.

    Attributes:
        scanned: Blobs listed
        orphaned: Blobs without an image record
        deleted: Orphans removed
        skipped: Keys not laid out by the pipeline
        errors: Orphans that could not be removed
        error_details: List of error messages
    """
    scanned: int = 0
    orphaned: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: int = 0
    error_details: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'scanned': self.scanned,
            'orphaned': self.orphaned,
            'deleted': self.deleted,
            'skipped': self.skipped,
            'errors': self.errors,
        }


class Reconciler:
    """
    Sweeps every tier for blobs left behind by deletion races.

    A worker that checked the record just before it was deleted may still
    write one variant; this sweep is what eventually removes it.
    """

    def __init__(
        self,
        store: StateStore,
        router: StorageRouter,
        dry_run: bool = False,
        logger: Optional[logging.Logger] = None
    ):
        self.store = store
        self.router = router
        self.dry_run = dry_run
        self.logger = logger or logging.getLogger(__name__)

    def reconcile(self) -> ReconcileStats:
        stats = ReconcileStats()
        known: Dict[str, bool] = {}
        mode_str = " [DRY RUN]" if self.dry_run else ""

        for tier in Tier:
            for ref in self.router.list_refs(tier):
                stats.scanned += 1
                parsed = self.router.parse_key(ref.key)
                if parsed is None:
                    stats.skipped += 1
                    continue

                _, image_id, _ = parsed
                if image_id not in known:
                    known[image_id] = self.store.exists(image_id)
                if known[image_id]:
                    continue

                stats.orphaned += 1
                if self.dry_run:
                    self.logger.info(f"[DRY RUN] Would delete orphan {ref.tier.value}:{ref.key}")
                    continue
                try:
                    self.router.delete(ref)
                    stats.deleted += 1
                    self.logger.info(f"Deleted orphan {ref.tier.value}:{ref.key}")
                except NotFoundError:
                    continue
                except ProcessingError as e:
                    stats.errors += 1
                    stats.error_details.append(f"{ref.key}: {e}")
                    self.logger.error(f"Could not delete orphan {ref.key}: {e}")

        self.logger.info(
            f"Reconcile complete{mode_str}: {stats.scanned} blobs scanned, "
            f"{stats.orphaned} orphaned, {stats.deleted} deleted, {stats.errors} errors"
        )
        return stats
