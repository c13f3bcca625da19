"""
Sync engine: runs the per-object pipeline and produces one SyncResult each.

    build_change_set -> empty      -> Skipped
                     -> no match   -> NoMatch
                     -> preview    -> Preview
                     -> update     -> Success | Error

The engine keeps no state between objects or runs. Batch counts are derived
from the returned results with summarize_results().
"""

import logging
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Optional

from extattr_sync.differ import build_change_set
from extattr_sync.graph_client import RemoteAPIError, RemoteAuthenticationError, RemoteDirectoryClient
from extattr_sync.logging_setup import security_logger
from extattr_sync.matcher import IdentityMatcher
from extattr_sync.models import LocalObject, SyncResult, SyncStatus

logger = logging.getLogger(__name__)


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class SyncEngine:
    """
    Previews or applies extension attribute changes for local objects.

    One remote update call carries the full change set for a device; there is
    no per-slot partial application and no retry at this level.
    """

    def __init__(self, matcher: IdentityMatcher, remote_client: RemoteDirectoryClient, max_workers: int = 1):
        """
        Args:
            matcher: Identity matcher bound to the run's Graph session
            remote_client: Client used for device updates (same session)
            max_workers: Objects processed concurrently by sync_batch
        """
        if max_workers < 1:
            raise SyncError(f"max_workers must be at least 1, got {max_workers}")
        self.matcher = matcher
        self.remote_client = remote_client
        self.max_workers = max_workers

    def sync_one(self, local: LocalObject, selected_slots: Iterable[int], preview: bool) -> SyncResult:
        """
        Sync one local object.

        Args:
            local: Local computer object
            selected_slots: Slots to send
            preview: Report the change without writing it

        Returns:
            Terminal SyncResult for the object
        """
        try:
            return self._sync_one(local, selected_slots, preview)
        except Exception as e:
            logger.error(f"Unexpected error syncing {local.account_name}: {e}", exc_info=True)
            return SyncResult(
                subject_name=local.account_name,
                status=SyncStatus.ERROR,
                detail=f"Unexpected error: {e}",
                distinguished_name=local.distinguished_name
            )

    def _sync_one(self, local: LocalObject, selected_slots: Iterable[int], preview: bool) -> SyncResult:
        change_set = build_change_set(local, selected_slots)
        if change_set.is_empty:
            return SyncResult(
                subject_name=local.account_name,
                status=SyncStatus.SKIPPED,
                detail="No extension attribute values to sync",
                distinguished_name=local.distinguished_name
            )

        try:
            match = self.matcher.find_remote_match(local)
        except RemoteAuthenticationError as e:
            logger.error(f"Cloud session rejected while matching {local.account_name}: {e}")
            return SyncResult(
                subject_name=local.account_name,
                status=SyncStatus.ERROR,
                detail=f"Session rejected: {e}",
                distinguished_name=local.distinguished_name
            )

        if match is None:
            return SyncResult(
                subject_name=local.account_name,
                status=SyncStatus.NO_MATCH,
                detail="No matching device found in the cloud directory",
                distinguished_name=local.distinguished_name
            )

        device = match.device
        changes = change_set.to_remote_attributes()
        summary = change_set.describe()
        target = f"device '{device.display_name}' ({device.id}, matched by {match.tier})"

        if preview:
            logger.info(f"[preview] {local.account_name}: would set {summary} on {target}")
            return SyncResult(
                subject_name=local.account_name,
                status=SyncStatus.PREVIEW,
                detail=f"Would set {summary} on {target}",
                matched_remote_id=device.id,
                distinguished_name=local.distinguished_name,
                changes=changes
            )

        try:
            self.remote_client.update_device(device.id, changes)
        except RemoteAPIError as e:
            logger.error(f"Update failed for {local.account_name} on device {device.id}: {e}")
            security_logger.log_attribute_write('graph', device.id, summary, False)
            return SyncResult(
                subject_name=local.account_name,
                status=SyncStatus.ERROR,
                detail=f"Update failed: {e}",
                matched_remote_id=device.id,
                distinguished_name=local.distinguished_name,
                changes=changes
            )

        security_logger.log_attribute_write('graph', device.id, summary, True)
        logger.info(f"{local.account_name}: set {summary} on {target}")
        return SyncResult(
            subject_name=local.account_name,
            status=SyncStatus.SUCCESS,
            detail=f"Set {summary} on {target}",
            matched_remote_id=device.id,
            distinguished_name=local.distinguished_name,
            changes=changes
        )

    def sync_batch(self, objects: Iterable[LocalObject], selected_slots: Iterable[int], preview: bool,
                   cancel_event: Optional[threading.Event] = None) -> List[SyncResult]:
        """
        Sync every object independently.

        One object's failure never stops the others. If cancel_event is set,
        objects not yet started are left out and the results produced so far
        are returned; objects already in flight finish first. With more than
        one worker the result order is not defined.

        Args:
            objects: Local objects to sync
            selected_slots: Slots to send for every object
            preview: Report changes without writing them
            cancel_event: Optional event that stops the batch early

        Returns:
            One SyncResult per processed object
        """
        objects = list(objects)
        selected_slots = list(selected_slots)
        mode = 'preview' if preview else 'apply'
        logger.info(f"Starting {mode} batch of {len(objects)} objects with {self.max_workers} worker(s)")

        if self.max_workers == 1:
            results = []
            for local in objects:
                if cancel_event is not None and cancel_event.is_set():
                    logger.warning(f"Batch cancelled after {len(results)} of {len(objects)} objects")
                    break
                results.append(self.sync_one(local, selected_slots, preview))
            return results

        def run(local: LocalObject) -> Optional[SyncResult]:
            if cancel_event is not None and cancel_event.is_set():
                return None
            return self.sync_one(local, selected_slots, preview)

        results = []
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [executor.submit(run, local) for local in objects]
            for future in as_completed(futures):
                result = future.result()
                if result is not None:
                    results.append(result)

        if len(results) < len(objects):
            logger.warning(f"Batch cancelled after {len(results)} of {len(objects)} objects")
        return results


def summarize_results(results: Iterable[SyncResult]) -> Dict[str, int]:
    """
    Count results per status.

    Returns:
        Mapping of every status value (e.g. 'Success') to its count, plus 'Total'
    """
    counts = Counter(result.status for result in results)
    summary = {status.value: counts.get(status, 0) for status in SyncStatus}
    summary['Total'] = sum(counts.values())
    return summary
