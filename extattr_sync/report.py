"""
Delimited report of a sync run, one row per SyncResult.
"""

import csv
import logging
from typing import Iterable

from extattr_sync.models import SyncResult

logger = logging.getLogger(__name__)

REPORT_COLUMNS = ['Computer', 'Status', 'Detail', 'DeviceId', 'DistinguishedName', 'Changes']


def _format_changes(result: SyncResult) -> str:
    return '; '.join(f"{name}={value if value is not None else '<clear>'}"
                     for name, value in result.changes.items())


def write_report(results: Iterable[SyncResult], path: str, delimiter: str = ',') -> int:
    """
    Write sync results to a delimited text file.

    Args:
        results: Results of a sync run
        path: Output file path (overwritten)
        delimiter: Field delimiter

    Returns:
        Number of rows written
    """
    rows = 0
    with open(path, 'w', newline='', encoding='utf-8') as f:
        writer = csv.writer(f, delimiter=delimiter)
        writer.writerow(REPORT_COLUMNS)
        for result in results:
            writer.writerow([
                result.subject_name,
                result.status.value,
                result.detail,
                result.matched_remote_id or '',
                result.distinguished_name or '',
                _format_changes(result)
            ])
            rows += 1

    logger.info(f"Wrote {rows} results to report {path}")
    return rows
