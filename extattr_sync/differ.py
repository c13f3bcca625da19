"""
Change set construction for extension attribute sync.

Decides which slots are sent for a local object and whether the object has
any attribute data worth syncing at all.
"""

import logging
from typing import Iterable, List

from extattr_sync.models import ALL_SLOTS, ChangeSet, LocalObject, is_valid_slot

logger = logging.getLogger(__name__)


def build_change_set(local: LocalObject, selected_slots: Iterable[int]) -> ChangeSet:
    """
    Build the change set to send for a local object.

    Args:
        local: Local computer object
        selected_slots: Slot indexes chosen by the operator; entries outside
            1..15 are dropped

    Returns:
        ChangeSet mapping every valid selected slot to its local value, with
        unset and empty slots turned into clear instructions (None). The
        change set reports is_empty when no selected slot holds a value.
    """
    values = {}
    for slot in selected_slots:
        if not is_valid_slot(slot):
            continue
        values[slot] = local.slot(slot) or None

    change_set = ChangeSet(values)
    if change_set.is_empty:
        logger.debug(f"No attribute data in selected slots for {local.account_name}")
    return change_set


def parse_slot_selection(text: str) -> List[int]:
    """
    Parse an operator slot selection such as "3", "1,3,5-7" or "all".

    Args:
        text: Comma separated slot numbers and inclusive ranges

    Returns:
        Sorted list of distinct slot indexes

    Raises:
        ValueError: If an entry is not a number, a range, or is outside 1..15
    """
    text = (text or '').strip()
    if not text or text.lower() == 'all':
        return list(ALL_SLOTS)

    slots = set()
    for part in text.split(','):
        part = part.strip()
        if not part:
            continue
        if '-' in part:
            start, _, end = part.partition('-')
            try:
                first, last = int(start), int(end)
            except ValueError:
                raise ValueError(f"Invalid slot range: {part}")
            if first > last:
                raise ValueError(f"Invalid slot range: {part}")
            candidates = range(first, last + 1)
        else:
            try:
                candidates = [int(part)]
            except ValueError:
                raise ValueError(f"Invalid slot number: {part}")

        for slot in candidates:
            if not is_valid_slot(slot):
                raise ValueError(f"Slot {slot} is outside the range 1-15")
            slots.add(slot)

    return sorted(slots)
