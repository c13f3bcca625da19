"""
Record types shared by the directory reader, matcher and sync engine.

All records are immutable. Local objects are read fresh from the directory on
every enumeration and remote devices are fetched per sync attempt; nothing
here is cached or persisted between runs.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

SLOT_MIN = 1
SLOT_MAX = 15
ALL_SLOTS = tuple(range(SLOT_MIN, SLOT_MAX + 1))


def slot_attribute_name(slot: int) -> str:
    """Return the directory attribute name for a slot index (3 -> 'extensionAttribute3')."""
    return f"extensionAttribute{slot}"


def is_valid_slot(slot) -> bool:
    """True if ``slot`` is an integer in the 1..15 range."""
    return isinstance(slot, int) and not isinstance(slot, bool) and SLOT_MIN <= slot <= SLOT_MAX


def _freeze_slots(values: Optional[Mapping[int, Optional[str]]]) -> Mapping[int, Optional[str]]:
    values = values or {}
    return MappingProxyType({slot: values.get(slot) for slot in ALL_SLOTS})


@dataclass(frozen=True)
class LocalObject:
    """One on-premises computer account and its 15 extension attribute slots."""

    distinguished_name: str
    name: str
    account_name: str
    security_identifier: Optional[str] = None
    attribute_slots: Mapping[int, Optional[str]] = field(default_factory=dict)

    def __post_init__(self):
        # Always exactly slots 1..15; None means the attribute is not set
        object.__setattr__(self, 'attribute_slots', _freeze_slots(self.attribute_slots))

    def slot(self, index: int) -> Optional[str]:
        return self.attribute_slots.get(index)


@dataclass(frozen=True)
class RemoteDevice:
    """A device object in the cloud directory."""

    id: str
    display_name: str
    security_identifier: Optional[str] = None


@dataclass(frozen=True)
class Enumeration:
    """
    Result of reading one container: the objects found or a diagnostic.

    skipped lists entries that were returned but could not be read, as
    "DN: reason".
    """

    container: str
    objects: List[LocalObject] = field(default_factory=list)
    error: Optional[str] = None
    skipped: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ChangeSet:
    """
    Attribute slots selected for one sync attempt and the value to send for each.

    A value of None is a clear instruction. The change set is empty when no
    slot carries a non-empty value; an empty change set is never sent.
    """

    values: Mapping[int, Optional[str]] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, 'values', MappingProxyType(dict(sorted(self.values.items()))))

    @property
    def is_empty(self) -> bool:
        return not any(self.values.values())

    @property
    def slots(self) -> List[int]:
        return list(self.values)

    def to_remote_attributes(self) -> Dict[str, Optional[str]]:
        """Render the change set as the remote directory's extensionAttributes mapping."""
        return {slot_attribute_name(slot): value for slot, value in self.values.items()}

    def describe(self) -> str:
        """Human-readable summary, e.g. "extensionAttribute3='Finance', clear extensionAttribute4"."""
        parts = []
        for slot, value in self.values.items():
            if value:
                parts.append(f"{slot_attribute_name(slot)}='{value}'")
            else:
                parts.append(f"clear {slot_attribute_name(slot)}")
        return ', '.join(parts)


class SyncStatus(Enum):
    SKIPPED = 'Skipped'
    NO_MATCH = 'NoMatch'
    PREVIEW = 'Preview'
    SUCCESS = 'Success'
    ERROR = 'Error'


@dataclass(frozen=True)
class SyncResult:
    """Terminal outcome of syncing one local object."""

    subject_name: str
    status: SyncStatus
    detail: str
    matched_remote_id: Optional[str] = None
    distinguished_name: Optional[str] = None
    changes: Mapping[str, Optional[str]] = field(default_factory=dict)

    def __post_init__(self):
        if self.status is SyncStatus.NO_MATCH and self.matched_remote_id is not None:
            raise ValueError("A NoMatch result cannot carry a matched remote id")
        if self.status in (SyncStatus.SUCCESS, SyncStatus.PREVIEW) and not self.matched_remote_id:
            raise ValueError(f"A {self.status.value} result requires a matched remote id")
        object.__setattr__(self, 'changes', MappingProxyType(dict(self.changes)))
