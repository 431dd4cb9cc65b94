"""
Locker inventory: remaining capacity per locker assignment and locker
occupancy per location.

``remaining_capacity`` and ``reserve_release`` are pure; the caller persists
the returned assignment.
"""

from dataclasses import replace

from .exceptions import InsufficientInventoryError, NotFoundError, ValidationError
from .ledger import LockerAssignment
from .models import Entry, EntryStatus

RELEASE_ID_PREFIX = "pot"


def find_assignment(entry: Entry, locker_number: int) -> LockerAssignment:
    for assignment in entry.lockers:
        if assignment.locker_number == locker_number:
            return assignment
    raise NotFoundError(
        f"Locker {locker_number} is not assigned to entry {entry.pk}",
        locker_number=locker_number,
    )


def remaining_capacity(entry: Entry, locker_number: int) -> int:
    return find_assignment(entry, locker_number).remaining_pots


def reserve_release(entry: Entry, locker_number: int, count: int) -> LockerAssignment:
    if count < 1:
        raise ValidationError("Pots to release must be at least 1")
    assignment = find_assignment(entry, locker_number)
    remaining = assignment.remaining_pots
    if count > remaining:
        raise InsufficientInventoryError(
            f"Only {remaining} pots remain in locker {locker_number}",
            remaining=remaining,
        )
    # Release ids are numbered after the pots already taken from the locker,
    # so they stay unique within the assignment.
    start = len(assignment.dispatched_pots) + 1
    new_ids = tuple(f"{RELEASE_ID_PREFIX}-{number}" for number in range(start, start + count))
    return replace(assignment, dispatched_pots=assignment.dispatched_pots + new_ids)


def replace_assignment(entry: Entry, updated: LockerAssignment) -> list[dict]:
    """Locker details of ``entry`` with ``updated`` swapped in, order preserved."""
    return [
        updated.to_dict() if assignment.locker_number == updated.locker_number else assignment.to_dict()
        for assignment in entry.lockers
    ]


def occupying_entry(location_id, locker_number: int, exclude_entry_id=None) -> Entry | None:
    entries = Entry.objects.filter(location_id=location_id, status=EntryStatus.ACTIVE)
    if exclude_entry_id is not None:
        entries = entries.exclude(pk=exclude_entry_id)
    for entry in entries.only("id", "locker_details"):
        if any(assignment.locker_number == locker_number for assignment in entry.lockers):
            return entry
    return None


def is_locker_available(location_id, locker_number: int) -> bool:
    return occupying_entry(location_id, locker_number) is None
