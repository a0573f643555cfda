"""
Secret Santa Assignment Module - Participant Filtering and Cycle Algorithm

RESPONSIBILITIES:
- Participant filtering (eligible rows only, exact duplicates removed)
- Assignment algorithm (one random cycle through everybody)
- Assignment validation

ISOLATION:
- Pure algorithm logic (no storage or HTTP dependencies)
- Works on list positions, never on names
- Uses secrets.SystemRandom for the shuffle
"""

import secrets
from typing import Dict, Iterable, List, Mapping, Optional

from .errors import InsufficientParticipants


def prepare_participants(rows: Iterable[Mapping]) -> List[dict]:
    """
    Filter raw participant rows down to the eligible list the engine accepts.

    RULES:
    - name and email are stripped
    - rows missing either one are dropped
    - a row with the same name and email (email compared case-insensitively)
      as an earlier row is dropped
    - original order is kept

    Returns:
        List of {"name", "email"} dicts
    """
    eligible = []
    seen = set()

    for row in rows:
        if not isinstance(row, Mapping):
            continue
        name = str(row.get("name") or "").strip()
        email = str(row.get("email") or "").strip()
        if not name or not email:
            continue

        key = (name, email.lower())
        if key in seen:
            continue
        seen.add(key)
        eligible.append({"name": name, "email": email})

    return eligible


def cycle_length(assignments: Mapping[int, int], start: int = 0) -> int:
    """Number of steps to get from start back to start (0 if the chain breaks)"""
    steps = 0
    current = start
    while True:
        if current not in assignments:
            return 0
        current = assignments[current]
        steps += 1
        if current == start:
            return steps
        if steps > len(assignments):
            return 0


def validate_assignment_integrity(assignments: Mapping[int, int], count: int) -> None:
    """
    Ensure an assignment is usable before anything gets persisted.

    CHECKS:
    1. Every index 0..count-1 is a giver exactly once
    2. Every index 0..count-1 is a receiver exactly once
    3. No one gives to themselves
    4. Everybody sits on one cycle of length count

    Raises:
        ValueError: If any check fails
    """
    if not assignments:
        raise ValueError("No assignments provided")

    expected = set(range(count))

    givers = set(assignments.keys())
    if givers != expected:
        raise ValueError(f"Giver mismatch: missing {expected - givers}, extra {givers - expected}")

    receivers = list(assignments.values())
    if len(receivers) != len(set(receivers)):
        raise ValueError("Duplicate receivers detected")
    if set(receivers) != expected:
        raise ValueError(f"Receiver mismatch: missing {expected - set(receivers)}, extra {set(receivers) - expected}")

    for giver, receiver in assignments.items():
        if giver == receiver:
            raise ValueError(f"Self-assignment detected: {giver} → {receiver}")

    if cycle_length(assignments, 0) != count:
        raise ValueError("Assignments split into more than one cycle")


def make_assignments(count: int, rng: Optional[secrets.SystemRandom] = None) -> Dict[int, int]:
    """
    Create Secret Santa assignments for participants 0..count-1.

    ALGORITHM:
    1. Shuffle the index list
    2. Each shuffled index gives to the next one, the last gives to the first

    The result is a uniformly random permutation made of exactly one cycle,
    so no one draws themselves and for 3+ people no two people draw each
    other. With 2 people the only possible result is the swap.

    Args:
        count: Number of eligible participants
        rng: Random source with a shuffle() method (defaults to secrets.SystemRandom)

    Returns:
        Dict mapping giver index to receiver index

    Raises:
        InsufficientParticipants: If count < 2
    """
    if count < 2:
        raise InsufficientParticipants(count)

    rng = rng or secrets.SystemRandom()

    order = list(range(count))
    rng.shuffle(order)

    result = {
        giver: order[(position + 1) % count]
        for position, giver in enumerate(order)
    }

    validate_assignment_integrity(result, count)
    return result
