"""
Assignment Engine Test Suite

Tests the single-cycle assignment algorithm:
- Small groups (2-5 people)
- Large groups (50+ people)
- Distribution over the two possible 3-cycles
- Participant filtering
- Integrity validation

Run: python -m pytest tests/test_secret_santa_assignments.py -v
"""

import random
import sys
from collections import Counter
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from santa.errors import InsufficientParticipants
from santa.secret_santa_assignments import (
    cycle_length, make_assignments, prepare_participants, validate_assignment_integrity
)


def _assert_derangement(assignments, n):
    assert sorted(assignments.keys()) == list(range(n))
    assert sorted(assignments.values()) == list(range(n))
    assert all(giver != receiver for giver, receiver in assignments.items())


class TestSmallGroups:
    """Test the engine with small groups"""

    def test_two_people_swap(self):
        """2 people can only swap"""
        for _ in range(20):
            assert make_assignments(2) == {0: 1, 1: 0}

    def test_three_people_single_cycle(self):
        """3 people always form one 3-cycle"""
        for _ in range(50):
            assignments = make_assignments(3)
            _assert_derangement(assignments, 3)
            assert cycle_length(assignments, 0) == 3

    def test_no_mutual_pairs_above_two(self):
        """With 3+ people nobody gives to the person giving to them"""
        for n in (3, 4, 5):
            for _ in range(50):
                assignments = make_assignments(n)
                for giver, receiver in assignments.items():
                    assert assignments[receiver] != giver

    def test_every_size_is_a_derangement(self):
        """Bijection without fixed points for n = 2..30"""
        for n in range(2, 31):
            assignments = make_assignments(n)
            _assert_derangement(assignments, n)
            assert cycle_length(assignments, 0) == n


class TestLargeGroups:
    """Test with large participant counts"""

    def test_fifty_people(self):
        assignments = make_assignments(50)
        _assert_derangement(assignments, 50)
        assert cycle_length(assignments, 17) == 50

    def test_five_hundred_people(self):
        assignments = make_assignments(500)
        _assert_derangement(assignments, 500)
        assert cycle_length(assignments, 0) == 500


class TestEdgeCases:
    """Test edge cases and error handling"""

    def test_single_participant(self):
        with pytest.raises(InsufficientParticipants):
            make_assignments(1)

    def test_empty_participants(self):
        with pytest.raises(InsufficientParticipants) as exc_info:
            make_assignments(0)
        assert exc_info.value.count == 0

    def test_insufficient_is_a_value_error(self):
        with pytest.raises(ValueError):
            make_assignments(1)

    def test_custom_random_source(self):
        """A seeded source gives reproducible results"""
        first = make_assignments(10, rng=random.Random(7))
        second = make_assignments(10, rng=random.Random(7))
        assert first == second


class TestDistribution:
    """[A, B, C] must produce both 3-cycles, roughly equally often"""

    def test_three_cycles_roughly_uniform(self):
        forward = {0: 1, 1: 2, 2: 0}   # A→B, B→C, C→A
        backward = {0: 2, 2: 1, 1: 0}  # A→C, C→B, B→A

        trials = 2000
        counts = Counter()
        for _ in range(trials):
            assignments = make_assignments(3)
            assert assignments in (forward, backward)
            counts["forward" if assignments == forward else "backward"] += 1

        # Expected 1000 each, standard deviation ~22
        assert 850 < counts["forward"] < 1150
        assert 850 < counts["backward"] < 1150

    def test_four_people_all_six_cycles_appear(self):
        """There are (4-1)! = 6 distinct 4-cycles; all should show up"""
        seen = set()
        for _ in range(600):
            seen.add(tuple(sorted(make_assignments(4).items())))
        assert len(seen) == 6


class TestPrepareParticipants:
    """Test the caller-side participant filter"""

    def test_drops_incomplete_rows(self):
        rows = [
            {"name": "Alice", "email": "alice@example.com"},
            {"name": "", "email": "ghost@example.com"},
            {"name": "Bob", "email": "   "},
            {"name": "Carol"},
            {"name": "Dave", "email": "dave@example.com"},
        ]
        assert prepare_participants(rows) == [
            {"name": "Alice", "email": "alice@example.com"},
            {"name": "Dave", "email": "dave@example.com"},
        ]

    def test_strips_whitespace(self):
        rows = [{"name": "  Alice ", "email": " alice@example.com "}]
        assert prepare_participants(rows) == [{"name": "Alice", "email": "alice@example.com"}]

    def test_removes_exact_duplicates_keeps_order(self):
        rows = [
            {"name": "Bob", "email": "bob@example.com"},
            {"name": "Alice", "email": "alice@example.com"},
            {"name": "Bob", "email": "BOB@example.com"},
        ]
        result = prepare_participants(rows)
        assert [p["name"] for p in result] == ["Bob", "Alice"]

    def test_same_name_different_email_kept(self):
        """Names may collide - the engine works by position"""
        rows = [
            {"name": "Sam", "email": "sam1@example.com"},
            {"name": "Sam", "email": "sam2@example.com"},
        ]
        assert len(prepare_participants(rows)) == 2

    def test_ignores_non_mapping_rows(self):
        assert prepare_participants(["Alice", None, 3]) == []


class TestValidation:
    """Test the integrity check directly"""

    def test_accepts_single_cycle(self):
        validate_assignment_integrity({0: 1, 1: 2, 2: 0}, 3)

    def test_rejects_self_assignment(self):
        with pytest.raises(ValueError):
            validate_assignment_integrity({0: 0, 1: 2, 2: 1}, 3)

    def test_rejects_duplicate_receiver(self):
        with pytest.raises(ValueError):
            validate_assignment_integrity({0: 1, 1: 0, 2: 0}, 3)

    def test_rejects_two_sub_cycles(self):
        with pytest.raises(ValueError):
            validate_assignment_integrity({0: 1, 1: 0, 2: 3, 3: 2}, 4)

    def test_rejects_missing_giver(self):
        with pytest.raises(ValueError):
            validate_assignment_integrity({0: 1, 1: 0}, 3)

    def test_rejects_empty(self):
        with pytest.raises(ValueError):
            validate_assignment_integrity({}, 2)

    def test_cycle_length_broken_chain(self):
        assert cycle_length({0: 1}, 0) == 0
