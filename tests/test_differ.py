#!/usr/bin/env python3
"""
Unit tests for change set construction and the record types it relies on.
"""

import os
import sys
import unittest

# Add parent directory to path to import extattr_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from extattr_sync.differ import build_change_set, parse_slot_selection
from extattr_sync.models import ALL_SLOTS, ChangeSet, SyncResult, SyncStatus
from tests.helpers import make_local


class TestBuildChangeSet(unittest.TestCase):
    """Test cases for build_change_set."""

    def test_all_slots_unset_is_empty_for_any_selection(self):
        """An object with no attribute data never produces a change set."""
        local = make_local()
        for selection in ([], [1], [3, 7], list(ALL_SLOTS), [0, 16, 99]):
            change_set = build_change_set(local, selection)
            self.assertTrue(change_set.is_empty, selection)

    def test_selected_value_is_copied(self):
        local = make_local(slots={3: 'Finance'})
        change_set = build_change_set(local, {3})

        self.assertFalse(change_set.is_empty)
        self.assertEqual(dict(change_set.values), {3: 'Finance'})
        self.assertEqual(change_set.to_remote_attributes(), {'extensionAttribute3': 'Finance'})

    def test_unset_selected_slots_become_clear_instructions(self):
        local = make_local(slots={3: 'Finance'})
        change_set = build_change_set(local, [3, 4, 5])

        self.assertEqual(change_set.to_remote_attributes(), {
            'extensionAttribute3': 'Finance',
            'extensionAttribute4': None,
            'extensionAttribute5': None
        })

    def test_explicit_empty_string_is_sent_as_clear(self):
        local = make_local(slots={3: 'Finance', 4: ''})
        change_set = build_change_set(local, [3, 4])

        self.assertIsNone(change_set.values[4])

    def test_only_empty_strings_selected_is_empty(self):
        """Empty strings do not count as values worth syncing."""
        local = make_local(slots={2: '', 3: 'Finance'})
        self.assertTrue(build_change_set(local, [2]).is_empty)

    def test_out_of_range_slots_are_dropped(self):
        local = make_local(slots={1: 'a', 15: 'b'})
        change_set = build_change_set(local, [0, 1, 15, 16, -3, '2', True])

        self.assertEqual(change_set.slots, [1, 15])

    def test_unselected_values_are_ignored(self):
        """A value outside the selection does not make the change set non-empty."""
        local = make_local(slots={5: 'Lab-A'})
        self.assertTrue(build_change_set(local, [1, 2]).is_empty)

    def test_describe(self):
        change_set = ChangeSet({4: None, 3: 'Finance'})
        self.assertEqual(change_set.describe(), "extensionAttribute3='Finance', clear extensionAttribute4")


class TestParseSlotSelection(unittest.TestCase):
    """Test cases for operator slot selection parsing."""

    def test_all_and_blank(self):
        self.assertEqual(parse_slot_selection('all'), list(ALL_SLOTS))
        self.assertEqual(parse_slot_selection('ALL'), list(ALL_SLOTS))
        self.assertEqual(parse_slot_selection(''), list(ALL_SLOTS))

    def test_numbers_and_ranges(self):
        self.assertEqual(parse_slot_selection('3'), [3])
        self.assertEqual(parse_slot_selection('5-7, 1,3,3'), [1, 3, 5, 6, 7])

    def test_invalid_input(self):
        for text in ('0', '16', 'abc', '7-5', '1-20', 'x-3'):
            with self.assertRaises(ValueError, msg=text):
                parse_slot_selection(text)


class TestRecords(unittest.TestCase):
    """Test cases for record invariants."""

    def test_local_object_always_has_fifteen_slots(self):
        local = make_local(slots={3: 'Finance'})

        self.assertEqual(sorted(local.attribute_slots), list(ALL_SLOTS))
        self.assertEqual(local.slot(3), 'Finance')
        self.assertIsNone(local.slot(4))

    def test_local_object_is_immutable(self):
        local = make_local(slots={3: 'Finance'})
        with self.assertRaises(Exception):
            local.account_name = 'OTHER$'
        with self.assertRaises(TypeError):
            local.attribute_slots[3] = 'HR'

    def test_no_match_cannot_carry_remote_id(self):
        with self.assertRaises(ValueError):
            SyncResult('WKS01$', SyncStatus.NO_MATCH, 'none', matched_remote_id='dev-1')

    def test_success_and_preview_require_remote_id(self):
        for status in (SyncStatus.SUCCESS, SyncStatus.PREVIEW):
            with self.assertRaises(ValueError):
                SyncResult('WKS01$', status, 'done')

    def test_error_may_omit_remote_id(self):
        result = SyncResult('WKS01$', SyncStatus.ERROR, 'boom')
        self.assertIsNone(result.matched_remote_id)


if __name__ == '__main__':
    unittest.main()
