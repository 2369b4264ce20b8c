import unittest
from datetime import datetime, timezone
from normalize.fields import build_snapshot
from normalize.models import ABSENT, Identity
from normalize.util import (
    changed_fields,
    chunked,
    clean_html,
    extract_email,
    identity_value_to_text,
    is_match,
    normalize_identity,
    parse_person,
    parse_timestamp,
    strip_email,
    to_float,
)


class TestIdentity(unittest.TestCase):
    def test_parse_person_with_email(self):
        p = parse_person(' Jane Doe | jane@corp.com ')
        self.assertEqual(p, Identity('Jane Doe', 'jane@corp.com'))

    def test_parse_person_name_only(self):
        self.assertEqual(parse_person('Jane Doe'), Identity('Jane Doe', ''))

    def test_normalize_identity_from_provider_dict(self):
        raw = {'displayName': 'Jane Doe', 'uniqueName': 'jane@corp.com'}
        self.assertEqual(normalize_identity(raw), Identity('Jane Doe', 'jane@corp.com'))

    def test_normalize_identity_rejects_other_types(self):
        with self.assertRaises(ValueError):
            normalize_identity(42)

    def test_is_match_or_semantics(self):
        jane = Identity('Jane Doe', 'jane@corp.com')
        self.assertTrue(is_match(jane, 'JANE DOE', ''))
        self.assertTrue(is_match(jane, 'someone else', 'Jane@Corp.com'))
        self.assertFalse(is_match(jane, '', ''))
        self.assertFalse(is_match(Identity('', ''), 'anything', 'anything'))

    def test_overlapping_names_still_match(self):
        # substring matching is deliberately loose
        self.assertTrue(is_match(Identity('Ann', ''), 'Joanne Smith', ''))


class TestActorStrings(unittest.TestCase):
    def test_identity_object_to_text(self):
        self.assertEqual(identity_value_to_text({'displayName': 'Jane', 'uniqueName': 'j@c.com'}), 'Jane <j@c.com>')
        self.assertEqual(identity_value_to_text(None), '')
        self.assertEqual(identity_value_to_text(ABSENT), '')

    def test_extract_and_strip_email(self):
        self.assertEqual(extract_email('Jane Doe <Jane@Corp.com>'), 'jane@corp.com')
        self.assertEqual(extract_email('jane@corp.com'), 'jane@corp.com')
        self.assertEqual(extract_email('Jane Doe'), '')
        self.assertEqual(strip_email('Jane Doe <jane@corp.com>'), 'Jane Doe')


class TestTimestamps(unittest.TestCase):
    def test_zulu_and_long_fraction(self):
        dt = parse_timestamp('2025-03-01T10:20:30.1234567Z')
        self.assertEqual(dt, datetime(2025, 3, 1, 10, 20, 30, 123456, tzinfo=timezone.utc))

    def test_offset_converted_to_utc(self):
        dt = parse_timestamp('2025-03-01T02:00:00-05:00')
        self.assertEqual(dt.hour, 7)
        self.assertEqual(dt.tzinfo, timezone.utc)

    def test_naive_is_utc(self):
        self.assertEqual(parse_timestamp('2025-03-01').tzinfo, timezone.utc)

    def test_garbage_is_none(self):
        self.assertIsNone(parse_timestamp('soon'))
        self.assertIsNone(parse_timestamp(''))
        self.assertIsNone(parse_timestamp(None))


class TestFieldHelpers(unittest.TestCase):
    def test_changed_fields_union_and_ignore(self):
        old = {'a': 1, 'b': {'x': 1, 'y': 2}, 'c': 'same'}
        new = {'b': {'y': 2, 'x': 1}, 'c': 'same', 'd': None}
        self.assertEqual(changed_fields(old, new), ['a', 'd'])
        self.assertEqual(changed_fields(old, new, ignore=['a']), ['d'])

    def test_clean_html(self):
        self.assertEqual(clean_html('<div>Hello&nbsp;<b>world</b>\n\n  again</div>'), 'Hello world again')
        self.assertEqual(clean_html(None), '')

    def test_to_float(self):
        self.assertEqual(to_float('2.5'), 2.5)
        self.assertIsNone(to_float('n/a'))
        self.assertIsNone(to_float(True))
        self.assertIsNone(to_float(ABSENT))

    def test_chunked(self):
        self.assertEqual(chunked([1, 2, 3, 4, 5], 2), [[1, 2], [3, 4], [5]])
        with self.assertRaises(ValueError):
            chunked([1], 0)

    def test_build_snapshot_falls_back_for_missing_keys(self):
        snap = build_snapshot({'System.State': 'Active'}, {'System.State': 'Closed', 'System.Title': 'T'})
        self.assertEqual(snap.state, 'Active')
        self.assertEqual(snap.title, 'T')

    def test_build_snapshot_flattens_assignee(self):
        snap = build_snapshot({'System.AssignedTo': {'displayName': 'Jane', 'uniqueName': 'j@c.com'}})
        self.assertEqual(snap.assigned_to, 'Jane <j@c.com>')


if __name__ == '__main__':
    unittest.main()
