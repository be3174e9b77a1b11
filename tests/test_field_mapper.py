import logging
import unittest

from bugsync.models.provider_config import FieldMapping
from bugsync.services.field_mapper import Direction, FieldMapper, Kind

logging.disable(logging.CRITICAL)


class TranslateToExternalTests(unittest.TestCase):
    def setUp(self):
        self.mapping = FieldMapping(
            severity_to_external={"HIGH": "2", "MEDIUM": "3"},
            status_to_external={"OPEN": "list1", "RESOLVED": "list2"},
        )

    def test_mapped_value(self):
        self.assertEqual(
            FieldMapper.translate(Direction.TO_EXTERNAL, Kind.SEVERITY, self.mapping, "HIGH"), "2"
        )

    def test_unmapped_severity_falls_back_to_medium_value(self):
        self.assertEqual(
            FieldMapper.translate(Direction.TO_EXTERNAL, Kind.SEVERITY, self.mapping, "CRITICAL"), "3"
        )

    def test_unmapped_status_falls_back_to_open_value(self):
        self.assertEqual(
            FieldMapper.translate(Direction.TO_EXTERNAL, Kind.STATUS, self.mapping, "IN_PROGRESS"), "list1"
        )

    def test_default_not_mapped_returns_none(self):
        mapping = FieldMapping(severity_to_external={"HIGH": "2"})
        self.assertIsNone(FieldMapper.translate(Direction.TO_EXTERNAL, Kind.SEVERITY, mapping, "LOW"))

    def test_empty_mapping_never_raises(self):
        mapping = FieldMapping()
        for value in (None, "", "CRITICAL", "nonsense"):
            self.assertIsNone(FieldMapper.translate("to_external", "severity", mapping, value))

    def test_accepts_enum_values(self):
        from bugsync.models.enums import BugSeverity

        self.assertEqual(
            FieldMapper.translate(Direction.TO_EXTERNAL, Kind.SEVERITY, self.mapping, BugSeverity.HIGH), "2"
        )


class TranslateFromExternalTests(unittest.TestCase):
    def test_explicit_reverse_table_wins(self):
        mapping = FieldMapping(
            severity_to_external={"HIGH": "2"},
            severity_from_external={"1": "CRITICAL", "2": "HIGH"},
        )
        self.assertEqual(
            FieldMapper.translate(Direction.FROM_EXTERNAL, Kind.SEVERITY, mapping, "1"), "CRITICAL"
        )

    def test_reverse_derived_from_forward_table(self):
        mapping = FieldMapping(status_to_external={"OPEN": "list1", "RESOLVED": "list2"})
        self.assertEqual(
            FieldMapper.translate(Direction.FROM_EXTERNAL, Kind.STATUS, mapping, "list2"), "RESOLVED"
        )

    def test_derived_reverse_keeps_first_internal_value(self):
        mapping = FieldMapping(status_to_external={"RESOLVED": "done", "CLOSED": "done"})
        self.assertEqual(mapping.reverse("status"), {"done": "RESOLVED"})

    def test_miss_returns_internal_defaults(self):
        mapping = FieldMapping()
        self.assertEqual(FieldMapper.translate(Direction.FROM_EXTERNAL, Kind.STATUS, mapping, "weird"), "OPEN")
        self.assertEqual(FieldMapper.translate(Direction.FROM_EXTERNAL, Kind.SEVERITY, mapping, None), "MEDIUM")

    def test_miss_logs_warning(self):
        logging.disable(logging.NOTSET)
        try:
            with self.assertLogs("bugsync.services.field_mapper", level="WARNING"):
                FieldMapper.translate(Direction.FROM_EXTERNAL, Kind.SEVERITY, FieldMapping(), "Blocker")
        finally:
            logging.disable(logging.CRITICAL)


class LookupTests(unittest.TestCase):
    def test_lookup_has_no_default(self):
        mapping = FieldMapping(status_to_external={"OPEN": "list1"})
        self.assertEqual(FieldMapper.lookup(Direction.TO_EXTERNAL, Kind.STATUS, mapping, "OPEN"), "list1")
        self.assertIsNone(FieldMapper.lookup(Direction.TO_EXTERNAL, Kind.STATUS, mapping, "CLOSED"))
        self.assertIsNone(FieldMapper.lookup(Direction.TO_EXTERNAL, Kind.STATUS, mapping, None))
