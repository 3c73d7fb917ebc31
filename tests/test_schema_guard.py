from __future__ import annotations

import unittest
from unittest.mock import patch

from attendance_integrity.services.schema_guard import (
    EXPECTED_ALEMBIC_HEAD,
    REQUIRED_TABLE_COLUMNS,
    verify_runtime_schema,
)


class _FakeResult:
    def __init__(self, value):
        self._value = value

    def scalar(self):  # type: ignore[no-untyped-def]
        return self._value


class _FakeConnection:
    def __init__(self, version_value):
        self._version_value = version_value

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def execute(self, _statement):  # type: ignore[no-untyped-def]
        return _FakeResult(self._version_value)


class _FakeEngine:
    def __init__(self, version_value):
        self._version_value = version_value

    def connect(self):  # type: ignore[no-untyped-def]
        return _FakeConnection(self._version_value)


class _FakeInspector:
    def __init__(self, *, columns_by_table: dict[str, set[str]], enums: list[dict[str, object]]):
        self._columns_by_table = columns_by_table
        self._enums = enums

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        columns = self._columns_by_table[table_name]
        return [{"name": item} for item in columns]

    def get_enums(self):  # type: ignore[no-untyped-def]
        return self._enums


class _InspectorWithoutEnums:
    def __init__(self, columns_by_table: dict[str, set[str]]):
        self._columns_by_table = columns_by_table

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        return [{"name": item} for item in self._columns_by_table[table_name]]


def _complete_columns() -> dict[str, set[str]]:
    return {table: set(columns) for table, columns in REQUIRED_TABLE_COLUMNS.items()}


def _complete_enums() -> list[dict[str, object]]:
    return [
        {"name": "attendance_event_status", "labels": ["ACCEPTED", "PENDING_REVIEW", "REJECTED"]},
        {"name": "anomaly_status", "labels": ["PENDING", "RESOLVED", "FALSE_POSITIVE", "IGNORED"]},
        {
            "name": "anomaly_kind",
            "labels": [
                "FACE_VERIFICATION_FAIL",
                "UNUSUAL_HOURS",
                "DUPLICATE_EVENT",
                "MISSING_CHECKOUT",
                "DEVICE_CHURN",
            ],
        },
    ]


class SchemaGuardTests(unittest.TestCase):
    def test_verify_runtime_schema_ok_when_required_columns_exist(self) -> None:
        fake_inspector = _FakeInspector(columns_by_table=_complete_columns(), enums=_complete_enums())
        fake_engine = _FakeEngine(EXPECTED_ALEMBIC_HEAD)

        with patch("attendance_integrity.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.warnings, [])
        self.assertEqual(result.to_dict()["issue_count"], 0)

    def test_verify_runtime_schema_reports_missing_columns(self) -> None:
        columns = _complete_columns()
        columns["anomalies"] = {"id", "kind", "severity"}
        columns["attendance_events"] = columns["attendance_events"] - {"verification_score"}
        enums = _complete_enums()
        enums[1] = {"name": "anomaly_status", "labels": ["PENDING", "RESOLVED"]}
        fake_inspector = _FakeInspector(columns_by_table=columns, enums=enums)
        fake_engine = _FakeEngine("")

        with patch("attendance_integrity.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine)  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertIn("MISSING_COLUMNS:anomalies:attendance_event_id,resolved_at,status", result.issues)
        self.assertIn("MISSING_COLUMNS:attendance_events:verification_score", result.issues)
        self.assertIn("MISSING_ENUM_VALUES:anomaly_status:FALSE_POSITIVE,IGNORED", result.issues)
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)

    def test_unexpected_alembic_version_is_only_a_warning(self) -> None:
        fake_inspector = _FakeInspector(columns_by_table=_complete_columns(), enums=[])

        with patch("attendance_integrity.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine("0002_future"))  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.warnings, ["ALEMBIC_VERSION_UNEXPECTED:0002_future"])

    def test_dialect_without_enum_inspection_is_warned(self) -> None:
        fake_inspector = _InspectorWithoutEnums(_complete_columns())

        with patch("attendance_integrity.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine(EXPECTED_ALEMBIC_HEAD))  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.warnings, ["ENUM_INSPECTION_UNSUPPORTED"])


if __name__ == "__main__":
    unittest.main()
