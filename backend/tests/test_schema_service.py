import unittest
from unittest import mock

from flask import Flask
from sqlalchemy import inspect, text

from edunexia.extensions import db
from edunexia.services import schema_service
from edunexia.services.schema_service import ColumnSpec


class SchemaServiceTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app = Flask(__name__)
        cls.app.config.update(
            SECRET_KEY="test",
            SQLALCHEMY_DATABASE_URI="sqlite:///:memory:",
            SQLALCHEMY_TRACK_MODIFICATIONS=False,
            TESTING=True,
        )
        db.init_app(cls.app)
        cls.ctx = cls.app.app_context()
        cls.ctx.push()
        from edunexia import models  # noqa: F401
        db.create_all()

    @classmethod
    def tearDownClass(cls):
        db.session.remove()
        with db.engine.begin() as conn:
            conn.execute(text("DROP TABLE IF EXISTS legacy_things"))
        db.drop_all()
        cls.ctx.pop()

    def setUp(self):
        with db.engine.begin() as conn:
            conn.execute(text("DROP TABLE IF EXISTS legacy_things"))
            conn.execute(text("CREATE TABLE legacy_things (id INTEGER PRIMARY KEY, name VARCHAR(50))"))

    def _columns(self, table):
        return {c["name"] for c in inspect(db.engine).get_columns(table)}

    def test_adds_missing_column_once(self):
        self.assertTrue(schema_service.ensure_column("legacy_things", "segment", "VARCHAR(64)"))
        self.assertIn("segment", self._columns("legacy_things"))

        self.assertFalse(schema_service.ensure_column("legacy_things", "segment", "VARCHAR(64)"))

    def test_default_is_applied_to_existing_rows(self):
        with db.engine.begin() as conn:
            conn.execute(text("INSERT INTO legacy_things (name) VALUES ('a')"))

        schema_service.ensure_column("legacy_things", "payment_status", "VARCHAR(16) NOT NULL DEFAULT 'pending'")

        with db.engine.connect() as conn:
            value = conn.execute(text("SELECT payment_status FROM legacy_things")).scalar()
        self.assertEqual(value, "pending")

    def test_rejects_bad_identifiers(self):
        with self.assertRaises(ValueError):
            schema_service.ensure_column("legacy_things; DROP TABLE users", "x", "TEXT")
        with self.assertRaises(ValueError):
            schema_service.ensure_column("legacy_things", "1bad", "TEXT")

    def test_missing_table(self):
        with self.assertRaises(ValueError):
            schema_service.ensure_column("no_such_table", "x", "TEXT")

    def test_concurrent_add_reports_already_applied(self):
        # The other process won the race: the check says missing, the ALTER fails as duplicate
        with mock.patch.object(schema_service, "column_exists", return_value=False):
            self.assertFalse(schema_service.ensure_column("legacy_things", "name", "VARCHAR(50)"))

    def test_ensure_columns_reports_added(self):
        specs = (
            ColumnSpec("legacy_things", "name", "VARCHAR(50)"),
            ColumnSpec("legacy_things", "city", "VARCHAR(128)"),
            ColumnSpec("legacy_things", "paid_at", "TIMESTAMP"),
        )
        self.assertEqual(
            schema_service.ensure_columns(specs),
            ["legacy_things.city", "legacy_things.paid_at"],
        )
        self.assertEqual(schema_service.ensure_columns(specs), [])

    def test_current_schema_needs_no_patches(self):
        self.assertEqual(schema_service.ensure_columns(), [])


if __name__ == "__main__":
    unittest.main()
