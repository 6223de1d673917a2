import os
import sqlite3
import unittest
from unittest.mock import patch

from smartcompras import create_app
from smartcompras.config import Config
from smartcompras.db import SCHEMA_TABLES, close_db
from smartcompras.db_migrations import to_sqlalchemy_url
from tests.helpers.temp_db import TempDbSandbox


def _ledger_tables(db_path: str) -> set:
    conn = sqlite3.connect(db_path)
    try:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    finally:
        conn.close()
    return {row[0] for row in rows} & set(SCHEMA_TABLES)


class LedgerSchemaBootstrapTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="ledger_migrations")
        self.addCleanup(self._temp_db.cleanup)
        self.db_path = self._temp_db.db_path
        env = patch.dict(os.environ, {"FLASK_ENV": "development"})
        env.start()
        self.addCleanup(env.stop)

    def _app(self, **overrides):
        app = create_app(self._temp_db.make_config(Config, **overrides))
        self.addCleanup(self._close, app)
        return app

    @staticmethod
    def _close(app) -> None:
        with app.app_context():
            close_db()

    def test_schema_is_left_to_migrations_by_default(self) -> None:
        self._app(TESTING=False, DB_AUTO_INIT=False)
        self.assertEqual(_ledger_tables(self.db_path), set())

    def test_dev_auto_init_creates_every_ledger_table(self) -> None:
        self._app(TESTING=False, DB_AUTO_INIT=True)
        self.assertEqual(_ledger_tables(self.db_path), set(SCHEMA_TABLES))

    def test_auto_init_is_ignored_outside_development(self) -> None:
        with patch.dict(os.environ, {"FLASK_ENV": "production"}):
            self._app(TESTING=False, DB_AUTO_INIT=True)
        self.assertEqual(_ledger_tables(self.db_path), set())

    def test_cli_upgrade_downgrade_cycle(self) -> None:
        runner = self._app(TESTING=False, DB_AUTO_INIT=False).test_cli_runner()

        result = runner.invoke(args=["db", "upgrade"])
        self.assertEqual(result.exit_code, 0, msg=result.output)
        self.assertEqual(_ledger_tables(self.db_path), set(SCHEMA_TABLES))

        result = runner.invoke(args=["db", "downgrade", "base"])
        self.assertEqual(result.exit_code, 0, msg=result.output)
        self.assertEqual(_ledger_tables(self.db_path), set())

        result = runner.invoke(args=["db", "upgrade"])
        self.assertEqual(result.exit_code, 0, msg=result.output)
        self.assertIn("requisitions", _ledger_tables(self.db_path))

    def test_sqlalchemy_url_normalization(self) -> None:
        self.assertEqual(to_sqlalchemy_url("postgres://u:p@host/db"), "postgresql://u:p@host/db")
        self.assertEqual(to_sqlalchemy_url("postgresql://u:p@host/db"), "postgresql://u:p@host/db")
        self.assertTrue(to_sqlalchemy_url(self.db_path).startswith("sqlite:///"))
        with self.assertRaises(RuntimeError):
            to_sqlalchemy_url("  ")


class RedeliverCliTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="redeliver_cli")
        self.app = create_app(self._temp_db.make_config(Config, TESTING=True))

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def test_redeliver_command_reports_count(self) -> None:
        result = self.app.test_cli_runner().invoke(args=["redeliver-notifications", "--limit", "10"])
        self.assertEqual(result.exit_code, 0, msg=result.output)
        self.assertIn("Notificacoes reenviadas: 0.", result.output)


if __name__ == "__main__":
    unittest.main()
