from __future__ import annotations

import shutil
import sqlite3
import tempfile
import time
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[2]
TEMP_ROOT = Path(tempfile.gettempdir()).resolve()


def _inside(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


def assert_safe_temp_db_path(db_path: str) -> None:
    """Refuse ledger files outside TEMP or inside the checkout."""
    resolved = Path(db_path).resolve()
    if not _inside(resolved, TEMP_ROOT):
        raise ValueError(f"Temporary ledger must live under TEMP: {resolved}")
    if _inside(resolved, REPO_ROOT):
        raise ValueError(f"Temporary ledger cannot live inside the repository: {resolved}")


def ensure_temp_db_file(db_path: str) -> None:
    assert_safe_temp_db_path(db_path)
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30.0, isolation_level=None)
    try:
        # Rollback journal instead of WAL so cleanup leaves no -wal/-shm files behind.
        conn.execute("PRAGMA journal_mode=DELETE")
    finally:
        conn.close()


def remove_tree_with_retry(path: str, attempts: int = 8, base_delay: float = 0.05) -> None:
    """Delete ``path``; sqlite handles may still be closing, so back off and retry."""
    for attempt in range(attempts):
        try:
            shutil.rmtree(path)
            return
        except FileNotFoundError:
            return
        except OSError:
            if attempt == attempts - 1:
                raise
            time.sleep(base_delay * (2**attempt))


class TempDbSandbox:
    """Throwaway ledger database for one test case."""

    def __init__(self, prefix: str = "smartcompras_tests", db_name: str = "ledger.db") -> None:
        self.temp_dir = tempfile.mkdtemp(prefix=f"{prefix}_", dir=str(TEMP_ROOT))
        self.db_path = str(Path(self.temp_dir) / db_name)
        ensure_temp_db_file(self.db_path)

    def make_config(self, base_config, **overrides):
        attrs = {
            "DATABASE_DIR": self.temp_dir,
            "DB_PATH": self.db_path,
            "LOG_JSON": False,
            "PROPAGATE_EXCEPTIONS": False,
            **overrides,
        }
        return type("SandboxConfig", (base_config,), attrs)

    def cleanup(self) -> None:
        remove_tree_with_retry(self.temp_dir)
