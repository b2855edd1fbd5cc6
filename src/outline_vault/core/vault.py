"""Open the database and content store that live under one data directory."""

import sqlite3
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from outline_vault.config import DB_FILENAME, UPLOADS_DIRNAME, resolve_data_directory
from outline_vault.core.assets.store import ContentStore
from outline_vault.core.database.schema import open_database


@dataclass
class Vault:
    """An open data directory."""

    data_dir: Path
    conn: sqlite3.Connection
    store: ContentStore

    def close(self) -> None:
        self.conn.close()


def open_vault(data_dir: Path | None = None) -> Vault:
    """Open (creating if needed) the vault in ``data_dir`` or the default location."""
    root = Path(data_dir) if data_dir is not None else resolve_data_directory()
    root.mkdir(parents=True, exist_ok=True)
    conn = open_database(root / DB_FILENAME)
    store = ContentStore(conn, root / UPLOADS_DIRNAME)
    logger.debug("Opened vault at {}", root)
    return Vault(data_dir=root, conn=conn, store=store)
