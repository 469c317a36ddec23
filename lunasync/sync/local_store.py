"""
SQLite-backed local library.

Entities are stored as JSON documents. Chapter text lives in its own table
and is loaded on demand, so snapshots stay small: novels come back with
chapter ``content`` absent.
"""

import json
import sqlite3
from pathlib import Path
from typing import Any, Optional

from lunasync.config.user_config import get_database_path
from lunasync.sync.entities import CHAPTER_CONTENT_FIELDS, iter_chapters, json_default
from lunasync.sync.models import SETTINGS_ENTITY_ID, SyncData


ENTITY_TABLES = ("novels", "ai_models", "cover_history")


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=json_default)


def split_chapter_content(novel: dict[str, Any]) -> tuple[dict[str, Any], dict[str, list]]:
    """
    Separate a novel's chapter text from its structure.

    Returns:
        Tuple of (novel without chapter content, {chapter_id: paragraphs})
    """
    contents: dict[str, list] = {}
    volumes = []
    for volume in novel.get("volumes") or []:
        chapters = []
        for chapter in volume.get("chapters") or []:
            if chapter.get("content") is not None and chapter.get("id"):
                contents[chapter["id"]] = chapter["content"]
            chapters.append({
                key: value for key, value in chapter.items()
                if key not in CHAPTER_CONTENT_FIELDS
            })
        volumes.append({**volume, "chapters": chapters})

    stripped = dict(novel)
    if "volumes" in novel:
        stripped["volumes"] = volumes
    return stripped, contents


class SqliteStore:
    """
    Local library database.

    Each public method opens its own connection; replace_all() runs in a
    single transaction so a failed apply leaves the previous data intact.
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path or get_database_path()
        self.init_database()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=30.0)

    def init_database(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            for table in ENTITY_TABLES:
                conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        position INTEGER NOT NULL,
                        data TEXT NOT NULL
                    )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS app_settings (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS chapter_contents (
                    chapter_id TEXT PRIMARY KEY,
                    content TEXT NOT NULL
                )
            """)
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> SyncData:
        """All entities, with chapter content not loaded."""
        conn = self._connect()
        try:
            settings_row = conn.execute(
                "SELECT data FROM app_settings WHERE id = ?", (SETTINGS_ENTITY_ID,)
            ).fetchone()
            return SyncData(
                novels=self._read_table(conn, "novels"),
                ai_models=self._read_table(conn, "ai_models"),
                app_settings=json.loads(settings_row[0]) if settings_row else None,
                cover_history=self._read_table(conn, "cover_history"),
            )
        finally:
            conn.close()

    @staticmethod
    def _read_table(conn: sqlite3.Connection, table: str) -> list[dict[str, Any]]:
        rows = conn.execute(f"SELECT data FROM {table} ORDER BY position, id")
        return [json.loads(row[0]) for row in rows]

    def load_chapter_content(self, chapter_id: str) -> Optional[list]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT content FROM chapter_contents WHERE chapter_id = ?", (chapter_id,)
            ).fetchone()
        finally:
            conn.close()
        return json.loads(row[0]) if row else None

    def get_novel(self, novel_id: str, with_content: bool = False) -> Optional[dict[str, Any]]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT data FROM novels WHERE id = ?", (novel_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            return None

        novel = json.loads(row[0])
        if with_content:
            for chapter in iter_chapters(novel):
                content = self.load_chapter_content(chapter["id"])
                if content is not None:
                    chapter["content"] = content
        return novel

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save_novel(self, novel: dict[str, Any]) -> None:
        """Insert or update one novel and the chapter content it carries."""
        stripped, contents = split_chapter_content(novel)
        conn = self._connect()
        try:
            conn.execute("BEGIN")
            self._upsert_entity(conn, "novels", stripped)
            self._write_contents(conn, contents)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def save_ai_model(self, model: dict[str, Any]) -> None:
        self._save_one("ai_models", model)

    def add_cover(self, cover: dict[str, Any]) -> None:
        self._save_one("cover_history", cover)

    def save_settings(self, settings: dict[str, Any]) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "INSERT OR REPLACE INTO app_settings (id, data) VALUES (?, ?)",
                (SETTINGS_ENTITY_ID, _dumps(settings)),
            )
            conn.commit()
        finally:
            conn.close()

    def delete_novel(self, novel_id: str) -> bool:
        novel = self.get_novel(novel_id)
        if novel is None:
            return False

        chapter_ids = [(chapter["id"],) for chapter in iter_chapters(novel) if chapter.get("id")]
        conn = self._connect()
        try:
            conn.execute("BEGIN")
            conn.execute("DELETE FROM novels WHERE id = ?", (novel_id,))
            conn.executemany("DELETE FROM chapter_contents WHERE chapter_id = ?", chapter_ids)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return True

    def replace_all(self, data: SyncData) -> None:
        """
        Replace every entity in one transaction.

        Chapter content carried by the novels is written to the content
        table; content of chapters no longer referenced is removed.
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN")
            for table in (*ENTITY_TABLES, "app_settings"):
                conn.execute(f"DELETE FROM {table}")

            referenced: set[str] = set()
            for position, novel in enumerate(data.novels):
                stripped, contents = split_chapter_content(novel)
                self._insert_entity(conn, "novels", stripped, position)
                self._write_contents(conn, contents)
                referenced.update(
                    chapter["id"] for chapter in iter_chapters(stripped) if chapter.get("id")
                )

            for position, model in enumerate(data.ai_models):
                self._insert_entity(conn, "ai_models", model, position)
            for position, cover in enumerate(data.cover_history or []):
                self._insert_entity(conn, "cover_history", cover, position)

            if data.app_settings is not None:
                conn.execute(
                    "INSERT INTO app_settings (id, data) VALUES (?, ?)",
                    (SETTINGS_ENTITY_ID, _dumps(data.app_settings)),
                )

            stale = [
                (row[0],)
                for row in conn.execute("SELECT chapter_id FROM chapter_contents")
                if row[0] not in referenced
            ]
            conn.executemany("DELETE FROM chapter_contents WHERE chapter_id = ?", stale)

            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _save_one(self, table: str, entity: dict[str, Any]) -> None:
        conn = self._connect()
        try:
            self._upsert_entity(conn, table, entity)
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _insert_entity(
        conn: sqlite3.Connection,
        table: str,
        entity: dict[str, Any],
        position: int,
    ) -> None:
        conn.execute(
            f"INSERT OR REPLACE INTO {table} (id, position, data) VALUES (?, ?, ?)",
            (entity["id"], position, _dumps(entity)),
        )

    @staticmethod
    def _upsert_entity(conn: sqlite3.Connection, table: str, entity: dict[str, Any]) -> None:
        row = conn.execute(f"SELECT position FROM {table} WHERE id = ?", (entity["id"],)).fetchone()
        if row is not None:
            position = row[0]
        else:
            position = conn.execute(f"SELECT COALESCE(MAX(position) + 1, 0) FROM {table}").fetchone()[0]
        SqliteStore._insert_entity(conn, table, entity, position)

    @staticmethod
    def _write_contents(conn: sqlite3.Connection, contents: dict[str, list]) -> None:
        conn.executemany(
            "INSERT OR REPLACE INTO chapter_contents (chapter_id, content) VALUES (?, ?)",
            [(chapter_id, _dumps(content)) for chapter_id, content in contents.items()],
        )
