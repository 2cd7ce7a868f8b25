"""
entity_store.py - Typed local persistence for phrases, settings and usage logs.

The EntityStore is owned by a single logical context (the application's
event loop). Mutations inside one transaction() block either all persist
or none do; any sqlite failure surfaces as PersistenceError.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, TypeVar

from aac_sync.errors import PersistenceError, ValidationError
from aac_sync.models import (
    Phrase,
    SyncState,
    UsageEventType,
    UsageLog,
    UserSettings,
    utcnow,
)
from aac_sync.store.connection import create_connection, verify_integrity
from aac_sync.store.schema import initialize_schema

logger = logging.getLogger(__name__)

Entity = TypeVar("Entity", Phrase, UserSettings, UsageLog)

# Ordering keys accepted by query()
ORDER_USAGE = "usage"        # usage counter descending (board display)
ORDER_CREATED = "created"    # creation time descending (history)

_ORDER_SQL = {
    Phrase: {
        ORDER_USAGE: "usage_count DESC, created_at ASC, id ASC",
        ORDER_CREATED: "created_at DESC, id DESC",
        None: "created_at ASC, id ASC",
    },
    UsageLog: {
        ORDER_CREATED: "created_at DESC, id DESC",
        None: "created_at ASC, id ASC",
    },
    UserSettings: {None: "updated_at ASC"},
}

_TABLES = {Phrase: "phrases", UserSettings: "user_settings", UsageLog: "usage_logs"}


class EntityStore:
    """
    SQLite-backed store for the three synchronized entity types.

    Usage:
        store = EntityStore("board.db")
        with store.transaction():
            store.insert(Phrase(text="I need water"))
        pending = store.query(Phrase, sync_state=SyncState.PENDING_UPLOAD)
    """

    def __init__(self, db_path: str = ":memory:"):
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._tx_depth = 0

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self.open()
        return self._conn

    def open(self) -> None:
        if self._conn is not None:
            return
        conn = create_connection(self._db_path)
        if self._db_path != ":memory:" and not verify_integrity(conn):
            conn.close()
            raise PersistenceError(
                f"Integrity check failed for {self._db_path}", operation="integrity_check"
            )
        self._conn = conn
        try:
            initialize_schema(self._conn)
        except sqlite3.Error as e:
            raise PersistenceError(
                f"Failed to initialize schema: {e}", operation="initialize"
            ) from e
        logger.debug(f"Entity store opened at {self._db_path}")

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # =========================================================================
    # Transactions
    # =========================================================================

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Scope a batch of mutations as one atomic unit.

        Nested blocks join the outermost transaction; only the outermost
        block commits. Any exception rolls the whole batch back.
        """
        conn = self.connection
        if self._tx_depth > 0:
            self._tx_depth += 1
            try:
                yield
            finally:
                self._tx_depth -= 1
            return

        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot begin transaction: {e}", operation="begin") from e

        self._tx_depth = 1
        try:
            yield
        except BaseException:
            self._tx_depth = 0
            self._rollback()
            raise
        self._tx_depth = 0
        try:
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            self._rollback()
            raise PersistenceError(f"Commit failed: {e}", operation="commit") from e

    def _rollback(self) -> None:
        try:
            self.connection.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.error(f"Rollback failed: {e}")

    def _execute(self, operation: str, sql: str, params: tuple | dict = ()) -> sqlite3.Cursor:
        try:
            if self.in_transaction:
                return self.connection.execute(sql, params)
            with self.transaction():
                return self.connection.execute(sql, params)
        except sqlite3.Error as e:
            raise PersistenceError(f"{operation} failed: {e}", operation=operation) from e

    def _fetch(self, operation: str, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        try:
            return self.connection.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"{operation} failed: {e}", operation=operation) from e

    # =========================================================================
    # Generic entity contract
    # =========================================================================

    def insert(self, entity: Entity) -> Entity:
        if isinstance(entity, Phrase):
            self._execute(
                "insert_phrase",
                """
                INSERT INTO phrases (id, phrase_text, category, usage_count, is_favorite,
                                     sync_state, server_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                _phrase_params(entity),
            )
        elif isinstance(entity, UserSettings):
            self._execute(
                "insert_settings",
                """
                INSERT INTO user_settings (id, language, voice_speed, ai_enabled,
                                           response_mode, sync_state, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                _settings_params(entity),
            )
        elif isinstance(entity, UsageLog):
            self._execute(
                "insert_log",
                """
                INSERT INTO usage_logs (id, event_type, event_data, phrase_used,
                                        session_id, sync_state, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entity.id,
                    entity.event_type.value,
                    entity.event_data,
                    entity.phrase_used,
                    entity.session_id,
                    entity.sync_state.value,
                    _ts(entity.created_at),
                ),
            )
        else:
            raise ValidationError(f"Unsupported entity type {type(entity).__name__}")
        return entity

    def update(self, entity: Entity) -> Entity:
        if isinstance(entity, Phrase):
            params = _phrase_params(entity)
            cursor = self._execute(
                "update_phrase",
                """
                UPDATE phrases SET phrase_text = ?, category = ?, usage_count = ?,
                       is_favorite = ?, sync_state = ?, server_id = ?,
                       created_at = ?, updated_at = ?
                WHERE id = ?
                """,
                params[1:] + params[:1],
            )
        elif isinstance(entity, UserSettings):
            params = _settings_params(entity)
            cursor = self._execute(
                "update_settings",
                """
                UPDATE user_settings SET language = ?, voice_speed = ?, ai_enabled = ?,
                       response_mode = ?, sync_state = ?, updated_at = ?
                WHERE id = ?
                """,
                params[1:] + params[:1],
            )
        elif isinstance(entity, UsageLog):
            # Logs are immutable apart from the sync-state transition
            cursor = self._execute(
                "update_log",
                "UPDATE usage_logs SET sync_state = ? WHERE id = ?",
                (entity.sync_state.value, entity.id),
            )
        else:
            raise ValidationError(f"Unsupported entity type {type(entity).__name__}")

        if cursor.rowcount == 0:
            raise PersistenceError(
                f"{type(entity).__name__} {entity.id} does not exist",
                operation="update",
            )
        return entity

    def delete(self, entity: Entity) -> bool:
        """
        Apply the delete rule for an entity.

        A phrase that was ever synced is soft-deleted (pendingDelete) and
        retained until the server confirms; otherwise it is removed at once.

        Returns:
            True if the entity was hard-removed, False if soft-deleted
        """
        if isinstance(entity, Phrase):
            if entity.server_id is not None:
                entity.sync_state = SyncState.PENDING_DELETE
                entity.updated_at = utcnow()
                self.update(entity)
                return False
            self.remove(entity)
            return True
        if isinstance(entity, UsageLog):
            if entity.sync_state is not SyncState.SYNCED:
                raise ValidationError(
                    "Usage logs can only be deleted after confirmed upload",
                    field="sync_state",
                    value=entity.sync_state.value,
                )
            self.remove(entity)
            return True
        raise ValidationError(f"{type(entity).__name__} cannot be deleted")

    def remove(self, entity: Entity) -> None:
        """Hard-remove an entity row regardless of sync-state."""
        table = _TABLES.get(type(entity))
        if table is None:
            raise ValidationError(f"Unsupported entity type {type(entity).__name__}")
        self._execute(f"remove_{table}", f"DELETE FROM {table} WHERE id = ?", (entity.id,))

    def query(
        self,
        entity_type: type[Entity],
        *,
        sync_state: SyncState | None = None,
        exclude_state: SyncState | None = None,
        is_favorite: bool | None = None,
        server_id: str | None = None,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[Entity]:
        """
        Return entities of one type matching every given filter.

        Args:
            entity_type: Phrase, UserSettings or UsageLog
            sync_state: Only entities in this state
            exclude_state: Only entities NOT in this state
            is_favorite: Phrases only; filter on the favorite flag
            server_id: Phrases only; entities referencing this server record
            order_by: ORDER_USAGE (phrases) or ORDER_CREATED
        """
        table = _TABLES.get(entity_type)
        if table is None:
            raise ValidationError(f"Unsupported entity type {entity_type!r}")
        try:
            order_sql = _ORDER_SQL[entity_type][order_by]
        except KeyError:
            raise ValidationError(
                f"Cannot order {entity_type.__name__} by {order_by!r}", field="order_by"
            ) from None

        clauses: list[str] = []
        params: list[Any] = []
        if sync_state is not None:
            clauses.append("sync_state = ?")
            params.append(sync_state.value)
        if exclude_state is not None:
            clauses.append("sync_state != ?")
            params.append(exclude_state.value)
        if is_favorite is not None or server_id is not None:
            if entity_type is not Phrase:
                raise ValidationError("Favorite and server-id filters apply to phrases only")
            if is_favorite is not None:
                clauses.append("is_favorite = ?")
                params.append(1 if is_favorite else 0)
            if server_id is not None:
                clauses.append("server_id = ?")
                params.append(server_id)

        sql = f"SELECT * FROM {table}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += f" ORDER BY {order_sql}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        rows = self._fetch(f"query_{table}", sql, params)
        converter = _ROW_CONVERTERS[entity_type]
        return [converter(row) for row in rows]

    def get(self, entity_type: type[Entity], entity_id: str) -> Entity | None:
        table = _TABLES[entity_type]
        rows = self._fetch(f"get_{table}", f"SELECT * FROM {table} WHERE id = ?", (entity_id,))
        return _ROW_CONVERTERS[entity_type](rows[0]) if rows else None

    # =========================================================================
    # Phrases
    # =========================================================================

    def visible_phrases(self) -> list[Phrase]:
        """Phrases for display: everything not awaiting deletion, most used first."""
        return self.query(Phrase, exclude_state=SyncState.PENDING_DELETE, order_by=ORDER_USAGE)

    def phrase_by_server_id(self, server_id: str) -> Phrase | None:
        found = self.query(Phrase, server_id=server_id, limit=1)
        return found[0] if found else None

    # =========================================================================
    # Settings
    # =========================================================================

    def get_settings(self) -> UserSettings | None:
        found = self.query(UserSettings, limit=1)
        return found[0] if found else None

    def get_or_create_settings(self) -> UserSettings:
        """Return the settings singleton, creating defaults on first access."""
        settings = self.get_settings()
        if settings is None:
            settings = UserSettings()
            self.insert(settings)
            logger.info("Created default settings")
        return settings

    # =========================================================================
    # Usage logs
    # =========================================================================

    def append_log(self, log: UsageLog) -> UsageLog:
        return self.insert(log)

    def pending_logs(self) -> list[UsageLog]:
        return self.query(UsageLog, sync_state=SyncState.PENDING_UPLOAD)

    def mark_logs_synced(self, logs: list[UsageLog]) -> None:
        with self.transaction():
            for log in logs:
                log.sync_state = SyncState.SYNCED
                self.update(log)

    def prune_synced_logs(self, older_than: datetime) -> int:
        """Delete synced logs created before the cutoff; pending logs are never touched."""
        cursor = self._execute(
            "prune_logs",
            "DELETE FROM usage_logs WHERE sync_state = ? AND created_at < ?",
            (SyncState.SYNCED.value, _ts(older_than)),
        )
        return cursor.rowcount

    # =========================================================================
    # Aggregates
    # =========================================================================

    def count_pending(self) -> int:
        """Number of non-synced entities across all tracked types."""
        total = 0
        for table in _TABLES.values():
            rows = self._fetch(
                "count_pending",
                f"SELECT COUNT(*) FROM {table} WHERE sync_state != ?",
                (SyncState.SYNCED.value,),
            )
            total += rows[0][0]
        return total

    # =========================================================================
    # Peer outbox (store-and-forward)
    # =========================================================================

    def enqueue_peer_message(self, message_type: str, payload: bytes) -> int:
        cursor = self._execute(
            "enqueue_peer_message",
            "INSERT INTO peer_outbox (message_type, payload, queued_at) VALUES (?, ?, ?)",
            (message_type, payload, _ts(utcnow())),
        )
        return cursor.lastrowid

    def peek_peer_messages(self, limit: int = 100) -> list[tuple[int, str, bytes]]:
        rows = self._fetch(
            "peek_peer_messages",
            "SELECT seq, message_type, payload FROM peer_outbox ORDER BY seq LIMIT ?",
            (limit,),
        )
        return [(row["seq"], row["message_type"], bytes(row["payload"])) for row in rows]

    def remove_peer_message(self, seq: int) -> None:
        self._execute("remove_peer_message", "DELETE FROM peer_outbox WHERE seq = ?", (seq,))

    def outbox_size(self) -> int:
        return self._fetch("outbox_size", "SELECT COUNT(*) FROM peer_outbox")[0][0]

    # =========================================================================
    # Instruction audit trail
    # =========================================================================

    def record_instruction(
        self,
        instruction_id: str | None,
        instruction_type: str | None,
        source: str,
        state: str,
        detail: str | None = None,
    ) -> int:
        cursor = self._execute(
            "record_instruction",
            """
            INSERT INTO instruction_audit (instruction_id, instruction_type, source,
                                           state, detail, received_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (instruction_id, instruction_type, source, state, detail, _ts(utcnow())),
        )
        return cursor.lastrowid

    def update_instruction_state(self, seq: int, state: str, detail: str | None = None) -> None:
        self._execute(
            "update_instruction_state",
            """
            UPDATE instruction_audit SET state = ?, detail = COALESCE(?, detail), finished_at = ?
            WHERE seq = ?
            """,
            (state, detail, _ts(utcnow()), seq),
        )

    def instruction_seen(self, instruction_id: str) -> bool:
        """True if an instruction with this id already reached a terminal state."""
        rows = self._fetch(
            "instruction_seen",
            """
            SELECT 1 FROM instruction_audit
            WHERE instruction_id = ? AND state IN ('processed', 'discarded')
            LIMIT 1
            """,
            (instruction_id,),
        )
        return bool(rows)

    def recent_instructions(self, limit: int = 20) -> list[dict[str, Any]]:
        rows = self._fetch(
            "recent_instructions",
            "SELECT * FROM instruction_audit ORDER BY seq DESC LIMIT ?",
            (limit,),
        )
        return [dict(row) for row in rows]


# =============================================================================
# Row mapping
# =============================================================================

def _ts(value: datetime) -> str:
    # Normalized to UTC so text ordering matches time ordering
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _phrase_params(p: Phrase) -> tuple:
    return (
        p.id,
        p.text,
        p.category,
        p.usage_count,
        1 if p.is_favorite else 0,
        p.sync_state.value,
        p.server_id,
        _ts(p.created_at),
        _ts(p.updated_at),
    )


def _settings_params(s: UserSettings) -> tuple:
    return (
        s.id,
        s.language,
        s.voice_speed,
        1 if s.ai_enabled else 0,
        s.response_mode,
        s.sync_state.value,
        _ts(s.updated_at),
    )


def _row_to_phrase(row: sqlite3.Row) -> Phrase:
    return Phrase(
        id=row["id"],
        text=row["phrase_text"],
        category=row["category"],
        usage_count=row["usage_count"],
        is_favorite=bool(row["is_favorite"]),
        sync_state=SyncState.parse(row["sync_state"]),
        server_id=row["server_id"],
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _row_to_settings(row: sqlite3.Row) -> UserSettings:
    return UserSettings(
        id=row["id"],
        language=row["language"],
        voice_speed=row["voice_speed"],
        ai_enabled=bool(row["ai_enabled"]),
        response_mode=row["response_mode"],
        sync_state=SyncState.parse(row["sync_state"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _row_to_log(row: sqlite3.Row) -> UsageLog:
    return UsageLog(
        id=row["id"],
        event_type=UsageEventType(row["event_type"]),
        event_data=row["event_data"],
        phrase_used=row["phrase_used"],
        session_id=row["session_id"],
        sync_state=SyncState.parse(row["sync_state"]),
        created_at=_parse_ts(row["created_at"]),
    )


_ROW_CONVERTERS = {
    Phrase: _row_to_phrase,
    UserSettings: _row_to_settings,
    UsageLog: _row_to_log,
}
