"""PostgreSQL-backed certificate store.

Metadata lives in the ``certificates`` table; compare-and-swap is a
``SELECT ... FOR UPDATE`` followed by an ``UPDATE ... WHERE id AND
version`` on the same transaction.  Key and chain artifacts stay on
local disk under the configured artifact directory.

Usage::

    store = PostgresCertificateStore.from_settings(settings.database, settings.store.path)
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from psycopg.rows import dict_row
from pypgkit import Database, DatabaseConfig, SchemaManager

from certsteward.core.errors import ConflictError
from certsteward.repositories.certificate import CertificateRecordRepository
from certsteward.store.artifacts import ArtifactVault
from certsteward.store.base import CertificateStore

if TYPE_CHECKING:
    from datetime import timedelta

    from certsteward.config.settings import DatabaseSettings
    from certsteward.models.certificate import CertificateRecord

SCHEMA_PATH = Path(__file__).with_name("schema.sql")
TABLE = "certificates"

log = logging.getLogger(__name__)


def connect(settings: DatabaseSettings) -> Database:
    """Open the PyPGKit pool for the ``database`` section, or reuse it.

    With ``auto_setup`` the bundled ``certificates`` schema is applied
    on first connection.
    """
    if Database.is_initialized():
        return Database.get_instance()

    log.info(
        "Connecting certificate store to %s@%s:%s/%s",
        settings.user,
        settings.host,
        settings.port,
        settings.database,
    )
    return Database.init(
        config=DatabaseConfig(
            host=settings.host,
            port=settings.port,
            database=settings.database,
            user=settings.user,
            password=settings.password,
            sslmode=settings.sslmode,
            min_connections=settings.min_connections,
            max_connections=settings.max_connections,
            connection_timeout=settings.connection_timeout,
        ),
        schema_path=SCHEMA_PATH if settings.auto_setup else None,
        auto_setup=settings.auto_setup,
        interactive=False,
    )


def apply_schema(database: Database) -> None:
    """Run the bundled schema; every statement is idempotent."""
    SchemaManager(database).execute_sql_file(SCHEMA_PATH)


def schema_status(database: Database) -> dict[str, Any]:
    present = database.table_exists(TABLE)
    count = database.fetch_value(f"SELECT count(*) FROM {TABLE}") if present else 0  # noqa: S608
    return {"schema": bool(present), "certificates": count or 0}


class PostgresCertificateStore(CertificateStore):
    """Certificate store on a PyPGKit :class:`Database`.

    Parameters
    ----------
    database:
        Connected database (see :func:`connect`).
    artifact_root:
        Directory for key/chain generations and live links.

    """

    def __init__(self, database: Database, artifact_root: str | Path) -> None:
        super().__init__(ArtifactVault(artifact_root))
        self._db = database
        self._repo = CertificateRecordRepository(database)

    @classmethod
    def from_settings(
        cls,
        settings: DatabaseSettings,
        artifact_root: str | Path,
    ) -> PostgresCertificateStore:
        """Connect and check that the ``certificates`` table exists.

        Raises
        ------
        RuntimeError
            If the table is missing and ``auto_setup`` is off.

        """
        database = connect(settings)
        if not database.table_exists(TABLE):
            msg = (
                f"Table '{TABLE}' does not exist; run 'certsteward db migrate' "
                "or enable database.auto_setup"
            )
            raise RuntimeError(msg)
        return cls(database, artifact_root)

    def _read(self, certificate_id: str) -> CertificateRecord | None:
        return self._repo.find_by_id(certificate_id)

    def _read_all(self) -> list[CertificateRecord]:
        return self._repo.find_all(order_by="id")

    def _candidates(self, now: datetime, horizon: timedelta) -> list[CertificateRecord]:
        return [self._on_load(r) for r in self._repo.find_candidates(now, horizon)]

    def upsert(self, record: CertificateRecord) -> CertificateRecord:
        row = self._repo._entity_to_row(record)  # noqa: SLF001
        with self._db.transaction() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(f"SELECT version FROM {TABLE} WHERE id = %s FOR UPDATE", (record.id,))  # noqa: S608
            current = cur.fetchone()
            current_version = current["version"] if current else 0
            if current_version != record.version:
                msg = (
                    f"Certificate {record.id} was modified concurrently "
                    f"(expected version {record.version}, found {current_version})"
                )
                raise ConflictError(msg)
            if current is None:
                _insert(cur, {**row, "version": 1})
            else:
                row.pop("id")
                _update(
                    cur,
                    {**row, "version": record.version + 1, "updated_at": datetime.now(UTC)},
                    record.id,
                    record.version,
                )
            stored = cur.fetchone()
        if stored is None:
            msg = f"Certificate {record.id} disappeared during update"
            raise ConflictError(msg)
        return replace(
            record,
            version=stored["version"],
            created_at=stored["created_at"],
            updated_at=stored["updated_at"],
        )

    def _delete_metadata(self, certificate_id: str) -> bool:
        return self._repo.delete(certificate_id)

    def health_check(self) -> bool:
        return self._db.health_check()


def _insert(cur, row: dict[str, Any]) -> None:
    columns = ", ".join(row)
    placeholders = ", ".join(["%s"] * len(row))
    cur.execute(
        f"INSERT INTO {TABLE} ({columns}) VALUES ({placeholders}) RETURNING *",  # noqa: S608
        list(row.values()),
    )


def _update(cur, row: dict[str, Any], certificate_id: str, version: int) -> None:
    assignments = ", ".join(f"{column} = %s" for column in row)
    cur.execute(
        f"UPDATE {TABLE} SET {assignments} WHERE id = %s AND version = %s RETURNING *",  # noqa: S608
        [*row.values(), certificate_id, version],
    )
