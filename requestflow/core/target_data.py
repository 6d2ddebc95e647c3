"""
Target data accessor.

Executes INSERT/UPDATE/DELETE/SELECT against tables on named external
connections. Tables are discovered with SQLAlchemy reflection, so requests
can target any table the connection can see.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import MetaData, Table, and_, func, inspect, select
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from requestflow.config.settings import settings

logger = structlog.get_logger()

# Column types the database maintains itself on SQL Server
_ROW_VERSION_TYPES = {"TIMESTAMP", "ROWVERSION"}


class TargetDataError(Exception):
    """Raised when a target table operation cannot be carried out"""

    pass


class UnknownConnectionError(TargetDataError):
    """Raised when a connection name is not configured"""

    pass


class NoRowsAffectedError(TargetDataError):
    """Raised when an UPDATE/DELETE filter matched nothing"""

    pass


@dataclass
class InsertResult:
    """Outcome of an insert: whether a row was written and its display key"""

    ok: bool
    generated_key: Optional[Any] = None


def render_key(values: Dict[str, Any]) -> str:
    """Render a key filter as "col=val, col=val"."""
    return ", ".join(f"{column}={value}" for column, value in values.items())


class TargetDataAccessor:
    """
    Runs data changes against named target connections.

    One async engine is created lazily per connection name. Reflected tables
    and primary-key column lists are cached per (connection, schema, table).
    """

    def __init__(self, connections: Optional[Dict[str, str]] = None, echo: Optional[bool] = None):
        self.connections = dict(settings.target_connections if connections is None else connections)
        self.echo = settings.target_echo if echo is None else echo
        self._engines: Dict[str, AsyncEngine] = {}
        self._tables: Dict[Tuple[str, Optional[str], str], Table] = {}
        self._primary_keys: Dict[Tuple[str, Optional[str], str], List[str]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Connections and reflection
    # ------------------------------------------------------------------

    def register_connection(self, name: str, url: str):
        """Add or replace a named connection"""
        self.connections[name] = url
        self._engines.pop(name, None)
        for cache in (self._tables, self._primary_keys):
            for key in [k for k in cache if k[0] == name]:
                cache.pop(key)

    def get_engine(self, connection: str) -> AsyncEngine:
        if connection not in self.connections:
            raise UnknownConnectionError(f"Database connection '{connection}' not found")

        engine = self._engines.get(connection)
        if engine is None:
            engine = create_async_engine(
                self.connections[connection],
                echo=self.echo,
                pool_pre_ping=settings.target_pool_pre_ping,
            )
            self._engines[connection] = engine
            logger.info("target_engine_created", connection=connection)
        return engine

    async def get_table(self, connection: str, table: str, schema: Optional[str] = None) -> Table:
        """Reflect (once) and return a target table"""
        key = (connection, schema, table)
        cached = self._tables.get(key)
        if cached is not None:
            return cached

        async with self._lock:
            cached = self._tables.get(key)
            if cached is not None:
                return cached

            engine = self.get_engine(connection)
            metadata = MetaData(schema=schema)
            try:
                async with engine.connect() as conn:
                    reflected = await conn.run_sync(
                        lambda sync_conn: Table(table, metadata, autoload_with=sync_conn)
                    )
            except Exception as e:
                logger.error(
                    "target_table_reflection_failed",
                    connection=connection,
                    schema=schema,
                    table=table,
                    error=str(e),
                )
                raise TargetDataError(
                    f"Table {_qualified(schema, table)} could not be loaded from '{connection}': {e}"
                ) from e

            self._tables[key] = reflected
            return reflected

    async def column_types(self, connection: str, table: str, schema: Optional[str] = None) -> Dict[str, Any]:
        """Reflected SQLAlchemy type of every column, by column name"""
        reflected = await self.get_table(connection, table, schema)
        return {column.name: column.type for column in reflected.columns}

    async def primary_key_columns(self, connection: str, table: str, schema: Optional[str] = None) -> List[str]:
        """Primary-key column names in key order (empty if the table has none)"""
        key = (connection, schema, table)
        if key in self._primary_keys:
            return list(self._primary_keys[key])

        engine = self.get_engine(connection)
        async with engine.connect() as conn:
            constraint = await conn.run_sync(
                lambda sync_conn: inspect(sync_conn).get_pk_constraint(table, schema=schema)
            )

        columns = list(constraint.get("constrained_columns") or [])
        self._primary_keys[key] = columns

        logger.debug(
            "target_primary_key_discovered",
            connection=connection,
            schema=schema,
            table=table,
            primary_key=columns,
        )
        return list(columns)

    def _generated_columns(self, reflected: Table, engine: AsyncEngine) -> set:
        """Identity, computed and row-version columns, which must never be written"""
        generated = set()
        identity = self._identity_column(reflected)
        if identity is not None:
            generated.add(identity.name)
        for column in reflected.columns:
            if column.computed is not None:
                generated.add(column.name)
            if engine.dialect.name == "mssql" and str(column.type).upper() in _ROW_VERSION_TYPES:
                generated.add(column.name)
        return generated

    @staticmethod
    def _identity_column(reflected: Table):
        for column in reflected.columns:
            if column.identity is not None:
                return column
        return reflected.autoincrement_column

    @staticmethod
    def _where(reflected: Table, where: Dict[str, Any]):
        clauses = []
        for column, value in where.items():
            if column not in reflected.c:
                raise TargetDataError(f"Column '{column}' does not exist in {reflected.fullname}")
            clauses.append(reflected.c[column] == value)
        return and_(*clauses)

    @staticmethod
    def _check_columns(reflected: Table, values: Dict[str, Any]):
        unknown = [column for column in values if column not in reflected.c]
        if unknown:
            raise TargetDataError(
                f"Column(s) {', '.join(unknown)} do not exist in {reflected.fullname}"
            )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def insert(
        self,
        connection: str,
        table: str,
        schema: Optional[str],
        values: Dict[str, Any],
    ) -> InsertResult:
        """
        Insert one row.

        When the table has an identity column the generated value is the key.
        Otherwise the row is re-selected using the inserted values as a filter
        and its primary key (or first column) is rendered as the key.
        """
        reflected = await self.get_table(connection, table, schema)
        engine = self.get_engine(connection)

        excluded = self._generated_columns(reflected, engine)
        allowed = {k: v for k, v in values.items() if k not in excluded}
        self._check_columns(reflected, allowed)
        identity = self._identity_column(reflected)

        try:
            async with engine.begin() as conn:
                result = await conn.execute(reflected.insert().values(**allowed))
                if result.rowcount == 0:
                    return InsertResult(ok=False)

                generated_key = None
                if identity is not None and result.inserted_primary_key is not None:
                    pk_values = dict(zip([c.name for c in reflected.primary_key.columns], result.inserted_primary_key))
                    generated_key = pk_values.get(identity.name)

                if generated_key is None and allowed:
                    row = (
                        await conn.execute(select(reflected).where(self._where(reflected, allowed)).limit(1))
                    ).mappings().first()
                    if row is not None:
                        pk_columns = [c.name for c in reflected.primary_key.columns]
                        if pk_columns:
                            generated_key = render_key({c: row[c] for c in pk_columns}) if len(pk_columns) > 1 else row[pk_columns[0]]
                        else:
                            generated_key = next(iter(row.values()), None)
        except TargetDataError:
            raise
        except Exception as e:
            logger.error(
                "target_insert_failed",
                connection=connection,
                table=reflected.fullname,
                columns=list(allowed.keys()),
                error=str(e),
            )
            raise

        logger.info(
            "target_row_inserted",
            connection=connection,
            table=reflected.fullname,
            generated_key=generated_key,
        )
        return InsertResult(ok=True, generated_key=generated_key)

    async def update(
        self,
        connection: str,
        table: str,
        schema: Optional[str],
        values: Dict[str, Any],
        where: Dict[str, Any],
    ) -> bool:
        """
        Update the rows matched by `where`.

        Key, identity, computed and filter columns are never part of SET.
        Raises NoRowsAffectedError if the filter matches nothing.
        """
        if not where:
            raise TargetDataError("UPDATE requires at least one WHERE condition")

        reflected = await self.get_table(connection, table, schema)
        engine = self.get_engine(connection)

        excluded = self._generated_columns(reflected, engine)
        excluded.update(c.name for c in reflected.primary_key.columns)
        excluded.update(where.keys())
        updatable = {k: v for k, v in values.items() if k not in excluded}
        self._check_columns(reflected, updatable)
        condition = self._where(reflected, where)

        async with engine.begin() as conn:
            existing = (
                await conn.execute(select(func.count()).select_from(reflected).where(condition))
            ).scalar()
            if not existing:
                logger.warning(
                    "target_update_no_match",
                    connection=connection,
                    table=reflected.fullname,
                    where=render_key(where),
                )
                raise NoRowsAffectedError(
                    f"No records found to update. WHERE conditions: {render_key(where)}"
                )

            if not updatable:
                logger.info(
                    "target_update_nothing_to_set",
                    connection=connection,
                    table=reflected.fullname,
                )
                return True

            result = await conn.execute(reflected.update().where(condition).values(**updatable))

        logger.info(
            "target_rows_updated",
            connection=connection,
            table=reflected.fullname,
            rows_affected=result.rowcount,
            where=render_key(where),
        )

        if result.rowcount == 0:
            raise NoRowsAffectedError(
                "UPDATE operation affected 0 rows. This may indicate a data type mismatch or constraint violation."
            )
        return True

    async def delete(
        self,
        connection: str,
        table: str,
        schema: Optional[str],
        where: Dict[str, Any],
    ) -> bool:
        """Delete the rows matched by `where`; False if nothing matched"""
        if not where:
            raise TargetDataError("DELETE requires at least one WHERE condition")

        reflected = await self.get_table(connection, table, schema)
        engine = self.get_engine(connection)

        async with engine.begin() as conn:
            result = await conn.execute(reflected.delete().where(self._where(reflected, where)))

        logger.info(
            "target_rows_deleted",
            connection=connection,
            table=reflected.fullname,
            rows_affected=result.rowcount,
            where=render_key(where),
        )
        return result.rowcount > 0

    async def query(
        self,
        connection: str,
        table: str,
        schema: Optional[str],
        where: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Select rows as column -> value maps"""
        reflected = await self.get_table(connection, table, schema)
        engine = self.get_engine(connection)

        statement = select(reflected)
        if where:
            statement = statement.where(self._where(reflected, where))

        async with engine.connect() as conn:
            rows = (await conn.execute(statement)).mappings().all()
        return [dict(row) for row in rows]

    async def get_record_by_id(
        self,
        connection: str,
        table: str,
        record_id: Any,
        schema: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Fetch one row by its single-column primary key (empty dict if absent)"""
        pk_columns = await self.primary_key_columns(connection, table, schema)
        if len(pk_columns) != 1:
            raise TargetDataError(
                f"Table {_qualified(schema, table)} needs a single-column primary key for lookup by id"
            )
        rows = await self.query(connection, table, schema, {pk_columns[0]: record_id})
        return rows[0] if rows else {}

    async def close(self):
        """Dispose every target engine"""
        for name, engine in list(self._engines.items()):
            await engine.dispose()
            logger.info("target_engine_disposed", connection=name)
        self._engines.clear()


def _qualified(schema: Optional[str], table: str) -> str:
    return f"{schema}.{table}" if schema else table
