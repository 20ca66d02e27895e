"""Relational persistence for coordination storage.

Provides the primitives the coordination layer relies on: single-row
update with history append, insert, filtered select, delete, and a few
named routines that must run atomically (worker/topology registration,
leader candidacy, mailbox listing, lstatus aggregation).

Filters are column -> value mappings. A key may carry an operator suffix
(`last_ping__lt`, `status__ne`, `name__in`); plain keys mean equality and
a None value means IS NULL.
"""
import contextlib
import datetime
import logging
import operator

import sqlalchemy as sa
from sqlalchemy import Engine, create_engine

from toposync.clock import as_utc, utc_clock, utcnow
from toposync.config import CoordinationConfig
from toposync.schema import HISTORY, TopologyStatus, WorkerLStatus
from toposync.schema import WorkerStatus, build_tables, ensure_database_ready

logger = logging.getLogger(__name__)

__all__ = ['SqlStore']

_OPERATORS = {
    'eq': operator.eq,
    'ne': operator.ne,
    'lt': operator.lt,
    'le': operator.le,
    'gt': operator.gt,
    'ge': operator.ge,
    'in': lambda column, value: column.in_(value),
}


def _normalize(row) -> dict:
    """Convert a result row to a dict with aware UTC timestamps.
    """
    record = dict(row._mapping)
    for key, value in record.items():
        if isinstance(value, datetime.datetime):
            record[key] = as_utc(value)
    return record


class SqlStore:
    """Coordination tables reached through a pooled SQLAlchemy engine.
    """

    def __init__(self, coord_config: CoordinationConfig, engine: Engine = None, clock: callable = None):
        """Initialize store.

        Args:
            coord_config: Coordination configuration with connection parameters
            engine: Existing engine to use instead of building one from the config
            clock: Callable returning the current aware datetime
        """
        if engine is None:
            options = {'pool_pre_ping': True, 'pool_size': coord_config.pool_size,
                       'max_overflow': coord_config.max_overflow}
            if coord_config.isolation_level:
                options['isolation_level'] = coord_config.isolation_level
            engine = create_engine(coord_config.connection_string, **options)
        self.engine = engine
        self.appname = coord_config.appname
        self.pool_size = coord_config.pool_size
        self.clock = utc_clock(clock or utcnow)
        self.metadata = sa.MetaData()
        self.tables = build_tables(self.metadata, self.appname)

    def init(self) -> None:
        """Create missing tables.
        """
        ensure_database_ready(self.engine, self.appname)

    def close(self) -> None:
        """Dispose of engine resources.
        """
        with contextlib.suppress(Exception):
            self.engine.dispose()

    def get_properties(self) -> list[dict]:
        """Describe the store for diagnostics. Never includes the password.
        """
        url = self.engine.url
        return [
            {'key': 'type', 'value': 'SqlStore'},
            {'key': 'dialect', 'value': self.engine.dialect.name},
            {'key': 'host', 'value': url.host},
            {'key': 'database', 'value': url.database},
            {'key': 'port', 'value': url.port},
            {'key': 'user', 'value': url.username},
            {'key': 'appname', 'value': self.appname},
            {'key': 'connectionLimit', 'value': self.pool_size},
        ]

    # ============================================================
    # PRIMITIVES
    # ============================================================

    def _conditions(self, table: sa.Table, where: dict) -> list:
        conditions = []
        for key, value in (where or {}).items():
            name, _, op = key.partition('__')
            column = table.c[name]
            op = op or 'eq'
            if op not in _OPERATORS:
                raise ValueError(f'Unsupported filter operator: {key}')
            if value is None and op in ('eq', 'ne'):
                conditions.append(column.is_(None) if op == 'eq' else column.is_not(None))
            else:
                conditions.append(_OPERATORS[op](column, value))
        return conditions

    def _append_history(self, conn, table_key: str, key_value, ts: datetime.datetime) -> None:
        """Copy the current entity row into its history table.
        """
        history_key, key_column, columns = HISTORY[table_key]
        table = self.tables[table_key]
        history = self.tables[history_key]
        source = sa.select(
            *[table.c[c] for c in columns],
            sa.literal(ts, type_=sa.DateTime(timezone=True))
        ).where(table.c[key_column] == key_value)
        conn.execute(sa.insert(history).from_select([*columns, 'ts'], source))

    def update(self, table_key: str, fields: dict, where: dict, history: bool = True) -> int:
        """Update matching rows and append history in one transaction.

        History is appended only when a row actually changed. For tables
        with history the filter must contain the key column by equality.

        Returns
            Number of rows updated
        """
        table = self.tables[table_key]
        track = history and table_key in HISTORY
        if track:
            key_column = HISTORY[table_key][1]
            if key_column not in where:
                raise ValueError(f'Update of {table_key} with history requires {key_column} in filter')

        logger.debug(f'UPDATE {table.name} SET {fields} WHERE {where}')
        with self.engine.begin() as conn:
            stmt = sa.update(table).where(*self._conditions(table, where)).values(**fields)
            count = conn.execute(stmt).rowcount
            if count and track:
                self._append_history(conn, table_key, where[key_column], self.clock())
        return count

    def insert(self, table_key: str, fields: dict) -> None:
        table = self.tables[table_key]
        logger.debug(f'INSERT INTO {table.name} {fields}')
        with self.engine.begin() as conn:
            conn.execute(sa.insert(table).values(**fields))

    def select(self, table_key: str, columns: list[str] = None, where: dict = None,
               order_by: list[str] = None, limit: int = None) -> list[dict]:
        """Select rows from a table.

        Args:
            table_key: Table key (see schema.TABLE_KEYS)
            columns: Column names, all columns when omitted
            where: Filter mapping
            order_by: Column names, each optionally followed by ' desc'
            limit: Maximum number of rows

        Returns
            List of row dicts
        """
        table = self.tables[table_key]
        stmt = sa.select(*[table.c[c] for c in columns]) if columns else sa.select(table)
        conditions = self._conditions(table, where)
        if conditions:
            stmt = stmt.where(*conditions)
        for item in order_by or []:
            name, _, direction = item.partition(' ')
            column = table.c[name]
            stmt = stmt.order_by(column.desc() if direction.strip().lower() == 'desc' else column.asc())
        if limit:
            stmt = stmt.limit(limit)

        logger.debug(f'SELECT {columns or "*"} FROM {table.name} WHERE {where}')
        with self.engine.connect() as conn:
            return [_normalize(row) for row in conn.execute(stmt)]

    def delete(self, table_key: str, where: dict) -> int:
        """Delete matching rows.

        Returns
            Number of rows deleted
        """
        table = self.tables[table_key]
        logger.debug(f'DELETE FROM {table.name} WHERE {where}')
        with self.engine.begin() as conn:
            return conn.execute(sa.delete(table).where(*self._conditions(table, where))).rowcount

    # ============================================================
    # ROUTINES
    # ============================================================

    def register_worker(self, name: str) -> None:
        """Create or revive a worker as alive with a normal role.
        """
        worker = self.tables['Worker']
        now = self.clock()
        fields = {'status': WorkerStatus.ALIVE.value, 'lstatus': WorkerLStatus.NORMAL.value, 'last_ping': now}
        with self.engine.begin() as conn:
            count = conn.execute(sa.update(worker).where(worker.c.name == name).values(**fields)).rowcount
            if not count:
                conn.execute(sa.insert(worker).values(name=name, created=now, **fields))
            self._append_history(conn, 'Worker', name, now)
        logger.debug(f'Registered worker {name} ({"revived" if count else "new"})')

    def register_topology(self, uuid: str, config: str, weight: int, worker_affinity: str) -> None:
        """Create a topology or replace the definition of an existing one.

        The status of an existing topology is left untouched.
        """
        topology = self.tables['Topology']
        now = self.clock()
        fields = {'config': config, 'weight': weight, 'worker_affinity': worker_affinity}
        with self.engine.begin() as conn:
            count = conn.execute(sa.update(topology).where(topology.c.uuid == uuid).values(**fields)).rowcount
            if not count:
                conn.execute(sa.insert(topology).values(
                    uuid=uuid, status=TopologyStatus.UNASSIGNED.value, enabled=True,
                    last_ping=now, created=now, **fields))
            self._append_history(conn, 'Topology', uuid, now)
        logger.debug(f'Registered topology {uuid} ({"updated" if count else "new"})')

    def announce_candidacy(self, name: str) -> None:
        """Bid for leadership.

        An alive worker with a normal role becomes candidate when no leader
        exists. A candidate is promoted to leader when no leader exists and
        no other candidate sorts before it. Both steps are single
        conditional statements inside one transaction.
        """
        worker = self.tables['Worker']
        other = worker.alias('other')
        no_leader = ~sa.exists().where(other.c.lstatus == WorkerLStatus.LEADER.value)
        no_prior_candidate = ~sa.exists().where(
            other.c.lstatus == WorkerLStatus.CANDIDATE.value, other.c.name < name)

        with self.engine.begin() as conn:
            candidate = conn.execute(
                sa.update(worker)
                .where(worker.c.name == name,
                       worker.c.status == WorkerStatus.ALIVE.value,
                       worker.c.lstatus == WorkerLStatus.NORMAL.value,
                       no_leader)
                .values(lstatus=WorkerLStatus.CANDIDATE.value)).rowcount
            leader = conn.execute(
                sa.update(worker)
                .where(worker.c.name == name,
                       worker.c.status == WorkerStatus.ALIVE.value,
                       worker.c.lstatus == WorkerLStatus.CANDIDATE.value,
                       no_leader,
                       no_prior_candidate)
                .values(lstatus=WorkerLStatus.LEADER.value)).rowcount
            if candidate or leader:
                self._append_history(conn, 'Worker', name, self.clock())
        logger.debug(f'Candidacy of {name}: candidate={bool(candidate)}, leader={bool(leader)}')

    def check_candidacy(self, name: str) -> str | None:
        """Return the worker's current lstatus, None when unknown.
        """
        rows = self.select('Worker', ['lstatus'], {'name': name})
        return rows[0]['lstatus'] if rows else None

    def messages_for_worker(self, name: str, now: datetime.datetime) -> list[dict]:
        """List unexpired messages for a worker in creation order.

        Expired messages of the worker are purged first.
        """
        purged = self.delete('Message', {'worker': name, 'valid_until__le': now})
        if purged:
            logger.debug(f'Purged {purged} expired messages of worker {name}')
        return self.select(
            'Message', ['id', 'cmd', 'content', 'created'],
            {'worker': name, 'valid_until__gt': now},
            order_by=['created', 'id'])

    def worker_lstatus_counts(self) -> dict[str, int]:
        """Count workers per lstatus.
        """
        worker = self.tables['Worker']
        stmt = sa.select(worker.c.lstatus, sa.func.count()).group_by(worker.c.lstatus)
        with self.engine.connect() as conn:
            return {row[0]: row[1] for row in conn.execute(stmt)}
