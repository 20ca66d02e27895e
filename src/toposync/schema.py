import logging
from enum import Enum

import sqlalchemy as sa
from sqlalchemy import Engine

logger = logging.getLogger(__name__)


# ============================================================
# VOCABULARIES
# ============================================================

class WorkerStatus(Enum):
    """Worker process status.
    """
    ALIVE = 'alive'
    DEAD = 'dead'
    UNLOADED = 'unloaded'


class WorkerLStatus(Enum):
    """Worker leadership role, independent of its alive/dead status.
    """
    NORMAL = 'normal'
    CANDIDATE = 'candidate'
    LEADER = 'leader'


class TopologyStatus(Enum):
    """Topology assignment status.
    """
    UNASSIGNED = 'unassigned'
    WAITING = 'waiting'
    RUNNING = 'running'
    ERROR = 'error'
    STOPPED = 'stopped'


class LeadershipStatus(Enum):
    """Cluster-wide leadership signal.
    """
    OK = 'ok'
    PENDING = 'pending'
    VACANT = 'vacant'


class MessageCommand(Enum):
    """Commands that can be sent to a worker mailbox.
    """
    ASSIGN_TOPOLOGY = 'assign_topology'
    VERIFY_TOPOLOGY = 'verify_topology'
    STOP_TOPOLOGY = 'stop_topology'
    STOP_TOPOLOGIES = 'stop_topologies'
    KILL_TOPOLOGY = 'kill_topology'
    SET_ENABLED = 'set_enabled'
    SET_DISABLED = 'set_disabled'
    REBALANCE = 'rebalance'
    SHUTDOWN = 'shutdown'


# ============================================================
# TABLES
# ============================================================

TABLE_KEYS = ['Worker', 'WorkerHistory', 'Topology', 'TopologyHistory', 'Message']

# Entity table -> (history table, key column, copied columns)
HISTORY = {
    'Worker': ('WorkerHistory', 'name', ['name', 'status', 'lstatus', 'last_ping']),
    'Topology': ('TopologyHistory', 'uuid', ['uuid', 'status', 'worker', 'weight', 'enabled',
                                             'worker_affinity', 'error', 'last_ping']),
}


def get_table_names(appname: str = 'topo_') -> dict[str, str]:
    """Get table names based on appname prefix.

    Args
        appname: Application name prefix for tables

    Returns
        Dictionary containing table names
    """
    return {
        'Worker': f'{appname}worker',
        'WorkerHistory': f'{appname}worker_history',
        'Topology': f'{appname}topology',
        'TopologyHistory': f'{appname}topology_history',
        'Message': f'{appname}message',
    }


def build_tables(metadata: sa.MetaData, appname: str = 'topo_') -> dict[str, sa.Table]:
    """Declare coordination tables on metadata.

    Args:
        metadata: Metadata to attach tables to
        appname: Application name prefix for tables

    Returns
        Dictionary mapping table keys to Table objects
    """
    names = get_table_names(appname)
    ts = sa.DateTime(timezone=True)

    worker = sa.Table(
        names['Worker'], metadata,
        sa.Column('name', sa.String(100), primary_key=True),
        sa.Column('status', sa.String(20), nullable=False, default=WorkerStatus.ALIVE.value),
        sa.Column('lstatus', sa.String(20), nullable=False, default=WorkerLStatus.NORMAL.value),
        sa.Column('last_ping', ts),
        sa.Column('created', ts),
    )

    worker_history = sa.Table(
        names['WorkerHistory'], metadata,
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('ts', ts, nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('lstatus', sa.String(20), nullable=False),
        sa.Column('last_ping', ts),
        sa.Index(f'idx_{names["WorkerHistory"]}_name_ts', 'name', 'ts'),
    )

    topology = sa.Table(
        names['Topology'], metadata,
        sa.Column('uuid', sa.String(100), primary_key=True),
        sa.Column('config', sa.Text, nullable=False),
        sa.Column('status', sa.String(20), nullable=False, default=TopologyStatus.UNASSIGNED.value),
        sa.Column('worker', sa.String(100)),
        sa.Column('weight', sa.Integer, nullable=False, default=1),
        sa.Column('enabled', sa.Boolean, nullable=False, default=True),
        sa.Column('worker_affinity', sa.Text, nullable=False, default=''),
        sa.Column('error', sa.Text),
        sa.Column('last_ping', ts),
        sa.Column('created', ts),
        sa.Index(f'idx_{names["Topology"]}_worker', 'worker'),
    )

    topology_history = sa.Table(
        names['TopologyHistory'], metadata,
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('uuid', sa.String(100), nullable=False),
        sa.Column('ts', ts, nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('worker', sa.String(100)),
        sa.Column('weight', sa.Integer),
        sa.Column('enabled', sa.Boolean),
        sa.Column('worker_affinity', sa.Text),
        sa.Column('error', sa.Text),
        sa.Column('last_ping', ts),
        sa.Index(f'idx_{names["TopologyHistory"]}_uuid_ts', 'uuid', 'ts'),
    )

    message = sa.Table(
        names['Message'], metadata,
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('worker', sa.String(100), nullable=False),
        sa.Column('cmd', sa.String(50), nullable=False),
        sa.Column('content', sa.Text, nullable=False),
        sa.Column('created', ts, nullable=False),
        sa.Column('valid_until', ts, nullable=False),
        sa.Index(f'idx_{names["Message"]}_worker', 'worker'),
    )

    return {
        'Worker': worker,
        'WorkerHistory': worker_history,
        'Topology': topology,
        'TopologyHistory': topology_history,
        'Message': message,
    }


def verify_tables_exist(engine: Engine, appname: str = 'topo_') -> dict[str, bool]:
    """Verify which required tables exist in the database.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables

    Returns
        Dictionary mapping table keys to existence status (True if exists, False otherwise)
    """
    tables = get_table_names(appname)
    inspector = sa.inspect(engine)
    return {key: inspector.has_table(tables[key]) for key in TABLE_KEYS}


def ensure_database_ready(engine: Engine, appname: str = 'topo_') -> None:
    """Ensure database has all required tables.

    Safe to call repeatedly - only missing tables are created.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables
    """
    logger.debug('Verifying database structure')

    table_status = verify_tables_exist(engine, appname)
    missing_tables = [k for k in TABLE_KEYS if not table_status.get(k, False)]
    if missing_tables:
        logger.info(f'Creating missing tables: {missing_tables}')

    metadata = sa.MetaData()
    build_tables(metadata, appname)
    try:
        metadata.create_all(engine, checkfirst=True)
    except Exception as e:
        logger.error(f'Failed to create tables: {e}')
        raise

    logger.info('Database structure verified and ready')
