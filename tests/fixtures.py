"""Shared test fixtures, utilities, and helpers.

USE THIS FILE FOR:
- Config builders and the synthetic clock
- Object factories for workers and topologies
- Direct row manipulation that bypasses the coordination API
"""
import datetime
import logging

from toposync.client import CoordinationStorage
from toposync.config import CoordinationConfig
from toposync.schema import TopologyStatus

logger = logging.getLogger(__name__)

__all__ = ['FakeClock', 'make_config', 'topology_config', 'add_topology',
           'add_workers', 'set_worker_ping', 'set_topology_ping', 'worker_row', 'topology_row',
           'history_count', 'T0']

T0 = datetime.datetime(2024, 1, 1, 12, 0, 0, tzinfo=datetime.timezone.utc)


# ============================================================================
# CLOCK
# ============================================================================

class FakeClock:
    """Synthetic clock; time only moves when advanced.
    """

    def __init__(self, start: datetime.datetime = T0):
        self.now = start

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> datetime.datetime:
        self.now += datetime.timedelta(seconds=seconds)
        return self.now


# ============================================================================
# CONFIG BUILDERS
# ============================================================================

def make_config(**overrides) -> CoordinationConfig:
    """Create CoordinationConfig for tests.

    Usage:
        config = make_config()
        config = make_config(pool_size=2)
    """
    defaults = {
        'dead_timeout_sec': 30,
        'lstatus_reset_timeout_sec': 10,
        'refresh_interval_sec': 1,
        'pool_size': 4,
    }
    defaults.update(overrides)
    return CoordinationConfig(**defaults)


def topology_config(weight: int = 1, worker_affinity: list[str] = None, **extra) -> dict:
    general = {'heartbeat': 1000, 'weight': weight}
    if worker_affinity is not None:
        general['worker_affinity'] = worker_affinity
    config = {'general': general, 'spouts': [], 'bolts': []}
    config.update(extra)
    return config


# ============================================================================
# FACTORIES
# ============================================================================

def add_workers(storage: CoordinationStorage, *names: str) -> None:
    for name in names:
        storage.register_worker(name)


def add_topology(storage: CoordinationStorage, uuid: str, status: TopologyStatus = None,
                 worker: str = None, **config) -> None:
    """Register a topology and optionally force its status and worker.
    """
    storage.register_topology(uuid, topology_config(**config))
    fields = {}
    if status is not None:
        fields['status'] = status.value
    if worker is not None:
        fields['worker'] = worker
    if fields:
        storage.store.update('Topology', fields, {'uuid': uuid}, history=False)


# ============================================================================
# DIRECT ROW ACCESS
# ============================================================================

def set_worker_ping(storage: CoordinationStorage, name: str, when: datetime.datetime) -> None:
    storage.store.update('Worker', {'last_ping': when}, {'name': name}, history=False)


def set_topology_ping(storage: CoordinationStorage, uuid: str, when: datetime.datetime) -> None:
    storage.store.update('Topology', {'last_ping': when}, {'uuid': uuid}, history=False)


def worker_row(storage: CoordinationStorage, name: str) -> dict:
    rows = storage.store.select('Worker', where={'name': name})
    return rows[0] if rows else None


def topology_row(storage: CoordinationStorage, uuid: str) -> dict:
    rows = storage.store.select('Topology', where={'uuid': uuid})
    return rows[0] if rows else None


def history_count(storage: CoordinationStorage, table_key: str, key: str) -> int:
    column = 'name' if table_key == 'WorkerHistory' else 'uuid'
    return len(storage.store.select(table_key, ['id'], {column: key}))
