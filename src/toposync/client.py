"""Coordination storage for workers and topologies.

Tracks which workers are alive, which topologies are assigned to which
worker, derives a cluster-wide leadership signal and carries short-lived
control messages to workers.
"""
import concurrent.futures
import datetime
import functools
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy import Engine
from sqlalchemy.exc import SQLAlchemyError

from toposync.clock import ensure_timezone_aware, utc_clock, utcnow
from toposync.config import CoordinationConfig
from toposync.schema import LeadershipStatus, MessageCommand, TopologyStatus
from toposync.schema import WorkerLStatus, WorkerStatus
from toposync.storage import SqlStore

logger = logging.getLogger(__name__)

__all__ = ['CoordinationStorage', 'CoordinationError', 'NotFound', 'InvalidStateTransition',
           'ValidationError', 'PersistenceFailure']

STOP_TOPOLOGY_TTL_MSEC = 30 * 1000
SHUTDOWN_TTL_MSEC = 60 * 1000
HISTORY_LIMIT = 100


# ============================================================
# EXCEPTIONS
# ============================================================

class CoordinationError(Exception):
    """Base class for coordination failures.
    """


class NotFound(CoordinationError):
    """Raised when a worker or topology does not exist.
    """


class InvalidStateTransition(CoordinationError):
    """Raised when an entity is not in a state that allows the operation.
    """


class ValidationError(CoordinationError, ValueError):
    """Raised for malformed input such as a topology config without a general section.
    """


# Driver and pool errors surface unchanged from SQLAlchemy.
PersistenceFailure = SQLAlchemyError


# ============================================================
# RECORDS
# ============================================================

@dataclass
class WorkerInfo:
    name: str
    status: WorkerStatus
    lstatus: WorkerLStatus
    last_ping: datetime.datetime


@dataclass
class TopologyInfo:
    uuid: str
    status: TopologyStatus
    worker: str | None
    weight: int
    enabled: bool
    worker_affinity: list[str]
    error: str | None
    last_ping: datetime.datetime
    config: dict | None = None


@dataclass
class Message:
    cmd: MessageCommand
    content: object
    created: datetime.datetime


@dataclass
class WorkerHistory:
    name: str
    ts: datetime.datetime
    status: WorkerStatus
    lstatus: WorkerLStatus
    last_ping: datetime.datetime


@dataclass
class TopologyHistory:
    uuid: str
    ts: datetime.datetime
    status: TopologyStatus
    worker: str | None
    weight: int
    enabled: bool
    worker_affinity: list[str] = field(default_factory=list)
    error: str | None = None
    last_ping: datetime.datetime | None = None


# ============================================================
# UTILITY FUNCTIONS
# ============================================================

def log_duration(operation_name: str = None):
    """Decorator to log method execution duration.

    Args:
        operation_name: Custom name for logging (defaults to function name)

    Returns
        Decorated function
    """
    def decorator(func: callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            name = operation_name or func.__name__
            start = time.time()
            result = func(*args, **kwargs)
            duration_ms = int((time.time() - start) * 1000)
            logger.debug(f'{name} completed in {duration_ms}ms')
            return result
        return wrapper
    return decorator


def fan_out(executor: concurrent.futures.Executor, func: callable, items: list,
            operation: str = 'fan_out') -> list:
    """Run func over items concurrently, failing fast without cancellation.

    Every item is submitted at once, with no ordering between items. Returns
    the results in item order once all items finished. If any item fails,
    the first failure (in item order among those finished) is raised as soon
    as it is seen; items still running are not cancelled and their effects
    persist.

    Args:
        executor: Executor to submit items to
        func: Callable applied to each item
        items: Items to process
        operation: Name for logging

    Returns
        List of results in item order
    """
    futures = [executor.submit(func, item) for item in items]
    if not futures:
        return []

    done, pending = concurrent.futures.wait(futures, return_when=concurrent.futures.FIRST_EXCEPTION)
    for future in futures:
        if future in done and future.exception() is not None:
            logger.error(f'{operation} failed ({len(pending)} sibling operations left running): '
                         f'{future.exception()}')
            raise future.exception()
    return [future.result() for future in futures]


def coerce_enum(enum_type: type[Enum], value, name: str) -> Enum:
    """Convert a raw value to a member of enum_type.

    Raises
        ValidationError: If value is not part of the vocabulary
    """
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError:
        allowed = [m.value for m in enum_type]
        raise ValidationError(f'Invalid {name}: {value!r} (expected one of {allowed})') from None


def parse_affinity(value: str | None) -> list[str]:
    return [x for x in (value or '').split(',') if len(x) > 0]


# ============================================================
# COORDINATION STORAGE
# ============================================================

class CoordinationStorage:
    """Coordination state of workers, topologies and mailboxes.

    Every status-reading operation first runs a throttled refresh (liveness
    sweep, then reassignment sweep) so callers never observe stale liveness
    data. Every status-writing operation is one atomic update plus one
    history append, delegated to the store.

    The refresh deadline belongs to this instance. Separate instances keep
    separate deadlines and may sweep concurrently; sweep updates are
    conditional so repeating them has no further effect.
    """

    def __init__(self, coordination_config: CoordinationConfig = None, engine: Engine = None,
                 clock: callable = None, store: SqlStore = None):
        """Initialize coordination storage.

        Args:
            coordination_config: Timing and connection settings (defaults used when None)
            engine: Existing SQLAlchemy engine, bypasses connection settings
            clock: Callable returning the current aware datetime (defaults to UTC now)
            store: Pre-built store, mainly for tests

        Raises
            ValueError: If clock returns a naive datetime
        """
        self.config = coordination_config or CoordinationConfig()
        clock = clock or utcnow
        ensure_timezone_aware(clock(), 'clock()')
        self.clock = utc_clock(clock)
        self.store = store or SqlStore(self.config, engine=engine, clock=self.clock)
        self.name = None
        self.dead_timeout = datetime.timedelta(seconds=self.config.dead_timeout_sec)
        self.lstatus_reset_timeout = datetime.timedelta(seconds=self.config.lstatus_reset_timeout_sec)
        self.refresh_interval = datetime.timedelta(seconds=self.config.refresh_interval_sec)
        self._next_refresh = None
        self._refresh_lock = threading.Lock()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.config.pool_size, thread_name_prefix='toposync')

    def init(self) -> None:
        """Provision coordination tables.
        """
        self.store.init()

    def close(self) -> None:
        """Release executor threads and database connections.
        """
        self._executor.shutdown(wait=True)
        self.store.close()

    def __enter__(self):
        self.init()
        return self

    def __exit__(self, exc_ty, exc_val, tb):
        self.close()

    def get_properties(self) -> list[dict]:
        return self.store.get_properties()

    # ============================================================
    # WORKERS
    # ============================================================

    def register_worker(self, name: str) -> None:
        """Register the worker that uses this coordination object.

        Called once at start-up; the name is remembered on the instance.
        """
        self.name = name
        self.store.register_worker(name)
        logger.info(f'Worker {name} registered')

    def set_worker_status(self, name: str, status: WorkerStatus | str) -> None:
        """Set worker status and refresh its ping (the worker heartbeat path).
        """
        status = coerce_enum(WorkerStatus, status, 'worker status')
        count = self.store.update('Worker', {'status': status.value, 'last_ping': self.clock()},
                                  {'name': name})
        if not count:
            raise NotFound(f'Worker not found: {name}')
        logger.debug(f'Worker {name} status set to {status.value}')

    def set_worker_lstatus(self, name: str, lstatus: WorkerLStatus | str) -> None:
        """Set worker leadership role and refresh its ping.
        """
        lstatus = coerce_enum(WorkerLStatus, lstatus, 'worker lstatus')
        count = self.store.update('Worker', {'lstatus': lstatus.value, 'last_ping': self.clock()},
                                  {'name': name})
        if not count:
            raise NotFound(f'Worker not found: {name}')
        logger.debug(f'Worker {name} lstatus set to {lstatus.value}')

    def _get_worker_status_internal(self) -> list[WorkerInfo]:
        rows = self.store.select('Worker', ['name', 'status', 'lstatus', 'last_ping'])
        return [WorkerInfo(
            name=row['name'],
            status=WorkerStatus(row['status']),
            lstatus=WorkerLStatus(row['lstatus']),
            last_ping=row['last_ping'] or self.clock(),
        ) for row in rows]

    def get_worker_status(self) -> list[WorkerInfo]:
        """List workers after a throttled refresh.
        """
        self.refresh_statuses()
        return self._get_worker_status_internal()

    def delete_worker(self, name: str) -> None:
        """Delete a worker. Only unloaded workers can be deleted.

        Raises
            NotFound: If the worker does not exist
            InvalidStateTransition: If the worker is not unloaded
        """
        hits = [w for w in self.get_worker_status() if w.name == name]
        if not hits:
            raise NotFound(f'Specified worker does not exist and cannot be deleted: {name}')
        if hits[0].status != WorkerStatus.UNLOADED:
            raise InvalidStateTransition(
                f'Specified worker is not unloaded and cannot be deleted: {name} ({hits[0].status.value})')
        self.store.delete('Worker', {'name': name, 'status': WorkerStatus.UNLOADED.value})
        logger.info(f'Worker {name} deleted')

    def shut_down_worker(self, name: str) -> None:
        """Ask a worker to shut down through its mailbox.
        """
        self.send_message_to_worker(name, MessageCommand.SHUTDOWN, {}, SHUTDOWN_TTL_MSEC)

    def get_worker_history(self, name: str) -> list[WorkerHistory]:
        """Most recent history records of a worker, newest first.
        """
        rows = self.store.select('WorkerHistory', where={'name': name},
                                 order_by=['ts desc', 'id desc'], limit=HISTORY_LIMIT)
        return [WorkerHistory(
            name=row['name'],
            ts=row['ts'],
            status=WorkerStatus(row['status']),
            lstatus=WorkerLStatus(row['lstatus']),
            last_ping=row['last_ping'],
        ) for row in rows]

    # ============================================================
    # LIVENESS SWEEP
    # ============================================================

    def _disable_defunct_worker(self, worker: WorkerInfo, now: datetime.datetime) -> int:
        """Demote one stale worker and clear its stale leadership claim.

        Returns
            Number of updates applied
        """
        changes = 0
        status = worker.status
        dead_limit = now - self.dead_timeout
        lstatus_limit = now - self.lstatus_reset_timeout

        if status == WorkerStatus.ALIVE and worker.last_ping < dead_limit:
            count = self.store.update(
                'Worker', {'status': WorkerStatus.DEAD.value},
                {'name': worker.name, 'status': WorkerStatus.ALIVE.value, 'last_ping__lt': dead_limit})
            if count:
                logger.warning(f'Worker {worker.name} missed heartbeats since {worker.last_ping}, marked dead')
                status = WorkerStatus.DEAD
                changes += count

        if worker.lstatus == WorkerLStatus.NORMAL:
            return changes

        normal = WorkerLStatus.NORMAL.value
        if status != WorkerStatus.ALIVE:
            count = self.store.update(
                'Worker', {'lstatus': normal},
                {'name': worker.name, 'lstatus__ne': normal, 'status__ne': WorkerStatus.ALIVE.value})
        elif worker.last_ping < lstatus_limit:
            count = self.store.update(
                'Worker', {'lstatus': normal},
                {'name': worker.name, 'lstatus__ne': normal, 'last_ping__lt': lstatus_limit})
        else:
            count = 0
        if count:
            logger.warning(f'Worker {worker.name} lost its {worker.lstatus.value} claim')
            changes += count
        return changes

    def disable_defunct_workers(self) -> int:
        """Mark stale workers dead and reset stale leadership claims.

        Workers are handled independently and concurrently.

        Returns
            Number of updates applied
        """
        now = self.clock()
        workers = self._get_worker_status_internal()
        results = fan_out(self._executor, lambda w: self._disable_defunct_worker(w, now), workers,
                          'disable_defunct_workers')
        return sum(results)

    # ============================================================
    # REASSIGNMENT SWEEP
    # ============================================================

    def _unassign_topology(self, topology: TopologyInfo, now: datetime.datetime,
                           dead_workers: set[str]) -> int:
        fields = {'status': TopologyStatus.UNASSIGNED.value, 'last_ping': now, 'error': None}
        if topology.status == TopologyStatus.WAITING and topology.last_ping < now - self.dead_timeout:
            count = self.store.update('Topology', fields, {
                'uuid': topology.uuid, 'status': TopologyStatus.WAITING.value,
                'last_ping__lt': now - self.dead_timeout})
            if count:
                logger.warning(f'Topology {topology.uuid} was not acknowledged by {topology.worker}, unassigned')
            return count
        if topology.status == TopologyStatus.RUNNING and topology.worker in dead_workers:
            count = self.store.update('Topology', fields, {
                'uuid': topology.uuid, 'status': TopologyStatus.RUNNING.value, 'worker': topology.worker})
            if count:
                logger.warning(f'Topology {topology.uuid} orphaned by dead worker {topology.worker}, unassigned')
            return count
        return 0

    def unassign_waiting_topologies(self) -> int:
        """Return stuck or orphaned topologies to unassigned.

        Must run after the liveness sweep so that it sees post-sweep worker state.

        Returns
            Number of topologies unassigned
        """
        dead_workers = {w.name for w in self._get_worker_status_internal()
                        if w.status in {WorkerStatus.DEAD, WorkerStatus.UNLOADED}}
        topologies = self._get_topology_status_internal()
        now = self.clock()
        results = fan_out(self._executor, lambda t: self._unassign_topology(t, now, dead_workers),
                          topologies, 'unassign_waiting_topologies')
        return sum(results)

    # ============================================================
    # REFRESH THROTTLE
    # ============================================================

    @log_duration('refresh')
    def _refresh(self) -> None:
        workers_changed = self.disable_defunct_workers()
        topologies_changed = self.unassign_waiting_topologies()
        if workers_changed or topologies_changed:
            logger.info(f'Refresh applied {workers_changed} worker and {topologies_changed} topology updates')

    def refresh_statuses(self) -> bool:
        """Run both sweeps unless a refresh ran less than refresh_interval ago.

        Returns
            True if the sweeps ran, False if throttled
        """
        now = self.clock()
        with self._refresh_lock:
            if self._next_refresh is not None and now < self._next_refresh:
                return False
            self._next_refresh = now + self.refresh_interval
        self._refresh()
        return True

    # ============================================================
    # LEADERSHIP
    # ============================================================

    def get_leadership_status(self) -> LeadershipStatus:
        """Classify leadership after a refresh: ok, pending or vacant.
        """
        self.refresh_statuses()
        counts = self.store.worker_lstatus_counts()
        if counts.get(WorkerLStatus.LEADER.value, 0) > 0:
            return LeadershipStatus.OK
        if counts.get(WorkerLStatus.CANDIDATE.value, 0) > 0:
            return LeadershipStatus.PENDING
        return LeadershipStatus.VACANT

    def announce_leader_candidacy(self, name: str) -> None:
        """Bid for leadership.

        Stale claims are cleared first so that a phantom leader does not
        block the bid. Whether the worker ends up candidate or leader is
        decided atomically by the store.
        """
        self.disable_defunct_workers()
        self.store.announce_candidacy(name)
        logger.info(f'Worker {name} announced leader candidacy')

    def check_leader_candidacy(self, name: str) -> bool:
        """Return whether the worker currently holds leadership.
        """
        return self.store.check_candidacy(name) == WorkerLStatus.LEADER.value

    # ============================================================
    # MAILBOX
    # ============================================================

    def send_message_to_worker(self, worker: str, cmd: MessageCommand | str, content,
                               valid_msec: int) -> None:
        """Queue a message for a worker, valid for valid_msec milliseconds.
        """
        cmd = coerce_enum(MessageCommand, cmd, 'message command')
        if valid_msec <= 0:
            raise ValidationError(f'Message validity must be positive, got {valid_msec}ms')
        try:
            payload = json.dumps(content)
        except (TypeError, ValueError) as e:
            raise ValidationError(f'Message content is not serializable: {e}') from e
        now = self.clock()
        self.store.insert('Message', {
            'worker': worker,
            'cmd': cmd.value,
            'content': payload,
            'created': now,
            'valid_until': now + datetime.timedelta(milliseconds=valid_msec),
        })
        logger.debug(f'Queued {cmd.value} for worker {worker}')

    def get_messages(self, name: str) -> list[Message]:
        """Fetch and remove the pending messages of a worker.

        Rows are deleted one by one and concurrently. If a delete fails the
        error is raised and the undeleted messages are delivered again on
        the next call, so handlers must be idempotent.
        """
        rows = self.store.messages_for_worker(name, self.clock())
        res = [Message(cmd=MessageCommand(row['cmd']), content=json.loads(row['content']),
                       created=row['created']) for row in rows]
        fan_out(self._executor, lambda message_id: self.store.delete('Message', {'id': message_id}),
                [row['id'] for row in rows], 'get_messages')
        if res:
            logger.debug(f'Delivered {len(res)} messages to worker {name}')
        return res

    # ============================================================
    # TOPOLOGIES
    # ============================================================

    def register_topology(self, uuid: str, config: dict) -> None:
        """Register a topology or replace the definition of an existing one.

        The config must contain a `general` section; `general.weight` and
        `general.worker_affinity` are extracted, the rest is stored as is.

        Raises
            ValidationError: If the config is malformed
        """
        general = config.get('general') if isinstance(config, dict) else None
        if not isinstance(general, dict):
            raise ValidationError(f'Topology configuration has no general section: {uuid}')

        weight = general.get('weight', 1)
        if isinstance(weight, bool) or not isinstance(weight, int) or weight < 1:
            raise ValidationError(f'Topology weight must be a positive integer: {weight!r}')

        affinity = general.get('worker_affinity') or []
        if not isinstance(affinity, list) or not all(isinstance(x, str) and x for x in affinity):
            raise ValidationError(f'Topology worker_affinity must be a list of worker names: {affinity!r}')

        try:
            payload = json.dumps(config)
        except (TypeError, ValueError) as e:
            raise ValidationError(f'Topology configuration is not serializable: {e}') from e

        self.store.register_topology(uuid, payload, weight, ','.join(affinity))
        logger.info(f'Topology {uuid} registered (weight={weight}, affinity={affinity})')

    def _topology_from_row(self, row: dict) -> TopologyInfo:
        config = row.get('config')
        return TopologyInfo(
            uuid=row['uuid'],
            status=TopologyStatus(row['status']),
            worker=row['worker'],
            weight=row['weight'],
            enabled=bool(row['enabled']),
            worker_affinity=parse_affinity(row['worker_affinity']),
            error=row.get('error'),
            last_ping=row['last_ping'] or self.clock(),
            config=json.loads(config) if config is not None else None,
        )

    def _get_topology_status_internal(self, where: dict = None) -> list[TopologyInfo]:
        rows = self.store.select(
            'Topology',
            ['uuid', 'status', 'worker', 'weight', 'worker_affinity', 'enabled', 'error', 'last_ping'],
            where, order_by=['uuid'])
        return [self._topology_from_row(row) for row in rows]

    def get_topology_status(self) -> list[TopologyInfo]:
        """List topologies after a throttled refresh.
        """
        self.refresh_statuses()
        return self._get_topology_status_internal()

    def get_topologies_for_worker(self, name: str) -> list[TopologyInfo]:
        """List topologies assigned to a worker after a throttled refresh.
        """
        self.refresh_statuses()
        return self._get_topology_status_internal({'worker': name})

    def get_topology_info(self, uuid: str) -> TopologyInfo:
        """Full topology record including its config, after a throttled refresh.

        Raises
            NotFound: If the topology does not exist
        """
        self.refresh_statuses()
        rows = self.store.select('Topology', where={'uuid': uuid})
        if not rows:
            raise NotFound(f'Requested topology not found: {uuid}')
        return self._topology_from_row(rows[0])

    def _update_topology(self, uuid: str, fields: dict) -> None:
        if not self.store.update('Topology', fields, {'uuid': uuid}):
            raise NotFound(f'Requested topology not found: {uuid}')

    def assign_topology(self, uuid: str, name: str) -> None:
        """Assign a topology to a worker; it waits for the worker to acknowledge.
        """
        self._update_topology(uuid, {
            'worker': name,
            'last_ping': self.clock(),
            'status': TopologyStatus.WAITING.value,
        })
        logger.info(f'Topology {uuid} assigned to {name}')

    def set_topology_status(self, uuid: str, status: TopologyStatus | str, error: str = None) -> None:
        """Record a topology status reported by its worker.
        """
        status = coerce_enum(TopologyStatus, status, 'topology status')
        self._update_topology(uuid, {'status': status.value, 'last_ping': self.clock(), 'error': error})
        logger.debug(f'Topology {uuid} status set to {status.value}')

    def clear_topology_error(self, uuid: str) -> None:
        """Return an errored topology to unassigned.

        The write only applies while the topology is still in error, so a
        status reported concurrently by its worker is never overwritten.

        Raises
            NotFound: If the topology does not exist
            InvalidStateTransition: If the topology is not in error
        """
        self.refresh_statuses()
        count = self.store.update(
            'Topology',
            {'status': TopologyStatus.UNASSIGNED.value, 'last_ping': self.clock(), 'error': None},
            {'uuid': uuid, 'status': TopologyStatus.ERROR.value})
        if not count:
            rows = self.store.select('Topology', ['status'], {'uuid': uuid})
            if not rows:
                raise NotFound(f'Requested topology not found: {uuid}')
            raise InvalidStateTransition(
                f'Specified topology is not marked as error: {uuid} ({rows[0]["status"]})')
        logger.info(f'Topology {uuid} error cleared')

    def enable_topology(self, uuid: str) -> None:
        self._update_topology(uuid, {'enabled': True})
        logger.info(f'Topology {uuid} enabled')

    def disable_topology(self, uuid: str) -> None:
        self._update_topology(uuid, {'enabled': False})
        logger.info(f'Topology {uuid} disabled')

    def stop_topology(self, uuid: str) -> None:
        """Disable a topology and tell its worker to stop it.

        Nothing happens when the topology has no worker.
        """
        info = self.get_topology_info(uuid)
        if not info.worker:
            logger.debug(f'Topology {uuid} has no worker, nothing to stop')
            return
        self.disable_topology(uuid)
        self.send_message_to_worker(info.worker, MessageCommand.STOP_TOPOLOGY, {'uuid': uuid},
                                    STOP_TOPOLOGY_TTL_MSEC)

    def delete_topology(self, uuid: str) -> None:
        """Delete a topology regardless of its status or assignment.
        """
        count = self.store.delete('Topology', {'uuid': uuid})
        if count:
            logger.info(f'Topology {uuid} deleted')

    def get_topology_history(self, uuid: str) -> list[TopologyHistory]:
        """Most recent history records of a topology, newest first.
        """
        rows = self.store.select('TopologyHistory', where={'uuid': uuid},
                                 order_by=['ts desc', 'id desc'], limit=HISTORY_LIMIT)
        return [TopologyHistory(
            uuid=row['uuid'],
            ts=row['ts'],
            status=TopologyStatus(row['status']),
            worker=row['worker'],
            weight=row['weight'],
            enabled=bool(row['enabled']),
            worker_affinity=parse_affinity(row['worker_affinity']),
            error=row['error'],
            last_ping=row['last_ping'],
        ) for row in rows]
