__version__ = '1.0.0'

from toposync.client import CoordinationError as CoordinationError
from toposync.client import CoordinationStorage as CoordinationStorage
from toposync.client import InvalidStateTransition as InvalidStateTransition
from toposync.client import NotFound as NotFound
from toposync.client import PersistenceFailure as PersistenceFailure
from toposync.client import ValidationError as ValidationError
from toposync.config import CoordinationConfig as CoordinationConfig
from toposync.config import build_connection_string as build_connection_string
from toposync.schema import LeadershipStatus as LeadershipStatus
from toposync.schema import MessageCommand as MessageCommand
from toposync.schema import TopologyStatus as TopologyStatus
from toposync.schema import WorkerLStatus as WorkerLStatus
from toposync.schema import WorkerStatus as WorkerStatus
from toposync.schema import \
    get_table_names as get_table_names
