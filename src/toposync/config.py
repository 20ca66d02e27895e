import os
from dataclasses import dataclass
from types import SimpleNamespace

sync = SimpleNamespace(
    sql=SimpleNamespace(
        appname=os.getenv('TOPOSYNC_SQL_APPNAME', 'topo_'),
        url=os.getenv('TOPOSYNC_SQL_URL'),
        host=os.getenv('TOPOSYNC_SQL_HOST', 'localhost'),
        dbname=os.getenv('TOPOSYNC_SQL_DATABASE', 'toposync'),
        user=os.getenv('TOPOSYNC_SQL_USERNAME', 'postgres'),
        passwd=os.getenv('TOPOSYNC_SQL_PASSWORD', 'postgres'),
        port=int(os.getenv('TOPOSYNC_SQL_PORT', '5432')),
        pool_size=int(os.getenv('TOPOSYNC_SQL_POOL_SIZE', '10')),
        isolation_level=os.getenv('TOPOSYNC_SQL_ISOLATION_LEVEL'),
    ),
    coordination=SimpleNamespace(
        dead_timeout_sec=float(os.getenv('TOPOSYNC_DEAD_TIMEOUT', '30')),
        lstatus_reset_timeout_sec=float(os.getenv('TOPOSYNC_LSTATUS_RESET_TIMEOUT', '10')),
        refresh_interval_sec=float(os.getenv('TOPOSYNC_REFRESH_INTERVAL', '1')),
    )
)


@dataclass
class CoordinationConfig:
    """Configuration for coordination storage.

    All timing parameters are in seconds. A worker that has not pinged for
    `dead_timeout_sec` is declared dead; a leader or candidate loses its
    claim after `lstatus_reset_timeout_sec`, which must stay shorter than
    the dead timeout.

    Connection parameters are used to build a PostgreSQL URL unless `url`
    is given explicitly.
    """
    dead_timeout_sec: float = 30
    lstatus_reset_timeout_sec: float = 10
    refresh_interval_sec: float = 1
    pool_size: int = 10
    max_overflow: int = 5
    isolation_level: str = None

    url: str = None
    host: str = 'localhost'
    port: int = 5432
    dbname: str = 'toposync'
    user: str = 'postgres'
    password: str = 'postgres'
    appname: str = 'topo_'

    def __post_init__(self):
        if self.lstatus_reset_timeout_sec >= self.dead_timeout_sec:
            raise ValueError(
                f'lstatus_reset_timeout_sec ({self.lstatus_reset_timeout_sec}) must be shorter '
                f'than dead_timeout_sec ({self.dead_timeout_sec})')
        if self.pool_size < 1:
            raise ValueError(f'pool_size must be positive, got {self.pool_size}')

    @classmethod
    def from_env(cls) -> 'CoordinationConfig':
        """Build configuration from the environment-driven `sync` defaults.
        """
        return cls(
            dead_timeout_sec=sync.coordination.dead_timeout_sec,
            lstatus_reset_timeout_sec=sync.coordination.lstatus_reset_timeout_sec,
            refresh_interval_sec=sync.coordination.refresh_interval_sec,
            pool_size=sync.sql.pool_size,
            isolation_level=sync.sql.isolation_level,
            url=sync.sql.url,
            host=sync.sql.host,
            port=sync.sql.port,
            dbname=sync.sql.dbname,
            user=sync.sql.user,
            password=sync.sql.passwd,
            appname=sync.sql.appname,
        )

    @property
    def connection_string(self) -> str:
        if self.url:
            return self.url
        return build_connection_string(self.host, self.port, self.dbname, self.user, self.password)


def build_connection_string(host: str, port: int, dbname: str, user: str, password: str) -> str:
    """Build PostgreSQL connection string from parameters.
    """
    return (
        f'postgresql+psycopg://{user}:{password}'
        f'@{host}:{port}/{dbname}'
    )
