"""
Application configuration from config.ini.

Every setting has a fallback, so a station starts without a config file
(in-memory store, built-in manager badges) and logs that defaults are used.

    [Storage]
    Backend = json            ; memory | json | sqlite
    DataPath = \\\\server\\scan_data

    [Retention]
    HistoryThreshold = 100
    RetentionMonths = 12

    [Security]
    ManagerBadges = ASP0106, ASP1752, ASP0028
    ScannerWindowMs = 200

    [Scanning]
    AllowAdHoc = true
    WriteBehind = true

    [Directory]
    EmployeesPath = employees.json
    CustomerMapPath = customer_codes.json

    [Labels]
    OutputDir = labels

    [Station]
    StationId = PC01         ; defaults to the host name
"""
import configparser
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from async_state_writer import PersistenceWriter
from authorization import DEFAULT_MANAGER_BADGES, DEFAULT_SCANNER_WINDOW_MS, ManagerAuthorizer
from logger import get_logger
from snapshot_store import DEFAULT_HISTORY_THRESHOLD, DEFAULT_RETENTION_MONTHS, SnapshotStore
from storage import InMemoryBackend, JsonFileBackend, SqliteBackend, StateBackend

logger = get_logger(__name__)

BACKENDS = ('memory', 'json', 'sqlite')

DEFAULT_DATA_DIR = Path(os.path.expanduser("~")) / ".scan_station" / "data"


@dataclass
class AppConfig:
    """Settings of one scan station."""
    backend: str = 'memory'
    data_path: Path = DEFAULT_DATA_DIR
    history_threshold: int = DEFAULT_HISTORY_THRESHOLD
    retention_months: int = DEFAULT_RETENTION_MONTHS
    manager_badges: Tuple[str, ...] = DEFAULT_MANAGER_BADGES
    scanner_window_ms: int = DEFAULT_SCANNER_WINDOW_MS
    allow_ad_hoc: bool = True
    write_behind: bool = True
    employees_path: Optional[Path] = None
    customer_map_path: Optional[Path] = None
    label_dir: Path = field(default_factory=lambda: Path("labels"))
    station_id: Optional[str] = None

    @classmethod
    def load(cls, config_path: str = "config.ini") -> 'AppConfig':
        """
        Read config.ini; missing sections and keys fall back to defaults.

        Raises:
            ValueError: If a value is present but invalid (unknown backend,
                        non-numeric threshold)
        """
        config = configparser.ConfigParser()
        if Path(config_path).exists():
            config.read(config_path, encoding='utf-8')
            logger.info(f"Configuration loaded from {config_path}")
        else:
            logger.warning(f"Config file not found: {config_path}, using defaults")

        backend = config.get('Storage', 'Backend', fallback='memory').strip().lower()
        if backend not in BACKENDS:
            raise ValueError(f"Unknown storage backend '{backend}' in config.ini "
                             f"(expected one of: {', '.join(BACKENDS)})")

        badges = config.get('Security', 'ManagerBadges', fallback='')
        manager_badges = tuple(b.strip() for b in badges.split(',') if b.strip()) or DEFAULT_MANAGER_BADGES

        employees_path = config.get('Directory', 'EmployeesPath', fallback='')
        customer_map_path = config.get('Directory', 'CustomerMapPath', fallback='')

        return cls(
            backend=backend,
            data_path=Path(config.get('Storage', 'DataPath', fallback=str(DEFAULT_DATA_DIR))).expanduser(),
            history_threshold=config.getint('Retention', 'HistoryThreshold',
                                            fallback=DEFAULT_HISTORY_THRESHOLD),
            retention_months=config.getint('Retention', 'RetentionMonths',
                                           fallback=DEFAULT_RETENTION_MONTHS),
            manager_badges=manager_badges,
            scanner_window_ms=config.getint('Security', 'ScannerWindowMs',
                                            fallback=DEFAULT_SCANNER_WINDOW_MS),
            allow_ad_hoc=config.getboolean('Scanning', 'AllowAdHoc', fallback=True),
            write_behind=config.getboolean('Scanning', 'WriteBehind', fallback=True),
            employees_path=Path(employees_path) if employees_path else None,
            customer_map_path=Path(customer_map_path) if customer_map_path else None,
            label_dir=Path(config.get('Labels', 'OutputDir', fallback='labels')).expanduser(),
            station_id=config.get('Station', 'StationId', fallback='').strip() or socket.gethostname(),
        )


def build_backend(config: AppConfig) -> StateBackend:
    """Construct the storage backend named in the configuration."""
    if config.backend == 'json':
        return JsonFileBackend(config.data_path)
    if config.backend == 'sqlite':
        db_path = config.data_path
        if db_path.suffix.lower() not in ('.db', '.sqlite', '.sqlite3'):
            db_path = db_path / "scan_station.db"
        return SqliteBackend(db_path)
    logger.warning("Using in-memory storage: scans are lost when the station exits")
    return InMemoryBackend()


def build_store(config: AppConfig, backend: Optional[StateBackend] = None) -> SnapshotStore:
    """Snapshot store over the configured backend, write-behind unless disabled."""
    return SnapshotStore(
        backend or build_backend(config),
        writer=PersistenceWriter(sync_mode=not config.write_behind),
        history_threshold=config.history_threshold,
        retention_months=config.retention_months,
        station_id=config.station_id,
    )


def build_authorizer(config: AppConfig) -> ManagerAuthorizer:
    return ManagerAuthorizer(config.manager_badges, max_window_ms=config.scanner_window_ms)
