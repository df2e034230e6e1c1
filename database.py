"""
Storage Layer

One interface for miners, commands, notifications and fleet settings, with a
durable sqlite implementation and an in-memory implementation that behaves
the same. ``open_store()`` picks one at startup: the sqlite file when it can
be opened, memory otherwise.
"""
import copy
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from threading import Lock
from typing import Dict, List, Optional, Tuple

from models import (
    Command, CommandStatus, CommandType, FleetSettings, MetricSample,
    MinerRecord, Notification, MINER_FIELDS, POWER_FIELDS, THERMAL_FIELDS,
    DATETIME_FIELDS, isoformat, parse_datetime,
)

logger = logging.getLogger(__name__)


class MinerNotFoundError(KeyError):
    """Raised when a miner id is not known to the store"""


def merge_sample(record: Optional[MinerRecord], sample: MetricSample, now: datetime) -> MinerRecord:
    """Fold a telemetry sample into a miner's identity and liveness fields"""
    if record is None:
        record = MinerRecord(miner_id=sample.miner_id, ip=sample.ip or sample.miner_id)

    was_online = record.online
    if sample.online is True and was_online is not True:
        record.last_online_at = now

    record.ip = sample.ip or record.ip or sample.miner_id
    record.asic_type = sample.asic_type or record.asic_type
    record.firmware = sample.firmware or record.firmware
    if sample.expected_hashrate is not None:
        record.expected_hashrate = sample.expected_hashrate
    if sample.online is not None:
        record.online = sample.online
    if sample.read_status is not None:
        record.read_status = sample.read_status
    record.error = sample.error
    record.last_seen = now
    record.last_metric = sample.raw
    return record


def check_patch(patch: Dict):
    unknown = set(patch) - set(MINER_FIELDS) - THERMAL_FIELDS - POWER_FIELDS
    if unknown or 'miner_id' in patch:
        raise KeyError(f"Cannot patch miner fields: {sorted(unknown or ['miner_id'])}")


class MinerStore(ABC):
    """What the automation core needs from persistence"""

    # Miners

    @abstractmethod
    def get_miner(self, miner_id: str) -> Optional[MinerRecord]:
        ...

    @abstractmethod
    def list_miners(self) -> List[MinerRecord]:
        ...

    @abstractmethod
    def record_metric(self, sample: MetricSample, now: Optional[datetime] = None) -> MinerRecord:
        """Create or refresh a miner from a telemetry sample"""

    @abstractmethod
    def update_miner(self, miner_id: str, patch: Dict) -> MinerRecord:
        """Apply a flat field patch; raises MinerNotFoundError"""

    def find_miners_with_bound_outlet(self) -> List[MinerRecord]:
        return [m for m in self.list_miners() if m.power.bound_outlet_id]

    @abstractmethod
    def bind_outlet(self, miner_id: str, outlet_id: Optional[str]) -> MinerRecord:
        """Bind an outlet to a miner, clearing any other miner bound to it"""

    @abstractmethod
    def sync_miners(self, roster: List[Tuple[str, Optional[float]]]) -> List[str]:
        """
        Reconcile the miner list with an agent's roster of (id, expected hashrate).

        Listed miners are created or refreshed; a missing expected hashrate
        leaves the stored one alone. Miners not listed are deleted together
        with their commands. Returns the removed miner ids.
        """

    # Commands

    @abstractmethod
    def create_command(self, command: Command) -> Command:
        ...

    @abstractmethod
    def find_pending_command(self, miner_id: str, command_type: CommandType) -> Optional[Command]:
        ...

    @abstractmethod
    def next_pending_command(self, miner_id: str) -> Optional[Command]:
        """Oldest pending command for a miner"""

    @abstractmethod
    def get_command(self, command_id: str) -> Optional[Command]:
        ...

    @abstractmethod
    def complete_command(self, command_id: str, status: CommandStatus,
                         error: Optional[str] = None) -> Optional[Command]:
        ...

    # Notifications

    @abstractmethod
    def create_notification(self, notification: Notification) -> Notification:
        ...

    @abstractmethod
    def list_notifications(self, limit: int = 50) -> List[Notification]:
        """Newest first"""

    # Settings

    @abstractmethod
    def get_settings(self) -> FleetSettings:
        ...

    @abstractmethod
    def update_settings(self, patch: Dict) -> FleetSettings:
        ...


class MemoryStore(MinerStore):
    """Process-local store with the same semantics as the sqlite store"""

    storage = 'memory'

    def __init__(self):
        self._lock = Lock()
        self._miners: Dict[str, MinerRecord] = {}
        self._commands: List[Command] = []
        self._notifications: List[Notification] = []
        self._settings = FleetSettings()

    def get_miner(self, miner_id):
        with self._lock:
            record = self._miners.get(miner_id)
            return copy.deepcopy(record) if record else None

    def list_miners(self):
        with self._lock:
            return [copy.deepcopy(self._miners[k]) for k in sorted(self._miners)]

    def record_metric(self, sample, now=None):
        now = now or datetime.now()
        with self._lock:
            record = merge_sample(self._miners.get(sample.miner_id), sample, now)
            self._miners[sample.miner_id] = record
            return copy.deepcopy(record)

    def update_miner(self, miner_id, patch):
        check_patch(patch)
        with self._lock:
            record = self._miners.get(miner_id)
            if record is None:
                raise MinerNotFoundError(miner_id)
            record.apply_patch(patch)
            return copy.deepcopy(record)

    def bind_outlet(self, miner_id, outlet_id):
        with self._lock:
            target = self._miners.get(miner_id)
            if target is None:
                raise MinerNotFoundError(miner_id)
            if outlet_id:
                for other_id, other in self._miners.items():
                    if other_id != miner_id and other.power.bound_outlet_id == outlet_id:
                        other.power.bound_outlet_id = None
            target.power.bound_outlet_id = outlet_id
            return copy.deepcopy(target)

    def sync_miners(self, roster):
        keep = {miner_id for miner_id, _ in roster}
        with self._lock:
            for miner_id, expected in roster:
                record = self._miners.get(miner_id)
                if record is None:
                    record = MinerRecord(miner_id=miner_id)
                    self._miners[miner_id] = record
                record.ip = miner_id
                if expected is not None:
                    record.expected_hashrate = expected

            removed = sorted(set(self._miners) - keep)
            for miner_id in removed:
                del self._miners[miner_id]
            self._commands = [c for c in self._commands if c.miner_id in keep]
            return removed

    def create_command(self, command):
        with self._lock:
            self._commands.append(copy.deepcopy(command))
        return command

    def find_pending_command(self, miner_id, command_type):
        with self._lock:
            for command in self._commands:
                if (command.miner_id == miner_id and command.type == command_type
                        and command.status == CommandStatus.PENDING):
                    return copy.deepcopy(command)
        return None

    def next_pending_command(self, miner_id):
        with self._lock:
            pending = [c for c in self._commands
                       if c.miner_id == miner_id and c.status == CommandStatus.PENDING]
            if not pending:
                return None
            return copy.deepcopy(min(pending, key=lambda c: c.created_at))

    def get_command(self, command_id):
        with self._lock:
            for command in self._commands:
                if command.id == command_id:
                    return copy.deepcopy(command)
        return None

    def complete_command(self, command_id, status, error=None):
        with self._lock:
            for command in self._commands:
                if command.id == command_id:
                    command.status = status
                    command.executed_at = datetime.now()
                    command.error = error
                    return copy.deepcopy(command)
        return None

    def create_notification(self, notification):
        with self._lock:
            self._notifications.append(copy.deepcopy(notification))
        return notification

    def list_notifications(self, limit=50):
        with self._lock:
            newest = sorted(self._notifications, key=lambda n: n.created_at, reverse=True)
            return [copy.deepcopy(n) for n in newest[:limit]]

    def get_settings(self):
        with self._lock:
            return copy.deepcopy(self._settings)

    def update_settings(self, patch):
        with self._lock:
            merged = self._settings.to_dict()
            merged.update(patch)
            self._settings = FleetSettings.from_dict(merged)
            return copy.deepcopy(self._settings)


# sqlite column types for the miners table
MINER_COLUMNS = {
    'miner_id': 'TEXT PRIMARY KEY',
    'ip': 'TEXT',
    'asic_type': 'TEXT',
    'firmware': 'TEXT',
    'expected_hashrate': 'REAL',
    'online': 'INTEGER',
    'last_seen': 'TEXT',
    'last_online_at': 'TEXT',
    'read_status': 'TEXT',
    'error': 'TEXT',
    'last_metric': 'TEXT',
    'overheat_locked': 'INTEGER NOT NULL DEFAULT 0',
    'overheat_locked_at': 'TEXT',
    'overheat_last_temp_c': 'REAL',
    'overheat_protection_enabled': 'INTEGER NOT NULL DEFAULT 1',
    'overheat_shutdown_temp_c': 'REAL',
    'last_restart_at': 'TEXT',
    'last_low_hashrate_at': 'TEXT',
    'auto_restart_enabled': 'INTEGER NOT NULL DEFAULT 0',
    'low_hashrate_threshold_gh': 'REAL',
    'post_restart_grace_minutes': 'INTEGER',
    'bound_outlet_id': 'TEXT',
    'auto_power_on_grid_restore': 'INTEGER NOT NULL DEFAULT 0',
    'auto_power_off_grid_loss': 'INTEGER NOT NULL DEFAULT 0',
    'auto_power_off_generation_below_kw': 'REAL',
    'auto_power_on_generation_above_kw': 'REAL',
    'auto_power_off_battery_below_percent': 'REAL',
    'auto_power_on_battery_above_percent': 'REAL',
    'auto_power_restore_delay_minutes': 'INTEGER',
}

BOOLEAN_FIELDS = {
    'online', 'overheat_locked', 'overheat_protection_enabled', 'auto_restart_enabled',
    'auto_power_on_grid_restore', 'auto_power_off_grid_loss',
}


def _to_column(key: str, value):
    if key in DATETIME_FIELDS:
        return isoformat(value)
    if key == 'last_metric':
        return json.dumps(value) if value is not None else None
    if key in BOOLEAN_FIELDS and value is not None:
        return 1 if value else 0
    return value


def _from_row(row: sqlite3.Row) -> MinerRecord:
    data = {}
    for key in row.keys():
        value = row[key]
        if key == 'last_metric' and value:
            value = json.loads(value)
        elif key in BOOLEAN_FIELDS and value is not None:
            value = bool(value)
        data[key] = value
    return MinerRecord.from_flat(data)


def _command_from_row(row: sqlite3.Row) -> Command:
    return Command(
        id=row['id'],
        miner_id=row['miner_id'],
        type=CommandType(row['type']),
        status=CommandStatus(row['status']),
        created_at=parse_datetime(row['created_at']),
        executed_at=parse_datetime(row['executed_at']),
        error=row['error'],
    )


class Database(MinerStore):
    """sqlite-backed store"""

    storage = 'database'

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._init_database()

    @contextmanager
    def _get_connection(self, immediate: bool = False):
        """
        Get database connection with context manager.

        With ``immediate`` the write lock is taken before the first read, so a
        read-modify-write of a row cannot interleave with another writer.
        """
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_database(self):
        """Initialize database schema"""
        columns = ",\n".join(f"{name} {kind}" for name, kind in MINER_COLUMNS.items())
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(f"CREATE TABLE IF NOT EXISTS miners (\n{columns}\n)")
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS commands (
                    id TEXT PRIMARY KEY,
                    miner_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    executed_at TEXT,
                    error TEXT
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_commands_pending
                ON commands(miner_id, status, type)
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS notifications (
                    id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    message TEXT NOT NULL,
                    miner_id TEXT,
                    action TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)
        logger.info(f"Database initialized at {self.db_path}")

    def _write_miner(self, conn, record: MinerRecord):
        flat = record.to_flat()
        names = list(MINER_COLUMNS)
        placeholders = ", ".join("?" for _ in names)
        conn.execute(
            f"INSERT OR REPLACE INTO miners ({', '.join(names)}) VALUES ({placeholders})",
            [_to_column(name, flat.get(name)) for name in names]
        )

    def get_miner(self, miner_id):
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM miners WHERE miner_id = ?", (miner_id,)).fetchone()
            return _from_row(row) if row else None

    def list_miners(self):
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM miners ORDER BY miner_id").fetchall()
            return [_from_row(row) for row in rows]

    def find_miners_with_bound_outlet(self):
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM miners WHERE bound_outlet_id IS NOT NULL ORDER BY miner_id"
            ).fetchall()
            return [_from_row(row) for row in rows]

    def record_metric(self, sample, now=None):
        now = now or datetime.now()
        with self._get_connection(immediate=True) as conn:
            row = conn.execute(
                "SELECT * FROM miners WHERE miner_id = ?", (sample.miner_id,)
            ).fetchone()
            record = merge_sample(_from_row(row) if row else None, sample, now)
            self._write_miner(conn, record)
            return record

    def update_miner(self, miner_id, patch):
        check_patch(patch)
        with self._get_connection(immediate=True) as conn:
            row = conn.execute("SELECT * FROM miners WHERE miner_id = ?", (miner_id,)).fetchone()
            if row is None:
                raise MinerNotFoundError(miner_id)
            record = _from_row(row)
            record.apply_patch(patch)
            self._write_miner(conn, record)
            return record

    def bind_outlet(self, miner_id, outlet_id):
        with self._get_connection(immediate=True) as conn:
            row = conn.execute("SELECT * FROM miners WHERE miner_id = ?", (miner_id,)).fetchone()
            if row is None:
                raise MinerNotFoundError(miner_id)
            if outlet_id:
                conn.execute(
                    "UPDATE miners SET bound_outlet_id = NULL WHERE bound_outlet_id = ? AND miner_id != ?",
                    (outlet_id, miner_id)
                )
            conn.execute(
                "UPDATE miners SET bound_outlet_id = ? WHERE miner_id = ?",
                (outlet_id, miner_id)
            )
            record = _from_row(row)
            record.power.bound_outlet_id = outlet_id
            return record

    def sync_miners(self, roster):
        keep = [miner_id for miner_id, _ in roster]
        with self._get_connection(immediate=True) as conn:
            for miner_id, expected in roster:
                cursor = conn.execute(
                    "UPDATE miners SET ip = ?, expected_hashrate = COALESCE(?, expected_hashrate) "
                    "WHERE miner_id = ?",
                    (miner_id, expected, miner_id)
                )
                if cursor.rowcount == 0:
                    self._write_miner(conn, MinerRecord(
                        miner_id=miner_id, ip=miner_id, expected_hashrate=expected
                    ))

            # Orphaned commands go too, even for miners never stored
            rows = conn.execute("SELECT miner_id FROM miners ORDER BY miner_id").fetchall()
            removed = [row['miner_id'] for row in rows if row['miner_id'] not in keep]
            for miner_id in removed:
                conn.execute("DELETE FROM miners WHERE miner_id = ?", (miner_id,))
            placeholders = ", ".join("?" for _ in keep)
            conn.execute(f"DELETE FROM commands WHERE miner_id NOT IN ({placeholders})", keep)
            return removed

    def create_command(self, command):
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO commands (id, miner_id, type, status, created_at, executed_at, error)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                command.id, command.miner_id, command.type.value, command.status.value,
                isoformat(command.created_at), isoformat(command.executed_at), command.error
            ))
        return command

    def find_pending_command(self, miner_id, command_type):
        with self._get_connection() as conn:
            row = conn.execute("""
                SELECT * FROM commands
                WHERE miner_id = ? AND type = ? AND status = ?
                ORDER BY created_at LIMIT 1
            """, (miner_id, command_type.value, CommandStatus.PENDING.value)).fetchone()
            return _command_from_row(row) if row else None

    def next_pending_command(self, miner_id):
        with self._get_connection() as conn:
            row = conn.execute("""
                SELECT * FROM commands
                WHERE miner_id = ? AND status = ?
                ORDER BY created_at LIMIT 1
            """, (miner_id, CommandStatus.PENDING.value)).fetchone()
            return _command_from_row(row) if row else None

    def get_command(self, command_id):
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM commands WHERE id = ?", (command_id,)).fetchone()
            return _command_from_row(row) if row else None

    def complete_command(self, command_id, status, error=None):
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE commands SET status = ?, executed_at = ?, error = ? WHERE id = ?",
                (status.value, datetime.now().isoformat(), error, command_id)
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM commands WHERE id = ?", (command_id,)).fetchone()
            return _command_from_row(row)

    def create_notification(self, notification):
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO notifications (id, type, message, miner_id, action, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                notification.id, notification.type, notification.message,
                notification.miner_id, notification.action, isoformat(notification.created_at)
            ))
        return notification

    def list_notifications(self, limit=50):
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM notifications ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
            return [
                Notification(
                    id=row['id'],
                    type=row['type'],
                    message=row['message'],
                    miner_id=row['miner_id'],
                    action=row['action'],
                    created_at=parse_datetime(row['created_at']),
                )
                for row in rows
            ]

    def get_setting(self, key: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
            return row['value'] if row else None

    @staticmethod
    def _read_settings(raw: Optional[str]) -> FleetSettings:
        if not raw:
            return FleetSettings()
        try:
            return FleetSettings.from_dict(json.loads(raw))
        except (ValueError, TypeError) as e:
            logger.warning(f"Ignoring unreadable fleet settings: {e}")
            return FleetSettings()

    def get_settings(self):
        return self._read_settings(self.get_setting('fleet_settings'))

    def update_settings(self, patch):
        with self._get_connection(immediate=True) as conn:
            row = conn.execute(
                "SELECT value FROM settings WHERE key = ?", ('fleet_settings',)
            ).fetchone()
            merged = self._read_settings(row['value'] if row else None).to_dict()
            merged.update(patch)
            settings = FleetSettings.from_dict(merged)
            conn.execute(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                ('fleet_settings', json.dumps(settings.to_dict()))
            )
            return settings


def open_store(db_path: str) -> MinerStore:
    """Use the sqlite store when the file can be opened, memory otherwise"""
    try:
        return Database(db_path)
    except (sqlite3.Error, OSError) as e:
        logger.warning(f"Database unavailable at {db_path} ({e}), using in-memory store")
        return MemoryStore()
