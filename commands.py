"""
Command Issuing

Queues RESTART / SLEEP / WAKE / RELOAD_CONFIG commands for miner agents.
Automatic issuance never duplicates a pending command, and a miner under an
overheat lock only accepts commands that keep it cool.
"""
import logging
from datetime import datetime
from threading import Lock
from typing import Optional, Tuple

from models import Command, CommandStatus, CommandType

logger = logging.getLogger(__name__)

# Commands refused while a miner is overheat-locked
LOCK_REFUSED_COMMANDS = {CommandType.RESTART, CommandType.WAKE}


class OverheatLockedError(Exception):
    """Raised when a command would bring an overheat-locked miner back up"""

    def __init__(self, miner_id: str, command_type: CommandType):
        self.miner_id = miner_id
        self.command_type = command_type
        super().__init__(f"Miner {miner_id} is overheat-locked; {command_type.value} refused until unlocked")


class CommandQueue:
    """Create and track agent commands through the store"""

    def __init__(self, store):
        self.store = store
        self._lock = Lock()

    def _check_lock(self, miner_id: str, command_type: CommandType):
        if command_type not in LOCK_REFUSED_COMMANDS:
            return
        miner = self.store.get_miner(miner_id)
        if miner and miner.thermal.overheat_locked:
            raise OverheatLockedError(miner_id, command_type)

    def ensure_pending(self, miner_id: str, command_type: CommandType,
                       now: Optional[datetime] = None) -> Tuple[Command, bool]:
        """
        Make sure exactly one PENDING command of this type exists.

        Returns:
            (command, created) - created is False when one was already pending
        """
        with self._lock:
            existing = self.store.find_pending_command(miner_id, command_type)
            if existing:
                logger.debug(f"{command_type.value} already pending for {miner_id}")
                return existing, False
            command = Command(miner_id=miner_id, type=command_type, created_at=now or datetime.now())
            self.store.create_command(command)
            logger.info(f"Queued {command_type.value} for {miner_id}")
            return command, True

    def issue(self, miner_id: str, command_type: CommandType) -> Command:
        """Manually issue a command (the overheat lock is enforced here)"""
        self._check_lock(miner_id, command_type)
        now = datetime.now()
        command = Command(miner_id=miner_id, type=command_type, created_at=now)
        with self._lock:
            self.store.create_command(command)

        if command_type == CommandType.RESTART and self.store.get_miner(miner_id):
            self.store.update_miner(miner_id, {'last_restart_at': now})

        logger.info(f"Issued {command_type.value} for {miner_id}")
        return command

    def poll(self, miner_id: str) -> Optional[Command]:
        """Oldest pending command for an agent to execute"""
        return self.store.next_pending_command(miner_id)

    def report_result(self, command_id: str, status: CommandStatus,
                      error: Optional[str] = None) -> Optional[Command]:
        """Record the agent's result for a command"""
        if status == CommandStatus.PENDING:
            raise ValueError("Result status must be DONE or FAILED")
        command = self.store.complete_command(command_id, status, error)
        if command:
            logger.info(f"Command {command.type.value} for {command.miner_id} finished: {status.value}")
        return command
