"""Tests for command issuance and the overheat refusal."""
import pytest

from commands import CommandQueue, OverheatLockedError
from models import CommandStatus, CommandType

from conftest import make_sample


@pytest.fixture
def queue(store, now):
    store.record_metric(make_sample("miner-1"), now)
    return CommandQueue(store)


def test_ensure_pending_is_idempotent(queue, store, now):
    first, created = queue.ensure_pending("miner-1", CommandType.SLEEP, now)
    second, created_again = queue.ensure_pending("miner-1", CommandType.SLEEP, now)

    assert created is True
    assert created_again is False
    assert second.id == first.id

    other, created_other = queue.ensure_pending("miner-1", CommandType.RESTART, now)
    assert created_other is True
    assert other.id != first.id


def test_ensure_pending_after_completion_creates_new(queue, now):
    first, _ = queue.ensure_pending("miner-1", CommandType.RESTART, now)
    queue.report_result(first.id, CommandStatus.DONE)
    second, created = queue.ensure_pending("miner-1", CommandType.RESTART, now)
    assert created is True
    assert second.id != first.id


@pytest.mark.parametrize("command_type", [CommandType.RESTART, CommandType.WAKE])
def test_locked_miner_refuses_wake_and_restart(queue, store, command_type):
    store.update_miner("miner-1", {'overheat_locked': True})
    with pytest.raises(OverheatLockedError) as excinfo:
        queue.issue("miner-1", command_type)
    assert excinfo.value.command_type == command_type
    assert store.next_pending_command("miner-1") is None


@pytest.mark.parametrize("command_type", [CommandType.SLEEP, CommandType.RELOAD_CONFIG])
def test_locked_miner_accepts_cooling_commands(queue, store, command_type):
    store.update_miner("miner-1", {'overheat_locked': True})
    command = queue.issue("miner-1", command_type)
    assert command.status == CommandStatus.PENDING
    assert store.next_pending_command("miner-1").id == command.id


def test_manual_restart_stamps_last_restart(queue, store):
    assert store.get_miner("miner-1").thermal.last_restart_at is None
    command = queue.issue("miner-1", CommandType.RESTART)
    assert store.get_miner("miner-1").thermal.last_restart_at == command.created_at


def test_poll_and_report(queue):
    command = queue.issue("miner-1", CommandType.RELOAD_CONFIG)
    assert queue.poll("miner-1").id == command.id

    finished = queue.report_result(command.id, CommandStatus.FAILED, "agent timeout")
    assert finished.status == CommandStatus.FAILED
    assert finished.error == "agent timeout"
    assert queue.poll("miner-1") is None


def test_report_pending_is_rejected(queue):
    command = queue.issue("miner-1", CommandType.SLEEP)
    with pytest.raises(ValueError):
        queue.report_result(command.id, CommandStatus.PENDING)
