"""
SolarSats - Off-grid Mining Automation
"""
import logging
from typing import Optional

from flask import Flask, jsonify, request

import config
from automation import AutomationCore
from commands import OverheatLockedError
from database import MinerNotFoundError, open_store
from deye_client import DeyeClient, DeyeError
from models import CommandStatus, CommandType, MetricSample
from settings import parse_miner_roster
from tuya_client import TuyaClient, TuyaError

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

MAX_NOTIFICATIONS = 200


def validate_limit(limit: int, default: int = 50) -> int:
    """Clamp a notification limit to a sane range"""
    if limit is None or limit < 1:
        return default
    return min(limit, MAX_NOTIFICATIONS)


def build_core() -> AutomationCore:
    """Core backed by the configured store and the Deye / Tuya clouds"""
    store = open_store(config.DATABASE_PATH)
    logger.info(f"Using {store.storage} storage")
    return AutomationCore(store, DeyeClient(), TuyaClient())


def create_app(core: Optional[AutomationCore] = None,
               start_scheduler: bool = config.SCHEDULER_ENABLED) -> Flask:
    app = Flask(__name__)
    core = core or build_core()
    app.config['AUTOMATION_CORE'] = core

    def miner_not_found(miner_id: str):
        return jsonify({'success': False, 'error': f'Miner {miner_id} not found'}), 404

    @app.before_request
    def start_background_scheduler():
        """Start the scheduler lazily, once, on the first request"""
        if start_scheduler and not core.scheduler_active:
            core.start_scheduler()

    # Agent telemetry and commands

    @app.route('/api/metrics', methods=['POST'])
    def post_metrics():
        """Ingest one telemetry sample from a miner agent"""
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({'success': False, 'error': 'Invalid JSON'}), 400

        try:
            sample = MetricSample.from_dict(data)
        except ValueError as e:
            return jsonify({'success': False, 'error': str(e)}), 400

        try:
            result = core.ingest_metric(sample, background=True)
            miner = core.store.get_miner(sample.miner_id)
            return jsonify({
                'success': True,
                'miner_id': sample.miner_id,
                'overheat_locked': miner.thermal.overheat_locked if miner else False,
                'commands': [c.to_dict() for c in result.commands],
                'notifications': [n.to_dict() for n in result.notifications],
            })
        except Exception as e:
            logger.error(f"Error ingesting metrics for {sample.miner_id}: {e}")
            return jsonify({'success': False, 'error': str(e)}), 500

    @app.route('/api/commands', methods=['POST'])
    def create_command():
        """Issue a command for a miner agent"""
        data = request.get_json(silent=True) or {}
        miner_id = str(data.get('miner_id') or '').strip()
        if not miner_id:
            return jsonify({'success': False, 'error': 'miner_id is required'}), 400

        try:
            command_type = CommandType(str(data.get('type', '')).upper())
        except ValueError:
            return jsonify({
                'success': False,
                'error': f"type must be one of {', '.join(config.COMMAND_TYPES)}"
            }), 400

        if core.store.get_miner(miner_id) is None:
            return miner_not_found(miner_id)

        try:
            command = core.issue_command(miner_id, command_type)
            return jsonify({'success': True, 'command': command.to_dict()})
        except OverheatLockedError as e:
            return jsonify({'success': False, 'error': str(e)}), 409
        except Exception as e:
            logger.error(f"Error issuing {command_type.value} for {miner_id}: {e}")
            return jsonify({'success': False, 'error': str(e)}), 500

    @app.route('/api/commands/poll', methods=['GET'])
    def poll_command():
        """Oldest pending command for the polling agent"""
        miner_id = (request.args.get('miner_id') or '').strip()
        if not miner_id:
            return jsonify({'success': False, 'error': 'miner_id is required'}), 400

        command = core.poll_command(miner_id)
        return jsonify({
            'success': True,
            'command': command.to_dict() if command else None
        })

    @app.route('/api/commands/result', methods=['POST'])
    def command_result():
        """Agent reports how a command went"""
        data = request.get_json(silent=True) or {}
        command_id = str(data.get('command_id') or '').strip()
        if not command_id:
            return jsonify({'success': False, 'error': 'command_id is required'}), 400

        try:
            status = CommandStatus(str(data.get('status', '')).upper())
            command = core.report_command_result(command_id, status, data.get('error'))
        except ValueError:
            return jsonify({'success': False, 'error': 'status must be DONE or FAILED'}), 400

        if command is None:
            return jsonify({'success': False, 'error': 'Command not found'}), 404
        return jsonify({'success': True, 'command': command.to_dict()})

    # Miners

    @app.route('/api/miners', methods=['GET'])
    def get_miners():
        """All known miners with thermal state and power policy"""
        miners = core.store.list_miners()
        return jsonify({
            'success': True,
            'storage': core.store.storage,
            'miners': [m.to_dict() for m in miners]
        })

    @app.route('/api/miners/sync', methods=['POST'])
    def sync_miners():
        """Reconcile stored miners with the agent's roster"""
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({'success': False, 'error': 'Invalid JSON'}), 400

        try:
            roster = parse_miner_roster(data)
        except ValueError as e:
            return jsonify({'success': False, 'error': str(e)}), 400

        try:
            removed = core.sync_miners(roster)
            return jsonify({
                'success': True,
                'removed': len(removed),
                'kept': len(roster)
            })
        except Exception as e:
            logger.error(f"Error syncing miners: {e}")
            return jsonify({'success': False, 'error': str(e)}), 500

    @app.route('/api/miners/<miner_id>/settings', methods=['GET', 'PUT'])
    def miner_settings(miner_id: str):
        """Get or update per-miner thermal and power settings"""
        if request.method == 'GET':
            miner = core.store.get_miner(miner_id)
            if miner is None:
                return miner_not_found(miner_id)
            return jsonify({'success': True, 'miner': miner.to_dict()})

        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({'success': False, 'error': 'Invalid JSON'}), 400

        try:
            miner = core.update_miner_settings(miner_id, data)
            return jsonify({'success': True, 'miner': miner.to_dict()})
        except MinerNotFoundError:
            return miner_not_found(miner_id)
        except Exception as e:
            logger.error(f"Error updating settings for {miner_id}: {e}")
            return jsonify({'success': False, 'error': str(e)}), 500

    @app.route('/api/miners/<miner_id>/unlock-overheat', methods=['POST'])
    def unlock_overheat(miner_id: str):
        """Clear a miner's overheat lock"""
        try:
            miner = core.unlock_overheat(miner_id)
            return jsonify({'success': True, 'miner': miner.to_dict()})
        except MinerNotFoundError:
            return miner_not_found(miner_id)

    @app.route('/api/miners/bindings', methods=['GET', 'PUT'])
    def miner_bindings():
        """Miner to smart outlet bindings"""
        if request.method == 'GET':
            return jsonify({'success': True, 'bindings': core.get_bindings()})

        data = request.get_json(silent=True) or {}
        miner_id = str(data.get('miner_id') or '').strip()
        if not miner_id:
            return jsonify({'success': False, 'error': 'miner_id is required'}), 400

        try:
            miner = core.bind_outlet(miner_id, data.get('device_id'))
            return jsonify({
                'success': True,
                'miner_id': miner_id,
                'device_id': miner.power.bound_outlet_id
            })
        except MinerNotFoundError:
            return miner_not_found(miner_id)

    # Notifications and fleet settings

    @app.route('/api/notifications', methods=['GET'])
    def get_notifications():
        """Newest notifications first"""
        limit = validate_limit(request.args.get('limit', default=50, type=int))
        return jsonify({
            'success': True,
            'notifications': core.notifier.get_recent(limit)
        })

    @app.route('/api/settings', methods=['GET', 'PUT'])
    def fleet_settings():
        """Get or update fleet-wide automation settings"""
        if request.method == 'GET':
            return jsonify({'success': True, 'settings': core.get_settings().to_dict()})

        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({'success': False, 'error': 'Invalid JSON'}), 400
        try:
            settings = core.update_settings(data)
            return jsonify({'success': True, 'settings': settings.to_dict()})
        except Exception as e:
            logger.error(f"Error saving settings: {e}")
            return jsonify({'success': False, 'error': str(e)}), 500

    # Station and outlets

    @app.route('/api/station', methods=['GET'])
    def get_station():
        """Fused power station snapshot"""
        include_raw = request.args.get('raw', 'false').lower() == 'true'
        try:
            snapshot = core.get_station_snapshot()
            return jsonify({'success': True, 'station': snapshot.to_dict(include_raw=include_raw)})
        except DeyeError as e:
            logger.error(f"Station fetch failed: {e}")
            return jsonify({'success': False, 'error': str(e)}), 502
        except RuntimeError as e:
            return jsonify({'success': False, 'error': str(e)}), 503

    @app.route('/api/outlets', methods=['GET'])
    def get_outlets():
        """Switch-capable smart outlets"""
        try:
            devices = core.list_outlets()
            return jsonify({
                'success': True,
                'total': len(devices),
                'devices': [d.to_dict() for d in devices]
            })
        except TuyaError as e:
            logger.error(f"Outlet listing failed: {e}")
            return jsonify({'success': False, 'error': str(e)}), 502
        except RuntimeError as e:
            return jsonify({'success': False, 'error': str(e)}), 503

    @app.route('/api/outlets/<device_id>/switch', methods=['POST'])
    def switch_outlet(device_id: str):
        """Manually switch an outlet on or off"""
        data = request.get_json(silent=True) or {}
        if not isinstance(data.get('on'), bool):
            return jsonify({'success': False, 'error': 'on must be true or false'}), 400

        try:
            core.switch_outlet(device_id, data['on'], data.get('code'))
            return jsonify({
                'success': True,
                'message': f"Outlet {device_id} switched {'on' if data['on'] else 'off'}"
            })
        except TuyaError as e:
            logger.error(f"Outlet switch failed for {device_id}: {e}")
            return jsonify({'success': False, 'error': str(e)}), 502
        except RuntimeError as e:
            return jsonify({'success': False, 'error': str(e)}), 503

    @app.route('/api/automation/run', methods=['POST'])
    def run_automation():
        """Trigger one power automation pass now"""
        actions = core.run_power_automation()
        if actions is None:
            return jsonify({'success': True, 'skipped': True, 'actions': []})
        return jsonify({
            'success': True,
            'skipped': False,
            'actions': [
                {'miner_id': a.miner_id, 'device_id': a.device_id, 'on': a.on, 'reason': a.reason}
                for a in actions
            ]
        })

    return app


if __name__ == '__main__':
    logger.info("Starting SolarSats")

    app = create_app()
    try:
        app.run(
            host=config.FLASK_HOST,
            port=config.FLASK_PORT,
            debug=config.DEBUG
        )
    finally:
        app.config['AUTOMATION_CORE'].stop_scheduler()
