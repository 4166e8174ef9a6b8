"""
Scan API - passive BLE scanning with battery-aware duty cycling.

Provides REST endpoints and SSE streaming for starting and stopping scans,
querying the live device registry, and tuning the battery profile.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from datetime import datetime
from typing import Generator

from flask import Blueprint, Response, jsonify, request

from blesense.database import get_setting, set_setting
from blesense.scanning import (
    AppState,
    BatteryProfile,
    ConfigurationError,
    DeviceQuery,
    ScanConfig,
    ScanState,
    get_scan_engine,
)
from blesense.sse import format_sse

logger = logging.getLogger('blesense.routes.scanning')

scanning_bp = Blueprint('scanning', __name__, url_prefix='/api/scan')

# Settings key holding the last battery profile set through the API
PROFILE_SETTING_KEY = 'scan.battery_profile'


def _error(message: str, status: int = 400):
    return jsonify({'status': 'error', 'message': message}), status


def _already_running(engine):
    return jsonify({
        'status': 'already_running',
        'scan_status': engine.status().to_dict(),
    })


def _saved_profile() -> BatteryProfile | None:
    data = get_setting(PROFILE_SETTING_KEY)
    if not data:
        return None
    try:
        profile = BatteryProfile.from_dict(data)
        profile.validate()
        return profile
    except ConfigurationError as e:
        logger.warning(f"Ignoring stored battery profile: {e}")
        return None


# =============================================================================
# LIFECYCLE
# =============================================================================


@scanning_bp.route('/start', methods=['POST'])
def start_scan():
    """
    Start a scan session.

    Request JSON:
        - config: ScanConfig fields (scan_duration, scan_timeout,
          service_uuids, allow_duplicates, scan_mode)
        - profile: BatteryProfile fields, or a platform name string
          ('ios', 'android'); defaults to the stored profile

    Returns:
        JSON with the new status.
    """
    data = request.get_json(silent=True) or {}

    try:
        config = ScanConfig.from_dict(data.get('config') or {})
        profile_data = data.get('profile')
        if isinstance(profile_data, str):
            profile = BatteryProfile.for_platform(profile_data)
        elif profile_data:
            profile = BatteryProfile.from_dict(profile_data)
        else:
            profile = _saved_profile()

        engine = get_scan_engine()
        if engine.state not in (ScanState.IDLE, ScanState.ERROR):
            return _already_running(engine)

        started = engine.start(config, profile)
    except ConfigurationError as e:
        return _error(str(e))
    except Exception as e:
        logger.exception(f"Error starting scan: {e}")
        return _error(str(e), 500)

    status = engine.status()
    if started:
        return jsonify({'status': 'started', 'scan_status': status.to_dict()})
    if status.state not in (ScanState.IDLE, ScanState.ERROR):
        # Lost a race with another start or a stop in progress
        return _already_running(engine)
    return jsonify({
        'status': 'failed',
        'message': status.error or 'Failed to start scan',
        'scan_status': status.to_dict(),
    }), 500


@scanning_bp.route('/stop', methods=['POST'])
def stop_scan():
    """Stop scanning and close the session."""
    engine = get_scan_engine()
    session = engine.stop()
    return jsonify({
        'status': 'stopped',
        'session': session.to_dict() if session else None,
    })


@scanning_bp.route('/status', methods=['GET'])
def get_scan_status():
    engine = get_scan_engine()
    return jsonify(engine.status().to_dict())


# =============================================================================
# DEVICES
# =============================================================================


@scanning_bp.route('/devices', methods=['GET'])
def list_devices():
    """
    List devices in the live registry.

    Query parameters:
        - name: Case-insensitive name substring
        - min_rssi: Minimum RSSI filter
        - type: Device type label
        - recent: Only devices seen recently ('true'/'false')
        - sort: Sort field ('rssi', 'name', 'last_seen', 'detection_count')
        - order: Sort order ('asc', 'desc')

    Returns:
        JSON with count and device list.
    """
    query = DeviceQuery(
        name_filter=request.args.get('name', ''),
        min_rssi=request.args.get('min_rssi', type=int),
        device_type=request.args.get('type', ''),
        recent_only=request.args.get('recent', 'false').lower() == 'true',
        sort_by=request.args.get('sort', 'rssi'),
        ascending=request.args.get('order', 'desc').lower() == 'asc',
    )

    try:
        devices = get_scan_engine().devices(query)
    except ConfigurationError as e:
        return _error(str(e))

    return jsonify({
        'count': len(devices),
        'devices': [d.to_dict() for d in devices],
    })


@scanning_bp.route('/devices/<device_id>', methods=['GET'])
def get_device(device_id: str):
    device = get_scan_engine().get_device(device_id.upper())
    if device is None:
        return _error('Device not found', 404)
    return jsonify(device.to_dict())


@scanning_bp.route('/clear', methods=['POST'])
def clear_devices():
    """Clear the registry. The session keeps running."""
    get_scan_engine().clear_devices()
    return jsonify({'status': 'cleared'})


@scanning_bp.route('/prune', methods=['POST'])
def prune_stale():
    """
    Drop devices not seen recently.

    Request JSON:
        - max_age: Maximum age in seconds (default: 300)
    """
    data = request.get_json(silent=True) or {}
    try:
        max_age = float(data.get('max_age', 300))
    except (TypeError, ValueError):
        return _error('max_age must be a number')

    engine = get_scan_engine()
    pruned = engine.registry.prune_stale(max_age, engine.clock.now())
    return jsonify({'status': 'success', 'pruned_count': pruned})


@scanning_bp.route('/statistics', methods=['GET'])
def get_statistics():
    return jsonify(get_scan_engine().statistics())


@scanning_bp.route('/session', methods=['GET'])
def get_session():
    """Current session, or the most recently ended one."""
    session = get_scan_engine().current_session
    return jsonify({'session': session.to_dict() if session else None})


# =============================================================================
# BATTERY PROFILE
# =============================================================================


@scanning_bp.route('/profile', methods=['GET'])
def get_profile():
    engine = get_scan_engine()
    pending = engine.scheduler.pending_profile
    return jsonify({
        'profile': engine.scheduler.profile.to_dict(),
        'pending_profile': pending.to_dict() if pending else None,
    })


@scanning_bp.route('/profile', methods=['POST'])
def set_profile():
    """
    Replace the battery profile.

    While scanning, the profile applies at the next phase boundary.

    Request JSON:
        - BatteryProfile fields, or {'platform': 'ios' | 'android'}
    """
    data = request.get_json(silent=True) or {}

    try:
        if 'platform' in data:
            profile = BatteryProfile.for_platform(data['platform'])
        else:
            profile = BatteryProfile.from_dict(data)
        get_scan_engine().set_battery_profile(profile)
    except ConfigurationError as e:
        return _error(str(e))

    set_setting(PROFILE_SETTING_KEY, profile.to_dict())
    return jsonify({'status': 'success', 'profile': profile.to_dict()})


@scanning_bp.route('/lifecycle', methods=['POST'])
def set_lifecycle():
    """
    Report the host application's foreground/background state.

    Request JSON:
        - state: 'foreground' or 'background'
    """
    data = request.get_json(silent=True) or {}
    state = data.get('state', '')

    try:
        app_state = AppState(state)
    except ValueError:
        return _error(f"Invalid state. Must be one of: {[s.value for s in AppState]}")

    engine = get_scan_engine()
    engine.set_app_state(app_state)
    return jsonify({
        'status': 'success',
        'app_state': str(engine.app_state),
        'profile': engine.scheduler.profile.to_dict(),
    })


@scanning_bp.route('/low-battery', methods=['POST'])
def enable_low_battery():
    engine = get_scan_engine()
    engine.enable_low_battery_mode()
    return jsonify({'status': 'success', 'profile': BatteryProfile.low_battery().to_dict()})


# =============================================================================
# EXPORT AND STREAMING
# =============================================================================


@scanning_bp.route('/export', methods=['GET'])
def export_devices():
    """
    Export the live registry.

    Query parameters:
        - format: Export format ('csv', 'json')

    Returns:
        CSV or JSON file download.
    """
    export_format = request.args.get('format', 'json').lower()
    engine = get_scan_engine()
    devices = engine.devices()
    stamp = datetime.now().strftime('%Y%m%d_%H%M%S')

    if export_format == 'csv':
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow([
            'id', 'name', 'device_type', 'rssi', 'signal_strength',
            'first_seen', 'last_seen', 'detection_count', 'connectable',
            'tx_power', 'service_uuids',
        ])
        for device in devices:
            writer.writerow([
                device.device_id,
                device.display_name,
                device.device_type,
                device.rssi,
                device.signal_strength_description,
                device.first_seen.isoformat(),
                device.last_seen.isoformat(),
                device.detection_count,
                'yes' if device.connectable else 'no',
                device.tx_power if device.tx_power is not None else '',
                ','.join(device.service_uuids),
            ])

        return Response(
            output.getvalue(),
            mimetype='text/csv',
            headers={'Content-Disposition': f'attachment; filename=ble_devices_{stamp}.csv'},
        )

    data = {
        'exported_at': datetime.now().isoformat(),
        'device_count': len(devices),
        'session': engine.current_session.to_dict() if engine.current_session else None,
        'devices': [d.to_dict() for d in devices],
    }
    return Response(
        json.dumps(data, indent=2),
        mimetype='application/json',
        headers={'Content-Disposition': f'attachment; filename=ble_devices_{stamp}.json'},
    )


@scanning_bp.route('/stream', methods=['GET'])
def stream_events():
    """
    SSE event stream of scan events.

    Returns:
        Server-Sent Events stream.
    """
    engine = get_scan_engine()

    def event_generator() -> Generator[str, None, None]:
        for event in engine.events.listen(timeout=1.0):
            yield format_sse(event.get('data') or {}, event=event['type'])

    return Response(
        event_generator(),
        mimetype='text/event-stream',
        headers={
            'Cache-Control': 'no-cache',
            'Connection': 'keep-alive',
            'X-Accel-Buffering': 'no',
        },
    )
