"""
History API - persisted sessions, detections and aggregate data points.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta

from flask import Blueprint, Response, jsonify, request

from blesense.scanning import PersistenceError, SQLiteGateway, get_scan_engine

logger = logging.getLogger('blesense.routes.history')

history_bp = Blueprint('history', __name__, url_prefix='/api/history')

DEFAULT_TREND_DAYS = 7


def _gateway() -> SQLiteGateway:
    gateway = get_scan_engine().gateway
    if not isinstance(gateway, SQLiteGateway):
        raise PersistenceError('Scan history storage is not configured')
    return gateway


def _parse_time_arg(name: str) -> datetime | None:
    value = request.args.get(name)
    if not value:
        return None
    return datetime.fromisoformat(value)


def _error(message: str, status: int):
    return jsonify({'status': 'error', 'message': message}), status


@history_bp.errorhandler(PersistenceError)
def handle_persistence_error(e: PersistenceError):
    logger.error(f"History query failed: {e}")
    return _error(str(e), 500)


@history_bp.errorhandler(ValueError)
def handle_bad_argument(e: ValueError):
    return _error(f"Invalid parameter: {e}", 400)


@history_bp.route('/data-points', methods=['GET'])
def get_data_points():
    """
    Query parameters:
        - start, end: ISO-8601 bounds (inclusive)
        - limit: Maximum number of points

    Returns:
        Data points in ascending timestamp order.
    """
    start = _parse_time_arg('start')
    end = _parse_time_arg('end')
    limit = request.args.get('limit', type=int)

    points = _gateway().query_data_points(start, end, limit)
    return jsonify({
        'count': len(points),
        'data_points': [p.to_dict() for p in points],
    })


@history_bp.route('/sessions', methods=['GET'])
def get_sessions():
    """Most recent sessions first."""
    limit = request.args.get('limit', 50, type=int)
    sessions = _gateway().query_recent_sessions(limit)
    return jsonify({
        'count': len(sessions),
        'sessions': [s.to_dict() for s in sessions],
    })


@history_bp.route('/trends', methods=['GET'])
def get_trends():
    """
    Per-day discovery trends.

    Query parameters:
        - start, end: ISO-8601 bounds (default: the last 7 days)
    """
    end = _parse_time_arg('end') or datetime.now()
    start = _parse_time_arg('start') or end - timedelta(days=DEFAULT_TREND_DAYS)
    return jsonify({'trends': _gateway().query_discovery_trends(start, end)})


@history_bp.route('/top-devices', methods=['GET'])
def get_top_devices():
    limit = request.args.get('limit', 10, type=int)
    return jsonify({'devices': _gateway().query_top_devices(limit)})


@history_bp.route('/statistics', methods=['GET'])
def get_statistics():
    return jsonify(_gateway().query_statistics())


@history_bp.route('/export', methods=['GET'])
def export_history():
    """JSON download of the stored history."""
    start = _parse_time_arg('start')
    end = _parse_time_arg('end')
    data = _gateway().export(start, end)
    return Response(
        json.dumps(data, indent=2, default=str),
        mimetype='application/json',
        headers={
            'Content-Disposition': f'attachment; filename=ble_history_{datetime.now().strftime("%Y%m%d_%H%M%S")}.json'
        },
    )


@history_bp.route('/cleanup', methods=['POST'])
def cleanup():
    """
    Delete old history.

    Request JSON:
        - older_than_days: Age cutoff in days (default: 30)
    """
    data = request.get_json(silent=True) or {}
    older_than_days = float(data.get('older_than_days', 30))
    if older_than_days < 0:
        return _error('older_than_days must not be negative', 400)

    deleted = _gateway().clear_old_data(older_than_days * 86400)
    return jsonify({'status': 'success', 'deleted': deleted})
