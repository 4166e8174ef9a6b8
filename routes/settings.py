"""Settings management routes."""

from __future__ import annotations

from flask import Blueprint, Response, jsonify, request

from blesense.database import (
    delete_setting,
    get_all_settings,
    get_setting,
    set_setting,
)
from blesense.logging import get_logger

logger = get_logger('blesense.settings')

settings_bp = Blueprint('settings', __name__, url_prefix='/settings')


def _valid_key(key: str) -> bool:
    return bool(key) and all(c.isalnum() or c in '_.-' for c in key)


@settings_bp.route('', methods=['GET'])
def get_settings() -> Response:
    """Get all settings."""
    try:
        return jsonify({
            'status': 'success',
            'settings': get_all_settings(),
        })
    except Exception as e:
        logger.error(f"Error getting settings: {e}")
        return jsonify({'status': 'error', 'message': str(e)}), 500


@settings_bp.route('', methods=['POST'])
def save_settings() -> Response:
    """Save one or more settings. Keys with invalid characters are skipped."""
    data = request.get_json(silent=True) or {}
    if not data:
        return jsonify({'status': 'error', 'message': 'No settings provided'}), 400

    try:
        saved = []
        for key, value in data.items():
            if not _valid_key(key):
                continue
            set_setting(key, value)
            saved.append(key)
        return jsonify({'status': 'success', 'saved': saved})
    except Exception as e:
        logger.error(f"Error saving settings: {e}")
        return jsonify({'status': 'error', 'message': str(e)}), 500


@settings_bp.route('/<key>', methods=['GET'])
def get_single_setting(key: str) -> Response:
    try:
        value = get_setting(key)
        if value is None:
            return jsonify({'status': 'not_found', 'key': key}), 404
        return jsonify({'status': 'success', 'key': key, 'value': value})
    except Exception as e:
        logger.error(f"Error getting setting {key}: {e}")
        return jsonify({'status': 'error', 'message': str(e)}), 500


@settings_bp.route('/<key>', methods=['PUT'])
def update_single_setting(key: str) -> Response:
    data = request.get_json(silent=True) or {}
    if 'value' not in data:
        return jsonify({'status': 'error', 'message': 'Value is required'}), 400
    if not _valid_key(key):
        return jsonify({'status': 'error', 'message': f'Invalid key: {key}'}), 400

    try:
        set_setting(key, data['value'])
        return jsonify({'status': 'success', 'key': key, 'value': data['value']})
    except Exception as e:
        logger.error(f"Error updating setting {key}: {e}")
        return jsonify({'status': 'error', 'message': str(e)}), 500


@settings_bp.route('/<key>', methods=['DELETE'])
def delete_single_setting(key: str) -> Response:
    try:
        if delete_setting(key):
            return jsonify({'status': 'success', 'key': key, 'deleted': True})
        return jsonify({'status': 'not_found', 'key': key}), 404
    except Exception as e:
        logger.error(f"Error deleting setting {key}: {e}")
        return jsonify({'status': 'error', 'message': str(e)}), 500
