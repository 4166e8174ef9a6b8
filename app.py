"""
blesense - passive BLE sensing service.

Flask application exposing the scan engine over HTTP and SSE.
"""

from __future__ import annotations

from flask import Flask, Response, jsonify

import config
from blesense.database import init_db
from blesense.logging import app_logger as logger
from blesense.scanning import get_scan_engine, init_scan_tables, reset_scan_engine

app = Flask(__name__)


@app.route('/health')
def health() -> Response:
    engine = get_scan_engine()
    return jsonify({
        'status': 'ok',
        'scanning': engine.is_scanning,
        'state': str(engine.state),
    })


def main() -> None:
    """Main entry point."""
    from routes import register_blueprints

    init_db()
    init_scan_tables()
    register_blueprints(app)

    logger.info(f"blesense listening on http://{config.HOST}:{config.PORT}")
    try:
        app.run(host=config.HOST, port=config.PORT, debug=config.DEBUG, threaded=True)
    finally:
        reset_scan_engine()


if __name__ == '__main__':
    main()
