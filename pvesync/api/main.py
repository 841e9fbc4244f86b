from flask import Blueprint, jsonify
from flask_cors import cross_origin

from pvesync.models import utcnow
from pvesync.services.health import get_system_health

main_bp = Blueprint('main', __name__)


@main_bp.route('/', methods=['GET'])
def index():
    return jsonify({
        "project": "pvesync",
        "status": "online",
        "documentation": "/docs"
    }), 200


@main_bp.route('/health', methods=['GET'])
@main_bp.route('/api/health', methods=['GET', 'OPTIONS'])
@cross_origin()
def health_check():
    """
    Health of the API, the State Store and the Proxmox cluster.
    ---
    tags:
      - System
    responses:
      200:
        description: Every subsystem is healthy
      503:
        description: At least one subsystem is unhealthy
    """
    report = get_system_health()
    report['server_time'] = utcnow().isoformat()
    code = 200 if report['status'] == 'healthy' else 503
    return jsonify(report), code
