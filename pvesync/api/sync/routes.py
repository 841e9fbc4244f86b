from datetime import datetime

from flask import Blueprint, jsonify, request, abort
from flask_cors import cross_origin

from pvesync.extensions import sync_engine
from pvesync.models import RESOURCE_MODELS
from pvesync.sync.types import Resolution, SyncScope

bp = Blueprint('sync', __name__)


def _parse_time(name):
    value = request.args.get(name)
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        abort(400, description=f"Invalid '{name}' timestamp: {value}")


def _check_type(resource_type):
    if resource_type not in RESOURCE_MODELS:
        abort(404, description=f"Unknown resource type: {resource_type}")


def _list_field(data, key):
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"'{key}' must be a list of strings")
    return value or None


def _parse_resolutions(items):
    resolutions = {}
    for item in items or []:
        resolution = item.get('resolution')
        if resolution not in Resolution.ALL:
            abort(400, description=f"Invalid resolution {resolution!r}, expected one of {Resolution.ALL}")
        resolutions[(item.get('resource_type'), str(item.get('resource_id')))] = resolution
    return resolutions


@bp.route('/runs', methods=['POST', 'OPTIONS'])
@cross_origin()
def start_run():
    """
    Runs one synchronization pass.
    ---
    tags:
      - Sync
    parameters:
      - in: body
        name: body
        schema:
          properties:
            nodes:
              type: array
              items:
                type: string
            resource_types:
              type: array
              items:
                type: string
                enum: [node, storage, vm, container]
            declared:
              type: array
              description: Desired state per guest (resource_type, resource_id, fields)
              items:
                type: object
            resolutions:
              type: array
              items:
                type: object
                properties:
                  resource_type:
                    type: string
                  resource_id:
                    type: string
                  resolution:
                    type: string
                    enum: [remote, declared]
            wait:
              type: boolean
    responses:
      200:
        description: Run finished (check 'success' and 'failures' for partial results)
      400:
        description: Invalid scope or declared target
      409:
        description: A sync is already in progress for an overlapping scope
    """
    data = request.get_json(silent=True) or {}

    try:
        scope = SyncScope(nodes=_list_field(data, 'nodes'), resource_types=_list_field(data, 'resource_types'))
        result = sync_engine.run_sync(
            scope=scope,
            declared=data.get('declared'),
            wait=bool(data.get('wait', False)),
            resolutions=_parse_resolutions(data.get('resolutions')),
        )
    except ValueError as e:
        abort(400, description=str(e))

    return jsonify({'success': result.success, 'data': result.to_dict()}), 200


@bp.route('/runs/latest', methods=['GET'])
def latest_run():
    """
    Statistics of the last run and resource counts.
    ---
    tags:
      - Sync
    responses:
      200:
        description: Sync statistics
    """
    return jsonify({'success': True, 'data': sync_engine.get_sync_stats()}), 200


@bp.route('/state/<resource_type>', methods=['GET'])
def current_state(resource_type):
    """
    Current persisted state of one resource type.
    ---
    tags:
      - State
    parameters:
      - name: resource_type
        in: path
        type: string
        required: true
      - name: node
        in: query
        type: string
      - name: status
        in: query
        type: string
      - name: ids
        in: query
        type: string
        description: Comma separated identifiers
    responses:
      200:
        description: List of resources
    """
    _check_type(resource_type)
    ids = request.args.get('ids')
    resources = sync_engine.get_current_state(
        resource_type,
        node=request.args.get('node'),
        status=request.args.get('status'),
        ids=[i for i in ids.split(',') if i] if ids else None,
    )
    return jsonify({'success': True, 'data': [r.to_dict() for r in resources], 'count': len(resources)}), 200


@bp.route('/history/<resource_type>/<resource_id>', methods=['GET'])
def resource_history(resource_type, resource_id):
    """
    History of one resource in ascending order.
    ---
    tags:
      - State
    parameters:
      - name: resource_type
        in: path
        type: string
        required: true
      - name: resource_id
        in: path
        type: string
        required: true
      - name: since
        in: query
        type: string
        format: date-time
      - name: until
        in: query
        type: string
        format: date-time
    responses:
      200:
        description: History entries
    """
    _check_type(resource_type)
    entries = sync_engine.get_history(
        resource_type, resource_id, since=_parse_time('since'), until=_parse_time('until')
    )
    data = [entry.to_dict() for entry in entries]
    return jsonify({
        'success': True,
        'data': data,
        'summary': sync_engine.ledger.summary(resource_type, resource_id),
    }), 200


@bp.route('/operations', methods=['GET'])
def in_flight_operations():
    """
    Operations that have not reached a terminal status.
    ---
    tags:
      - Sync
    responses:
      200:
        description: In-flight operations
    """
    operations = sync_engine.get_in_flight_operations()
    return jsonify({'success': True, 'data': [op.to_dict() for op in operations]}), 200


@bp.route('/cancel', methods=['POST', 'OPTIONS'])
@cross_origin()
def cancel():
    """
    Cancels the active runs: no new mutations or polls. Remote tasks already started keep running.
    ---
    tags:
      - Sync
    responses:
      202:
        description: Cancellation requested
    """
    sync_engine.cancel()
    return jsonify({'success': True, 'message': 'Cancellation requested.'}), 202
