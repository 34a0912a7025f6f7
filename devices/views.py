import json
import logging

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from .batch import BatchStateEngine
from .errors import DeviceError, InvalidInput
from .ledger import AssignmentLedger
from .models import Device
from .store import DeviceStore

logger = logging.getLogger(__name__)

store = DeviceStore()
ledger = AssignmentLedger(store)
batch_engine = BatchStateEngine(store)

# Human-readable labels are accepted alongside the stored status keys
STATUS_MAPPING = {label: key for key, label in Device.STATUS_CHOICES}


def _resolve_status(value):
    if isinstance(value, str):
        value = value.strip()
        return STATUS_MAPPING.get(value, value.upper())
    return value


def _load_json(request):
    try:
        data = json.loads(request.body or b'{}')
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidInput('Invalid JSON data')
    if not isinstance(data, dict):
        raise InvalidInput('Request body must be a JSON object')
    return data


def _error_response(error):
    if error.status_code >= 500:
        logger.error("Device operation failed: %s", error.message)
    return JsonResponse(error.as_dict(), status=error.status_code)


def _server_error(e):
    logger.exception("Unexpected error handling device request")
    return JsonResponse({'success': False, 'error': f'Server error: {str(e)}'}, status=500)


def _device_payload(device):
    return {
        'id': str(device.id),
        'name': device.name,
        'brand': device.brand,
        'barcode': device.barcode,
        'status': device.status,
        'version': device.version,
        'created_at': device.created_at.isoformat() if device.created_at else None,
        'updated_at': device.updated_at.isoformat() if device.updated_at else None,
    }


def _assignment_payload(assignment):
    return {
        'id': str(assignment.id),
        'device_id': str(assignment.device_id),
        'device_name': assignment.device_name,
        'order_id': str(assignment.order_id),
        'status': assignment.status,
        'assigned_at': assignment.assigned_at.isoformat(),
        'released_at': assignment.released_at.isoformat() if assignment.released_at else None,
    }


# ---- Devices ----

@csrf_exempt
@require_http_methods(["GET", "POST"])
def device_collection(request):
    """List devices (optionally by ?status= or ?statuses=A,B) or create one."""
    try:
        if request.method == 'POST':
            data = _load_json(request)
            device = store.create(
                name=data.get('name'),
                brand=data.get('brand'),
                barcode=data.get('barcode'),
                status=_resolve_status(data.get('status') or Device.GOOD_CONDITION),
            )
            return JsonResponse({'success': True, 'device': _device_payload(device)}, status=201)

        status = request.GET.get('status', '')
        statuses = request.GET.get('statuses', '')
        if status:
            devices = store.list_by_status(_resolve_status(status))
        elif statuses:
            devices = store.list_by_statuses(
                [_resolve_status(s) for s in statuses.split(',') if s.strip()]
            )
        else:
            devices = store.list_all()

        return JsonResponse({'devices': [_device_payload(d) for d in devices]})
    except DeviceError as e:
        return _error_response(e)
    except Exception as e:
        return _server_error(e)


@csrf_exempt
@require_http_methods(["GET", "PUT", "PATCH", "DELETE"])
def device_detail(request, device_id):
    try:
        if request.method == 'GET':
            return JsonResponse({'device': _device_payload(store.get_by_id(device_id))})

        if request.method == 'DELETE':
            store.delete(device_id)
            return JsonResponse({'success': True})

        data = _load_json(request)
        expected_version = data.pop('version', None)
        if 'status' in data:
            data['status'] = _resolve_status(data['status'])
        device = store.update(device_id, data, expected_version=expected_version)
        return JsonResponse({'success': True, 'device': _device_payload(device)})
    except DeviceError as e:
        return _error_response(e)
    except Exception as e:
        return _server_error(e)


@require_http_methods(["GET"])
def device_by_barcode(request, barcode):
    try:
        return JsonResponse({'device': _device_payload(store.get_by_barcode(barcode))})
    except DeviceError as e:
        return _error_response(e)
    except Exception as e:
        return _server_error(e)


@csrf_exempt
@require_http_methods(["POST"])
def devices_by_ids(request):
    """Return the devices that exist among the requested ids."""
    try:
        data = _load_json(request)
        ids = data.get('ids', data.get('device_ids', []))
        if not isinstance(ids, list):
            raise InvalidInput('ids must be a list', field='ids')
        devices = store.get_many(ids)
        return JsonResponse({'devices': [_device_payload(d) for d in devices]})
    except DeviceError as e:
        return _error_response(e)
    except Exception as e:
        return _server_error(e)


# ---- Batch operations ----

@csrf_exempt
@require_http_methods(["PUT", "POST"])
def batch_update_status(request):
    """Set one status on every listed device, or on none of them."""
    try:
        data = _load_json(request)
        device_ids = data.get('device_ids', [])
        new_status = data.get('status', data.get('state', ''))

        if not device_ids or not new_status:
            raise InvalidInput('Missing device_ids or status')
        if not isinstance(device_ids, list):
            raise InvalidInput('device_ids must be a list', field='device_ids')

        devices = batch_engine.set_status(device_ids, _resolve_status(new_status))
        return JsonResponse({'success': True, 'updated_count': len(devices)})
    except DeviceError as e:
        return _error_response(e)
    except Exception as e:
        return _server_error(e)


@csrf_exempt
@require_http_methods(["POST"])
def restore_devices(request):
    """Restore each listed device to its own explicit status."""
    try:
        data = _load_json(request)
        items = data.get('items', [])
        if not isinstance(items, list):
            raise InvalidInput('items must be a list', field='items')

        for item in items:
            if isinstance(item, dict):
                if 'state' in item and 'status' not in item:
                    item['status'] = item.pop('state')
                if 'status' in item:
                    item['status'] = _resolve_status(item['status'])

        devices = batch_engine.restore(items)
        return JsonResponse({'success': True, 'updated_count': len(devices)})
    except DeviceError as e:
        return _error_response(e)
    except Exception as e:
        return _server_error(e)


# ---- Assignments ----

@csrf_exempt
@require_http_methods(["POST"])
def assign_device(request):
    try:
        data = _load_json(request)
        assignment = ledger.assign(data.get('order_id'), data.get('device_id'))
        return JsonResponse({'success': True, 'assignment': _assignment_payload(assignment)}, status=201)
    except DeviceError as e:
        return _error_response(e)
    except Exception as e:
        return _server_error(e)


@csrf_exempt
@require_http_methods(["POST"])
def release_device(request):
    """Close the open assignment of a device, recording its reported condition."""
    try:
        data = _load_json(request)
        if not data.get('status'):
            raise InvalidInput('Missing status', field='status')
        assignment = ledger.release(
            data.get('device_id'),
            _resolve_status(data['status']),
            order_id=data.get('order_id') or None,
        )
        return JsonResponse({'success': True, 'assignment': _assignment_payload(assignment)})
    except DeviceError as e:
        return _error_response(e)
    except Exception as e:
        return _server_error(e)


@require_http_methods(["GET"])
def assignment_history(request, device_id):
    try:
        history = ledger.history(device_id)
        return JsonResponse({'history': [_assignment_payload(a) for a in history]})
    except DeviceError as e:
        return _error_response(e)
    except Exception as e:
        return _server_error(e)


@require_http_methods(["GET"])
def device_active(request, device_id):
    try:
        return JsonResponse({'device_id': str(device_id), 'active': ledger.has_active_assignment(device_id)})
    except DeviceError as e:
        return _error_response(e)
    except Exception as e:
        return _server_error(e)


@csrf_exempt
@require_http_methods(["POST"])
def devices_active(request):
    """For each requested device, whether it currently has an open assignment."""
    try:
        data = _load_json(request)
        device_ids = data.get('device_ids', [])
        if not device_ids or not isinstance(device_ids, list):
            raise InvalidInput('Missing device_ids', field='device_ids')

        active = ledger.has_active_assignments(device_ids)
        return JsonResponse(
            [{'device_id': str(device_id), 'active': flag} for device_id, flag in active.items()],
            safe=False,
        )
    except DeviceError as e:
        return _error_response(e)
    except Exception as e:
        return _server_error(e)
