import logging

from django.db import DatabaseError, transaction

from . import errors
from .errors import InternalFailure, InvalidInput
from .store import coerce_uuid, validate_status

logger = logging.getLogger(__name__)


def _unique(ids):
    seen = set()
    result = []
    for i in ids:
        if i not in seen:
            seen.add(i)
            result.append(i)
    return result


class BatchStateEngine:
    """All-or-nothing status changes across a set of devices.

    This is an administrative override: it writes device status directly and
    never opens or closes assignments. Every id is resolved before anything
    is written, and a missing id aborts the whole batch with the full list of
    missing ids.
    """

    def __init__(self, store):
        self.store = store

    def set_status(self, device_ids, target_status):
        if not device_ids:
            raise InvalidInput(errors.DEVICE_IDS_CANNOT_BE_EMPTY, field='device_ids')
        validate_status(target_status)
        ids = _unique([coerce_uuid(i) for i in device_ids])

        try:
            with transaction.atomic():
                devices = self.store.get_many_for_update(ids)
                for device in devices:
                    self.store.set_status(device, target_status, source='batch', notes='Batch status update')
        except DatabaseError:
            logger.exception("Error setting status %s on devices %s", target_status, ids)
            raise InternalFailure(errors.DEVICE_ERROR_UPDATING_STATES)

        logger.info("Batch set %d devices to %s", len(devices), target_status)
        return devices

    def restore(self, items):
        """Give each device its own explicit status.

        ``items`` is a sequence of ``{'device_id': ..., 'status': ...}`` dicts
        (``state`` is accepted for ``status``) or ``(device_id, status)`` pairs.
        When a device id repeats, the last item wins.
        """
        if not items:
            raise InvalidInput(errors.DEVICE_ITEMS_CANNOT_BE_EMPTY, field='items')

        targets = {}
        for index, item in enumerate(items):
            if isinstance(item, dict):
                device_id = item.get('device_id')
                status = item.get('status', item.get('state'))
            elif isinstance(item, (list, tuple)) and len(item) == 2:
                device_id, status = item
            else:
                raise InvalidInput(f"Invalid restore item at position {index}.", field=f'items[{index}]')

            if device_id is None:
                raise InvalidInput(f"Restore item {index} is missing device_id.", field=f'items[{index}].device_id')
            if status is None:
                raise InvalidInput(errors.DEVICE_MISSING_STATE.format(device_id), field=f'items[{index}].status')
            targets[coerce_uuid(device_id, field=f'items[{index}].device_id')] = validate_status(
                status, field=f'items[{index}].status'
            )

        try:
            with transaction.atomic():
                devices = self.store.get_many_for_update(list(targets))
                for device in devices:
                    target = targets.get(device.pk)
                    if target is None:
                        raise InvalidInput(errors.DEVICE_MISSING_STATE.format(device.pk), device_id=str(device.pk))
                    self.store.set_status(device, target, source='restore', notes='Restored device state')
        except DatabaseError:
            logger.exception("Error restoring device states for %s", list(targets))
            raise InternalFailure(errors.DEVICE_ERROR_UPDATING_STATES)

        logger.info("Restored state of %d devices", len(devices))
        return devices
