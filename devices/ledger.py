import logging

from django.conf import settings
from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from . import errors
from .errors import Conflict, InternalFailure, InvalidInput, NotFound
from .models import Device, DeviceAssignment
from .notifications import schedule_assignment_event
from .store import coerce_uuid, validate_status

logger = logging.getLogger(__name__)

# Derived per-device states
AVAILABLE = 'AVAILABLE'
ASSIGNED = 'ASSIGNED'
UNAVAILABLE = 'UNAVAILABLE'


class AssignmentLedger:
    """Exclusive, time-bounded assignment of devices to orders.

    At most one open assignment (``released_at`` is null) exists per device.
    Assign locks the device row before checking availability and the partial
    unique index ``unique_open_assignment_per_device`` turns any race that
    slips past the lock into a Conflict. Release locks the open assignment
    row before closing it.

    ``reset_on_release`` decides what the device itself carries after a
    release: GOOD_CONDITION (True) or the condition reported by the caller
    (False). The ledger entry always records the reported condition.
    """

    def __init__(self, store, reset_on_release=None):
        self.store = store
        if reset_on_release is None:
            reset_on_release = getattr(settings, 'DEVICES_RELEASE_RESETS_STATUS', True)
        self.reset_on_release = reset_on_release

    def assign(self, order_id, device_id):
        if order_id is None or not str(order_id).strip():
            raise InvalidInput(errors.ORDER_ID_CANNOT_BE_EMPTY, field='order_id')
        order_id = coerce_uuid(order_id, field='order_id')
        device_id = coerce_uuid(device_id)

        try:
            with transaction.atomic():
                device = self.store.get_for_update(device_id)

                if self.has_active_assignment(device.pk):
                    raise Conflict(errors.DEVICE_ALREADY_ASSIGNED.format(device_id), device_id=str(device_id))

                if device.status != Device.GOOD_CONDITION:
                    raise Conflict(errors.DEVICE_NOT_AVAILABLE_FOR_ASSIGNMENT.format(device_id),
                                   device_id=str(device_id), status=device.status)

                assignment = DeviceAssignment.objects.create(
                    order_id=order_id,
                    device=device,
                    status=Device.OCCUPIED,
                    assigned_at=timezone.now(),
                )
                self.store.set_status(device, Device.OCCUPIED, source='assign', order_id=order_id)
                schedule_assignment_event('assigned', assignment)
        except IntegrityError:
            if DeviceAssignment.objects.filter(device_id=device_id, released_at__isnull=True).exists():
                logger.warning("Lost assignment race for device %s (order %s)", device_id, order_id)
                raise Conflict(errors.DEVICE_ALREADY_ASSIGNED.format(device_id), device_id=str(device_id))
            logger.exception("Integrity error assigning device %s to order %s", device_id, order_id)
            raise InternalFailure(errors.DEVICE_ERROR_SAVING, device_id=str(device_id))
        except DatabaseError:
            logger.exception("Error assigning device %s to order %s", device_id, order_id)
            raise InternalFailure(errors.DEVICE_ERROR_SAVING, device_id=str(device_id))

        logger.info("Assignment created for device %s in order %s at %s",
                    device_id, order_id, assignment.assigned_at.isoformat())
        return assignment

    def release(self, device_id, resulting_status, order_id=None):
        device_id = coerce_uuid(device_id)
        validate_status(resulting_status, allowed=Device.RELEASE_STATUSES)
        if order_id is not None:
            order_id = coerce_uuid(order_id, field='order_id')

        try:
            with transaction.atomic():
                assignment = (
                    DeviceAssignment.objects.select_for_update()
                    .select_related('device')
                    .filter(device_id=device_id, released_at__isnull=True)
                    .first()
                )
                if assignment is None:
                    raise NotFound(errors.DEVICE_ASSIGNMENT_NOT_FOUND.format(device_id), device_id=str(device_id))

                if order_id is not None and assignment.order_id != order_id:
                    raise Conflict(errors.DEVICE_ASSIGNMENT_ORDER_MISMATCH.format(device_id, order_id),
                                   device_id=str(device_id), order_id=str(order_id))

                # released_at must never precede assigned_at, even with clock skew
                assignment.released_at = max(timezone.now(), assignment.assigned_at)
                assignment.status = resulting_status
                assignment.save(update_fields=['released_at', 'status'])

                target = Device.GOOD_CONDITION if self.reset_on_release else resulting_status
                self.store.set_status(
                    assignment.device, target, source='release',
                    order_id=assignment.order_id,
                    notes=f'Reported condition: {resulting_status}',
                )
                schedule_assignment_event('released', assignment)
        except DatabaseError:
            logger.exception("Error releasing device %s", device_id)
            raise InternalFailure(errors.DEVICE_ERROR_SAVING, device_id=str(device_id))

        logger.info("Assignment released for device %s (order %s), reported %s, device set to %s",
                    device_id, assignment.order_id, resulting_status, target)
        return assignment

    # ---- queries ----

    def history(self, device_id):
        """Released assignments of a device, most recently released first."""
        device_id = coerce_uuid(device_id)
        assignments = list(
            DeviceAssignment.objects.filter(device_id=device_id, released_at__isnull=False)
            .select_related('device')
            .order_by('-released_at')
        )
        logger.info("Found %d historical assignments for device %s", len(assignments), device_id)
        return assignments

    def active_assignment(self, device_id):
        device_id = coerce_uuid(device_id)
        return DeviceAssignment.objects.filter(device_id=device_id, released_at__isnull=True).first()

    def has_active_assignment(self, device_id):
        device_id = coerce_uuid(device_id)
        return DeviceAssignment.objects.filter(device_id=device_id, released_at__isnull=True).exists()

    def has_active_assignments(self, device_ids):
        """Map every requested device id to whether it has an open assignment.

        Unknown devices map to False.
        """
        ids = [coerce_uuid(i) for i in device_ids]
        active = set(
            DeviceAssignment.objects.filter(device_id__in=ids, released_at__isnull=True)
            .values_list('device_id', flat=True)
        )
        return {device_id: device_id in active for device_id in ids}

    def state_of(self, device_id):
        device = self.store.get_by_id(device_id)
        if self.has_active_assignment(device.pk):
            return ASSIGNED
        if device.status == Device.GOOD_CONDITION:
            return AVAILABLE
        return UNAVAILABLE
