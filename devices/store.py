import logging
import uuid

from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import F, ProtectedError
from django.utils import timezone

from . import errors
from .errors import Conflict, InternalFailure, InvalidInput, NotFound
from .models import Device, DeviceAssignment, StatusHistory

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ('name', 'brand', 'barcode', 'status')


def coerce_uuid(value, field='device_id'):
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value).strip())
    except (ValueError, TypeError, AttributeError):
        raise InvalidInput(errors.INVALID_DEVICE_ID.format(value), field=field)


def validate_status(value, allowed=None, field='status'):
    """Return ``value`` if it is a known device status (and in ``allowed``, when given)."""
    # JSON bodies can carry lists or objects here
    if not isinstance(value, str) or not Device.is_valid_status(value):
        raise InvalidInput(errors.INVALID_STATUS.format(value), field=field)
    if allowed is not None and value not in allowed:
        raise InvalidInput(errors.INVALID_STATUS.format(value), field=field)
    return value


def _clean_text(value, field):
    if value is not None and not isinstance(value, str):
        raise InvalidInput(f"Field '{field}' must be a string.", field=field)
    cleaned = str(value).strip() if value is not None else ''
    if not cleaned:
        raise InvalidInput(f"Field '{field}' is required.", field=field)
    return cleaned


class DeviceStore:
    """Owns device rows: identity, barcode uniqueness and condition status.

    Every write is a compare-and-set against ``Device.version`` so two
    requests editing the same device cannot silently overwrite each other.
    """

    # ---- reads ----

    def get_by_id(self, device_id):
        device_id = coerce_uuid(device_id)
        try:
            return Device.objects.get(pk=device_id)
        except Device.DoesNotExist:
            raise NotFound(errors.DEVICE_NOT_FOUND_BY_ID.format(device_id), device_id=str(device_id))

    def get_by_barcode(self, barcode):
        barcode = (barcode or '').strip()
        try:
            return Device.objects.get(barcode=barcode)
        except Device.DoesNotExist:
            raise NotFound(errors.DEVICE_NOT_FOUND_BY_BARCODE.format(barcode), barcode=barcode)

    def list_all(self):
        return Device.objects.all()

    def list_by_status(self, status):
        return Device.objects.filter(status=validate_status(status))

    def list_by_statuses(self, statuses):
        statuses = [validate_status(s, field='statuses') for s in statuses]
        return Device.objects.filter(status__in=statuses)

    def get_many(self, device_ids):
        """Devices that exist among ``device_ids``; unknown ids are skipped."""
        ids = [coerce_uuid(i) for i in device_ids]
        if not ids:
            return Device.objects.none()
        return Device.objects.filter(pk__in=ids)

    # ---- locking reads (callers must be inside transaction.atomic) ----

    def get_for_update(self, device_id):
        device_id = coerce_uuid(device_id)
        try:
            return Device.objects.select_for_update().get(pk=device_id)
        except Device.DoesNotExist:
            raise NotFound(errors.DEVICE_NOT_FOUND_BY_ID.format(device_id), device_id=str(device_id))

    def get_many_for_update(self, device_ids):
        """Lock every device in ``device_ids`` or raise NotFound listing all missing ids.

        Rows are locked in primary key order so overlapping batches cannot deadlock.
        """
        devices = list(Device.objects.select_for_update().filter(pk__in=device_ids).order_by('pk'))
        found = {d.pk for d in devices}
        missing = [str(i) for i in device_ids if i not in found]
        if missing:
            raise NotFound(errors.DEVICES_NOT_FOUND.format(', '.join(missing)), missing_ids=missing)
        return devices

    # ---- writes ----

    def create(self, name, brand, barcode, status=Device.GOOD_CONDITION):
        name = _clean_text(name, 'name')
        brand = _clean_text(brand, 'brand')
        barcode = _clean_text(barcode, 'barcode')
        validate_status(status)

        if Device.objects.filter(barcode=barcode).exists():
            raise Conflict(errors.DEVICE_BARCODE_ALREADY_EXISTS.format(barcode), field='barcode')

        try:
            with transaction.atomic():
                device = Device.objects.create(name=name, brand=brand, barcode=barcode, status=status)
                StatusHistory.objects.create(device=device, new_status=status, source='create')
        except IntegrityError:
            if Device.objects.filter(barcode=barcode).exists():
                raise Conflict(errors.DEVICE_BARCODE_ALREADY_EXISTS.format(barcode), field='barcode')
            logger.exception("Integrity error creating device with barcode %s", barcode)
            raise InternalFailure(errors.DEVICE_ERROR_SAVING)
        except DatabaseError:
            logger.exception("Error creating device with barcode %s", barcode)
            raise InternalFailure(errors.DEVICE_ERROR_SAVING)

        logger.info("Device %s created with barcode %s", device.pk, barcode)
        return device

    def update(self, device_id, fields, expected_version=None):
        """Apply a partial update of name/brand/barcode/status.

        ``expected_version`` is the revision the caller last read; when it no
        longer matches, the update is rejected with Conflict.
        """
        unknown = sorted(set(fields) - set(EDITABLE_FIELDS))
        if unknown:
            raise InvalidInput(f"Unknown fields: {', '.join(unknown)}.", field=unknown)

        device = self.get_by_id(device_id)
        if expected_version is not None:
            try:
                expected_version = int(expected_version)
            except (TypeError, ValueError):
                raise InvalidInput(f"Invalid version: {expected_version}.", field='version')
            if expected_version != device.version:
                raise Conflict(errors.DEVICE_STALE_REVISION.format(device.pk),
                               device_id=str(device.pk), version=device.version)

        changes = {}
        for field in ('name', 'brand'):
            if fields.get(field) is not None:
                value = _clean_text(fields[field], field)
                if value != getattr(device, field):
                    changes[field] = value

        if fields.get('barcode') is not None:
            barcode = _clean_text(fields['barcode'], 'barcode')
            if barcode != device.barcode:
                if Device.objects.filter(barcode=barcode).exclude(pk=device.pk).exists():
                    raise Conflict(errors.DEVICE_BARCODE_ALREADY_EXISTS.format(barcode), field='barcode')
                changes['barcode'] = barcode

        if fields.get('status') is not None:
            status = validate_status(fields['status'])
            if status != device.status:
                changes['status'] = status

        if not changes:
            return device
        return self._write(device, changes, source='edit')

    def set_status(self, device, status, source, order_id=None, notes=''):
        return self._write(device, {'status': validate_status(status)}, source, order_id=order_id, notes=notes)

    def delete(self, device_id):
        device_id = coerce_uuid(device_id)
        try:
            with transaction.atomic():
                device = self.get_for_update(device_id)
                if DeviceAssignment.objects.filter(device=device, released_at__isnull=True).exists():
                    raise Conflict(errors.DEVICE_IN_USE.format(device_id), device_id=str(device_id))
                device.delete()
        except ProtectedError:
            raise Conflict(errors.DEVICE_HAS_HISTORY.format(device_id), device_id=str(device_id))
        logger.info("Device %s deleted", device_id)

    def _write(self, device, changes, source, order_id=None, notes=''):
        old_status = device.status
        now = timezone.now()
        try:
            with transaction.atomic():
                updated = Device.objects.filter(pk=device.pk, version=device.version).update(
                    version=F('version') + 1, updated_at=now, **changes
                )
                if not updated:
                    if not Device.objects.filter(pk=device.pk).exists():
                        raise NotFound(errors.DEVICE_NOT_FOUND_BY_ID.format(device.pk), device_id=str(device.pk))
                    logger.warning("Stale write rejected for device %s at version %s", device.pk, device.version)
                    raise Conflict(errors.DEVICE_STALE_REVISION.format(device.pk), device_id=str(device.pk))

                new_status = changes.get('status', old_status)
                if new_status != old_status:
                    StatusHistory.objects.create(
                        device=device,
                        old_status=old_status,
                        new_status=new_status,
                        source=source,
                        order_id=order_id,
                        notes=notes,
                    )
        except IntegrityError:
            barcode = changes.get('barcode')
            if barcode and Device.objects.filter(barcode=barcode).exclude(pk=device.pk).exists():
                raise Conflict(errors.DEVICE_BARCODE_ALREADY_EXISTS.format(barcode), field='barcode')
            logger.exception("Integrity error updating device %s", device.pk)
            raise InternalFailure(errors.DEVICE_ERROR_SAVING, device_id=str(device.pk))
        except DatabaseError:
            logger.exception("Error updating device %s", device.pk)
            raise InternalFailure(errors.DEVICE_ERROR_SAVING, device_id=str(device.pk))

        for field, value in changes.items():
            setattr(device, field, value)
        device.version += 1
        device.updated_at = now
        return device
