import uuid

from django.db import models
from django.db.models import F, Q

from .errors import Conflict


class Device(models.Model):
    GOOD_CONDITION = 'GOOD_CONDITION'
    FAIR = 'FAIR'
    OCCUPIED = 'OCCUPIED'
    NEEDS_REPAIR = 'NEEDS_REPAIR'

    STATUS_CHOICES = [
        (GOOD_CONDITION, 'Good Condition'),
        (FAIR, 'Fair'),
        (OCCUPIED, 'Occupied'),
        (NEEDS_REPAIR, 'Needs Repair'),
    ]

    # Conditions a caller may report when handing a device back
    RELEASE_STATUSES = (GOOD_CONDITION, FAIR, NEEDS_REPAIR)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    brand = models.CharField(max_length=255)
    barcode = models.CharField(max_length=255, unique=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=GOOD_CONDITION)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    # Optimistic revision, bumped by every write that goes through DeviceStore
    version = models.PositiveIntegerField(default=0)

    class Meta:
        verbose_name = "Device"
        verbose_name_plural = "Devices"
        ordering = ['name', 'barcode']
        indexes = [
            models.Index(fields=['status'], name='device_status_idx'),
        ]

    def __str__(self):
        return f"{self.name} ({self.barcode})"

    @classmethod
    def is_valid_status(cls, value):
        return value in dict(cls.STATUS_CHOICES)


class DeviceAssignment(models.Model):
    """Ledger entry tying a device to an order for a span of time.

    Rows are the audit trail of device usage: they are created by an assign,
    closed exactly once by a release, and never deleted.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order_id = models.UUIDField()
    device = models.ForeignKey(Device, on_delete=models.PROTECT, related_name='assignments')
    status = models.CharField(max_length=20, choices=Device.STATUS_CHOICES, default=Device.OCCUPIED)
    assigned_at = models.DateTimeField()
    released_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        verbose_name = "Device Assignment"
        verbose_name_plural = "Device Assignments"
        ordering = ['-assigned_at']
        constraints = [
            models.UniqueConstraint(
                fields=['device'],
                condition=Q(released_at__isnull=True),
                name='unique_open_assignment_per_device',
            ),
            models.CheckConstraint(
                condition=Q(released_at__isnull=True) | Q(released_at__gte=F('assigned_at')),
                name='released_after_assigned',
            ),
        ]
        indexes = [
            models.Index(fields=['device', 'released_at'], name='assignment_device_open_idx'),
            models.Index(fields=['order_id'], name='assignment_order_idx'),
        ]

    def __str__(self):
        state = 'open' if self.is_open else 'released'
        return f"{self.device_id} -> order {self.order_id} ({state})"

    @property
    def is_open(self):
        return self.released_at is None

    @property
    def device_name(self):
        return self.device.name

    def delete(self, *args, **kwargs):
        raise Conflict("Device assignments are part of the audit trail and cannot be deleted.",
                       assignment_id=str(self.id))


class StatusHistory(models.Model):
    SOURCE_CHOICES = [
        ('create', 'Device Created'),
        ('edit', 'Device Edited'),
        ('assign', 'Assigned To Order'),
        ('release', 'Released From Order'),
        ('batch', 'Batch Status Update'),
        ('restore', 'Batch Restore'),
    ]

    device = models.ForeignKey(Device, on_delete=models.CASCADE, related_name='status_history')
    old_status = models.CharField(max_length=20, blank=True, default='')
    new_status = models.CharField(max_length=20)
    source = models.CharField(max_length=20, choices=SOURCE_CHOICES)
    order_id = models.UUIDField(null=True, blank=True)
    notes = models.TextField(blank=True, default='')
    changed_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-changed_at']
        verbose_name_plural = "Status History"

    STATUS_LABELS = dict(Device.STATUS_CHOICES)

    def __str__(self):
        return f"{self.device} - {self.old_status or '-'} to {self.new_status}"

    def old_status_label(self):
        return self.STATUS_LABELS.get(self.old_status, self.old_status)

    def new_status_label(self):
        return self.STATUS_LABELS.get(self.new_status, self.new_status)
