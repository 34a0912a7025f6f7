"""
Test suite for the device store, the assignment ledger and the batch state
engine, plus the JSON API that exposes them.

Organized by component, then by the end-to-end scenarios the ledger has to
survive (round trips, barcode reuse, lost races).
"""

import json
import threading
import uuid
from datetime import datetime, timedelta, timezone as dt_timezone
from unittest import mock

import requests
from django.contrib.auth.models import User
from django.db import OperationalError, connection
from django.test import Client, TestCase, TransactionTestCase, override_settings

from .batch import BatchStateEngine
from .errors import Conflict, InternalFailure, InvalidInput, NotFound
from .ledger import ASSIGNED, AVAILABLE, UNAVAILABLE, AssignmentLedger
from .models import Device, DeviceAssignment, StatusHistory
from .notifications import send_event
from .store import DeviceStore


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_device(store, barcode='BC-1', status=Device.GOOD_CONDITION, **overrides):
    data = {'name': 'Oscilloscope', 'brand': 'Tektronix', 'barcode': barcode, 'status': status}
    data.update(overrides)
    return store.create(**data)


def _post_json(client, url, payload, method='post'):
    return getattr(client, method)(url, json.dumps(payload), content_type='application/json')


def _at(minutes):
    return datetime(2026, 1, 1, 12, 0, tzinfo=dt_timezone.utc) + timedelta(minutes=minutes)


# ===================================================================
# 1. Device Store
# ===================================================================

class TestDeviceStore(TestCase):
    """Creation, lookups, listing and barcode uniqueness."""

    def setUp(self):
        self.store = DeviceStore()

    def test_create_trims_fields_and_records_history(self):
        device = self.store.create(name='  Multimeter ', brand=' Fluke ', barcode=' BC-9 ')
        self.assertEqual(device.name, 'Multimeter')
        self.assertEqual(device.brand, 'Fluke')
        self.assertEqual(device.barcode, 'BC-9')
        self.assertEqual(device.status, Device.GOOD_CONDITION)
        self.assertEqual(device.version, 0)
        entry = StatusHistory.objects.get(device=device)
        self.assertEqual(entry.source, 'create')
        self.assertEqual(entry.new_status, Device.GOOD_CONDITION)

    def test_create_duplicate_barcode_conflicts(self):
        _make_device(self.store, barcode='BC-1')
        with self.assertRaises(Conflict) as ctx:
            _make_device(self.store, barcode='BC-1', name='Another')
        self.assertEqual(ctx.exception.context['field'], 'barcode')
        self.assertEqual(Device.objects.count(), 1)

    def test_create_requires_name_brand_barcode(self):
        for field in ('name', 'brand', 'barcode'):
            data = {'name': 'Multimeter', 'brand': 'Fluke', 'barcode': f'BC-{field}'}
            data[field] = '   '
            with self.assertRaises(InvalidInput) as ctx:
                self.store.create(**data)
            self.assertEqual(ctx.exception.context['field'], field)
        self.assertEqual(Device.objects.count(), 0)

    def test_create_rejects_unknown_status(self):
        with self.assertRaises(InvalidInput):
            _make_device(self.store, status='BROKEN')

    def test_create_integrity_error_maps_to_conflict(self):
        """A barcode inserted between the pre-check and the insert still surfaces as Conflict."""
        Device.objects.create(name='Racer', brand='X', barcode='BC-RACE')
        with mock.patch('devices.store.Device.objects.filter') as mock_filter:
            mock_filter.return_value.exists.side_effect = [False, True]
            with self.assertRaises(Conflict):
                _make_device(self.store, barcode='BC-RACE')

    def test_get_by_id_and_barcode(self):
        device = _make_device(self.store)
        self.assertEqual(self.store.get_by_id(device.pk), device)
        self.assertEqual(self.store.get_by_id(str(device.pk)), device)
        self.assertEqual(self.store.get_by_barcode('BC-1'), device)

    def test_get_missing_raises_not_found(self):
        with self.assertRaises(NotFound):
            self.store.get_by_id(uuid.uuid4())
        with self.assertRaises(NotFound):
            self.store.get_by_barcode('nope')

    def test_malformed_id_is_invalid_input(self):
        with self.assertRaises(InvalidInput):
            self.store.get_by_id('not-a-uuid')

    def test_list_by_status_and_statuses(self):
        _make_device(self.store, barcode='A')
        _make_device(self.store, barcode='B', status=Device.FAIR)
        _make_device(self.store, barcode='C', status=Device.NEEDS_REPAIR)

        self.assertEqual(self.store.list_all().count(), 3)
        self.assertEqual([d.barcode for d in self.store.list_by_status(Device.FAIR)], ['B'])
        barcodes = sorted(d.barcode for d in self.store.list_by_statuses([Device.FAIR, Device.NEEDS_REPAIR]))
        self.assertEqual(barcodes, ['B', 'C'])
        self.assertEqual(self.store.list_by_statuses([]).count(), 0)

    def test_list_by_unknown_status_is_invalid(self):
        with self.assertRaises(InvalidInput):
            self.store.list_by_status('LOST')

    def test_non_string_values_are_invalid(self):
        for bad in (['FAIR'], {'a': 1}, 3):
            with self.assertRaises(InvalidInput):
                self.store.list_by_status(bad)
            with self.assertRaises(InvalidInput):
                _make_device(self.store, barcode='BC-X', status=bad)
        with self.assertRaises(InvalidInput):
            _make_device(self.store, barcode=['BC-X'])
        self.assertEqual(Device.objects.count(), 0)

    def test_get_many_skips_unknown_ids(self):
        a = _make_device(self.store, barcode='A')
        b = _make_device(self.store, barcode='B')
        found = self.store.get_many([a.pk, b.pk, uuid.uuid4()])
        self.assertEqual({d.pk for d in found}, {a.pk, b.pk})
        self.assertEqual(self.store.get_many([]).count(), 0)


# ===================================================================
# 2. Device Store -- updates and optimistic revisions
# ===================================================================

class TestDeviceStoreUpdates(TestCase):
    """Partial updates, barcode re-validation and stale revisions."""

    def setUp(self):
        self.store = DeviceStore()
        self.device = _make_device(self.store, barcode='BC-1')

    def test_partial_update_bumps_version(self):
        updated = self.store.update(self.device.pk, {'name': 'Scope 2'})
        self.assertEqual(updated.name, 'Scope 2')
        self.assertEqual(updated.brand, 'Tektronix')
        self.assertEqual(updated.version, 1)
        self.device.refresh_from_db()
        self.assertEqual(self.device.version, 1)

    def test_update_to_same_barcode_is_allowed(self):
        updated = self.store.update(self.device.pk, {'barcode': 'BC-1', 'brand': 'Keysight'})
        self.assertEqual(updated.barcode, 'BC-1')
        self.assertEqual(updated.brand, 'Keysight')

    def test_update_barcode_collision_conflicts(self):
        _make_device(self.store, barcode='BC-2')
        with self.assertRaises(Conflict):
            self.store.update(self.device.pk, {'barcode': 'BC-2'})
        self.device.refresh_from_db()
        self.assertEqual(self.device.barcode, 'BC-1')

    def test_update_status_records_history(self):
        self.store.update(self.device.pk, {'status': Device.NEEDS_REPAIR})
        entry = StatusHistory.objects.filter(device=self.device, source='edit').get()
        self.assertEqual(entry.old_status, Device.GOOD_CONDITION)
        self.assertEqual(entry.new_status, Device.NEEDS_REPAIR)

    def test_update_with_stale_expected_version_conflicts(self):
        self.store.update(self.device.pk, {'name': 'First writer'}, expected_version=0)
        with self.assertRaises(Conflict):
            self.store.update(self.device.pk, {'brand': 'Second writer'}, expected_version=0)
        self.device.refresh_from_db()
        self.assertEqual(self.device.name, 'First writer')
        self.assertEqual(self.device.brand, 'Tektronix')

    def test_write_through_stale_instance_conflicts(self):
        """Two edits racing on the same row: the second one loses instead of clobbering."""
        stale = self.store.get_by_id(self.device.pk)
        self.store.update(self.device.pk, {'name': 'Fresh'})
        with self.assertRaises(Conflict):
            self.store.set_status(stale, Device.FAIR, source='edit')
        self.device.refresh_from_db()
        self.assertEqual(self.device.status, Device.GOOD_CONDITION)
        self.assertEqual(self.device.name, 'Fresh')

    def test_update_unknown_field_is_invalid(self):
        with self.assertRaises(InvalidInput):
            self.store.update(self.device.pk, {'serial': 'X'})

    def test_update_missing_device_not_found(self):
        with self.assertRaises(NotFound):
            self.store.update(uuid.uuid4(), {'name': 'Ghost'})

    def test_noop_update_keeps_version(self):
        updated = self.store.update(self.device.pk, {'name': 'Oscilloscope'})
        self.assertEqual(updated.version, 0)


# ===================================================================
# 3. Device Store -- deletion
# ===================================================================

class TestDeviceDeletion(TestCase):

    def setUp(self):
        self.store = DeviceStore()
        self.ledger = AssignmentLedger(self.store, reset_on_release=True)

    def test_delete_unreferenced_device(self):
        device = _make_device(self.store)
        self.store.delete(device.pk)
        self.assertFalse(Device.objects.filter(pk=device.pk).exists())

    def test_delete_missing_device_not_found(self):
        with self.assertRaises(NotFound):
            self.store.delete(uuid.uuid4())

    def test_delete_device_with_open_assignment_conflicts(self):
        device = _make_device(self.store)
        self.ledger.assign(uuid.uuid4(), device.pk)
        with self.assertRaises(Conflict):
            self.store.delete(device.pk)
        self.assertTrue(Device.objects.filter(pk=device.pk).exists())

    def test_delete_device_with_history_conflicts(self):
        device = _make_device(self.store)
        self.ledger.assign(uuid.uuid4(), device.pk)
        self.ledger.release(device.pk, Device.FAIR)
        with self.assertRaises(Conflict):
            self.store.delete(device.pk)
        self.assertEqual(DeviceAssignment.objects.filter(device=device).count(), 1)

    def test_assignment_rows_cannot_be_deleted(self):
        device = _make_device(self.store)
        assignment = self.ledger.assign(uuid.uuid4(), device.pk)
        with self.assertRaises(Conflict):
            assignment.delete()
        self.assertTrue(DeviceAssignment.objects.filter(pk=assignment.pk).exists())


# ===================================================================
# 4. Assignment Ledger -- assign
# ===================================================================

class TestAssign(TestCase):

    def setUp(self):
        self.store = DeviceStore()
        self.ledger = AssignmentLedger(self.store, reset_on_release=True)
        self.device = _make_device(self.store)

    def test_assign_creates_open_assignment_and_occupies_device(self):
        order_id = uuid.uuid4()
        assignment = self.ledger.assign(order_id, self.device.pk)

        self.assertEqual(assignment.order_id, order_id)
        self.assertEqual(assignment.status, Device.OCCUPIED)
        self.assertIsNone(assignment.released_at)
        self.assertTrue(self.ledger.has_active_assignment(self.device.pk))
        self.device.refresh_from_db()
        self.assertEqual(self.device.status, Device.OCCUPIED)
        self.assertEqual(self.ledger.state_of(self.device.pk), ASSIGNED)

    def test_assign_accepts_string_ids(self):
        assignment = self.ledger.assign(str(uuid.uuid4()), str(self.device.pk))
        self.assertEqual(assignment.device_id, self.device.pk)

    def test_assign_records_status_history(self):
        order_id = uuid.uuid4()
        self.ledger.assign(order_id, self.device.pk)
        entry = StatusHistory.objects.get(device=self.device, source='assign')
        self.assertEqual(entry.old_status, Device.GOOD_CONDITION)
        self.assertEqual(entry.new_status, Device.OCCUPIED)
        self.assertEqual(entry.order_id, order_id)

    def test_assign_logs_audit_record(self):
        order_id = uuid.uuid4()
        with self.assertLogs('devices.ledger', level='INFO') as logs:
            self.ledger.assign(order_id, self.device.pk)
        self.assertTrue(any(str(order_id) in line and str(self.device.pk) in line for line in logs.output))

    def test_assign_already_assigned_conflicts(self):
        self.ledger.assign(uuid.uuid4(), self.device.pk)
        with self.assertRaises(Conflict) as ctx:
            self.ledger.assign(uuid.uuid4(), self.device.pk)
        self.assertIn('already assigned', ctx.exception.message)
        self.assertEqual(DeviceAssignment.objects.filter(device=self.device).count(), 1)

    def test_assign_unavailable_device_conflicts(self):
        for status in (Device.FAIR, Device.NEEDS_REPAIR):
            device = _make_device(self.store, barcode=f'BC-{status}', status=status)
            with self.assertRaises(Conflict) as ctx:
                self.ledger.assign(uuid.uuid4(), device.pk)
            self.assertIn('not in a state that allows assignment', ctx.exception.message)
            self.assertEqual(self.ledger.state_of(device.pk), UNAVAILABLE)
            device.refresh_from_db()
            self.assertEqual(device.status, status)
        self.assertEqual(DeviceAssignment.objects.count(), 0)

    def test_assign_missing_device_not_found(self):
        with self.assertRaises(NotFound):
            self.ledger.assign(uuid.uuid4(), uuid.uuid4())

    def test_assign_requires_order_id(self):
        for bad in (None, '', '   '):
            with self.assertRaises(InvalidInput):
                self.ledger.assign(bad, self.device.pk)
        with self.assertRaises(InvalidInput):
            self.ledger.assign('order-42', self.device.pk)
        self.device.refresh_from_db()
        self.assertEqual(self.device.status, Device.GOOD_CONDITION)

    def test_lost_race_becomes_conflict(self):
        """If the availability check is stale, the open-assignment index still rejects the second row."""
        DeviceAssignment.objects.create(order_id=uuid.uuid4(), device=self.device, assigned_at=_at(0))
        with mock.patch.object(AssignmentLedger, 'has_active_assignment', return_value=False):
            with self.assertRaises(Conflict):
                self.ledger.assign(uuid.uuid4(), self.device.pk)

        self.assertEqual(DeviceAssignment.objects.filter(device=self.device, released_at__isnull=True).count(), 1)
        self.device.refresh_from_db()
        self.assertEqual(self.device.status, Device.GOOD_CONDITION)

    def test_failed_status_write_rolls_back_assignment(self):
        """Ledger row and device status commit together or not at all."""
        with mock.patch.object(DeviceStore, 'set_status', side_effect=Conflict('stale')):
            with self.assertRaises(Conflict):
                self.ledger.assign(uuid.uuid4(), self.device.pk)
        self.assertFalse(DeviceAssignment.objects.filter(device=self.device).exists())

    def test_database_error_becomes_internal_failure(self):
        with mock.patch('devices.ledger.DeviceAssignment.objects.create',
                        side_effect=OperationalError('database is locked')):
            with self.assertLogs('devices.ledger', level='ERROR'):
                with self.assertRaises(InternalFailure):
                    self.ledger.assign(uuid.uuid4(), self.device.pk)
        self.device.refresh_from_db()
        self.assertEqual(self.device.status, Device.GOOD_CONDITION)


# ===================================================================
# 5. Assignment Ledger -- release
# ===================================================================

class TestRelease(TestCase):

    def setUp(self):
        self.store = DeviceStore()
        self.ledger = AssignmentLedger(self.store, reset_on_release=True)
        self.device = _make_device(self.store)
        self.order_id = uuid.uuid4()
        self.ledger.assign(self.order_id, self.device.pk)

    def test_release_closes_assignment_and_resets_device(self):
        assignment = self.ledger.release(self.device.pk, Device.NEEDS_REPAIR)

        self.assertIsNotNone(assignment.released_at)
        self.assertGreaterEqual(assignment.released_at, assignment.assigned_at)
        self.assertEqual(assignment.status, Device.NEEDS_REPAIR)
        self.assertFalse(self.ledger.has_active_assignment(self.device.pk))
        self.device.refresh_from_db()
        self.assertEqual(self.device.status, Device.GOOD_CONDITION)
        self.assertEqual(self.ledger.state_of(self.device.pk), AVAILABLE)

    def test_release_can_keep_reported_condition(self):
        ledger = AssignmentLedger(self.store, reset_on_release=False)
        ledger.release(self.device.pk, Device.FAIR)
        self.device.refresh_from_db()
        self.assertEqual(self.device.status, Device.FAIR)
        self.assertEqual(ledger.state_of(self.device.pk), UNAVAILABLE)

    @override_settings(DEVICES_RELEASE_RESETS_STATUS=False)
    def test_release_policy_defaults_from_settings(self):
        self.assertFalse(AssignmentLedger(self.store).reset_on_release)

    def test_release_without_open_assignment_not_found(self):
        self.ledger.release(self.device.pk, Device.FAIR)
        with self.assertRaises(NotFound):
            self.ledger.release(self.device.pk, Device.FAIR)

    def test_release_unknown_device_not_found(self):
        with self.assertRaises(NotFound):
            self.ledger.release(uuid.uuid4(), Device.FAIR)

    def test_release_rejects_occupied_as_result(self):
        with self.assertRaises(InvalidInput):
            self.ledger.release(self.device.pk, Device.OCCUPIED)
        self.assertTrue(self.ledger.has_active_assignment(self.device.pk))

    def test_release_with_other_order_conflicts(self):
        with self.assertRaises(Conflict):
            self.ledger.release(self.device.pk, Device.FAIR, order_id=uuid.uuid4())
        self.assertTrue(self.ledger.has_active_assignment(self.device.pk))

    def test_release_with_matching_order(self):
        assignment = self.ledger.release(self.device.pk, Device.FAIR, order_id=self.order_id)
        self.assertEqual(assignment.order_id, self.order_id)

    def test_release_never_precedes_assignment(self):
        """A clock that steps backwards still yields released_at >= assigned_at."""
        assignment = DeviceAssignment.objects.get(device=self.device, released_at__isnull=True)
        with mock.patch('django.utils.timezone.now', return_value=assignment.assigned_at - timedelta(seconds=5)):
            released = self.ledger.release(self.device.pk, Device.FAIR)
        self.assertEqual(released.released_at, assignment.assigned_at)

    def test_device_is_assignable_again_after_release(self):
        self.ledger.release(self.device.pk, Device.FAIR)
        second = self.ledger.assign(uuid.uuid4(), self.device.pk)
        self.assertTrue(second.is_open)
        self.assertEqual(DeviceAssignment.objects.filter(device=self.device).count(), 2)

    def test_database_error_becomes_internal_failure(self):
        with mock.patch.object(DeviceStore, 'set_status', side_effect=OperationalError('database is locked')):
            with self.assertLogs('devices.ledger', level='ERROR'):
                with self.assertRaises(InternalFailure):
                    self.ledger.release(self.device.pk, Device.FAIR)
        self.assertTrue(self.ledger.has_active_assignment(self.device.pk))


# ===================================================================
# 6. History / query facade
# ===================================================================

class TestHistoryAndActiveFlags(TestCase):

    def setUp(self):
        self.store = DeviceStore()
        self.ledger = AssignmentLedger(self.store, reset_on_release=True)
        self.device = _make_device(self.store)

    def test_history_newest_release_first_and_excludes_open(self):
        first_order, second_order, open_order = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
        with mock.patch('django.utils.timezone.now', return_value=_at(0)):
            self.ledger.assign(first_order, self.device.pk)
        with mock.patch('django.utils.timezone.now', return_value=_at(10)):
            self.ledger.release(self.device.pk, Device.FAIR)
        with mock.patch('django.utils.timezone.now', return_value=_at(20)):
            self.ledger.assign(second_order, self.device.pk)
        with mock.patch('django.utils.timezone.now', return_value=_at(30)):
            self.ledger.release(self.device.pk, Device.NEEDS_REPAIR)
        with mock.patch('django.utils.timezone.now', return_value=_at(40)):
            self.ledger.assign(open_order, self.device.pk)

        history = self.ledger.history(self.device.pk)
        self.assertEqual([a.order_id for a in history], [second_order, first_order])
        self.assertEqual([a.status for a in history], [Device.NEEDS_REPAIR, Device.FAIR])
        self.assertEqual(history[0].device_name, 'Oscilloscope')
        self.assertEqual(history[0].released_at, _at(30))

    def test_history_of_unused_device_is_empty(self):
        self.assertEqual(self.ledger.history(self.device.pk), [])
        self.assertEqual(self.ledger.history(uuid.uuid4()), [])

    def test_has_active_assignment_unknown_device_is_false(self):
        self.assertFalse(self.ledger.has_active_assignment(uuid.uuid4()))

    def test_has_active_assignments_batch(self):
        other = _make_device(self.store, barcode='BC-2')
        missing = uuid.uuid4()
        self.ledger.assign(uuid.uuid4(), self.device.pk)

        result = self.ledger.has_active_assignments([self.device.pk, str(other.pk), missing])
        self.assertEqual(list(result), [self.device.pk, other.pk, missing])
        self.assertEqual(list(result.values()), [True, False, False])

    def test_active_assignment_lookup(self):
        self.assertIsNone(self.ledger.active_assignment(self.device.pk))
        assignment = self.ledger.assign(uuid.uuid4(), self.device.pk)
        self.assertEqual(self.ledger.active_assignment(self.device.pk), assignment)


# ===================================================================
# 7. Batch State Engine
# ===================================================================

class TestBatchStateEngine(TestCase):

    def setUp(self):
        self.store = DeviceStore()
        self.engine = BatchStateEngine(self.store)
        self.d1 = _make_device(self.store, barcode='D1')
        self.d2 = _make_device(self.store, barcode='D2', status=Device.FAIR)

    def test_set_status_updates_every_device(self):
        devices = self.engine.set_status([self.d1.pk, str(self.d2.pk)], Device.OCCUPIED)
        self.assertEqual(len(devices), 2)
        for device in (self.d1, self.d2):
            device.refresh_from_db()
            self.assertEqual(device.status, Device.OCCUPIED)
            self.assertEqual(device.version, 1)
        self.assertEqual(StatusHistory.objects.filter(source='batch').count(), 2)
        self.assertEqual(DeviceAssignment.objects.count(), 0)

    def test_set_status_with_missing_id_mutates_nothing(self):
        missing = uuid.uuid4()
        with self.assertRaises(NotFound) as ctx:
            self.engine.set_status([self.d1.pk, self.d2.pk, missing], Device.OCCUPIED)
        self.assertEqual(ctx.exception.context['missing_ids'], [str(missing)])

        self.d1.refresh_from_db()
        self.d2.refresh_from_db()
        self.assertEqual(self.d1.status, Device.GOOD_CONDITION)
        self.assertEqual(self.d2.status, Device.FAIR)
        self.assertFalse(StatusHistory.objects.filter(source='batch').exists())

    def test_set_status_reports_every_missing_id(self):
        missing = [uuid.uuid4(), uuid.uuid4()]
        with self.assertRaises(NotFound) as ctx:
            self.engine.set_status([missing[0], self.d1.pk, missing[1]], Device.FAIR)
        self.assertEqual(ctx.exception.context['missing_ids'], [str(m) for m in missing])

    def test_set_status_rolls_back_on_failure_partway(self):
        real_set_status = DeviceStore.set_status
        calls = []

        def fail_second(store, device, status, **kwargs):
            calls.append(device.pk)
            if len(calls) == 2:
                raise Conflict('stale')
            return real_set_status(store, device, status, **kwargs)

        with mock.patch.object(DeviceStore, 'set_status', autospec=True, side_effect=fail_second):
            with self.assertRaises(Conflict):
                self.engine.set_status([self.d1.pk, self.d2.pk], Device.NEEDS_REPAIR)

        self.d1.refresh_from_db()
        self.d2.refresh_from_db()
        self.assertEqual(self.d1.status, Device.GOOD_CONDITION)
        self.assertEqual(self.d2.status, Device.FAIR)

    def test_set_status_input_validation(self):
        with self.assertRaises(InvalidInput):
            self.engine.set_status([], Device.FAIR)
        with self.assertRaises(InvalidInput):
            self.engine.set_status([self.d1.pk], 'MISSING')
        with self.assertRaises(InvalidInput):
            self.engine.set_status(['garbage'], Device.FAIR)

    def test_duplicate_ids_are_applied_once(self):
        devices = self.engine.set_status([self.d1.pk, self.d1.pk], Device.FAIR)
        self.assertEqual(len(devices), 1)

    def test_restore_applies_per_device_status(self):
        self.engine.set_status([self.d1.pk, self.d2.pk], Device.OCCUPIED)
        self.engine.restore([
            {'device_id': str(self.d1.pk), 'status': Device.GOOD_CONDITION},
            {'device_id': self.d2.pk, 'state': Device.FAIR},
        ])
        self.d1.refresh_from_db()
        self.d2.refresh_from_db()
        self.assertEqual(self.d1.status, Device.GOOD_CONDITION)
        self.assertEqual(self.d2.status, Device.FAIR)
        self.assertEqual(StatusHistory.objects.filter(source='restore').count(), 2)

    def test_restore_accepts_pairs_and_last_item_wins(self):
        self.engine.restore([(self.d1.pk, Device.FAIR), (self.d1.pk, Device.NEEDS_REPAIR)])
        self.d1.refresh_from_db()
        self.assertEqual(self.d1.status, Device.NEEDS_REPAIR)

    def test_restore_with_missing_device_mutates_nothing(self):
        missing = uuid.uuid4()
        with self.assertRaises(NotFound) as ctx:
            self.engine.restore([
                {'device_id': self.d1.pk, 'status': Device.NEEDS_REPAIR},
                {'device_id': missing, 'status': Device.FAIR},
            ])
        self.assertEqual(ctx.exception.context['missing_ids'], [str(missing)])
        self.d1.refresh_from_db()
        self.assertEqual(self.d1.status, Device.GOOD_CONDITION)

    def test_restore_input_validation(self):
        with self.assertRaises(InvalidInput):
            self.engine.restore([])
        with self.assertRaises(InvalidInput):
            self.engine.restore([{'status': Device.FAIR}])
        with self.assertRaises(InvalidInput):
            self.engine.restore([{'device_id': self.d1.pk}])
        with self.assertRaises(InvalidInput):
            self.engine.restore([{'device_id': self.d1.pk, 'status': 'SHINY'}])
        with self.assertRaises(InvalidInput):
            self.engine.restore(['just-a-string'])

    def test_restore_rejects_device_without_item(self):
        extra = _make_device(self.store, barcode='D3')
        with mock.patch.object(DeviceStore, 'get_many_for_update', return_value=[self.d1, extra]):
            with self.assertRaises(InvalidInput) as ctx:
                self.engine.restore([{'device_id': self.d1.pk, 'status': Device.FAIR}])
        self.assertEqual(ctx.exception.context['device_id'], str(extra.pk))
        self.d1.refresh_from_db()
        self.assertEqual(self.d1.status, Device.GOOD_CONDITION)

    def test_batch_does_not_touch_ledger(self):
        ledger = AssignmentLedger(self.store)
        ledger.assign(uuid.uuid4(), self.d1.pk)
        self.d1.refresh_from_db()
        self.engine.set_status([self.d1.pk], Device.GOOD_CONDITION)
        self.assertTrue(ledger.has_active_assignment(self.d1.pk))


# ===================================================================
# 8. End-to-end scenarios
# ===================================================================

class TestLedgerScenarios(TestCase):

    def setUp(self):
        self.store = DeviceStore()
        self.ledger = AssignmentLedger(self.store, reset_on_release=True)

    def test_assign_release_history_round_trip(self):
        device = _make_device(self.store)
        order_id = uuid.uuid4()
        self.assertEqual(device.status, Device.GOOD_CONDITION)

        self.ledger.assign(order_id, device.pk)
        self.ledger.release(device.pk, Device.FAIR)
        history = self.ledger.history(device.pk)

        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].order_id, order_id)
        self.assertEqual(history[0].status, Device.FAIR)
        self.assertGreaterEqual(history[0].released_at, history[0].assigned_at)
        self.assertFalse(self.ledger.has_active_assignment(device.pk))
        device.refresh_from_db()
        self.assertEqual(device.status, Device.GOOD_CONDITION)

    def test_barcode_reuse_after_rename(self):
        first = _make_device(self.store, barcode='BC-1')
        self.ledger.assign(uuid.uuid4(), first.pk)
        self.ledger.release(first.pk, Device.NEEDS_REPAIR)

        with self.assertRaises(Conflict):
            _make_device(self.store, barcode='BC-1', name='Clone')

        self.store.update(first.pk, {'barcode': 'BC-2'})
        second = _make_device(self.store, barcode='BC-1', name='Clone')
        self.assertNotEqual(first.pk, second.pk)
        self.assertEqual(self.store.get_by_barcode('BC-2').pk, first.pk)

    def test_never_two_open_assignments(self):
        device = _make_device(self.store)
        for _ in range(3):
            self.ledger.assign(uuid.uuid4(), device.pk)
            with self.assertRaises(Conflict):
                self.ledger.assign(uuid.uuid4(), device.pk)
            self.assertEqual(
                DeviceAssignment.objects.filter(device=device, released_at__isnull=True).count(), 1)
            self.ledger.release(device.pk, Device.GOOD_CONDITION)
        self.assertEqual(len(self.ledger.history(device.pk)), 3)


def _race(target, callers=2):
    """Run ``target`` in ``callers`` threads started together; return one outcome label per thread."""
    barrier = threading.Barrier(callers)
    results = []
    lock = threading.Lock()

    def worker():
        try:
            barrier.wait()
            target()
            outcome = 'ok'
        except Conflict:
            outcome = 'conflict'
        except NotFound:
            outcome = 'not_found'
        except Exception as e:
            outcome = f'{type(e).__name__}: {e}'
        finally:
            connection.close()
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(callers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return sorted(results)


class TestConcurrentLedgerCalls(TransactionTestCase):
    """Racing callers on real connections: the database serializes them and exactly one wins."""

    rounds = 10

    def setUp(self):
        self.store = DeviceStore()
        self.ledger = AssignmentLedger(self.store, reset_on_release=True)

    def test_concurrent_assign_single_winner(self):
        for n in range(self.rounds):
            device = _make_device(self.store, barcode=f'RACE-A-{n}')
            results = _race(lambda: self.ledger.assign(uuid.uuid4(), device.pk))

            self.assertEqual(results, ['conflict', 'ok'])
            self.assertEqual(
                DeviceAssignment.objects.filter(device=device, released_at__isnull=True).count(), 1)
            device.refresh_from_db()
            self.assertEqual(device.status, Device.OCCUPIED)

    def test_concurrent_release_single_winner(self):
        for n in range(self.rounds):
            device = _make_device(self.store, barcode=f'RACE-R-{n}')
            self.ledger.assign(uuid.uuid4(), device.pk)
            results = _race(lambda: self.ledger.release(device.pk, Device.FAIR))

            self.assertEqual(results, ['not_found', 'ok'])
            self.assertEqual(len(self.ledger.history(device.pk)), 1)
            self.assertFalse(self.ledger.has_active_assignment(device.pk))

    def test_sqlite_transactions_take_write_lock_at_begin(self):
        if connection.vendor != 'sqlite':
            self.skipTest('SQLite only')
        self.assertEqual(connection.settings_dict['OPTIONS']['transaction_mode'], 'IMMEDIATE')
        self.assertFalse(connection.is_in_memory_db())


# ===================================================================
# 9. Notifications
# ===================================================================

class TestNotifications(TestCase):

    def setUp(self):
        self.store = DeviceStore()
        self.ledger = AssignmentLedger(self.store)
        self.device = _make_device(self.store)

    @override_settings(NOTIFICATION_WEBHOOK_URL='https://hooks.example.test/devices')
    def test_events_posted_after_commit(self):
        with mock.patch('devices.notifications.requests.post') as mock_post:
            with self.captureOnCommitCallbacks(execute=True):
                self.ledger.assign(uuid.uuid4(), self.device.pk)
            with self.captureOnCommitCallbacks(execute=True):
                self.ledger.release(self.device.pk, Device.FAIR)

        self.assertEqual(mock_post.call_count, 2)
        types = [c.kwargs['json']['type'] for c in mock_post.call_args_list]
        self.assertEqual(types, ['assigned', 'released'])
        self.assertEqual(mock_post.call_args_list[0].kwargs['json']['device_id'], str(self.device.pk))

    @override_settings(NOTIFICATION_WEBHOOK_URL='https://hooks.example.test/devices')
    def test_no_event_when_assign_fails(self):
        self.ledger.assign(uuid.uuid4(), self.device.pk)
        with mock.patch('devices.notifications.requests.post') as mock_post:
            with self.captureOnCommitCallbacks(execute=True) as callbacks:
                with self.assertRaises(Conflict):
                    self.ledger.assign(uuid.uuid4(), self.device.pk)
        self.assertEqual(callbacks, [])
        mock_post.assert_not_called()

    @override_settings(NOTIFICATION_WEBHOOK_URL='https://hooks.example.test/devices')
    def test_delivery_failure_is_logged(self):
        with mock.patch('devices.notifications.requests.post', side_effect=requests.ConnectionError('down')):
            with self.assertLogs('devices.notifications', level='WARNING'):
                self.assertFalse(send_event({'type': 'assigned', 'device_id': 'x'}))

    @override_settings(NOTIFICATION_WEBHOOK_URL='')
    def test_no_webhook_configured(self):
        with mock.patch('devices.notifications.requests.post') as mock_post:
            self.assertFalse(send_event({'type': 'released', 'device_id': 'x'}))
        mock_post.assert_not_called()


# ===================================================================
# 10. JSON API
# ===================================================================

class TestDeviceAPI(TestCase):

    def setUp(self):
        self.client = Client()

    def _create(self, **overrides):
        payload = {'name': 'Laptop', 'brand': 'Lenovo', 'barcode': 'BC-1'}
        payload.update(overrides)
        return _post_json(self.client, '/api/devices/', payload)

    def test_create_and_fetch(self):
        resp = self._create()
        self.assertEqual(resp.status_code, 201)
        device = resp.json()['device']
        self.assertEqual(device['status'], Device.GOOD_CONDITION)

        resp = self.client.get(f"/api/devices/{device['id']}/")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['device']['barcode'], 'BC-1')

        resp = self.client.get('/api/devices/barcode/BC-1/')
        self.assertEqual(resp.json()['device']['id'], device['id'])

    def test_create_accepts_status_label(self):
        resp = self._create(status='Needs Repair')
        self.assertEqual(resp.json()['device']['status'], Device.NEEDS_REPAIR)

    def test_create_duplicate_barcode_409(self):
        self._create()
        resp = self._create(name='Other')
        self.assertEqual(resp.status_code, 409)
        self.assertFalse(resp.json()['success'])
        self.assertEqual(resp.json()['field'], 'barcode')

    def test_create_missing_field_400(self):
        resp = self._create(brand='')
        self.assertEqual(resp.status_code, 400)

    def test_invalid_json_400(self):
        resp = self.client.post('/api/devices/', 'not json', content_type='application/json')
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['error'], 'Invalid JSON data')

    def test_unknown_device_404(self):
        resp = self.client.get(f'/api/devices/{uuid.uuid4()}/')
        self.assertEqual(resp.status_code, 404)
        resp = self.client.get('/api/devices/barcode/missing/')
        self.assertEqual(resp.status_code, 404)

    def test_list_filters(self):
        self._create(barcode='A')
        self._create(barcode='B', status='FAIR')
        self._create(barcode='C', status='NEEDS_REPAIR')

        self.assertEqual(len(self.client.get('/api/devices/').json()['devices']), 3)
        resp = self.client.get('/api/devices/', {'status': 'FAIR'})
        self.assertEqual([d['barcode'] for d in resp.json()['devices']], ['B'])
        resp = self.client.get('/api/devices/', {'statuses': 'FAIR,NEEDS_REPAIR'})
        self.assertEqual(sorted(d['barcode'] for d in resp.json()['devices']), ['B', 'C'])
        resp = self.client.get('/api/devices/', {'status': 'WRONG'})
        self.assertEqual(resp.status_code, 400)

    def test_update_with_version(self):
        device = self._create().json()['device']
        url = f"/api/devices/{device['id']}/"

        resp = _post_json(self.client, url, {'name': 'Renamed', 'version': 0}, method='put')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['device']['version'], 1)

        resp = _post_json(self.client, url, {'brand': 'Dell', 'version': 0}, method='patch')
        self.assertEqual(resp.status_code, 409)

    def test_delete(self):
        device = self._create().json()['device']
        resp = self.client.delete(f"/api/devices/{device['id']}/")
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(Device.objects.exists())

    def test_devices_by_ids(self):
        a = self._create(barcode='A').json()['device']
        resp = _post_json(self.client, '/api/devices/batch/', {'ids': [a['id'], str(uuid.uuid4())]})
        self.assertEqual([d['id'] for d in resp.json()['devices']], [a['id']])


class TestBatchAPI(TestCase):

    def setUp(self):
        self.client = Client()
        store = DeviceStore()
        self.d1 = _make_device(store, barcode='D1')
        self.d2 = _make_device(store, barcode='D2')

    def test_reserve_devices(self):
        resp = _post_json(self.client, '/api/devices/reserve/',
                          {'device_ids': [str(self.d1.pk), str(self.d2.pk)], 'state': 'OCCUPIED'},
                          method='put')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['updated_count'], 2)
        self.assertEqual(Device.objects.filter(status=Device.OCCUPIED).count(), 2)

    def test_update_batch_missing_ids_404(self):
        missing = str(uuid.uuid4())
        resp = _post_json(self.client, '/api/devices/update-batch/',
                          {'device_ids': [str(self.d1.pk), missing], 'status': 'FAIR'},
                          method='put')
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()['missing_ids'], [missing])
        self.assertFalse(Device.objects.filter(status=Device.FAIR).exists())

    def test_batch_empty_400(self):
        resp = _post_json(self.client, '/api/devices/reserve/', {'device_ids': [], 'status': 'FAIR'}, method='put')
        self.assertEqual(resp.status_code, 400)

    def test_restore(self):
        resp = _post_json(self.client, '/api/devices/restore/', {'items': [
            {'device_id': str(self.d1.pk), 'state': 'FAIR'},
            {'device_id': str(self.d2.pk), 'status': 'Needs Repair'},
        ]})
        self.assertEqual(resp.status_code, 200)
        self.d1.refresh_from_db()
        self.d2.refresh_from_db()
        self.assertEqual(self.d1.status, Device.FAIR)
        self.assertEqual(self.d2.status, Device.NEEDS_REPAIR)

    def test_restore_empty_400(self):
        resp = _post_json(self.client, '/api/devices/restore/', {'items': []})
        self.assertEqual(resp.status_code, 400)


class TestAssignmentAPI(TestCase):

    def setUp(self):
        self.client = Client()
        self.device = _make_device(DeviceStore(), barcode='BC-API')
        self.order_id = str(uuid.uuid4())

    def _assign(self, order_id=None):
        return _post_json(self.client, '/api/assignments/assign/',
                          {'order_id': order_id or self.order_id, 'device_id': str(self.device.pk)})

    def test_assign_release_history(self):
        resp = self._assign()
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()['assignment']['status'], Device.OCCUPIED)

        resp = self.client.get(f'/api/assignments/{self.device.pk}/active/')
        self.assertTrue(resp.json()['active'])

        resp = _post_json(self.client, '/api/assignments/release/',
                          {'device_id': str(self.device.pk), 'status': 'FAIR'})
        self.assertEqual(resp.status_code, 200)

        resp = self.client.get(f'/api/assignments/{self.device.pk}/history/')
        history = resp.json()['history']
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]['order_id'], self.order_id)
        self.assertEqual(history[0]['status'], Device.FAIR)
        self.assertEqual(history[0]['device_name'], 'Oscilloscope')
        self.assertIsNotNone(history[0]['released_at'])

    def test_double_assign_409(self):
        self._assign()
        resp = self._assign(order_id=str(uuid.uuid4()))
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()['device_id'], str(self.device.pk))

    def test_assign_missing_order_400(self):
        resp = _post_json(self.client, '/api/assignments/assign/', {'device_id': str(self.device.pk)})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['field'], 'order_id')

    def test_release_without_assignment_404(self):
        resp = _post_json(self.client, '/api/assignments/release/',
                          {'device_id': str(self.device.pk), 'status': 'FAIR'})
        self.assertEqual(resp.status_code, 404)

    def test_release_missing_status_400(self):
        self._assign()
        resp = _post_json(self.client, '/api/assignments/release/', {'device_id': str(self.device.pk)})
        self.assertEqual(resp.status_code, 400)

    def test_active_for_many_devices(self):
        self._assign()
        missing = str(uuid.uuid4())
        resp = _post_json(self.client, '/api/assignments/devices/active/',
                          {'device_ids': [str(self.device.pk), missing]})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), [
            {'device_id': str(self.device.pk), 'active': True},
            {'device_id': missing, 'active': False},
        ])

    def test_wrong_method_405(self):
        resp = self.client.get('/api/assignments/assign/')
        self.assertEqual(resp.status_code, 405)


class TestMalformedStatusValues(TestCase):
    """Statuses that arrive as JSON lists, objects or numbers are rejected with 400, never 500."""

    def setUp(self):
        self.client = Client()
        store = DeviceStore()
        self.device = _make_device(store, barcode='BC-TYPES')
        AssignmentLedger(store).assign(uuid.uuid4(), self.device.pk)

    def assertInvalid(self, resp):
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.json()['success'])

    def test_release_with_list_status(self):
        resp = _post_json(self.client, '/api/assignments/release/',
                          {'device_id': str(self.device.pk), 'status': ['FAIR']})
        self.assertInvalid(resp)
        self.assertTrue(DeviceAssignment.objects.filter(device=self.device, released_at__isnull=True).exists())

    def test_update_batch_with_object_status(self):
        resp = _post_json(self.client, '/api/devices/update-batch/',
                          {'device_ids': [str(self.device.pk)], 'status': {'a': 1}}, method='put')
        self.assertInvalid(resp)

    def test_restore_with_list_status(self):
        resp = _post_json(self.client, '/api/devices/restore/',
                          {'items': [{'device_id': str(self.device.pk), 'status': ['FAIR']}]})
        self.assertInvalid(resp)

    def test_create_with_list_status_or_name(self):
        self.assertInvalid(_post_json(self.client, '/api/devices/',
                                      {'name': 'Laptop', 'brand': 'Lenovo', 'barcode': 'BC-N', 'status': ['FAIR']}))
        self.assertInvalid(_post_json(self.client, '/api/devices/',
                                      {'name': ['Laptop'], 'brand': 'Lenovo', 'barcode': 'BC-N'}))
        self.assertFalse(Device.objects.filter(barcode='BC-N').exists())

    def test_patch_with_object_status(self):
        resp = _post_json(self.client, f'/api/devices/{self.device.pk}/', {'status': {'a': 1}}, method='patch')
        self.assertInvalid(resp)
        self.device.refresh_from_db()
        self.assertEqual(self.device.status, Device.OCCUPIED)

    def test_create_with_numeric_status(self):
        resp = _post_json(self.client, '/api/devices/', {'name': 'X', 'brand': 'Y', 'barcode': 'BC-Z', 'status': 7})
        self.assertInvalid(resp)


# ===================================================================
# 11. Configuration
# ===================================================================

class TestConfiguration(TestCase):

    def test_database_engine_is_set(self):
        from django.conf import settings
        self.assertTrue(settings.DATABASES['default']['ENGINE'])

    def test_release_policy_setting_defaults_to_reset(self):
        from django.conf import settings
        self.assertTrue(settings.DEVICES_RELEASE_RESETS_STATUS)


# ===================================================================
# 12. Admin
# ===================================================================

class TestDeviceAdmin(TestCase):
    """Admin edits go through DeviceStore like every other write."""

    def setUp(self):
        self.client = Client()
        self.client.force_login(User.objects.create_superuser('admin', 'admin@example.test', 'pw'))
        self.store = DeviceStore()

    def _form(self, **overrides):
        data = {'name': 'Oscilloscope', 'brand': 'Tektronix', 'barcode': 'BC-ADM', 'status': Device.GOOD_CONDITION}
        data.update(overrides)
        return data

    def test_add_records_creation(self):
        resp = self.client.post('/admin/devices/device/add/', self._form())
        self.assertEqual(resp.status_code, 302)
        device = Device.objects.get(barcode='BC-ADM')
        self.assertEqual(device.version, 0)
        self.assertTrue(StatusHistory.objects.filter(device=device, source='create').exists())

    def test_change_bumps_version_and_records_history(self):
        device = _make_device(self.store, barcode='BC-ADM')
        resp = self.client.post(f'/admin/devices/device/{device.pk}/change/',
                                self._form(status=Device.NEEDS_REPAIR))
        self.assertEqual(resp.status_code, 302)

        device.refresh_from_db()
        self.assertEqual(device.status, Device.NEEDS_REPAIR)
        self.assertEqual(device.version, 1)
        entry = StatusHistory.objects.get(device=device, source='edit')
        self.assertEqual(entry.old_status, Device.GOOD_CONDITION)

    def test_stale_store_write_cannot_overwrite_admin_edit(self):
        device = _make_device(self.store, barcode='BC-ADM')
        stale = self.store.get_by_id(device.pk)
        self.client.post(f'/admin/devices/device/{device.pk}/change/', self._form(status=Device.NEEDS_REPAIR))

        with self.assertRaises(Conflict):
            self.store.set_status(stale, Device.GOOD_CONDITION, source='edit')
        device.refresh_from_db()
        self.assertEqual(device.status, Device.NEEDS_REPAIR)

    def test_unchanged_form_keeps_version(self):
        device = _make_device(self.store, barcode='BC-ADM')
        self.client.post(f'/admin/devices/device/{device.pk}/change/', self._form())
        device.refresh_from_db()
        self.assertEqual(device.version, 0)
