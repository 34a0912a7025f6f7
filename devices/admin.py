from django.contrib import admin, messages
from .errors import DeviceError
from .models import Device, DeviceAssignment, StatusHistory
from .store import EDITABLE_FIELDS, DeviceStore

store = DeviceStore()

@admin.register(Device)
class DeviceAdmin(admin.ModelAdmin):
    list_display = ['name', 'brand', 'barcode', 'status', 'version', 'updated_at']
    list_filter = ['status', 'brand']
    search_fields = ['name', 'brand', 'barcode']
    readonly_fields = ['id', 'version', 'created_at', 'updated_at']

    def save_model(self, request, obj, form, change):
        """Write through DeviceStore so admin edits bump the revision and log status changes."""
        try:
            if not change:
                device = store.create(obj.name, obj.brand, obj.barcode, status=obj.status)
                obj.pk = device.pk
                obj._state.adding = False
            else:
                fields = {f: form.cleaned_data[f] for f in form.changed_data if f in EDITABLE_FIELDS}
                if fields:
                    store.update(obj.pk, fields, expected_version=obj.version)
            obj.refresh_from_db()
        except DeviceError as e:
            self.message_user(request, e.message, level=messages.ERROR)

@admin.register(DeviceAssignment)
class DeviceAssignmentAdmin(admin.ModelAdmin):
    list_display = ['device', 'order_id', 'status', 'assigned_at', 'released_at']
    list_filter = ['status']
    search_fields = ['device__name', 'device__barcode', 'order_id']
    readonly_fields = ['id', 'order_id', 'device', 'status', 'assigned_at', 'released_at']

    # Ledger rows are written by AssignmentLedger only
    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

@admin.register(StatusHistory)
class StatusHistoryAdmin(admin.ModelAdmin):
    list_display = ['device', 'old_status', 'new_status', 'source', 'order_id', 'changed_at']
    list_filter = ['source', 'new_status']
    search_fields = ['device__barcode', 'notes']
