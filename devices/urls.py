from django.urls import path
from . import views

app_name = 'devices'

urlpatterns = [
    # Devices
    path('api/devices/', views.device_collection, name='device_collection'),
    path('api/devices/batch/', views.devices_by_ids, name='devices_by_ids'),
    path('api/devices/barcode/<str:barcode>/', views.device_by_barcode, name='device_by_barcode'),
    path('api/devices/<uuid:device_id>/', views.device_detail, name='device_detail'),

    # Batch operations
    path('api/devices/reserve/', views.batch_update_status, name='reserve_devices'),
    path('api/devices/update-batch/', views.batch_update_status, name='update_devices_batch'),
    path('api/devices/restore/', views.restore_devices, name='restore_devices'),

    # Assignments
    path('api/assignments/assign/', views.assign_device, name='assign_device'),
    path('api/assignments/release/', views.release_device, name='release_device'),
    path('api/assignments/devices/active/', views.devices_active, name='devices_active'),
    path('api/assignments/<uuid:device_id>/history/', views.assignment_history, name='assignment_history'),
    path('api/assignments/<uuid:device_id>/active/', views.device_active, name='device_active'),
]
