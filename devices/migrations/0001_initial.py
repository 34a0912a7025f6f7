import uuid

from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='Device',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('name', models.CharField(max_length=255)),
                ('brand', models.CharField(max_length=255)),
                ('barcode', models.CharField(max_length=255, unique=True)),
                ('status', models.CharField(choices=[('GOOD_CONDITION', 'Good Condition'), ('FAIR', 'Fair'), ('OCCUPIED', 'Occupied'), ('NEEDS_REPAIR', 'Needs Repair')], default='GOOD_CONDITION', max_length=20)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('version', models.PositiveIntegerField(default=0)),
            ],
            options={
                'verbose_name': 'Device',
                'verbose_name_plural': 'Devices',
                'ordering': ['name', 'barcode'],
                'indexes': [models.Index(fields=['status'], name='device_status_idx')],
            },
        ),
        migrations.CreateModel(
            name='DeviceAssignment',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('order_id', models.UUIDField()),
                ('status', models.CharField(choices=[('GOOD_CONDITION', 'Good Condition'), ('FAIR', 'Fair'), ('OCCUPIED', 'Occupied'), ('NEEDS_REPAIR', 'Needs Repair')], default='OCCUPIED', max_length=20)),
                ('assigned_at', models.DateTimeField()),
                ('released_at', models.DateTimeField(blank=True, null=True)),
                ('device', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='assignments', to='devices.device')),
            ],
            options={
                'verbose_name': 'Device Assignment',
                'verbose_name_plural': 'Device Assignments',
                'ordering': ['-assigned_at'],
                'indexes': [
                    models.Index(fields=['device', 'released_at'], name='assignment_device_open_idx'),
                    models.Index(fields=['order_id'], name='assignment_order_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(condition=models.Q(('released_at__isnull', True)), fields=('device',), name='unique_open_assignment_per_device'),
                    models.CheckConstraint(condition=models.Q(('released_at__isnull', True), ('released_at__gte', models.F('assigned_at')), _connector='OR'), name='released_after_assigned'),
                ],
            },
        ),
        migrations.CreateModel(
            name='StatusHistory',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('old_status', models.CharField(blank=True, default='', max_length=20)),
                ('new_status', models.CharField(max_length=20)),
                ('source', models.CharField(choices=[('create', 'Device Created'), ('edit', 'Device Edited'), ('assign', 'Assigned To Order'), ('release', 'Released From Order'), ('batch', 'Batch Status Update'), ('restore', 'Batch Restore')], max_length=20)),
                ('order_id', models.UUIDField(blank=True, null=True)),
                ('notes', models.TextField(blank=True, default='')),
                ('changed_at', models.DateTimeField(auto_now_add=True)),
                ('device', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='status_history', to='devices.device')),
            ],
            options={
                'verbose_name_plural': 'Status History',
                'ordering': ['-changed_at'],
            },
        ),
    ]
