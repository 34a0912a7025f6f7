import logging

import requests
from django.conf import settings
from django.db import transaction

logger = logging.getLogger(__name__)


def _assignment_payload(event, assignment):
    return {
        'type': event,
        'assignment_id': str(assignment.id),
        'device_id': str(assignment.device_id),
        'order_id': str(assignment.order_id),
        'status': assignment.status,
        'assigned_at': assignment.assigned_at.isoformat(),
        'released_at': assignment.released_at.isoformat() if assignment.released_at else None,
    }


def send_event(payload):
    """POST an event to NOTIFICATION_WEBHOOK_URL. Returns True when delivered."""
    webhook_url = getattr(settings, 'NOTIFICATION_WEBHOOK_URL', '')
    if not webhook_url:
        logger.debug("No webhook configured, %s event logged only", payload['type'])
        return False

    try:
        resp = requests.post(webhook_url, json=payload, timeout=5)
        resp.raise_for_status()
    except requests.RequestException as e:
        # The operation is already committed; delivery is best effort
        logger.warning("Failed to deliver %s event for device %s: %s",
                       payload['type'], payload.get('device_id'), e)
        return False
    return True


def schedule_assignment_event(event, assignment):
    """Queue an assignment event to be sent after the current transaction commits.

    Nothing is sent if the transaction rolls back, and no HTTP call is ever
    made while row locks are held.
    """
    payload = _assignment_payload(event, assignment)
    transaction.on_commit(lambda: send_event(payload))
