# /gamewatch/gamewatch/notifications.py

"""
Push side of notifications. Rows are written by storage.add_notifications_batch;
this module fans them out to whoever subscribed (websocket bridge, ntfy, ...).
"""

from blinker import Namespace
from flask import current_app

_signals = Namespace()

# Receivers get (sender=app, notification=<dict>)
notification_created = _signals.signal('notification-created')


def notify_user(notification):
    """Pushes one persisted Notification to subscribers in real time."""
    payload = notification.to_dict()
    app = current_app._get_current_object()
    try:
        notification_created.send(app, notification=payload)
    except Exception as e:
        # Delivery is best-effort; the row is already stored
        current_app.logger.warning(f"Notification push failed for '{payload['title']}': {e}")
    return payload


def notify_all(notifications):
    for notification in notifications:
        notify_user(notification)
