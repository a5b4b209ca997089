"""
Change feed and notification fan-out.

Every mutation appends a row to ``row_changes`` inside the caller's
transaction. Clients poll ``/api/changes`` with the last cursor they saw and
re-fetch whatever the events touch.
"""
import logging

from pridesphere.database import new_id, now_iso

logger = logging.getLogger(__name__)

EVENTS = ('INSERT', 'UPDATE', 'DELETE')


def record_change(db, table, event, row_id, community_id=None, conversation_id=None, user_ids=()):
    if event not in EVENTS:
        raise ValueError(f"Unknown change event: {event}")
    users = ",".join(sorted({u for u in user_ids if u})) or None
    db.execute(
        'INSERT INTO row_changes (table_name, event, row_id, community_id, conversation_id, user_ids, created_at) '
        'VALUES (?, ?, ?, ?, ?, ?, ?)',
        (table, event, row_id, community_id, conversation_id, users, now_iso()))


def notify(db, user_id, title, message, link=None):
    """Stores an in-app notification for one user; no commit."""
    notification_id = new_id()
    db.execute(
        'INSERT INTO notifications (id, user_id, title, message, link, is_read, created_at) '
        'VALUES (?, ?, ?, ?, ?, 0, ?)',
        (notification_id, user_id, title, message, link, now_iso()))
    record_change(db, 'notifications', 'INSERT', notification_id, user_ids=[user_id])
    return notification_id


def visible_to(change, user_id, can_access_conversation):
    """Decides whether one change row may be shown to ``user_id``."""
    if change['conversation_id']:
        return can_access_conversation(change['conversation_id'])
    if change['user_ids']:
        return user_id in change['user_ids'].split(',')
    return True
