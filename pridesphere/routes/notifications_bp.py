from flask import Blueprint, jsonify

from pridesphere.database import get_db, rows_to_dicts
from pridesphere.errors import NotFound
from pridesphere.realtime import record_change
from pridesphere.routes.auth_bp import login_required, current_user_id

notifications_bp = Blueprint('notifications', __name__)


def _unread(db, user_id):
    return db.execute('SELECT COUNT(*) FROM notifications WHERE user_id = ? AND is_read = 0',
                      (user_id,)).fetchone()[0]


@notifications_bp.route('/notifications')
@login_required
def list_notifications():
    db = get_db()
    user_id = current_user_id()
    rows = db.execute('SELECT * FROM notifications WHERE user_id = ? ORDER BY created_at DESC',
                      (user_id,)).fetchall()
    return jsonify({"notifications": rows_to_dicts(rows), "unread_count": _unread(db, user_id)})


@notifications_bp.route('/notifications/<notification_id>/read', methods=['POST'])
@login_required
def mark_as_read(notification_id):
    db = get_db()
    user_id = current_user_id()
    with db:
        # Scoped to the caller so nobody can touch another user's notifications
        updated = db.execute('UPDATE notifications SET is_read = 1 WHERE id = ? AND user_id = ?',
                             (notification_id, user_id)).rowcount
        if updated:
            record_change(db, 'notifications', 'UPDATE', notification_id, user_ids=[user_id])
    if not updated:
        raise NotFound("Notification not found")
    return jsonify({"unread_count": _unread(db, user_id)})


@notifications_bp.route('/notifications/read-all', methods=['POST'])
@login_required
def mark_all_as_read():
    db = get_db()
    user_id = current_user_id()
    with db:
        updated = db.execute('UPDATE notifications SET is_read = 1 WHERE user_id = ? AND is_read = 0',
                             (user_id,)).rowcount
        if updated:
            record_change(db, 'notifications', 'UPDATE', None, user_ids=[user_id])
    return jsonify({"updated": updated, "unread_count": 0})
