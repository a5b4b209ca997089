from flask import Blueprint, request, jsonify

from pridesphere.database import get_db, new_id, now_iso, row_to_dict
from pridesphere.errors import BadRequest
from pridesphere.routes.auth_bp import login_required, current_user_id

settings_bp = Blueprint('settings', __name__)

VISIBILITY_OPTIONS = ('public', 'friends', 'private')
BOOLEAN_SETTINGS = ('dms_enabled', 'calls_enabled')


def load_settings(db, user_id):
    """The user's settings row, created with defaults on first access."""
    row = db.execute('SELECT * FROM user_settings WHERE user_id = ?', (user_id,)).fetchone()
    if row is None:
        with db:
            db.execute('INSERT OR IGNORE INTO user_settings (id, user_id, created_at, updated_at) VALUES (?, ?, ?, ?)',
                       (new_id(), user_id, now_iso(), now_iso()))
        row = db.execute('SELECT * FROM user_settings WHERE user_id = ?', (user_id,)).fetchone()
    return row_to_dict(row)


@settings_bp.route('/settings', methods=['GET', 'PATCH'])
@login_required
def handle_settings():
    db = get_db()
    user_id = current_user_id()
    if request.method == 'GET':
        return jsonify(load_settings(db, user_id))

    data = request.get_json(silent=True) or {}
    updates = {}
    for field in BOOLEAN_SETTINGS:
        if field in data:
            if not isinstance(data[field], bool):
                raise BadRequest(f"{field} must be true or false")
            updates[field] = int(data[field])
    if 'profile_visibility' in data:
        if data['profile_visibility'] not in VISIBILITY_OPTIONS:
            raise BadRequest(f"profile_visibility must be one of: {', '.join(VISIBILITY_OPTIONS)}")
        updates['profile_visibility'] = data['profile_visibility']
    if not updates:
        return jsonify({"error": "Nothing to update"}), 400

    load_settings(db, user_id)
    updates['updated_at'] = now_iso()
    assignments = ", ".join(f"{column} = ?" for column in updates)
    with db:
        db.execute(f"UPDATE user_settings SET {assignments} WHERE user_id = ?", (*updates.values(), user_id))
    return jsonify({"message": "Setting updated!", "settings": load_settings(db, user_id)})
