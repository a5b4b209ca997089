from flask import Blueprint, request, jsonify, current_app

from pridesphere.database import get_db
from pridesphere.errors import BadRequest
from pridesphere.procedures import user_can_access_conversation
from pridesphere.realtime import visible_to
from pridesphere.routes.auth_bp import login_required, current_user_id

realtime_bp = Blueprint('realtime', __name__)


@realtime_bp.route('/changes')
@login_required
def list_changes():
    """
    Row changes after ``since`` that the caller may see, oldest first.
    Poll again with the returned cursor and re-fetch whatever the events touch.
    """
    try:
        since = int(request.args.get('since', 0))
    except ValueError:
        raise BadRequest("since must be an integer cursor")

    query = 'SELECT * FROM row_changes WHERE id > ?'
    params = [since]
    for arg, column in (('table', 'table_name'), ('community_id', 'community_id'),
                        ('conversation_id', 'conversation_id')):
        value = request.args.get(arg)
        if value:
            query += f' AND {column} = ?'
            params.append(value)
    query += ' ORDER BY id ASC LIMIT ?'
    params.append(current_app.config['CHANGES_LIMIT'])

    db = get_db()
    user_id = current_user_id()
    rows = db.execute(query, params).fetchall()
    access = {}

    def can_access(conversation_id):
        if conversation_id not in access:
            access[conversation_id] = user_can_access_conversation(db, conversation_id, user_id)
        return access[conversation_id]

    # The cursor moves past hidden rows too so they are not scanned again
    cursor = rows[-1]['id'] if rows else since
    changes = [
        {
            "id": row['id'],
            "table": row['table_name'],
            "event": row['event'],
            "row_id": row['row_id'],
            "community_id": row['community_id'],
            "conversation_id": row['conversation_id'],
            "created_at": row['created_at'],
        }
        for row in rows if visible_to(row, user_id, can_access)
    ]
    return jsonify({"changes": changes, "cursor": cursor})
