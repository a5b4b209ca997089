import logging

from flask import Blueprint, request, jsonify, current_app

from pridesphere import procedures
from pridesphere.database import get_db, now_iso, to_json, row_to_dict, rows_to_dicts
from pridesphere.errors import BadRequest, Forbidden
from pridesphere.realtime import record_change
from pridesphere.routes.auth_bp import login_required, current_user_id
from pridesphere.routes.moderation_bp import clean_text, contains_profanity
from pridesphere.routes.posts_bp import as_bool, save_upload

logger = logging.getLogger(__name__)

communities_bp = Blueprint('communities', __name__)

MAX_NAME_LENGTH = 80
FILE_TYPES = {'avatar': 'avatar_url', 'banner': 'banner_url'}


def _clean_tags(tags):
    if tags is None:
        return None
    if isinstance(tags, str):
        tags = tags.split(',')
    return [t.strip() for t in tags if t and t.strip()]


def _clean_name(name):
    name = clean_text(name)
    if not name:
        raise BadRequest("Community name is required")
    if len(name) > MAX_NAME_LENGTH:
        raise BadRequest(f"Community name must be at most {MAX_NAME_LENGTH} characters")
    if contains_profanity(name):
        raise BadRequest("Community name contains inappropriate language.")
    return name


def _community_payload(db, community_id, user_id):
    community = row_to_dict(procedures.get_community(db, community_id))
    community['role'] = procedures.member_role(db, community_id, user_id)
    community['is_blocked'] = procedures.is_blocked(db, community_id, user_id)
    return community


# --- DIRECTORY ---

@communities_bp.route('/communities', methods=['GET', 'POST'])
@login_required
def handle_communities():
    db = get_db()

    if request.method == 'GET':
        query = "SELECT * FROM communities WHERE deleted_at IS NULL"
        params = []
        q = request.args.get('q', '').strip()
        if q:
            query += " AND (name LIKE ? OR description LIKE ?)"
            params += [f"%{q}%", f"%{q}%"]
        category = request.args.get('category')
        if category and category != 'all':
            query += " AND category = ?"
            params.append(category)
        query += " ORDER BY member_count DESC, created_at DESC"
        return jsonify(rows_to_dicts(db.execute(query, params).fetchall()))

    data = request.get_json(silent=True) or {}
    community_id = procedures.create_community_with_owner(
        db, current_user_id(), _clean_name(data.get('name')),
        default_limit=current_app.config['DEFAULT_MAX_COMMUNITIES'],
        description=clean_text(data.get('description')) or None,
        category=data.get('category'),
        tags=_clean_tags(data.get('tags')),
        is_premium=as_bool(data.get('is_premium', False)),
    )
    return jsonify(_community_payload(db, community_id, current_user_id())), 201


@communities_bp.route('/communities/<community_id>', methods=['GET', 'PATCH', 'DELETE'])
@login_required
def handle_community(community_id):
    db = get_db()
    user_id = current_user_id()

    if request.method == 'GET':
        return jsonify(_community_payload(db, community_id, user_id))

    if request.method == 'DELETE':
        procedures.delete_community_cascade(db, community_id, actor_id=user_id)
        return jsonify({"message": "Community deleted"})

    # PATCH: owners and admins edit details, only the owner renames
    procedures.get_community(db, community_id)
    role = procedures.require_role(db, community_id, user_id, procedures.MODERATOR_ROLES,
                                   "Only community owners and admins can edit the community")
    data = request.get_json(silent=True) or {}
    updates = {}
    if 'name' in data:
        if role != 'owner':
            raise Forbidden("Only the owner can rename the community")
        updates['name'] = _clean_name(data['name'])
    if 'description' in data:
        updates['description'] = clean_text(data['description']) or None
    if 'category' in data:
        updates['category'] = data['category'] or 'General'
    if 'tags' in data:
        updates['tags'] = to_json(_clean_tags(data['tags']))
    if not updates:
        return jsonify({"error": "Nothing to update"}), 400

    updates['updated_at'] = now_iso()
    assignments = ", ".join(f"{column} = ?" for column in updates)
    with db:
        db.execute(f"UPDATE communities SET {assignments} WHERE id = ?", (*updates.values(), community_id))
        record_change(db, 'communities', 'UPDATE', community_id, community_id=community_id)
    return jsonify(_community_payload(db, community_id, user_id))


# --- MEMBERSHIP ---

@communities_bp.route('/communities/<community_id>/join', methods=['POST'])
@login_required
def join(community_id):
    procedures.join_community(get_db(), community_id, current_user_id())
    return jsonify({"message": "Joined community"}), 201


@communities_bp.route('/communities/<community_id>/leave', methods=['POST'])
@login_required
def leave(community_id):
    procedures.leave_community(get_db(), community_id, current_user_id())
    return jsonify({"message": "Left community"})


@communities_bp.route('/communities/<community_id>/transfer', methods=['POST'])
@login_required
def transfer(community_id):
    data = request.get_json(silent=True) or {}
    new_owner_id = data.get('new_owner_id')
    if not new_owner_id:
        return jsonify({"error": "new_owner_id is required"}), 400
    procedures.transfer_community_ownership(get_db(), community_id, current_user_id(), new_owner_id)
    return jsonify({"message": "Ownership transferred"})


@communities_bp.route('/communities/<community_id>/transfer-candidates')
@login_required
def transfer_candidates(community_id):
    db = get_db()
    procedures.get_community(db, community_id)
    procedures.require_role(db, community_id, current_user_id(), ('owner',),
                            "Only the community owner can transfer ownership")
    rows = db.execute('''
        SELECT m.user_id, m.role, p.username, p.display_name, p.avatar_url
        FROM community_memberships m LEFT JOIN profiles p ON p.user_id = m.user_id
        WHERE m.community_id = ? AND m.role != 'owner'
        ORDER BY m.role = 'admin' DESC, m.joined_at ASC
    ''', (community_id,)).fetchall()
    return jsonify(rows_to_dicts(rows))


# --- FILES ---

@communities_bp.route('/communities/<community_id>/files/<kind>', methods=['POST'])
@login_required
def upload_file(community_id, kind):
    if kind not in FILE_TYPES:
        return jsonify({"error": "File type must be 'avatar' or 'banner'"}), 400
    db = get_db()
    procedures.get_community(db, community_id)
    procedures.require_role(db, community_id, current_user_id(), procedures.MODERATOR_ROLES,
                            "Only community owners and admins can change images")

    url = save_upload(request.files.get('file'), f"{community_id}_{kind}")
    with db:
        db.execute(f"UPDATE communities SET {FILE_TYPES[kind]} = ?, updated_at = ? WHERE id = ?",
                   (url, now_iso(), community_id))
        record_change(db, 'communities', 'UPDATE', community_id, community_id=community_id)
    return jsonify({"url": url})
