from flask import Blueprint, request, jsonify

from pridesphere import procedures
from pridesphere.database import get_db, rows_to_dicts
from pridesphere.routes.auth_bp import login_required, current_user_id

admin_bp = Blueprint('admin', __name__)

EMPTY_PROFILE = {"username": None, "display_name": None, "avatar_url": None}


def _with_profiles(db, rows):
    """Attaches each row's profile, falling back to empty fields when there is none."""
    rows = rows_to_dicts(rows)
    if not rows:
        return []
    user_ids = [row['user_id'] for row in rows]
    placeholders = ",".join("?" * len(user_ids))
    profiles = {
        p['user_id']: {"username": p['username'], "display_name": p['display_name'], "avatar_url": p['avatar_url']}
        for p in db.execute(f'SELECT user_id, username, display_name, avatar_url FROM profiles '
                            f'WHERE user_id IN ({placeholders})', user_ids).fetchall()
    }
    for row in rows:
        row['profile'] = profiles.get(row['user_id'], dict(EMPTY_PROFILE))
    return rows


def _require_moderator(db, community_id):
    procedures.get_community(db, community_id)
    return procedures.require_role(db, community_id, current_user_id(), procedures.MODERATOR_ROLES,
                                   "Only community owners and admins can do that")


# --- STATS & METRICS ---

@admin_bp.route('/communities/<community_id>/admin/stats')
@login_required
def get_admin_stats(community_id):
    db = get_db()
    _require_moderator(db, community_id)
    stats = {
        "members": db.execute('SELECT COUNT(*) FROM community_memberships WHERE community_id = ?',
                              (community_id,)).fetchone()[0],
        "posts": db.execute('SELECT COUNT(*) FROM posts WHERE community_id = ?', (community_id,)).fetchone()[0],
        "flagged_posts": db.execute("SELECT COUNT(*) FROM posts WHERE community_id = ? AND status = 'flagged'",
                                    (community_id,)).fetchone()[0],
        "reports": db.execute('SELECT COUNT(*) FROM reports r JOIN posts p ON p.id = r.post_id '
                              'WHERE p.community_id = ?', (community_id,)).fetchone()[0],
        "blocked": db.execute('SELECT COUNT(*) FROM blocked_members WHERE community_id = ?',
                              (community_id,)).fetchone()[0],
    }
    return jsonify(stats)


# --- DATA FETCHING ROUTES ---

@admin_bp.route('/communities/<community_id>/members')
@login_required
def get_members(community_id):
    """Members newest first, each with a profile."""
    db = get_db()
    procedures.get_community(db, community_id)
    rows = db.execute('SELECT id, user_id, role, joined_at FROM community_memberships '
                      'WHERE community_id = ? ORDER BY joined_at DESC', (community_id,)).fetchall()
    return jsonify(_with_profiles(db, rows))


@admin_bp.route('/communities/<community_id>/blocked')
@login_required
def get_blocked(community_id):
    db = get_db()
    _require_moderator(db, community_id)
    rows = db.execute('SELECT id, user_id, blocked_by, blocked_at, reason FROM blocked_members '
                      'WHERE community_id = ? ORDER BY blocked_at DESC', (community_id,)).fetchall()
    return jsonify(_with_profiles(db, rows))


@admin_bp.route('/communities/<community_id>/reports')
@login_required
def get_reports(community_id):
    """Reports on this community's posts, with the post content for review."""
    db = get_db()
    _require_moderator(db, community_id)
    query = '''
        SELECT r.id, r.post_id, r.reason, r.created_at, p.content AS post_content,
               p.user_id AS author_id, p.status AS post_status
        FROM reports r
        JOIN posts p ON r.post_id = p.id
        WHERE p.community_id = ?
        ORDER BY r.created_at DESC
    '''
    return jsonify(rows_to_dicts(db.execute(query, (community_id,)).fetchall()))


# --- ACTION ROUTES ---

@admin_bp.route('/communities/<community_id>/block', methods=['POST'])
@login_required
def block_member(community_id):
    """Removes a member and keeps them from rejoining."""
    data = request.get_json(silent=True) or {}
    user_id = data.get('user_id')
    if not user_id:
        return jsonify({"error": "No user_id provided"}), 400
    procedures.block_community_member(get_db(), community_id, user_id, current_user_id(),
                                      reason=(data.get('reason') or '').strip() or None)
    return jsonify({"message": "The member has been permanently removed from the community"})


@admin_bp.route('/communities/<community_id>/block/<user_id>', methods=['DELETE'])
@login_required
def unblock_member(community_id, user_id):
    procedures.unblock_community_member(get_db(), community_id, user_id, current_user_id())
    return jsonify({"message": "Member unblocked"})


@admin_bp.route('/communities/<community_id>/members/<user_id>', methods=['PATCH'])
@login_required
def change_role(community_id, user_id):
    data = request.get_json(silent=True) or {}
    procedures.set_member_role(get_db(), community_id, user_id, data.get('role'), current_user_id())
    return jsonify({"message": "Role updated"})


@admin_bp.route('/communities/<community_id>/members/<user_id>/posts', methods=['DELETE'])
@login_required
def delete_member_posts(community_id, user_id):
    count = procedures.delete_user_posts_in_community(get_db(), community_id, user_id, current_user_id())
    return jsonify({"message": "All posts from this member have been removed", "deleted": count})
