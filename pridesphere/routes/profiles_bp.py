import sqlite3

from flask import Blueprint, request, jsonify, current_app

from pridesphere.database import get_db, new_id, now_iso, to_json, row_to_dict, rows_to_dicts
from pridesphere.errors import BadRequest, Conflict, NotFound
from pridesphere.realtime import record_change
from pridesphere.routes.auth_bp import login_required, current_user_id
from pridesphere.routes.friends_bp import are_friends
from pridesphere.routes.moderation_bp import clean_text, contains_profanity
from pridesphere.routes.posts_bp import save_upload
from pridesphere.routes.settings_bp import load_settings

profiles_bp = Blueprint('profiles', __name__)

THEME_ACCENTS = ('rainbow', 'trans', 'lesbian', 'bi', 'pan', 'ace')
VERIFICATION_METHODS = ('story', 'social', 'community', 'document')
TEXT_FIELDS = ('display_name', 'username', 'bio', 'pronouns', 'location')
MAX_INTERESTS = 12


def _own_profile(db, user_id):
    return row_to_dict(db.execute('SELECT * FROM profiles WHERE user_id = ?', (user_id,)).fetchone())


def _update_profile(db, user_id, updates):
    updates['updated_at'] = now_iso()
    assignments = ", ".join(f"{column} = ?" for column in updates)
    try:
        with db:
            db.execute(f"UPDATE profiles SET {assignments} WHERE user_id = ?", (*updates.values(), user_id))
            record_change(db, 'profiles', 'UPDATE', user_id)
    except sqlite3.IntegrityError:
        raise Conflict("That username is already taken")


@profiles_bp.route('/profiles/me', methods=['GET', 'PATCH'])
@login_required
def my_profile():
    db = get_db()
    user_id = current_user_id()
    if request.method == 'GET':
        return jsonify(_own_profile(db, user_id))

    data = request.get_json(silent=True) or {}
    updates = {}
    for field in TEXT_FIELDS:
        if field in data:
            value = clean_text(data[field]) or None
            if contains_profanity(value):
                raise BadRequest(f"{field} contains inappropriate language.")
            updates[field] = value
    if updates.get('username'):
        updates['username'] = updates['username'].lstrip('@').lower()
    if 'interests' in data:
        interests = data['interests'] or []
        if not isinstance(interests, list):
            raise BadRequest("interests must be a list")
        updates['interests'] = to_json([str(i).strip() for i in interests if str(i).strip()][:MAX_INTERESTS])
    if 'avatar_url' in data:
        updates['avatar_url'] = data['avatar_url'] or None
    if 'theme_accent' in data:
        if data['theme_accent'] not in THEME_ACCENTS:
            raise BadRequest(f"theme_accent must be one of: {', '.join(THEME_ACCENTS)}")
        updates['theme_accent'] = data['theme_accent']
    if not updates:
        return jsonify({"error": "Nothing to update"}), 400

    _update_profile(db, user_id, updates)
    return jsonify(_own_profile(db, user_id))


@profiles_bp.route('/profiles/me/avatar', methods=['POST'])
@login_required
def upload_avatar():
    user_id = current_user_id()
    url = save_upload(request.files.get('file'), f"avatar_{user_id}")
    _update_profile(get_db(), user_id, {'avatar_url': url})
    return jsonify({"url": url})


@profiles_bp.route('/profiles/me/verification', methods=['POST'])
@login_required
def request_verification():
    data = request.get_json(silent=True) or {}
    method = data.get('method')
    if method not in VERIFICATION_METHODS:
        raise BadRequest(f"method must be one of: {', '.join(VERIFICATION_METHODS)}")

    db = get_db()
    user_id = current_user_id()
    pending = db.execute("SELECT 1 FROM verification_requests WHERE user_id = ? AND status = 'pending'",
                         (user_id,)).fetchone()
    if pending:
        raise Conflict("A verification request is already under review")

    with db:
        db.execute('INSERT INTO verification_requests (id, user_id, method, details, created_at) '
                   'VALUES (?, ?, ?, ?, ?)',
                   (new_id(), user_id, method, clean_text(data.get('details')) or None, now_iso()))
        db.execute("UPDATE profiles SET verification_status = 'pending', updated_at = ? WHERE user_id = ?",
                   (now_iso(), user_id))
    return jsonify({"message": "Verification submitted! We'll review your application within 24-48 hours.",
                    "verification_status": "pending"}), 201


@profiles_bp.route('/profiles/search')
@login_required
def search_profiles():
    """Case-insensitive match on display name or username, excluding the caller."""
    q = request.args.get('q', '').strip().lstrip('@')
    if not q:
        return jsonify([])
    limit_key = 'CHAT_SEARCH_LIMIT' if request.args.get('purpose') == 'chat' else 'PROFILE_SEARCH_LIMIT'
    pattern = f"%{q.lower()}%"
    rows = get_db().execute('''
        SELECT user_id, username, display_name, pronouns, avatar_url, is_verified FROM profiles
        WHERE user_id != ? AND (LOWER(display_name) LIKE ? OR LOWER(username) LIKE ?)
        ORDER BY display_name LIMIT ?
    ''', (current_user_id(), pattern, pattern, current_app.config[limit_key])).fetchall()
    return jsonify(rows_to_dicts(rows))


@profiles_bp.route('/profiles/<user_id>')
@login_required
def get_profile(user_id):
    """Another user's profile, subject to their visibility setting."""
    db = get_db()
    viewer = current_user_id()
    profile = _own_profile(db, user_id)
    if profile is None:
        raise NotFound("Profile not found")
    if viewer != user_id:
        visibility = load_settings(db, user_id)['profile_visibility']
        if visibility == 'private' or (visibility == 'friends' and not are_friends(db, viewer, user_id)):
            raise NotFound("Profile not found")
    return jsonify(profile)
