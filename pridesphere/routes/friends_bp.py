from flask import Blueprint, request, jsonify

from pridesphere.database import get_db, new_id, now_iso, row_to_dict
from pridesphere.errors import BadRequest, Conflict, Forbidden, NotFound
from pridesphere.realtime import notify, record_change
from pridesphere.routes.auth_bp import login_required, current_user_id

friends_bp = Blueprint('friends', __name__)


def _profile(db, user_id):
    row = db.execute('SELECT display_name, username, avatar_url, pronouns FROM profiles WHERE user_id = ?',
                     (user_id,)).fetchone()
    return dict(row) if row else None


def find_friendship(db, user_a, user_b):
    """The friendship row between two users, whichever of them asked."""
    return db.execute('''SELECT * FROM friendships
                         WHERE (requester_id = ? AND addressee_id = ?) OR (requester_id = ? AND addressee_id = ?)''',
                      (user_a, user_b, user_b, user_a)).fetchone()


def are_friends(db, user_a, user_b):
    row = find_friendship(db, user_a, user_b)
    return row is not None and row['status'] == 'accepted'


@friends_bp.route('/friends')
@login_required
def list_friendships():
    """Splits the caller's friendships into friends, incoming and sent requests."""
    db = get_db()
    user_id = current_user_id()
    rows = db.execute('SELECT * FROM friendships WHERE requester_id = ? OR addressee_id = ? '
                      'ORDER BY updated_at DESC', (user_id, user_id)).fetchall()

    friends, requests, sent = [], [], []
    for row in rows:
        friendship = row_to_dict(row)
        if friendship['status'] == 'accepted':
            other_id = friendship['addressee_id'] if friendship['requester_id'] == user_id else friendship['requester_id']
            profile = _profile(db, other_id) or {}
            friends.append({
                "id": other_id,
                "display_name": profile.get('display_name') or 'Unknown User',
                "username": profile.get('username') or '',
                "avatar_url": profile.get('avatar_url') or '',
                "pronouns": profile.get('pronouns') or '',
            })
        elif friendship['status'] == 'pending':
            friendship['requester_profile'] = _profile(db, friendship['requester_id'])
            friendship['addressee_profile'] = _profile(db, friendship['addressee_id'])
            if friendship['addressee_id'] == user_id:
                requests.append(friendship)
            else:
                sent.append(friendship)

    return jsonify({"friends": friends, "requests": requests, "sent": sent})


@friends_bp.route('/friends/requests', methods=['POST'])
@login_required
def send_request():
    data = request.get_json(silent=True) or {}
    target_id = data.get('user_id')
    user_id = current_user_id()
    if not target_id:
        raise BadRequest("user_id is required")
    if target_id == user_id:
        raise BadRequest("You cannot send a friend request to yourself")

    db = get_db()
    if db.execute('SELECT 1 FROM users WHERE id = ?', (target_id,)).fetchone() is None:
        raise NotFound("User not found")

    existing = find_friendship(db, user_id, target_id)
    if existing is not None and existing['status'] == 'accepted':
        raise Conflict("Already friends")
    if existing is not None and existing['status'] == 'pending':
        raise Conflict("Friend request already sent")

    stamp = now_iso()
    with db:
        if existing is not None:
            # A declined request is re-opened with the caller as requester
            friendship_id = existing['id']
            db.execute('''UPDATE friendships SET requester_id = ?, addressee_id = ?, status = 'pending', updated_at = ?
                          WHERE id = ?''', (user_id, target_id, stamp, friendship_id))
            record_change(db, 'friendships', 'UPDATE', friendship_id, user_ids=[user_id, target_id])
        else:
            friendship_id = new_id()
            db.execute('''INSERT INTO friendships (id, requester_id, addressee_id, status, created_at, updated_at)
                          VALUES (?, ?, ?, 'pending', ?, ?)''', (friendship_id, user_id, target_id, stamp, stamp))
            record_change(db, 'friendships', 'INSERT', friendship_id, user_ids=[user_id, target_id])
        notify(db, target_id, "New friend request", "Someone wants to connect with you", "/friends")
    return jsonify({"id": friendship_id, "message": "Friend request sent!"}), 201


@friends_bp.route('/friends/requests/<friendship_id>', methods=['POST'])
@login_required
def respond_to_request(friendship_id):
    data = request.get_json(silent=True) or {}
    action = data.get('action')
    if action not in ('accept', 'decline'):
        raise BadRequest("Action must be 'accept' or 'decline'")

    db = get_db()
    user_id = current_user_id()
    friendship = db.execute('SELECT * FROM friendships WHERE id = ?', (friendship_id,)).fetchone()
    if friendship is None:
        raise NotFound("Friend request not found")
    # Only the addressee can respond
    if friendship['addressee_id'] != user_id:
        raise Forbidden("Only the recipient can respond to this request")
    if friendship['status'] != 'pending':
        raise Conflict("This request has already been answered")

    status = 'accepted' if action == 'accept' else 'declined'
    with db:
        db.execute('UPDATE friendships SET status = ?, updated_at = ? WHERE id = ?',
                   (status, now_iso(), friendship_id))
        record_change(db, 'friendships', 'UPDATE', friendship_id,
                      user_ids=[friendship['requester_id'], user_id])
        if status == 'accepted':
            notify(db, friendship['requester_id'], "Friend request accepted",
                   "You have a new friend", "/friends")
    return jsonify({"message": f"Friend request {action}ed!", "status": status})


@friends_bp.route('/friends/<friend_id>', methods=['DELETE'])
@login_required
def remove_friend(friend_id):
    db = get_db()
    user_id = current_user_id()
    friendship = find_friendship(db, user_id, friend_id)
    if friendship is None or friendship['status'] != 'accepted':
        raise NotFound("You are not friends with this user")
    with db:
        db.execute('DELETE FROM friendships WHERE id = ?', (friendship['id'],))
        record_change(db, 'friendships', 'DELETE', friendship['id'], user_ids=[user_id, friend_id])
    return jsonify({"message": "Friend removed"})
