import logging
from collections import defaultdict

from flask import Blueprint, request, jsonify

from pridesphere.database import get_db, new_id, now_iso, row_to_dict, rows_to_dicts
from pridesphere.errors import BadRequest, Conflict, Forbidden, NotFound
from pridesphere.procedures import delete_own_message, user_can_access_conversation
from pridesphere.realtime import notify, record_change
from pridesphere.routes.auth_bp import login_required, current_user_id
from pridesphere.routes.events_bp import parse_timestamp
from pridesphere.routes.moderation_bp import clean_text
from pridesphere.routes.settings_bp import load_settings

logger = logging.getLogger(__name__)

messages_bp = Blueprint('messages', __name__)

GROUP_WELCOME = "🎉 Welcome to your new safe space!"
DM_WELCOME = "💕 Start sharing your thoughts!"
CALL_TYPES = ('audio', 'video')
# Allowed call status moves; ended and declined are final
CALL_TRANSITIONS = {
    'ringing': ('active', 'declined', 'ended'),
    'active': ('ended', 'declined'),
}
MAX_EMOJI_LENGTH = 16


# --- HELPERS ---

def _require_access(db, conversation_id, user_id):
    conversation = db.execute('SELECT * FROM conversations WHERE id = ?', (conversation_id,)).fetchone()
    if conversation is None:
        raise NotFound("Conversation not found")
    if not user_can_access_conversation(db, conversation_id, user_id):
        raise Forbidden("You are not part of this conversation")
    return conversation


def _participants(db, conversation_id):
    return rows_to_dicts(db.execute('''
        SELECT cp.user_id, p.display_name, p.username, p.avatar_url, p.pronouns, p.is_verified
        FROM conversation_participants cp LEFT JOIN profiles p ON p.user_id = cp.user_id
        WHERE cp.conversation_id = ? ORDER BY cp.joined_at ASC
    ''', (conversation_id,)).fetchall())


def _insert_message(db, conversation_id, user_id, content, message_type='text', media_url=None, reply_to_id=None):
    message_id = new_id()
    stamp = now_iso()
    db.execute('''INSERT INTO messages (id, conversation_id, user_id, content, message_type, media_url, reply_to_id, created_at)
                  VALUES (?, ?, ?, ?, ?, ?, ?, ?)''',
               (message_id, conversation_id, user_id, content, message_type, media_url, reply_to_id, stamp))
    db.execute('UPDATE conversations SET updated_at = ? WHERE id = ?', (stamp, conversation_id))
    record_change(db, 'messages', 'INSERT', message_id, conversation_id=conversation_id)
    return message_id


def _with_reactions(db, messages):
    """Adds {emoji: [user_ids]} to each message."""
    messages = rows_to_dicts(messages)
    if not messages:
        return messages
    ids = [m['id'] for m in messages]
    placeholders = ",".join("?" * len(ids))
    reactions = defaultdict(lambda: defaultdict(list))
    for row in db.execute(f'SELECT message_id, emoji, user_id FROM message_reactions '
                          f'WHERE message_id IN ({placeholders}) ORDER BY created_at', ids).fetchall():
        reactions[row['message_id']][row['emoji']].append(row['user_id'])
    for message in messages:
        message['reactions'] = {emoji: users for emoji, users in reactions[message['id']].items()}
    return messages


def _display_name(conversation, participants, user_id):
    if conversation['is_group']:
        return conversation['name'] or "Group chat"
    others = [p for p in participants if p['user_id'] != user_id]
    if not others:
        return "Just you"
    return others[0]['display_name'] or others[0]['username'] or "User"


def _summary(db, conversation, user_id):
    conversation = row_to_dict(conversation)
    participants = _participants(db, conversation['id'])
    last = db.execute('SELECT id, user_id, content, message_type, created_at FROM messages '
                      'WHERE conversation_id = ? ORDER BY created_at DESC LIMIT 1',
                      (conversation['id'],)).fetchone()
    conversation['participants'] = participants
    conversation['last_message'] = row_to_dict(last)
    conversation['display_name'] = _display_name(conversation, participants, user_id)
    return conversation


def _matches(summary, q, user_id):
    if summary['is_group']:
        return q in (summary['name'] or '').lower()
    for p in summary['participants']:
        if p['user_id'] == user_id:
            continue
        if q in (p['display_name'] or '').lower() or q in (p['username'] or '').lower():
            return True
    return False


def find_direct_conversation(db, user_a, user_b):
    row = db.execute('''
        SELECT c.id FROM conversations c
        WHERE c.is_group = 0
          AND EXISTS (SELECT 1 FROM conversation_participants WHERE conversation_id = c.id AND user_id = ?)
          AND EXISTS (SELECT 1 FROM conversation_participants WHERE conversation_id = c.id AND user_id = ?)
          AND (SELECT COUNT(*) FROM conversation_participants WHERE conversation_id = c.id) = 2
        LIMIT 1
    ''', (user_a, user_b)).fetchone()
    return row['id'] if row else None


# --- CONVERSATIONS ---

@messages_bp.route('/conversations', methods=['GET', 'POST'])
@login_required
def handle_conversations():
    db = get_db()
    user_id = current_user_id()

    if request.method == 'GET':
        rows = db.execute('''
            SELECT c.* FROM conversations c
            JOIN conversation_participants cp ON cp.conversation_id = c.id
            WHERE cp.user_id = ? ORDER BY c.updated_at DESC
        ''', (user_id,)).fetchall()
        summaries = [_summary(db, row, user_id) for row in rows]
        q = request.args.get('q', '').strip().lower().lstrip('@')
        if q:
            summaries = [s for s in summaries if _matches(s, q, user_id)]
        return jsonify(summaries)

    data = request.get_json(silent=True) or {}
    selected = data.get('user_ids') or ([data['user_id']] if data.get('user_id') else [])
    if not isinstance(selected, list):
        raise BadRequest("user_ids must be a list")
    selected = list(dict.fromkeys(u for u in selected if u and u != user_id))
    if not selected:
        raise BadRequest("Select at least one person to chat with")
    for other_id in selected:
        if db.execute('SELECT 1 FROM users WHERE id = ?', (other_id,)).fetchone() is None:
            raise NotFound("User not found")

    is_group = bool(data.get('is_group')) or len(selected) > 1
    if not is_group:
        existing = find_direct_conversation(db, user_id, selected[0])
        if existing:
            return jsonify({"id": existing, "existing": True})
        if not load_settings(db, selected[0])['dms_enabled']:
            raise Forbidden("This person isn't accepting direct messages")

    name = clean_text(data.get('name')) if is_group else None
    if is_group and not name:
        name = f"Group with {len(selected)} members"

    conversation_id = new_id()
    stamp = now_iso()
    with db:
        db.execute('INSERT INTO conversations (id, name, is_group, created_by, created_at, updated_at) '
                   'VALUES (?, ?, ?, ?, ?, ?)', (conversation_id, name, int(is_group), user_id, stamp, stamp))
        for participant in [user_id] + selected:
            db.execute('INSERT INTO conversation_participants (id, conversation_id, user_id, joined_at) '
                       'VALUES (?, ?, ?, ?)', (new_id(), conversation_id, participant, stamp))
        record_change(db, 'conversations', 'INSERT', conversation_id, user_ids=[user_id] + selected)
        _insert_message(db, conversation_id, user_id, GROUP_WELCOME if is_group else DM_WELCOME, 'system')
        for participant in selected:
            notify(db, participant, "New conversation", "Someone started a chat with you",
                   f"/messages/{conversation_id}")
    return jsonify({"id": conversation_id, "existing": False}), 201


@messages_bp.route('/conversations/<conversation_id>')
@login_required
def get_conversation(conversation_id):
    db = get_db()
    conversation = _require_access(db, conversation_id, current_user_id())
    return jsonify(_summary(db, conversation, current_user_id()))


@messages_bp.route('/conversations/<conversation_id>/leave', methods=['POST'])
@login_required
def leave_conversation(conversation_id):
    db = get_db()
    user_id = current_user_id()
    conversation = _require_access(db, conversation_id, user_id)
    if not conversation['is_group']:
        raise BadRequest("You can only leave group chats")

    profile = db.execute('SELECT display_name, username FROM profiles WHERE user_id = ?', (user_id,)).fetchone()
    name = (profile and (profile['display_name'] or profile['username'])) or "Someone"
    with db:
        _insert_message(db, conversation_id, user_id, f"{name} left the chat", 'system')
        db.execute('DELETE FROM conversation_participants WHERE conversation_id = ? AND user_id = ?',
                   (conversation_id, user_id))
    return jsonify({"message": "Left the conversation"})


# --- MESSAGES ---

@messages_bp.route('/conversations/<conversation_id>/messages', methods=['GET', 'POST'])
@login_required
def handle_messages(conversation_id):
    db = get_db()
    user_id = current_user_id()
    _require_access(db, conversation_id, user_id)

    if request.method == 'GET':
        query = 'SELECT * FROM messages WHERE conversation_id = ?'
        params = [conversation_id]
        since = request.args.get('since')
        if since:
            # An unescaped '+' in the offset arrives as a space
            query += ' AND created_at > ?'
            params.append(parse_timestamp(since.replace(' ', '+'), 'since').isoformat())
        query += ' ORDER BY created_at ASC'
        return jsonify(_with_reactions(db, db.execute(query, params).fetchall()))

    data = request.get_json(silent=True) or {}
    content = clean_text(data.get('content'))
    media_url = data.get('media_url') or None
    if not content and not media_url:
        return jsonify({"error": "Message cannot be empty"}), 400

    reply_to_id = data.get('reply_to_id') or None
    if reply_to_id:
        parent = db.execute('SELECT 1 FROM messages WHERE id = ? AND conversation_id = ?',
                            (reply_to_id, conversation_id)).fetchone()
        if parent is None:
            raise BadRequest("Replied-to message is not in this conversation")

    with db:
        message_id = _insert_message(db, conversation_id, user_id, content,
                                     'media' if media_url else 'text', media_url, reply_to_id)
    message = db.execute('SELECT * FROM messages WHERE id = ?', (message_id,)).fetchall()
    return jsonify(_with_reactions(db, message)[0]), 201


@messages_bp.route('/messages/<message_id>', methods=['DELETE'])
@login_required
def delete_message(message_id):
    delete_own_message(get_db(), message_id, current_user_id())
    return jsonify({"message": "Message deleted"})


@messages_bp.route('/messages/<message_id>/reactions', methods=['POST'])
@login_required
def toggle_reaction(message_id):
    """Adds the caller's reaction, or removes it if it is already there."""
    data = request.get_json(silent=True) or {}
    emoji = (data.get('emoji') or '').strip()
    if not emoji or len(emoji) > MAX_EMOJI_LENGTH:
        raise BadRequest("A single emoji is required")

    db = get_db()
    user_id = current_user_id()
    message = db.execute('SELECT * FROM messages WHERE id = ?', (message_id,)).fetchone()
    if message is None:
        raise NotFound("Message not found")
    _require_access(db, message['conversation_id'], user_id)

    with db:
        removed = db.execute('DELETE FROM message_reactions WHERE message_id = ? AND user_id = ? AND emoji = ?',
                             (message_id, user_id, emoji)).rowcount
        if not removed:
            db.execute('INSERT INTO message_reactions (id, message_id, user_id, emoji, created_at) '
                       'VALUES (?, ?, ?, ?, ?)', (new_id(), message_id, user_id, emoji, now_iso()))
        record_change(db, 'message_reactions', 'DELETE' if removed else 'INSERT', message_id,
                      conversation_id=message['conversation_id'])
    return jsonify(_with_reactions(db, [message])[0])


# --- CALLS ---

@messages_bp.route('/conversations/<conversation_id>/calls', methods=['POST'])
@login_required
def start_call(conversation_id):
    data = request.get_json(silent=True) or {}
    call_type = data.get('call_type')
    if call_type not in CALL_TYPES:
        raise BadRequest("call_type must be 'audio' or 'video'")

    db = get_db()
    user_id = current_user_id()
    _require_access(db, conversation_id, user_id)
    for participant in _participants(db, conversation_id):
        if participant['user_id'] != user_id and not load_settings(db, participant['user_id'])['calls_enabled']:
            raise Forbidden("Someone in this conversation has calls turned off")

    call_id = new_id()
    with db:
        db.execute('INSERT INTO calls (id, conversation_id, caller_id, call_type, status, created_at) '
                   "VALUES (?, ?, ?, ?, 'ringing', ?)", (call_id, conversation_id, user_id, call_type, now_iso()))
        record_change(db, 'calls', 'INSERT', call_id, conversation_id=conversation_id)
    return jsonify(row_to_dict(db.execute('SELECT * FROM calls WHERE id = ?', (call_id,)).fetchone())), 201


@messages_bp.route('/calls/<call_id>', methods=['PATCH'])
@login_required
def update_call(call_id):
    data = request.get_json(silent=True) or {}
    status = data.get('status')

    db = get_db()
    call = db.execute('SELECT * FROM calls WHERE id = ?', (call_id,)).fetchone()
    if call is None:
        raise NotFound("Call not found")
    _require_access(db, call['conversation_id'], current_user_id())
    if status not in CALL_TRANSITIONS.get(call['status'], ()):
        raise Conflict(f"Cannot move a {call['status']} call to {status}")

    stamp = now_iso()
    with db:
        if status == 'active':
            db.execute("UPDATE calls SET status = 'active', started_at = ? WHERE id = ?", (stamp, call_id))
        else:
            db.execute('UPDATE calls SET status = ?, ended_at = ? WHERE id = ?', (status, stamp, call_id))
        record_change(db, 'calls', 'UPDATE', call_id, conversation_id=call['conversation_id'])
    return jsonify(row_to_dict(db.execute('SELECT * FROM calls WHERE id = ?', (call_id,)).fetchone()))
