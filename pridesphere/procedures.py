"""
Multi-step data operations that must succeed or fail as a unit.

Each public procedure takes an open connection and wraps its work in a single
``with db:`` block, so a failure at any step rolls the whole thing back.
The ``_underscore`` helpers do the work without opening a transaction, which
lets procedures compose (account deletion cascades owned communities, for
example) without committing halfway.
"""
import logging
import sqlite3

from pridesphere.database import begin_immediate, new_id, now_iso, to_json
from pridesphere.errors import BadRequest, Conflict, Forbidden, NotFound
from pridesphere.realtime import notify, record_change

logger = logging.getLogger(__name__)

ROLES = ('owner', 'admin', 'member')
MODERATOR_ROLES = ('owner', 'admin')


# --- LOOKUPS ---

def get_community(db, community_id):
    row = db.execute('SELECT * FROM communities WHERE id = ? AND deleted_at IS NULL',
                     (community_id,)).fetchone()
    if row is None:
        raise NotFound("Community not found")
    return row


def member_role(db, community_id, user_id):
    row = db.execute('SELECT role FROM community_memberships WHERE community_id = ? AND user_id = ?',
                     (community_id, user_id)).fetchone()
    return row['role'] if row else None


def is_community_member(db, community_id, user_id):
    return member_role(db, community_id, user_id) is not None


def is_blocked(db, community_id, user_id):
    row = db.execute('SELECT 1 FROM blocked_members WHERE community_id = ? AND user_id = ?',
                     (community_id, user_id)).fetchone()
    return row is not None


def require_role(db, community_id, user_id, roles, message):
    role = member_role(db, community_id, user_id)
    if role not in roles:
        raise Forbidden(message)
    return role


def user_can_access_conversation(db, conversation_id, user_id):
    row = db.execute('SELECT 1 FROM conversation_participants WHERE conversation_id = ? AND user_id = ?',
                     (conversation_id, user_id)).fetchone()
    return row is not None


def community_quota(db, user_id, default_limit):
    """Max communities the user may own; None means unlimited."""
    row = db.execute('''
        SELECT t.max_communities FROM user_memberships m
        JOIN membership_tiers t ON t.id = m.membership_tier_id
        WHERE m.user_id = ? AND m.status = 'active'
          AND (m.current_period_end IS NULL OR m.current_period_end > ?)
        ORDER BY m.created_at DESC LIMIT 1
    ''', (user_id, now_iso())).fetchone()
    if row is None:
        return default_limit
    return row['max_communities']


# --- COMMUNITY LIFECYCLE ---

def create_community_with_owner(db, user_id, name, default_limit=None, description=None,
                                category=None, tags=None, avatar_url=None, banner_url=None,
                                is_premium=False):
    name = (name or '').strip()
    if not name:
        raise BadRequest("Community name is required")

    with db:
        begin_immediate(db)
        limit = community_quota(db, user_id, default_limit)
        if limit is not None:
            owned = db.execute('SELECT COUNT(*) FROM communities WHERE created_by = ? AND deleted_at IS NULL',
                               (user_id,)).fetchone()[0]
            if owned >= limit:
                raise Forbidden(f"Your membership allows up to {limit} communities")

        community_id = new_id()
        stamp = now_iso()
        db.execute('''INSERT INTO communities
                      (id, name, description, category, tags, avatar_url, banner_url, is_premium,
                       member_count, created_by, created_at, updated_at)
                      VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?)''',
                   (community_id, name, description or None, category or 'General', to_json(tags),
                    avatar_url, banner_url, int(bool(is_premium)), user_id, stamp, stamp))
        membership_id = new_id()
        db.execute('INSERT INTO community_memberships (id, community_id, user_id, role, joined_at) '
                   'VALUES (?, ?, ?, ?, ?)',
                   (membership_id, community_id, user_id, 'owner', stamp))
        record_change(db, 'communities', 'INSERT', community_id, community_id=community_id)
        record_change(db, 'community_memberships', 'INSERT', membership_id, community_id=community_id)
    logger.info("Community %s created by %s", community_id, user_id)
    return community_id


def _remove_membership(db, community_id, user_id):
    row = db.execute('SELECT id FROM community_memberships WHERE community_id = ? AND user_id = ?',
                     (community_id, user_id)).fetchone()
    if row is None:
        return False
    db.execute('DELETE FROM community_memberships WHERE id = ?', (row['id'],))
    db.execute('UPDATE communities SET member_count = MAX(0, member_count - 1), updated_at = ? WHERE id = ?',
               (now_iso(), community_id))
    record_change(db, 'community_memberships', 'DELETE', row['id'], community_id=community_id,
                  user_ids=[user_id])
    return True


def join_community(db, community_id, user_id):
    try:
        with db:
            begin_immediate(db)
            get_community(db, community_id)
            if is_blocked(db, community_id, user_id):
                raise Forbidden("You have been blocked from this community")
            if is_community_member(db, community_id, user_id):
                raise Conflict("Already a member of this community")
            membership_id = new_id()
            db.execute('INSERT INTO community_memberships (id, community_id, user_id, role, joined_at) '
                       'VALUES (?, ?, ?, ?, ?)',
                       (membership_id, community_id, user_id, 'member', now_iso()))
            db.execute('UPDATE communities SET member_count = member_count + 1, updated_at = ? WHERE id = ?',
                       (now_iso(), community_id))
            record_change(db, 'community_memberships', 'INSERT', membership_id, community_id=community_id,
                          user_ids=[user_id])
    except sqlite3.IntegrityError:
        raise Conflict("Already a member of this community")
    return membership_id


def leave_community(db, community_id, user_id):
    with db:
        get_community(db, community_id)
        role = member_role(db, community_id, user_id)
        if role is None:
            raise NotFound("You are not a member of this community")
        if role == 'owner':
            raise Forbidden("Owners must transfer ownership or delete the community before leaving")
        _remove_membership(db, community_id, user_id)


def set_member_role(db, community_id, user_id, role, actor_id):
    if role not in ('admin', 'member'):
        raise BadRequest("Role must be 'admin' or 'member'")
    with db:
        get_community(db, community_id)
        require_role(db, community_id, actor_id, ('owner',), "Only the community owner can change roles")
        current = member_role(db, community_id, user_id)
        if current is None:
            raise NotFound("User is not a member of this community")
        if current == 'owner':
            raise BadRequest("Ownership can only change through a transfer")
        db.execute('UPDATE community_memberships SET role = ? WHERE community_id = ? AND user_id = ?',
                   (role, community_id, user_id))
        record_change(db, 'community_memberships', 'UPDATE', user_id, community_id=community_id,
                      user_ids=[user_id])


def transfer_community_ownership(db, community_id, current_owner_id, new_owner_id):
    if current_owner_id == new_owner_id:
        raise BadRequest("You already own this community")
    with db:
        get_community(db, community_id)
        require_role(db, community_id, current_owner_id, ('owner',),
                     "Only the community owner can transfer ownership")
        if not is_community_member(db, community_id, new_owner_id):
            raise BadRequest("New owner must be a community member")

        db.execute("UPDATE community_memberships SET role = 'admin' WHERE community_id = ? AND user_id = ?",
                   (community_id, current_owner_id))
        db.execute("UPDATE community_memberships SET role = 'owner' WHERE community_id = ? AND user_id = ?",
                   (community_id, new_owner_id))
        db.execute('UPDATE communities SET created_by = ?, updated_at = ? WHERE id = ?',
                   (new_owner_id, now_iso(), community_id))
        record_change(db, 'community_memberships', 'UPDATE', None, community_id=community_id,
                      user_ids=[current_owner_id, new_owner_id])
        record_change(db, 'communities', 'UPDATE', community_id, community_id=community_id)
        notify(db, new_owner_id, "You're the owner now",
               "Ownership of a community has been transferred to you",
               f"/communities/{community_id}")
    logger.info("Community %s transferred from %s to %s", community_id, current_owner_id, new_owner_id)


# --- MODERATION ---

def block_community_member(db, community_id, user_id, blocked_by, reason=None):
    if user_id == blocked_by:
        raise BadRequest("You cannot block yourself")
    with db:
        get_community(db, community_id)
        actor_role = require_role(db, community_id, blocked_by, MODERATOR_ROLES,
                                  "Only community owners and admins can block members")
        target_role = member_role(db, community_id, user_id)
        if target_role == 'owner':
            raise Forbidden("The community owner cannot be blocked")
        if target_role == 'admin' and actor_role != 'owner':
            raise Forbidden("Only the owner can block an admin")

        _remove_membership(db, community_id, user_id)
        block_id = new_id()
        db.execute('INSERT OR REPLACE INTO blocked_members (id, community_id, user_id, blocked_by, reason, blocked_at) '
                   'VALUES (?, ?, ?, ?, ?, ?)',
                   (block_id, community_id, user_id, blocked_by, reason, now_iso()))
        record_change(db, 'blocked_members', 'INSERT', block_id, community_id=community_id)
        notify(db, user_id, "Removed from community",
               "You have been removed from a community by its moderators")
    logger.info("User %s blocked from community %s by %s", user_id, community_id, blocked_by)


def unblock_community_member(db, community_id, user_id, actor_id):
    with db:
        get_community(db, community_id)
        require_role(db, community_id, actor_id, MODERATOR_ROLES,
                     "Only community owners and admins can unblock members")
        row = db.execute('SELECT id FROM blocked_members WHERE community_id = ? AND user_id = ?',
                         (community_id, user_id)).fetchone()
        if row is None:
            raise NotFound("User is not blocked")
        db.execute('DELETE FROM blocked_members WHERE id = ?', (row['id'],))
        record_change(db, 'blocked_members', 'DELETE', row['id'], community_id=community_id)


def _delete_posts(db, rows):
    """Deletes posts (rows with id and community_id) and everything hanging off them."""
    for row in rows:
        post_id = row['id']
        db.execute('DELETE FROM comments WHERE post_id = ?', (post_id,))
        db.execute('DELETE FROM post_likes WHERE post_id = ?', (post_id,))
        db.execute('DELETE FROM reports WHERE post_id = ?', (post_id,))
        db.execute('DELETE FROM posts WHERE id = ?', (post_id,))
        record_change(db, 'posts', 'DELETE', post_id, community_id=row['community_id'])
    return len(rows)


def delete_community_post(db, post_id, actor_id):
    with db:
        post = db.execute('SELECT id, user_id, community_id FROM posts WHERE id = ?', (post_id,)).fetchone()
        if post is None:
            raise NotFound("Post not found")
        if post['user_id'] != actor_id:
            if not post['community_id'] or member_role(db, post['community_id'], actor_id) not in MODERATOR_ROLES:
                raise Forbidden("You can only delete your own posts")
        _delete_posts(db, [post])


def delete_user_posts_in_community(db, community_id, user_id, actor_id):
    with db:
        get_community(db, community_id)
        require_role(db, community_id, actor_id, MODERATOR_ROLES,
                     "Only community owners and admins can delete member posts")
        rows = db.execute('SELECT id, community_id FROM posts WHERE community_id = ? AND user_id = ?',
                          (community_id, user_id)).fetchall()
        count = _delete_posts(db, rows)
    logger.info("Deleted %d posts by %s in community %s", count, user_id, community_id)
    return count


def _delete_community(db, community_id):
    rows = db.execute('SELECT id, community_id FROM posts WHERE community_id = ?', (community_id,)).fetchall()
    _delete_posts(db, rows)
    db.execute('DELETE FROM community_memberships WHERE community_id = ?', (community_id,))
    db.execute('DELETE FROM blocked_members WHERE community_id = ?', (community_id,))
    db.execute('DELETE FROM communities WHERE id = ?', (community_id,))
    record_change(db, 'communities', 'DELETE', community_id, community_id=community_id)


def delete_community_cascade(db, community_id, actor_id=None):
    """Deletes a community with its posts, memberships and blocks. actor_id=None skips the owner check."""
    with db:
        get_community(db, community_id)
        if actor_id is not None:
            require_role(db, community_id, actor_id, ('owner',),
                         "Only the community owner can delete the community")
        _delete_community(db, community_id)
    logger.info("Community %s deleted", community_id)


# --- ACCOUNTS ---

def _delete_messages(db, rows):
    for row in rows:
        db.execute('DELETE FROM message_reactions WHERE message_id = ?', (row['id'],))
        db.execute('DELETE FROM reports WHERE message_id = ?', (row['id'],))
        db.execute('DELETE FROM messages WHERE id = ?', (row['id'],))
        record_change(db, 'messages', 'DELETE', row['id'], conversation_id=row['conversation_id'])


def delete_own_message(db, message_id, actor_id):
    with db:
        message = db.execute('SELECT id, user_id, conversation_id FROM messages WHERE id = ?',
                             (message_id,)).fetchone()
        if message is None:
            raise NotFound("Message not found")
        if message['user_id'] != actor_id:
            raise Forbidden("You can only delete your own messages")
        _delete_messages(db, [message])


def _delete_conversation(db, conversation_id):
    rows = db.execute('SELECT id, conversation_id FROM messages WHERE conversation_id = ?',
                      (conversation_id,)).fetchall()
    _delete_messages(db, rows)
    db.execute('DELETE FROM calls WHERE conversation_id = ?', (conversation_id,))
    db.execute('DELETE FROM conversation_participants WHERE conversation_id = ?', (conversation_id,))
    db.execute('DELETE FROM conversations WHERE id = ?', (conversation_id,))


def delete_user_account(db, user_id):
    """Removes every row that belongs to the user, then the user."""
    with db:
        if db.execute('SELECT 1 FROM users WHERE id = ?', (user_id,)).fetchone() is None:
            raise NotFound("User not found")

        # Owned communities go first so their member posts go with them
        for row in db.execute('SELECT id FROM communities WHERE created_by = ?', (user_id,)).fetchall():
            _delete_community(db, row['id'])

        _delete_posts(db, db.execute('SELECT id, community_id FROM posts WHERE user_id = ?',
                                     (user_id,)).fetchall())

        # Keep counters on other people's posts in step
        for row in db.execute('SELECT post_id FROM comments WHERE user_id = ?', (user_id,)).fetchall():
            db.execute('UPDATE posts SET comments_count = MAX(0, comments_count - 1) WHERE id = ?',
                       (row['post_id'],))
        db.execute('DELETE FROM comments WHERE user_id = ?', (user_id,))
        for row in db.execute('SELECT post_id FROM post_likes WHERE user_id = ?', (user_id,)).fetchall():
            db.execute('UPDATE posts SET likes_count = MAX(0, likes_count - 1) WHERE id = ?',
                       (row['post_id'],))
        db.execute('DELETE FROM post_likes WHERE user_id = ?', (user_id,))

        _delete_messages(db, db.execute('SELECT id, conversation_id FROM messages WHERE user_id = ?',
                                        (user_id,)).fetchall())
        db.execute('DELETE FROM message_reactions WHERE user_id = ?', (user_id,))
        db.execute('DELETE FROM friendships WHERE requester_id = ? OR addressee_id = ?', (user_id, user_id))
        db.execute('DELETE FROM conversation_participants WHERE user_id = ?', (user_id,))
        db.execute('DELETE FROM event_attendees WHERE user_id = ?', (user_id,))
        db.execute('DELETE FROM mood_entries WHERE user_id = ?', (user_id,))

        for row in db.execute('SELECT community_id FROM community_memberships WHERE user_id = ?',
                              (user_id,)).fetchall():
            _remove_membership(db, row['community_id'], user_id)
        db.execute('DELETE FROM blocked_members WHERE user_id = ?', (user_id,))

        db.execute('DELETE FROM user_settings WHERE user_id = ?', (user_id,))
        db.execute('DELETE FROM user_memberships WHERE user_id = ?', (user_id,))
        db.execute('DELETE FROM notifications WHERE user_id = ?', (user_id,))
        db.execute('DELETE FROM verification_requests WHERE user_id = ?', (user_id,))
        db.execute('DELETE FROM reports WHERE reporter_id = ?', (user_id,))

        for row in db.execute('SELECT id FROM events WHERE created_by = ?', (user_id,)).fetchall():
            db.execute('DELETE FROM event_attendees WHERE event_id = ?', (row['id'],))
            db.execute('DELETE FROM events WHERE id = ?', (row['id'],))
        for row in db.execute('SELECT id FROM conversations WHERE created_by = ?', (user_id,)).fetchall():
            _delete_conversation(db, row['id'])
        db.execute('DELETE FROM calls WHERE caller_id = ?', (user_id,))

        db.execute('DELETE FROM profiles WHERE user_id = ?', (user_id,))
        db.execute('DELETE FROM users WHERE id = ?', (user_id,))
        record_change(db, 'profiles', 'DELETE', user_id)
    logger.info("Account %s deleted", user_id)
