import logging
import math
import os
import sqlite3
import time
from datetime import datetime, timezone

from flask import Blueprint, request, jsonify, current_app
from werkzeug.utils import secure_filename

from pridesphere.database import get_db, new_id, now_iso, to_json, row_to_dict, rows_to_dicts
from pridesphere.errors import BadRequest, Conflict, Forbidden, NotFound
from pridesphere.procedures import delete_community_post, get_community, is_blocked, is_community_member
from pridesphere.realtime import notify, record_change
from pridesphere.routes.auth_bp import login_required, current_user_id
# Reuse the cleaning logic from moderation_bp to keep things DRY
from pridesphere.routes.moderation_bp import clean_text, clean_hashtags, contains_profanity

logger = logging.getLogger(__name__)

posts_bp = Blueprint('posts', __name__)

ALLOWED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'webp'}

MOOD_EMOJIS = {
    'Magical': '✨',
    'Growth': '💚',
    'Supported': '🫂',
    'Happy': '😊',
    'Grateful': '🙏',
    'Excited': '🎉',
    'Peaceful': '☮️',
}
DEFAULT_MOOD = 'Magical'
ANONYMOUS_NAME = 'Anonymous Rainbow'


# --- HELPER FUNCTIONS ---

def allowed_file(filename):
    """
    Security check: Only allow safe image formats.
    Prevents users from uploading .exe or .php files.
    """
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def save_upload(file, prefix):
    """Stores an uploaded image as <prefix>_<epoch ms>.<ext> and returns its public URL."""
    if not file or file.filename == '':
        raise BadRequest("No file provided")
    if not allowed_file(file.filename):
        raise BadRequest("Invalid file type (Images only)")
    ext = file.filename.rsplit('.', 1)[1].lower()
    filename = secure_filename(f"{prefix}_{int(time.time() * 1000)}.{ext}")
    folder = current_app.config['UPLOAD_FOLDER']
    # Ensure the folder exists so we don't crash on first run
    os.makedirs(folder, exist_ok=True)
    file.save(os.path.join(folder, filename))
    return f"/uploads/{filename}"


def as_bool(value):
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def as_float(value, field):
    if value in (None, ''):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise BadRequest(f"{field} must be a number")


def mood_emoji(mood):
    return MOOD_EMOJIS.get(mood, '💫')


def format_timestamp(timestamp, now=None):
    """Relative age of a post: minutes under an hour, hours under a day, then days."""
    now = now or datetime.now(timezone.utc)
    created = datetime.fromisoformat(timestamp)
    minutes = max(0, math.floor((now - created).total_seconds() / 60))
    if minutes < 60:
        return f"{minutes} minutes ago"
    if minutes < 1440:
        hours = minutes // 60
        return f"{hours} hour{'s' if hours > 1 else ''} ago"
    days = minutes // 1440
    return f"{days} day{'s' if days > 1 else ''} ago"


def transform_post(post, now=None):
    """Shapes a joined post/profile row the way the feed cards render it."""
    post = row_to_dict(post)
    anonymous = bool(post.get('is_anonymous'))
    if anonymous:
        name, pronouns = ANONYMOUS_NAME, ""
    else:
        name = post.get('display_name') or post.get('username') or "User"
        pronouns = post.get('pronouns') or ""
    likes = post.get('likes_count') or 0
    return {
        "id": post['id'],
        "community_id": post.get('community_id'),
        "author": {
            "id": None if anonymous else post['user_id'],
            "name": name,
            "pronouns": pronouns,
            "verified": bool(post.get('is_verified')) and not anonymous,
            "avatar": None if anonymous else post.get('avatar_url'),
            "is_anonymous": anonymous,
        },
        "content": post['content'],
        "mood": post.get('mood') or DEFAULT_MOOD,
        "mood_emoji": mood_emoji(post.get('mood')),
        "timestamp": format_timestamp(post['created_at'], now),
        "created_at": post['created_at'],
        "likes": likes,
        "comments": post.get('comments_count') or 0,
        # Shares are estimated as 20% of likes
        "shares": math.floor(likes * 0.2),
        "hashtags": post.get('hashtags') or [],
        "location": post.get('location'),
        "media_urls": post.get('media_urls') or [],
        "is_liked": bool(post.get('is_liked')),
    }


def _active_post(db, post_id):
    post = db.execute("SELECT * FROM posts WHERE id = ? AND status = 'active'", (post_id,)).fetchone()
    if post is None:
        raise NotFound("Post not found")
    return post


# --- MAIN POST ROUTES ---

@posts_bp.route('/posts', methods=['GET', 'POST'])
@login_required
def handle_posts():
    db = get_db()
    user_id = current_user_id()

    # 1. FETCHING POSTS (Feed Logic)
    if request.method == 'GET':
        community_id = request.args.get('community_id')
        query = """
            SELECT p.*, pr.display_name, pr.username, pr.pronouns, pr.is_verified, pr.avatar_url,
                   EXISTS(SELECT 1 FROM post_likes l WHERE l.post_id = p.id AND l.user_id = ?) AS is_liked
            FROM posts p
            LEFT JOIN profiles pr ON pr.user_id = p.user_id
            WHERE p.status = 'active'
        """
        params = [user_id]
        if community_id:
            get_community(db, community_id)
            query += " AND p.community_id = ?"
            params.append(community_id)
        else:
            query += " AND p.community_id IS NULL"
        query += " ORDER BY p.created_at DESC LIMIT ?"  # Newest posts first
        params.append(current_app.config['FEED_LIMIT'])
        return jsonify([transform_post(row) for row in db.execute(query, params).fetchall()])

    # 2. CREATING A POST
    data = request.get_json(silent=True) or request.form
    content = clean_text(data.get('content'))
    if not content:
        return jsonify({"error": "Post content is required"}), 400
    hashtags = clean_hashtags(data.get('hashtags'))
    location = clean_text(data.get('location')) or None
    mood = data.get('mood') or None
    community_id = data.get('community_id') or None

    # MODERATION GATEKEEPER
    # If they use bad language, reject it before it ever touches the DB.
    if contains_profanity(content) or contains_profanity(" ".join(hashtags)) or contains_profanity(location):
        return jsonify({"error": "Post rejected: Content contains inappropriate language."}), 400

    if community_id:
        get_community(db, community_id)
        if is_blocked(db, community_id, user_id):
            raise Forbidden("You have been blocked from this community")
        if not is_community_member(db, community_id, user_id):
            raise Forbidden("Join the community to post in it")

    latitude = as_float(data.get('latitude'), 'latitude')
    longitude = as_float(data.get('longitude'), 'longitude')
    is_anonymous = int(as_bool(data.get('is_anonymous', False)))

    # Nothing is written to disk until every field has passed
    files = [f for f in request.files.getlist('media') if f.filename]
    if not all(allowed_file(f.filename) for f in files):
        raise BadRequest("Invalid file type (Images only)")
    media_urls = [save_upload(f, f"post_{user_id}") for f in files]

    post_id = new_id()
    stamp = now_iso()
    with db:
        db.execute('''INSERT INTO posts (id, user_id, community_id, content, mood, hashtags, location,
                                         latitude, longitude, media_urls, is_anonymous, created_at, updated_at)
                      VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)''',
                   (post_id, user_id, community_id, content, mood, to_json(hashtags), location,
                    latitude, longitude, to_json(media_urls) if media_urls else None, is_anonymous,
                    stamp, stamp))
        record_change(db, 'posts', 'INSERT', post_id, community_id=community_id)
    return jsonify(row_to_dict(db.execute('SELECT * FROM posts WHERE id = ?', (post_id,)).fetchone())), 201


@posts_bp.route('/posts/<post_id>', methods=['DELETE'])
@login_required
def delete_post(post_id):
    delete_community_post(get_db(), post_id, current_user_id())
    return jsonify({"message": "Post deleted"})


# --- ENGAGEMENT ---

@posts_bp.route('/posts/<post_id>/like', methods=['POST', 'DELETE'])
@login_required
def handle_like(post_id):
    """One like per user per post; likes_count follows the post_likes table."""
    db = get_db()
    user_id = current_user_id()
    post = _active_post(db, post_id)

    if request.method == 'POST':
        try:
            with db:
                db.execute('INSERT INTO post_likes (id, post_id, user_id, created_at) VALUES (?, ?, ?, ?)',
                           (new_id(), post_id, user_id, now_iso()))
                db.execute('UPDATE posts SET likes_count = likes_count + 1 WHERE id = ?', (post_id,))
                record_change(db, 'posts', 'UPDATE', post_id, community_id=post['community_id'])
        except sqlite3.IntegrityError:
            # This user already liked the post
            raise Conflict("You already liked this post")
    else:
        with db:
            deleted = db.execute('DELETE FROM post_likes WHERE post_id = ? AND user_id = ?',
                                 (post_id, user_id)).rowcount
            if deleted:
                # Prevent likes from going below zero
                db.execute('UPDATE posts SET likes_count = MAX(0, likes_count - 1) WHERE id = ?', (post_id,))
                record_change(db, 'posts', 'UPDATE', post_id, community_id=post['community_id'])

    likes = db.execute('SELECT likes_count FROM posts WHERE id = ?', (post_id,)).fetchone()[0]
    return jsonify({"likes": likes, "is_liked": request.method == 'POST'})


# --- COMMENT MANAGEMENT ---

@posts_bp.route('/posts/<post_id>/comments', methods=['GET', 'POST'])
@login_required
def handle_comments(post_id):
    db = get_db()
    post = _active_post(db, post_id)

    if request.method == 'GET':
        comments = db.execute('''
            SELECT c.*, COALESCE(pr.display_name, pr.username, 'User') AS author_name, pr.avatar_url
            FROM comments c LEFT JOIN profiles pr ON pr.user_id = c.user_id
            WHERE c.post_id = ? ORDER BY c.created_at ASC
        ''', (post_id,)).fetchall()
        return jsonify(rows_to_dicts(comments))

    data = request.get_json(silent=True) or {}
    content = clean_text(data.get('content'))
    if not content:
        return jsonify({"error": "Comment cannot be empty"}), 400
    # Safety: Check comments for bad words too
    if contains_profanity(content):
        return jsonify({"error": "Profanity detected."}), 400

    user_id = current_user_id()
    comment_id = new_id()
    with db:
        db.execute('INSERT INTO comments (id, post_id, user_id, content, created_at) VALUES (?, ?, ?, ?, ?)',
                   (comment_id, post_id, user_id, content, now_iso()))
        db.execute('UPDATE posts SET comments_count = comments_count + 1 WHERE id = ?', (post_id,))
        record_change(db, 'comments', 'INSERT', comment_id, community_id=post['community_id'])
        if post['user_id'] != user_id:
            notify(db, post['user_id'], "New comment", "Someone commented on your post", f"/posts/{post_id}")
    return jsonify({"id": comment_id, "message": "Comment added"}), 201
