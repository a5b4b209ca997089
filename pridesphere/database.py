import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone

from flask import current_app, g

logger = logging.getLogger(__name__)

# Columns stored as JSON text and decoded back into lists
JSON_COLUMNS = {'tags', 'hashtags', 'interests', 'media_urls', 'features'}
# Columns stored as 0/1 integers and decoded back into bools
BOOL_COLUMNS = {'is_premium', 'is_anonymous', 'is_group', 'is_verified',
                'dms_enabled', 'calls_enabled', 'is_read'}


def connect(path):
    # Increase timeout to 30s to prevent 'Database is locked' errors under load
    conn = sqlite3.connect(path, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute('PRAGMA foreign_keys = ON')
    return conn


def get_db():
    """
    Opens a new database connection if there is none yet for the
    current application context.
    """
    if 'db' not in g:
        g.db = connect(current_app.config['DB_PATH'])
    return g.db


def begin_immediate(db):
    """Takes the write lock now, so rows read for a check cannot change before the write."""
    if not db.in_transaction:
        db.execute('BEGIN IMMEDIATE')


def close_db(exception=None):
    """Closes the connection again at the end of the request."""
    db = g.pop('db', None)
    if db is not None:
        db.close()


def new_id():
    return str(uuid.uuid4())


def now_iso():
    return datetime.now(timezone.utc).isoformat()


def to_json(value):
    if value is None:
        return None
    return json.dumps(list(value))


def row_to_dict(row):
    """Turns a sqlite Row into a plain dict, decoding list and bool columns."""
    if row is None:
        return None
    data = dict(row)
    for key, value in data.items():
        if key in JSON_COLUMNS and isinstance(value, str):
            data[key] = json.loads(value)
        elif key in BOOL_COLUMNS and value is not None:
            data[key] = bool(value)
    return data


def rows_to_dicts(rows):
    return [row_to_dict(row) for row in rows]


SCHEMA = [
    # 1. ACCOUNTS & PROFILES
    '''CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        created_at TEXT NOT NULL
    )''',
    '''CREATE TABLE IF NOT EXISTS profiles (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL UNIQUE,
        username TEXT UNIQUE,
        display_name TEXT,
        bio TEXT,
        pronouns TEXT,
        location TEXT,
        interests TEXT,
        avatar_url TEXT,
        theme_accent TEXT DEFAULT 'rainbow',
        is_verified INTEGER DEFAULT 0,
        verification_status TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )''',
    '''CREATE TABLE IF NOT EXISTS user_settings (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL UNIQUE,
        dms_enabled INTEGER DEFAULT 1,
        calls_enabled INTEGER DEFAULT 1,
        profile_visibility TEXT DEFAULT 'public',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )''',
    '''CREATE TABLE IF NOT EXISTS verification_requests (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        method TEXT NOT NULL,
        details TEXT,
        status TEXT DEFAULT 'pending',
        created_at TEXT NOT NULL
    )''',

    # 2. COMMUNITIES
    '''CREATE TABLE IF NOT EXISTS communities (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
        category TEXT DEFAULT 'General',
        tags TEXT,
        avatar_url TEXT,
        banner_url TEXT,
        is_premium INTEGER DEFAULT 0,
        member_count INTEGER DEFAULT 0,
        created_by TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        deleted_at TEXT
    )''',
    '''CREATE TABLE IF NOT EXISTS community_memberships (
        id TEXT PRIMARY KEY,
        community_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        role TEXT DEFAULT 'member',
        joined_at TEXT NOT NULL,
        UNIQUE (community_id, user_id),
        FOREIGN KEY(community_id) REFERENCES communities(id)
    )''',
    '''CREATE TABLE IF NOT EXISTS blocked_members (
        id TEXT PRIMARY KEY,
        community_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        blocked_by TEXT NOT NULL,
        reason TEXT,
        blocked_at TEXT NOT NULL,
        UNIQUE (community_id, user_id)
    )''',

    # 3. FEED
    '''CREATE TABLE IF NOT EXISTS posts (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        community_id TEXT,
        content TEXT NOT NULL,
        mood TEXT,
        hashtags TEXT,
        location TEXT,
        latitude REAL,
        longitude REAL,
        media_urls TEXT,
        is_anonymous INTEGER DEFAULT 0,
        likes_count INTEGER DEFAULT 0,
        comments_count INTEGER DEFAULT 0,
        status TEXT DEFAULT 'active',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY(community_id) REFERENCES communities(id)
    )''',
    # Prevents duplicate likes by tracking (Post + User) pairs.
    '''CREATE TABLE IF NOT EXISTS post_likes (
        id TEXT PRIMARY KEY,
        post_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (post_id, user_id),
        FOREIGN KEY(post_id) REFERENCES posts(id)
    )''',
    '''CREATE TABLE IF NOT EXISTS comments (
        id TEXT PRIMARY KEY,
        post_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY(post_id) REFERENCES posts(id)
    )''',
    '''CREATE TABLE IF NOT EXISTS reports (
        id TEXT PRIMARY KEY,
        reporter_id TEXT NOT NULL,
        post_id TEXT,
        message_id TEXT,
        reason TEXT NOT NULL,
        created_at TEXT NOT NULL
    )''',

    # 4. FRIENDS & NOTIFICATIONS
    '''CREATE TABLE IF NOT EXISTS friendships (
        id TEXT PRIMARY KEY,
        requester_id TEXT NOT NULL,
        addressee_id TEXT NOT NULL,
        status TEXT DEFAULT 'pending',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (requester_id, addressee_id)
    )''',
    '''CREATE TABLE IF NOT EXISTS notifications (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        title TEXT NOT NULL,
        message TEXT NOT NULL,
        link TEXT,
        is_read INTEGER DEFAULT 0,
        created_at TEXT NOT NULL
    )''',

    # 5. MESSAGING
    '''CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        name TEXT,
        is_group INTEGER DEFAULT 0,
        created_by TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )''',
    '''CREATE TABLE IF NOT EXISTS conversation_participants (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        joined_at TEXT NOT NULL,
        UNIQUE (conversation_id, user_id),
        FOREIGN KEY(conversation_id) REFERENCES conversations(id)
    )''',
    '''CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        content TEXT NOT NULL,
        message_type TEXT DEFAULT 'text',
        media_url TEXT,
        reply_to_id TEXT,
        created_at TEXT NOT NULL,
        FOREIGN KEY(conversation_id) REFERENCES conversations(id)
    )''',
    '''CREATE TABLE IF NOT EXISTS message_reactions (
        id TEXT PRIMARY KEY,
        message_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        emoji TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (message_id, user_id, emoji)
    )''',
    '''CREATE TABLE IF NOT EXISTS calls (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL,
        caller_id TEXT NOT NULL,
        call_type TEXT NOT NULL,
        status TEXT DEFAULT 'ringing',
        started_at TEXT,
        ended_at TEXT,
        created_at TEXT NOT NULL
    )''',

    # 6. EVENTS & WELLNESS
    '''CREATE TABLE IF NOT EXISTS events (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT,
        location TEXT,
        latitude REAL,
        longitude REAL,
        image_url TEXT,
        start_date TEXT NOT NULL,
        end_date TEXT,
        price INTEGER DEFAULT 0,
        max_attendees INTEGER,
        created_by TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )''',
    '''CREATE TABLE IF NOT EXISTS event_attendees (
        id TEXT PRIMARY KEY,
        event_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        status TEXT DEFAULT 'going',
        created_at TEXT NOT NULL,
        UNIQUE (event_id, user_id),
        FOREIGN KEY(event_id) REFERENCES events(id)
    )''',
    '''CREATE TABLE IF NOT EXISTS mood_entries (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        mood TEXT,
        mood_score INTEGER,
        notes TEXT,
        created_at TEXT NOT NULL
    )''',

    # 7. MEMBERSHIPS
    '''CREATE TABLE IF NOT EXISTS membership_tiers (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        price_monthly INTEGER NOT NULL,
        max_communities INTEGER,
        features TEXT,
        created_at TEXT NOT NULL
    )''',
    '''CREATE TABLE IF NOT EXISTS user_memberships (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        membership_tier_id TEXT NOT NULL,
        status TEXT DEFAULT 'active',
        current_period_start TEXT,
        current_period_end TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY(membership_tier_id) REFERENCES membership_tiers(id)
    )''',

    # 8. CHANGE FEED
    # row_changes: one row per insert/update/delete, polled by clients.
    '''CREATE TABLE IF NOT EXISTS row_changes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        table_name TEXT NOT NULL,
        event TEXT NOT NULL,
        row_id TEXT,
        community_id TEXT,
        conversation_id TEXT,
        user_ids TEXT,
        created_at TEXT NOT NULL
    )''',
]

DEFAULT_TIERS = [
    ('Free', 0, 1, ["Join unlimited communities", "Create 1 community", "Direct messaging"]),
    ('Supporter', 499, 5, ["Create up to 5 communities", "Supporter badge", "Priority support"]),
    ('Champion', 999, None, ["Unlimited communities", "Premium communities", "Early access to events"]),
]


def init_db(path):
    """
    Initializes the database with the required schema and seeds the
    membership tiers. Safe to run on every startup.
    """
    conn = connect(path)
    try:
        with conn:
            for statement in SCHEMA:
                conn.execute(statement)
            for name, price, max_communities, features in DEFAULT_TIERS:
                conn.execute(
                    'INSERT OR IGNORE INTO membership_tiers (id, name, price_monthly, max_communities, features, created_at) '
                    'VALUES (?, ?, ?, ?, ?, ?)',
                    (new_id(), name, price, max_communities, json.dumps(features), now_iso()))
    finally:
        conn.close()
    logger.info("Database initialized at %s", path)


def init_app(app):
    app.teardown_appcontext(close_db)
