import logging
import sqlite3
from functools import wraps

from flask import Blueprint, request, jsonify, session, g
from werkzeug.security import generate_password_hash, check_password_hash

from pridesphere.database import get_db, new_id, now_iso, row_to_dict
from pridesphere.errors import BadRequest, Conflict, Unauthorized
from pridesphere.procedures import delete_user_account

logger = logging.getLogger(__name__)

auth_bp = Blueprint('auth', __name__)

MIN_PASSWORD_LENGTH = 8


def login_required(fn):
    """Rejects the request unless the session belongs to an existing user."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        user_id = session.get('user_id')
        if not user_id:
            raise Unauthorized("Authentication required")
        exists = get_db().execute('SELECT 1 FROM users WHERE id = ?', (user_id,)).fetchone()
        if exists is None:
            session.clear()
            raise Unauthorized("Authentication required")
        g.user_id = user_id
        return fn(*args, **kwargs)
    return wrapper


def current_user_id():
    return g.get('user_id') or session.get('user_id')


def _validate_password(password):
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise BadRequest(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


def _account(db, user_id):
    user = db.execute('SELECT id, email, created_at FROM users WHERE id = ?', (user_id,)).fetchone()
    profile = db.execute('SELECT * FROM profiles WHERE user_id = ?', (user_id,)).fetchone()
    return {"user": dict(user), "profile": row_to_dict(profile)}


@auth_bp.route('/auth/signup', methods=['POST'])
def signup():
    data = request.get_json(silent=True) or {}
    email = (data.get('email') or '').strip().lower()
    password = data.get('password')

    if not email or '@' not in email:
        return jsonify({"error": "A valid email is required"}), 400
    _validate_password(password)

    db = get_db()
    user_id = new_id()
    stamp = now_iso()
    display_name = (data.get('display_name') or '').strip() or email.split('@')[0]
    try:
        with db:
            db.execute('INSERT INTO users (id, email, password_hash, created_at) VALUES (?, ?, ?, ?)',
                       (user_id, email, generate_password_hash(password), stamp))
            db.execute('''INSERT INTO profiles (id, user_id, username, display_name, pronouns, created_at, updated_at)
                          VALUES (?, ?, ?, ?, ?, ?, ?)''',
                       (new_id(), user_id, data.get('username') or None, display_name,
                        data.get('pronouns'), stamp, stamp))
            db.execute('INSERT INTO user_settings (id, user_id, created_at, updated_at) VALUES (?, ?, ?, ?)',
                       (new_id(), user_id, stamp, stamp))
    except sqlite3.IntegrityError:
        raise Conflict("An account with that email or username already exists")

    session.clear()
    session['user_id'] = user_id
    logger.info("New account %s", user_id)
    return jsonify(_account(db, user_id)), 201


@auth_bp.route('/auth/login', methods=['POST'])
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''

    user = get_db().execute('SELECT id, password_hash FROM users WHERE email = ?', (email,)).fetchone()
    if user is None or not check_password_hash(user['password_hash'], password):
        raise Unauthorized("Invalid email or password")

    session.clear()
    session['user_id'] = user['id']
    return jsonify(_account(get_db(), user['id']))


@auth_bp.route('/auth/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({"message": "Signed out"})


@auth_bp.route('/auth/me')
@login_required
def me():
    return jsonify(_account(get_db(), current_user_id()))


@auth_bp.route('/auth/password', methods=['POST'])
@login_required
def change_password():
    data = request.get_json(silent=True) or {}
    new_password = data.get('new_password')
    _validate_password(new_password)

    db = get_db()
    user = db.execute('SELECT password_hash FROM users WHERE id = ?', (current_user_id(),)).fetchone()
    if not check_password_hash(user['password_hash'], data.get('current_password') or ''):
        raise Unauthorized("Current password is incorrect")
    if data.get('current_password') == new_password:
        return jsonify({"error": "New password must be different from the current one"}), 400

    with db:
        db.execute('UPDATE users SET password_hash = ? WHERE id = ?',
                   (generate_password_hash(new_password), current_user_id()))
    return jsonify({"message": "Password updated"})


@auth_bp.route('/auth/account', methods=['DELETE'])
@login_required
def delete_account():
    data = request.get_json(silent=True) or {}
    if data.get('confirm') != 'DELETE':
        return jsonify({"error": "Please type 'DELETE' to confirm"}), 400

    delete_user_account(get_db(), current_user_id())
    session.clear()
    return jsonify({"message": "Account deleted"})
