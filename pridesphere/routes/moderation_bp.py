import logging
import re

import google.generativeai as genai
from flask import Blueprint, request, jsonify, current_app

from pridesphere.database import get_db, new_id, now_iso
from pridesphere.errors import BadRequest, Conflict, Forbidden, NotFound
from pridesphere.procedures import user_can_access_conversation
from pridesphere.realtime import record_change
from pridesphere.routes.auth_bp import login_required, current_user_id

"""
Content safety for everything users write: HTML cleaning, the keyword filter,
community reports with auto-flagging, and the Gemini safety scan.
"""

logger = logging.getLogger(__name__)

moderation_bp = Blueprint('moderation', __name__)


# --- TEXT HELPERS ---

def clean_text(text):
    """
    Sanitizes input but ALLOWS basic HTML formatting (bold, italic, lists).
    """
    if not text:
        return ""
    # Remove dangerous blocks entirely
    text = re.sub(r'<script.*?>.*?</script>', '', text, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r'<style.*?>.*?</style>', '', text, flags=re.DOTALL | re.IGNORECASE)
    # Event handlers (onclick="...") and javascript: urls
    text = re.sub(r'\s+on\w+="[^"]*"', '', text, flags=re.IGNORECASE)
    text = re.sub(r'javascript:[^"\s]*', '', text, flags=re.IGNORECASE)
    return text.strip()


def clean_hashtags(value):
    """Accepts a list or a space/comma separated string; returns ['#tag', ...] without duplicates."""
    if not value:
        return []
    if isinstance(value, str):
        value = re.split(r'[\s,]+', value)
    tags = []
    for raw in value:
        tag = re.sub(r'<[^>]+>', '', str(raw))
        tag = re.sub(r'[^\w]', '', tag)
        if tag and f"#{tag}" not in tags:
            tags.append(f"#{tag}")
    return tags


def contains_profanity(text):
    """
    Quick safety check. Scans text against our blocked word list.
    Returns True if any bad words are found.
    """
    if not text:
        return False
    text_lower = text.lower()
    return any(re.search(rf'\b{re.escape(word)}\b', text_lower) for word in current_app.config['BAD_WORDS'])


# --- REPORTS ---

@moderation_bp.route('/report', methods=['POST'])
@login_required
def handle_report():
    """Logs reports on posts or messages and auto-flags posts past the threshold."""
    data = request.get_json(silent=True) or {}
    post_id = data.get('post_id')
    message_id = data.get('message_id')
    reason = (data.get('reason') or 'General violation').strip()
    user_id = current_user_id()

    if bool(post_id) == bool(message_id):
        raise BadRequest("Report exactly one of post_id or message_id")

    db = get_db()
    if post_id:
        target = db.execute('SELECT id FROM posts WHERE id = ?', (post_id,)).fetchone()
        column, target_id = 'post_id', post_id
    else:
        target = db.execute('SELECT id, conversation_id FROM messages WHERE id = ?', (message_id,)).fetchone()
        if target is not None and not user_can_access_conversation(db, target['conversation_id'], user_id):
            raise Forbidden("You cannot report this message")
        column, target_id = 'message_id', message_id
    if target is None:
        raise NotFound("Reported content not found")

    # One report per user per target (prevents spamming reports)
    already = db.execute(f'SELECT 1 FROM reports WHERE reporter_id = ? AND {column} = ?',
                         (user_id, target_id)).fetchone()
    if already:
        raise Conflict("You have already reported this content.")

    flagged = False
    with db:
        db.execute(f'INSERT INTO reports (id, reporter_id, {column}, reason, created_at) VALUES (?, ?, ?, ?, ?)',
                   (new_id(), user_id, target_id, reason, now_iso()))
        if post_id:
            # Flag post if >= threshold reports, which then goes for admin review
            count = db.execute('SELECT COUNT(*) FROM reports WHERE post_id = ?', (post_id,)).fetchone()[0]
            if count >= current_app.config['REPORT_FLAG_THRESHOLD']:
                db.execute("UPDATE posts SET status = 'flagged' WHERE id = ?", (post_id,))
                record_change(db, 'posts', 'UPDATE', post_id)
                flagged = True

    if flagged:
        logger.info("Post %s flagged after reports", post_id)
    return jsonify({"message": "Report logged. Moderators will review.", "flagged": flagged}), 201


# --- AI SAFETY SCAN ---

def _safety_model():
    genai.configure(api_key=current_app.config['GEMINI_API_KEY'])
    return genai.GenerativeModel(current_app.config['GEMINI_MODEL'])


@moderation_bp.route('/check', methods=['POST'])
def check_content():
    """Context-aware safety scan using AI. Fails open: errors answer SAFE."""
    data = request.get_json(silent=True) or {}
    hashtags = data.get('hashtags', '')
    if isinstance(hashtags, list):
        hashtags = " ".join(hashtags)
    full_text = f"{data.get('content', '')} {hashtags}".strip()
    if not full_text:
        return jsonify({"status": "SAFE"})

    try:
        prompt = ("You moderate a supportive LGBTQIA+ community. Is this content free of hate, harassment "
                  f"and explicit material? Reply ONLY SAFE or UNSAFE.\nText: {full_text}")
        response = _safety_model().generate_content(prompt)
        is_unsafe = "UNSAFE" in response.text.upper()
        return jsonify({"status": "UNSAFE" if is_unsafe else "SAFE"})
    except Exception as e:
        logger.warning("Gemini safety check failed: %s", e)
        return jsonify({"status": "SAFE"})
