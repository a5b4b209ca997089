from datetime import datetime, timedelta, timezone

from flask import Blueprint, request, jsonify

from pridesphere.database import get_db, new_id, now_iso, rows_to_dicts
from pridesphere.errors import BadRequest
from pridesphere.routes.auth_bp import login_required, current_user_id
from pridesphere.routes.moderation_bp import clean_text

wellness_bp = Blueprint('wellness', __name__)

# label -> (emoji, score out of 5)
MOODS = {
    "Happy": ("😊", 5),
    "Peaceful": ("😌", 4),
    "Sad": ("😔", 2),
    "Anxious": ("😰", 2),
    "Angry": ("😡", 1),
    "Grateful": ("🤗", 5),
    "Tired": ("😴", 3),
    "Magical": ("✨", 5),
}

AFFIRMATIONS = [
    "You're valid and loved exactly as you are 💖",
    "Your identity is beautiful and worthy of celebration 🌈",
    "You belong in this world and deserve happiness ✨",
    "Your journey is unique and that makes you magical 🦄",
    "You are enough, you are loved, you are important 💫",
    "Your authentic self is your greatest gift 🎁",
    "You deserve respect, love, and acceptance 🌟",
]

RESOURCES = [
    {"name": "The Trevor Project", "description": "24/7 crisis support for LGBTQ+ youth",
     "phone": "1-866-488-7386", "type": "Crisis Hotline"},
    {"name": "Trans Lifeline", "description": "Peer support for transgender people",
     "phone": "877-565-8860", "type": "Support Line"},
    {"name": "LGBT National Hotline", "description": "Information and local resources",
     "phone": "1-888-843-4564", "type": "Information"},
]

MAX_HISTORY_DAYS = 365


@wellness_bp.route('/wellness/moods')
def list_moods():
    return jsonify([{"label": label, "emoji": emoji, "score": score} for label, (emoji, score) in MOODS.items()])


@wellness_bp.route('/wellness/mood', methods=['GET', 'POST'])
@login_required
def handle_mood():
    db = get_db()
    user_id = current_user_id()

    if request.method == 'GET':
        try:
            days = int(request.args.get('days', 30))
        except ValueError:
            raise BadRequest("days must be a whole number")
        days = max(1, min(days, MAX_HISTORY_DAYS))
        since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        entries = rows_to_dicts(db.execute(
            'SELECT * FROM mood_entries WHERE user_id = ? AND created_at >= ? ORDER BY created_at DESC',
            (user_id, since)).fetchall())
        scores = [e['mood_score'] for e in entries if e['mood_score'] is not None]
        average = round(sum(scores) / len(scores), 2) if scores else None
        return jsonify({"entries": entries, "average_score": average, "days": days})

    data = request.get_json(silent=True) or {}
    mood = data.get('mood')
    if mood not in MOODS:
        raise BadRequest(f"mood must be one of: {', '.join(MOODS)}")
    entry_id = new_id()
    with db:
        db.execute('INSERT INTO mood_entries (id, user_id, mood, mood_score, notes, created_at) '
                   'VALUES (?, ?, ?, ?, ?, ?)',
                   (entry_id, user_id, mood, MOODS[mood][1], clean_text(data.get('notes')) or None, now_iso()))
    return jsonify({"id": entry_id, "message": "Mood tracked! Thank you for checking in with yourself today."}), 201


@wellness_bp.route('/wellness/affirmation')
def affirmation():
    """Cycles through the affirmations; the client sends back next_index."""
    try:
        index = int(request.args.get('index', 0))
    except ValueError:
        raise BadRequest("index must be a whole number")
    index %= len(AFFIRMATIONS)
    return jsonify({"affirmation": AFFIRMATIONS[index], "index": index,
                    "next_index": (index + 1) % len(AFFIRMATIONS)})


@wellness_bp.route('/wellness/resources')
def resources():
    return jsonify(RESOURCES)
