import calendar
import sqlite3
from datetime import datetime, timedelta, timezone

from flask import Blueprint, request, jsonify

from pridesphere.database import begin_immediate, get_db, new_id, now_iso, row_to_dict
from pridesphere.errors import BadRequest, Conflict, Forbidden, NotFound
from pridesphere.realtime import record_change
from pridesphere.routes.auth_bp import login_required, current_user_id
from pridesphere.routes.moderation_bp import clean_text, contains_profanity
from pridesphere.routes.posts_bp import as_float

events_bp = Blueprint('events', __name__)

RSVP_STATUSES = ('going', 'interested')
DATE_FILTERS = ('today', 'week', 'month', 'all')


def parse_timestamp(value, field):
    """Accepts ISO-8601 (a trailing Z is fine); naive times are taken as UTC."""
    if not value:
        raise BadRequest(f"{field} is required")
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        raise BadRequest(f"{field} must be an ISO-8601 date")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def add_month(moment):
    """Same day next month, clamped to the month's last day."""
    year = moment.year + moment.month // 12
    month = moment.month % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def window_end(date_filter, now):
    if date_filter == 'today':
        return now + timedelta(days=1)
    if date_filter == 'week':
        return now + timedelta(days=7)
    if date_filter == 'month':
        return add_month(now)
    return None


def _going_count(db, event_id):
    return db.execute("SELECT COUNT(*) FROM event_attendees WHERE event_id = ? AND status = 'going'",
                      (event_id,)).fetchone()[0]


def _get_event(db, event_id):
    event = db.execute('SELECT * FROM events WHERE id = ?', (event_id,)).fetchone()
    if event is None:
        raise NotFound("Event not found")
    return event


@events_bp.route('/events', methods=['GET', 'POST'])
@login_required
def handle_events():
    db = get_db()
    user_id = current_user_id()

    # 1. UPCOMING EVENTS
    if request.method == 'GET':
        date_filter = request.args.get('date', 'all')
        if date_filter not in DATE_FILTERS:
            raise BadRequest(f"date must be one of: {', '.join(DATE_FILTERS)}")
        now = datetime.now(timezone.utc)

        query = '''
            SELECT e.*,
                   (SELECT COUNT(*) FROM event_attendees a WHERE a.event_id = e.id AND a.status = 'going') AS attendee_count,
                   (SELECT status FROM event_attendees a WHERE a.event_id = e.id AND a.user_id = ?) AS rsvp_status
            FROM events e
            WHERE e.start_date >= ?
        '''
        params = [user_id, now.isoformat()]
        q = request.args.get('q', '').strip().lower()
        if q:
            query += " AND (LOWER(e.title) LIKE ? OR LOWER(COALESCE(e.description, '')) LIKE ?)"
            params += [f"%{q}%", f"%{q}%"]
        location = request.args.get('location', '').strip().lower()
        if location:
            query += " AND LOWER(COALESCE(e.location, '')) LIKE ?"
            params.append(f"%{location}%")
        end = window_end(date_filter, now)
        if end is not None:
            query += " AND e.start_date <= ?"
            params.append(end.isoformat())
        query += " ORDER BY e.start_date ASC"
        return jsonify([row_to_dict(row) for row in db.execute(query, params).fetchall()])

    # 2. CREATING AN EVENT
    data = request.get_json(silent=True) or {}
    title = clean_text(data.get('title'))
    if not title:
        return jsonify({"error": "Event title is required"}), 400
    description = clean_text(data.get('description')) or None
    if contains_profanity(title) or contains_profanity(description):
        return jsonify({"error": "Event rejected: Content contains inappropriate language."}), 400

    start = parse_timestamp(data.get('start_date'), 'start_date')
    end = parse_timestamp(data['end_date'], 'end_date') if data.get('end_date') else None
    if end is not None and end < start:
        raise BadRequest("end_date must not be before start_date")

    price = as_float(data.get('price'), 'price') or 0
    if price < 0:
        raise BadRequest("price cannot be negative")
    max_attendees = data.get('max_attendees')
    if max_attendees is not None:
        if not isinstance(max_attendees, int) or isinstance(max_attendees, bool) or max_attendees < 1:
            raise BadRequest("max_attendees must be a positive whole number")

    event_id = new_id()
    stamp = now_iso()
    with db:
        db.execute('''INSERT INTO events (id, title, description, location, latitude, longitude, image_url,
                                          start_date, end_date, price, max_attendees, created_by, created_at, updated_at)
                      VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)''',
                   (event_id, title, description, clean_text(data.get('location')) or None,
                    as_float(data.get('latitude'), 'latitude'), as_float(data.get('longitude'), 'longitude'),
                    data.get('image_url') or None, start.isoformat(), end.isoformat() if end else None,
                    # Stored in cents
                    round(price * 100), max_attendees, user_id, stamp, stamp))
        record_change(db, 'events', 'INSERT', event_id)
    return jsonify(row_to_dict(_get_event(db, event_id))), 201


@events_bp.route('/events/<event_id>', methods=['DELETE'])
@login_required
def delete_event(event_id):
    db = get_db()
    event = _get_event(db, event_id)
    if event['created_by'] != current_user_id():
        raise Forbidden("Only the organiser can delete this event")
    with db:
        db.execute('DELETE FROM event_attendees WHERE event_id = ?', (event_id,))
        db.execute('DELETE FROM events WHERE id = ?', (event_id,))
        record_change(db, 'events', 'DELETE', event_id)
    return jsonify({"message": "Event deleted"})


@events_bp.route('/events/<event_id>/rsvp', methods=['POST', 'DELETE'])
@login_required
def handle_rsvp(event_id):
    db = get_db()
    user_id = current_user_id()
    event = _get_event(db, event_id)

    if request.method == 'DELETE':
        with db:
            removed = db.execute('DELETE FROM event_attendees WHERE event_id = ? AND user_id = ?',
                                 (event_id, user_id)).rowcount
            if removed:
                record_change(db, 'event_attendees', 'DELETE', event_id)
        if not removed:
            raise NotFound("You have not RSVPed to this event")
        return jsonify({"message": "RSVP cancelled", "attendee_count": _going_count(db, event_id)})

    data = request.get_json(silent=True) or {}
    status = data.get('status', 'going')
    if status not in RSVP_STATUSES:
        raise BadRequest("status must be 'going' or 'interested'")

    try:
        with db:
            begin_immediate(db)
            current = db.execute('SELECT status FROM event_attendees WHERE event_id = ? AND user_id = ?',
                                 (event_id, user_id)).fetchone()
            if status == 'going' and event['max_attendees'] is not None \
                    and (current is None or current['status'] != 'going') \
                    and _going_count(db, event_id) >= event['max_attendees']:
                raise Conflict("This event is full")
            db.execute('''INSERT INTO event_attendees (id, event_id, user_id, status, created_at)
                          VALUES (?, ?, ?, ?, ?)
                          ON CONFLICT(event_id, user_id) DO UPDATE SET status = excluded.status''',
                       (new_id(), event_id, user_id, status, now_iso()))
            record_change(db, 'event_attendees', 'UPDATE' if current else 'INSERT', event_id)
    except sqlite3.IntegrityError:
        raise Conflict("Could not save your RSVP, try again")
    return jsonify({"message": "RSVP confirmed!", "status": status,
                    "attendee_count": _going_count(db, event_id)})
