from datetime import datetime, timedelta, timezone

from flask import Blueprint, request, jsonify

from pridesphere.database import get_db, new_id, now_iso, row_to_dict, rows_to_dicts
from pridesphere.errors import BadRequest, NotFound
from pridesphere.routes.auth_bp import login_required, current_user_id

memberships_bp = Blueprint('memberships', __name__)

PERIOD = timedelta(days=30)
FREE_TIER = 'Free'


def active_membership(db, user_id):
    row = db.execute('''
        SELECT m.*, t.name AS tier_name, t.price_monthly, t.max_communities, t.features
        FROM user_memberships m JOIN membership_tiers t ON t.id = m.membership_tier_id
        WHERE m.user_id = ? AND m.status = 'active'
          AND (m.current_period_end IS NULL OR m.current_period_end > ?)
        ORDER BY m.created_at DESC LIMIT 1
    ''', (user_id, now_iso())).fetchone()
    return row_to_dict(row)


@memberships_bp.route('/memberships/tiers')
def list_tiers():
    rows = get_db().execute('SELECT * FROM membership_tiers ORDER BY price_monthly ASC').fetchall()
    return jsonify(rows_to_dicts(rows))


@memberships_bp.route('/memberships/me')
@login_required
def my_membership():
    db = get_db()
    membership = active_membership(db, current_user_id())
    if membership is None:
        tier = row_to_dict(db.execute('SELECT * FROM membership_tiers WHERE name = ?', (FREE_TIER,)).fetchone())
        return jsonify({"membership": None, "tier": tier})
    tier = {
        "id": membership['membership_tier_id'],
        "name": membership.pop('tier_name'),
        "price_monthly": membership.pop('price_monthly'),
        "max_communities": membership.pop('max_communities'),
        "features": membership.pop('features'),
    }
    return jsonify({"membership": membership, "tier": tier})


@memberships_bp.route('/memberships', methods=['POST'])
@login_required
def subscribe():
    """Activates a tier for one period; payment collection happens elsewhere."""
    data = request.get_json(silent=True) or {}
    tier_id = data.get('tier_id')
    if not tier_id:
        raise BadRequest("tier_id is required")

    db = get_db()
    user_id = current_user_id()
    tier = db.execute('SELECT * FROM membership_tiers WHERE id = ?', (tier_id,)).fetchone()
    if tier is None:
        raise NotFound("Membership tier not found")

    start = datetime.now(timezone.utc)
    stamp = start.isoformat()
    with db:
        db.execute("UPDATE user_memberships SET status = 'cancelled', updated_at = ? "
                   "WHERE user_id = ? AND status = 'active'", (stamp, user_id))
        db.execute('''INSERT INTO user_memberships (id, user_id, membership_tier_id, status, current_period_start,
                                                    current_period_end, created_at, updated_at)
                      VALUES (?, ?, ?, 'active', ?, ?, ?, ?)''',
                   (new_id(), user_id, tier_id, stamp, (start + PERIOD).isoformat(), stamp, stamp))
    return jsonify({"message": f"Welcome to {tier['name']}!", "membership": active_membership(db, user_id)}), 201
