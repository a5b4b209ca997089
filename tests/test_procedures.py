import pytest

from pridesphere import procedures
from pridesphere.errors import BadRequest, Conflict, Forbidden, NotFound


def count(db, query, *params):
    return db.execute(query, params).fetchone()[0]


def test_create_community_makes_caller_owner(make_client, db):
    _, user_id = make_client("founder")
    community_id = procedures.create_community_with_owner(db, user_id, "Trans Joy", tags=["joy"])

    community = db.execute("SELECT * FROM communities WHERE id = ?", (community_id,)).fetchone()
    assert community["member_count"] == 1
    assert community["created_by"] == user_id
    assert procedures.member_role(db, community_id, user_id) == "owner"


def test_create_community_respects_quota(make_client, db):
    _, user_id = make_client("founder")
    procedures.create_community_with_owner(db, user_id, "First", default_limit=1)
    with pytest.raises(Forbidden):
        procedures.create_community_with_owner(db, user_id, "Second", default_limit=1)
    # Nothing from the failed attempt is left behind
    assert count(db, "SELECT COUNT(*) FROM communities WHERE created_by = ?", user_id) == 1


def test_quota_check_blocks_competing_writer(make_client, db, try_write, monkeypatch):
    _, user_id = make_client("founder")
    real_quota = procedures.community_quota
    outcomes = []

    def quota_then_compete(conn, quota_user_id, default_limit):
        outcomes.append(try_write("INSERT INTO communities (id, name, created_by, created_at, updated_at) "
                                  "VALUES ('rival', 'Rival', ?, 'x', 'x')", quota_user_id))
        return real_quota(conn, quota_user_id, default_limit)

    monkeypatch.setattr(procedures, "community_quota", quota_then_compete)
    procedures.create_community_with_owner(db, user_id, "First", default_limit=1)
    assert outcomes == ["locked"]
    assert count(db, "SELECT COUNT(*) FROM communities WHERE created_by = ?", user_id) == 1


def test_join_and_leave_keep_member_count(community, db):
    community_id = community["id"]
    assert count(db, "SELECT member_count FROM communities WHERE id = ?", community_id) == 2

    with pytest.raises(Conflict):
        procedures.join_community(db, community_id, community["member_id"])

    procedures.leave_community(db, community_id, community["member_id"])
    assert count(db, "SELECT member_count FROM communities WHERE id = ?", community_id) == 1
    with pytest.raises(NotFound):
        procedures.leave_community(db, community_id, community["member_id"])


def test_join_reports_conflict_when_membership_appears_after_check(community, db, monkeypatch):
    # The member check misses a row that the unique constraint still catches
    monkeypatch.setattr(procedures, "is_community_member", lambda *args: False)
    with pytest.raises(Conflict):
        procedures.join_community(db, community["id"], community["member_id"])
    assert count(db, "SELECT member_count FROM communities WHERE id = ?", community["id"]) == 2


def test_join_check_blocks_competing_writer(community, make_client, db, try_write, monkeypatch):
    _, newcomer_id = make_client("newcomer")
    real_check = procedures.is_community_member
    outcomes = []

    def check_then_compete(conn, community_id, user_id):
        outcomes.append(try_write("INSERT INTO community_memberships (id, community_id, user_id, role, joined_at) "
                                  "VALUES ('rival', ?, ?, 'member', '2026-01-01T00:00:00+00:00')",
                                  community_id, user_id))
        return real_check(conn, community_id, user_id)

    monkeypatch.setattr(procedures, "is_community_member", check_then_compete)
    procedures.join_community(db, community["id"], newcomer_id)
    assert outcomes == ["locked"]
    assert count(db, "SELECT member_count FROM communities WHERE id = ?", community["id"]) == 3


def test_owner_cannot_leave(community, db):
    with pytest.raises(Forbidden):
        procedures.leave_community(db, community["id"], community["owner_id"])


def test_transfer_ownership_swaps_roles(community, db):
    community_id = community["id"]
    procedures.transfer_community_ownership(db, community_id, community["owner_id"], community["member_id"])

    assert procedures.member_role(db, community_id, community["member_id"]) == "owner"
    assert procedures.member_role(db, community_id, community["owner_id"]) == "admin"
    assert count(db, "SELECT COUNT(*) FROM communities WHERE id = ? AND created_by = ?",
                 community_id, community["member_id"]) == 1
    assert count(db, "SELECT COUNT(*) FROM notifications WHERE user_id = ?", community["member_id"]) == 1


def test_transfer_requires_member_target(community, make_client, db):
    _, outsider_id = make_client("outsider")
    with pytest.raises(BadRequest):
        procedures.transfer_community_ownership(db, community["id"], community["owner_id"], outsider_id)
    with pytest.raises(Forbidden):
        procedures.transfer_community_ownership(db, community["id"], community["member_id"], community["owner_id"])


def test_block_removes_member_and_prevents_rejoin(community, db):
    community_id = community["id"]
    procedures.block_community_member(db, community_id, community["member_id"], community["owner_id"], "spam")

    assert procedures.member_role(db, community_id, community["member_id"]) is None
    assert procedures.is_blocked(db, community_id, community["member_id"])
    assert count(db, "SELECT member_count FROM communities WHERE id = ?", community_id) == 1
    with pytest.raises(Forbidden):
        procedures.join_community(db, community_id, community["member_id"])

    procedures.unblock_community_member(db, community_id, community["member_id"], community["owner_id"])
    procedures.join_community(db, community_id, community["member_id"])
    assert procedures.member_role(db, community_id, community["member_id"]) == "member"


def test_admin_cannot_block_owner_or_other_admin(community, make_client, db):
    community_id = community["id"]
    _, other_id = make_client("other")
    procedures.join_community(db, community_id, other_id)
    procedures.set_member_role(db, community_id, community["member_id"], "admin", community["owner_id"])
    procedures.set_member_role(db, community_id, other_id, "admin", community["owner_id"])

    with pytest.raises(Forbidden):
        procedures.block_community_member(db, community_id, community["owner_id"], community["member_id"])
    with pytest.raises(Forbidden):
        procedures.block_community_member(db, community_id, other_id, community["member_id"])


def test_delete_community_cascade(community, db):
    community_id = community["id"]
    member = community["member"]
    post_id = member.post("/api/posts", json={"content": "Trail this weekend?", "community_id": community_id}).get_json()["id"]
    community["owner"].post(f"/api/posts/{post_id}/comments", json={"content": "Count me in"})
    community["owner"].post(f"/api/posts/{post_id}/like")

    with pytest.raises(Forbidden):
        procedures.delete_community_cascade(db, community_id, actor_id=community["member_id"])
    procedures.delete_community_cascade(db, community_id, actor_id=community["owner_id"])

    assert count(db, "SELECT COUNT(*) FROM communities WHERE id = ?", community_id) == 0
    assert count(db, "SELECT COUNT(*) FROM community_memberships WHERE community_id = ?", community_id) == 0
    assert count(db, "SELECT COUNT(*) FROM posts WHERE community_id = ?", community_id) == 0
    assert count(db, "SELECT COUNT(*) FROM comments WHERE post_id = ?", post_id) == 0
    assert count(db, "SELECT COUNT(*) FROM post_likes WHERE post_id = ?", post_id) == 0


def test_delete_user_posts_in_community(community, db):
    community_id = community["id"]
    for text in ("one", "two"):
        community["member"].post("/api/posts", json={"content": text, "community_id": community_id})
    community["owner"].post("/api/posts", json={"content": "owner post", "community_id": community_id})

    with pytest.raises(Forbidden):
        procedures.delete_user_posts_in_community(db, community_id, community["owner_id"], community["member_id"])
    deleted = procedures.delete_user_posts_in_community(db, community_id, community["member_id"], community["owner_id"])
    assert deleted == 2
    assert count(db, "SELECT COUNT(*) FROM posts WHERE community_id = ?", community_id) == 1


def test_delete_account_fixes_counters_and_owned_communities(community, db):
    fan_client = community["member"]
    post_id = community["owner"].post("/api/posts", json={"content": "hello world"}).get_json()["id"]
    fan_client.post(f"/api/posts/{post_id}/like")
    fan_client.post(f"/api/posts/{post_id}/comments", json={"content": "hi!"})

    procedures.delete_user_account(db, community["member_id"])

    post = db.execute("SELECT likes_count, comments_count FROM posts WHERE id = ?", (post_id,)).fetchone()
    assert (post["likes_count"], post["comments_count"]) == (0, 0)
    assert count(db, "SELECT member_count FROM communities WHERE id = ?", community["id"]) == 1

    procedures.delete_user_account(db, community["owner_id"])
    assert count(db, "SELECT COUNT(*) FROM communities WHERE id = ?", community["id"]) == 0
    with pytest.raises(NotFound):
        procedures.delete_user_account(db, community["owner_id"])
