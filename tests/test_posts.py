import io
import os
from datetime import datetime, timedelta, timezone

from pridesphere.routes.posts_bp import format_timestamp, transform_post


def test_feed_shows_newest_first(make_client):
    client, _ = make_client("sam")
    client.post("/api/posts", json={"content": "first"})
    client.post("/api/posts", json={"content": "second", "hashtags": "pride, joy", "mood": "Happy"})

    feed = client.get("/api/posts").get_json()
    assert [p["content"] for p in feed] == ["second", "first"]
    assert feed[0]["hashtags"] == ["#pride", "#joy"]
    assert feed[0]["mood_emoji"] == "😊"
    assert feed[0]["author"]["name"] == "Sam"
    assert feed[0]["timestamp"] == "0 minutes ago"


def test_profanity_is_rejected(make_client):
    client, _ = make_client("sam")
    resp = client.post("/api/posts", json={"content": "well SHIT happens"})
    assert resp.status_code == 400
    assert client.get("/api/posts").get_json() == []

    # Only whole words count
    assert client.post("/api/posts", json={"content": "a shiitake risotto"}).status_code == 201


def test_script_tags_are_stripped(make_client):
    client, _ = make_client("sam")
    resp = client.post("/api/posts", json={"content": "<b>hi</b><script>alert(1)</script>"})
    assert resp.get_json()["content"] == "<b>hi</b>"
    assert client.post("/api/posts", json={"content": "<script>x</script>"}).status_code == 400


def test_anonymous_posts_hide_author(make_client):
    client, _ = make_client("sam")
    client.post("/api/posts", json={"content": "secret", "is_anonymous": True})
    author = client.get("/api/posts").get_json()[0]["author"]
    assert author["name"] == "Anonymous Rainbow"
    assert author["id"] is None
    assert author["is_anonymous"] is True


def test_likes_are_unique_per_user(make_client):
    author, _ = make_client("sam")
    fan, _ = make_client("fan")
    post_id = author.post("/api/posts", json={"content": "like me"}).get_json()["id"]

    assert fan.post(f"/api/posts/{post_id}/like").get_json() == {"likes": 1, "is_liked": True}
    assert fan.post(f"/api/posts/{post_id}/like").status_code == 409
    assert fan.get("/api/posts").get_json()[0]["is_liked"] is True

    assert fan.delete(f"/api/posts/{post_id}/like").get_json() == {"likes": 0, "is_liked": False}
    # Unliking twice never goes negative
    assert fan.delete(f"/api/posts/{post_id}/like").get_json()["likes"] == 0


def test_comments_notify_author(make_client):
    author, _ = make_client("sam")
    fan, _ = make_client("fan")
    post_id = author.post("/api/posts", json={"content": "talk to me"}).get_json()["id"]

    assert fan.post(f"/api/posts/{post_id}/comments", json={"content": "hey!"}).status_code == 201
    assert fan.post(f"/api/posts/{post_id}/comments", json={"content": "  "}).status_code == 400

    comments = author.get(f"/api/posts/{post_id}/comments").get_json()
    assert [c["content"] for c in comments] == ["hey!"]
    assert comments[0]["author_name"] == "Fan"
    assert author.get("/api/posts").get_json()[0]["comments"] == 1
    assert author.get("/api/notifications").get_json()["unread_count"] == 1


def test_only_author_deletes_post(make_client):
    author, _ = make_client("sam")
    other, _ = make_client("other")
    post_id = author.post("/api/posts", json={"content": "mine"}).get_json()["id"]
    assert other.delete(f"/api/posts/{post_id}").status_code == 403
    assert author.delete(f"/api/posts/{post_id}").status_code == 200
    assert author.get("/api/posts").get_json() == []


def test_community_posts_need_membership(community, make_client):
    outsider, _ = make_client("outsider")
    payload = {"content": "hello hikers", "community_id": community["id"]}
    assert outsider.post("/api/posts", json=payload).status_code == 403
    assert community["member"].post("/api/posts", json=payload).status_code == 201

    feed = community["owner"].get(f"/api/posts?community_id={community['id']}").get_json()
    assert len(feed) == 1
    # Community posts stay out of the main feed
    assert community["owner"].get("/api/posts").get_json() == []


def test_moderator_can_delete_member_post(community):
    post_id = community["member"].post(
        "/api/posts", json={"content": "off topic", "community_id": community["id"]}).get_json()["id"]
    assert community["owner"].delete(f"/api/posts/{post_id}").status_code == 200


def test_media_upload(make_client, app):
    client, _ = make_client("sam")
    resp = client.post("/api/posts", data={
        "content": "look at this",
        "media": (io.BytesIO(b"fake image"), "sunset.png"),
    }, content_type="multipart/form-data")
    assert resp.status_code == 201
    url = resp.get_json()["media_urls"][0]
    assert url.startswith("/uploads/post_") and url.endswith(".png")
    assert client.get(url).data == b"fake image"

    bad = client.post("/api/posts", data={
        "content": "virus",
        "media": (io.BytesIO(b"MZ"), "setup.exe"),
    }, content_type="multipart/form-data")
    assert bad.status_code == 400


def test_rejected_post_leaves_no_upload_behind(make_client, app):
    client, _ = make_client("sam")
    resp = client.post("/api/posts", data={
        "content": "somewhere nice",
        "latitude": "north",
        "media": (io.BytesIO(b"fake image"), "sunset.png"),
    }, content_type="multipart/form-data")
    assert resp.status_code == 400

    mixed = client.post("/api/posts", data={
        "content": "two files",
        "media": [(io.BytesIO(b"fake image"), "sunset.png"), (io.BytesIO(b"MZ"), "setup.exe")],
    }, content_type="multipart/form-data")
    assert mixed.status_code == 400

    folder = app.config["UPLOAD_FOLDER"]
    assert not os.path.isdir(folder) or os.listdir(folder) == []


def test_format_timestamp_buckets():
    now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
    assert format_timestamp((now - timedelta(minutes=5)).isoformat(), now) == "5 minutes ago"
    assert format_timestamp((now - timedelta(hours=1)).isoformat(), now) == "1 hour ago"
    assert format_timestamp((now - timedelta(hours=3)).isoformat(), now) == "3 hours ago"
    assert format_timestamp((now - timedelta(days=2)).isoformat(), now) == "2 days ago"


def test_transform_post_estimates_shares():
    row = {"id": "p1", "user_id": "u1", "community_id": None, "content": "hi", "mood": None,
           "hashtags": None, "location": None, "media_urls": None, "is_anonymous": 0,
           "likes_count": 12, "comments_count": 3, "created_at": datetime.now(timezone.utc).isoformat(),
           "display_name": None, "username": "sam", "pronouns": None, "is_verified": 1,
           "avatar_url": None, "is_liked": 0}
    post = transform_post(row)
    assert post["shares"] == 2
    assert post["author"]["name"] == "sam"
    assert post["author"]["verified"] is True
    assert post["mood_emoji"] == "💫"
