import io


def test_update_own_profile(make_client):
    client, _ = make_client("sam")
    resp = client.patch("/api/profiles/me", json={
        "bio": "Plant parent", "username": "@SamTheGreat", "interests": ["art", " ", "music"],
        "theme_accent": "trans",
    })
    assert resp.status_code == 200
    profile = resp.get_json()
    assert profile["username"] == "samthegreat"
    assert profile["interests"] == ["art", "music"]
    assert profile["theme_accent"] == "trans"

    assert client.patch("/api/profiles/me", json={"theme_accent": "neon"}).status_code == 400
    assert client.patch("/api/profiles/me", json={}).status_code == 400


def test_username_must_be_unique(make_client):
    make_client("sam")
    kit, _ = make_client("kit")
    assert kit.patch("/api/profiles/me", json={"username": "sam"}).status_code == 409


def test_avatar_upload(make_client):
    client, user_id = make_client("sam")
    resp = client.post("/api/profiles/me/avatar", data={"file": (io.BytesIO(b"img"), "me.webp")},
                       content_type="multipart/form-data")
    url = resp.get_json()["url"]
    assert url.startswith(f"/uploads/avatar_{user_id}_")
    assert client.get("/api/profiles/me").get_json()["avatar_url"] == url
    assert client.post("/api/profiles/me/avatar", data={}).status_code == 400


def test_verification_request(make_client, db):
    client, user_id = make_client("sam")
    assert client.post("/api/profiles/me/verification", json={"method": "vibes"}).status_code == 400
    resp = client.post("/api/profiles/me/verification", json={"method": "story", "details": "My journey"})
    assert resp.status_code == 201
    assert client.get("/api/profiles/me").get_json()["verification_status"] == "pending"
    assert client.post("/api/profiles/me/verification", json={"method": "social"}).status_code == 409
    assert db.execute("SELECT COUNT(*) FROM verification_requests WHERE user_id = ?", (user_id,)).fetchone()[0] == 1


def test_search_excludes_caller(make_client):
    sam, _ = make_client("sam")
    make_client("samira")
    make_client("kit")
    results = sam.get("/api/profiles/search?q=@SAM").get_json()
    assert [r["username"] for r in results] == ["samira"]
    assert sam.get("/api/profiles/search?q=").get_json() == []


def test_search_limits(app, make_client):
    app.config["PROFILE_SEARCH_LIMIT"] = 2
    sam, _ = make_client("sam")
    for i in range(3):
        make_client(f"river{i}")
    assert len(sam.get("/api/profiles/search?q=river").get_json()) == 2
    assert len(sam.get("/api/profiles/search?q=river&purpose=chat").get_json()) == 3


def test_profile_visibility(make_client):
    sam, sam_id = make_client("sam")
    kit, kit_id = make_client("kit")
    assert kit.get(f"/api/profiles/{sam_id}").status_code == 200

    sam.patch("/api/settings", json={"profile_visibility": "friends"})
    assert kit.get(f"/api/profiles/{sam_id}").status_code == 404
    # Owners always see their own profile
    assert sam.get(f"/api/profiles/{sam_id}").status_code == 200

    request_id = kit.post("/api/friends/requests", json={"user_id": sam_id}).get_json()["id"]
    sam.post(f"/api/friends/requests/{request_id}", json={"action": "accept"})
    assert kit.get(f"/api/profiles/{sam_id}").status_code == 200

    sam.patch("/api/settings", json={"profile_visibility": "private"})
    assert kit.get(f"/api/profiles/{sam_id}").status_code == 404
    assert sam.get(f"/api/profiles/{kit_id}").status_code == 200


def test_settings_validation(make_client):
    client, _ = make_client("sam")
    assert client.patch("/api/settings", json={"dms_enabled": "no"}).status_code == 400
    assert client.patch("/api/settings", json={"profile_visibility": "secret"}).status_code == 400
    assert client.patch("/api/settings", json={}).status_code == 400

    resp = client.patch("/api/settings", json={"dms_enabled": False, "calls_enabled": False})
    assert resp.get_json()["settings"]["dms_enabled"] is False
    assert client.get("/api/settings").get_json()["calls_enabled"] is False
