def test_request_accept_and_remove(make_client):
    sam, sam_id = make_client("sam")
    kit, kit_id = make_client("kit")

    resp = sam.post("/api/friends/requests", json={"user_id": kit_id})
    assert resp.status_code == 201
    request_id = resp.get_json()["id"]
    assert sam.post("/api/friends/requests", json={"user_id": kit_id}).get_json()["error"] == "Friend request already sent"
    assert kit.post("/api/friends/requests", json={"user_id": sam_id}).status_code == 409

    assert [r["id"] for r in kit.get("/api/friends").get_json()["requests"]] == [request_id]
    assert [r["id"] for r in sam.get("/api/friends").get_json()["sent"]] == [request_id]

    # Only the addressee answers
    assert sam.post(f"/api/friends/requests/{request_id}", json={"action": "accept"}).status_code == 403
    assert kit.post(f"/api/friends/requests/{request_id}", json={"action": "accept"}).status_code == 200

    friends = sam.get("/api/friends").get_json()["friends"]
    assert friends == [{"id": kit_id, "display_name": "Kit", "username": "kit", "avatar_url": "", "pronouns": ""}]
    assert sam.post("/api/friends/requests", json={"user_id": kit_id}).get_json()["error"] == "Already friends"

    assert kit.delete(f"/api/friends/{sam_id}").status_code == 200
    assert sam.get("/api/friends").get_json()["friends"] == []
    assert kit.delete(f"/api/friends/{sam_id}").status_code == 404


def test_declined_request_can_be_resent(make_client):
    sam, _ = make_client("sam")
    kit, kit_id = make_client("kit")
    request_id = sam.post("/api/friends/requests", json={"user_id": kit_id}).get_json()["id"]
    kit.post(f"/api/friends/requests/{request_id}", json={"action": "decline"})
    assert kit.post(f"/api/friends/requests/{request_id}", json={"action": "accept"}).status_code == 409

    resp = sam.post("/api/friends/requests", json={"user_id": kit_id})
    assert resp.status_code == 201
    assert resp.get_json()["id"] == request_id


def test_request_validation(make_client):
    sam, sam_id = make_client("sam")
    assert sam.post("/api/friends/requests", json={"user_id": sam_id}).status_code == 400
    assert sam.post("/api/friends/requests", json={"user_id": "missing"}).status_code == 404
    assert sam.post("/api/friends/requests/nope", json={"action": "maybe"}).status_code == 400


def test_friend_request_notifies(make_client):
    sam, _ = make_client("sam")
    kit, kit_id = make_client("kit")
    sam.post("/api/friends/requests", json={"user_id": kit_id})
    notifications = kit.get("/api/notifications").get_json()["notifications"]
    assert notifications[0]["title"] == "New friend request"
