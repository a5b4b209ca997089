from unittest.mock import MagicMock, patch

import requests


def fake_response(status_code=200, payload=None, text="", reason="OK"):
    response = MagicMock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.reason = reason
    response.text = text
    response.json.return_value = payload or {}
    return response


def test_search_maps_places(make_client):
    client, _ = make_client("sam")
    payload = {"places": [
        {"id": "abc", "displayName": {"text": "The Stud"}, "formattedAddress": "1123 Folsom St",
         "location": {"latitude": 37.77, "longitude": -122.41}, "types": ["bar"]},
        {"id": "def"},
    ]}
    with patch("pridesphere.routes.places_bp.requests.post", return_value=fake_response(payload=payload)) as post:
        resp = client.post("/api/places/search", json={"query": "  the stud "})

    places = resp.get_json()["places"]
    assert places[0] == {"place_id": "abc", "name": "The Stud", "formatted_address": "1123 Folsom St",
                         "geometry": {"location": {"lat": 37.77, "lng": -122.41}}, "types": ["bar"]}
    assert places[1]["name"] == "Unknown Location"
    assert places[1]["formatted_address"] == "Address not available"
    assert places[1]["geometry"] is None
    assert post.call_args.kwargs["json"]["textQuery"] == "the stud"
    assert post.call_args.kwargs["headers"]["X-Goog-Api-Key"] == "test-key"


def test_short_query_skips_upstream(make_client):
    client, _ = make_client("sam")
    with patch("pridesphere.routes.places_bp.requests.post") as post:
        assert client.post("/api/places/search", json={"query": "a"}).get_json() == {"places": []}
    post.assert_not_called()


def test_search_upstream_error_keeps_200(make_client):
    client, _ = make_client("sam")
    error = fake_response(403, text='{"error": "PERMISSION_DENIED"}', reason="Forbidden")
    with patch("pridesphere.routes.places_bp.requests.post", return_value=error):
        resp = client.post("/api/places/search", json={"query": "cafe"})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["places"] == []
    assert body["error"] == "Permission denied - check API key restrictions"

    with patch("pridesphere.routes.places_bp.requests.post", side_effect=requests.ConnectionError("down")):
        resp = client.post("/api/places/search", json={"query": "cafe"})
    assert resp.status_code == 200
    assert resp.get_json()["places"] == []


def test_missing_api_key(app, make_client):
    app.config["GOOGLE_PLACES_API_KEY"] = None
    client, _ = make_client("sam")
    assert client.post("/api/places/search", json={"query": "cafe"}).status_code == 500
    assert client.post("/api/places/reverse-geocode", json={"lat": 1, "lng": 2}).status_code == 500


def test_reverse_geocode(make_client):
    client, _ = make_client("sam")
    assert client.post("/api/places/reverse-geocode", json={"lat": 37.7}).status_code == 400

    payload = {"status": "OK", "results": [
        {"formatted_address": "Castro St, San Francisco", "place_id": "xyz",
         "geometry": {"location": {"lat": 37.76, "lng": -122.43}}, "address_components": []},
        {"formatted_address": "San Francisco"},
    ]}
    with patch("pridesphere.routes.places_bp.requests.get", return_value=fake_response(payload=payload)) as get:
        resp = client.post("/api/places/reverse-geocode", json={"lat": 37.76, "lng": -122.43})
    assert resp.get_json()["formatted_address"] == "Castro St, San Francisco"
    assert get.call_args.kwargs["params"]["latlng"] == "37.76,-122.43"

    with patch("pridesphere.routes.places_bp.requests.get",
               return_value=fake_response(payload={"status": "REQUEST_DENIED"})):
        resp = client.post("/api/places/reverse-geocode", json={"lat": 0, "lng": 0})
    assert resp.status_code == 500
    assert resp.get_json()["error"] == "Geocoding API error: REQUEST_DENIED"

    with patch("pridesphere.routes.places_bp.requests.get",
               return_value=fake_response(payload={"status": "OK", "results": []})):
        assert client.post("/api/places/reverse-geocode", json={"lat": 0, "lng": 0}).status_code == 404


def test_places_require_login(app):
    assert app.test_client().post("/api/places/search", json={"query": "cafe"}).status_code == 401
