import logging

import requests
from flask import Blueprint, request, jsonify, current_app

from pridesphere.routes.auth_bp import login_required

"""
Location lookups for the post and event forms, proxied to Google so the API
key never reaches the browser.
"""

logger = logging.getLogger(__name__)

places_bp = Blueprint('places', __name__)

SEARCH_URL = 'https://places.googleapis.com/v1/places:searchText'
GEOCODE_URL = 'https://maps.googleapis.com/maps/api/geocode/json'
FIELD_MASK = 'places.id,places.displayName,places.formattedAddress,places.location,places.types'
MAX_RESULTS = 10
MIN_QUERY_LENGTH = 2


def to_place(place):
    location = place.get('location')
    return {
        "place_id": place.get('id'),
        "name": (place.get('displayName') or {}).get('text') or 'Unknown Location',
        "formatted_address": place.get('formattedAddress') or 'Address not available',
        "geometry": {"location": {"lat": location.get('latitude'), "lng": location.get('longitude')}}
        if location else None,
        "types": place.get('types') or [],
    }


def _search_error_message(response):
    text = response.text
    if 'API_KEY_INVALID' in text:
        return 'Invalid API key'
    if 'PERMISSION_DENIED' in text:
        return 'Permission denied - check API key restrictions'
    return f"HTTP {response.status_code}: {response.reason}"


@places_bp.route('/places/search', methods=['POST'])
@login_required
def search_places():
    data = request.get_json(silent=True) or {}
    query = (data.get('query') or '').strip()
    if len(query) < MIN_QUERY_LENGTH:
        return jsonify({"places": []})

    api_key = current_app.config['GOOGLE_PLACES_API_KEY']
    if not api_key:
        logger.error("Google Places API key not configured")
        return jsonify({"error": "Google Places API key not configured"}), 500

    try:
        response = requests.post(
            SEARCH_URL,
            json={"textQuery": query, "languageCode": "en", "maxResultCount": MAX_RESULTS},
            headers={"X-Goog-Api-Key": api_key, "X-Goog-FieldMask": FIELD_MASK},
            timeout=current_app.config['UPSTREAM_TIMEOUT'],
        )
    except requests.RequestException as e:
        logger.warning("Places search failed: %s", e)
        return jsonify({"error": f"Function error: {e}", "places": []})

    # Upstream errors come back as an empty result so the search box keeps working
    if not response.ok:
        logger.warning("Places search returned %s: %s", response.status_code, response.text)
        return jsonify({"error": _search_error_message(response), "details": response.text, "places": []})

    places = [to_place(p) for p in response.json().get('places') or []]
    return jsonify({"places": places})


@places_bp.route('/places/reverse-geocode', methods=['POST'])
@login_required
def reverse_geocode():
    data = request.get_json(silent=True) or {}
    lat, lng = data.get('lat'), data.get('lng')
    if lat is None or lng is None:
        return jsonify({"error": "Latitude and longitude are required"}), 400

    api_key = current_app.config['GOOGLE_PLACES_API_KEY']
    if not api_key:
        logger.error("Google Places API key not configured")
        return jsonify({"error": "Google Places API key not configured"}), 500

    try:
        response = requests.get(GEOCODE_URL, params={"latlng": f"{lat},{lng}", "key": api_key},
                                timeout=current_app.config['UPSTREAM_TIMEOUT'])
        payload = response.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning("Reverse geocoding failed: %s", e)
        return jsonify({"error": str(e)}), 500

    if payload.get('status') != 'OK':
        return jsonify({"error": f"Geocoding API error: {payload.get('status')}"}), 500

    results = payload.get('results') or []
    if not results:
        return jsonify({"error": "No location found for these coordinates"}), 404

    # The first result is usually the most relevant one
    result = results[0]
    return jsonify({
        "formatted_address": result.get('formatted_address'),
        "place_id": result.get('place_id'),
        "geometry": result.get('geometry'),
        "address_components": result.get('address_components'),
    })
