import logging
import os

from flask import Flask, jsonify, send_from_directory

from pridesphere import database
from pridesphere.config import Config
from pridesphere.errors import register_error_handlers
from pridesphere.routes.admin_bp import admin_bp
from pridesphere.routes.auth_bp import auth_bp
from pridesphere.routes.communities_bp import communities_bp
from pridesphere.routes.events_bp import events_bp
from pridesphere.routes.friends_bp import friends_bp
from pridesphere.routes.memberships_bp import memberships_bp
from pridesphere.routes.messages_bp import messages_bp
from pridesphere.routes.moderation_bp import moderation_bp
from pridesphere.routes.notifications_bp import notifications_bp
from pridesphere.routes.places_bp import places_bp
from pridesphere.routes.posts_bp import posts_bp
from pridesphere.routes.profiles_bp import profiles_bp
from pridesphere.routes.realtime_bp import realtime_bp
from pridesphere.routes.settings_bp import settings_bp
from pridesphere.routes.wellness_bp import wellness_bp

logger = logging.getLogger(__name__)

BLUEPRINTS = [
    auth_bp,
    profiles_bp,
    settings_bp,
    posts_bp,  # feed, comments and likes
    communities_bp,
    admin_bp,  # per-community moderation tools
    friends_bp,
    messages_bp,
    events_bp,
    wellness_bp,
    notifications_bp,
    memberships_bp,
    places_bp,
    moderation_bp,  # reports and the Gemini safety check
    realtime_bp,
]


def create_app(overrides=None):
    """
    Builds the Flask app. ``overrides`` is applied on top of Config, tests use
    it to point DB_PATH and UPLOAD_FOLDER at a temporary directory.
    """
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(level=app.config['LOG_LEVEL'],
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    # Ensures the SQLite schema exists before the first request comes in
    database.init_db(app.config['DB_PATH'])
    database.init_app(app)
    register_error_handlers(app)

    # Every JSON endpoint sits under /api so it never clashes with the front end
    for blueprint in BLUEPRINTS:
        app.register_blueprint(blueprint, url_prefix='/api')

    @app.route('/')
    def home():
        return jsonify({"name": "PrideSphere", "status": "ok"})

    @app.route('/uploads/<path:filename>')
    def uploaded_file(filename):
        return send_from_directory(os.path.abspath(app.config['UPLOAD_FOLDER']), filename)

    return app


if __name__ == '__main__':
    # Debug mode should stay off outside development
    create_app().run(host="0.0.0.0", debug=os.getenv('FLASK_DEBUG') == '1')
