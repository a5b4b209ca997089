import os
from dotenv import load_dotenv

load_dotenv()


#All the app settings live in this class, create_app copies them into app.config
class Config:
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-pridesphere-secret')
    DB_PATH = os.getenv('DB_PATH', 'pridesphere.db')
    UPLOAD_FOLDER = os.getenv('UPLOAD_FOLDER', 'static/uploads')
    MAX_CONTENT_LENGTH = 16 * 1024 * 1024

    GEMINI_API_KEY = os.getenv('GEMINI_API_KEY')
    GEMINI_MODEL = os.getenv('GEMINI_MODEL', "gemma-3-1b-it")
    GOOGLE_PLACES_API_KEY = os.getenv('GOOGLE_PLACES_API_KEY')
    UPSTREAM_TIMEOUT = 10

    BAD_WORDS = ["fuck", "shit", "bitch", "fuckoff", "faggot", "tranny", "dyke"]
    REPORT_FLAG_THRESHOLD = int(os.getenv('REPORT_FLAG_THRESHOLD', 3))
    FEED_LIMIT = 20
    PROFILE_SEARCH_LIMIT = 10
    CHAT_SEARCH_LIMIT = 20
    CHANGES_LIMIT = 200
    # Used when the creator has no active membership tier
    DEFAULT_MAX_COMMUNITIES = int(os.getenv('DEFAULT_MAX_COMMUNITIES', 1))

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
