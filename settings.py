"""
Runtime settings for the collaboration backend.

Everything comes from environment variables; a local .env file is loaded first.
"""
import os

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{os.path.join(BASE_DIR, 'collab.db')}")

DEFAULT_SECRET_KEY = "change-me-in-production"
SECRET_KEY = os.getenv("JWT_SECRET_KEY", DEFAULT_SECRET_KEY)
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24)))

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join(BASE_DIR, "uploads"))
MAX_UPLOAD_SIZE = 10 * 1024 * 1024
MAX_UPLOAD_FILES = 5

AI_RESPONSE_DELAY_SECONDS = float(os.getenv("AI_RESPONSE_DELAY_SECONDS", "2.0"))

FIGMA_API_BASE = os.getenv("FIGMA_API_BASE", "https://api.figma.com/v1")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
