import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./schedule.db")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Patient / Staff / Authorization directory service
# When DIRECTORY_API_URL is unset every reference is accepted and display names stay empty
DIRECTORY_API_URL = os.getenv("DIRECTORY_API_URL")
DIRECTORY_API_KEY = os.getenv("DIRECTORY_API_KEY")
DIRECTORY_TIMEOUT_SECONDS = float(os.getenv("DIRECTORY_TIMEOUT_SECONDS", "10"))

# One billing unit in minutes (units are rounded up on check-out)
UNIT_MINUTES = int(os.getenv("UNIT_MINUTES", "15"))

# Upper bound on occurrences a single repeat configuration may expand to
MAX_GENERATED_OCCURRENCES = int(os.getenv("MAX_GENERATED_OCCURRENCES", "366"))

# Listing endpoints
DEFAULT_PAGE_SIZE = int(os.getenv("DEFAULT_PAGE_SIZE", "20"))
MAX_PAGE_SIZE = int(os.getenv("MAX_PAGE_SIZE", "200"))

# Name given to a template when the caller does not supply one
DEFAULT_TEMPLATE_NAME = os.getenv("DEFAULT_TEMPLATE_NAME", "Master Weekly")

CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:5173,http://localhost:3000",
).split(",")
