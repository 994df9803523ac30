"""
DXSim configuration
Environment-driven settings shared by the server, the session core and the client
"""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

PACKAGE_ROOT = Path(__file__).resolve().parent

# Service identity
CONFIG = {
    'version': '1.0.0',
    'name': 'DXSim Case Session Service',
    'port': int(os.getenv('DXSIM_PORT', '8010')),
    'host': os.getenv('DXSIM_HOST', '0.0.0.0'),
    'debug': os.getenv('DXSIM_DEBUG', 'false').lower() == 'true'
}

# Completion engine
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
GEMINI_FILE_URI_PREFIX = "https://generativelanguage.googleapis.com/"
SYSTEM_PROMPT_PATH = Path(os.getenv(
    "DXSIM_SYSTEM_PROMPT_PATH",
    str(PACKAGE_ROOT / "prompts" / "gatekeeper-system-prompt.txt")
))

# Case store
SUPABASE_PROJECT_ID = os.getenv("SUPABASE_PROJECT_ID")
SUPABASE_PUBLISHABLE_KEY = os.getenv("SUPABASE_PUBLISHABLE_KEY")
SUPABASE_URL = f"https://{SUPABASE_PROJECT_ID}.supabase.co" if SUPABASE_PROJECT_ID else None

# Session cache behaviour
REFERENCE_FRESHNESS_HOURS = float(os.getenv("DXSIM_REFERENCE_FRESHNESS_HOURS", "47"))
RESOLVE_RETRY_SECONDS = float(os.getenv("DXSIM_RESOLVE_RETRY_SECONDS", "300"))
SESSION_IDLE_SECONDS = float(os.getenv("DXSIM_SESSION_IDLE_SECONDS", str(6 * 3600)))
DEFAULT_SESSION_ID = "default"

# Streaming
STREAM_CHUNK_DELAY = float(os.getenv("DXSIM_STREAM_CHUNK_DELAY", "0.05"))

# Case library
RANDOM_CASE_ATTEMPTS = int(os.getenv("DXSIM_RANDOM_CASE_ATTEMPTS", "5"))

# Rate limiting and transport security
RATE_LIMITS = [limit.strip() for limit in os.getenv("DXSIM_RATE_LIMITS", "200 per day;50 per hour").split(";") if limit.strip()]
CHAT_RATE_LIMIT = os.getenv("DXSIM_CHAT_RATE_LIMIT", "30 per minute")
FORCE_HTTPS = os.getenv("DXSIM_FORCE_HTTPS", "false").lower() == "true"

# Logging ("" disables the per-section log files)
LOG_DIR = os.getenv("DXSIM_LOG_DIR", "logs")

# Terminal client
BASE_URL = os.getenv("DXSIM_BASE_URL", "http://localhost:8010")
