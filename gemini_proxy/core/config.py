import os
from dotenv import load_dotenv

load_dotenv()

APP_VERSION = os.getenv("APP_VERSION", "1.2.0")

LOG_LEVEL_FROM_ENV = os.getenv("LOG_LEVEL", "INFO").upper()

# Upstream (Gemini REST)
GOOGLE_API_BASE_URL = os.getenv("GOOGLE_API_BASE_URL", "https://generativelanguage.googleapis.com")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
# 只从服务端环境读取，绝不接受客户端传入
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")

# Timeouts and Limits
API_TIMEOUT = float(os.getenv("API_TIMEOUT", "15"))
UPSTREAM_TIMEOUT = float(os.getenv("UPSTREAM_TIMEOUT", "30"))
MAX_CONNECTIONS = int(os.getenv("MAX_CONNECTIONS", "100"))

# Generation defaults
DEFAULT_TEMPERATURE = float(os.getenv("DEFAULT_TEMPERATURE", "0.7"))
DEFAULT_MAX_OUTPUT_TOKENS = int(os.getenv("DEFAULT_MAX_OUTPUT_TOKENS", "1024"))
MAX_OUTPUT_TOKENS_LIMIT = int(os.getenv("MAX_OUTPUT_TOKENS_LIMIT", "8192"))
TOP_K = int(os.getenv("TOP_K", "40"))
TOP_P = float(os.getenv("TOP_P", "0.95"))
SAFETY_THRESHOLD = os.getenv("SAFETY_THRESHOLD", "BLOCK_ONLY_HIGH")
DEFAULT_SYSTEM_INSTRUCTION = os.getenv("DEFAULT_SYSTEM_INSTRUCTION") or None
EMPTY_RESPONSE_PLACEHOLDER = "No content generated."

# Inbound rate limiting (sliding window per client)
RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
RATE_LIMIT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "60"))
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))

# "plain" -> {"text": ...}; "enveloped" -> {"success": true, "data": {...}}
RESPONSE_ENVELOPE = os.getenv("RESPONSE_ENVELOPE", "plain").lower()

CHAT_ENDPOINT_PATH = os.getenv("CHAT_ENDPOINT_PATH", "/api/chat")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Client-ID",
}
