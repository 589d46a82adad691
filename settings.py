import os
from dotenv import load_dotenv

# Загружаем переменные окружения
load_dotenv()

# ─── Firebase ───────────────────────────────────────────────────────────────────
FIREBASE_SERVICE_ACCOUNT_JSON = os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON")
FIREBASE_STORAGE_BUCKET       = os.getenv("FIREBASE_STORAGE_BUCKET")
STORE_BACKEND                 = os.getenv("STORE_BACKEND", "firestore").lower()

# ─── Auth (tokens are issued by the identity provider) ─────────────────────────
SECRET_KEY = os.getenv("SECRET_KEY", "changeme")
ALGORITHM  = os.getenv("ALGORITHM", "HS256")

# ─── Watch party tuning ─────────────────────────────────────────────────────────
MAX_PARTICIPANTS   = int(os.getenv("MAX_PARTICIPANTS", "10"))
JOIN_CODE_ATTEMPTS = int(os.getenv("JOIN_CODE_ATTEMPTS", "5"))
HEARTBEAT_INTERVAL = float(os.getenv("HEARTBEAT_INTERVAL", "5"))
DRIFT_TOLERANCE    = float(os.getenv("DRIFT_TOLERANCE", "3"))
STALE_HEARTBEATS   = int(os.getenv("STALE_HEARTBEATS", "3"))

# ─── Chat ───────────────────────────────────────────────────────────────────────
CHAT_POLL_INTERVAL = float(os.getenv("CHAT_POLL_INTERVAL", "2"))
CHAT_MAX_LENGTH    = 200
CHAT_DEFAULT_LIMIT = 50
CHAT_MAX_LIMIT     = 100

# ─── Voice ──────────────────────────────────────────────────────────────────────
SPEAKING_THRESHOLD = float(os.getenv("SPEAKING_THRESHOLD", "20"))
SPEAKING_INTERVAL  = float(os.getenv("SPEAKING_INTERVAL", "0.1"))
MIC_DEVICE         = os.getenv("MIC_DEVICE", "default")
MIC_FORMAT         = os.getenv("MIC_FORMAT", "pulse")
STUN_URLS          = [u for u in os.getenv("STUN_URLS", "stun:stun.l.google.com:19302").split(",") if u]

# ─── HTTP ───────────────────────────────────────────────────────────────────────
CORS_ORIGINS = [o for o in os.getenv("CORS_ORIGINS", "http://127.0.0.1:3000").split(",") if o]
LOG_LEVEL    = os.getenv("LOG_LEVEL", "INFO").upper()
PORT         = int(os.getenv("PORT", "8000"))
