"""
Configuration et utilitaires partagés
"""

import os
from datetime import datetime, timezone
from dotenv import load_dotenv
from pathlib import Path

# Charger .env
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# ==================== POCKETBASE ====================

POCKETBASE_URL = os.environ.get('POCKETBASE_URL', 'http://127.0.0.1:8090')
POCKETBASE_ADMIN_EMAIL = os.environ.get('POCKETBASE_ADMIN_EMAIL', '')
POCKETBASE_ADMIN_PASSWORD = os.environ.get('POCKETBASE_ADMIN_PASSWORD', '')
POCKETBASE_AUTH_TIMEOUT = float(os.environ.get('POCKETBASE_AUTH_TIMEOUT', '10'))
POCKETBASE_AUTH_RETRIES = int(os.environ.get('POCKETBASE_AUTH_RETRIES', '3'))
POCKETBASE_AUTH_RETRY_DELAY = float(os.environ.get('POCKETBASE_AUTH_RETRY_DELAY', '1'))
POCKETBASE_TOKEN_TTL = int(os.environ.get('POCKETBASE_TOKEN_TTL', '1209600'))  # 14 jours

# ==================== PROXY TARGETS ====================

API_URL = os.environ.get('API_URL', 'https://backend-server.7za6uc.easypanel.host/api')
EMAIL_API_URL = os.environ.get('EMAIL_API_URL', 'https://backend-server.7za6uc.easypanel.host/email-api')
WHATSAPP_API_URL = os.environ.get('WHATSAPP_API_URL', 'https://backend-whatsappapi.7za6uc.easypanel.host')

# ==================== WHATSAPP ====================

WHATSAPP_TIMEOUT = float(os.environ.get('WHATSAPP_TIMEOUT', '10'))
WHATSAPP_COUNTRY_CODE = os.environ.get('WHATSAPP_COUNTRY_CODE', '91')

# ==================== EMAIL ====================

EMAIL_PROVIDER = os.environ.get('EMAIL_PROVIDER', 'mailpit').lower()
EMAIL_FROM = os.environ.get('EMAIL_FROM', 'support@konipai.in')
SENDGRID_API_KEY = os.environ.get('SENDGRID_API_KEY', '')
EMAILJS_SERVICE_ID = os.environ.get('EMAILJS_SERVICE_ID', '')
EMAILJS_USER_ID = os.environ.get('EMAILJS_USER_ID', '')
EMAILJS_ACCESS_TOKEN = os.environ.get('EMAILJS_ACCESS_TOKEN', '')
MAILPIT_API_URL = os.environ.get('MAILPIT_API_URL', 'http://127.0.0.1:8025/api/v1')

NOTIFY_EMAIL_ENABLED = _env_bool('NOTIFY_EMAIL_ENABLED', False)
# Attente max des envois en cours à l'arrêt du process (secondes)
NOTIFY_SHUTDOWN_TIMEOUT = float(os.environ.get('NOTIFY_SHUTDOWN_TIMEOUT', '10'))

# ==================== HTTP ====================

# Origine publique des liens (feedback, tracking), prioritaire sur le header Origin
PUBLIC_ORIGIN = os.environ.get('PUBLIC_ORIGIN', '')
CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*')
DIST_DIR = Path(os.environ.get('DIST_DIR', str(ROOT_DIR.parent / 'dist')))


# ==================== HELPERS ====================

def now_iso() -> str:
    """Retourne la date/heure actuelle en ISO"""
    return datetime.now(timezone.utc).isoformat()