import os

from dotenv import load_dotenv

load_dotenv()


def _bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# ----------------------- Database -----------------------
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# ----------------------- Sessions -----------------------
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
JWT_ALGO = "HS256"
JWT_EXPIRE_DAYS = int(os.getenv("JWT_EXPIRE_DAYS", "30"))
COOKIE_NAME = "token"
COOKIE_SECURE = _bool("COOKIE_SECURE")
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

# ----------------------- OTP -----------------------
OTP_LENGTH = int(os.getenv("OTP_LENGTH", "6"))
OTP_EXPIRE_MINUTES = int(os.getenv("OTP_EXPIRE_MINUTES", "5"))
OTP_MAX_ATTEMPTS = int(os.getenv("OTP_MAX_ATTEMPTS", "5"))

# ----------------------- Email -----------------------
SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASS = os.getenv("SMTP_PASS")
SMTP_SECURE = _bool("SMTP_SECURE")
EMAIL_FROM = os.getenv("EMAIL_FROM") or SMTP_USER or "no-reply@localhost"
STORE_NAME = os.getenv("STORE_NAME", "DigitalHat")

# ----------------------- Images -----------------------
IMAGEKIT_PRIVATE_KEY = os.getenv("IMAGEKIT_PRIVATE_KEY")
IMAGEKIT_UPLOAD_URL = os.getenv("IMAGEKIT_UPLOAD_URL", "https://upload.imagekit.io/api/v1/files/upload")
IMAGEKIT_API_URL = os.getenv("IMAGEKIT_API_URL", "https://api.imagekit.io/v1/files")
IMAGEKIT_FOLDER = os.getenv("IMAGEKIT_FOLDER", "/DigitalHat_Images")
MAX_PRODUCT_IMAGES = 5

# ----------------------- Addresses -----------------------
# "bd" enforces Bangladesh phone/division/postal code rules, "none" accepts anything
ADDRESS_POLICY = os.getenv("ADDRESS_POLICY", "bd").strip().lower()

# ----------------------- App -----------------------
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",") if o.strip()]
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", "8000"))
