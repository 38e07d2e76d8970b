import os
from pathlib import Path

import dj_database_url
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(BASE_DIR / ".env")

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-key-change-me")
DEBUG = os.getenv("DJANGO_DEBUG", "True").lower() == "true"

ALLOWED_HOSTS = ["*"] if DEBUG else [h.strip() for h in os.getenv("ALLOWED_HOSTS", "").split(",") if h.strip()]
CSRF_TRUSTED_ORIGINS = [o.strip() for o in os.getenv("CSRF_TRUSTED_ORIGINS", "").split(",") if o.strip()]
SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")

# Upper bound for every call against the store; slow calls surface as StoreUnavailable.
STORE_TIMEOUT_SECONDS = int(os.getenv("STORE_TIMEOUT_SECONDS", "20"))


def _is_postgres(url: str | None) -> bool:
    return bool(url) and url.startswith(("postgres://", "postgresql://"))


DB_URL = os.getenv("DATABASE_URL", "").strip()
if _is_postgres(DB_URL):
    DATABASES = {"default": dj_database_url.config(default=DB_URL, conn_max_age=600, ssl_require=not DEBUG)}
    DATABASES["default"].setdefault("OPTIONS", {}).update({
        "connect_timeout": STORE_TIMEOUT_SECONDS,
        "options": f"-c statement_timeout={STORE_TIMEOUT_SECONDS * 1000}",
    })
else:
    sqlite_url = DB_URL or f"sqlite:///{BASE_DIR / 'db.sqlite3'}"
    DATABASES = {"default": dj_database_url.parse(sqlite_url, conn_max_age=0)}
    DATABASES["default"].setdefault("OPTIONS", {})["timeout"] = STORE_TIMEOUT_SECONDS

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "drf_yasg",
    "exams.apps.ExamsConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
    "exams.middleware.StaffGateMiddleware",
    "exams.middleware.ExamAccessGateMiddleware",
]

ROOT_URLCONF = "exam_portal.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "exam_portal.wsgi.application"

LANGUAGE_CODE = "tr"
TIME_ZONE = "Europe/Istanbul"
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# Staff session provider
LOGIN_URL = "/login/"
SESSION_COOKIE_SECURE = not DEBUG
CSRF_COOKIE_SECURE = not DEBUG

# Student exam sessions
EXAM_TOKEN_COOKIE_NAME = os.getenv("EXAM_TOKEN_COOKIE_NAME", "exam_token")
EXAM_TOKEN_MAX_AGE = int(os.getenv("EXAM_TOKEN_MAX_AGE", str(60 * 60 * 3)))
EXAM_TOKEN_SIGNED = os.getenv("EXAM_TOKEN_SIGNED", "False").lower() == "true"
EXAM_PATH_PREFIX = "/sinav/"
EXAM_LOGIN_URL = "/sinav-giris/"
STAFF_PATH_PREFIX = "/panel/"

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.AllowAny",
    ],
    "DEFAULT_THROTTLE_RATES": {
        "exam_login": os.getenv("EXAM_LOGIN_RATE", "1000/hour"),
    },
    "EXCEPTION_HANDLER": "exams.exceptions.exam_exception_handler",
}

SWAGGER_SETTINGS = {
    "USE_SESSION_AUTH": True,
    "LOGIN_URL": LOGIN_URL,
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{asctime} {levelname} {name} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "loggers": {
        "exams": {
            "handlers": ["console"],
            "level": os.getenv("EXAMS_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
        "django.request": {
            "handlers": ["console"],
            "level": "WARNING",
        },
    },
}
