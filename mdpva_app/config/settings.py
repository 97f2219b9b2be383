import os
from pathlib import Path

_KIBIBYTE: int = 1024
_MEBIBYTE: int = 1024 * _KIBIBYTE


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).strip().lower() in ("true", "1", "yes")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return int(raw)


BASE_DIR = Path(__file__).resolve().parent.parent

DEBUG: bool = _env_bool("DEBUG")

# Production deployments always provide SECRET_KEY; the fallback only serves local runs and tests.
SECRET_KEY: str = os.getenv("SECRET_KEY", "") or "mdpva-insecure-development-key"

ALLOWED_HOSTS: list[str] = [
    host.strip() for host in os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",") if host.strip()
]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "import_export",
    "members",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.auth.middleware.LoginRequiredMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "config.urls"
WSGI_APPLICATION = "config.wsgi.application"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

if os.getenv("DATABASE_HOST"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "HOST": os.environ["DATABASE_HOST"],
            "PORT": os.getenv("DATABASE_PORT", "5432"),
            "NAME": os.getenv("DATABASE_NAME", "mdpva"),
            "USER": os.getenv("DATABASE_USER", "mdpva"),
            "PASSWORD": os.getenv("DATABASE_PASSWORD", ""),
            "CONN_MAX_AGE": _env_int("DATABASE_CONN_MAX_AGE", 60),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.getenv("SQLITE_PATH", str(BASE_DIR / "db.sqlite3")),
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# Rate-limit counters must be shared between workers in production.
_REDIS_URL = os.getenv("REDIS_URL", "").strip()
if _REDIS_URL:
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.redis.RedisCache",
            "LOCATION": _REDIS_URL,
        }
    }
else:
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
            "LOCATION": "mdpva-default",
        }
    }

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"
MEDIA_URL = "media/"
MEDIA_ROOT = Path(os.getenv("MEDIA_ROOT", str(BASE_DIR / "media")))

LOGIN_URL = "/admin/login/"

AWS_STORAGE_BUCKET_NAME: str = os.getenv("AWS_STORAGE_BUCKET_NAME", "")
AWS_S3_DOMAIN: str = os.getenv("AWS_S3_DOMAIN", "")

if AWS_STORAGE_BUCKET_NAME:
    AWS_S3_ENDPOINT_URL = AWS_S3_DOMAIN or None
    AWS_S3_CUSTOM_DOMAIN = os.getenv("AWS_S3_CUSTOM_DOMAIN", "").strip() or None
    AWS_ACCESS_KEY_ID = os.getenv("AWS_ACCESS_KEY_ID", "")
    AWS_SECRET_ACCESS_KEY = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    AWS_QUERYSTRING_AUTH = False
    AWS_DEFAULT_ACL = "public-read"
    STORAGES = {
        "default": {"BACKEND": "storages.backends.s3.S3Storage"},
        "staticfiles": {"BACKEND": "django.contrib.staticfiles.storage.StaticFilesStorage"},
    }
else:
    STORAGES = {
        "default": {"BACKEND": "django.core.files.storage.FileSystemStorage"},
        "staticfiles": {"BACKEND": "django.contrib.staticfiles.storage.StaticFilesStorage"},
    }

# Import/export pipeline.
MEMBER_IMPORT_MAX_UPLOAD_BYTES: int = _env_int("MEMBER_IMPORT_MAX_UPLOAD_BYTES", 10 * _MEBIBYTE)
MEMBER_IMPORT_CHUNK_SIZE: int = _env_int("MEMBER_IMPORT_CHUNK_SIZE", 100)
MEMBER_DUPLICATE_LOOKUP_BATCH_SIZE: int = _env_int("MEMBER_DUPLICATE_LOOKUP_BATCH_SIZE", 500)
MEMBER_EXPORT_PAGE_SIZE: int = _env_int("MEMBER_EXPORT_PAGE_SIZE", 1000)
MEMBER_EXPORT_RATE_LIMIT_LIMIT: int = _env_int("MEMBER_EXPORT_RATE_LIMIT_LIMIT", 3)
MEMBER_EXPORT_RATE_LIMIT_WINDOW_SECONDS: int = _env_int("MEMBER_EXPORT_RATE_LIMIT_WINDOW_SECONDS", 60)
MEMBER_EXPORT_TIMEZONE: str = os.getenv("MEMBER_EXPORT_TIMEZONE", "Asia/Kolkata")
MEMBER_EXPORT_TITLE: str = os.getenv(
    "MEMBER_EXPORT_TITLE",
    "Mysore District Photographers and Videographers Association",
)
MEMBER_EXPORT_SITE: str = os.getenv("MEMBER_EXPORT_SITE", "mdpva.com")
MEMBER_ID_PREFIX: str = os.getenv("MEMBER_ID_PREFIX", "MDPVA")

# Collaborators.
PINCODE_LOOKUP_ENDPOINT: str = os.getenv("PINCODE_LOOKUP_ENDPOINT", "https://api.postalpincode.in/pincode")
PINCODE_LOOKUP_TIMEOUT: int = _env_int("PINCODE_LOOKUP_TIMEOUT", 5)
MEMBER_PHOTO_MAX_BYTES: int = _env_int("MEMBER_PHOTO_MAX_BYTES", 2 * _MEBIBYTE)
MEMBER_PHOTO_STORAGE_DIR: str = os.getenv("MEMBER_PHOTO_STORAGE_DIR", "profiles")
MEMBER_PHOTO_FETCH_TIMEOUT: int = _env_int("MEMBER_PHOTO_FETCH_TIMEOUT", 5)

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "[{asctime}] {levelname} {name}: {message}",
            "style": "{",
        },
    },
    "handlers": {
        "stderr": {
            "class": "logging.StreamHandler",
            "formatter": "default",
        },
    },
    "loggers": {
        "django": {
            "handlers": ["stderr"],
            "level": "INFO",
            "propagate": False,
        },
        "members": {
            "handlers": ["stderr"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
    },
    "root": {
        "handlers": ["stderr"],
        "level": "WARNING",
    },
}

SENTRY_DSN: str = os.getenv("SENTRY_DSN", "").strip()
if SENTRY_DSN:
    import logging

    import sentry_sdk
    from sentry_sdk.integrations.django import DjangoIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=SENTRY_DSN,
        integrations=[
            DjangoIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        environment=os.getenv("SENTRY_ENVIRONMENT", "production"),
        traces_sample_rate=0.0,
        send_default_pii=False,
        send_client_reports=False,
        auto_session_tracking=False,
    )
