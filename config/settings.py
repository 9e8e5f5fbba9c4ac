import os
from pathlib import Path

from celery.schedules import crontab
from dotenv import load_dotenv


BASE_DIR = Path(__file__).resolve().parent.parent

# Load environment variables from .env file if present
load_dotenv(BASE_DIR / ".env")

SECRET_KEY = os.getenv("SECRET_KEY", "django-insecure-change-me")
DEBUG = os.getenv("DEBUG", "False").lower() in {"1", "true", "yes"}
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

PARTS_CHUNK_SIZE = int(os.getenv("PARTS_CHUNK_SIZE", "250"))
PARTS_CHUNK_ROW_THRESHOLD = int(os.getenv("PARTS_CHUNK_ROW_THRESHOLD", "100"))
PARTS_CHUNK_FILE_SIZE_THRESHOLD = int(os.getenv("PARTS_CHUNK_FILE_SIZE_THRESHOLD", str(10 * 1024 * 1024)))
PARTS_MAX_UPLOAD_SIZE = int(os.getenv("PARTS_MAX_UPLOAD_SIZE", str(50 * 1024 * 1024)))
PARTS_PROGRESS_CACHE_SECONDS = int(os.getenv("PARTS_PROGRESS_CACHE_SECONDS", "300"))
PARTS_PROGRESS_POLL_CACHE_SECONDS = int(os.getenv("PARTS_PROGRESS_POLL_CACHE_SECONDS", "30"))
PARTS_STUCK_UPLOAD_HOURS = int(os.getenv("PARTS_STUCK_UPLOAD_HOURS", "2"))
PARTS_STUCK_ACTIVITY_MINUTES = int(os.getenv("PARTS_STUCK_ACTIVITY_MINUTES", "30"))
# "report" leaves stuck uploads untouched, "fail" marks them failed.
PARTS_STUCK_UPLOAD_POLICY = os.getenv("PARTS_STUCK_UPLOAD_POLICY", "report").lower()
PARTS_AUTO_CATALOG_SYNC = os.getenv("PARTS_AUTO_CATALOG_SYNC", "True").lower() in {"1", "true", "yes"}
PARTS_SYNC_BATCH_SIZE = int(os.getenv("PARTS_SYNC_BATCH_SIZE", "20"))
PARTS_SYNC_BATCH_DELAY_SECONDS = float(os.getenv("PARTS_SYNC_BATCH_DELAY_SECONDS", "0.25"))
PARTS_AGGREGATION_MAX_RETRIES = int(os.getenv("PARTS_AGGREGATION_MAX_RETRIES", "20"))
PARTS_LOG_LEVEL = os.getenv("PARTS_LOG_LEVEL", "INFO")

AWS_ACCESS_KEY_ID = os.getenv("AWS_ACCESS_KEY_ID")
AWS_SECRET_ACCESS_KEY = os.getenv("AWS_SECRET_ACCESS_KEY")
AWS_STORAGE_BUCKET_NAME = os.getenv("AWS_STORAGE_BUCKET_NAME", "")
AWS_S3_REGION_NAME = os.getenv("AWS_S3_REGION_NAME", "us-east-1")
AWS_S3_PUBLIC_BASE_URL = os.getenv("AWS_S3_PUBLIC_BASE_URL", "")
AWS_S3_TIMEOUT_SECONDS = int(os.getenv("AWS_S3_TIMEOUT_SECONDS", "10"))

SHOPIFY_SHOP_DOMAIN = os.getenv("SHOPIFY_SHOP_DOMAIN", "")
SHOPIFY_ACCESS_TOKEN = os.getenv("SHOPIFY_ACCESS_TOKEN", "")
SHOPIFY_STOREFRONT_DOMAIN = os.getenv("SHOPIFY_STOREFRONT_DOMAIN", "aircompressorservices.com")
SHOPIFY_API_VERSION = os.getenv("SHOPIFY_API_VERSION", "2025-04")
SHOPIFY_BATCH_SIZE = int(os.getenv("SHOPIFY_BATCH_SIZE", "10"))
SHOPIFY_TIMEOUT_SECONDS = int(os.getenv("SHOPIFY_TIMEOUT_SECONDS", "10"))

allowed_hosts_env = os.getenv("ALLOWED_HOSTS", "")
ALLOWED_HOSTS = (
    [host.strip() for host in allowed_hosts_env.split(",") if host.strip()]
    if allowed_hosts_env
    else []
)

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "parts.apps.PartsConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "config.urls"

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

WSGI_APPLICATION = "config.wsgi.application"


def _database(prefix: str, default_name: str) -> dict:
    engine = os.getenv(f"{prefix}_ENGINE", "django.db.backends.sqlite3")
    config = {
        "ENGINE": engine,
        "NAME": os.getenv(f"{prefix}_NAME", str(BASE_DIR / default_name)),
        "CONN_MAX_AGE": int(os.getenv(f"{prefix}_CONN_MAX_AGE", "600")),
    }
    if engine != "django.db.backends.sqlite3":
        config.update(
            {
                "USER": os.getenv(f"{prefix}_USER", ""),
                "PASSWORD": os.getenv(f"{prefix}_PASSWORD", ""),
                "HOST": os.getenv(f"{prefix}_HOST", "localhost"),
                "PORT": os.getenv(f"{prefix}_PORT", "5432"),
            }
        )
    return config


DATABASES = {
    "default": _database("DB", "db.sqlite3"),
    # Read-only reference catalog (nsproduct table), never migrated from here.
    "warehouse": _database("WAREHOUSE_DB", "warehouse.sqlite3"),
}
DATABASE_ROUTERS = ["parts.routers.WarehouseRouter"]

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.redis.RedisCache",
        "LOCATION": REDIS_URL,
    }
}

AUTH_PASSWORD_VALIDATORS = [
    {
        "NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.MinimumLengthValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.CommonPasswordValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.NumericPasswordValidator",
    },
]

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

MEDIA_URL = "/media/"
MEDIA_ROOT = BASE_DIR / "media"

DATA_UPLOAD_MAX_MEMORY_SIZE = PARTS_MAX_UPLOAD_SIZE
FILE_UPLOAD_MAX_MEMORY_SIZE = 10 * 1024 * 1024

# Empty values fall back to MEDIA_ROOT/uploads and the system temp dir.
PARTS_UPLOAD_DIR = os.getenv("PARTS_UPLOAD_DIR", "")
PARTS_TEMP_DIR = os.getenv("PARTS_TEMP_DIR", "")

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

REST_FRAMEWORK = {
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.AllowAny",
    ],
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "WARNING",
    },
    "loggers": {
        "parts": {
            "handlers": ["console"],
            "level": PARTS_LOG_LEVEL,
            "propagate": False,
        },
    },
}

CELERY_BROKER_URL = REDIS_URL
CELERY_RESULT_BACKEND = REDIS_URL
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_RESULT_EXTENDED = True
CELERY_TASK_TRACK_STARTED = True
CELERY_BEAT_SCHEDULE = {
    "parts-check-stuck-uploads": {
        "task": "parts.check_stuck_uploads_task",
        "schedule": crontab(minute="*/15"),
    },
}
