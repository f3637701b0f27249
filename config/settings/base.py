"""
Django settings for Ledgerline Platform - Base Configuration
Usage billing and capacity allocation engine.
"""

import os
from pathlib import Path
from typing import Any

# ===============================================================================
# CORE DJANGO SETTINGS
# ===============================================================================

BASE_DIR = Path(__file__).resolve().parent.parent.parent

# Application definition
DJANGO_APPS: list[str] = [
    'django.contrib.auth',
    'django.contrib.contenttypes',
]

THIRD_PARTY_APPS: list[str] = [
    'django_q',
]

LOCAL_APPS: list[str] = [
    'apps.common',
    'apps.customers',
    'apps.audit',
    'apps.billing',        # 💰 Pricing rules, usage pools, buckets & alerts
]

INSTALLED_APPS: list[str] = DJANGO_APPS + THIRD_PARTY_APPS + LOCAL_APPS

MIDDLEWARE: list[str] = []

# ===============================================================================
# DATABASE CONFIGURATION
# ===============================================================================

DATABASES: dict[str, dict[str, Any]] = {
    'default': {
        'ENGINE': 'django.db.backends.postgresql',
        'NAME': os.environ.get('DB_NAME', 'ledgerline'),
        'USER': os.environ.get('DB_USER', 'ledgerline'),
        'PASSWORD': os.environ.get('DB_PASSWORD', 'development_password'),
        'HOST': os.environ.get('DB_HOST', 'localhost'),
        'PORT': os.environ.get('DB_PORT', '5432'),
        'CONN_MAX_AGE': 60,  # Database connection pooling
        'OPTIONS': {
            'application_name': 'ledgerline_billing',
        },
    }
}

# ===============================================================================
# INTERNATIONALIZATION & LOCALIZATION
# ===============================================================================

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

# ===============================================================================
# EMAIL (alert delivery)
# ===============================================================================

EMAIL_USE_TLS = True
EMAIL_USE_SSL = False  # Use TLS instead of SSL
DEFAULT_FROM_EMAIL = os.environ.get('DEFAULT_FROM_EMAIL', 'billing@ledgerline.local')

# ===============================================================================
# DJANGO-Q2 TASK QUEUE ⚙️
# ===============================================================================

# Base queue cluster configuration
Q_CLUSTER_BASE = {
    'name': 'ledgerline-cluster',
    'timeout': 300,  # 5 minutes
    'retry': 600,  # 10 minutes retry delay
    'save_limit': 1000,  # Keep last 1000 task results
    'catch_up': False,  # Don't run missed scheduled tasks
    'orm': 'default',  # Use the database broker
    'bulk': 10,
    'queue_limit': 100,
}

Q_CLUSTER = {
    **Q_CLUSTER_BASE,
    'workers': 2,
    'recycle': 500,  # Restart workers after 500 tasks
    'sync': False,
}

# ===============================================================================
# LOGGING CONFIGURATION
# ===============================================================================

LOGGING: dict[str, Any] = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname:<8} {name:<40} {message} [{correlation_id}]',
            'style': '{',
        },
    },
    'filters': {
        'add_correlation_id': {
            '()': 'apps.common.logging.CorrelationIDFilter',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
            'filters': ['add_correlation_id'],
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'INFO',
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': 'WARNING',
            'propagate': False,
        },
        'apps': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}

# ===============================================================================
# USAGE BILLING CONFIGURATION 💰
# ===============================================================================

# Peak window used by time-based rates that omit explicit hours
USAGE_PEAK_START_HOUR = int(os.environ.get('USAGE_PEAK_START_HOUR', '8'))
USAGE_PEAK_END_HOUR = int(os.environ.get('USAGE_PEAK_END_HOUR', '18'))

# Pricing layers, first wins
USAGE_PRICING_LAYER_ORDER = ('contract', 'promotional', 'standard')

# Allocation
USAGE_ALLOCATION_MAX_RETRIES = 3
USAGE_MAX_OVERFLOW_DEPTH = 16
USAGE_POOL_HISTORY_SIZE = 100

# Thresholds & alerts
USAGE_DEFAULT_WARNING_THRESHOLD = '80'
USAGE_DEFAULT_CRITICAL_THRESHOLD = '95'
USAGE_ALERT_HISTORY_SIZE = 50
USAGE_CONSECUTIVE_LOOKBACK_HOURS = 24
USAGE_SUPPRESSION_WINDOW_MINUTES = 60
USAGE_NOTIFICATION_TASK_TIMEOUT = 60
USAGE_DEFER_THRESHOLD_EVALUATION = os.environ.get('USAGE_DEFER_THRESHOLD_EVALUATION', 'false').lower() == 'true'

# ===============================================================================
# DEFAULT AUTO FIELD
# ===============================================================================

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# ===============================================================================
# SECURITY SETTINGS (Base - override in prod.py)
# ===============================================================================

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY')
if not SECRET_KEY:
    # Development fallback - never use this in production
    import warnings
    warnings.warn(
        "🚨 SECURITY WARNING: Using default SECRET_KEY. "
        "Set DJANGO_SECRET_KEY environment variable for production!",
        UserWarning,
        stacklevel=2
    )
    SECRET_KEY = 'django-insecure-dev-key-only-change-in-production-or-tests'  # noqa: S105


def validate_production_secret_key() -> None:
    """Validate SECRET_KEY meets production security requirements"""
    if SECRET_KEY and SECRET_KEY.startswith('django-insecure-'):
        raise ValueError(
            "🔥 CRITICAL SECURITY ERROR: Cannot use insecure SECRET_KEY in production! "
            "Generate a secure key: python -c 'from django.core.management.utils import get_random_secret_key; print(get_random_secret_key())'"
        )
