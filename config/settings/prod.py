"""
Production settings for Ledgerline Platform
Hardened database and queue configuration for the billing workers.
"""

import os

from .base import *  # noqa: F403

# ===============================================================================
# PRODUCTION SECURITY VALIDATION
# ===============================================================================

validate_production_secret_key()  # noqa: F405

# ===============================================================================
# PRODUCTION FLAGS
# ===============================================================================

DEBUG = False
ALLOWED_HOSTS = os.environ.get('ALLOWED_HOSTS', '').split(',')

# ===============================================================================
# DATABASE PRODUCTION SETTINGS
# ===============================================================================

DATABASES['default'].update({  # noqa: F405
    'CONN_MAX_AGE': 600,
    'OPTIONS': {
        'application_name': 'ledgerline_billing_prod',
        'sslmode': os.environ.get('DB_SSLMODE', 'require'),
    },
})

# ===============================================================================
# TASK QUEUE (Production workers)
# ===============================================================================

Q_CLUSTER = {
    **Q_CLUSTER_BASE,  # noqa: F405
    'workers': int(os.environ.get('Q_WORKERS', '4')),
    'recycle': 500,
    'sync': False,
}

# ===============================================================================
# EMAIL (SMTP for alert delivery)
# ===============================================================================

EMAIL_BACKEND = 'django.core.mail.backends.smtp.EmailBackend'
EMAIL_HOST = os.environ.get('EMAIL_HOST', 'localhost')
EMAIL_PORT = int(os.environ.get('EMAIL_PORT', '587'))
EMAIL_HOST_USER = os.environ.get('EMAIL_HOST_USER', '')
EMAIL_HOST_PASSWORD = os.environ.get('EMAIL_HOST_PASSWORD', '')

# ===============================================================================
# LOGGING (JSON-friendly plain records for log shipping)
# ===============================================================================

LOGGING['loggers']['apps']['level'] = os.environ.get('APPS_LOG_LEVEL', 'INFO')  # noqa: F405
