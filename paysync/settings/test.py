from .base import *

DEBUG = False

SECRET_KEY = 'test-secret-key'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'paysync-tests',
    }
}

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'
PAYMENTS_ADMIN_EMAILS = 'ops@example.com'

SSLCOMMERZ = {
    **SSLCOMMERZ,
    'BASE_URL': 'https://gateway.test',
    'STORE_ID': 'teststore',
    'STORE_PASSWORD': 'testpass',
    'REQUIRE_SIGNATURE': False,
}

PAYMENTS = {
    **PAYMENTS,
    'LOCK_BACKEND': 'cache',
    'PROVISIONING_URL': 'https://provisioning.test/licenses',
    'PROVISIONING_SECRET': 'provisioning-secret-for-tests-only-0123456789',
}

ALLOWED_HOSTS = ['testserver']
