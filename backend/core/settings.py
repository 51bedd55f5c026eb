"""
Django settings for the audio delivery service.

Values that differ between deployments are read from the environment.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'django-insecure-change-me')

DEBUG = env_bool('DJANGO_DEBUG', True)

ALLOWED_HOSTS = [host for host in os.environ.get('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1,testserver').split(',') if host]


INSTALLED_APPS = [
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'contracts',
    'audio.apps.AudioConfig',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'audio.middleware.StreamAccessLogMiddleware',
]

ROOT_URLCONF = 'core.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'core.wsgi.application'


DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.environ.get('DJANGO_DB_PATH', str(BASE_DIR / 'db.sqlite3')),
    }
}

# Demo generation locks need a cache shared by every web process in production
CACHES = {
    'default': {
        'BACKEND': os.environ.get('DJANGO_CACHE_BACKEND', 'django.core.cache.backends.locmem.LocMemCache'),
        'LOCATION': os.environ.get('DJANGO_CACHE_LOCATION', 'audio-delivery'),
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'
MEDIA_URL = '/media/'
MEDIA_ROOT = Path(os.environ.get('DJANGO_MEDIA_ROOT', BASE_DIR / 'media'))


REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework.authentication.SessionAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.AllowAny',
    ],
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
}


# Celery
CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', 'redis://localhost:6379/0')
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_ALWAYS_EAGER = env_bool('CELERY_TASK_ALWAYS_EAGER', False)


# Audio delivery
AUDIO_TRANSCODER_PATH = os.environ.get('AUDIO_TRANSCODER_PATH', '')
AUDIO_TRANSCODER_TIMEOUT = int(os.environ.get('AUDIO_TRANSCODER_TIMEOUT', 300))
AUDIO_WATERMARK_PATH = os.environ.get('AUDIO_WATERMARK_PATH', '')
AUDIO_DEMO_PERCENT = int(os.environ.get('AUDIO_DEMO_PERCENT', 30))
AUDIO_SECURE_DEMO = env_bool('AUDIO_SECURE_DEMO', True)
AUDIO_REGISTERED_ONLY = env_bool('AUDIO_REGISTERED_ONLY', False)
AUDIO_PERSIST_DEMOS = env_bool('AUDIO_PERSIST_DEMOS', True)
AUDIO_PROXY_PURCHASED_REMOTE = env_bool('AUDIO_PROXY_PURCHASED_REMOTE', False)
AUDIO_DEMO_ROOT = MEDIA_ROOT / 'demos'
AUDIO_FORMATS_ROOT = MEDIA_ROOT / 'formats'
AUDIO_LOCAL_URL_ROOTS = {MEDIA_URL: str(MEDIA_ROOT)}
AUDIO_REMOTE_TIMEOUT = int(os.environ.get('AUDIO_REMOTE_TIMEOUT', 300))
AUDIO_STREAM_CHUNK_SIZE = 8192
AUDIO_DEMO_LOCK_WAIT = 30
AUDIO_PROCESS_ON_SAVE = env_bool('AUDIO_PROCESS_ON_SAVE', True)
AUDIO_RESET_PURCHASED_INTERVAL = os.environ.get('AUDIO_RESET_PURCHASED_INTERVAL', 'daily')
AUDIO_ANALYTICS_PROPERTY = os.environ.get('AUDIO_ANALYTICS_PROPERTY', '')
AUDIO_ANALYTICS_API_SECRET = os.environ.get('AUDIO_ANALYTICS_API_SECRET', '')
AUDIO_LOG_LEVEL = os.environ.get('AUDIO_LOG_LEVEL', 'INFO')


LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'WARNING',
    },
    'loggers': {
        'audio': {
            'handlers': ['console'],
            'level': AUDIO_LOG_LEVEL,
            'propagate': False,
        },
        'contracts': {
            'handlers': ['console'],
            'level': AUDIO_LOG_LEVEL,
            'propagate': False,
        },
        'celery': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}
