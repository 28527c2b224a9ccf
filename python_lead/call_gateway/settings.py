"""
Django settings for call_gateway project.
"""
import os
import sys
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.getenv('DJANGO_SECRET_KEY', 'dev-secret-key-change-in-production')
DEBUG = os.getenv('DEBUG', 'True').lower() == 'true'
ALLOWED_HOSTS = os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',')

RUNNING_TESTS = (
    os.getenv('USE_SQLITE_FOR_TESTS', '').lower() == 'true'
    or any('pytest' in arg for arg in sys.argv)
    or bool(os.getenv('PYTEST_CURRENT_TEST'))
)

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'calls',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'call_gateway.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'call_gateway.wsgi.application'

# Database configuration
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.postgresql',
        'NAME': os.getenv('DB_NAME', 'call_gateway'),
        'USER': os.getenv('DB_USER', 'postgres'),
        'PASSWORD': os.getenv('DB_PASSWORD', 'postgres'),
        'HOST': os.getenv('DB_HOST', 'localhost'),
        'PORT': os.getenv('DB_PORT', '5432'),
        'CONN_MAX_AGE': int(os.getenv('DB_CONN_MAX_AGE', '60')),
    }
}

# Use SQLite for tests to avoid requiring a running PostgreSQL server
if RUNNING_TESTS:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': os.getenv('SQLITE_NAME', ':memory:'),
        }
    }

AUTH_PASSWORD_VALIDATORS = [
    {'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator'},
    {'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator'},
    {'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator'},
    {'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator'},
]

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# Audio storage: local filesystem unless a bucket is configured
AUDIO_STORAGE_ROOT = os.getenv('AUDIO_STORAGE_ROOT', str(BASE_DIR / 'var' / 'audio'))
AUDIO_STORAGE_BUCKET = os.getenv('AUDIO_STORAGE_BUCKET', '')
AUDIO_STORAGE_URI_PREFIX = os.getenv(
    'AUDIO_STORAGE_URI_PREFIX',
    f'gs://{AUDIO_STORAGE_BUCKET}/' if AUDIO_STORAGE_BUCKET else ''
)

if AUDIO_STORAGE_BUCKET:
    _audio_storage = {
        'BACKEND': 'storages.backends.gcloud.GoogleCloudStorage',
        'OPTIONS': {
            'bucket_name': AUDIO_STORAGE_BUCKET,
            'file_overwrite': True,
        },
    }
else:
    _audio_storage = {
        'BACKEND': 'django.core.files.storage.FileSystemStorage',
        'OPTIONS': {'location': AUDIO_STORAGE_ROOT},
    }

STORAGES = {
    'default': {'BACKEND': 'django.core.files.storage.FileSystemStorage'},
    'staticfiles': {'BACKEND': 'django.contrib.staticfiles.storage.StaticFilesStorage'},
    'audio': _audio_storage,
}

# Celery configuration
CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', 'redis://localhost:6379/0')
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TASK_ACKS_LATE = True
CELERY_TASK_SOFT_TIME_LIMIT = int(os.getenv('CELERY_TASK_SOFT_TIME_LIMIT', '1200'))
CELERY_BEAT_SCHEDULE = {
    'expire-stale-requests': {
        'task': 'calls.tasks.expire_stale_requests',
        'schedule': float(os.getenv('STALE_REQUEST_SWEEP_SECONDS', '600')),
    },
}

if RUNNING_TESTS:
    CELERY_BROKER_URL = 'memory://'
    CELERY_RESULT_BACKEND = 'cache+memory://'
    CELERY_TASK_ALWAYS_EAGER = True
    CELERY_TASK_EAGER_PROPAGATES = True

# Webhook authentication
WEBHOOK_SOURCE = os.getenv('WEBHOOK_SOURCE', 'callrail')
WEBHOOK_SIGNATURE_HEADER = os.getenv('WEBHOOK_SIGNATURE_HEADER', 'X-Webhook-Signature')
WEBHOOK_TIMESTAMP_HEADER = os.getenv('WEBHOOK_TIMESTAMP_HEADER', 'X-Webhook-Timestamp')
WEBHOOK_REPLAY_WINDOW_SECONDS = int(os.getenv('WEBHOOK_REPLAY_WINDOW_SECONDS', '300'))

# Call provider API configuration
CALL_PROVIDER_API_BASE_URL = os.getenv('CALL_PROVIDER_API_BASE_URL', 'https://api.callrail.com/v3')
CALL_PROVIDER_REQUESTS_PER_MINUTE = int(os.getenv('CALL_PROVIDER_REQUESTS_PER_MINUTE', '120'))
CALL_PROVIDER_TIMEOUT_SECONDS = float(os.getenv('CALL_PROVIDER_TIMEOUT_SECONDS', '30'))

# Outbound retry policy shared by every external dependency
OUTBOUND_MAX_ATTEMPTS = int(os.getenv('OUTBOUND_MAX_ATTEMPTS', '4'))
OUTBOUND_BACKOFF_SECONDS = float(os.getenv('OUTBOUND_BACKOFF_SECONDS', '1.0'))
OUTBOUND_BACKOFF_MAX_SECONDS = float(os.getenv('OUTBOUND_BACKOFF_MAX_SECONDS', '30'))
OUTBOUND_MAX_CONCURRENCY = int(os.getenv('OUTBOUND_MAX_CONCURRENCY', '10'))
OUTBOUND_TOKEN_WAIT_SECONDS = float(os.getenv('OUTBOUND_TOKEN_WAIT_SECONDS', '120'))
# Stage tasks that time out waiting for a token are re-queued after this delay
RATE_LIMIT_RETRY_COUNTDOWN_SECONDS = int(os.getenv('RATE_LIMIT_RETRY_COUNTDOWN_SECONDS', '60'))

# Transcription capability
TRANSCRIPTION_API_URL = os.getenv('TRANSCRIPTION_API_URL', 'http://localhost:8081/v1/speech:recognize')
TRANSCRIPTION_API_KEY = os.getenv('TRANSCRIPTION_API_KEY', '')
TRANSCRIPTION_MODEL = os.getenv('TRANSCRIPTION_MODEL', 'chirp-3')
TRANSCRIPTION_SAMPLE_RATE_HERTZ = int(os.getenv('TRANSCRIPTION_SAMPLE_RATE_HERTZ', '8000'))
TRANSCRIPTION_ENCODING = os.getenv('TRANSCRIPTION_ENCODING', 'MP3')
TRANSCRIPTION_TIMEOUT_SECONDS = float(os.getenv('TRANSCRIPTION_TIMEOUT_SECONDS', '600'))
TRANSCRIPTION_REQUESTS_PER_MINUTE = int(os.getenv('TRANSCRIPTION_REQUESTS_PER_MINUTE', '60'))
SPEECH_LANGUAGE = os.getenv('SPEECH_LANGUAGE', 'en-US')

# Content analysis capability
ANALYSIS_API_URL = os.getenv('ANALYSIS_API_URL', 'http://localhost:8082/v1/models/gemini:predict')
ANALYSIS_API_KEY = os.getenv('ANALYSIS_API_KEY', '')
ANALYSIS_MODEL = os.getenv('ANALYSIS_MODEL', 'gemini-2.5-flash')
ANALYSIS_TEMPERATURE = float(os.getenv('ANALYSIS_TEMPERATURE', '0.2'))
ANALYSIS_MAX_TOKENS = int(os.getenv('ANALYSIS_MAX_TOKENS', '1024'))
ANALYSIS_TOP_P = float(os.getenv('ANALYSIS_TOP_P', '0.8'))
ANALYSIS_TOP_K = int(os.getenv('ANALYSIS_TOP_K', '40'))
ANALYSIS_PARSE_MAX_ATTEMPTS = int(os.getenv('ANALYSIS_PARSE_MAX_ATTEMPTS', '3'))
ANALYSIS_REQUESTS_PER_MINUTE = int(os.getenv('ANALYSIS_REQUESTS_PER_MINUTE', '60'))
ANALYSIS_TIMEOUT_SECONDS = float(os.getenv('ANALYSIS_TIMEOUT_SECONDS', '120'))

# CRM integrations
CRM_REQUESTS_PER_MINUTE = int(os.getenv('CRM_REQUESTS_PER_MINUTE', '100'))
CRM_DEGRADED_THRESHOLD = int(os.getenv('CRM_DEGRADED_THRESHOLD', '5'))
CRM_TIMEOUT_SECONDS = float(os.getenv('CRM_TIMEOUT_SECONDS', '30'))

# Not-yet-available recordings are retried on a coarse schedule
RECORDING_NOT_READY_COUNTDOWN_SECONDS = int(os.getenv('RECORDING_NOT_READY_COUNTDOWN_SECONDS', '300'))
RECORDING_NOT_READY_MAX_RETRIES = int(os.getenv('RECORDING_NOT_READY_MAX_RETRIES', '6'))

# Wall-clock ceilings before a request is routed to manual review
REQUEST_MAX_PROCESSING_SECONDS = int(os.getenv('REQUEST_MAX_PROCESSING_SECONDS', str(6 * 60 * 60)))
STAGE_DEADLINE_SECONDS = int(os.getenv('STAGE_DEADLINE_SECONDS', '900'))

# Webhook validation configuration
MISSING_REQUIRED_FIELD = os.getenv('MISSING_REQUIRED_FIELD', 'MISSING_REQUIRED_FIELD')
INVALID_FIELD_VALUE = os.getenv('INVALID_FIELD_VALUE', 'INVALID_FIELD_VALUE')

# Logging configuration
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {message}',
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
        'level': 'INFO',
    },
    'loggers': {
        'calls': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
        'calls.audit': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}

# REST Framework configuration
REST_FRAMEWORK = {
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
    'DEFAULT_PARSER_CLASSES': [
        'rest_framework.parsers.JSONParser',
    ],
    'UNAUTHENTICATED_USER': None,
}
