import os

from dotenv import load_dotenv

basedir = os.path.abspath(os.path.dirname(__file__))
load_dotenv(os.path.join(basedir, '.env'))


def _env_bool(name: str, default: str = '0') -> bool:
    return os.environ.get(name, default).lower() in ('1', 'true', 'yes', 'on')


class Config(object):
    SERVER_NAME = (os.environ.get('SERVER_NAME') or 'localhost').lower()
    HTTP_PROTOCOL = os.environ.get('HTTP_PROTOCOL') or 'https'  # useful during development
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'you-will-never-guesss'
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
                              'sqlite:///' + os.path.join(basedir, 'fedsync.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ECHO = False     # set to true to see SQL in console

    CACHE_TYPE = os.environ.get('CACHE_TYPE') or 'RedisCache'
    CACHE_REDIS_URL = os.environ.get('CACHE_REDIS_URL') or 'redis://localhost:6379/1'
    CACHE_DEFAULT_TIMEOUT = 300
    CACHE_KEY_PREFIX = 'fedsync'
    REDIS_URL = os.environ.get('REDIS_URL') or CACHE_REDIS_URL

    SENTRY_DSN = os.environ.get('SENTRY_DSN') or None
    LOG_DIR = os.environ.get('LOG_DIR') or 'logs'

    # Require HTTP signatures on GET requests too ("secure mode" in Mastodon terms)
    AUTHORIZED_FETCH = _env_bool('AUTHORIZED_FETCH')

    # Instance actor used to sign outbound GETs
    INSTANCE_KEY_ID = os.environ.get('INSTANCE_KEY_ID') or ''
    INSTANCE_PRIVATE_KEY = os.environ.get('INSTANCE_PRIVATE_KEY') or ''

    FETCH_TIMEOUT = int(os.environ.get('FETCH_TIMEOUT') or 10)

    # FEP-8fcf Collection-Synchronization
    COLLECTION_SYNC_FETCH_TTL = int(os.environ.get('COLLECTION_SYNC_FETCH_TTL') or 300)
    COLLECTION_SYNC_FREQUENCY = int(os.environ.get('COLLECTION_SYNC_FREQUENCY') or 7 * 24 * 60 * 60)
    RECONCILE_DELAY = max(60, int(os.environ.get('RECONCILE_DELAY') or 60))

    FOLLOW_LOCK_BACKEND = os.environ.get('FOLLOW_LOCK_BACKEND') or 'redis'
    FOLLOW_LOCK_TIMEOUT = int(os.environ.get('FOLLOW_LOCK_TIMEOUT') or 30)

    JOB_CHECK_INTERVAL = int(os.environ.get('JOB_CHECK_INTERVAL') or 5)

    MAX_JSON_SIZE = int(os.environ.get('MAX_JSON_SIZE') or 1_000_000)
    MAX_JSON_DEPTH = int(os.environ.get('MAX_JSON_DEPTH') or 50)
