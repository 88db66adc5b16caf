import logging
from logging.handlers import RotatingFileHandler
import os

from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_caching import Cache
import httpx

from config import Config


db = SQLAlchemy(session_options={"autoflush": False})
cache = Cache()
httpx_client = httpx.Client(http2=True)
redis_client = None  # Will be initialized in create_app()

from fedsync.federation.scheduler import JobQueue  # noqa: E402
from fedsync.federation.dispatcher import InboxDispatcher  # noqa: E402

job_queue = JobQueue()
inbox_dispatcher = InboxDispatcher()


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    if app.config.get('SENTRY_DSN'):
        import sentry_sdk
        sentry_sdk.init(
            dsn=app.config["SENTRY_DSN"],
            enable_tracing=False,
        )

    db.init_app(app)
    cache.init_app(app)

    # Initialize redis_client
    global redis_client
    from fedsync.utils import get_redis_connection
    redis_client = get_redis_connection(app.config['REDIS_URL'])
    job_queue.init_app(app, redis_client)

    from fedsync.federation.locks import create_locks
    app.extensions['fedsync.locks'] = create_locks(app, redis_client)

    from fedsync.federation.handlers import register_handlers
    register_handlers(inbox_dispatcher)

    from fedsync.errors import register_error_handlers
    register_error_handlers(app)

    from fedsync.activitypub.routes import bp as activitypub_bp
    app.register_blueprint(activitypub_bp)

    from fedsync import cli
    cli.register(app)

    # log rotation
    if not app.testing:
        log_dir = app.config.get('LOG_DIR', 'logs')
        if not os.path.exists(log_dir):
            os.mkdir(log_dir)
        file_handler = RotatingFileHandler(os.path.join(log_dir, 'fedsync.log'),
                                           maxBytes=1002400, backupCount=15)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s: %(message)s '
            '[in %(pathname)s:%(lineno)d]'))
        file_handler.setLevel(logging.INFO)
        app.logger.addHandler(file_handler)

    app.logger.setLevel(logging.INFO)
    app.logger.info('Started!')

    return app


from fedsync import models  # noqa: E402,F401
