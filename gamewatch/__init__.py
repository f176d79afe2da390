# /gamewatch/gamewatch/__init__.py

import os
from datetime import timedelta
from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from apscheduler.schedulers.background import BackgroundScheduler
from .config import Config
from .worker import BackgroundWorker

import logging
from concurrent_log_handler import ConcurrentRotatingFileHandler

# Create extension instances without an app
db = SQLAlchemy()
scheduler = BackgroundScheduler(daemon=True)
worker = BackgroundWorker()


def _configure_logging(app):
    app.logger.setLevel(logging.INFO)

    if app.debug or app.testing:
        return

    log_dir = app.config.get('LOG_DIR') or os.path.join(app.instance_path, 'logs')
    os.makedirs(log_dir, exist_ok=True)

    # Scheduler jobs and worker threads log concurrently
    file_handler = ConcurrentRotatingFileHandler(
        os.path.join(log_dir, 'gamewatch.log'),
        maxBytes=10240,
        backupCount=10
    )
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'))
    app.logger.addHandler(file_handler)


def _start_scheduler(app):
    from . import jobs

    job_options = {'replace_existing': True, 'args': [app], 'max_instances': 1, 'coalesce': True}
    scheduler.add_job(func=jobs.refresh_rss_feeds, trigger="interval", minutes=app.config['RSS_REFRESH_INTERVAL_MINUTES'], id="rss_refresh_job", **job_options)
    scheduler.add_job(func=jobs.check_game_updates, trigger="interval", hours=app.config['GAME_UPDATE_INTERVAL_HOURS'], id="game_update_job", **job_options)
    scheduler.add_job(func=jobs.check_xrel_releases, trigger="interval", hours=app.config['XREL_CHECK_INTERVAL_HOURS'], id="xrel_check_job", **job_options)
    scheduler.add_job(func=jobs.check_steam_wishlists, trigger="interval", hours=app.config['STEAM_SYNC_INTERVAL_HOURS'], id="steam_wishlist_job", **job_options)
    scheduler.add_job(func=jobs.check_auto_search, trigger="interval", minutes=app.config['AUTO_SEARCH_INTERVAL_MINUTES'], id="auto_search_job", **job_options)
    scheduler.add_job(func=jobs.check_download_status, trigger="interval", minutes=app.config['DOWNLOAD_STATUS_INTERVAL_MINUTES'], id="download_status_job", **job_options)
    scheduler.start()


def create_app(config_class=Config):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_class)

    _configure_logging(app)
    app.logger.info('Gamewatch startup')

    try:
        os.makedirs(app.instance_path)
    except OSError:
        pass

    db.init_app(app)
    worker.init_app(app)

    from .igdb import igdb_client
    igdb_client.cache.ttl = timedelta(hours=app.config['CATALOG_CACHE_TTL_HOURS'])

    from . import routes
    app.register_blueprint(routes.main, url_prefix='/api')

    with app.app_context():
        from . import models
        db.create_all()

        from .rss import rss_service
        rss_service.initialize()

        from . import jobs
        jobs.register_cli_commands(app)
        if app.config.get('SCHEDULER_ENABLED') and (not app.debug or os.environ.get('WERKZEUG_RUN_MAIN') == 'true'):
            if not scheduler.running:
                app.logger.info("Starting scheduler...")
                _start_scheduler(app)

    return app
