# /gamewatch/gamewatch/storage.py

"""
Batched persistence helpers. Writes are split into chunks of BATCH_SIZE and
every chunk is its own transaction: a failing chunk is rolled back and logged,
and the remaining chunks are still written.
"""

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from . import db
from .models import Game, Notification, Setting, UserSettings, XrelNotifiedRelease
from .util import chunked

DEFAULT_BATCH_SIZE = 100


def _batch_size():
    return current_app.config.get('BATCH_SIZE', DEFAULT_BATCH_SIZE)


def get_settings_dict():
    """Helper function to get all settings as a dictionary."""
    try:
        settings = Setting.query.all()
        return {setting.key: setting.value for setting in settings}
    except SQLAlchemyError as e:
        current_app.logger.error(f"Error fetching settings: {e}")
        return {}


def get_setting(key, config_key=None, default=None):
    """Setting table value first, then app config, then the default."""
    value = get_settings_dict().get(key)
    if value:
        return value
    if config_key:
        return current_app.config.get(config_key) or default
    return default


def get_user_settings(user_id):
    settings = UserSettings.query.filter_by(user_id=user_id).first()
    if settings is None:
        settings = UserSettings(
            user_id=user_id, xrel_scene_releases=True, xrel_p2p_releases=False, steam_sync_failures=0,
            auto_search_enabled=False, auto_download_enabled=False, auto_search_unreleased=False,
            notify_multiple_downloads=False, search_interval_hours=6, min_seeders=0, sort_by='seeders',
        )
        db.session.add(settings)
        db.session.commit()
    return settings


def _apply_game_updates(chunk):
    """Writes one chunk of {'id': ..., <column>: ...} mappings in a single statement."""
    db.session.execute(update(Game), chunk)
    db.session.commit()


def update_games_batch(updates):
    """
    Applies a list of per-game update mappings. Each mapping must carry the
    game's 'id'. Returns the number of games written successfully.
    """
    written = 0
    for chunk in chunked(updates, _batch_size()):
        try:
            _apply_game_updates(chunk)
            written += len(chunk)
        except SQLAlchemyError as e:
            db.session.rollback()
            current_app.logger.error(f"Failed to write a batch of {len(chunk)} game updates: {e}")
    return written


def add_games_batch(games_data):
    """Inserts new games in chunks and returns the created Game rows."""
    created = []
    for chunk in chunked(games_data, _batch_size()):
        games = [Game(**data) for data in chunk]
        try:
            db.session.add_all(games)
            db.session.commit()
            created.extend(games)
        except SQLAlchemyError as e:
            db.session.rollback()
            current_app.logger.error(f"Failed to add a batch of {len(chunk)} games: {e}")
    return created


def add_notifications_batch(notifications_data):
    """Inserts notifications in chunks and returns the created rows."""
    created = []
    for chunk in chunked(notifications_data, _batch_size()):
        notifications = [Notification(**data) for data in chunk]
        try:
            db.session.add_all(notifications)
            db.session.commit()
            created.extend(notifications)
        except SQLAlchemyError as e:
            db.session.rollback()
            current_app.logger.error(f"Failed to add a batch of {len(chunk)} notifications: {e}")
    return created


def get_notified_release_pairs(game_ids):
    """Returns the (game_id, xrel_release_id) pairs already in the ledger."""
    pairs = set()
    for chunk in chunked(game_ids, _batch_size()):
        rows = XrelNotifiedRelease.query.filter(XrelNotifiedRelease.game_id.in_(chunk)).all()
        pairs.update((row.game_id, row.xrel_release_id) for row in rows)
    return pairs


def record_notified_releases(entries):
    """
    Appends ledger rows together with their notifications.

    `entries` is a list of (ledger_data, notification_data) tuples; both rows of
    a pair land in the same transaction. Returns the created notifications.
    """
    created = []
    for chunk in chunked(entries, _batch_size()):
        notifications = []
        try:
            for ledger_data, notification_data in chunk:
                db.session.add(XrelNotifiedRelease(**ledger_data))
                notification = Notification(**notification_data)
                db.session.add(notification)
                notifications.append(notification)
            db.session.commit()
            created.extend(notifications)
        except SQLAlchemyError as e:
            db.session.rollback()
            current_app.logger.error(f"Failed to record a batch of {len(chunk)} notified releases: {e}")
    return created
