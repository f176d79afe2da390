# /gamewatch/gamewatch/models.py

from . import db
from datetime import datetime, timezone


def _utcnow():
    return datetime.now(timezone.utc)


class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String, unique=True, nullable=False)
    steam_id64 = db.Column(db.String, nullable=True)

    settings = db.relationship('UserSettings', backref='user', uselist=False, lazy=True, cascade="all, delete-orphan")
    games = db.relationship('Game', backref='user', lazy=True)


class UserSettings(db.Model):
    __tablename__ = 'user_settings'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), unique=True, nullable=False)

    # xREL notification toggles
    xrel_scene_releases = db.Column(db.Boolean, default=True, nullable=False)
    xrel_p2p_releases = db.Column(db.Boolean, default=False, nullable=False)

    # Consecutive Steam privacy/auth failures; sync is suspended at 3
    steam_sync_failures = db.Column(db.Integer, default=0, nullable=False)

    # --- Auto-search ---
    auto_search_enabled = db.Column(db.Boolean, default=False, nullable=False)
    auto_download_enabled = db.Column(db.Boolean, default=False, nullable=False)
    auto_search_unreleased = db.Column(db.Boolean, default=False, nullable=False)
    notify_multiple_downloads = db.Column(db.Boolean, default=False, nullable=False)
    search_interval_hours = db.Column(db.Integer, default=6, nullable=False)
    min_seeders = db.Column(db.Integer, default=0, nullable=False)
    sort_by = db.Column(db.String, default='seeders', nullable=False)  # seeders, date, size
    last_auto_search = db.Column(db.DateTime(timezone=True), nullable=True)


class Game(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)

    # --- Core Info ---
    title = db.Column(db.String, nullable=False)
    igdb_id = db.Column(db.Integer, nullable=True, index=True)
    steam_app_id = db.Column(db.Integer, nullable=True)
    cover_url = db.Column(db.String, nullable=True)
    summary = db.Column(db.Text, nullable=True)
    genres = db.Column(db.String, nullable=True)  # comma-separated
    platforms = db.Column(db.String, nullable=True)  # comma-separated
    rating = db.Column(db.Integer, nullable=True)

    # --- Library status: wanted, owned, completed, downloading ---
    status = db.Column(db.String, default='wanted', nullable=False)
    hidden = db.Column(db.Boolean, default=False, nullable=False)

    # --- Release tracking ---
    release_date = db.Column(db.String, nullable=True)  # YYYY-MM-DD
    original_release_date = db.Column(db.String, nullable=True)
    release_status = db.Column(db.String, default='upcoming', nullable=False)  # upcoming, released, delayed, tbd

    notified_releases = db.relationship('XrelNotifiedRelease', backref='game', lazy=True, cascade="all, delete-orphan")
    downloads = db.relationship('GameDownload', backref='game', lazy=True, cascade="all, delete-orphan")

    def __repr__(self):
        return f'<Game {self.title}>'


class XrelNotifiedRelease(db.Model):
    """Append-only ledger: one row per (game, xREL release) already notified."""
    __tablename__ = 'xrel_notified_releases'
    __table_args__ = (db.UniqueConstraint('game_id', 'xrel_release_id', name='uq_game_xrel_release'),)

    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.Integer, db.ForeignKey('game.id'), nullable=False)
    xrel_release_id = db.Column(db.String, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)


class GameDownload(db.Model):
    """A release handed to a download client, tracked until it completes."""
    __tablename__ = 'game_downloads'

    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.Integer, db.ForeignKey('game.id'), nullable=False)
    downloader_id = db.Column(db.Integer, db.ForeignKey('downloader.id'), nullable=False)
    download_hash = db.Column(db.String, nullable=False)  # torrent hash or usenet job id
    download_title = db.Column(db.String, nullable=False)
    status = db.Column(db.String, default='downloading', nullable=False)  # downloading, paused, completed, failed
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)


class RssFeed(db.Model):
    __tablename__ = 'rss_feeds'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String, nullable=False)
    url = db.Column(db.String, nullable=False)
    type = db.Column(db.String, default='custom', nullable=False)  # preset, custom
    enabled = db.Column(db.Boolean, default=True, nullable=False)

    # Optional custom field names, e.g. {"title_field": "title", "link_field": "enclosure"}
    mapping = db.Column(db.JSON, nullable=True)

    last_check = db.Column(db.DateTime(timezone=True), nullable=True)
    status = db.Column(db.String, nullable=True)  # ok, error
    error_message = db.Column(db.Text, nullable=True)

    items = db.relationship('RssFeedItem', backref='feed', lazy=True, cascade="all, delete-orphan")


class RssFeedItem(db.Model):
    __tablename__ = 'rss_feed_items'
    __table_args__ = (db.UniqueConstraint('feed_id', 'guid', name='uq_feed_item_guid'),)

    id = db.Column(db.Integer, primary_key=True)
    feed_id = db.Column(db.Integer, db.ForeignKey('rss_feeds.id'), nullable=False)
    guid = db.Column(db.String, nullable=False)
    title = db.Column(db.String, nullable=False)
    link = db.Column(db.String, nullable=False)
    pub_date = db.Column(db.DateTime(timezone=True), nullable=True)
    source_name = db.Column(db.String, nullable=True)

    # Filled in by the background matcher
    igdb_game_id = db.Column(db.Integer, nullable=True)
    igdb_game_name = db.Column(db.String, nullable=True)
    cover_url = db.Column(db.String, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)


class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)
    type = db.Column(db.String, default='info', nullable=False)  # info, success, delayed, error
    title = db.Column(db.String, nullable=False)
    message = db.Column(db.Text, nullable=False)
    link = db.Column(db.String, nullable=True)
    read = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'type': self.type,
            'title': self.title,
            'message': self.message,
            'link': self.link,
            'read': self.read,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class Indexer(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String, nullable=False)
    type = db.Column(db.String, default='torznab', nullable=False)  # torznab, newznab, prowlarr
    url = db.Column(db.String, nullable=False)
    api_key = db.Column(db.String, nullable=True)
    categories = db.Column(db.String, nullable=True)  # comma-separated category ids
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    priority = db.Column(db.Integer, default=1, nullable=False)


class Downloader(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String, nullable=False)
    type = db.Column(db.String, nullable=False)  # transmission, qbittorrent, rtorrent, sabnzbd, nzbget
    url = db.Column(db.String, nullable=False)
    port = db.Column(db.Integer, nullable=True)
    use_ssl = db.Column(db.Boolean, default=False, nullable=False)
    url_path = db.Column(db.String, nullable=True)
    username = db.Column(db.String, nullable=True)
    password = db.Column(db.String, nullable=True)
    api_key = db.Column(db.String, nullable=True)
    category = db.Column(db.String, nullable=True)
    download_path = db.Column(db.String, nullable=True)
    label = db.Column(db.String, nullable=True)
    add_stopped = db.Column(db.Boolean, default=False, nullable=False)
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    priority = db.Column(db.Integer, default=1, nullable=False)


class Setting(db.Model):
    key = db.Column(db.String, primary_key=True)
    value = db.Column(db.String, nullable=True)
