# /gamewatch/gamewatch/rss.py

"""
RSS feed ingestion. Items are stored as soon as a feed is fetched; matching
them against the catalog happens afterwards on the background worker so a
slow catalog never holds up a refresh.
"""

# --- Standard Library Imports ---
import calendar
from datetime import datetime, timezone

# --- Third-Party Library Imports ---
import feedparser
import requests
from flask import current_app
from requests.adapters import HTTPAdapter
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from urllib3.util.retry import Retry

# --- Local Application Imports ---
from . import db, worker
from .igdb import igdb_client
from .models import RssFeed, RssFeedItem
from .ssrf import safe_get
from .titles import clean_release_name, extract_game_name
from .util import utcnow

DEFAULT_FEEDS = [
    {
        'name': 'Fitgirl Repacks',
        'url': 'https://fitgirl-repacks.site/feed/',
        'type': 'preset',
        'enabled': True,
        'mapping': {'title_field': 'title', 'link_field': 'link'},
    },
]


class RssFeedError(Exception):
    pass


def _entry_value(entry, field):
    value = entry.get(field)
    # Enclosure-style fields come back as a list of link dicts
    if isinstance(value, list):
        value = next((v.get('href') for v in value if isinstance(v, dict) and v.get('href')), None)
    if isinstance(value, dict):
        value = value.get('href') or value.get('value')
    return value


def _entry_pub_date(entry):
    parsed = entry.get('published_parsed') or entry.get('updated_parsed')
    if parsed:
        return datetime.fromtimestamp(calendar.timegm(parsed), tz=timezone.utc)
    return utcnow()


def _retrying_session():
    # Feed hosts are flaky; retry server errors with backoff
    retry_strategy = Retry(
        total=3,
        backoff_factor=1,
        status_forcelist=[500, 502, 503, 504],
        allowed_methods=["GET"],
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    http = requests.Session()
    http.mount("https://", adapter)
    http.mount("http://", adapter)
    return http


class RssService:

    def __init__(self):
        self.http = _retrying_session()

    def initialize(self):
        """Seeds the preset feeds on an empty install."""
        if RssFeed.query.count():
            return
        current_app.logger.info("Seeding default RSS feeds...")
        for feed_data in DEFAULT_FEEDS:
            db.session.add(RssFeed(**feed_data))
        db.session.commit()

    def refresh_feeds(self, feed_ids=None):
        """
        Refreshes every enabled feed (or only `feed_ids`). A failing feed is
        marked 'error' and the loop carries on with the next one.
        """
        query = RssFeed.query.filter_by(enabled=True)
        if feed_ids is not None:
            query = query.filter(RssFeed.id.in_(feed_ids))
        feeds = query.all()
        current_app.logger.info(f"Refreshing {len(feeds)} enabled RSS feeds...")

        futures = []
        for feed in feeds:
            feed_name = feed.name
            try:
                future = self.refresh_feed(feed)
                if future is not None:
                    futures.append(future)
            except Exception as e:
                db.session.rollback()
                current_app.logger.error(f"Failed to refresh feed '{feed_name}': {e}")
                self._record_failure(feed, feed_name, e)
        return futures

    def _record_failure(self, feed, feed_name, error):
        try:
            feed.status = 'error'
            feed.error_message = str(error)
            feed.last_check = utcnow()
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            current_app.logger.error(f"Could not store the error status of feed '{feed_name}': {e}")

    def normalize_entry(self, feed, entry):
        """Returns {title, link, pub_date, guid} or None when title or link is missing."""
        mapping = feed.mapping or {}
        title_field = mapping.get('title_field') or 'title'
        link_field = mapping.get('link_field') or 'link'

        title = _entry_value(entry, title_field) or entry.get('title')
        link = _entry_value(entry, link_field) or entry.get('link')
        if not title or not link:
            current_app.logger.warning(
                f"Skipping item from feed '{feed.name}' missing title or link "
                f"(title_field={title_field}, link_field={link_field})"
            )
            return None

        guid = entry.get('guid') or entry.get('id') or link or title
        return {
            'title': str(title).strip(),
            'link': str(link).strip(),
            'pub_date': _entry_pub_date(entry),
            'guid': str(guid).strip(),
        }

    def refresh_feed(self, feed):
        """
        Fetches and stores new items for one feed. Returns the background
        matching Future, or None when nothing new came in.
        """
        current_app.logger.debug(f"Fetching feed: {feed.name} ({feed.url})")
        response = safe_get(feed.url, session=self.http)
        response.raise_for_status()

        parsed = feedparser.parse(response.content)
        if parsed.bozo and not parsed.entries:
            raise RssFeedError(f"Could not parse feed: {parsed.get('bozo_exception')}")
        current_app.logger.debug(f"Parsed {len(parsed.entries)} items from {feed.name}")

        known_guids = {
            guid for (guid,) in db.session.query(RssFeedItem.guid).filter_by(feed_id=feed.id)
        }

        new_items = []
        for entry in parsed.entries:
            normalized = self.normalize_entry(feed, entry)
            if not normalized or normalized['guid'] in known_guids:
                continue
            known_guids.add(normalized['guid'])
            new_items.append(RssFeedItem(
                feed_id=feed.id,
                source_name=feed.name,
                igdb_game_id=None,
                igdb_game_name=None,
                cover_url=None,
                **normalized,
            ))

        db.session.add_all(new_items)
        feed.last_check = utcnow()
        feed.status = 'ok'
        feed.error_message = None
        try:
            db.session.commit()
        except IntegrityError:
            # A concurrent refresh of this feed stored the same items first
            db.session.rollback()
            current_app.logger.info(f"Feed '{feed.name}' was refreshed concurrently, duplicate items skipped.")
            return None

        if new_items:
            current_app.logger.info(f"Feed '{feed.name}': stored {len(new_items)} new items.")
            return worker.submit(self.match_pending_items, [item.id for item in new_items])
        return None

    def match_game(self, release_title):
        name = clean_release_name(extract_game_name(release_title)) or extract_game_name(release_title)
        return igdb_client.search(name)

    def match_pending_items(self, item_ids):
        """Background pass: resolves stored items against the catalog."""
        current_app.logger.info(f"Starting background match for {len(item_ids)} items")
        matched = 0
        for item_id in item_ids:
            item = db.session.get(RssFeedItem, item_id)
            if item is None or item.igdb_game_id:
                continue
            match = self.match_game(item.title)
            if not match:
                continue
            try:
                item.igdb_game_id = match['id']
                item.igdb_game_name = match['name']
                item.cover_url = match.get('cover_url')
                db.session.commit()
                matched += 1
            except SQLAlchemyError as e:
                db.session.rollback()
                current_app.logger.warning(f"Failed to store match for feed item {item_id}: {e}")
        current_app.logger.info(f"Completed background match: {matched}/{len(item_ids)} items matched")
        return matched


rss_service = RssService()
