from unittest.mock import MagicMock

import pytest
import requests
from sqlalchemy.exc import IntegrityError, OperationalError

from gamewatch import db
from gamewatch import rss
from gamewatch.igdb import igdb_client
from gamewatch.models import RssFeed, RssFeedItem
from gamewatch.rss import DEFAULT_FEEDS, rss_service

FEED_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Repacks</title>
    <item>
      <title>Stardew Valley v1.6.8 [FitGirl Repack]</title>
      <link>https://example.com/stardew-valley/</link>
      <guid isPermaLink="false">https://example.com/?p=1001</guid>
      <pubDate>Mon, 06 May 2024 10:00:00 +0000</pubDate>
    </item>
    <item>
      <title>Hades II (Early Access) [FitGirl Repack]</title>
      <link>https://example.com/hades-ii/</link>
      <pubDate>Tue, 07 May 2024 10:00:00 +0000</pubDate>
    </item>
    <item>
      <title>Broken Entry Without Link</title>
      <guid>https://example.com/?p=1003</guid>
    </item>
  </channel>
</rss>
"""


@pytest.fixture
def feed(app, no_preset_feeds):
    with app.app_context():
        feed = RssFeed(name='Test Repacks', url='https://example.com/feed/', type='custom', enabled=True)
        db.session.add(feed)
        db.session.commit()
        return feed.id


@pytest.fixture
def fake_search(monkeypatch):
    def _search(name):
        return {'id': abs(hash(name)) % 100000 + 1, 'name': name, 'cover_url': None}

    mock = MagicMock(side_effect=_search)
    monkeypatch.setattr(igdb_client, 'search', mock)
    return mock


def _serve(monkeypatch, fake_response, content=FEED_XML):
    get = MagicMock(return_value=fake_response(content=content))
    monkeypatch.setattr(rss, 'safe_get', get)
    return get


def test_preset_feed_seeded(app):
    with app.app_context():
        feeds = RssFeed.query.filter_by(type='preset').all()
        assert [f.url for f in feeds] == [f['url'] for f in DEFAULT_FEEDS]

        rss_service.initialize()
        assert RssFeed.query.count() == len(DEFAULT_FEEDS)


def test_refresh_stores_items_and_matches_in_background(app, feed, monkeypatch, fake_response, fake_search):
    _serve(monkeypatch, fake_response)

    with app.app_context():
        futures = rss_service.refresh_feeds()
        assert len(futures) == 1
        assert futures[0].result(timeout=5) == 2

    with app.app_context():
        items = RssFeedItem.query.filter_by(feed_id=feed).order_by(RssFeedItem.id).all()
        assert [i.title for i in items] == [
            "Stardew Valley v1.6.8 [FitGirl Repack]",
            "Hades II (Early Access) [FitGirl Repack]",
        ]
        assert items[0].guid == "https://example.com/?p=1001"
        # No guid in the payload, so the link stands in
        assert items[1].guid == "https://example.com/hades-ii/"
        assert items[0].source_name == 'Test Repacks'
        assert items[0].pub_date is not None
        assert [i.igdb_game_name for i in items] == ["Stardew Valley", "Hades II"]

        stored_feed = db.session.get(RssFeed, feed)
        assert stored_feed.status == 'ok'
        assert stored_feed.last_check is not None

    searched = [c.args[0] for c in fake_search.call_args_list]
    assert searched == ["Stardew Valley", "Hades II"]


def test_refresh_is_idempotent(app, feed, monkeypatch, fake_response, fake_search):
    _serve(monkeypatch, fake_response)

    with app.app_context():
        for future in rss_service.refresh_feeds():
            future.result(timeout=5)
    with app.app_context():
        assert rss_service.refresh_feeds() == []
        assert RssFeedItem.query.filter_by(feed_id=feed).count() == 2


def test_duplicate_guids_in_one_payload(app, feed, monkeypatch, fake_response, fake_search):
    doubled = FEED_XML.replace(
        b"</channel>",
        b"<item><title>Stardew Valley again</title><link>https://example.com/other/</link>"
        b"<guid isPermaLink=\"false\">https://example.com/?p=1001</guid></item></channel>",
    )
    _serve(monkeypatch, fake_response, doubled)

    with app.app_context():
        for future in rss_service.refresh_feeds():
            future.result(timeout=5)
        assert RssFeedItem.query.filter_by(feed_id=feed).count() == 2


def test_failing_feed_does_not_stop_others(app, feed, monkeypatch, fake_response, fake_search):
    with app.app_context():
        bad = RssFeed(name='Down', url='https://down.example.com/feed', type='custom', enabled=True)
        db.session.add(bad)
        db.session.commit()
        bad_id = bad.id

    def _get(url, **kwargs):
        if 'down.example.com' in url:
            raise requests.ConnectionError("connection refused")
        return fake_response(content=FEED_XML)

    monkeypatch.setattr(rss, 'safe_get', _get)

    with app.app_context():
        for future in rss_service.refresh_feeds():
            future.result(timeout=5)

    with app.app_context():
        down = db.session.get(RssFeed, bad_id)
        assert down.status == 'error'
        assert 'connection refused' in down.error_message
        assert db.session.get(RssFeed, feed).status == 'ok'
        assert RssFeedItem.query.filter_by(feed_id=feed).count() == 2


def test_failure_status_write_error_does_not_stop_others(app, feed, monkeypatch, fake_response, fake_search):
    with app.app_context():
        bad = RssFeed(name='Down', url='https://down.example.com/feed', type='custom', enabled=True)
        db.session.add(bad)
        db.session.commit()
        later = RssFeed(name='Later', url='https://later.example.com/feed', type='custom', enabled=True)
        db.session.add(later)
        db.session.commit()
        bad_id, later_id = bad.id, later.id

    def _get(url, **kwargs):
        if 'down.example.com' in url:
            raise requests.ConnectionError("connection refused")
        return fake_response(content=FEED_XML)

    monkeypatch.setattr(rss, 'safe_get', _get)

    real_commit = db.session.commit

    def _commit():
        if any(isinstance(obj, RssFeed) and obj.status == 'error' for obj in db.session.dirty):
            raise OperationalError("UPDATE rss_feeds", {}, Exception("database is locked"))
        return real_commit()

    monkeypatch.setattr(db.session, 'commit', _commit)

    with app.app_context():
        for future in rss_service.refresh_feeds():
            future.result(timeout=5)

    with app.app_context():
        assert db.session.get(RssFeed, bad_id).status is None
        assert db.session.get(RssFeed, later_id).status == 'ok'
        assert RssFeedItem.query.filter_by(feed_id=later_id).count() == 2
        assert db.session.get(RssFeed, feed).status == 'ok'


def test_concurrent_insert_is_not_a_feed_error(app, feed, monkeypatch, fake_response):
    _serve(monkeypatch, fake_response)
    real_commit = db.session.commit

    def _commit():
        if any(isinstance(obj, RssFeedItem) for obj in db.session.new):
            raise IntegrityError("INSERT INTO rss_feed_items", {}, Exception("UNIQUE constraint failed"))
        return real_commit()

    monkeypatch.setattr(db.session, 'commit', _commit)

    with app.app_context():
        assert rss_service.refresh_feeds() == []
        assert db.session.get(RssFeed, feed).status != 'error'


def test_unparseable_feed_marked_error(app, feed, monkeypatch, fake_response):
    _serve(monkeypatch, fake_response, b"this is not a feed <<<")

    with app.app_context():
        assert rss_service.refresh_feeds() == []
        assert db.session.get(RssFeed, feed).status == 'error'


def test_http_error_marked_error(app, feed, monkeypatch, fake_response):
    monkeypatch.setattr(rss, 'safe_get', MagicMock(return_value=fake_response(503, reason='Unavailable')))

    with app.app_context():
        rss_service.refresh_feeds()
        stored = db.session.get(RssFeed, feed)
        assert stored.status == 'error'
        assert '503' in stored.error_message


def test_custom_field_mapping(app):
    with app.app_context():
        feed = RssFeed(name='Mapped', url='https://example.com/f', mapping={'title_field': 'summary', 'link_field': 'enclosures'})
        entry = {
            'title': 'Fallback title',
            'summary': 'Celeste-GRP',
            'link': 'https://example.com/page',
            'enclosures': [{'href': 'https://example.com/celeste.torrent'}],
            'id': 'celeste-1',
        }
        normalized = rss_service.normalize_entry(feed, entry)

    assert normalized['title'] == 'Celeste-GRP'
    assert normalized['link'] == 'https://example.com/celeste.torrent'
    assert normalized['guid'] == 'celeste-1'


def test_unmatched_items_stay_unmatched(app, feed, monkeypatch, fake_response, fake_search):
    _serve(monkeypatch, fake_response)
    fake_search.side_effect = lambda name: None

    with app.app_context():
        futures = rss_service.refresh_feeds()
        assert futures[0].result(timeout=5) == 0
    with app.app_context():
        assert RssFeedItem.query.filter(RssFeedItem.igdb_game_id.isnot(None)).count() == 0
