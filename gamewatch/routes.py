# /gamewatch/gamewatch/routes.py

import requests
from flask import Blueprint, request, current_app, jsonify

from . import db
from .downloaders import DownloaderError, DownloaderManager
from .indexers import search_all_indexers
from .models import Downloader, Notification, RssFeed, RssFeedItem
from .rss import rss_service
from .ssrf import UnsafeUrlError, ensure_safe_url
from .steam import sync_user_steam_wishlist
from .util import is_magnet
from .xrel import XrelApiError, XrelRateLimitError, xrel_client

main = Blueprint('main', __name__)

STEAM_SYNC_STATUS = {'no_steam_id': 400, 'private': 403, 'locked': 423, 'api_error': 502}


def _feed_to_dict(feed):
    return {
        'id': feed.id,
        'name': feed.name,
        'url': feed.url,
        'type': feed.type,
        'enabled': feed.enabled,
        'mapping': feed.mapping,
        'last_check': feed.last_check.isoformat() if feed.last_check else None,
        'status': feed.status,
        'error_message': feed.error_message,
    }


def _item_to_dict(item):
    return {
        'id': item.id,
        'feed_id': item.feed_id,
        'guid': item.guid,
        'title': item.title,
        'link': item.link,
        'pub_date': item.pub_date.isoformat() if item.pub_date else None,
        'source_name': item.source_name,
        'igdb_game_id': item.igdb_game_id,
        'igdb_game_name': item.igdb_game_name,
        'cover_url': item.cover_url,
    }


@main.errorhandler(UnsafeUrlError)
def handle_unsafe_url(error):
    current_app.logger.warning(str(error))
    return jsonify({'error': str(error)}), 400


@main.errorhandler(XrelRateLimitError)
def handle_xrel_rate_limit(error):
    return jsonify({'error': str(error)}), 429


# --- RSS feeds ---

@main.route('/feeds', methods=['GET'])
def list_feeds():
    feeds = RssFeed.query.order_by(RssFeed.id).all()
    return jsonify([_feed_to_dict(f) for f in feeds])


@main.route('/feeds', methods=['POST'])
def add_feed():
    data = request.get_json(silent=True) or {}
    name, url = (data.get('name') or '').strip(), (data.get('url') or '').strip()
    if not name or not url:
        return jsonify({'error': 'Name and URL are required.'}), 400
    ensure_safe_url(url)

    feed = RssFeed(name=name, url=url, type='custom', enabled=data.get('enabled', True), mapping=data.get('mapping'))
    db.session.add(feed)
    db.session.commit()
    current_app.logger.info(f"Added RSS feed '{name}' ({url})")
    return jsonify(_feed_to_dict(feed)), 201


@main.route('/feeds/refresh', methods=['POST'])
def refresh_all_feeds():
    rss_service.refresh_feeds()
    feeds = RssFeed.query.order_by(RssFeed.id).all()
    return jsonify({'success': True, 'feeds': [_feed_to_dict(f) for f in feeds]})


@main.route('/feeds/<int:feed_id>/refresh', methods=['POST'])
def refresh_single_feed(feed_id):
    feed = db.session.get(RssFeed, feed_id)
    if feed is None:
        return jsonify({'error': 'Feed not found'}), 404
    ensure_safe_url(feed.url)
    rss_service.refresh_feeds(feed_ids=[feed.id])
    return jsonify(_feed_to_dict(db.session.get(RssFeed, feed_id)))


@main.route('/feeds/items', methods=['GET'])
def list_feed_items():
    limit = min(request.args.get('limit', 100, type=int), 500)
    query = RssFeedItem.query
    feed_id = request.args.get('feed_id', type=int)
    if feed_id:
        query = query.filter_by(feed_id=feed_id)
    items = query.order_by(RssFeedItem.pub_date.desc(), RssFeedItem.id.desc()).limit(limit).all()
    return jsonify([_item_to_dict(i) for i in items])


# --- Steam ---

@main.route('/steam/sync/<int:user_id>', methods=['POST'])
def steam_sync(user_id):
    result = sync_user_steam_wishlist(user_id)
    if result['success']:
        return jsonify(result)
    return jsonify(result), STEAM_SYNC_STATUS.get(result.get('reason'), 400)


# --- Search ---

@main.route('/xrel/search', methods=['GET'])
def xrel_search():
    query = (request.args.get('q') or '').strip()
    if not query:
        return jsonify({'error': 'Query parameter "q" is required.'}), 400
    try:
        releases = xrel_client.search_releases(
            query,
            scene=request.args.get('scene', '1') != '0',
            p2p=request.args.get('p2p', '0') == '1',
            limit=request.args.get('limit', 25, type=int),
        )
    except XrelApiError as e:
        current_app.logger.error(f"xREL search failed: {e}")
        return jsonify({'error': str(e)}), 502
    return jsonify({'results': releases})


@main.route('/indexers/search', methods=['GET'])
def indexer_search():
    query = (request.args.get('q') or '').strip()
    if not query:
        return jsonify({'error': 'Query parameter "q" is required.'}), 400
    return jsonify(search_all_indexers(query, limit=request.args.get('limit', 50, type=int)))


# --- Downloads ---

@main.route('/downloads', methods=['POST'])
def add_download():
    data = request.get_json(silent=True) or {}
    if not data.get('url') or not data.get('title'):
        return jsonify({'error': 'url and title are required.'}), 400

    download_request = {
        'url': data['url'],
        'title': data['title'],
        'category': data.get('category'),
        'download_path': data.get('download_path'),
    }

    if not is_magnet(download_request['url']):
        ensure_safe_url(download_request['url'])

    downloader_id = data.get('downloader_id')
    if downloader_id:
        downloader = db.session.get(Downloader, downloader_id)
        if downloader is None:
            return jsonify({'error': 'Downloader not found'}), 404
        try:
            return jsonify(DownloaderManager.add_download(downloader, download_request))
        except (DownloaderError, requests.RequestException) as e:
            return jsonify({'success': False, 'message': str(e)}), 502

    result = DownloaderManager.add_download_with_fallback(Downloader.query.all(), download_request)
    return jsonify(result), (200 if result['success'] else 502)


# --- Notifications ---

@main.route('/notifications', methods=['GET'])
def list_notifications():
    query = Notification.query
    user_id = request.args.get('user_id', type=int)
    if user_id:
        query = query.filter_by(user_id=user_id)
    if request.args.get('unread') == '1':
        query = query.filter_by(read=False)
    notifications = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(100).all()
    return jsonify([n.to_dict() for n in notifications])


@main.route('/notifications/<int:notification_id>/read', methods=['POST'])
def mark_notification_read(notification_id):
    notification = db.session.get(Notification, notification_id)
    if notification is None:
        return jsonify({'error': 'Notification not found'}), 404
    notification.read = True
    db.session.commit()
    return jsonify(notification.to_dict())
