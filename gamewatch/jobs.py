# /gamewatch/gamewatch/jobs.py

import math
from datetime import datetime, timedelta, timezone

import click
import requests
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from . import db
from .downloaders import DownloaderError, DownloaderManager
from .igdb import igdb_client
from .indexers import search_all_indexers
from .models import Downloader, Game, GameDownload, User
from .notifications import notify_all
from .rss import rss_service
from .ssrf import UnsafeUrlError
from .steam import sync_user_steam_wishlist
from .storage import (
    add_notifications_batch,
    get_notified_release_pairs,
    get_user_settings,
    record_notified_releases,
    update_games_batch,
)
from .titles import clean_release_name, normalize_title, release_matches_game
from .util import parse_date, timestamp_to_date, utcnow
from .xrel import XrelError, xrel_client

DELAY_THRESHOLD_DAYS = 7
XREL_LATEST_PER_PAGE = 100
AUTO_SEARCH_RESULT_LIMIT = 10
COMPLETE_DOWNLOAD_STATUSES = {'completed', 'seeding'}


def refresh_rss_feeds(app):
    """Scheduled job to pull every enabled RSS feed."""
    with app.app_context():
        app.logger.info("Scheduler: Refreshing RSS feeds.")
        rss_service.refresh_feeds()


def _reconcile_release(game, record, now):
    """
    Works out the column changes and the notification (if any) for one game
    given its fresh catalog record.
    """
    released_at = datetime.fromtimestamp(int(record['first_release_date']), tz=timezone.utc)
    new_date = timestamp_to_date(record['first_release_date'])
    changes = {}

    original_date = game.original_release_date
    if not original_date:
        original_date = game.release_date or new_date
        changes['original_release_date'] = original_date

    if released_at <= now:
        new_status = 'released'
    elif game.release_status == 'released':
        # Release date moved back into the future
        new_status = 'upcoming'
    else:
        original = parse_date(original_date)
        diff_days = math.ceil((released_at - original).total_seconds() / 86400) if original else 0
        new_status = 'delayed' if diff_days > DELAY_THRESHOLD_DAYS else 'upcoming'

    if game.release_date != new_date or game.release_status != new_status:
        current_app.logger.info(
            f"    -> '{game.title}': {game.release_date} ({game.release_status}) -> {new_date} ({new_status})"
        )
        changes['release_date'] = new_date
        changes['release_status'] = new_status

    notification = None
    if new_status == 'released' and game.release_status != 'released':
        notification = {
            'user_id': game.user_id,
            'type': 'success',
            'title': 'Game Released',
            'message': f"{game.title} is now available!",
            'link': '/library',
        }
    elif new_status == 'delayed' and game.release_status != 'delayed':
        notification = {
            'user_id': game.user_id,
            'type': 'delayed',
            'title': 'Game Delayed',
            'message': f"{game.title} has been delayed to {new_date}",
            'link': '/wishlist',
        }
    return changes, notification


def check_game_updates(app):
    """
    Scheduled job: re-resolves every tracked game against the catalog and
    reconciles release dates and statuses. All changes go out in one batched
    write and all notifications in one batched insert.
    """
    with app.app_context():
        app.logger.info("Scheduler: Checking for game updates.")
        games = Game.query.filter(Game.igdb_id.isnot(None)).all()
        if not games:
            app.logger.info("No games to check for updates.")
            return {'checked': 0, 'updated': 0, 'notified': 0}

        records = {g['id']: g for g in igdb_client.get_games_by_ids([game.igdb_id for game in games])}

        now = utcnow()
        updates, notifications = [], []
        for game in games:
            record = records.get(game.igdb_id)
            if not record or not record.get('first_release_date'):
                continue
            changes, notification = _reconcile_release(game, record, now)
            if changes:
                updates.append({'id': game.id, **changes})
            if notification:
                notifications.append(notification)

        written = update_games_batch(updates) if updates else 0
        created = add_notifications_batch(notifications) if notifications else []
        notify_all(created)

        app.logger.info(f"Finished checking for game updates: {written}/{len(games)} updated, {len(created)} notifications.")
        return {'checked': len(games), 'updated': written, 'notified': len(created)}


def _prepare_releases(releases):
    prepared = []
    for release in releases:
        ext_title = (release.get('ext_info') or {}).get('title')
        prepared.append({
            'release': release,
            'ext_norm': normalize_title(ext_title) if ext_title else None,
            'dir_norm': normalize_title(clean_release_name(release.get('dirname'))),
        })
    return prepared


def _release_matches(prepared, game_title, game_norm):
    release = prepared['release']
    if game_norm and game_norm in (prepared['ext_norm'], prepared['dir_norm']):
        return True
    if release_matches_game(release.get('dirname'), game_title):
        return True
    ext_title = (release.get('ext_info') or {}).get('title')
    return bool(ext_title) and release_matches_game(ext_title, game_title)


def check_xrel_releases(app):
    """
    Scheduled job: fetches the latest xREL releases once and notifies owners
    of wanted games about new matching releases. Each (game, release) pair is
    notified at most once, tracked by the XrelNotifiedRelease ledger.
    """
    with app.app_context():
        app.logger.info("Scheduler: Checking xREL.to for wanted games.")
        try:
            latest = xrel_client.get_latest_releases(per_page=XREL_LATEST_PER_PAGE)['list']
        except XrelError as e:
            app.logger.error(f"xREL check failed: {e}")
            return 0

        if not latest:
            app.logger.info("No latest releases found on xREL.to, skipping check.")
            return 0

        wanted = Game.query.filter(
            Game.user_id.isnot(None), Game.status == 'wanted', Game.hidden.is_(False)
        ).all()
        if not wanted:
            return 0

        releases = _prepare_releases(latest)
        already_notified = get_notified_release_pairs([game.id for game in wanted])
        settings_by_user = {}
        entries = []

        for game in wanted:
            if game.user_id not in settings_by_user:
                settings_by_user[game.user_id] = get_user_settings(game.user_id)
            settings = settings_by_user[game.user_id]
            game_norm = normalize_title(game.title)

            for prepared in releases:
                release = prepared['release']
                if release['source'] == 'scene' and not settings.xrel_scene_releases:
                    continue
                if release['source'] == 'p2p' and not settings.xrel_p2p_releases:
                    continue

                pair = (game.id, str(release['id']))
                if pair in already_notified or not _release_matches(prepared, game.title, game_norm):
                    continue
                already_notified.add(pair)

                entries.append((
                    {'game_id': game.id, 'xrel_release_id': str(release['id'])},
                    {
                        'user_id': game.user_id,
                        'type': 'info',
                        'title': 'Available on xREL.to',
                        'message': f"{game.title} is listed on xREL.to: {release['dirname']}",
                        'link': f"modal:game:{game.id}",
                    },
                ))
                app.logger.info(f"    -> xREL match for '{game.title}': {release['dirname']}")

        created = record_notified_releases(entries) if entries else []
        notify_all(created)
        return len(created)


def check_steam_wishlists(app):
    """Scheduled job to sync the Steam wishlist of every user with a Steam id."""
    with app.app_context():
        app.logger.info("Scheduler: Starting Steam wishlist check for all users.")
        results = {}
        for user in User.query.filter(User.steam_id64.isnot(None)).all():
            results[user.id] = sync_user_steam_wishlist(user.id)
        return results


def _auto_search_due(settings, now):
    last = settings.last_auto_search
    if last is None:
        return True
    if last.tzinfo is None:
        # SQLite hands back naive datetimes
        last = last.replace(tzinfo=timezone.utc)
    return now - last >= timedelta(hours=settings.search_interval_hours or 0)


def rank_search_results(items, game_title, min_seeders=0, sort_by='seeders'):
    """
    Keeps indexer results that really belong to the game and have enough
    seeders, best first. Usenet results carry no seeders and count as 0.
    """
    candidates = [
        item for item in items
        if item.get('link') and release_matches_game(item.get('title'), game_title)
        and (item.get('seeders') or 0) >= (min_seeders or 0)
    ]
    if sort_by == 'size':
        key = lambda item: item.get('size') or 0
    elif sort_by == 'date':
        key = lambda item: item['pub_date'].timestamp() if item.get('pub_date') else 0
    else:
        key = lambda item: item.get('seeders') or 0
    return sorted(candidates, key=key, reverse=True)


def _dispatch_best(game, best, downloaders):
    """Hands the best result to the first downloader that takes it and starts tracking it."""
    try:
        result = DownloaderManager.add_download_with_fallback(downloaders, {'url': best['link'], 'title': best['title']})
    except (DownloaderError, UnsafeUrlError) as e:
        current_app.logger.error(f"    ERROR: Failed to send '{game.title}' to a downloader: {e}")
        return False

    if not result.get('success') or not result.get('id'):
        current_app.logger.error(f"    ERROR: No downloader took '{best['title']}': {result.get('message')}")
        return False

    db.session.add(GameDownload(
        game_id=game.id,
        downloader_id=result['downloader_id'],
        download_hash=result['id'],
        download_title=best['title'],
        status='downloading',
    ))
    game.status = 'downloading'
    db.session.commit()
    current_app.logger.info(f"    SUCCESS: Sent '{best['title']}' to '{result['downloader']}'.")
    return True


def _auto_search_games(games, settings, downloaders):
    """Searches one user's wanted games. Returns (searched, dispatched, notifications)."""
    searched, dispatched, notifications = 0, 0, []
    for game in games:
        if not settings.auto_search_unreleased and game.release_status != 'released':
            continue

        searched += 1
        found = search_all_indexers(game.title, limit=AUTO_SEARCH_RESULT_LIMIT)
        if found['errors']:
            current_app.logger.warning(f"    -> {len(found['errors'])} indexer(s) failed while searching for '{game.title}'")
        candidates = rank_search_results(found['items'], game.title, settings.min_seeders, settings.sort_by)
        if not candidates:
            continue

        if settings.auto_download_enabled:
            if downloaders and _dispatch_best(game, candidates[0], downloaders):
                dispatched += 1
                notifications.append({
                    'user_id': game.user_id,
                    'type': 'success',
                    'title': 'Download Started',
                    'message': f"Started downloading {game.title}",
                    'link': '/library',
                })
        elif len(candidates) == 1:
            notifications.append({
                'user_id': game.user_id,
                'type': 'success',
                'title': 'Game Available',
                'message': f"{game.title} is now available for download",
                'link': f"modal:game:{game.id}",
            })
        elif settings.notify_multiple_downloads:
            notifications.append({
                'user_id': game.user_id,
                'type': 'info',
                'title': 'Multiple Results Found',
                'message': f"{len(candidates)} result(s) found for {game.title}. Please review and choose.",
                'link': f"modal:game:{game.id}",
            })
    return searched, dispatched, notifications


def check_auto_search(app):
    """
    Scheduled job: for every user with auto-search on whose search interval has
    passed, searches all indexers for their wanted games. The best matching
    result is either sent to a downloader or announced in a notification.
    """
    with app.app_context():
        app.logger.info("Scheduler: Running auto-search for wanted games.")
        now = utcnow()
        summary = {'users': 0, 'searched': 0, 'dispatched': 0, 'notified': 0}

        games_by_user = {}
        wanted = Game.query.filter(
            Game.user_id.isnot(None), Game.status == 'wanted', Game.hidden.is_(False)
        ).all()
        for game in wanted:
            games_by_user.setdefault(game.user_id, []).append(game)

        downloaders = Downloader.query.filter_by(enabled=True).order_by(Downloader.priority).all()
        for user_id, games in games_by_user.items():
            settings = get_user_settings(user_id)
            if not settings.auto_search_enabled or not _auto_search_due(settings, now):
                continue

            app.logger.info(f"Auto-search: {len(games)} wanted game(s) for user {user_id}.")
            try:
                searched, dispatched, notifications = _auto_search_games(games, settings, downloaders)
                settings.last_auto_search = now
                db.session.commit()
            except SQLAlchemyError as e:
                db.session.rollback()
                app.logger.error(f"Auto-search failed for user {user_id}: {e}")
                continue

            created = add_notifications_batch(notifications) if notifications else []
            notify_all(created)
            summary['users'] += 1
            summary['searched'] += searched
            summary['dispatched'] += dispatched
            summary['notified'] += len(created)

        app.logger.info(
            f"Finished auto-search: {summary['searched']} searched, {summary['dispatched']} sent to downloaders."
        )
        return summary


def _apply_remote_status(download, remote, notifications):
    """Moves one tracked download along. Returns 'completed', 'failed' or None."""
    game = download.game
    if remote is None:
        # Gone from the client: finished and removed, or removed by hand
        current_app.logger.warning(f"    -> '{download.download_title}' is no longer in the downloader, marking it completed.")
        download.status = 'completed'
        game.status = 'owned'
        notifications.append({
            'user_id': game.user_id,
            'type': 'info',
            'title': 'Download Status Changed',
            'message': f"Download for \"{game.title}\" was not found in the downloader and has been marked as completed.",
            'link': '/library',
        })
        return 'completed'

    if remote['status'] in COMPLETE_DOWNLOAD_STATUSES or (remote['status'] == 'downloading' and remote['progress'] >= 100):
        current_app.logger.info(f"    -> Download finished: '{download.download_title}'")
        download.status = 'completed'
        game.status = 'owned'
        notifications.append({
            'user_id': game.user_id,
            'type': 'success',
            'title': 'Download Completed',
            'message': f"Download finished for {download.download_title}",
            'link': '/library',
        })
        return 'completed'

    if remote['status'] == 'error':
        current_app.logger.warning(f"    -> Download failed: '{download.download_title}' ({remote.get('error')})")
        download.status = 'failed'
        game.status = 'wanted'
        return 'failed'

    download.status = 'paused' if remote['status'] == 'paused' else 'downloading'
    game.status = 'downloading'
    return None


def check_download_status(app):
    """
    Scheduled job: asks each download client about the downloads handed to it
    and marks finished ones owned and failed ones wanted again.
    """
    with app.app_context():
        tracked = GameDownload.query.filter(GameDownload.status.in_(['downloading', 'paused'])).all()
        summary = {'checked': len(tracked), 'completed': 0, 'failed': 0}
        if not tracked:
            return summary

        by_downloader = {}
        for download in tracked:
            by_downloader.setdefault(download.downloader_id, []).append(download)

        notifications = []
        for downloader_id, downloads in by_downloader.items():
            downloader = db.session.get(Downloader, downloader_id)
            if downloader is None or not downloader.enabled:
                continue
            try:
                remote_downloads = DownloaderManager.get_downloads(downloader)
            except (DownloaderError, UnsafeUrlError, requests.RequestException) as e:
                app.logger.error(f"Could not read downloads from '{downloader.name}': {e}")
                continue

            by_hash = {d['id'].lower(): d for d in remote_downloads if d['id']}
            for download in downloads:
                outcome = _apply_remote_status(download, by_hash.get(download.download_hash.lower()), notifications)
                if outcome:
                    summary[outcome] += 1
            db.session.commit()

        created = add_notifications_batch(notifications) if notifications else []
        notify_all(created)
        return summary


def register_cli_commands(app):
    """A function to register our custom commands with Flask."""

    @app.cli.command('refresh-feeds')
    def refresh_feeds_command():
        """Fetches every enabled RSS feed now."""
        click.echo("--- Manually refreshing RSS feeds ---")
        refresh_rss_feeds(current_app._get_current_object())
        click.echo("--- RSS refresh finished. Matching continues in the background. ---")

    @app.cli.command('check-updates')
    def check_updates_command():
        """Reconciles release dates and statuses against IGDB."""
        summary = check_game_updates(current_app._get_current_object())
        click.echo(f"--- Checked {summary['checked']} games, updated {summary['updated']}, sent {summary['notified']} notifications ---")

    @app.cli.command('check-xrel')
    def check_xrel_command():
        """Looks for new xREL.to releases of wanted games."""
        count = check_xrel_releases(current_app._get_current_object())
        click.echo(f"--- xREL check finished: {count} new notifications ---")

    @app.cli.command('auto-search')
    def auto_search_command():
        """Runs auto-search for every user whose search interval has passed."""
        summary = check_auto_search(current_app._get_current_object())
        click.echo(f"--- Auto-search: {summary['searched']} games searched, {summary['dispatched']} sent to downloaders ---")

    @app.cli.command('check-downloads')
    def check_downloads_command():
        """Syncs tracked downloads with the download clients."""
        summary = check_download_status(current_app._get_current_object())
        click.echo(f"--- Checked {summary['checked']} downloads: {summary['completed']} completed, {summary['failed']} failed ---")

    @app.cli.command('sync-wishlist')
    @click.argument('user_id', type=int)
    def sync_wishlist_command(user_id):
        """Imports the Steam wishlist of one user."""
        result = sync_user_steam_wishlist(user_id)
        if result['success']:
            click.echo(f"--- Added {result['added_count']} games from the Steam wishlist ---")
        else:
            click.echo(f"--- Steam sync failed ({result['reason']}): {result['message']} ---")
