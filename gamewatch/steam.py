# /gamewatch/gamewatch/steam.py

"""
Steam wishlist import. Wishlist app ids are mapped to IGDB ids in one
batched lookup; games the user already tracks are linked instead of being
added a second time.
"""

# --- Standard Library Imports ---
import re
import time

# --- Third-Party Library Imports ---
import requests
from flask import current_app

# --- Local Application Imports ---
from . import db
from .igdb import igdb_client
from .models import Game, User
from .notifications import notify_all
from .storage import add_games_batch, add_notifications_batch, get_user_settings, update_games_batch
from .ssrf import safe_get

STEAM_WISHLIST_URL = 'https://store.steampowered.com/wishlist/profiles/{steam_id}/wishlistdata/'
STEAM_ID_PATTERN = re.compile(r'^7656\d{13}$')
MAX_PAGES = 50
MAX_SYNC_FAILURES = 3


class SteamError(Exception):
    pass


class SteamPrivateProfileError(SteamError):
    pass


class SteamApiError(SteamError):
    pass


class InvalidSteamIdError(SteamError):
    pass


def validate_steam_id(steam_id):
    return bool(STEAM_ID_PATTERN.match(str(steam_id or '')))


class SteamClient:

    def __init__(self, sleep=time.sleep):
        self._sleep = sleep

    def get_wishlist(self, steam_id):
        """
        Returns every wishlist entry as {steam_app_id, title, added_at, priority}.
        Pages are fetched until Steam returns an empty one, at most MAX_PAGES.
        """
        if not validate_steam_id(steam_id):
            raise InvalidSteamIdError("Invalid Steam ID format")

        delay = current_app.config.get('STEAM_PAGE_DELAY_SECONDS', 0.5)
        entries = []
        for page in range(MAX_PAGES):
            current_app.logger.debug(f"Fetching Steam wishlist page {page} for {steam_id}")
            try:
                response = safe_get(STEAM_WISHLIST_URL.format(steam_id=steam_id), params={'p': page})
            except requests.RequestException as e:
                raise SteamApiError(f"Steam API request failed: {e}") from e

            # 403 usually means a private profile
            if response.status_code in (403, 500):
                raise SteamPrivateProfileError("Steam profile is private or inaccessible")
            if not response.ok:
                raise SteamApiError(f"Steam API error: {response.status_code}")

            try:
                data = response.json()
            except ValueError as e:
                raise SteamApiError(f"Steam API returned invalid JSON: {e}") from e

            # An empty page comes back as [] or {}
            if not data or not isinstance(data, dict):
                break

            for app_id, item in data.items():
                try:
                    steam_app_id = int(app_id)
                except (TypeError, ValueError):
                    continue
                entries.append({
                    'steam_app_id': steam_app_id,
                    'title': item.get('name'),
                    'added_at': item.get('added'),
                    'priority': item.get('priority'),
                })

            if delay:
                self._sleep(delay)

        current_app.logger.info(f"Fetched {len(entries)} Steam wishlist entries for {steam_id}")
        return entries


steam_client = SteamClient()


def _record_failure(user_id, settings, error):
    settings.steam_sync_failures = (settings.steam_sync_failures or 0) + 1
    db.session.commit()
    current_app.logger.warning(
        f"Steam sync failure {settings.steam_sync_failures}/{MAX_SYNC_FAILURES} for user {user_id}: {error}"
    )
    if settings.steam_sync_failures == MAX_SYNC_FAILURES:
        notify_all(add_notifications_batch([{
            'user_id': user_id,
            'type': 'error',
            'title': 'Steam Sync Disabled',
            'message': 'Steam sync has been disabled after 3 consecutive failures. Please check your privacy settings.',
        }]))


def sync_user_steam_wishlist(user_id):
    """
    Imports a user's Steam wishlist as 'wanted' games.
    Returns {'success': True, 'added_count': n} or
    {'success': False, 'reason': ..., 'message': ...}.
    """
    user = db.session.get(User, user_id)
    if user is None or not user.steam_id64:
        return {'success': False, 'reason': 'no_steam_id', 'message': 'No Steam ID configured for this user.'}

    settings = get_user_settings(user_id)
    if settings.steam_sync_failures >= MAX_SYNC_FAILURES:
        current_app.logger.warning(f"Skipping Steam sync for user {user_id}: too many consecutive failures")
        return {
            'success': False,
            'reason': 'locked',
            'message': 'Too many authentication failures. Please check privacy settings.',
        }

    current_app.logger.info(f"Syncing Steam wishlist for user {user_id} ({user.steam_id64})")
    try:
        wishlist = steam_client.get_wishlist(user.steam_id64)
    except SteamPrivateProfileError as e:
        _record_failure(user_id, settings, e)
        return {'success': False, 'reason': 'private', 'message': str(e)}
    except SteamError as e:
        current_app.logger.error(f"Steam sync failed for user {user_id}: {e}")
        return {'success': False, 'reason': 'api_error', 'message': str(e)}

    current_games = Game.query.filter_by(user_id=user_id).all()
    games_by_igdb_id = {g.igdb_id: g for g in current_games if g.igdb_id}
    linked_app_ids = {g.steam_app_id for g in current_games if g.steam_app_id}

    pending_app_ids = list(dict.fromkeys(
        e['steam_app_id'] for e in wishlist if e['steam_app_id'] not in linked_app_ids
    ))

    added = []
    if pending_app_ids:
        steam_to_igdb = igdb_client.get_game_ids_by_steam_app_ids(pending_app_ids)

        links = []
        new_app_ids_by_igdb = {}
        for app_id in pending_app_ids:
            igdb_id = steam_to_igdb.get(app_id)
            if not igdb_id:
                current_app.logger.debug(f"No IGDB id found for Steam app {app_id}")
                continue
            existing = games_by_igdb_id.get(igdb_id)
            if existing is not None:
                if not existing.steam_app_id:
                    links.append({'id': existing.id, 'steam_app_id': app_id})
            else:
                new_app_ids_by_igdb.setdefault(igdb_id, app_id)

        if links:
            update_games_batch(links)

        if new_app_ids_by_igdb:
            details = igdb_client.get_games_by_ids(list(new_app_ids_by_igdb))
            games_data = []
            for game in details:
                app_id = new_app_ids_by_igdb.get(game.get('id'))
                if app_id is None:
                    continue
                formatted = igdb_client.format_game_data(game)
                games_data.append({
                    **formatted,
                    'user_id': user_id,
                    'steam_app_id': app_id,
                    'status': 'wanted',
                    'hidden': False,
                })
            added = add_games_batch(games_data)

    if settings.steam_sync_failures:
        settings.steam_sync_failures = 0
        db.session.commit()

    if added:
        notify_all(add_notifications_batch([{
            'user_id': user_id,
            'type': 'success',
            'title': 'Steam Wishlist Synced',
            'message': f"Successfully added {len(added)} games from your Steam Wishlist.",
        }]))

    current_app.logger.info(f"Steam sync for user {user_id} added {len(added)} games")
    return {'success': True, 'added_count': len(added)}
