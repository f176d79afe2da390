# /gamewatch/gamewatch/igdb.py

"""
Catalog resolver backed by IGDB (Twitch OAuth). Lookups are cached by
normalized name, batched where the API allows it, and never raise on API
failure: a failed query is simply "no match".
"""

# --- Standard Library Imports ---
import time
from datetime import timedelta
from threading import Lock

# --- Third-Party Library Imports ---
import requests
from flask import current_app

# --- Local Application Imports ---
from .cache import ExpiringCache
from .ssrf import UnsafeUrlError, safe_post
from .storage import get_settings_dict
from .titles import normalize_title
from .util import chunked, timestamp_to_date

IGDB_API_BASE = 'https://api.igdb.com/v4'
TWITCH_TOKEN_URL = 'https://id.twitch.tv/oauth2/token'
ID_BATCH_SIZE = 100
STEAM_EXTERNAL_CATEGORY = 1

GAME_FIELDS = (
    'fields name, slug, cover.url, first_release_date, summary, genres.name, '
    'platforms.name, aggregated_rating, rating, screenshots.url'
)


class IGDBError(Exception):
    pass


def _escape(value):
    return str(value).replace('\\', '\\\\').replace('"', '\\"')


def cover_url(game):
    url = (game.get('cover') or {}).get('url')
    if not url:
        return None
    url = url.replace('t_thumb', 't_cover_big')
    return f"https:{url}" if url.startswith('//') else url


class IGDBClient:

    def __init__(self, client_id=None, client_secret=None, cache=None):
        self._client_id = client_id
        self._client_secret = client_secret
        self.cache = cache if cache is not None else ExpiringCache(ttl=timedelta(hours=24))
        self._access_token = None
        self._token_expires = 0
        self._token_lock = Lock()

    # --- Auth ---

    def _credentials(self):
        if self._client_id and self._client_secret:
            return self._client_id, self._client_secret
        settings = get_settings_dict()
        client_id = settings.get('twitch_client_id') or current_app.config.get('TWITCH_CLIENT_ID')
        client_secret = settings.get('twitch_client_secret') or current_app.config.get('TWITCH_CLIENT_SECRET')
        return client_id, client_secret

    def _get_headers(self):
        """Gets and CACHES the auth headers required for any IGDB API call."""
        client_id, client_secret = self._credentials()
        if not all([client_id, client_secret]):
            raise IGDBError("Twitch API credentials are not configured.")

        with self._token_lock:
            if not self._access_token or time.time() > (self._token_expires - 60):
                current_app.logger.info("IGDB token is missing or expired. Requesting a new one...")
                auth_params = {'client_id': client_id, 'client_secret': client_secret, 'grant_type': 'client_credentials'}
                auth_response = safe_post(TWITCH_TOKEN_URL, params=auth_params, timeout=10)
                auth_response.raise_for_status()

                try:
                    token_data = auth_response.json()
                    access_token = token_data['access_token']
                    expires_in = float(token_data['expires_in'])
                except (ValueError, KeyError, TypeError) as e:
                    raise IGDBError(f"Malformed Twitch token response: {e!r}") from e
                self._access_token = access_token
                self._token_expires = time.time() + expires_in
                current_app.logger.info("Successfully obtained new IGDB token.")

        return {
            'Client-ID': client_id,
            'Authorization': f'Bearer {self._access_token}',
            'Accept': 'application/json',
        }

    def _request(self, endpoint, query_body):
        """Posts an Apicalypse query and returns the decoded JSON list."""
        response = safe_post(
            f'{IGDB_API_BASE}/{endpoint}', headers=self._get_headers(), data=query_body, timeout=20
        )
        if response.status_code == 401:
            # Token revoked early; force a refresh next time
            self._access_token = None
        response.raise_for_status()
        return response.json()

    # --- Lookups ---

    def search_games(self, query, limit=20):
        query_body = (
            f'search "{_escape(query)}"; {GAME_FIELDS}; '
            f'where version_parent = null; limit {limit};'
        )
        return self._request('games', query_body)

    def search(self, query):
        """
        Best single catalog match for a name, or None.
        Reads through the cache keyed by the normalized name.
        """
        key = normalize_title(query)
        if not key:
            return None

        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            results = self.search_games(query, limit=1)
        except UnsafeUrlError:
            raise
        except (requests.RequestException, IGDBError, ValueError, KeyError) as e:
            current_app.logger.warning(f"IGDB search failed for '{query}': {e}")
            return None

        if not results:
            return None

        game = results[0]
        match = {'id': game.get('id'), 'name': game.get('name'), 'cover_url': cover_url(game)}
        self.cache.set(key, match)
        return match

    def batch_search(self, queries):
        """Resolves many names at once; identical queries hit the API only once."""
        unique_queries = list(dict.fromkeys(q for q in queries if q))
        resolved = {query: self.search(query) for query in unique_queries}
        return {query: resolved.get(query) for query in queries}

    def get_games_by_ids(self, igdb_ids):
        """Fetches full records for the given ids, ID_BATCH_SIZE per request."""
        unique_ids = list(dict.fromkeys(int(i) for i in igdb_ids if i is not None))
        games = []
        for chunk in chunked(unique_ids, ID_BATCH_SIZE):
            ids_string = ",".join(map(str, chunk))
            query_body = f'{GAME_FIELDS}; where id = ({ids_string}); limit {len(chunk)};'
            try:
                games.extend(self._request('games', query_body))
            except UnsafeUrlError:
                raise
            except (requests.RequestException, IGDBError, ValueError) as e:
                current_app.logger.error(f"IGDB lookup failed for a batch of {len(chunk)} ids: {e}")
        return games

    def get_game_ids_by_steam_app_ids(self, steam_app_ids):
        """Maps Steam app ids to IGDB game ids via the external_games endpoint."""
        unique_ids = list(dict.fromkeys(int(i) for i in steam_app_ids if i is not None))
        mapping = {}
        for chunk in chunked(unique_ids, ID_BATCH_SIZE):
            uids = ",".join(f'"{app_id}"' for app_id in chunk)
            query_body = (
                f'fields game, uid; where category = {STEAM_EXTERNAL_CATEGORY} & uid = ({uids}); '
                f'limit {len(chunk) * 2};'
            )
            try:
                rows = self._request('external_games', query_body)
            except UnsafeUrlError:
                raise
            except (requests.RequestException, IGDBError, ValueError) as e:
                current_app.logger.error(f"IGDB Steam id lookup failed for a batch of {len(chunk)} ids: {e}")
                continue
            for row in rows:
                try:
                    app_id = int(row.get('uid'))
                except (TypeError, ValueError):
                    continue
                if row.get('game') and app_id not in mapping:
                    mapping[app_id] = row['game']
        return mapping

    @staticmethod
    def format_game_data(game):
        """Turns an IGDB game record into Game column values."""
        rating = game.get('aggregated_rating') or game.get('rating')
        return {
            'igdb_id': game.get('id'),
            'title': game.get('name'),
            'cover_url': cover_url(game),
            'summary': game.get('summary'),
            'genres': ", ".join(g['name'] for g in game.get('genres', []) if g.get('name')) or None,
            'platforms': ", ".join(p['name'] for p in game.get('platforms', []) if p.get('name')) or None,
            'rating': int(round(rating)) if rating else None,
            'release_date': timestamp_to_date(game.get('first_release_date')),
        }


igdb_client = IGDBClient()
