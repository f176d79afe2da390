import os


def _env_bool(name, default):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Base configuration."""
    SECRET_KEY = os.getenv('SECRET_KEY', 'your-default-secret-key-for-dev')

    # --- Database Configuration ---
    SQLALCHEMY_DATABASE_URI = os.getenv('DATABASE_URL', 'sqlite:///gamewatch.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # --- External APIs ---
    # Values stored in the Setting table take precedence over these.
    TWITCH_CLIENT_ID = os.getenv('TWITCH_CLIENT_ID', '')
    TWITCH_CLIENT_SECRET = os.getenv('TWITCH_CLIENT_SECRET', '')
    XREL_API_BASE = os.getenv('XREL_API_BASE', 'https://api.xrel.to')

    # --- Scheduler ---
    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', True)
    GAME_UPDATE_INTERVAL_HOURS = int(os.getenv('GAME_UPDATE_INTERVAL_HOURS', 24))
    XREL_CHECK_INTERVAL_HOURS = int(os.getenv('XREL_CHECK_INTERVAL_HOURS', 6))
    RSS_REFRESH_INTERVAL_MINUTES = int(os.getenv('RSS_REFRESH_INTERVAL_MINUTES', 30))
    STEAM_SYNC_INTERVAL_HOURS = int(os.getenv('STEAM_SYNC_INTERVAL_HOURS', 24))
    AUTO_SEARCH_INTERVAL_MINUTES = int(os.getenv('AUTO_SEARCH_INTERVAL_MINUTES', 60))
    DOWNLOAD_STATUS_INTERVAL_MINUTES = int(os.getenv('DOWNLOAD_STATUS_INTERVAL_MINUTES', 1))

    # --- Processing ---
    BATCH_SIZE = int(os.getenv('BATCH_SIZE', 100))
    CATALOG_CACHE_TTL_HOURS = int(os.getenv('CATALOG_CACHE_TTL_HOURS', 24))
    WORKER_THREADS = int(os.getenv('WORKER_THREADS', 2))
    STEAM_PAGE_DELAY_SECONDS = float(os.getenv('STEAM_PAGE_DELAY_SECONDS', 0.5))

    # --- Network guard ---
    # Allows RFC1918/ULA targets for self-hosted setups. Link-local, metadata
    # and loopback targets are always refused for supplied URLs.
    SSRF_ALLOW_PRIVATE = _env_bool('SSRF_ALLOW_PRIVATE', True)

    # --- Logging ---
    LOG_DIR = os.getenv('LOG_DIR', '')
