# /gamewatch/gamewatch/titles.py

"""
Title normalization and release-name matching shared by every ingestion path
(RSS feeds, xREL, indexer results, Steam wishlist).

The order of RELEASE_TAG_PATTERNS and of the platform/DRM checks in
parse_release_metadata is significant. Changing it changes matching results,
so the golden tables in tests/test_titles.py pin it.
"""

import re

# --- Tag vocabulary (order matters) ---
RELEASE_TAG_PATTERNS = [
    re.compile(r'\b(1080p|720p|2160p|4k|uhd|bluray|h264|x264|h265|x265|hevc)\b', re.IGNORECASE),
    re.compile(r'\b(multi\d*|multilingual|german|english|french|italian|spanish|nordic|pal|ntsc|russian|japanese)\b', re.IGNORECASE),
    re.compile(r'\b(iso|rip|repack|re-repack|proper|internal|readnfo|nfo|re-nfo|crackfix|fix)\b', re.IGNORECASE),
    re.compile(r'\b(ps3|ps4|ps5|xbox|xbox360|x360|switch|nsw|wii|wiiu|nds|3ds|gba|psp|psvita|vita)\b', re.IGNORECASE),
    re.compile(r'\b(mac|linux|osx|os\.x|macos)\b', re.IGNORECASE),
    re.compile(r'\b(gog|steam|epic|uplay|origin|drm[ -]?free)\b', re.IGNORECASE),
    re.compile(r'\b(goty|deluxe|complete|gold|ultimate|collectors|definitive|remastered|remake|remaster)\b', re.IGNORECASE),
]

VERSION_PATTERN = re.compile(r'\b(v\d+([.\s-]\d+)*|build[.\s-]\d+)\b', re.IGNORECASE)

BRACKETED_SEGMENT = re.compile(r'[\[({][^\])}]*[\])}]')
YEAR_PATTERN = re.compile(r'\b\d{4}\b')
MIN_YEAR, MAX_YEAR = 1975, 2040

NON_SCENE_GROUPS = {'p2p', 'gls', 'initial', 'rarbg', 'crack'}

# (pattern, label) pairs, first match wins
LANGUAGE_PATTERNS = [
    (re.compile(r'\b(multi\d*|multilingual)\b', re.IGNORECASE), 'Multi'),
    (re.compile(r'\bgerman\b', re.IGNORECASE), 'German'),
    (re.compile(r'\bfrench\b', re.IGNORECASE), 'French'),
    (re.compile(r'\bspanish\b', re.IGNORECASE), 'Spanish'),
    (re.compile(r'\bitalian\b', re.IGNORECASE), 'Italian'),
    (re.compile(r'\brussian\b', re.IGNORECASE), 'Russian'),
    (re.compile(r'\bjapanese\b', re.IGNORECASE), 'Japanese'),
    (re.compile(r'\benglish\b', re.IGNORECASE), 'English'),
]

PLATFORM_PATTERNS = [
    (re.compile(r'\b(ps5|playstation\s*5)\b', re.IGNORECASE), 'PS5'),
    (re.compile(r'\b(ps4|playstation\s*4)\b', re.IGNORECASE), 'PS4'),
    (re.compile(r'\b(xbox\s*series|xbsx|xss)\b', re.IGNORECASE), 'Xbox Series'),
    (re.compile(r'\b(xbox|x360|xbox360)\b', re.IGNORECASE), 'Xbox'),
    (re.compile(r'\b(switch|nsw)\b', re.IGNORECASE), 'Switch'),
    (re.compile(r'\b(pc|windows|win64|win32)\b', re.IGNORECASE), 'PC'),
    (re.compile(r'\blinux\b', re.IGNORECASE), 'Linux'),
    (re.compile(r'\b(mac|macos|osx)\b', re.IGNORECASE), 'Mac'),
]

DRM_PATTERNS = [
    (re.compile(r'\bgog\b', re.IGNORECASE), 'GOG'),
    (re.compile(r'\bsteam\b', re.IGNORECASE), 'Steam'),
    (re.compile(r'\bepic\b', re.IGNORECASE), 'Epic'),
    (re.compile(r'\bdrm[ -]?free\b', re.IGNORECASE), 'DRM-Free'),
]

FEED_TITLE_SPLITTERS = [
    re.compile(r'[vV][0-9]'),
    re.compile(r' - '),
    re.compile(r' \('),
    re.compile(r' \['),
]


def normalize_title(title):
    """Lowercases a title and collapses every non-alphanumeric run into one space."""
    if not title:
        return ""
    return re.sub(r'[^a-z0-9]+', ' ', title.lower()).strip()


def _has_release_tag(text):
    return any(tag.search(text) for tag in RELEASE_TAG_PATTERNS) or bool(VERSION_PATTERN.search(text))


def _strip_metadata_brackets(match):
    inner = match.group(0)[1:-1].lower()
    is_numeric = bool(re.fullmatch(r'\d+', re.sub(r'\s', '', inner)))
    if is_numeric or _has_release_tag(inner):
        return " "
    # Anything else is probably part of the title, e.g. "Game (Special Edition)"
    return match.group(0)


def _strip_group_suffix(name):
    """
    Removes a trailing '-GROUP' suffix.

    Only scene-style names (no whitespace, dot or underscore separated) or an
    upper-case suffix glued to the last word count as a group, so hyphenated
    titles such as 'Half-Life' or 'Spider-Man' survive.
    """
    stripped = name.strip()
    if not re.search(r'\s', stripped) and re.search(r'[._]', stripped):
        return re.sub(r'-\w+$', '', stripped)
    if re.search(r'\s', stripped):
        return re.sub(r'(?<=\S)-[A-Z0-9]{2,}$', '', stripped)
    return stripped


def _strip_year(match):
    year = int(match.group(0))
    if MIN_YEAR <= year <= MAX_YEAR:
        return " "
    return match.group(0)


def clean_release_name(release_name):
    """
    Cleans a raw release name (torrent, NZB, scene dirname) down to the base
    game title.
    Example: 'Cyberpunk.2077.v2.1.GOG-GROUP' -> 'Cyberpunk 2077'
    """
    if not release_name:
        return ""

    cleaned = BRACKETED_SEGMENT.sub(_strip_metadata_brackets, release_name)
    cleaned = _strip_group_suffix(cleaned)
    cleaned = re.sub(r'[._\-]', ' ', cleaned)

    cleaned = VERSION_PATTERN.sub(' ', cleaned)
    for tag in RELEASE_TAG_PATTERNS:
        cleaned = tag.sub(' ', cleaned)

    # Numeric titles outside the year window survive (Cyberpunk 2077)
    cleaned = YEAR_PATTERN.sub(_strip_year, cleaned)

    cleaned = re.sub(r'[\[\]()]', ' ', cleaned)
    return re.sub(r'\s+', ' ', cleaned).strip()


def title_matches(a, b):
    """Loose title comparison on word boundaries; short titles must match exactly."""
    norm_a = normalize_title(a)
    norm_b = normalize_title(b)

    if not norm_a or not norm_b:
        return False
    if norm_a == norm_b:
        return True

    # Prevents "It" from matching "It Follows"
    if len(norm_a) < 5 or len(norm_b) < 5:
        return False

    pattern_a = re.compile(rf'\b{re.escape(norm_a)}\b')
    pattern_b = re.compile(rf'\b{re.escape(norm_b)}\b')
    return bool(pattern_a.search(norm_b) or pattern_b.search(norm_a))


def release_matches_game(release_name, game_title):
    """Checks whether a dirty release name belongs to a specific game title."""
    if title_matches(clean_release_name(release_name), game_title):
        return True

    # Fallback: every significant word of the title must appear in the release.
    # Short common words longer than 2 chars can still produce false positives.
    game_words = [w for w in normalize_title(game_title).split(' ') if len(w) > 2]
    if not game_words:
        return False

    normalized_release = re.sub(r'[._\-]', ' ', (release_name or '').lower())
    return all(word in normalized_release for word in game_words)


def _first_label(patterns, text):
    for pattern, label in patterns:
        if pattern.search(text):
            return label
    return None


def parse_release_metadata(release_name):
    """
    Extracts group, version, languages, platform, DRM and base title from a
    release name.
    """
    release_name = release_name or ""
    spaced = re.sub(r'[._]', ' ', release_name)

    group = None
    dash_group = re.search(r'-(\w+)(?:\[\w+\])?$', release_name)
    if dash_group:
        group = dash_group.group(1)
    else:
        bracket_group = re.match(r'^\[(\w+)\]', release_name)
        if bracket_group:
            group = bracket_group.group(1)

    version = None
    version_match = VERSION_PATTERN.search(spaced)
    if version_match:
        version = re.sub(r'[\s-]', '.', version_match.group(0))

    languages = [label for pattern, label in LANGUAGE_PATTERNS if pattern.search(spaced)]

    return {
        'game_title': clean_release_name(release_name),
        'version': version,
        'languages': languages or None,
        'group': group,
        'platform': _first_label(PLATFORM_PATTERNS, spaced),
        'drm': _first_label(DRM_PATTERNS, spaced),
        'is_scene': bool(group) and group.lower() not in NON_SCENE_GROUPS,
    }


def extract_game_name(release_title):
    """
    Heuristic pre-cleaning for feed titles like
    'Some Game - Deluxe Edition (v1.2 + DLC, MULTi10) [FitGirl Repack]'.
    """
    name = re.sub(r'FitGirl Repack', '', release_title or '', flags=re.IGNORECASE)
    for splitter in FEED_TITLE_SPLITTERS:
        parts = splitter.split(name)
        if len(parts) > 1 and len(parts[0]) > 2:
            name = parts[0]
            break
    return name.strip()
