from datetime import datetime, timedelta, timezone

DISPLAY_TIMEZONE = timezone(timedelta(hours=9), 'KST')

ALLOWED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'webp'}
MIME_EXTENSIONS = {
    'image/png': 'png',
    'image/webp': 'webp',
    'image/gif': 'gif',
    'image/jpeg': 'jpg',
}

RECENT_HISTORY_KEY = 'office_restaurant_recent_history'
MAX_HISTORY_SIZE = 20

CACHE_VERSION_KEY = 'app_version'


# Date formatting
def parse_iso(value):
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(DISPLAY_TIMEZONE)


def format_board_date(value, now=None):
    """Board listing date: HH:MM:SS for today's posts, YYYY-MM-DD otherwise."""
    if not value:
        return ''
    date = parse_iso(value)
    today = (now or datetime.now(DISPLAY_TIMEZONE)).astimezone(DISPLAY_TIMEZONE).date()
    if date.date() == today:
        return date.strftime('%H:%M:%S')
    return date.strftime('%Y-%m-%d')


def format_detail_date(value):
    if not value:
        return ''
    return parse_iso(value).strftime('%Y.%m.%d %H:%M:%S')


def utc_now_iso():
    return datetime.now(timezone.utc).isoformat()


# Restaurant URLs
def generate_restaurant_url(sub_add1, sub_add2, title):
    return f'/restaurants/{sub_add1}/{sub_add2}/{title}'


def generate_restaurant_url_from_object(restaurant):
    if not restaurant.get('sub_add1') or not restaurant.get('sub_add2'):
        return None
    title = restaurant.get('title') or restaurant.get('name') or ''
    if not title:
        return None
    return generate_restaurant_url(restaurant['sub_add1'], restaurant['sub_add2'], title)


# Files
def allowed_file(filename):
    return '.' in filename and \
           filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def make_safe_ext(filename, mimetype=None):
    by_name = filename.rsplit('.', 1)[1].lower() if '.' in (filename or '') else ''
    ext = MIME_EXTENSIONS.get(mimetype or '') or by_name or 'jpg'
    return ext if ext in ALLOWED_EXTENSIONS else 'jpg'


def format_file_size(size):
    if size < 1024:
        return f'{size} B'
    if size < 1024 * 1024:
        return f'{size / 1024:.1f} KB'
    return f'{size / (1024 * 1024):.1f} MB'


# Recently viewed restaurants, kept in the visitor's session
def get_recent_history(session):
    return list(session.get(RECENT_HISTORY_KEY, []))


def add_to_recent_history(session, restaurant):
    entry = {
        'id': restaurant['id'],
        'name': restaurant.get('title') or restaurant.get('name') or '',
        'address': restaurant.get('address') or '',
        'category': restaurant.get('category'),
        'sub_add1': restaurant.get('sub_add1'),
        'sub_add2': restaurant.get('sub_add2'),
        'visited_at': utc_now_iso(),
    }
    history = [item for item in get_recent_history(session) if item['id'] != entry['id']]
    history.insert(0, entry)
    session[RECENT_HISTORY_KEY] = history[:MAX_HISTORY_SIZE]
    return entry


def clear_recent_history(session):
    session.pop(RECENT_HISTORY_KEY, None)


# Cache versioning
def clear_old_cache(cache, version, logger=None):
    """Drop every cached key when the deployed version changes. Returns True if cleared."""
    stored = cache.get(CACHE_VERSION_KEY)
    if stored == version:
        return False
    if logger:
        logger.info('App version changed (%s -> %s), clearing cache', stored, version)
    cache.clear()
    cache.set(CACHE_VERSION_KEY, version, timeout=0)
    return True


# Query filters
def quote_filter_value(value):
    """Double-quote a value for a PostgREST or=(...) filter so commas and parentheses stay literal."""
    escaped = str(value).replace('\\', '\\\\').replace('"', '\\"')
    return f'"{escaped}"'
