from datetime import datetime, timezone

from utils import (
    MAX_HISTORY_SIZE,
    add_to_recent_history,
    allowed_file,
    clear_old_cache,
    clear_recent_history,
    format_board_date,
    format_detail_date,
    format_file_size,
    generate_restaurant_url,
    generate_restaurant_url_from_object,
    get_recent_history,
    make_safe_ext,
    quote_filter_value,
)


NOW = datetime(2024, 3, 10, 3, 0, tzinfo=timezone.utc)  # 12:00 KST


def test_board_date_today_shows_time():
    assert format_board_date('2024-03-10T01:02:03Z', now=NOW) == '10:02:03'


def test_board_date_other_day_shows_date():
    assert format_board_date('2024-03-08T01:02:03Z', now=NOW) == '2024-03-08'


def test_board_date_uses_korean_day_boundary():
    # 16:30 UTC on the 9th is already the 10th in Korea
    assert format_board_date('2024-03-09T16:30:00+00:00', now=NOW) == '01:30:00'


def test_empty_dates():
    assert format_board_date(None) == ''
    assert format_detail_date('') == ''


def test_detail_date():
    assert format_detail_date('2024-03-10T01:02:03Z') == '2024.03.10 10:02:03'


def test_restaurant_url():
    assert generate_restaurant_url('서울', '강남구', '맛집') == '/restaurants/서울/강남구/맛집'
    assert generate_restaurant_url_from_object(
        {'sub_add1': '서울', 'sub_add2': '종로구', 'name': '국밥집'}) == '/restaurants/서울/종로구/국밥집'
    assert generate_restaurant_url_from_object({'sub_add1': '서울', 'title': 'x'}) is None


def test_file_helpers():
    assert allowed_file('photo.JPG')
    assert not allowed_file('script.exe')
    assert not allowed_file('noext')
    assert make_safe_ext('a.png', 'image/webp') == 'webp'
    assert make_safe_ext('a.exe', None) == 'jpg'
    assert format_file_size(500) == '500 B'
    assert format_file_size(2048) == '2.0 KB'
    assert format_file_size(3 * 1024 * 1024) == '3.0 MB'


def test_recent_history_dedupes_and_caps():
    session = {}
    for i in range(MAX_HISTORY_SIZE + 5):
        add_to_recent_history(session, {'id': i, 'title': f'식당{i}'})
    add_to_recent_history(session, {'id': 3, 'name': '식당3'})

    history = get_recent_history(session)
    assert len(history) == MAX_HISTORY_SIZE
    assert history[0]['id'] == 3
    assert [h['id'] for h in history].count(3) == 1

    clear_recent_history(session)
    assert get_recent_history(session) == []


class DictCache:
    def __init__(self):
        self.store = {}

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, timeout=None):
        self.store[key] = value

    def clear(self):
        self.store.clear()


def test_clear_old_cache_only_on_version_change():
    cache = DictCache()
    cache.set('stale', 1)

    assert clear_old_cache(cache, '1.0.0') is True
    assert 'stale' not in cache.store

    cache.set('fresh', 1)
    assert clear_old_cache(cache, '1.0.0') is False
    assert cache.store['fresh'] == 1


def test_quote_filter_value():
    assert quote_filter_value('국밥') == '"국밥"'
    assert quote_filter_value('%맛집(본점), 2층%') == '"%맛집(본점), 2층%"'
    assert quote_filter_value('say "hi"') == '"say \\"hi\\""'
    assert quote_filter_value('a\\b') == '"a\\\\b"'
