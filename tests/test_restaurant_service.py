from datetime import datetime, timezone

import pytest

import restaurant_service as rs
from supabase_client import ServiceError


def restaurant(id, name, sub_add1='서울', sub_add2='종로구', **extra):
    row = {'id': id, 'name': name, 'title': None, 'address': f'{sub_add1} {sub_add2} 1', 'category': '한식',
           'sub_add1': sub_add1, 'sub_add2': sub_add2, 'status': True, 'rank_value': 0,
           'visit_count': 0, 'created_at': '2024-01-01T00:00:00+00:00'}
    row.update(extra)
    return row


@pytest.fixture
def seeded(db):
    db.seed(rs.RESTAURANT_VIEW,
            restaurant(1, '종로국밥', rank_value=30, visit_count=30),
            restaurant(2, '광화문칼국수', rank_value=50, visit_count=50, category='면'),
            restaurant(3, '강남스시', '서울', '강남구', rank_value=10, visit_count=10, category='일식'),
            restaurant(4, '해운대회', '부산', '해운대구', rank_value=5))
    return db


def test_to_card_prefers_title_and_defaults_stats():
    card = rs.to_card({'id': 1, 'name': '원래이름', 'title': '표시이름', 'status': False})
    assert card['name'] == card['title'] == '표시이름'
    assert card['status'] == 'inactive'
    assert card['visit_count'] == 0 and card['avg_rating'] == 0


def test_search_orders_by_visit_count_desc(seeded):
    result = rs.search_restaurants(seeded)
    assert [r['id'] for r in result['data']] == [2, 1, 3, 4]
    assert result['pagination'] == {'page': 1, 'size': 1000, 'total': 4, 'pages': 1}


def test_search_by_keyword_matches_name_or_address(seeded):
    result = rs.search_restaurants(seeded, keyword='국밥')
    assert [r['id'] for r in result['data']] == [1]

    result = rs.search_restaurants(seeded, keyword='해운대구')
    assert [r['id'] for r in result['data']] == [4]


def test_search_keyword_with_filter_punctuation(seeded):
    seeded.seed(rs.RESTAURANT_VIEW, restaurant(5, '맛집(본점), 2층'))
    result = rs.search_restaurants(seeded, keyword='(본점),')
    assert [r['id'] for r in result['data']] == [5]


def test_location_lookup_with_parentheses_in_title(db):
    db.seed(rs.RESTAURANT_VIEW, restaurant(1, '옛이름', title='칼국수(본점)', status=False))
    assert rs.get_restaurant_by_location(db, '서울', '종로구', '칼국수(본점)')['id'] == 1


def test_search_by_region_pair_and_category(seeded):
    result = rs.search_restaurants(seeded, region_id='서울|종로구')
    assert {r['id'] for r in result['data']} == {1, 2}

    result = rs.search_restaurants(seeded, region_id='강남구')
    assert [r['id'] for r in result['data']] == [3]

    result = rs.search_restaurants(seeded, category='면')
    assert [r['id'] for r in result['data']] == [2]


def test_search_by_name_sorts_ascending(seeded):
    result = rs.search_restaurants(seeded, order_by='name')
    names = [r['name'] for r in result['data']]
    assert names == sorted(names)


def test_search_by_year_uses_visit_summary(seeded):
    seeded.seed('visit_summary', {'restaurant_id': 3, 'year': 2023}, {'restaurant_id': 4, 'year': 2024})
    result = rs.search_restaurants(seeded, year=2023)
    assert [r['id'] for r in result['data']] == [3]


def test_search_by_year_without_visits_is_empty(seeded):
    result = rs.search_restaurants(seeded, year=1999)
    assert result['data'] == []
    assert result['pagination']['total'] == 0


def test_search_paginates(seeded):
    result = rs.search_restaurants(seeded, page=2, size=3)
    assert [r['id'] for r in result['data']] == [4]
    assert result['pagination']['pages'] == 2


def test_search_error_becomes_service_error(seeded):
    seeded.fail(rs.RESTAURANT_VIEW, message='view missing')
    with pytest.raises(ServiceError) as excinfo:
        rs.search_restaurants(seeded)
    assert excinfo.value.message == 'view missing'


def test_get_by_id_not_found(seeded):
    assert rs.get_restaurant_by_id(seeded, 2)['name'] == '광화문칼국수'
    with pytest.raises(ServiceError):
        rs.get_restaurant_by_id(seeded, 99)


def test_location_lookup_prefers_active_title_match(db):
    db.seed(rs.RESTAURANT_VIEW,
            restaurant(1, '옛이름', title='맛있는집', status=False, created_at='2024-02-01T00:00:00+00:00'),
            restaurant(2, '옛이름2', title='맛있는집', status=True))
    assert rs.get_restaurant_by_location(db, '서울', '종로구', '맛있는집')['id'] == 2


def test_location_lookup_falls_back_to_name_then_any_status(db):
    db.seed(rs.RESTAURANT_VIEW, restaurant(1, '이름만', status=True))
    assert rs.get_restaurant_by_location(db, '서울', '종로구', '이름만')['id'] == 1

    db.seed(rs.RESTAURANT_VIEW, restaurant(2, '폐업식당', status=False))
    assert rs.get_restaurant_by_location(db, '서울', '종로구', '폐업식당')['id'] == 2


def test_location_lookup_not_found(db):
    with pytest.raises(ServiceError) as excinfo:
        rs.get_restaurant_by_location(db, '서울', '종로구', '없는집')
    assert excinfo.value.message == '음식점을 찾을 수 없습니다.'


def test_regions_from_rpc(db):
    db.rpc_results['get_distinct_regions'] = [
        {'sub_add1': '서울', 'sub_add2': '강남구'},
        {'sub_add1': '서울', 'sub_add2': '강남구'},
        {'sub_add1': '부산', 'sub_add2': '중구'},
    ]
    assert rs.get_regions(db) == [
        {'id': '1', 'sub_add1': '서울', 'sub_add2': '강남구'},
        {'id': '2', 'sub_add1': '부산', 'sub_add2': '중구'},
    ]


def test_regions_fallback_skips_nulls_and_sorts(db):
    db.seed('restaurants',
            {'sub_add1': '서울', 'sub_add2': '중구'},
            {'sub_add1': '부산', 'sub_add2': '중구'},
            {'sub_add1': '서울', 'sub_add2': None},
            {'sub_add1': '부산', 'sub_add2': '중구'})
    regions = rs.get_regions(db)
    assert [(r['sub_add1'], r['sub_add2']) for r in regions] == [('부산', '중구'), ('서울', '중구')]


def test_categories_are_unique(db):
    db.seed('restaurants', {'category': '한식'}, {'category': None}, {'category': '한식'}, {'category': '중식'})
    assert rs.get_categories(db) == ['한식', '중식']


def test_toggle_favorite(db):
    assert rs.toggle_favorite(db, 'u1', 7) == {'is_favorite': True}
    assert len(db.rows('favorites')) == 1
    assert rs.toggle_favorite(db, 'u1', 7) == {'is_favorite': False}
    assert db.rows('favorites') == []


def test_toggle_favorite_requires_login(db):
    with pytest.raises(ServiceError):
        rs.toggle_favorite(db, None, 7)


def test_favorite_restaurants(db):
    db.seed('favorites', {'user_id': 'u1', 'restaurant_id': 1})
    db.seed('v_restaurants_metrics', {'id': 1, 'name': 'A'}, {'id': 2, 'name': 'B'})
    result = rs.get_favorite_restaurants(db, 'u1')
    assert [r['id'] for r in result['data']] == [1]
    assert rs.get_favorite_restaurants(db, 'u2')['data'] == []


def test_homepage_stats(db):
    db.rpc_results['get_homepage_stats'] = [
        {'stat_name': '지역수', 'stat_value': '12'},
        {'stat_name': '맛집수', 'stat_value': 340},
        {'stat_name': '방문기록', 'stat_value': 5000},
    ]
    assert rs.get_homepage_stats(db) == {'region_count': 12, 'restaurant_count': 340, 'total_visits': 5000}


def test_homepage_stats_error(db):
    with pytest.raises(ServiceError) as excinfo:
        rs.get_homepage_stats(db)
    assert excinfo.value.message == '홈페이지 통계를 불러올 수 없습니다.'


def test_popular_recommendations_swallow_errors(db):
    db.fail(rs.RESTAURANT_VIEW)
    assert rs.get_popular_recommendations(db) == []


def test_preference_recommendations_use_top_category(db):
    db.seed('reviews',
            {'user_id': 'u1', 'restaurant_id': 1, 'rating': 5},
            {'user_id': 'u1', 'restaurant_id': 2, 'rating': 4},
            {'user_id': 'u1', 'restaurant_id': 3, 'rating': 2})
    db.seed('restaurants', {'id': 1, 'category': '면'}, {'id': 2, 'category': '면'}, {'id': 3, 'category': '한식'})
    db.seed(rs.RESTAURANT_VIEW,
            {'id': 1, 'category': '면', 'is_active': True, 'avg_rating': 5},
            {'id': 5, 'category': '면', 'is_active': True, 'avg_rating': 3},
            {'id': 6, 'category': '면', 'is_active': True, 'avg_rating': 4.5},
            {'id': 7, 'category': '한식', 'is_active': True, 'avg_rating': 5})

    assert [r['id'] for r in rs.get_user_preference_recommendations(db, 'u1')] == [6, 5]


def test_preference_recommendations_fall_back_to_popular(db):
    db.seed(rs.RESTAURANT_VIEW,
            {'id': 1, 'is_active': True, 'total_visits': 3},
            {'id': 2, 'is_active': True, 'total_visits': 9})
    assert [r['id'] for r in rs.get_user_preference_recommendations(db, 'nobody')] == [2, 1]


def test_trending_counts_recent_reviews(db):
    now = datetime(2024, 3, 10, tzinfo=timezone.utc)
    db.seed('reviews',
            {'restaurant_id': 1, 'created_at': '2024-03-01T00:00:00+00:00'},
            {'restaurant_id': 2, 'created_at': '2024-03-02T00:00:00+00:00'},
            {'restaurant_id': 2, 'created_at': '2024-03-03T00:00:00+00:00'},
            {'restaurant_id': 3, 'created_at': '2023-12-01T00:00:00+00:00'})
    db.seed('restaurants',
            {'id': 1, 'is_active': True}, {'id': 2, 'is_active': True}, {'id': 3, 'is_active': True})

    assert [r['id'] for r in rs.get_trending_recommendations(db, now=now)] == [2, 1]
