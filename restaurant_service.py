"""
Public restaurant queries: search, detail lookups, regions, favorites,
homepage statistics and recommendations.
"""

import logging
from datetime import datetime, timedelta, timezone

from postgrest.exceptions import APIError

from supabase_client import (
    LOGIN_REQUIRED_MESSAGE,
    ServiceError,
    first_row,
    get_error_message,
    page_range,
    total_pages,
)
from utils import quote_filter_value

logger = logging.getLogger(__name__)

RESTAURANT_VIEW = 'v_restaurants_with_stats'
DEFAULT_SEARCH_SIZE = 1000
DEFAULT_ORDER = 'visit_count'
ORDER_COLUMNS = {
    'visit_count': 'rank_value',
    'total_count': 'rank_value',
    'rank': 'rank_value',
    'rating': 'avg_rating',
    'amount': 'total_amount',
    'name': 'name',
}
TRENDING_DAYS = 30


def to_card(row):
    """Shape a view row for listing and detail pages. The display title wins over the raw name."""
    title = row.get('title') or row.get('name')
    return {
        'id': row.get('id'),
        'name': title,
        'title': title,
        'address': row.get('address'),
        'phone': row.get('phone'),
        'latitude': row.get('latitude'),
        'longitude': row.get('longitude'),
        'category': row.get('category'),
        'sub_add1': row.get('sub_add1'),
        'sub_add2': row.get('sub_add2'),
        'status': 'active' if row.get('status') else 'inactive',
        'created_at': row.get('created_at'),
        'updated_at': row.get('updated_at'),
        'total_amount': row.get('total_amount') or 0,
        'visit_count': row.get('visit_count') or 0,
        'avg_rating': row.get('avg_rating') or 0,
        'review_count': row.get('review_count') or 0,
        'region_rank': row.get('region_rank'),
        'province_rank': row.get('province_rank'),
        'national_rank': row.get('national_rank'),
    }


def _page(items, page, size, total):
    return {
        'data': items,
        'pagination': {
            'page': page,
            'size': size,
            'total': total,
            'pages': total_pages(total, size),
        },
    }


def _apply_region(query, region_id):
    # "시도|시군구" selects both levels; a bare value is treated as a 시군구
    if '|' in str(region_id):
        sub_add1, sub_add2 = str(region_id).split('|', 1)
        return query.eq('sub_add1', sub_add1).eq('sub_add2', sub_add2)
    return query.eq('sub_add2', region_id)


def search_restaurants(client, keyword=None, region_id=None, category=None, year=None,
                       page=1, size=DEFAULT_SEARCH_SIZE, order_by=DEFAULT_ORDER):
    query = client.table(RESTAURANT_VIEW).select('*', count='exact')

    if keyword:
        term = quote_filter_value(f'%{keyword}%')
        query = query.or_(f'name.ilike.{term},address.ilike.{term}')
    if region_id:
        query = _apply_region(query, region_id)
    if category:
        query = query.eq('category', category)

    try:
        if year:
            ids_response = client.table('visit_summary').select('restaurant_id').eq('year', year).execute()
            ids = sorted({row['restaurant_id'] for row in ids_response.data or []})
            if not ids:
                return _page([], page, size, 0)
            query = query.in_('id', ids)

        sort_by = (order_by or DEFAULT_ORDER).lower()
        column = ORDER_COLUMNS.get(sort_by, 'rank_value')
        start, end = page_range(page, size)
        response = query.order(column, desc=sort_by != 'name').range(start, end).execute()
    except APIError as e:
        logger.error('Restaurant search failed: %s', e)
        raise ServiceError(get_error_message(e)) from e

    items = [to_card(row) for row in response.data or []]
    total = response.count if response.count is not None else len(items)
    result = _page(items, page, size, total)
    result['pagination']['pages'] = total_pages(total, size, minimum=1)
    return result


def get_restaurant_by_id(client, restaurant_id):
    try:
        response = client.table(RESTAURANT_VIEW).select('*').eq('id', restaurant_id).single().execute()
    except APIError as e:
        raise ServiceError(get_error_message(e)) from e
    return to_card(response.data)


def _find_by_location(client, sub_add1, sub_add2, **filters):
    query = client.table(RESTAURANT_VIEW).select('*').eq('sub_add1', sub_add1).eq('sub_add2', sub_add2)
    for column, value in filters.items():
        query = query.eq(column, value)
    return query.order('created_at', desc=True).limit(1).execute().data or []


def get_restaurant_by_location(client, sub_add1, sub_add2, title):
    """Resolve /restaurants/<시도>/<시군구>/<상호>, preferring active rows matched by title."""
    try:
        rows = _find_by_location(client, sub_add1, sub_add2, title=title, status=True)
        if not rows:
            rows = _find_by_location(client, sub_add1, sub_add2, name=title, status=True)
        if not rows:
            quoted = quote_filter_value(title)
            rows = (client.table(RESTAURANT_VIEW).select('*')
                    .eq('sub_add1', sub_add1)
                    .eq('sub_add2', sub_add2)
                    .or_(f'title.eq.{quoted},name.eq.{quoted}')
                    .order('created_at', desc=True)
                    .limit(1)
                    .execute().data or [])
    except APIError as e:
        logger.error('Restaurant lookup failed for %s/%s/%s: %s', sub_add1, sub_add2, title, e)
        raise ServiceError(get_error_message(e)) from e

    if not rows:
        raise ServiceError('음식점을 찾을 수 없습니다.')
    return to_card(rows[0])


def _regions(rows):
    unique = {}
    for row in rows:
        key = (row.get('sub_add1'), row.get('sub_add2'))
        if key not in unique:
            unique[key] = row
    return [
        {'id': str(idx), 'sub_add1': sub_add1, 'sub_add2': sub_add2}
        for idx, (sub_add1, sub_add2) in enumerate(unique, start=1)
    ]


def get_regions(client):
    try:
        response = client.rpc('get_distinct_regions', {}).execute()
        return _regions(response.data or [])
    except APIError as e:
        logger.warning('RPC get_distinct_regions unavailable, using fallback: %s', e)

    try:
        response = (client.table('restaurants').select('sub_add1, sub_add2')
                    .not_.is_('sub_add1', 'null')
                    .not_.is_('sub_add2', 'null')
                    .execute())
    except APIError as e:
        raise ServiceError(get_error_message(e)) from e

    rows = sorted(response.data or [], key=lambda r: (r['sub_add1'], r['sub_add2']))
    return _regions(rows)


def get_regions_by_province(client, province):
    try:
        response = (client.table('restaurants').select('sub_add1, sub_add2')
                    .eq('sub_add1', province)
                    .order('sub_add2')
                    .execute())
    except APIError as e:
        raise ServiceError(get_error_message(e)) from e
    return _regions(response.data or [])


def get_categories(client):
    try:
        response = client.table('restaurants').select('category').not_.is_('category', 'null').execute()
    except APIError as e:
        raise ServiceError(get_error_message(e)) from e

    categories = []
    for row in response.data or []:
        category = row.get('category')
        if category and category not in categories:
            categories.append(category)
    return categories


def toggle_favorite(client, user_id, restaurant_id):
    if not user_id:
        raise ServiceError(LOGIN_REQUIRED_MESSAGE)

    try:
        existing = first_row(client.table('favorites').select('id')
                             .eq('user_id', user_id)
                             .eq('restaurant_id', restaurant_id)
                             .maybe_single()
                             .execute())
        if existing:
            client.table('favorites').delete().eq('id', existing['id']).execute()
            return {'is_favorite': False}

        client.table('favorites').insert({'user_id': user_id, 'restaurant_id': restaurant_id}).execute()
    except APIError as e:
        raise ServiceError(get_error_message(e)) from e
    return {'is_favorite': True}


def get_favorite_restaurants(client, user_id):
    if not user_id:
        raise ServiceError(LOGIN_REQUIRED_MESSAGE)

    try:
        fav_rows = client.table('favorites').select('restaurant_id').eq('user_id', user_id).execute().data or []
        ids = [row['restaurant_id'] for row in fav_rows]
        if not ids:
            return _page([], 1, 0, 0)
        data = client.table('v_restaurants_metrics').select('*').in_('id', ids).execute().data or []
    except APIError as e:
        raise ServiceError(get_error_message(e)) from e
    return _page(data, 1, len(data), len(data))


def get_homepage_stats(client):
    try:
        response = client.rpc('get_homepage_stats', {}).execute()
    except APIError as e:
        logger.error('Homepage stats unavailable: %s', e)
        raise ServiceError('홈페이지 통계를 불러올 수 없습니다.') from e

    stats = {}
    for row in response.data or []:
        stats[row.get('stat_name')] = int(row.get('stat_value') or 0)

    return {
        'region_count': stats.get('지역수', 0),
        'restaurant_count': stats.get('맛집수', 0),
        'total_visits': stats.get('방문기록', 0),
    }


# Recommendations
def get_popular_recommendations(client, limit=10):
    try:
        response = (client.table(RESTAURANT_VIEW).select('*')
                    .eq('is_active', True)
                    .order('total_visits', desc=True)
                    .limit(limit)
                    .execute())
    except APIError as e:
        logger.error('인기 음식점 추천 조회 실패: %s', get_error_message(e))
        return []
    return response.data or []


def get_location_based_recommendations(client, region, sub_region, limit=10):
    try:
        response = (client.table('restaurants').select('*')
                    .eq('is_active', True)
                    .eq('region', region)
                    .eq('sub_region', sub_region)
                    .order('created_at', desc=True)
                    .limit(limit)
                    .execute())
    except APIError as e:
        raise ServiceError(f'지역 기반 추천 조회 실패: {get_error_message(e)}') from e
    return response.data or []


def get_user_preference_recommendations(client, user_id, limit=10):
    """Restaurants in the category the user rates highest (4+), skipping ones already reviewed."""
    try:
        reviews = (client.table('reviews').select('restaurant_id, rating')
                   .eq('user_id', user_id)
                   .gte('rating', 4)
                   .execute().data or [])
        if not reviews:
            return get_popular_recommendations(client, limit)

        reviewed_ids = [review['restaurant_id'] for review in reviews]
        restaurants = (client.table('restaurants').select('id, category')
                       .in_('id', reviewed_ids)
                       .execute().data or [])

        counts = {}
        for restaurant in restaurants:
            category = restaurant.get('category')
            if category:
                counts[category] = counts.get(category, 0) + 1
        if not counts:
            return get_popular_recommendations(client, limit)
        top_category = max(counts, key=counts.get)

        response = (client.table(RESTAURANT_VIEW).select('*')
                    .eq('is_active', True)
                    .eq('category', top_category)
                    .not_.in_('id', reviewed_ids)
                    .order('avg_rating', desc=True)
                    .limit(limit)
                    .execute())
    except APIError as e:
        raise ServiceError(f'사용자 선호도 기반 추천 조회 실패: {get_error_message(e)}') from e
    return response.data or []


def get_trending_recommendations(client, limit=10, now=None):
    """Active restaurants ordered by how many reviews they received in the last 30 days."""
    since = (now or datetime.now(timezone.utc)) - timedelta(days=TRENDING_DAYS)
    try:
        recent = (client.table('reviews').select('restaurant_id')
                  .gte('created_at', since.isoformat())
                  .execute().data or [])
        counts = {}
        for review in recent:
            counts[review['restaurant_id']] = counts.get(review['restaurant_id'], 0) + 1
        if not counts:
            return []

        rows = (client.table('restaurants').select('*')
                .eq('is_active', True)
                .in_('id', list(counts))
                .execute().data or [])
    except APIError as e:
        logger.error('트렌딩 음식점 추천 조회 실패: %s', get_error_message(e))
        return []

    rows.sort(key=lambda row: counts.get(row['id'], 0), reverse=True)
    return rows[:limit]
