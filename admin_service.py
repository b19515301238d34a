"""
Back office operations.

Every call takes an AdminContext. A context becomes `verified` only through
verify_admin(); operations given a verified context skip the profile role
lookup, unverified ones run it first. The lookup is a courtesy check for the
UI: row-level security in the database is what actually guards the data.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace

from postgrest.exceptions import APIError

from board_service import BOARD_TYPES
from supabase_client import (
    ADMIN_REQUIRED_MESSAGE,
    ServiceError,
    call_edge_function,
    get_error_message,
    page_range,
    total_pages,
)
from utils import quote_filter_value, utc_now_iso

logger = logging.getLogger(__name__)

_stats_executor = ThreadPoolExecutor(max_workers=6, thread_name_prefix='admin-stats')

REPORT_STATUSES = ('pending', 'in_progress', 'dismissed', 'penalized')
MODERATION_ACTIONS = ('hide', 'unhide', 'delete')


@dataclass(frozen=True)
class AdminContext:
    client: object
    user_id: str = None
    access_token: str = None
    verified: bool = False


def check_admin_role(client, user_id):
    """True when the user's profile has role 'admin'. Any failure counts as not admin."""
    if not user_id:
        logger.info('Admin check without a signed-in user')
        return False
    try:
        response = client.table('profiles').select('role').eq('user_id', user_id).single().execute()
    except APIError as e:
        logger.info('프로필 조회 실패: %s', e.message)
        return False
    except Exception as e:
        logger.error('관리자 권한 확인 실패: %s', e)
        return False

    if not response.data:
        return False
    return response.data.get('role') == 'admin'


def verify_admin(ctx):
    """Check the role once and return a context that later calls can trust."""
    if ctx.verified:
        return ctx
    if not check_admin_role(ctx.client, ctx.user_id):
        raise ServiceError(ADMIN_REQUIRED_MESSAGE)
    return replace(ctx, verified=True)


def _require_admin(ctx):
    if not ctx.verified and not check_admin_role(ctx.client, ctx.user_id):
        raise ServiceError(ADMIN_REQUIRED_MESSAGE)


def _listing(data, total, page, limit):
    return {
        'data': data,
        'total': total,
        'page': page,
        'limit': limit,
        'total_pages': total_pages(total, limit),
    }


def _attach_profiles(client, rows, key, target):
    ids = sorted({row[key] for row in rows if row.get(key)})
    profiles = {}
    if ids:
        found = (client.table('profiles').select('user_id, nickname, email')
                 .in_('user_id', ids)
                 .execute().data or [])
        profiles = {p['user_id']: {'nickname': p.get('nickname'), 'email': p.get('email') or ''} for p in found}
    for row in rows:
        row[target] = profiles.get(row.get(key), {'nickname': '알 수 없음', 'email': ''})
    return rows


# Restaurants
def get_restaurants(ctx, filters=None):
    _require_admin(ctx)
    filters = filters or {}
    page = int(filters.get('page') or 1)
    limit = int(filters.get('limit') or 20)
    start, end = page_range(page, limit)

    query = ctx.client.table('restaurants').select('*', count='exact')
    search = filters.get('search')
    if search:
        term = quote_filter_value(f'%{search}%')
        query = query.or_(f'name.ilike.{term},address.ilike.{term}')
    for column in ('region', 'sub_region', 'category'):
        if filters.get(column):
            query = query.eq(column, filters[column])
    if filters.get('is_active') is not None:
        query = query.eq('is_active', filters['is_active'])

    try:
        response = query.order('created_at', desc=True).range(start, end).execute()
    except APIError as e:
        raise ServiceError(f'음식점 목록 조회 실패: {get_error_message(e)}') from e
    return _listing(response.data or [], response.count or 0, page, limit)


def create_restaurant(ctx, data):
    _require_admin(ctx)
    row = dict(data)
    row.setdefault('is_active', True)
    try:
        response = ctx.client.table('restaurants').insert(row).execute()
    except APIError as e:
        raise ServiceError(f'음식점 생성 실패: {get_error_message(e)}') from e
    return response.data[0]


def update_restaurant(ctx, restaurant_id, data):
    _require_admin(ctx)
    changes = dict(data, updated_at=utc_now_iso())
    try:
        response = ctx.client.table('restaurants').update(changes).eq('id', restaurant_id).execute()
    except APIError as e:
        logger.error('Restaurant %s update failed: %s', restaurant_id, e)
        raise ServiceError(f'음식점 수정 실패: {get_error_message(e)}') from e

    if not response.data:
        raise ServiceError('음식점 수정 실패: 업데이트된 음식점 정보를 찾을 수 없습니다.')
    logger.info('Restaurant %s updated', restaurant_id)
    return response.data[0]


def delete_restaurant(ctx, restaurant_id):
    _require_admin(ctx)
    try:
        ctx.client.table('restaurants').delete().eq('id', restaurant_id).execute()
    except APIError as e:
        return {'success': False, 'message': f'음식점 삭제 실패: {get_error_message(e)}'}
    return {'success': True, 'message': '음식점이 성공적으로 삭제되었습니다.'}


# Users
def _user_row(row):
    return {
        'user_id': row.get('user_id'),
        'email': row.get('email') or '',
        'nickname': row.get('nickname') or 'N/A',
        'role': row.get('role') or 'user',
        'created_at': row.get('created_at'),
    }


def get_users(ctx, page=1, limit=20, role='all', search=''):
    """Users from the admin-users edge function, or from profiles when it is unreachable."""
    _require_admin(ctx)

    try:
        res = call_edge_function('admin-users', {
            'action': 'list',
            'page': page,
            'perPage': limit,
            'role': role or 'all',
            'search': search or '',
        }, ctx.access_token)
        return {
            'data': [_user_row(u) for u in res.get('data') or []],
            'total': res.get('total') or 0,
            'page': res.get('page') or page,
            'limit': res.get('perPage') or limit,
            'total_pages': res.get('totalPages') or 1,
        }
    except ServiceError as e:
        logger.warning('admin-users edge function failed, using profiles: %s', e.message)

    query = ctx.client.table('profiles').select('user_id, email, nickname, role, created_at', count='exact')
    if role and role != 'all':
        query = query.eq('role', role)
    if search and search.strip():
        term = quote_filter_value(f'%{search.strip()}%')
        query = query.or_(f'email.ilike.{term},nickname.ilike.{term}')

    start, end = page_range(page, limit)
    try:
        response = query.order('created_at', desc=True).range(start, end).execute()
    except APIError as e:
        raise ServiceError(f'사용자 목록 조회 실패: {get_error_message(e)}') from e
    return _listing([_user_row(r) for r in response.data or []], response.count or 0, page, limit)


def update_user_role(ctx, user_id, role):
    _require_admin(ctx)
    if role not in ('admin', 'user'):
        raise ServiceError('사용자 역할 수정 실패: 올바르지 않은 역할입니다.')
    try:
        response = (ctx.client.table('profiles')
                    .update({'role': role, 'updated_at': utc_now_iso()})
                    .eq('user_id', user_id)
                    .execute())
    except APIError as e:
        raise ServiceError(f'사용자 역할 수정 실패: {get_error_message(e)}') from e
    if not response.data:
        raise ServiceError('사용자 역할 수정 실패: 사용자를 찾을 수 없습니다.')
    return response.data[0]


def delete_user(ctx, user_id):
    """Delete the auth user and profile.

    When only the profile could be removed the result is a partial success:
    {'success': True, 'partial': True, 'message': ...}.
    """
    _require_admin(ctx)

    try:
        res = call_edge_function('admin-users', {'action': 'delete', 'user_id': user_id}, ctx.access_token)
    except ServiceError as e:
        logger.warning('admin-users delete failed, removing profile only: %s', e.message)
        try:
            ctx.client.table('profiles').delete().eq('user_id', user_id).execute()
        except APIError as profile_error:
            raise ServiceError(
                f'사용자 삭제 실패: 프로필 삭제 실패: {get_error_message(profile_error)}'
            ) from profile_error
        return {'success': True, 'partial': True,
                'message': 'Admin Edge 접근이 실패하여 프로필만 삭제되었습니다.'}

    if res.get('partial'):
        return {'success': True, 'partial': True,
                'message': f"Admin API 제한으로 프로필만 삭제되었습니다. ({res.get('message') or ''})"}
    logger.info('User %s deleted', user_id)
    return {'success': True, 'partial': False, 'message': '사용자가 삭제되었습니다.'}


def create_admin_user(ctx, email, password, nickname):
    _require_admin(ctx)
    try:
        res = call_edge_function('admin-users', {
            'action': 'create_admin',
            'email': email,
            'password': password,
            'nickname': nickname,
        }, ctx.access_token)
    except ServiceError as e:
        raise ServiceError(f'관리자 계정 생성 실패: {e.message}') from e

    new_user_id = res.get('user_id')
    if not new_user_id:
        raise ServiceError('관리자 계정 생성 실패: 생성된 user_id를 확인할 수 없습니다.')
    return {
        'user_id': new_user_id,
        'email': email,
        'nickname': nickname,
        'role': 'admin',
        'created_at': utc_now_iso(),
    }


# Agencies
def get_agencies(ctx, page=1, limit=20):
    _require_admin(ctx)
    start, end = page_range(page, limit)
    try:
        response = (ctx.client.table('agencies').select('*', count='exact')
                    .order('created_at', desc=True)
                    .range(start, end)
                    .execute())
    except APIError as e:
        raise ServiceError(f'기관 목록 조회 실패: {get_error_message(e)}') from e
    return _listing(response.data or [], response.count or 0, page, limit)


# Reviews
def get_admin_reviews(ctx, page=1, limit=20, search=None):
    _require_admin(ctx)
    start, end = page_range(page, limit)

    query = ctx.client.table('v_reviews_detailed').select('*', count='exact')
    if search and search.strip():
        s = quote_filter_value(f'%{search.strip()}%')
        query = query.or_(f'restaurant_name.ilike.{s},user_email.ilike.{s},user_nickname.ilike.{s},content.ilike.{s}')

    try:
        response = query.order('created_at', desc=True).range(start, end).execute()
        reviews = response.data or []

        restaurant_ids = sorted({r['restaurant_id'] for r in reviews if r.get('restaurant_id')})
        if restaurant_ids:
            regions = (ctx.client.table('restaurants').select('id, region, sub_region')
                       .in_('id', restaurant_ids)
                       .execute().data or [])
            by_id = {r['id']: r for r in regions}
            for review in reviews:
                info = by_id.get(review.get('restaurant_id'))
                if info:
                    review['region'] = info.get('region')
                    review['sub_region'] = info.get('sub_region')
    except APIError as e:
        raise ServiceError(f'리뷰 목록 조회 실패: {get_error_message(e)}') from e
    return _listing(reviews, response.count or 0, page, limit)


def delete_review(ctx, review_id):
    _require_admin(ctx)
    try:
        ctx.client.table('reviews').delete().eq('id', review_id).execute()
    except APIError as e:
        raise ServiceError(f'리뷰 삭제 실패: {get_error_message(e)}') from e
    return {'success': True}


# Posts
def get_posts(ctx, board_type=None, page=1, limit=20):
    _require_admin(ctx)
    start, end = page_range(page, limit)
    query = ctx.client.table('posts').select('*', count='exact')
    if board_type:
        query = query.eq('board_type', board_type)
    try:
        response = query.order('created_at', desc=True).range(start, end).execute()
        posts = _attach_profiles(ctx.client, response.data or [], 'author_id', 'author')
    except APIError as e:
        raise ServiceError(f'게시글 목록 조회 실패: {get_error_message(e)}') from e
    return _listing(posts, response.count or 0, page, limit)


def create_post(ctx, data):
    _require_admin(ctx)
    title = (data.get('title') or '').strip()
    content = (data.get('content') or '').strip()
    board_type = data.get('board_type')
    if not title or not content:
        raise ServiceError('게시글 작성 실패: 제목과 내용을 입력해주세요.')
    if board_type not in BOARD_TYPES:
        raise ServiceError('게시글 작성 실패: 게시판 종류가 올바르지 않습니다.')
    try:
        response = ctx.client.table('posts').insert({
            'author_id': ctx.user_id,
            'title': title,
            'content': content,
            'board_type': board_type,
            'is_pinned': bool(data.get('is_pinned')),
        }).execute()
        return _attach_profiles(ctx.client, response.data, 'author_id', 'author')[0]
    except APIError as e:
        raise ServiceError(f'게시글 작성 실패: {get_error_message(e)}') from e


def update_post(ctx, post_id, data):
    _require_admin(ctx)
    changes = dict(data, updated_at=utc_now_iso())
    changes.pop('author', None)
    try:
        response = ctx.client.table('posts').update(changes).eq('id', post_id).execute()
        if not response.data:
            raise ServiceError('게시글 수정 실패: 업데이트된 게시글 정보를 찾을 수 없습니다.')
        return _attach_profiles(ctx.client, response.data, 'author_id', 'author')[0]
    except APIError as e:
        raise ServiceError(f'게시글 수정 실패: {get_error_message(e)}') from e


def delete_post(ctx, post_id):
    _require_admin(ctx)
    try:
        ctx.client.table('posts').delete().eq('id', post_id).execute()
    except APIError as e:
        return {'success': False, 'message': f'게시글 삭제 실패: {get_error_message(e)}'}
    return {'success': True, 'message': '게시글이 성공적으로 삭제되었습니다.'}


# Statistics
def _count(client, table, **filters):
    query = client.table(table).select('*', count='exact')
    for column, value in filters.items():
        query = query.eq(column, value)
    return query.limit(1).execute().count or 0


def get_dashboard_stats(ctx):
    """Counts for the dashboard cards. Any failure yields all zeros."""
    empty = {
        'total_restaurants': 0,
        'active_restaurants': 0,
        'inactive_restaurants': 0,
        'total_users': 0,
        'total_posts': 0,
        'total_reviews': 0,
        'average_rating': 0,
    }
    try:
        _require_admin(ctx)
        client = ctx.client
        futures = {
            'total_restaurants': _stats_executor.submit(_count, client, 'restaurants'),
            'active_restaurants': _stats_executor.submit(_count, client, 'restaurants', is_active=True),
            'inactive_restaurants': _stats_executor.submit(_count, client, 'restaurants', is_active=False),
            'total_users': _stats_executor.submit(_count, client, 'profiles'),
            'total_posts': _stats_executor.submit(_count, client, 'posts'),
        }
        ratings = client.table('reviews').select('rating', count='exact').execute()
        stats = {name: future.result() for name, future in futures.items()}
    except Exception as e:
        logger.error('getDashboardStats 오류: %s', e)
        return empty

    values = [row.get('rating') or 0 for row in ratings.data or []]
    stats['total_reviews'] = ratings.count or len(values)
    stats['average_rating'] = round(sum(values) / len(values), 1) if values else 0
    return stats


def get_recommendation_stats(ctx):
    try:
        _require_admin(ctx)
        client = ctx.client
        futures = {
            'total_restaurants': _stats_executor.submit(_count, client, 'restaurants'),
            'active_restaurants': _stats_executor.submit(_count, client, 'restaurants', is_active=True),
            'total_reviews': _stats_executor.submit(_count, client, 'reviews'),
            'total_users': _stats_executor.submit(_count, client, 'profiles'),
        }
        stats = {name: future.result() for name, future in futures.items()}
    except Exception as e:
        logger.error('추천 시스템 통계 오류: %s', e)
        return {'total_restaurants': 0, 'active_restaurants': 0, 'total_reviews': 0,
                'total_users': 0, 'recommendation_coverage': 0}

    total = stats['total_restaurants']
    stats['recommendation_coverage'] = round(stats['active_restaurants'] / total * 100) if total else 0
    return stats


# Terms
def get_terms_list(ctx):
    _require_admin(ctx)
    try:
        response = (ctx.client.table('terms_versions').select('*')
                    .order('code')
                    .order('version', desc=True)
                    .execute())
    except APIError as e:
        raise ServiceError(get_error_message(e)) from e
    return response.data or []


def create_terms(ctx, payload):
    _require_admin(ctx)
    try:
        response = ctx.client.table('terms_versions').insert(dict(payload)).execute()
    except APIError as e:
        raise ServiceError(get_error_message(e)) from e
    return response.data[0]


def update_terms(ctx, terms_id, payload):
    _require_admin(ctx)
    try:
        response = (ctx.client.table('terms_versions')
                    .update(dict(payload, updated_at=utc_now_iso()))
                    .eq('id', terms_id)
                    .execute())
    except APIError as e:
        raise ServiceError(get_error_message(e)) from e
    if not response.data:
        raise ServiceError('약관을 찾을 수 없습니다.')
    return response.data[0]


def delete_terms(ctx, terms_id):
    _require_admin(ctx)
    try:
        ctx.client.table('terms_versions').delete().eq('id', terms_id).execute()
    except APIError as e:
        raise ServiceError(get_error_message(e)) from e
    return {'success': True}


# Visit records
def get_visit_records(ctx, page=1, limit=20, year=None, restaurant_id=None):
    _require_admin(ctx)
    start, end = page_range(page, limit)
    query = ctx.client.table('visit_summary').select('*', count='exact')
    if year:
        query = query.eq('year', year)
    if restaurant_id:
        query = query.eq('restaurant_id', restaurant_id)
    try:
        response = query.order('year', desc=True).range(start, end).execute()
    except APIError as e:
        raise ServiceError(f'방문 기록 조회 실패: {get_error_message(e)}') from e
    return _listing(response.data or [], response.count or 0, page, limit)


def create_visit_record(ctx, data):
    _require_admin(ctx)
    try:
        response = ctx.client.table('visit_summary').insert(dict(data)).execute()
    except APIError as e:
        raise ServiceError(f'방문 기록 생성 실패: {get_error_message(e)}') from e
    return response.data[0]


def update_visit_record(ctx, record_id, data):
    _require_admin(ctx)
    try:
        response = ctx.client.table('visit_summary').update(dict(data)).eq('id', record_id).execute()
    except APIError as e:
        raise ServiceError(f'방문 기록 수정 실패: {get_error_message(e)}') from e
    if not response.data:
        raise ServiceError('방문 기록 수정 실패: 기록을 찾을 수 없습니다.')
    return response.data[0]


def delete_visit_record(ctx, record_id):
    _require_admin(ctx)
    try:
        ctx.client.table('visit_summary').delete().eq('id', record_id).execute()
    except APIError as e:
        raise ServiceError(f'방문 기록 삭제 실패: {get_error_message(e)}') from e
    return {'success': True}


# Post reports
def get_post_reports(ctx, status='all'):
    """Report queue with the reported post, reporter and post author attached."""
    _require_admin(ctx)
    query = (ctx.client.table('post_reports')
             .select('id, post_id, reporter_id, reason, description, status, created_at, reviewed_at, reviewed_by'))
    if status and status != 'all':
        query = query.eq('status', status)

    try:
        reports = query.order('created_at', desc=True).execute().data or []
        post_ids = sorted({r['post_id'] for r in reports if r.get('post_id')})
        posts = {}
        if post_ids:
            rows = (ctx.client.table('posts').select('id, title, author_id, is_active, created_at')
                    .in_('id', post_ids)
                    .execute().data or [])
            posts = {p['id']: p for p in rows}
        for report in reports:
            report['post'] = posts.get(report.get('post_id'))
            report['author_id'] = (report['post'] or {}).get('author_id')
        _attach_profiles(ctx.client, reports, 'reporter_id', 'reporter')
        _attach_profiles(ctx.client, reports, 'author_id', 'author')
    except APIError as e:
        raise ServiceError(f'신고 목록 조회 실패: {get_error_message(e)}') from e
    return reports


def moderate_post(ctx, report_id, post_id, action, next_status=None, reason_code=None, notes=None):
    _require_admin(ctx)
    if action not in MODERATION_ACTIONS:
        raise ServiceError('처리 실패: 올바르지 않은 조치입니다.')
    if next_status and next_status not in REPORT_STATUSES:
        raise ServiceError('처리 실패: 올바르지 않은 상태입니다.')
    return call_edge_function('moderate-post', {
        'post_id': post_id,
        'action': action,
        'report_id': report_id,
        'report_status': next_status,
        'reason_code': reason_code,
        'notes': notes,
    }, ctx.access_token, default_error='처리 실패')


def set_report_status(ctx, report_id, status):
    _require_admin(ctx)
    if status not in REPORT_STATUSES:
        raise ServiceError('상태 변경 실패: 올바르지 않은 상태입니다.')
    try:
        ctx.client.table('post_reports').update({
            'status': status,
            'reviewed_at': utc_now_iso(),
            'reviewed_by': ctx.user_id,
        }).eq('id', report_id).execute()
    except APIError as e:
        raise ServiceError(f'상태 변경 실패: {get_error_message(e)}') from e
