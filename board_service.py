"""Community boards: listings, HOT posts, post detail and author-owned mutations."""

import logging
import math
from datetime import datetime, timezone

from postgrest.exceptions import APIError

from supabase_client import (
    LOGIN_REQUIRED_MESSAGE,
    ServiceError,
    call_edge_function,
    get_error_message,
    page_range,
    total_pages,
    with_timeout,
)
from utils import parse_iso, utc_now_iso

logger = logging.getLogger(__name__)

BOARD_TYPES = ('notice', 'free', 'suggestion')
NOTICE_LIMIT = 5
LATEST_LIMIT = 10
HOT_MIN_COUNT = 10
POST_COOLDOWN = 60  # seconds
UNKNOWN_AUTHOR = {'nickname': '알 수 없음', 'email': ''}
NOT_AUTHORIZED_MESSAGE = '권한이 없습니다. 로그인 상태를 확인해주세요.'


def attach_authors(client, posts):
    """Join each post with its author's nickname and email from profiles."""
    author_ids = sorted({post['author_id'] for post in posts if post.get('author_id')})
    profiles = {}
    if author_ids:
        try:
            rows = (client.table('profiles').select('user_id, nickname, email')
                    .in_('user_id', author_ids)
                    .execute().data or [])
            profiles = {row['user_id']: {'nickname': row.get('nickname'), 'email': row.get('email') or ''}
                        for row in rows}
        except APIError as e:
            logger.warning('Author lookup failed: %s', e)
    return [dict(post, author=profiles.get(post.get('author_id'), dict(UNKNOWN_AUTHOR))) for post in posts]


def _active_posts(client, board_type):
    return (client.table('posts').select('*', count='exact')
            .eq('board_type', board_type)
            .eq('is_active', True))


def get_posts(client, board_type, page=1, size=20):
    def load():
        start, end = page_range(page, size)
        response = (_active_posts(client, board_type)
                    .order('is_pinned', desc=True)
                    .order('created_at', desc=True)
                    .range(start, end)
                    .execute())
        return response, attach_authors(client, response.data or [])

    try:
        response, posts = with_timeout(load)
    except APIError as e:
        raise ServiceError(f'게시글 조회 실패: {get_error_message(e)}') from e

    total = response.count or 0
    return {
        'data': posts,
        'pagination': {'page': page, 'size': size, 'total': total, 'pages': total_pages(total, size)},
    }


def get_notices(client):
    try:
        response = (_active_posts(client, 'notice')
                    .order('is_pinned', desc=True)
                    .order('created_at', desc=True)
                    .limit(NOTICE_LIMIT)
                    .execute())
    except APIError as e:
        raise ServiceError(f'공지사항 조회 실패: {get_error_message(e)}') from e
    return attach_authors(client, response.data or [])


def get_latest_posts(client):
    try:
        response = with_timeout(
            _active_posts(client, 'free')
            .order('created_at', desc=True)
            .limit(LATEST_LIMIT)
            .execute
        )
    except APIError as e:
        raise ServiceError(f'최신글 조회 실패: {get_error_message(e)}') from e
    return attach_authors(client, response.data or [])


def get_hot_posts(client, board_code='free', hours=48, limit=30):
    """Posts ranked by the database's time-decayed HOT score.

    Falls back to a plain threshold query (10+ views or likes) when the
    ranking procedure is unavailable.
    """
    try:
        response = client.rpc('get_hot_posts', {
            'p_board_code': board_code,
            'p_hours': hours,
            'p_limit': limit,
        }).execute()
        return attach_authors(client, response.data or [])
    except APIError as e:
        logger.warning('RPC get_hot_posts failed, using threshold fallback: %s', e)

    try:
        response = (client.table('posts').select('*')
                    .eq('is_active', True)
                    .or_(f'view_count.gte.{HOT_MIN_COUNT},like_count.gte.{HOT_MIN_COUNT}')
                    .order('view_count', desc=True)
                    .order('like_count', desc=True)
                    .limit(limit)
                    .execute())
    except APIError as e:
        raise ServiceError(f'HOT게시글 조회 실패: {get_error_message(e)}') from e
    return attach_authors(client, response.data or [])


def get_post_by_id(client, post_id):
    """Fetch an active post and count the view."""
    try:
        current = client.table('posts').select('view_count').eq('id', post_id).single().execute()
        client.table('posts').update(
            {'view_count': (current.data.get('view_count') or 0) + 1}
        ).eq('id', post_id).execute()

        response = (client.table('posts').select('*')
                    .eq('id', post_id)
                    .eq('is_active', True)
                    .single()
                    .execute())
    except APIError as e:
        raise ServiceError(f'게시글 조회 실패: {get_error_message(e)}') from e
    return attach_authors(client, [response.data])[0]


def check_post_cooldown(client, user_id, now=None):
    if not user_id:
        raise ServiceError(LOGIN_REQUIRED_MESSAGE)

    try:
        rows = (client.table('posts').select('created_at')
                .eq('author_id', user_id)
                .order('created_at', desc=True)
                .limit(1)
                .execute().data or [])
    except APIError as e:
        logger.error('Cooldown check error: %s', e)
        return {'can_post': True, 'remaining_time': 0}

    if not rows:
        return {'can_post': True, 'remaining_time': 0}

    now = now or datetime.now(timezone.utc)
    elapsed = (now - parse_iso(rows[0]['created_at'])).total_seconds()
    if elapsed < POST_COOLDOWN:
        remaining = POST_COOLDOWN - elapsed
        return {'can_post': False, 'remaining_time': math.ceil(remaining)}
    return {'can_post': True, 'remaining_time': 0}


def _friendly(message):
    if 'not authorized' in (message or ''):
        return NOT_AUTHORIZED_MESSAGE
    return message


def create_post(client, access_token, user_id, data):
    """Publish through the create-post edge function, which validates and spam-checks server side."""
    if not user_id or not access_token:
        raise ServiceError(LOGIN_REQUIRED_MESSAGE)

    if data.get('board_type') not in BOARD_TYPES:
        raise ServiceError('게시판 종류가 올바르지 않습니다.')

    cooldown = check_post_cooldown(client, user_id)
    if not cooldown['can_post']:
        raise ServiceError(f"게시글 작성은 {cooldown['remaining_time']}초 후에 가능합니다.")

    payload = {
        'title': data.get('title', ''),
        'content': data.get('content', ''),
        'board_type': data['board_type'],
        'honeypot': data.get('honeypot', ''),
    }
    try:
        result = call_edge_function('create-post', payload, access_token)
    except ServiceError as e:
        logger.error('Post creation error: %s', e.message)
        raise ServiceError(f'게시글 작성 실패: {_friendly(e.message)}') from e

    post = result.get('data') or result.get('post') or {}
    logger.info('Post created by %s on %s board', user_id, data['board_type'])
    return attach_authors(client, [post])[0] if post else post


def update_post(client, user_id, post_id, data):
    if not user_id:
        raise ServiceError(LOGIN_REQUIRED_MESSAGE)

    changes = {key: data[key] for key in ('title', 'content', 'board_type') if key in data}
    changes['updated_at'] = utc_now_iso()
    try:
        response = (client.table('posts').update(changes)
                    .eq('id', post_id)
                    .eq('author_id', user_id)
                    .execute())
    except APIError as e:
        raise ServiceError(f'게시글 수정 실패: {get_error_message(e)}') from e

    if not response.data:
        raise ServiceError('게시글 수정 실패: 게시글을 찾을 수 없습니다.')
    return attach_authors(client, response.data)[0]


def delete_post(client, user_id, post_id):
    if not user_id:
        raise ServiceError(LOGIN_REQUIRED_MESSAGE)
    try:
        client.table('posts').delete().eq('id', post_id).eq('author_id', user_id).execute()
    except APIError as e:
        raise ServiceError(f'게시글 삭제 실패: {get_error_message(e)}') from e


def toggle_like(client, user_id, post_id):
    if not user_id:
        raise ServiceError(LOGIN_REQUIRED_MESSAGE)
    try:
        current = client.table('posts').select('like_count').eq('id', post_id).single().execute()
        like_count = (current.data.get('like_count') or 0) + 1
        client.table('posts').update({'like_count': like_count}).eq('id', post_id).execute()
    except APIError as e:
        raise ServiceError(f'좋아요 실패: {get_error_message(e)}') from e
    return {'like_count': like_count}


def report_post(access_token, post_id, reason, description=None):
    return call_edge_function('report-post', {
        'post_id': post_id,
        'reason': reason,
        'description': description,
    }, access_token, default_error='신고 실패')
