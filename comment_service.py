"""Post comments. Reads go straight to the database, writes through edge functions."""

import logging

from postgrest.exceptions import APIError

from supabase_client import ServiceError, call_edge_function, get_error_message

logger = logging.getLogger(__name__)

COMMENT_VIEW = 'v_comments_with_details'
SORT_LATEST = 'latest'
SORT_POPULAR = 'popular'
REPORT_REASONS = ('spam', 'harassment', 'inappropriate', 'misinformation', 'other')


def _fallback_comments(client, post_id, sort_by, limit, cursor):
    query = (client.table('comments').select('*')
             .eq('post_id', post_id)
             .is_('parent_id', 'null')
             .eq('status', 'published'))

    if sort_by == SORT_POPULAR:
        query = (query.order('like_count', desc=True)
                 .order('reply_count', desc=True)
                 .order('created_at', desc=True))
    else:
        query = query.order('created_at', desc=True).order('id', desc=True)

    if cursor:
        query = query.lt('created_at', cursor['created_at'])

    rows = query.limit(limit).execute().data or []

    user_ids = sorted({row['user_id'] for row in rows if row.get('user_id')})
    profiles = {}
    if user_ids:
        profile_rows = (client.table('profiles').select('user_id, nickname, avatar_url')
                        .in_('user_id', user_ids)
                        .execute().data or [])
        profiles = {p['user_id']: p for p in profile_rows}

    comments = []
    for row in rows:
        profile = profiles.get(row.get('user_id')) or {}
        comments.append(dict(
            row,
            author_nickname=profile.get('nickname') or 'Unknown',
            author_avatar=profile.get('avatar_url'),
            author_role=None,
            user_liked=False,
            user_reported=False,
        ))
    return comments


def get_comments(client, post_id, sort_by=SORT_LATEST, limit=20, cursor=None):
    """Top-level comments of a post.

    cursor is the {created_at, id} of the last comment already shown
    (keyset pagination, newest first).
    """
    try:
        if sort_by == SORT_POPULAR:
            response = client.rpc('get_popular_comments', {
                'p_post_id': post_id,
                'p_limit': limit,
                'p_offset': 0,
            }).execute()
            return response.data or []

        query = (client.table(COMMENT_VIEW).select('*')
                 .eq('post_id', post_id)
                 .is_('parent_id', 'null')
                 .eq('status', 'published')
                 .order('created_at', desc=True)
                 .order('id', desc=True)
                 .limit(limit))
        if cursor:
            query = query.lt('created_at', cursor['created_at']).neq('id', cursor['id'])
        return query.execute().data or []
    except APIError as e:
        logger.warning('댓글 조회 실패, falling back to comments table: %s', e)

    try:
        return _fallback_comments(client, post_id, sort_by, limit, cursor)
    except APIError as e:
        logger.error('Fallback 댓글 조회도 실패: %s', e)
        raise ServiceError(f'댓글 조회 실패: {get_error_message(e)}') from e


def get_replies(client, parent_id, limit=10, cursor=None):
    """Replies under a comment, oldest first."""
    query = (client.table(COMMENT_VIEW).select('*')
             .eq('parent_id', parent_id)
             .eq('status', 'published')
             .order('created_at')
             .order('id')
             .limit(limit))
    if cursor:
        query = query.gt('created_at', cursor['created_at']).neq('id', cursor['id'])

    try:
        return query.execute().data or []
    except APIError as e:
        raise ServiceError(f'대댓글 조회 실패: {get_error_message(e)}') from e


def create_comment(access_token, post_id, content, parent_id=None):
    result = call_edge_function('create-comment', {
        'post_id': post_id,
        'parent_id': parent_id,
        'content': content,
        'honeypot': '',
    }, access_token, default_error='댓글 작성 실패')
    return result.get('data')


def update_comment(access_token, comment_id, content):
    result = call_edge_function('edit-comment', {
        'comment_id': comment_id,
        'content': content,
        'honeypot': '',
    }, access_token, default_error='댓글 수정 실패')
    return result.get('data')


def delete_comment(access_token, comment_id):
    """Soft delete; the row stays with status 'deleted'."""
    call_edge_function('delete-comment', {'comment_id': comment_id}, access_token,
                       default_error='댓글 삭제 실패')


def toggle_comment_like(access_token, comment_id):
    result = call_edge_function('toggle-comment-like', {'comment_id': comment_id}, access_token,
                                default_error='댓글 좋아요 실패')
    return result.get('data')


def report_comment(access_token, comment_id, reason, description=None):
    if reason not in REPORT_REASONS:
        raise ServiceError('신고 사유가 올바르지 않습니다.')
    call_edge_function('report-comment', {
        'comment_id': comment_id,
        'reason': reason,
        'description': description,
    }, access_token, default_error='댓글 신고 실패')


def search_users(client, query, limit=10):
    """Nickname lookup for @mentions."""
    try:
        response = (client.table('profiles').select('id, nickname, avatar_url')
                    .ilike('nickname', f'%{query}%')
                    .limit(limit)
                    .execute())
    except APIError as e:
        raise ServiceError(f'사용자 검색 실패: {get_error_message(e)}') from e
    return response.data or []
