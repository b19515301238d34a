"""
Restaurant reviews and everything hanging off them: reactions, threaded
replies and photos. Post body images share the storage helpers here.
"""

import logging
import time
import uuid

from postgrest.exceptions import APIError

from admin_service import check_admin_role
from image_compressor import compress_image, validate_image_file
from supabase_client import (
    LOGIN_REQUIRED_MESSAGE,
    ServiceError,
    first_row,
    get_error_message,
    is_not_found,
    page_range,
    total_pages,
)
from utils import make_safe_ext, utc_now_iso

logger = logging.getLogger(__name__)

REVIEW_VIEW = 'v_reviews_detailed'
RECENT_REVIEW_LIMIT = 5
DUPLICATE_REVIEW_MESSAGE = '이미 이 음식점에 리뷰를 작성하셨습니다.'
REACTION_TYPES = ('like', 'dislike')
MAX_REPLY_LENGTH = 1000
REVIEW_PHOTO_BUCKET = 'review-photos'
POST_PHOTO_BUCKET = 'post-photos'
MAX_PHOTOS_PER_REVIEW = 10


def _require_user(user_id):
    if not user_id:
        raise ServiceError(LOGIN_REQUIRED_MESSAGE)


def _storage_name(ext):
    return f'{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}.{ext}'


# Reviews
def get_restaurant_reviews(client, restaurant_id, page=1, size=10):
    start, end = page_range(page, size)
    try:
        response = (client.table(REVIEW_VIEW).select('*', count='exact')
                    .eq('restaurant_id', restaurant_id)
                    .order('created_at', desc=True)
                    .range(start, end)
                    .execute())
    except APIError as e:
        raise ServiceError(get_error_message(e)) from e

    total = response.count or 0
    return {
        'data': response.data or [],
        'pagination': {'page': page, 'size': size, 'total': total,
                       'pages': total_pages(total, size, minimum=1)},
    }


def get_restaurant_review_summary(client, restaurant_id):
    try:
        ratings = [row['rating'] for row in
                   client.table('reviews').select('rating').eq('restaurant_id', restaurant_id).execute().data or []]
        recent = (client.table(REVIEW_VIEW).select('*')
                  .eq('restaurant_id', restaurant_id)
                  .order('created_at', desc=True)
                  .limit(RECENT_REVIEW_LIMIT)
                  .execute().data or [])
    except APIError as e:
        raise ServiceError(get_error_message(e)) from e

    distribution = {str(score): 0 for score in range(1, 6)}
    for rating in ratings:
        distribution[str(rating)] = distribution.get(str(rating), 0) + 1

    return {
        'total_reviews': len(ratings),
        'average_rating': sum(ratings) / len(ratings) if ratings else None,
        'rating_distribution': distribution,
        'recent_reviews': recent,
    }


def create_review(client, user_id, restaurant_id, rating, content=None):
    """One review per user per restaurant."""
    _require_user(user_id)

    try:
        rating = int(rating)
    except (TypeError, ValueError):
        rating = 0
    if rating < 1 or rating > 5:
        raise ServiceError('평점은 1점에서 5점 사이여야 합니다.')

    try:
        client.table('reviews').select('id').eq('restaurant_id', restaurant_id).eq('user_id', user_id).single().execute()
    except APIError as e:
        if not is_not_found(e):
            raise ServiceError(get_error_message(e)) from e
    else:
        raise ServiceError(DUPLICATE_REVIEW_MESSAGE)

    try:
        response = client.table('reviews').insert({
            'restaurant_id': restaurant_id,
            'user_id': user_id,
            'rating': rating,
            'content': content or None,
        }).execute()
    except APIError as e:
        if e.code == '23505' and 'reviews_user_restaurant_unique' in (e.message or ''):
            raise ServiceError(DUPLICATE_REVIEW_MESSAGE) from e
        raise ServiceError(get_error_message(e)) from e
    return response.data[0]


# Reactions
def _my_reaction_row(client, user_id, review_id):
    return first_row(client.table('review_reactions').select('*')
                     .eq('review_id', review_id)
                     .eq('user_id', user_id)
                     .maybe_single()
                     .execute())


def toggle_reaction(client, user_id, review_id, reaction_type):
    """Same reaction again removes it, the other one switches it."""
    _require_user(user_id)
    if reaction_type not in REACTION_TYPES:
        raise ServiceError('반응 종류가 올바르지 않습니다.')

    try:
        existing = _my_reaction_row(client, user_id, review_id)
    except APIError as e:
        raise ServiceError(f'반응 조회 실패: {e.message}') from e

    if existing and existing['reaction_type'] == reaction_type:
        try:
            client.table('review_reactions').delete().eq('id', existing['id']).execute()
        except APIError as e:
            raise ServiceError(f'반응 취소 실패: {e.message}') from e
        return {'action': 'removed'}

    if existing:
        try:
            response = (client.table('review_reactions')
                        .update({'reaction_type': reaction_type})
                        .eq('id', existing['id'])
                        .execute())
        except APIError as e:
            raise ServiceError(f'반응 변경 실패: {e.message}') from e
        return {'action': 'changed', 'reaction': response.data[0]}

    try:
        response = client.table('review_reactions').insert({
            'review_id': review_id,
            'user_id': user_id,
            'reaction_type': reaction_type,
        }).execute()
    except APIError as e:
        raise ServiceError(f'반응 추가 실패: {e.message}') from e
    return {'action': 'added', 'reaction': response.data[0]}


def get_my_reaction(client, user_id, review_id):
    if not user_id:
        return None
    try:
        return _my_reaction_row(client, user_id, review_id)
    except APIError as e:
        logger.error('내 반응 조회 실패: %s', e)
        return None


def get_my_reactions_for_reviews(client, user_id, review_ids):
    if not user_id or not review_ids:
        return {}
    try:
        rows = (client.table('review_reactions').select('*')
                .eq('user_id', user_id)
                .in_('review_id', list(review_ids))
                .execute().data or [])
    except APIError as e:
        logger.error('반응 목록 조회 실패: %s', e)
        return {}
    return {row['review_id']: row for row in rows}


def get_reaction_counts(client, review_id):
    try:
        row = client.table('reviews').select('like_count, dislike_count').eq('id', review_id).single().execute().data
    except APIError as e:
        logger.error('반응 카운트 조회 실패: %s', e)
        return {'like_count': 0, 'dislike_count': 0}
    return {
        'like_count': row.get('like_count') or 0,
        'dislike_count': row.get('dislike_count') or 0,
    }


# Replies
def _clean_reply(content):
    content = (content or '').strip()
    if not content:
        raise ServiceError('답글 내용을 입력해주세요.')
    if len(content) > MAX_REPLY_LENGTH:
        raise ServiceError(f'답글은 {MAX_REPLY_LENGTH}자 이내로 작성해주세요.')
    return content


def _with_profile(client, reply, user_id):
    try:
        profile = first_row(client.table('profiles').select('nickname, avatar_url')
                            .eq('user_id', user_id)
                            .maybe_single()
                            .execute()) or {}
    except APIError as e:
        logger.warning('Reply author lookup failed: %s', e)
        profile = {}
    return dict(reply, nickname=profile.get('nickname'), avatar_url=profile.get('avatar_url'))


def _reply_owner(client, reply_id):
    try:
        return client.table('review_replies').select('user_id').eq('id', reply_id).single().execute().data['user_id']
    except APIError as e:
        raise ServiceError(f'답글 조회 실패: {e.message}') from e


def create_reply(client, user_id, review_id, content, parent_id=None):
    _require_user(user_id)
    content = _clean_reply(content)
    try:
        response = client.table('review_replies').insert({
            'review_id': review_id,
            'user_id': user_id,
            'content': content,
            'parent_id': parent_id,
        }).execute()
    except APIError as e:
        raise ServiceError(f'답글 작성 실패: {e.message}') from e
    return _with_profile(client, response.data[0], user_id)


def update_reply(client, user_id, reply_id, content):
    _require_user(user_id)
    content = _clean_reply(content)
    if _reply_owner(client, reply_id) != user_id:
        raise ServiceError('본인의 답글만 수정할 수 있습니다.')

    try:
        response = (client.table('review_replies')
                    .update({'content': content, 'is_edited': True, 'updated_at': utc_now_iso()})
                    .eq('id', reply_id)
                    .execute())
    except APIError as e:
        raise ServiceError(f'답글 수정 실패: {e.message}') from e
    return _with_profile(client, response.data[0], user_id)


def delete_reply(client, user_id, reply_id):
    _require_user(user_id)
    if _reply_owner(client, reply_id) != user_id:
        raise ServiceError('본인의 답글만 삭제할 수 있습니다.')
    try:
        client.table('review_replies').delete().eq('id', reply_id).execute()
    except APIError as e:
        raise ServiceError(f'답글 삭제 실패: {e.message}') from e


def _thread(replies):
    top_level = [reply for reply in replies if not reply.get('parent_id')]
    return [
        dict(parent, replies=[child for child in replies if child.get('parent_id') == parent['id']])
        for parent in top_level
    ]


def get_replies(client, review_id):
    """Replies of a review as a two-level thread, oldest first."""
    try:
        rows = (client.table('v_review_replies_detailed').select('*')
                .eq('review_id', review_id)
                .order('created_at')
                .execute().data or [])
    except APIError as e:
        logger.error('답글 조회 실패: %s', e)
        return []
    return _thread(rows)


def get_replies_for_reviews(client, review_ids):
    if not review_ids:
        return {}
    try:
        rows = (client.table('v_review_replies_detailed').select('*')
                .in_('review_id', list(review_ids))
                .order('created_at')
                .execute().data or [])
    except APIError as e:
        logger.error('답글 목록 조회 실패: %s', e)
        return {}
    return {review_id: _thread([row for row in rows if row['review_id'] == review_id])
            for review_id in review_ids}


def get_reply_count(client, review_id):
    try:
        response = client.table('review_replies').select('id', count='exact').eq('review_id', review_id).execute()
    except APIError as e:
        logger.error('답글 수 조회 실패: %s', e)
        return 0
    return response.count or 0


# Photos
def get_review_photos(client, review_id):
    try:
        response = (client.table('review_photos').select('*')
                    .eq('review_id', review_id)
                    .order('display_order')
                    .execute())
    except APIError as e:
        # anonymous visitors may be refused by RLS; show no photos rather than an error
        logger.error('리뷰 사진 조회 실패: %s', e)
        return []
    return response.data or []


def get_review_photo_count(client, review_id):
    try:
        response = client.table('review_photos').select('id', count='exact').eq('review_id', review_id).execute()
    except APIError as e:
        raise ServiceError(f'사진 개수 조회 실패: {e.message}') from e
    return response.count or 0


def upload_review_photo(client, user_id, review_id, file, display_order=0):
    """Compress, store and register one review photo.

    file is a werkzeug FileStorage. If the photo row cannot be saved the
    stored object is removed again.
    """
    _require_user(user_id)

    data = file.read()
    ok, error = validate_image_file(file.mimetype, len(data))
    if not ok:
        raise ServiceError(error)

    compressed = compress_image(data, file.filename or 'photo', file.mimetype)
    storage_path = f'{user_id}/{review_id}/{_storage_name(make_safe_ext(compressed.filename, compressed.content_type))}'
    bucket = client.storage.from_(REVIEW_PHOTO_BUCKET)

    try:
        bucket.upload(storage_path, compressed.data, {
            'content-type': compressed.content_type,
            'upsert': 'false',
        })
    except Exception as e:
        raise ServiceError(f'사진 업로드 실패: {get_error_message(e)}') from e

    photo_url = bucket.get_public_url(storage_path)

    try:
        response = client.table('review_photos').insert({
            'review_id': review_id,
            'user_id': user_id,
            'photo_url': photo_url,
            'storage_path': storage_path,
            'file_size': compressed.compressed_size,
            'display_order': display_order,
        }).execute()
    except APIError as e:
        bucket.remove([storage_path])
        raise ServiceError(f'사진 정보 저장 실패: {e.message}') from e

    return {
        'id': response.data[0]['id'],
        'photo_url': photo_url,
        'storage_path': storage_path,
        'file_size': compressed.compressed_size,
    }


def upload_review_photos(client, user_id, review_id, files, on_progress=None):
    files = list(files)
    if len(files) > MAX_PHOTOS_PER_REVIEW:
        raise ServiceError(f'최대 {MAX_PHOTOS_PER_REVIEW}장까지 업로드 가능합니다.')

    existing = get_review_photo_count(client, review_id)
    if existing + len(files) > MAX_PHOTOS_PER_REVIEW:
        raise ServiceError(
            f'이미 {existing}장이 등록되어 있습니다. '
            f'최대 {MAX_PHOTOS_PER_REVIEW - existing}장 추가 가능합니다.'
        )

    results = []
    for index, file in enumerate(files):
        results.append(upload_review_photo(client, user_id, review_id, file, existing + index))
        if on_progress:
            on_progress(index + 1, len(files))
    return results


def delete_review_photo(client, user_id, photo_id):
    _require_user(user_id)

    try:
        photo = client.table('review_photos').select('storage_path, user_id').eq('id', photo_id).single().execute().data
    except APIError as e:
        raise ServiceError('사진을 찾을 수 없습니다.') from e

    if photo['user_id'] != user_id and not check_admin_role(client, user_id):
        raise ServiceError('삭제 권한이 없습니다.')

    try:
        client.storage.from_(REVIEW_PHOTO_BUCKET).remove([photo['storage_path']])
    except Exception as e:
        logger.warning('Storage 파일 삭제 실패: %s', e)

    try:
        client.table('review_photos').delete().eq('id', photo_id).execute()
    except APIError as e:
        raise ServiceError(f'사진 삭제 실패: {e.message}') from e


def update_photo_order(client, user_id, photo_id, new_order):
    _require_user(user_id)
    try:
        new_order = int(new_order)
    except (TypeError, ValueError) as e:
        raise ServiceError('순서 변경 실패: 표시 순서는 숫자여야 합니다.') from e
    try:
        (client.table('review_photos')
         .update({'display_order': new_order})
         .eq('id', photo_id)
         .eq('user_id', user_id)
         .execute())
    except APIError as e:
        raise ServiceError(f'순서 변경 실패: {e.message}') from e


def upload_post_image(client, user_id, file, post_temp_id):
    """Store an image embedded in a post body and return its public URL."""
    _require_user(user_id)

    data = file.read()
    ext = make_safe_ext(file.filename or '', file.mimetype)
    storage_path = f'{user_id}/{post_temp_id}/{_storage_name(ext)}'
    bucket = client.storage.from_(POST_PHOTO_BUCKET)

    try:
        bucket.upload(storage_path, data, {
            'content-type': file.mimetype or 'application/octet-stream',
            'cache-control': '3600',
            'upsert': 'false',
        })
    except Exception as e:
        raise ServiceError(f'사진 업로드 실패: {get_error_message(e)}') from e

    return {
        'storage_path': storage_path,
        'public_url': bucket.get_public_url(storage_path),
        'file_size': len(data),
    }
