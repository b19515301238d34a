"""Sign-in, sign-up, profile and per-user activity queries."""

import logging

from postgrest.exceptions import APIError
from supabase import AuthError

from supabase_client import LOGIN_REQUIRED_MESSAGE, ServiceError, first_row, get_error_message

logger = logging.getLogger(__name__)

TERMS_CONSENT_KEY = 'termsConsent'
INVALID_CONSENT_MESSAGE = '약관 동의 정보가 올바르지 않습니다.'


def _user_dict(user, nickname=None):
    metadata = user.user_metadata or {}
    created_at = user.created_at
    return {
        'id': user.id,
        'email': user.email or '',
        'nickname': metadata.get('nickname') or nickname or user.email or '',
        'created_at': created_at.isoformat() if hasattr(created_at, 'isoformat') else created_at,
    }


def get_profile(client, user_id):
    try:
        return first_row(client.table('profiles').select('user_id, nickname, email, role')
                         .eq('user_id', user_id)
                         .maybe_single()
                         .execute())
    except APIError as e:
        logger.warning('Profile lookup failed for %s: %s', user_id, e)
        return None


def login(client, email, password):
    """Returns {'user': ..., 'session': ...}; the user dict carries the profile role."""
    try:
        response = client.auth.sign_in_with_password({'email': email, 'password': password})
    except AuthError as e:
        raise ServiceError(get_error_message(e)) from e

    if response.session is None or response.user is None:
        raise ServiceError('로그인에 실패했습니다.')

    user = _user_dict(response.user)
    profile = get_profile(client, response.user.id) or {}
    user['role'] = profile.get('role') or 'user'
    if profile.get('nickname'):
        user['nickname'] = profile['nickname']

    logger.info('User %s signed in', user['id'])
    return {'user': user, 'session': response.session}


def register(client, email, password, nickname, terms_consents=None):
    """Create an account and record the terms the visitor agreed to.

    Consents can only be stored when sign-up returns a session (no e-mail
    confirmation pending). 'consents_saved' tells the caller whether the
    transient consent payload may be discarded.
    """
    try:
        response = client.auth.sign_up({
            'email': email,
            'password': password,
            'options': {'data': {'nickname': nickname}},
        })
    except AuthError as e:
        raise ServiceError(get_error_message(e)) from e

    if response.user is None:
        raise ServiceError('회원가입에 실패했습니다.')

    consents_saved = False
    if terms_consents and response.session is not None:
        try:
            save_terms_consent(client, response.user.id, terms_consents)
            consents_saved = True
        except ServiceError as e:
            logger.error('약관 동의 저장 실패: %s', e.message)

    return {
        'user': _user_dict(response.user, nickname),
        'session': response.session,
        'consents_saved': consents_saved,
    }


def logout(client):
    try:
        client.auth.sign_out()
    except AuthError as e:
        logger.warning('Sign-out request failed: %s', e)


def get_current_user(client, access_token):
    if not access_token:
        return None
    try:
        response = client.auth.get_user(access_token)
    except AuthError as e:
        raise ServiceError(get_error_message(e)) from e
    if response is None or response.user is None:
        return None
    return _user_dict(response.user)


def _attach_session(client, access_token, refresh_token):
    if not access_token:
        raise ServiceError(LOGIN_REQUIRED_MESSAGE)
    try:
        client.auth.set_session(access_token, refresh_token)
    except AuthError as e:
        raise ServiceError(get_error_message(e)) from e


def update_profile(client, access_token, refresh_token, nickname=None, email=None):
    _attach_session(client, access_token, refresh_token)

    attributes = {'data': {'nickname': nickname}}
    if email:
        attributes['email'] = email
    try:
        response = client.auth.update_user(attributes)
    except AuthError as e:
        raise ServiceError(get_error_message(e)) from e

    if response.user is None:
        raise ServiceError('사용자 정보를 찾을 수 없습니다.')
    return _user_dict(response.user)


def change_password(client, email, current_password, new_password):
    """Verify the current password by signing in again, then set the new one.

    Returns the fresh session so the caller can replace the stored tokens.
    """
    if not email:
        raise ServiceError('사용자 정보를 확인할 수 없습니다. 다시 로그인해주세요.')

    try:
        signed_in = client.auth.sign_in_with_password({'email': email, 'password': current_password})
    except AuthError as e:
        raise ServiceError('현재 비밀번호가 올바르지 않습니다.') from e

    try:
        client.auth.update_user({'password': new_password})
    except AuthError as e:
        raise ServiceError(f'비밀번호 변경에 실패했습니다: {get_error_message(e)}') from e

    return signed_in.session


def delete_account(client, user_id):
    if not user_id:
        raise ServiceError(LOGIN_REQUIRED_MESSAGE)
    try:
        client.auth.admin.delete_user(user_id)
    except AuthError as e:
        raise ServiceError(get_error_message(e)) from e


# Activity
def get_user_posts(client, user_id):
    try:
        response = (client.table('posts')
                    .select('id, title, content, board_type, view_count, like_count, created_at, updated_at')
                    .eq('author_id', user_id)
                    .order('created_at', desc=True)
                    .execute())
    except APIError as e:
        raise ServiceError(get_error_message(e)) from e
    return response.data or []


def _restaurants_by_id(client, ids, columns):
    if not ids:
        return {}
    rows = client.table('restaurants').select(columns).in_('id', sorted(set(ids))).execute().data or []
    return {row['id']: row for row in rows}


def get_user_reviews(client, user_id):
    try:
        reviews = (client.table('reviews').select('id, restaurant_id, rating, content, created_at')
                   .eq('user_id', user_id)
                   .order('created_at', desc=True)
                   .execute().data or [])
        restaurants = _restaurants_by_id(client, [r['restaurant_id'] for r in reviews],
                                         'id, title, name, address, category')
    except APIError as e:
        raise ServiceError(get_error_message(e)) from e
    return [dict(review, restaurants=restaurants.get(review['restaurant_id'])) for review in reviews]


def get_user_favorites(client, user_id):
    try:
        favorites = (client.table('favorites').select('id, restaurant_id, created_at')
                     .eq('user_id', user_id)
                     .order('created_at', desc=True)
                     .execute().data or [])
        restaurants = _restaurants_by_id(client, [f['restaurant_id'] for f in favorites],
                                         'id, title, name, address, category, sub_add1, sub_add2')
    except APIError as e:
        raise ServiceError(get_error_message(e)) from e
    return [dict(favorite, restaurants=restaurants.get(favorite['restaurant_id'])) for favorite in favorites]


def remove_favorite(client, favorite_id):
    try:
        client.table('favorites').delete().eq('id', favorite_id).execute()
    except APIError as e:
        raise ServiceError(get_error_message(e)) from e


# Terms
def validate_terms_consents(consents):
    """Normalized consent rows; anything that is not a list of {terms_id, version, agreed} is rejected."""
    if not isinstance(consents, list):
        raise ServiceError(INVALID_CONSENT_MESSAGE)
    cleaned = []
    for consent in consents:
        if not isinstance(consent, dict):
            raise ServiceError(INVALID_CONSENT_MESSAGE)
        terms_id = consent.get('terms_id')
        version = consent.get('version')
        agreed = consent.get('agreed')
        if terms_id in (None, '') or version in (None, '') or not isinstance(agreed, bool):
            raise ServiceError(INVALID_CONSENT_MESSAGE)
        cleaned.append({'terms_id': terms_id, 'version': str(version), 'agreed': agreed})
    return cleaned


def save_terms_consent(client, user_id, consents):
    rows = [dict(consent, user_id=user_id) for consent in validate_terms_consents(consents)]
    try:
        client.table('user_terms_consents').insert(rows).execute()
    except APIError as e:
        raise ServiceError(get_error_message(e)) from e


def get_public_terms(client):
    try:
        response = (client.table('terms_versions').select('*')
                    .order('is_required', desc=True)
                    .order('code')
                    .execute())
    except APIError as e:
        raise ServiceError(get_error_message(e)) from e
    return response.data or []
