"""Keeps a visitor's Supabase access token fresh between requests."""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError

import httpx

from supabase_client import ServiceError, get_error_message

logger = logging.getLogger(__name__)

REFRESH_TIMEOUT = 10  # seconds
EXPIRY_LEEWAY = 30  # seconds
RECENT_REFRESH_TTL = 60  # seconds
OFFLINE_ERROR_MESSAGE = 'OFFLINE'

_refresh_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix='session-refresh')
_refresh_lock = threading.RLock()
# refresh token -> in-flight refresh
_refreshes = {}
# refresh token -> (new auth session, monotonic time it arrived)
_recent = {}


class SessionRefreshTimeoutError(Exception):
    def __init__(self):
        super().__init__('SESSION_REFRESH_TIMEOUT')


class OfflineError(Exception):
    def __init__(self):
        super().__init__(OFFLINE_ERROR_MESSAGE)


def is_offline_error(error):
    return isinstance(error, OfflineError) or str(error) == OFFLINE_ERROR_MESSAGE


def is_session_timeout_error(error):
    return isinstance(error, SessionRefreshTimeoutError)


def clear_session_refresh_state():
    with _refresh_lock:
        _refreshes.clear()
        _recent.clear()


def store_session(session, auth_session):
    """Copy the tokens of a Supabase auth session into the Flask session."""
    session['access_token'] = auth_session.access_token
    session['refresh_token'] = auth_session.refresh_token
    expires_at = getattr(auth_session, 'expires_at', None)
    if not expires_at:
        expires_in = getattr(auth_session, 'expires_in', None) or 3600
        expires_at = int(time.time()) + int(expires_in)
    session['expires_at'] = int(expires_at)


def _forget(refresh_token, future):
    with _refresh_lock:
        if _refreshes.get(refresh_token) is future:
            del _refreshes[refresh_token]
        if not future.cancelled() and future.exception() is None:
            _recent[refresh_token] = (future.result(), time.monotonic())


def _recent_refresh(refresh_token):
    entry = _recent.get(refresh_token)
    if entry is None:
        return None
    auth_session, arrived = entry
    if time.monotonic() - arrived > RECENT_REFRESH_TTL:
        del _recent[refresh_token]
        return None
    return auth_session


def _run_refresh(client, refresh_token):
    try:
        result = client.auth.refresh_session(refresh_token)
    except httpx.TransportError as e:
        if isinstance(e, httpx.TimeoutException):
            raise SessionRefreshTimeoutError() from e
        raise OfflineError() from e
    except Exception as e:
        raise ServiceError(get_error_message(e)) from e

    if result is None or result.session is None:
        raise ServiceError('세션이 만료되었습니다. 다시 로그인해주세요.')
    return result.session


def ensure_session(client, session, now=None):
    """Return a usable access token for the visitor, refreshing it when it has expired.

    Returns None when the visitor has no session at all. Concurrent requests
    holding the same refresh token share a single refresh call, and a request
    still carrying a token that was rotated moments ago reuses that result.
    """
    now = now if now is not None else time.time()
    access_token = session.get('access_token')
    expires_at = session.get('expires_at')

    if access_token and expires_at and expires_at - EXPIRY_LEEWAY > now:
        return access_token

    refresh_token = session.get('refresh_token')
    if not refresh_token:
        return None

    with _refresh_lock:
        auth_session = _recent_refresh(refresh_token)
        if auth_session is not None:
            store_session(session, auth_session)
            return auth_session.access_token

        future = _refreshes.get(refresh_token)
        if future is not None and future.done() and (future.cancelled() or future.exception() is not None):
            future = None
        if future is None:
            future = _refresh_executor.submit(_run_refresh, client, refresh_token)
            _refreshes[refresh_token] = future
            future.add_done_callback(lambda done: _forget(refresh_token, done))

    try:
        auth_session = future.result(timeout=REFRESH_TIMEOUT)
    except FutureTimeoutError as e:
        raise SessionRefreshTimeoutError() from e

    store_session(session, auth_session)
    logger.info('Access token refreshed')
    return auth_session.access_token
