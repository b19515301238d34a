"""
Supabase access for the 공무원맛집 web application.

Every service module talks to the backend through the helpers here:
- client creation (anon key, optionally carrying a visitor's access token)
- edge function calls (POST with a bearer token)
- a fixed-timeout race for queries that must not hang a request
- translation of backend errors into Korean user-facing messages
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError

import requests
from dotenv import load_dotenv
from postgrest.exceptions import APIError
from supabase import Client, create_client
from supabase.client import ClientOptions

logger = logging.getLogger(__name__)

load_dotenv()

SUPABASE_URL = os.getenv('SUPABASE_URL', '')
SUPABASE_ANON_KEY = os.getenv('SUPABASE_ANON_KEY', '')

CLIENT_INFO = 'office-restaurant-web'
POSTGREST_TIMEOUT = 15  # seconds
EDGE_FUNCTION_TIMEOUT = 15  # seconds
REQUEST_TIMEOUT = 12  # seconds

UNKNOWN_ERROR_MESSAGE = '알 수 없는 오류가 발생했습니다.'
LOGIN_REQUIRED_MESSAGE = '로그인이 필요합니다.'
ADMIN_REQUIRED_MESSAGE = '관리자 권한이 필요합니다.'
TIMEOUT_MESSAGE = '요청 시간이 초과되었습니다. 잠시 후 다시 시도해주세요.'

_timeout_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix='supabase-timeout')


class ServiceError(Exception):
    """A failed backend call, carrying a message that can be shown to the visitor."""

    def __init__(self, message, partial=False):
        super().__init__(message)
        self.message = message
        self.partial = partial


def get_error_message(error):
    """Human-readable message for any backend error."""
    if error is None:
        return UNKNOWN_ERROR_MESSAGE
    message = getattr(error, 'message', None)
    if isinstance(message, str) and message:
        return message
    if isinstance(error, dict):
        return error.get('message') or error.get('error') or UNKNOWN_ERROR_MESSAGE
    return str(error) or UNKNOWN_ERROR_MESSAGE


def is_not_found(error):
    """True for the PostgREST "no rows" answer to a .single() query."""
    return isinstance(error, APIError) and getattr(error, 'code', None) == 'PGRST116'


def create_supabase(url=None, key=None):
    url = url or SUPABASE_URL
    key = key or SUPABASE_ANON_KEY
    if not url or not key:
        logger.warning('Missing SUPABASE_URL or SUPABASE_ANON_KEY (anon key %s)',
                       'set' if key else 'not set')
        url = url or 'https://dummy.supabase.co'
        key = key or 'dummy-key'

    options = ClientOptions(
        postgrest_client_timeout=POSTGREST_TIMEOUT,
        auto_refresh_token=False,
        persist_session=False,
        headers={'x-client-info': CLIENT_INFO},
    )
    return create_client(url, key, options=options)


def authed_client(access_token=None) -> Client:
    """Client whose table, RPC and storage calls run as the given visitor (RLS applies)."""
    client = create_supabase()
    if access_token:
        client.options.headers['Authorization'] = f'Bearer {access_token}'
        client.postgrest.auth(access_token)
    return client


def call_edge_function(function_name, payload, access_token, default_error='요청 실패'):
    """POST a JSON payload to a Supabase edge function as the signed-in visitor."""
    if not access_token:
        raise ServiceError(LOGIN_REQUIRED_MESSAGE)

    url = f"{SUPABASE_URL}/functions/v1/{function_name}"
    headers = {
        'Content-Type': 'application/json',
        'Authorization': f'Bearer {access_token}',
    }
    if SUPABASE_ANON_KEY:
        headers['apikey'] = SUPABASE_ANON_KEY

    try:
        resp = requests.post(url, json=payload, headers=headers, timeout=EDGE_FUNCTION_TIMEOUT)
    except requests.Timeout as e:
        raise ServiceError(TIMEOUT_MESSAGE) from e
    except requests.RequestException as e:
        logger.warning('Edge function %s unreachable: %s', function_name, e)
        raise ServiceError(f'{default_error}: 서버에 연결할 수 없습니다.') from e

    try:
        body = resp.json()
    except ValueError:
        body = {}

    if not resp.ok:
        message = body.get('error') if isinstance(body, dict) else None
        raise ServiceError(message or default_error)
    return body


def with_timeout(fn, *args, seconds=REQUEST_TIMEOUT, **kwargs):
    """Run fn in a worker and give up after `seconds` so a stuck request cannot hang the page."""
    if not seconds:
        return fn(*args, **kwargs)
    future = _timeout_executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=seconds)
    except FutureTimeoutError as e:
        future.cancel()
        raise ServiceError(TIMEOUT_MESSAGE) from e


def execute(builder, seconds=None):
    """Execute a query builder, optionally inside the timeout race."""
    if seconds:
        return with_timeout(builder.execute, seconds=seconds)
    return builder.execute()


def first_row(response):
    """Data of a maybe_single() response; older clients return None instead of an empty response."""
    if response is None:
        return None
    data = response.data
    if isinstance(data, list):
        return data[0] if data else None
    return data


def page_range(page, size):
    start = (page - 1) * size
    return start, start + size - 1


def total_pages(total, size, minimum=0):
    if not size:
        return minimum
    return max(minimum, -(-total // size))
