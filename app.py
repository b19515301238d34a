from flask import Flask, request, jsonify, render_template, session, redirect, url_for, flash, g, abort
from functools import wraps
import logging
import os
from dotenv import load_dotenv
from werkzeug.utils import secure_filename

import supabase_client
import admin_service
import auth_service
import board_service
import comment_service
import restaurant_service
import review_service
from activity_tracker import INACTIVITY_TIMEOUT, check_request_idle, record_activity
from admin_service import AdminContext, verify_admin
from session_manager import (
    OfflineError,
    SessionRefreshTimeoutError,
    clear_session_refresh_state,
    ensure_session,
    store_session,
)
from supabase_client import ADMIN_REQUIRED_MESSAGE, LOGIN_REQUIRED_MESSAGE, ServiceError
from utils import (
    add_to_recent_history,
    clear_old_cache,
    clear_recent_history,
    format_board_date,
    format_detail_date,
    format_file_size,
    generate_restaurant_url_from_object,
    get_recent_history,
)

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev-secret-key-change-me')
app.config['SUPABASE_URL'] = supabase_client.SUPABASE_URL
app.config['SUPABASE_ANON_KEY'] = supabase_client.SUPABASE_ANON_KEY
app.config['APP_VERSION'] = os.getenv('APP_VERSION', '1.0.0')
app.config['MAX_CONTENT_LENGTH'] = 16 * 1024 * 1024  # 16MB max upload
app.config['INACTIVITY_TIMEOUT_MINUTES'] = int(
    os.getenv('INACTIVITY_TIMEOUT_MINUTES', INACTIVITY_TIMEOUT // 60000)
)

from flask_caching import Cache
cache = Cache(app, config={'CACHE_TYPE': 'SimpleCache'})

# Drop anything cached by a previous deployment
with app.app_context():
    clear_old_cache(cache, app.config['APP_VERSION'], logger)

IDLE_LOGOUT_MESSAGE = '장시간 활동이 없어 자동 로그아웃되었습니다.'
AUTH_SESSION_KEYS = ('user_id', 'email', 'nickname', 'role', 'access_token', 'refresh_token', 'expires_at')
BOARD_NAMES = {'notice': '공지사항', 'free': '자유게시판', 'suggestion': '건의사항'}
ADMIN_SECTIONS = ('restaurants', 'users', 'reviews', 'posts', 'terms', 'visits', 'reports',
                  'agencies', 'recommendations')

app.jinja_env.filters['board_date'] = format_board_date
app.jinja_env.filters['detail_date'] = format_detail_date
app.jinja_env.filters['file_size'] = format_file_size


@app.template_filter('restaurant_url')
def restaurant_link(restaurant):
    return generate_restaurant_url_from_object(restaurant) or url_for('restaurant_detail', restaurant_id=restaurant['id'])


def is_api_request():
    return request.path.startswith('/api/')


def sign_out_locally():
    for key in AUTH_SESSION_KEYS:
        session.pop(key, None)


def start_session(user, auth_session):
    session['user_id'] = user['id']
    session['email'] = user['email']
    session['nickname'] = user['nickname']
    session['role'] = user.get('role', 'user')
    store_session(session, auth_session)
    record_activity(session)


@app.before_request
def load_visitor():
    g.access_token = None
    if request.path.startswith('/static/'):
        return

    if 'user_id' in session:
        timeout = app.config['INACTIVITY_TIMEOUT_MINUTES'] * 60 * 1000
        if check_request_idle(session, timeout=timeout):
            logger.info('Signing out idle user %s', session.get('user_id'))
            sign_out_locally()
            flash(IDLE_LOGOUT_MESSAGE, 'warning')
        else:
            try:
                g.access_token = ensure_session(supabase_client.create_supabase(), session)
            except (OfflineError, SessionRefreshTimeoutError) as e:
                logger.warning('Session refresh unavailable: %s', e)
                g.access_token = session.get('access_token')
            except ServiceError as e:
                logger.info('Session could not be refreshed: %s', e.message)
                sign_out_locally()
                flash(e.message, 'warning')

    g.supabase = supabase_client.authed_client(g.access_token)


# Add cache headers for static assets
@app.after_request
def add_cache_headers(response):
    if request.path.startswith('/static/'):
        response.headers['Cache-Control'] = 'public, max-age=31536000'  # 1 year
    elif request.path in ['/api/regions', '/api/categories']:
        response.headers['Cache-Control'] = 'public, max-age=300'  # 5 minutes
    elif 'user_id' in session:
        response.headers['Cache-Control'] = 'private, no-store'
    return response


def login_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if 'user_id' not in session:
            if is_api_request():
                return jsonify({'error': LOGIN_REQUIRED_MESSAGE}), 401
            session['auth_redirect'] = request.full_path if request.query_string else request.path
            flash(LOGIN_REQUIRED_MESSAGE, 'info')
            return redirect(url_for('login'))
        return f(*args, **kwargs)
    return decorated


def admin_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if 'user_id' not in session:
            if is_api_request():
                return jsonify({'error': LOGIN_REQUIRED_MESSAGE}), 401
            return redirect(url_for('admin_login'))

        ctx = AdminContext(g.supabase, session['user_id'], g.access_token)
        try:
            g.admin = verify_admin(ctx)
        except ServiceError as e:
            if is_api_request():
                return jsonify({'error': e.message}), 403
            flash(e.message, 'error')
            return redirect(url_for('admin_login'))
        return f(*args, **kwargs)
    return decorated


def json_body():
    return request.get_json(silent=True) or {}


def current_user_id():
    return session.get('user_id')


@app.errorhandler(ServiceError)
def handle_service_error(e):
    if e.message == LOGIN_REQUIRED_MESSAGE:
        status = 401
    elif e.message == ADMIN_REQUIRED_MESSAGE:
        status = 403
    else:
        status = 400

    if is_api_request():
        return jsonify({'error': e.message}), status
    if request.method != 'GET' and request.referrer:
        flash(e.message, 'error')
        return redirect(request.referrer)
    return render_template('error.html', message=e.message), status


@app.errorhandler(404)
def not_found(e):
    if is_api_request():
        return jsonify({'error': '요청한 리소스를 찾을 수 없습니다.'}), 404
    return render_template('404.html'), 404


@app.errorhandler(413)
def file_too_large(e):
    return jsonify({'error': '파일 크기는 16MB 이하여야 합니다.'}), 413


# Public pages
@app.route('/')
def index():
    stats = None
    try:
        stats = restaurant_service.get_homepage_stats(g.supabase)
    except ServiceError as e:
        logger.warning('Homepage stats unavailable: %s', e.message)

    try:
        notices = board_service.get_notices(g.supabase)
        latest_posts = board_service.get_latest_posts(g.supabase)
    except ServiceError as e:
        logger.warning('Homepage boards unavailable: %s', e.message)
        notices, latest_posts = [], []

    return render_template(
        'index.html',
        stats=stats,
        notices=notices,
        latest_posts=latest_posts,
        popular=restaurant_service.get_popular_recommendations(g.supabase, limit=6),
        recent_history=get_recent_history(session),
    )


@app.route('/restaurants')
def restaurants_page():
    page = request.args.get('page', 1, type=int)
    result = restaurant_service.search_restaurants(
        g.supabase,
        keyword=request.args.get('keyword'),
        region_id=request.args.get('region'),
        category=request.args.get('category'),
        year=request.args.get('year', type=int),
        page=page,
        size=request.args.get('size', 20, type=int),
        order_by=request.args.get('order_by', restaurant_service.DEFAULT_ORDER),
    )
    return render_template(
        'restaurants.html',
        result=result,
        regions=restaurant_service.get_regions(g.supabase),
        categories=restaurant_service.get_categories(g.supabase),
        args=request.args,
    )


def render_restaurant(restaurant):
    add_to_recent_history(session, restaurant)
    page = request.args.get('page', 1, type=int)
    reviews = review_service.get_restaurant_reviews(g.supabase, restaurant['id'], page=page)
    my_reactions = review_service.get_my_reactions_for_reviews(
        g.supabase, current_user_id(), [r['id'] for r in reviews['data']]
    )
    return render_template(
        'restaurant_detail.html',
        restaurant=restaurant,
        summary=review_service.get_restaurant_review_summary(g.supabase, restaurant['id']),
        reviews=reviews,
        my_reactions=my_reactions,
        replies=review_service.get_replies_for_reviews(g.supabase, [r['id'] for r in reviews['data']]),
    )


@app.route('/restaurants/<restaurant_id>')
def restaurant_detail(restaurant_id):
    try:
        restaurant = restaurant_service.get_restaurant_by_id(g.supabase, restaurant_id)
    except ServiceError as e:
        logger.info('Restaurant %s not shown: %s', restaurant_id, e.message)
        abort(404)
    return render_restaurant(restaurant)


@app.route('/restaurants/<sub_add1>/<sub_add2>/<title>')
def restaurant_by_location(sub_add1, sub_add2, title):
    try:
        restaurant = restaurant_service.get_restaurant_by_location(g.supabase, sub_add1, sub_add2, title)
    except ServiceError as e:
        logger.info('Restaurant %s/%s/%s not shown: %s', sub_add1, sub_add2, title, e.message)
        abort(404)
    return render_restaurant(restaurant)


@app.route('/board')
def board_index():
    return render_template(
        'board_index.html',
        notices=board_service.get_notices(g.supabase),
        latest_posts=board_service.get_latest_posts(g.supabase),
        hot_posts=board_service.get_hot_posts(g.supabase, limit=10),
    )


@app.route('/board/free/hot')
def board_hot():
    return render_template('board_hot.html', posts=board_service.get_hot_posts(g.supabase))


@app.route('/board/<board_type>')
def board_list(board_type):
    if board_type not in board_service.BOARD_TYPES:
        abort(404)
    page = request.args.get('page', 1, type=int)
    result = board_service.get_posts(g.supabase, board_type, page=page)
    return render_template('board_list.html', board_type=board_type, board_name=BOARD_NAMES[board_type],
                           result=result)


@app.route('/board/<board_type>/write', methods=['GET', 'POST'])
@login_required
def board_write(board_type):
    if board_type not in board_service.BOARD_TYPES:
        abort(404)
    if board_type == 'notice' and session.get('role') != 'admin':
        flash(ADMIN_REQUIRED_MESSAGE, 'error')
        return redirect(url_for('board_list', board_type=board_type))

    if request.method == 'POST':
        data = {
            'title': request.form.get('title', '').strip(),
            'content': request.form.get('content', '').strip(),
            'board_type': board_type,
            'honeypot': request.form.get('website', ''),
        }
        if not data['title'] or not data['content']:
            flash('제목과 내용을 입력해주세요.', 'error')
            return render_template('board_write.html', board_type=board_type, form=data)
        try:
            post = board_service.create_post(g.supabase, g.access_token, current_user_id(), data)
        except ServiceError as e:
            flash(e.message, 'error')
            return render_template('board_write.html', board_type=board_type, form=data)
        flash('게시글이 등록되었습니다.', 'success')
        if post.get('id'):
            return redirect(url_for('board_detail', board_type=board_type, post_id=post['id']))
        return redirect(url_for('board_list', board_type=board_type))

    cooldown = board_service.check_post_cooldown(g.supabase, current_user_id())
    return render_template('board_write.html', board_type=board_type, form={}, cooldown=cooldown)


@app.route('/board/<board_type>/<post_id>')
def board_detail(board_type, post_id):
    if board_type not in board_service.BOARD_TYPES:
        abort(404)
    try:
        post = board_service.get_post_by_id(g.supabase, post_id)
    except ServiceError as e:
        logger.info('Post %s not shown: %s', post_id, e.message)
        abort(404)
    sort_by = request.args.get('sort', comment_service.SORT_LATEST)
    return render_template(
        'board_detail.html',
        board_type=board_type,
        post=post,
        comments=comment_service.get_comments(g.supabase, post_id, sort_by=sort_by),
        sort_by=sort_by,
    )


@app.route('/terms')
def terms_page():
    terms = [t for t in auth_service.get_public_terms(g.supabase) if t.get('code') != 'privacy']
    return render_template('terms.html', title='이용약관', terms=terms)


@app.route('/privacy')
def privacy_page():
    terms = [t for t in auth_service.get_public_terms(g.supabase) if t.get('code') == 'privacy']
    return render_template('terms.html', title='개인정보처리방침', terms=terms)


# Authentication pages
@app.route('/login', methods=['GET', 'POST'])
def login():
    if 'user_id' in session:
        return redirect(url_for('index'))

    if request.method == 'POST':
        try:
            result = auth_service.login(
                supabase_client.create_supabase(),
                request.form.get('email', '').strip(),
                request.form.get('password', ''),
            )
        except ServiceError as e:
            flash(e.message, 'error')
            return render_template('login.html', email=request.form.get('email', '')), 401

        start_session(result['user'], result['session'])
        return redirect(session.pop('auth_redirect', None) or url_for('index'))

    return render_template('login.html')


@app.route('/register/terms', methods=['GET', 'POST'])
def register_terms():
    terms = auth_service.get_public_terms(g.supabase)

    if request.method == 'POST':
        consents = []
        for t in terms:
            agreed = request.form.get(f"terms_{t['id']}") == 'on'
            if t.get('is_required') and not agreed:
                flash('필수 약관에 모두 동의해주세요.', 'error')
                return render_template('register_terms.html', terms=terms), 400
            consents.append({'terms_id': t['id'], 'version': t['version'], 'agreed': agreed})
        session[auth_service.TERMS_CONSENT_KEY] = consents
        return redirect(url_for('register'))

    return render_template('register_terms.html', terms=terms)


@app.route('/register', methods=['GET', 'POST'])
def register():
    if 'user_id' in session:
        return redirect(url_for('index'))
    if auth_service.TERMS_CONSENT_KEY not in session:
        return redirect(url_for('register_terms'))

    if request.method == 'POST':
        email = request.form.get('email', '').strip()
        password = request.form.get('password', '')
        nickname = request.form.get('nickname', '').strip()
        if password != request.form.get('password_confirm', ''):
            flash('비밀번호가 일치하지 않습니다.', 'error')
            return render_template('register.html', email=email, nickname=nickname), 400

        try:
            result = auth_service.register(
                supabase_client.create_supabase(), email, password, nickname,
                session.get(auth_service.TERMS_CONSENT_KEY),
            )
        except ServiceError as e:
            flash(e.message, 'error')
            return render_template('register.html', email=email, nickname=nickname), 400

        if result['consents_saved']:
            session.pop(auth_service.TERMS_CONSENT_KEY, None)

        if result['session'] is None:
            flash('가입 확인 메일을 보냈습니다. 메일 인증 후 로그인해주세요.', 'info')
            return redirect(url_for('login'))

        start_session(dict(result['user'], role='user'), result['session'])
        flash('회원가입이 완료되었습니다.', 'success')
        return redirect(url_for('index'))

    return render_template('register.html')


@app.route('/logout')
def logout():
    auth_service.logout(g.supabase)
    clear_session_refresh_state()
    session.clear()
    return redirect(url_for('login'))


@app.route('/profile', methods=['GET', 'POST'])
@login_required
def profile():
    if request.method == 'POST':
        action = request.form.get('action')
        try:
            if action == 'password':
                if request.form.get('new_password') != request.form.get('new_password_confirm'):
                    raise ServiceError('새 비밀번호가 일치하지 않습니다.')
                new_session = auth_service.change_password(
                    supabase_client.create_supabase(), session.get('email'),
                    request.form.get('current_password', ''), request.form.get('new_password', ''),
                )
                if new_session is not None:
                    store_session(session, new_session)
                flash('비밀번호가 변경되었습니다.', 'success')
            else:
                user = auth_service.update_profile(
                    supabase_client.create_supabase(), g.access_token, session.get('refresh_token'),
                    nickname=request.form.get('nickname', '').strip() or session.get('nickname'),
                )
                session['nickname'] = user['nickname']
                flash('프로필이 수정되었습니다.', 'success')
        except ServiceError as e:
            flash(e.message, 'error')
        return redirect(url_for('profile'))

    user_id = current_user_id()
    return render_template(
        'profile.html',
        posts=auth_service.get_user_posts(g.supabase, user_id),
        reviews=auth_service.get_user_reviews(g.supabase, user_id),
        favorites=auth_service.get_user_favorites(g.supabase, user_id),
        recent_history=get_recent_history(session),
    )


# Admin pages
@app.route('/admin/login', methods=['GET', 'POST'])
def admin_login():
    if request.method == 'POST':
        client = supabase_client.create_supabase()
        try:
            result = auth_service.login(client, request.form.get('email', '').strip(),
                                        request.form.get('password', ''))
        except ServiceError as e:
            flash(e.message, 'error')
            return render_template('admin_login.html'), 401

        if result['user'].get('role') != 'admin':
            auth_service.logout(client)
            flash(ADMIN_REQUIRED_MESSAGE, 'error')
            return render_template('admin_login.html'), 403

        start_session(result['user'], result['session'])
        return redirect(url_for('admin_dashboard'))

    return render_template('admin_login.html')


@app.route('/admin')
@admin_required
def admin_dashboard():
    return render_template('admin_dashboard.html', stats=admin_service.get_dashboard_stats(g.admin))


def load_admin_section(section, ctx, args):
    page = args.get('page', 1, type=int)
    if section == 'restaurants':
        return admin_service.get_restaurants(ctx, {'search': args.get('search'), 'page': page})
    elif section == 'users':
        return admin_service.get_users(ctx, page=page, role=args.get('role', 'all'),
                                       search=args.get('search', ''))
    elif section == 'reviews':
        return admin_service.get_admin_reviews(ctx, page=page, search=args.get('search'))
    elif section == 'posts':
        return admin_service.get_posts(ctx, board_type=args.get('board_type'), page=page)
    elif section == 'terms':
        return {'data': admin_service.get_terms_list(ctx)}
    elif section == 'visits':
        return admin_service.get_visit_records(ctx, page=page, year=args.get('year', type=int))
    elif section == 'reports':
        return {'data': admin_service.get_post_reports(ctx, status=args.get('status', 'all'))}
    elif section == 'agencies':
        return admin_service.get_agencies(ctx, page=page)
    elif section == 'recommendations':
        return {'data': [], 'stats': admin_service.get_recommendation_stats(ctx)}


@app.route('/admin/<section>')
@admin_required
def admin_section(section):
    if section not in ADMIN_SECTIONS:
        abort(404)
    return render_template('admin_section.html', section=section,
                           result=load_admin_section(section, g.admin, request.args))


@app.route('/api')
def api_index():
    return jsonify({'message': '공무원맛집 API'})


# Authentication API
@app.route('/api/login', methods=['POST'])
def api_login():
    data = json_body()
    result = auth_service.login(supabase_client.create_supabase(), data.get('email', ''), data.get('password', ''))
    start_session(result['user'], result['session'])
    return jsonify({'message': '로그인 성공', 'user': result['user']}), 200


@app.route('/api/register', methods=['POST'])
def api_register():
    data = json_body()
    consents = data.get('terms_consents') or session.get(auth_service.TERMS_CONSENT_KEY)
    if consents:
        consents = auth_service.validate_terms_consents(consents)
    result = auth_service.register(supabase_client.create_supabase(), data.get('email', ''),
                                   data.get('password', ''), data.get('nickname', ''), consents)
    if result['consents_saved']:
        session.pop(auth_service.TERMS_CONSENT_KEY, None)
    if result['session'] is not None:
        start_session(dict(result['user'], role='user'), result['session'])
    return jsonify({'user': result['user'], 'confirmation_required': result['session'] is None}), 201


@app.route('/api/logout', methods=['POST'])
def api_logout():
    auth_service.logout(g.supabase)
    clear_session_refresh_state()
    session.clear()
    return jsonify({'message': '로그아웃되었습니다.'})


@app.route('/api/me', methods=['GET', 'PUT', 'DELETE'])
@login_required
def api_me():
    if request.method == 'PUT':
        data = json_body()
        user = auth_service.update_profile(supabase_client.create_supabase(), g.access_token,
                                           session.get('refresh_token'),
                                           nickname=data.get('nickname'), email=data.get('email'))
        session['nickname'] = user['nickname']
        return jsonify(user)
    elif request.method == 'DELETE':
        auth_service.delete_account(g.supabase, current_user_id())
        session.clear()
        return jsonify({'message': '계정이 삭제되었습니다.'})

    user = auth_service.get_current_user(g.supabase, g.access_token)
    if user is None:
        return jsonify({'error': LOGIN_REQUIRED_MESSAGE}), 401
    user['role'] = session.get('role', 'user')
    return jsonify(user)


@app.route('/api/me/password', methods=['POST'])
@login_required
def api_change_password():
    data = json_body()
    new_session = auth_service.change_password(supabase_client.create_supabase(), session.get('email'),
                                               data.get('current_password', ''), data.get('new_password', ''))
    if new_session is not None:
        store_session(session, new_session)
    return jsonify({'message': '비밀번호가 변경되었습니다.'})


@app.route('/api/me/posts')
@login_required
def api_my_posts():
    return jsonify(auth_service.get_user_posts(g.supabase, current_user_id()))


@app.route('/api/me/reviews')
@login_required
def api_my_reviews():
    return jsonify(auth_service.get_user_reviews(g.supabase, current_user_id()))


@app.route('/api/me/favorites')
@login_required
def api_my_favorites():
    return jsonify(auth_service.get_user_favorites(g.supabase, current_user_id()))


@app.route('/api/me/favorites/<favorite_id>', methods=['DELETE'])
@login_required
def api_remove_favorite(favorite_id):
    auth_service.remove_favorite(g.supabase, favorite_id)
    return jsonify({'message': '즐겨찾기가 해제되었습니다.'})


@app.route('/api/terms')
def api_terms():
    return jsonify(auth_service.get_public_terms(g.supabase))


@app.route('/api/terms/consent', methods=['POST'])
def api_terms_consent():
    consents = auth_service.validate_terms_consents(json_body().get('consents') or [])
    session[auth_service.TERMS_CONSENT_KEY] = consents
    return jsonify({'message': '약관 동의가 저장되었습니다.', 'count': len(consents)})


# Restaurant API
@app.route('/api/restaurants')
def api_search_restaurants():
    return jsonify(restaurant_service.search_restaurants(
        g.supabase,
        keyword=request.args.get('keyword'),
        region_id=request.args.get('region_id'),
        category=request.args.get('category'),
        year=request.args.get('year', type=int),
        page=request.args.get('page', 1, type=int),
        size=request.args.get('size', restaurant_service.DEFAULT_SEARCH_SIZE, type=int),
        order_by=request.args.get('order_by', restaurant_service.DEFAULT_ORDER),
    ))


@app.route('/api/restaurants/<restaurant_id>')
def api_get_restaurant(restaurant_id):
    return jsonify(restaurant_service.get_restaurant_by_id(g.supabase, restaurant_id))


@app.route('/api/restaurants/location/<sub_add1>/<sub_add2>/<title>')
def api_get_restaurant_by_location(sub_add1, sub_add2, title):
    return jsonify(restaurant_service.get_restaurant_by_location(g.supabase, sub_add1, sub_add2, title))


@app.route('/api/regions')
def api_regions():
    province = request.args.get('province')
    if province:
        return jsonify(restaurant_service.get_regions_by_province(g.supabase, province))
    return jsonify(restaurant_service.get_regions(g.supabase))


@app.route('/api/categories')
def api_categories():
    return jsonify(restaurant_service.get_categories(g.supabase))


@app.route('/api/stats/homepage')
def api_homepage_stats():
    return jsonify(restaurant_service.get_homepage_stats(g.supabase))


@app.route('/api/restaurants/<restaurant_id>/favorite', methods=['POST'])
@login_required
def api_toggle_favorite(restaurant_id):
    return jsonify(restaurant_service.toggle_favorite(g.supabase, current_user_id(), restaurant_id))


@app.route('/api/favorites')
@login_required
def api_favorites():
    return jsonify(restaurant_service.get_favorite_restaurants(g.supabase, current_user_id()))


@app.route('/api/recommendations/<kind>')
def api_recommendations(kind):
    limit = request.args.get('limit', 10, type=int)
    if kind == 'popular':
        return jsonify(restaurant_service.get_popular_recommendations(g.supabase, limit))
    elif kind == 'location':
        return jsonify(restaurant_service.get_location_based_recommendations(
            g.supabase, request.args.get('region'), request.args.get('sub_region'), limit))
    elif kind == 'preference':
        if 'user_id' not in session:
            return jsonify({'error': LOGIN_REQUIRED_MESSAGE}), 401
        return jsonify(restaurant_service.get_user_preference_recommendations(g.supabase, current_user_id(), limit))
    elif kind == 'trending':
        return jsonify(restaurant_service.get_trending_recommendations(g.supabase, limit))
    abort(404)


@app.route('/api/history', methods=['GET', 'DELETE'])
def api_recent_history():
    if request.method == 'DELETE':
        clear_recent_history(session)
        return jsonify({'message': '최근 본 음식점 기록이 삭제되었습니다.'})
    return jsonify(get_recent_history(session))


# Review API
@app.route('/api/restaurants/<restaurant_id>/reviews', methods=['GET', 'POST'])
def api_restaurant_reviews(restaurant_id):
    if request.method == 'POST':
        if 'user_id' not in session:
            return jsonify({'error': LOGIN_REQUIRED_MESSAGE}), 401
        data = json_body()
        review = review_service.create_review(g.supabase, current_user_id(), restaurant_id,
                                              data.get('rating'), data.get('content'))
        return jsonify(review), 201

    return jsonify(review_service.get_restaurant_reviews(
        g.supabase, restaurant_id,
        page=request.args.get('page', 1, type=int),
        size=request.args.get('size', 10, type=int),
    ))


@app.route('/api/restaurants/<restaurant_id>/reviews/summary')
def api_review_summary(restaurant_id):
    return jsonify(review_service.get_restaurant_review_summary(g.supabase, restaurant_id))


@app.route('/api/reviews/<review_id>/reactions', methods=['GET', 'POST'])
def api_review_reactions(review_id):
    if request.method == 'POST':
        if 'user_id' not in session:
            return jsonify({'error': LOGIN_REQUIRED_MESSAGE}), 401
        result = review_service.toggle_reaction(g.supabase, current_user_id(), review_id,
                                                json_body().get('reaction_type'))
        result['counts'] = review_service.get_reaction_counts(g.supabase, review_id)
        return jsonify(result)

    return jsonify({
        'counts': review_service.get_reaction_counts(g.supabase, review_id),
        'mine': review_service.get_my_reaction(g.supabase, current_user_id(), review_id),
    })


@app.route('/api/reviews/reactions/mine')
def api_my_reactions():
    ids = [i for i in request.args.get('ids', '').split(',') if i]
    return jsonify(review_service.get_my_reactions_for_reviews(g.supabase, current_user_id(), ids))


@app.route('/api/reviews/<review_id>/replies', methods=['GET', 'POST'])
def api_review_replies(review_id):
    if request.method == 'POST':
        if 'user_id' not in session:
            return jsonify({'error': LOGIN_REQUIRED_MESSAGE}), 401
        data = json_body()
        reply = review_service.create_reply(g.supabase, current_user_id(), review_id,
                                            data.get('content'), data.get('parent_id'))
        return jsonify(reply), 201
    return jsonify(review_service.get_replies(g.supabase, review_id))


@app.route('/api/reviews/<review_id>/replies/count')
def api_reply_count(review_id):
    return jsonify({'count': review_service.get_reply_count(g.supabase, review_id)})


@app.route('/api/replies/<reply_id>', methods=['PUT', 'DELETE'])
@login_required
def api_reply(reply_id):
    if request.method == 'DELETE':
        review_service.delete_reply(g.supabase, current_user_id(), reply_id)
        return jsonify({'message': '답글이 삭제되었습니다.'})
    return jsonify(review_service.update_reply(g.supabase, current_user_id(), reply_id,
                                               json_body().get('content')))


@app.route('/api/reviews/<review_id>/photos', methods=['GET', 'POST'])
def api_review_photos(review_id):
    if request.method == 'POST':
        if 'user_id' not in session:
            return jsonify({'error': LOGIN_REQUIRED_MESSAGE}), 401
        files = [f for f in request.files.getlist('photos') if f and f.filename]
        if not files:
            return jsonify({'error': '업로드할 사진을 선택해주세요.'}), 400
        for f in files:
            f.filename = secure_filename(f.filename) or 'photo'
        results = review_service.upload_review_photos(g.supabase, current_user_id(), review_id, files)
        return jsonify({'message': f'{len(results)}장의 사진이 업로드되었습니다.', 'photos': results}), 201

    return jsonify({
        'photos': review_service.get_review_photos(g.supabase, review_id),
        'max': review_service.MAX_PHOTOS_PER_REVIEW,
    })


@app.route('/api/photos/<photo_id>', methods=['PATCH', 'DELETE'])
@login_required
def api_photo(photo_id):
    if request.method == 'DELETE':
        review_service.delete_review_photo(g.supabase, current_user_id(), photo_id)
        return jsonify({'message': '사진이 삭제되었습니다.'})
    review_service.update_photo_order(g.supabase, current_user_id(), photo_id,
                                      json_body().get('display_order', 0))
    return jsonify({'message': '순서가 변경되었습니다.'})


# Board API
@app.route('/api/posts', methods=['GET', 'POST'])
def api_posts():
    if request.method == 'POST':
        if 'user_id' not in session:
            return jsonify({'error': LOGIN_REQUIRED_MESSAGE}), 401
        post = board_service.create_post(g.supabase, g.access_token, current_user_id(), json_body())
        return jsonify(post), 201

    board_type = request.args.get('board_type', 'free')
    if board_type not in board_service.BOARD_TYPES:
        return jsonify({'error': '게시판 종류가 올바르지 않습니다.'}), 400
    return jsonify(board_service.get_posts(
        g.supabase, board_type,
        page=request.args.get('page', 1, type=int),
        size=request.args.get('size', 20, type=int),
    ))


@app.route('/api/posts/notices')
def api_notices():
    return jsonify(board_service.get_notices(g.supabase))


@app.route('/api/posts/latest')
def api_latest_posts():
    return jsonify(board_service.get_latest_posts(g.supabase))


@app.route('/api/posts/hot')
def api_hot_posts():
    return jsonify(board_service.get_hot_posts(
        g.supabase,
        board_code=request.args.get('board', 'free'),
        hours=request.args.get('hours', 48, type=int),
        limit=request.args.get('limit', 30, type=int),
    ))


@app.route('/api/posts/cooldown')
@login_required
def api_post_cooldown():
    return jsonify(board_service.check_post_cooldown(g.supabase, current_user_id()))


@app.route('/api/posts/images', methods=['POST'])
@login_required
def api_upload_post_image():
    if 'file' not in request.files:
        return jsonify({'error': 'No file part'}), 400

    file = request.files['file']
    if file.filename == '':
        return jsonify({'error': 'No selected file'}), 400

    file.filename = secure_filename(file.filename) or 'image'
    result = review_service.upload_post_image(g.supabase, current_user_id(), file,
                                              request.form.get('post_temp_id', 'draft'))
    return jsonify(result), 201


@app.route('/api/posts/<post_id>', methods=['GET', 'PUT', 'DELETE'])
def api_post(post_id):
    if request.method == 'GET':
        return jsonify(board_service.get_post_by_id(g.supabase, post_id))

    if 'user_id' not in session:
        return jsonify({'error': LOGIN_REQUIRED_MESSAGE}), 401
    if request.method == 'PUT':
        return jsonify(board_service.update_post(g.supabase, current_user_id(), post_id, json_body()))

    board_service.delete_post(g.supabase, current_user_id(), post_id)
    return jsonify({'message': '게시글이 삭제되었습니다.'})


@app.route('/api/posts/<post_id>/like', methods=['POST'])
@login_required
def api_like_post(post_id):
    return jsonify(board_service.toggle_like(g.supabase, current_user_id(), post_id))


@app.route('/api/posts/<post_id>/report', methods=['POST'])
@login_required
def api_report_post(post_id):
    data = json_body()
    board_service.report_post(g.access_token, post_id, data.get('reason'), data.get('description'))
    return jsonify({'message': '신고가 접수되었습니다.'})


# Comment API
@app.route('/api/posts/<post_id>/comments', methods=['GET', 'POST'])
def api_comments(post_id):
    if request.method == 'POST':
        if 'user_id' not in session:
            return jsonify({'error': LOGIN_REQUIRED_MESSAGE}), 401
        data = json_body()
        comment = comment_service.create_comment(g.access_token, post_id, data.get('content', ''),
                                                 data.get('parent_id'))
        return jsonify(comment), 201

    cursor = None
    if request.args.get('cursor_created_at') and request.args.get('cursor_id'):
        cursor = {'created_at': request.args['cursor_created_at'], 'id': request.args['cursor_id']}
    return jsonify(comment_service.get_comments(
        g.supabase, post_id,
        sort_by=request.args.get('sort', comment_service.SORT_LATEST),
        limit=request.args.get('limit', 20, type=int),
        cursor=cursor,
    ))


@app.route('/api/comments/<comment_id>/replies')
def api_comment_replies(comment_id):
    cursor = None
    if request.args.get('cursor_created_at') and request.args.get('cursor_id'):
        cursor = {'created_at': request.args['cursor_created_at'], 'id': request.args['cursor_id']}
    return jsonify(comment_service.get_replies(g.supabase, comment_id,
                                               limit=request.args.get('limit', 10, type=int),
                                               cursor=cursor))


@app.route('/api/comments/<comment_id>', methods=['PUT', 'DELETE'])
@login_required
def api_comment(comment_id):
    if request.method == 'DELETE':
        comment_service.delete_comment(g.access_token, comment_id)
        return jsonify({'message': '댓글이 삭제되었습니다.'})
    return jsonify(comment_service.update_comment(g.access_token, comment_id, json_body().get('content', '')))


@app.route('/api/comments/<comment_id>/like', methods=['POST'])
@login_required
def api_like_comment(comment_id):
    return jsonify(comment_service.toggle_comment_like(g.access_token, comment_id))


@app.route('/api/comments/<comment_id>/report', methods=['POST'])
@login_required
def api_report_comment(comment_id):
    data = json_body()
    comment_service.report_comment(g.access_token, comment_id, data.get('reason'), data.get('description'))
    return jsonify({'message': '신고가 접수되었습니다.'})


@app.route('/api/users/search')
@login_required
def api_search_users():
    return jsonify(comment_service.search_users(g.supabase, request.args.get('q', ''),
                                                request.args.get('limit', 10, type=int)))


# Admin API
@app.route('/api/admin/restaurants', methods=['GET', 'POST'])
@admin_required
def api_admin_restaurants():
    if request.method == 'POST':
        return jsonify(admin_service.create_restaurant(g.admin, json_body())), 201

    filters = {
        'search': request.args.get('search'),
        'region': request.args.get('region'),
        'sub_region': request.args.get('sub_region'),
        'category': request.args.get('category'),
        'page': request.args.get('page', 1, type=int),
        'limit': request.args.get('limit', 20, type=int),
    }
    if request.args.get('is_active') in ('true', 'false'):
        filters['is_active'] = request.args['is_active'] == 'true'
    return jsonify(admin_service.get_restaurants(g.admin, filters))


@app.route('/api/admin/restaurants/<restaurant_id>', methods=['PUT', 'DELETE'])
@admin_required
def api_admin_restaurant(restaurant_id):
    if request.method == 'DELETE':
        result = admin_service.delete_restaurant(g.admin, restaurant_id)
        return jsonify(result), 200 if result['success'] else 400
    return jsonify(admin_service.update_restaurant(g.admin, restaurant_id, json_body()))


@app.route('/api/admin/users', methods=['GET', 'POST'])
@admin_required
def api_admin_users():
    if request.method == 'POST':
        data = json_body()
        user = admin_service.create_admin_user(g.admin, data.get('email', ''), data.get('password', ''),
                                               data.get('nickname', ''))
        return jsonify(user), 201

    return jsonify(admin_service.get_users(
        g.admin,
        page=request.args.get('page', 1, type=int),
        limit=request.args.get('limit', 20, type=int),
        role=request.args.get('role', 'all'),
        search=request.args.get('search', ''),
    ))


@app.route('/api/admin/users/<user_id>/role', methods=['PUT'])
@admin_required
def api_admin_user_role(user_id):
    return jsonify(admin_service.update_user_role(g.admin, user_id, json_body().get('role')))


@app.route('/api/admin/users/<user_id>', methods=['DELETE'])
@admin_required
def api_admin_delete_user(user_id):
    result = admin_service.delete_user(g.admin, user_id)
    if result['partial']:
        logger.warning('User %s only partially deleted: %s', user_id, result['message'])
    return jsonify(result)


@app.route('/api/admin/agencies')
@admin_required
def api_admin_agencies():
    return jsonify(admin_service.get_agencies(g.admin, page=request.args.get('page', 1, type=int),
                                              limit=request.args.get('limit', 20, type=int)))


@app.route('/api/admin/reviews')
@admin_required
def api_admin_reviews():
    return jsonify(admin_service.get_admin_reviews(g.admin, page=request.args.get('page', 1, type=int),
                                                   limit=request.args.get('limit', 20, type=int),
                                                   search=request.args.get('search')))


@app.route('/api/admin/reviews/<review_id>', methods=['DELETE'])
@admin_required
def api_admin_delete_review(review_id):
    return jsonify(admin_service.delete_review(g.admin, review_id))


@app.route('/api/admin/posts', methods=['GET', 'POST'])
@admin_required
def api_admin_posts():
    if request.method == 'POST':
        return jsonify(admin_service.create_post(g.admin, json_body())), 201
    return jsonify(admin_service.get_posts(g.admin, board_type=request.args.get('board_type'),
                                           page=request.args.get('page', 1, type=int),
                                           limit=request.args.get('limit', 20, type=int)))


@app.route('/api/admin/posts/<post_id>', methods=['PUT', 'DELETE'])
@admin_required
def api_admin_post(post_id):
    if request.method == 'DELETE':
        result = admin_service.delete_post(g.admin, post_id)
        return jsonify(result), 200 if result['success'] else 400
    return jsonify(admin_service.update_post(g.admin, post_id, json_body()))


@app.route('/api/admin/stats/dashboard')
@admin_required
def api_admin_dashboard_stats():
    return jsonify(admin_service.get_dashboard_stats(g.admin))


@app.route('/api/admin/stats/recommendations')
@admin_required
def api_admin_recommendation_stats():
    return jsonify(admin_service.get_recommendation_stats(g.admin))


@app.route('/api/admin/terms', methods=['GET', 'POST'])
@admin_required
def api_admin_terms():
    if request.method == 'POST':
        return jsonify(admin_service.create_terms(g.admin, json_body())), 201
    return jsonify(admin_service.get_terms_list(g.admin))


@app.route('/api/admin/terms/<terms_id>', methods=['PUT', 'DELETE'])
@admin_required
def api_admin_terms_item(terms_id):
    if request.method == 'DELETE':
        return jsonify(admin_service.delete_terms(g.admin, terms_id))
    return jsonify(admin_service.update_terms(g.admin, terms_id, json_body()))


@app.route('/api/admin/visits', methods=['GET', 'POST'])
@admin_required
def api_admin_visits():
    if request.method == 'POST':
        return jsonify(admin_service.create_visit_record(g.admin, json_body())), 201
    return jsonify(admin_service.get_visit_records(
        g.admin,
        page=request.args.get('page', 1, type=int),
        limit=request.args.get('limit', 20, type=int),
        year=request.args.get('year', type=int),
        restaurant_id=request.args.get('restaurant_id'),
    ))


@app.route('/api/admin/visits/<record_id>', methods=['PUT', 'DELETE'])
@admin_required
def api_admin_visit(record_id):
    if request.method == 'DELETE':
        return jsonify(admin_service.delete_visit_record(g.admin, record_id))
    return jsonify(admin_service.update_visit_record(g.admin, record_id, json_body()))


@app.route('/api/admin/reports')
@admin_required
def api_admin_reports():
    return jsonify(admin_service.get_post_reports(g.admin, status=request.args.get('status', 'all')))


@app.route('/api/admin/reports/<report_id>/moderate', methods=['POST'])
@admin_required
def api_admin_moderate(report_id):
    data = json_body()
    result = admin_service.moderate_post(g.admin, report_id, data.get('post_id'), data.get('action'),
                                         next_status=data.get('next_status'),
                                         reason_code=data.get('reason_code'), notes=data.get('notes'))
    return jsonify({'message': '처리 완료', 'result': result})


@app.route('/api/admin/reports/<report_id>/status', methods=['PUT'])
@admin_required
def api_admin_report_status(report_id):
    admin_service.set_report_status(g.admin, report_id, json_body().get('status'))
    return jsonify({'message': '상태가 변경되었습니다.'})
