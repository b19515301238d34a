import pytest
import requests

import admin_service as admin
from admin_service import AdminContext
from fakes import FakeHttpResponse
from supabase_client import ADMIN_REQUIRED_MESSAGE, ServiceError


@pytest.fixture
def ctx(db):
    db.seed('profiles',
            {'user_id': 'boss', 'nickname': '관리자', 'email': 'boss@example.com', 'role': 'admin',
             'created_at': '2024-01-01'},
            {'user_id': 'u1', 'nickname': '일반', 'email': 'u1@example.com', 'role': 'user',
             'created_at': '2024-02-01'})
    return admin.verify_admin(AdminContext(db, 'boss', 'admin-token'))


def test_check_admin_role(ctx, db):
    assert admin.check_admin_role(db, 'boss') is True
    assert admin.check_admin_role(db, 'u1') is False
    assert admin.check_admin_role(db, 'nobody') is False
    assert admin.check_admin_role(db, None) is False


def test_check_admin_role_failure_counts_as_not_admin(db):
    db.fail('profiles')
    assert admin.check_admin_role(db, 'boss') is False


def test_verify_admin_marks_context(ctx, db):
    assert ctx.verified
    with pytest.raises(ServiceError) as excinfo:
        admin.verify_admin(AdminContext(db, 'u1', 'token'))
    assert excinfo.value.message == ADMIN_REQUIRED_MESSAGE


def test_verified_context_skips_role_lookup(ctx, db):
    db.calls.clear()
    admin.get_restaurants(ctx)
    assert ('profiles', 'select') not in db.calls


def test_unverified_context_is_checked(db):
    db.seed('profiles', {'user_id': 'u1', 'role': 'user'})
    with pytest.raises(ServiceError) as excinfo:
        admin.get_restaurants(AdminContext(db, 'u1', 'token'))
    assert excinfo.value.message == ADMIN_REQUIRED_MESSAGE


def test_restaurant_crud(ctx, db):
    created = admin.create_restaurant(ctx, {'name': '새식당', 'address': '서울 종로구', 'category': '한식'})
    assert created['is_active'] is True

    updated = admin.update_restaurant(ctx, created['id'], {'name': '바뀐식당'})
    assert updated['name'] == '바뀐식당' and updated['updated_at']

    listing = admin.get_restaurants(ctx, {'search': '바뀐'})
    assert listing['total'] == 1 and listing['total_pages'] == 1

    assert admin.delete_restaurant(ctx, created['id'])['success'] is True
    assert admin.get_restaurants(ctx)['data'] == []


def test_restaurant_filters(ctx, db):
    db.seed('restaurants',
            {'id': 1, 'name': 'A', 'address': 'x', 'region': '서울', 'is_active': True, 'created_at': '1'},
            {'id': 2, 'name': 'B', 'address': 'y', 'region': '서울', 'is_active': False, 'created_at': '2'},
            {'id': 3, 'name': 'C', 'address': 'z', 'region': '부산', 'is_active': True, 'created_at': '3'})
    result = admin.get_restaurants(ctx, {'region': '서울', 'is_active': True})
    assert [r['id'] for r in result['data']] == [1]


def test_update_missing_restaurant(ctx):
    with pytest.raises(ServiceError) as excinfo:
        admin.update_restaurant(ctx, 404, {'name': 'x'})
    assert excinfo.value.message == '음식점 수정 실패: 업데이트된 음식점 정보를 찾을 수 없습니다.'


def test_delete_restaurant_failure_is_reported(ctx, db):
    db.fail('restaurants', 'delete', message='foreign key')
    assert admin.delete_restaurant(ctx, 1) == {'success': False, 'message': '음식점 삭제 실패: foreign key'}


def test_get_users_from_edge_function(ctx, edge):
    edge.responses['admin-users'] = FakeHttpResponse(200, {
        'data': [{'user_id': 'u1', 'email': 'u1@example.com', 'nickname': None, 'role': None}],
        'total': 1, 'page': 1, 'perPage': 20, 'totalPages': 1,
    })
    result = admin.get_users(ctx, search='u1')
    assert result['data'] == [{'user_id': 'u1', 'email': 'u1@example.com', 'nickname': 'N/A', 'role': 'user',
                               'created_at': None}]
    assert edge.last('admin-users')['json'] == {'action': 'list', 'page': 1, 'perPage': 20, 'role': 'all',
                                                'search': 'u1'}


def test_get_users_falls_back_to_profiles(ctx, edge):
    edge.responses['admin-users'] = FakeHttpResponse(500, {'error': 'boom'})
    result = admin.get_users(ctx, role='admin')
    assert [u['user_id'] for u in result['data']] == ['boss']

    result = admin.get_users(ctx, search='U1@')
    assert [u['user_id'] for u in result['data']] == ['u1']


def test_update_user_role(ctx, db):
    assert admin.update_user_role(ctx, 'u1', 'admin')['role'] == 'admin'
    with pytest.raises(ServiceError):
        admin.update_user_role(ctx, 'u1', 'superuser')
    with pytest.raises(ServiceError):
        admin.update_user_role(ctx, 'ghost', 'user')


def test_delete_user_full(ctx, edge):
    edge.responses['admin-users'] = FakeHttpResponse(200, {'success': True})
    assert admin.delete_user(ctx, 'u1') == {'success': True, 'partial': False, 'message': '사용자가 삭제되었습니다.'}
    assert edge.last('admin-users')['json'] == {'action': 'delete', 'user_id': 'u1'}


def test_delete_user_partial_from_edge(ctx, edge):
    edge.responses['admin-users'] = FakeHttpResponse(200, {'partial': True, 'message': 'auth delete refused'})
    result = admin.delete_user(ctx, 'u1')
    assert result['partial'] is True
    assert 'auth delete refused' in result['message']


def test_delete_user_edge_unreachable_deletes_profile(ctx, edge, db):
    edge.responses['admin-users'] = requests.ConnectionError('down')
    result = admin.delete_user(ctx, 'u1')
    assert result == {'success': True, 'partial': True,
                      'message': 'Admin Edge 접근이 실패하여 프로필만 삭제되었습니다.'}
    assert [p['user_id'] for p in db.rows('profiles')] == ['boss']


def test_delete_user_profile_failure(ctx, edge, db):
    edge.responses['admin-users'] = requests.ConnectionError('down')
    db.fail('profiles', 'delete', message='rls')
    with pytest.raises(ServiceError) as excinfo:
        admin.delete_user(ctx, 'u1')
    assert excinfo.value.message == '사용자 삭제 실패: 프로필 삭제 실패: rls'


def test_create_admin_user(ctx, edge):
    edge.responses['admin-users'] = FakeHttpResponse(200, {'user_id': 'new-admin'})
    created = admin.create_admin_user(ctx, 'new@example.com', 'pw123456', '새관리자')
    assert created['user_id'] == 'new-admin' and created['role'] == 'admin'

    edge.responses['admin-users'] = FakeHttpResponse(200, {})
    with pytest.raises(ServiceError) as excinfo:
        admin.create_admin_user(ctx, 'new@example.com', 'pw123456', '새관리자')
    assert excinfo.value.message == '관리자 계정 생성 실패: 생성된 user_id를 확인할 수 없습니다.'


def test_admin_reviews_with_region(ctx, db):
    db.seed('v_reviews_detailed',
            {'id': 'r1', 'restaurant_id': 1, 'restaurant_name': '국밥집', 'content': '맛있음', 'created_at': '1'},
            {'id': 'r2', 'restaurant_id': 2, 'restaurant_name': '칼국수', 'content': '보통', 'created_at': '2'})
    db.seed('restaurants', {'id': 1, 'region': '서울', 'sub_region': '종로구'})

    result = admin.get_admin_reviews(ctx, search='국밥')
    assert [r['id'] for r in result['data']] == ['r1']
    assert result['data'][0]['region'] == '서울'

    assert admin.delete_review(ctx, 'r1') == {'success': True}


def test_admin_posts(ctx, db):
    post = admin.create_post(ctx, {'title': '공지', 'content': '내용', 'board_type': 'notice', 'is_pinned': 1})
    assert post['author_id'] == 'boss' and post['is_pinned'] is True
    assert post['author']['nickname'] == '관리자'

    listing = admin.get_posts(ctx, board_type='notice')
    assert listing['total'] == 1

    updated = admin.update_post(ctx, post['id'], {'title': '수정된 공지', 'author': {'nickname': 'x'}})
    assert updated['title'] == '수정된 공지'
    assert admin.delete_post(ctx, post['id'])['success'] is True


@pytest.mark.parametrize('data, message', [
    ({'title': 'x'}, '게시글 작성 실패: 제목과 내용을 입력해주세요.'),
    ({'title': '  ', 'content': '내용', 'board_type': 'free'}, '게시글 작성 실패: 제목과 내용을 입력해주세요.'),
    ({'title': '공지', 'content': '내용'}, '게시글 작성 실패: 게시판 종류가 올바르지 않습니다.'),
    ({'title': '공지', 'content': '내용', 'board_type': 'market'}, '게시글 작성 실패: 게시판 종류가 올바르지 않습니다.'),
])
def test_create_post_validates_fields(ctx, db, data, message):
    with pytest.raises(ServiceError) as excinfo:
        admin.create_post(ctx, data)
    assert excinfo.value.message == message
    assert db.rows('posts') == []


def test_dashboard_stats(ctx, db):
    db.seed('restaurants', {'id': 1, 'is_active': True}, {'id': 2, 'is_active': True}, {'id': 3, 'is_active': False})
    db.seed('posts', {'id': 1})
    db.seed('reviews', {'rating': 5}, {'rating': 4})
    assert admin.get_dashboard_stats(ctx) == {
        'total_restaurants': 3,
        'active_restaurants': 2,
        'inactive_restaurants': 1,
        'total_users': 2,
        'total_posts': 1,
        'total_reviews': 2,
        'average_rating': 4.5,
    }


def test_dashboard_stats_failure_is_zero(ctx, db):
    db.fail('posts')
    stats = admin.get_dashboard_stats(ctx)
    assert set(stats.values()) == {0}


def test_recommendation_stats(ctx, db):
    db.seed('restaurants', {'id': 1, 'is_active': True}, {'id': 2, 'is_active': False})
    stats = admin.get_recommendation_stats(ctx)
    assert stats['recommendation_coverage'] == 50
    assert stats['total_users'] == 2


def test_terms_crud(ctx, db):
    created = admin.create_terms(ctx, {'code': 'service', 'version': '1.0', 'title': '이용약관', 'is_required': True})
    admin.create_terms(ctx, {'code': 'service', 'version': '2.0', 'title': '이용약관'})
    assert [t['version'] for t in admin.get_terms_list(ctx)] == ['2.0', '1.0']

    assert admin.update_terms(ctx, created['id'], {'title': '서비스 이용약관'})['title'] == '서비스 이용약관'
    assert admin.delete_terms(ctx, created['id']) == {'success': True}
    with pytest.raises(ServiceError):
        admin.update_terms(ctx, created['id'], {'title': 'x'})


def test_visit_records(ctx, db):
    record = admin.create_visit_record(ctx, {'restaurant_id': 1, 'year': 2024, 'visit_count': 3})
    admin.create_visit_record(ctx, {'restaurant_id': 2, 'year': 2023, 'visit_count': 1})

    assert admin.get_visit_records(ctx, year=2024)['total'] == 1
    assert [r['year'] for r in admin.get_visit_records(ctx)['data']] == [2024, 2023]
    assert admin.update_visit_record(ctx, record['id'], {'visit_count': 4})['visit_count'] == 4
    assert admin.delete_visit_record(ctx, record['id']) == {'success': True}


def test_post_reports(ctx, db):
    db.seed('posts', {'id': 'p1', 'title': '문제글', 'author_id': 'u1', 'is_active': True})
    db.seed('post_reports',
            {'id': 'rep1', 'post_id': 'p1', 'reporter_id': 'boss', 'status': 'pending', 'created_at': '2'},
            {'id': 'rep2', 'post_id': 'p1', 'reporter_id': 'u1', 'status': 'dismissed', 'created_at': '1'})

    reports = admin.get_post_reports(ctx)
    assert [r['id'] for r in reports] == ['rep1', 'rep2']
    assert reports[0]['post']['title'] == '문제글'
    assert reports[0]['reporter']['nickname'] == '관리자'
    assert reports[0]['author']['nickname'] == '일반'

    assert [r['id'] for r in admin.get_post_reports(ctx, status='pending')] == ['rep1']


def test_moderate_post(ctx, edge):
    edge.responses['moderate-post'] = FakeHttpResponse(200, {'ok': True})
    assert admin.moderate_post(ctx, 'rep1', 'p1', 'hide', next_status='penalized') == {'ok': True}
    assert edge.last('moderate-post')['json'] == {'post_id': 'p1', 'action': 'hide', 'report_id': 'rep1',
                                                  'report_status': 'penalized', 'reason_code': None, 'notes': None}

    with pytest.raises(ServiceError):
        admin.moderate_post(ctx, 'rep1', 'p1', 'ban')
    with pytest.raises(ServiceError):
        admin.moderate_post(ctx, 'rep1', 'p1', 'hide', next_status='closed')


def test_set_report_status(ctx, db):
    db.seed('post_reports', {'id': 'rep1', 'status': 'pending'})
    admin.set_report_status(ctx, 'rep1', 'in_progress')
    row = db.rows('post_reports')[0]
    assert row['status'] == 'in_progress' and row['reviewed_by'] == 'boss'

    with pytest.raises(ServiceError):
        admin.set_report_status(ctx, 'rep1', 'archived')


def test_agencies(ctx, db):
    db.seed('agencies', {'id': 1, 'name': '행정안전부', 'created_at': '1'})
    assert admin.get_agencies(ctx)['data'][0]['name'] == '행정안전부'
