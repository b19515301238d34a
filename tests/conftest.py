import pytest

import supabase_client
from fakes import EdgeRecorder, FakeSupabase


@pytest.fixture
def db():
    return FakeSupabase()


@pytest.fixture
def edge(monkeypatch):
    recorder = EdgeRecorder()
    monkeypatch.setattr(supabase_client.requests, 'post', recorder)
    return recorder


@pytest.fixture
def app(db, monkeypatch):
    monkeypatch.setattr(supabase_client, 'create_supabase', lambda *args, **kwargs: db)
    monkeypatch.setattr(supabase_client, 'authed_client', lambda access_token=None: db)

    from app import app as flask_app
    flask_app.config.update(TESTING=True, SECRET_KEY='test-secret')
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login_as(client, db):
    """Put a signed-in visitor into the test client's session."""
    def login(user_id='user-1', role='user', nickname='테스터', email='tester@example.com'):
        db.seed('profiles', {'user_id': user_id, 'nickname': nickname, 'email': email, 'role': role})
        with client.session_transaction() as sess:
            sess['user_id'] = user_id
            sess['email'] = email
            sess['nickname'] = nickname
            sess['role'] = role
            sess['access_token'] = f'access-{user_id}'
            sess['refresh_token'] = f'refresh-{user_id}'
            sess['expires_at'] = 4102444800  # 2100-01-01
        return user_id
    return login
