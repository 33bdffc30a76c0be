from fastapi.testclient import TestClient
from sqlmodel import SQLModel, create_engine, Session
from edusite.main import app
from edusite import config, crud


def setup_db(tmp_path):
    db = tmp_path / 'api_users.db'
    engine = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    crud.engine = engine
    return engine


LOGIN = {"uid": "google-123", "email": "Hoa@Example.com", "name": "Hoa Tran"}


def test_login_disabled_by_default(tmp_path, monkeypatch):
    setup_db(tmp_path)
    monkeypatch.setattr(config, "ALLOW_DEV_LOGIN", False)
    client = TestClient(app)
    assert client.post('/users/login', json=LOGIN).status_code == 404


def test_login_profile_and_logout(tmp_path, monkeypatch):
    setup_db(tmp_path)
    monkeypatch.setattr(config, "ALLOW_DEV_LOGIN", True)
    client = TestClient(app)

    r = client.post('/users/login', json=LOGIN)
    assert r.status_code == 200
    user = r.json()['user']
    assert user['email'] == 'hoa@example.com' and user['role'] == 'user'
    assert 'id' not in user
    assert client.cookies.get('token')

    first = client.get('/users/profile')
    assert first.status_code == 200
    assert first.json() == {"success": True, "data": user, "cached": False}
    assert client.get('/users/profile').json()['cached'] is True

    stats = client.get('/api/cache/stats').json()['cache_stats']['profiles']
    assert stats['size'] == 1

    out = client.post('/users/logout')
    assert out.json() == {"message": "Logout successful"}
    assert client.get('/users/profile').status_code == 401


def test_profile_requires_valid_token(tmp_path):
    engine = setup_db(tmp_path)
    client = TestClient(app)
    assert client.get('/users/profile').status_code == 401
    bad = client.get('/users/profile', headers={"Authorization": "Bearer google-123.deadbeef"})
    assert bad.status_code == 403

    with Session(engine) as s:
        crud.upsert_user(s, 'google-9', 'nam@example.com', 'Nam')
        token = crud.sign_user_token(s, 'google-9')
    ok = client.get('/users/profile', headers={"Authorization": f"Bearer {token}"})
    assert ok.status_code == 200 and ok.json()['data']['uid'] == 'google-9'


def test_second_login_keeps_stored_record(tmp_path, monkeypatch):
    engine = setup_db(tmp_path)
    monkeypatch.setattr(config, "ALLOW_DEV_LOGIN", True)
    client = TestClient(app)
    client.post('/users/login', json=LOGIN)
    again = client.post('/users/login', json={**LOGIN, "name": "Someone Else"})
    assert again.json()['user']['name'] == 'Hoa Tran'
    # login is limited to two attempts a minute
    assert client.post('/users/login', json=LOGIN).status_code == 429
    with Session(engine) as s:
        assert crud.get_user_by_email(s, 'hoa@example.com') is not None
