from fastapi.testclient import TestClient
from sqlmodel import SQLModel, create_engine, Session
from edusite.main import app
from edusite import crud
from edusite.cache import get_caches


def setup_db(tmp_path):
    db = tmp_path / 'api_resources.db'
    engine = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    crud.engine = engine
    return engine


def auth_headers(engine, uid='uid-admin', email='admin@example.com', role='admin'):
    with Session(engine) as s:
        crud.upsert_user(s, uid, email, 'Admin')
        crud.set_user_role(s, email, role)
        return {"Authorization": f"Bearer {crud.sign_user_token(s, uid)}"}


COURSE = {"image": "/uploads/courses/ielts.png", "title": "IELTS Foundation", "link": "https://realvn.top/ielts"}


def test_health_and_root(tmp_path):
    setup_db(tmp_path)
    client = TestClient(app)
    r = client.get('/health')
    assert r.status_code == 200 and r.json()['status'] == 'ok'
    assert 'X-Request-ID' in r.headers
    assert client.get('/').status_code == 200


def test_list_is_cached_and_invalidated_by_writes(tmp_path):
    engine = setup_db(tmp_path)
    client = TestClient(app)
    headers = auth_headers(engine)

    r = client.get('/courses')
    assert r.status_code == 200
    assert r.json() == {"success": True, "data": [], "cached": False}
    assert client.get('/courses').json()['cached'] is True

    created = client.post('/courses', json=COURSE, headers=headers)
    assert created.status_code == 201
    course = created.json()['data']
    assert course['title'] == 'IELTS Foundation' and 'createdAt' in course

    r2 = client.get('/courses')
    assert r2.json()['cached'] is False
    assert [c['id'] for c in r2.json()['data']] == [course['id']]

    upd = client.put(f"/courses/{course['id']}", json={"title": "IELTS Intensive", "oldImage": "x.png"},
                     headers=headers)
    assert upd.status_code == 200
    assert upd.json()['data']['title'] == 'IELTS Intensive'
    assert upd.json()['data']['link'] == COURSE['link']
    r3 = client.get('/courses')
    assert r3.json()['cached'] is False
    assert r3.json()['data'][0]['title'] == 'IELTS Intensive'

    assert client.delete(f"/courses/{course['id']}", headers=headers).json() == {"success": True, "data": {}}
    assert client.get('/courses').json()['data'] == []


def test_families_are_cached_independently(tmp_path):
    engine = setup_db(tmp_path)
    client = TestClient(app)
    headers = auth_headers(engine)
    client.get('/banners')
    client.get('/partners')
    client.post('/partners', json={"image": "p.png", "name": "British Council"}, headers=headers)
    assert client.get('/banners').json()['cached'] is True
    assert client.get('/partners').json()['cached'] is False
    stats = client.get('/api/cache/stats').json()
    assert stats['status'] == 'ok'
    assert stats['cache_stats']['resources:banners']['hits'] == 1


def test_get_single_item_and_not_found(tmp_path):
    engine = setup_db(tmp_path)
    client = TestClient(app)
    headers = auth_headers(engine)
    teacher = {"image": "t.png", "name": "Ms. Hoa", "experience": "10 years",
               "graduate": "HNUE", "achievements": "IELTS 8.5"}
    tid = client.post('/teachers', json=teacher, headers=headers).json()['data']['id']
    r = client.get(f'/teachers/{tid}')
    assert r.status_code == 200 and r.json()['data']['name'] == 'Ms. Hoa'
    missing = client.get('/teachers/999')
    assert missing.status_code == 404
    assert missing.json()['detail'] == 'Cannot find teacher with ID: 999'
    assert client.put('/teachers/999', json={"name": "x"}, headers=headers).status_code == 404
    assert client.delete('/teachers/999', headers=headers).status_code == 404


def test_validation_of_bodies(tmp_path):
    engine = setup_db(tmp_path)
    client = TestClient(app)
    headers = auth_headers(engine)
    too_long = {**COURSE, "title": "x" * 201}
    r = client.post('/courses', json=too_long, headers=headers)
    assert r.status_code == 422
    assert r.json()['message'] == 'Input validation failed'
    assert client.post('/courses', json={"image": "a.png"}, headers=headers).status_code == 422

    cid = client.post('/courses', json=COURSE, headers=headers).json()['data']['id']
    bad = client.put(f'/courses/{cid}', json={"title": "   "}, headers=headers)
    assert bad.status_code == 422

    news = {"image": "n.png", "title": "Opening", "summary": "New campus", "link": "https://realvn.top/n",
            "publishedAt": "2025-01-15T08:00:00"}
    created = client.post('/news', json=news, headers=headers)
    assert created.status_code == 201
    assert created.json()['data']['publishedAt'].startswith('2025-01-15T08:00:00')


def test_news_dates_without_timezone_are_stored(tmp_path):
    engine = setup_db(tmp_path)
    client = TestClient(app)
    headers = auth_headers(engine)
    news = {"image": "n.png", "title": "Summer camp", "summary": "July intake", "link": "https://realvn.top/s"}
    created = client.post('/news', json={**news, "publishedAt": "2025-06-01T09:30:00"}, headers=headers)
    assert created.status_code == 201
    nid = created.json()['data']['id']

    moved = client.put(f'/news/{nid}', json={"publishedAt": "2025-06-02T10:00:00"}, headers=headers)
    assert moved.status_code == 200
    assert moved.json()['data']['publishedAt'].startswith('2025-06-02T10:00:00')

    aware = client.put(f'/news/{nid}', json={"publishedAt": "2025-06-03T10:00:00+07:00"}, headers=headers)
    assert aware.status_code == 200
    assert client.get(f'/news/{nid}').json()['data']['title'] == 'Summer camp'


def test_admin_guard(tmp_path):
    engine = setup_db(tmp_path)
    client = TestClient(app)
    assert client.post('/courses', json=COURSE).status_code == 401
    assert client.post('/courses', json=COURSE, headers={"Authorization": "Bearer forged.sig"}).status_code == 401
    user_headers = auth_headers(engine, uid='uid-user', email='user@example.com', role='user')
    assert client.post('/courses', json=COURSE, headers=user_headers).status_code == 403

    ghost = {"Authorization": f"Bearer ghost.{crud._signature('ghost')}"}
    assert client.post('/courses', json=COURSE, headers=ghost).status_code == 404

    admin = auth_headers(engine)
    client.cookies.set('token', admin['Authorization'].split(' ', 1)[1])
    assert client.post('/courses', json=COURSE).status_code == 201


def test_list_rate_limit(tmp_path):
    setup_db(tmp_path)
    client = TestClient(app)
    codes = [client.get('/students').status_code for _ in range(11)]
    assert codes[:10] == [200] * 10
    assert codes[10] == 429
    # limits are per path
    assert client.get('/banners').status_code == 200


def test_cache_registry_dependency_can_be_overridden(tmp_path):
    from edusite.cache import build_registry
    setup_db(tmp_path)
    isolated = build_registry()
    app.dependency_overrides[get_caches] = lambda: isolated
    try:
        client = TestClient(app)
        client.get('/news')
        assert isolated.resources['news'].get_stats()['sets'] == 1
    finally:
        app.dependency_overrides.clear()
