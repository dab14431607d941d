from formbuilder_crm.app import build_config


def test_health(client):
    assert client.get('/health').get_json() == {'status': 'ok'}


def test_unknown_route_returns_json(client):
    response = client.get('/nowhere')
    assert response.status_code == 404
    assert response.get_json()['success'] is False


def test_non_object_body_is_rejected(client):
    response = client.post('/submissions', json=['not', 'an', 'object'])
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Request body must be a JSON object'


def test_postgres_url_is_normalized(monkeypatch):
    monkeypatch.setenv('DATABASE_URL', 'postgres://user:pw@db/forms')
    assert build_config()['SQLALCHEMY_DATABASE_URI'] == 'postgresql://user:pw@db/forms'


def test_jwt_secret_falls_back_to_secret_key(monkeypatch):
    monkeypatch.delenv('JWT_SECRET', raising=False)
    monkeypatch.setenv('SECRET_KEY', 'shared-secret')
    assert build_config()['JWT_SECRET'] == 'shared-secret'
