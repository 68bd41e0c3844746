import pytest

from makercalc import create_app, db
from makercalc.models import User


class ApiClient:
    """Test client that sends the X-User-Id header on every request"""

    def __init__(self, client, user_id):
        self.client = client
        self.headers = {'X-User-Id': str(user_id)}

    def get(self, url, **kwargs):
        return self.client.get(url, headers=self.headers, **kwargs)

    def post(self, url, **kwargs):
        return self.client.post(url, headers=self.headers, **kwargs)

    def put(self, url, **kwargs):
        return self.client.put(url, headers=self.headers, **kwargs)

    def delete(self, url, **kwargs):
        return self.client.delete(url, headers=self.headers, **kwargs)


@pytest.fixture
def app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'UPLOAD_FOLDER': str(tmp_path / 'uploads'),
        'SECRET_KEY': 'test',
        'COST_UNIT_CONVERSION': False,
    })
    with app.app_context():
        db.session.add_all([
            User(username='maker', email='maker@example.com'),
            User(username='studio', email='studio@example.com', subscription_plan='enterprise',
                 subscription_status='active'),
        ])
        db.session.commit()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def api(client):
    """Free-plan user"""
    return ApiClient(client, 1)


@pytest.fixture
def studio(client):
    """Enterprise-plan user"""
    return ApiClient(client, 2)


@pytest.fixture
def make_material(api):
    def _make(client=None, **overrides):
        payload = {'name': 'Olive oil', 'totalCost': '25.50', 'quantity': '500', 'unit': 'g'}
        payload.update(overrides)
        response = (client or api).post('/api/raw-materials', json=payload)
        assert response.status_code == 201, response.get_json()
        return response.get_json()
    return _make
