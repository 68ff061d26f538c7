import json as jsonlib

import mongomock
import pytest

from clinic_crm import db as db_module
from clinic_crm.app import app as flask_app


@pytest.fixture
def database():
    client = mongomock.MongoClient()
    database = client['clinic_crm_test']
    db_module.init_db(database)
    yield database
    db_module.init_db(None)


@pytest.fixture
def app(database, tmp_path):
    flask_app.config.update(TESTING=True, UPLOAD_FOLDER=str(tmp_path / 'uploads'))
    yield flask_app


@pytest.fixture
def client(app):
    return app.test_client()


class FlaskResponse:
    def __init__(self, response):
        self.status_code = response.status_code
        self.text = response.get_data(as_text=True)

    def json(self):
        return jsonlib.loads(self.text)


class FlaskSession:
    """Minimal stand-in for ``requests.Session`` that talks to the Flask test client."""

    def __init__(self, test_client, prefix='http://crm.test'):
        self.test_client = test_client
        self.prefix = prefix
        self.calls = []

    def request(self, method, url, json=None, params=None, timeout=None):
        path = url[len(self.prefix):] if url.startswith(self.prefix) else url
        self.calls.append((method, path))
        response = self.test_client.open(path, method=method, json=json, query_string=params)
        return FlaskResponse(response)


@pytest.fixture
def api_session(client):
    return FlaskSession(client)


@pytest.fixture
def crm(api_session):
    from clinic_crm.client import CrmClient
    return CrmClient(base_url='http://crm.test/api', timeout=5, session=api_session)


def add_subject(client, path, **fields):
    response = client.post(f'/api/{path}', json=fields)
    assert response.status_code == 201, response.get_json()
    return response.get_json()['data']
