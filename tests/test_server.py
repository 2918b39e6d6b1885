"""Tests for the HTTP admin surface."""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from calhours.admin import SyncAdmin
from calhours.models import EventPage
from calhours.server import create_app
from calhours.services import AuthenticationError

from conftest import NOW, FakeCalendar, FakeCredentials, make_event


@pytest.fixture
def client_for(settings, make_engine, state_store):
    def factory(calendars):
        admin = SyncAdmin(settings, make_engine(FakeCredentials(calendars)), state_store)
        app = create_app(settings, admin_factory=lambda s: admin, start_scheduler=False)
        return TestClient(app)
    return factory


def ok_calendar():
    return FakeCalendar([EventPage(items=[make_event('e1', 'x', NOW - timedelta(hours=1))],
                                   next_sync_token='tok')])


def test_health(client_for):
    with client_for({}) as client:
        response = client.get('/health')

    assert response.status_code == 200
    body = response.json()
    assert body['ok'] is True
    assert body['last_sync'] is None
    assert body['interval_seconds'] == 60


def test_sync_user_ok(client_for):
    with client_for({'alice@example.com': ok_calendar()}) as client:
        response = client.post('/admin/sync/user', params={'email': 'alice@example.com'})

    assert response.status_code == 200
    body = response.json()
    assert body['status'] == 'OK'
    assert body['email'] == 'alice@example.com'
    assert body['calendar_id'] == 'primary'
    assert body['reset'] is False
    assert body['report']['created'] == 1


def test_sync_user_error_returns_500(client_for):
    with client_for({'alice@example.com': AuthenticationError("Delegation denied", 403)}) as client:
        response = client.post('/admin/sync/user', params={'email': 'alice@example.com', 'reset': 'true'})

    assert response.status_code == 500
    body = response.json()
    assert body['status'] == 'ERROR'
    assert body['reset'] is True
    assert body['error'] == 'AuthenticationError: Delegation denied'


def test_sync_all(client_for):
    with client_for({'alice@example.com': ok_calendar()}) as client:
        response = client.post('/admin/sync/all')

    assert response.status_code == 200
    statuses = {r['email']: r['status'] for r in response.json()}
    assert statuses == {'alice@example.com': 'OK', 'bob@example.com': 'ERROR'}


def test_sync_all_without_users(client_for, settings):
    settings.workspace_users = ''
    with client_for({}) as client:
        response = client.post('/admin/sync/all')

    assert response.status_code == 400


def test_trigger(client_for):
    with client_for({}) as client:
        response = client.post('/admin/sync/trigger')
        assert client.app.state.runtime.trigger.is_set()

    assert response.status_code == 202
