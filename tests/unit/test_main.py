"""
Unit tests for the HTTP entry points in main.py.
"""
import base64
import json

import pytest
from flask import Flask

import main
from tests.helpers.factories import seed_org

app = Flask(__name__)


def _gateway_headers(uid):
    claims = base64.urlsafe_b64encode(json.dumps({'sub': uid}).encode('utf-8')).decode('utf-8')
    return {'X-Endpoint-API-Userinfo': claims}


@pytest.fixture
def patched_store(mocker, store):
    mocker.patch.object(main, 'get_store', return_value=store)
    return store


def test_request_data_unwraps_callable_body(mock_request):
    request = mock_request(json_data={'data': {'orgId': 'org-1'}})
    assert main.request_data(request) == {'orgId': 'org-1'}


def test_request_data_keeps_plain_body(mock_request):
    request = mock_request(json_data={'orgId': 'org-1', 'data': {'x': 1}})
    assert main.request_data(request) == {'orgId': 'org-1', 'data': {'x': 1}}


@pytest.mark.parametrize("body", [None, [], 'text'])
def test_request_data_non_object(mock_request, body):
    assert main.request_data(mock_request(json_data=body)) == {}


def test_client_create_endpoint(mock_request, patched_store):
    seed_org(patched_store, 'org-1', plan='BASIC', members={'lawyer-1': 'LAWYER'})
    request = mock_request(headers=_gateway_headers('lawyer-1'),
                           json_data={'data': {'orgId': 'org-1', 'name': 'Acme'}})

    with app.app_context():
        response, status = main.client_create(request)

    assert status == 200
    assert response.get_json()['data']['name'] == 'Acme'


def test_endpoint_maps_error_status(mock_request, patched_store):
    request = mock_request(headers=_gateway_headers('lawyer-1'), json_data={'name': 'Acme'})

    with app.app_context():
        response, status = main.client_create(request)

    assert status == 400
    assert response.get_json()['error']['code'] == 'ORG_REQUIRED'


def test_outbox_process_returns_stats(mock_request, patched_store):
    with app.app_context():
        response, status = main.outbox_process(mock_request())

    assert status == 200
    assert response.get_json() == {
        'success': True,
        'data': {'claimed': 0, 'done': 0, 'retried': 0, 'dead': 0, 'skipped': 0, 'errors': 0},
    }


def test_outbox_process_failure(mock_request, mocker):
    mocker.patch.object(main, 'get_store', return_value=object())
    mocker.patch.object(main, 'process_due_outbox', side_effect=RuntimeError('store down'))

    with app.app_context():
        response, status = main.outbox_process(mock_request())

    assert status == 500
    assert response.get_json()['error']['code'] == 'INTERNAL_ERROR'


def test_notification_unread_count_endpoint(mock_request, patched_store):
    seed_org(patched_store, 'org-1', plan='BASIC', members={'lawyer-1': 'LAWYER'})
    request = mock_request(headers=_gateway_headers('lawyer-1'), json_data={'data': {'orgId': 'org-1'}})

    with app.app_context():
        response, status = main.notification_unread_count(request)

    assert status == 200
    assert response.get_json() == {'success': True, 'data': {'count': 0}}
