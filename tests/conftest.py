import pytest
import flask
from unittest.mock import MagicMock

from auth import AuthContext
from domain_events import reset_emission_failure_count
from tests.helpers.factories import seed_org
from tests.helpers.memory_store import MemoryStore


@pytest.fixture
def store():
    """A fresh in-memory DocumentStore per test."""
    return MemoryStore()


@pytest.fixture
def caller():
    """Build an AuthContext for a uid.

    Returns:
        function: caller(uid, email=None) -> AuthContext
    """
    def _caller(uid, email=None):
        return AuthContext(uid=uid, email=email if email is not None else f"{uid}@example.com")
    return _caller


@pytest.fixture
def org(store):
    """A BASIC-plan organization with one member per role."""
    return seed_org(store, 'org-1', plan='BASIC', members={
        'owner-1': 'OWNER',
        'admin-1': 'ADMIN',
        'lawyer-1': 'LAWYER',
        'paralegal-1': 'PARALEGAL',
        'viewer-1': 'VIEWER',
    })


@pytest.fixture(autouse=True)
def reset_emission_counter():
    reset_emission_failure_count()
    yield
    reset_emission_failure_count()


@pytest.fixture(autouse=True)
def no_identity_provider(mocker):
    """Keep handler tests away from Firebase Auth; individual tests override these."""
    mocker.patch('invitation.find_user_id_by_email', return_value=None)
    mocker.patch('invitation.lookup_user_email', return_value=None)


@pytest.fixture
def mock_request():
    """Create a mock Flask request object for testing.

    Returns:
        function: A function that creates a mock request with the specified parameters.
    """
    def _create_mock_request(headers=None, json_data=None, method='POST'):
        mock_request = MagicMock(spec=flask.Request)
        mock_request.headers = headers or {}
        mock_request.method = method
        mock_request.get_json = MagicMock(return_value=json_data)
        return mock_request

    return _create_mock_request
