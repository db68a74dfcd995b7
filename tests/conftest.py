import os
import sys
from datetime import date

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

# Ensure the repository root is on sys.path so tests can import the package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ.setdefault('CLINICAVOICE_DATABASE_URL', 'sqlite://')

from clinicavoice import main, time_utils  # noqa: E402
from clinicavoice.auth import CLINICIAN, PATIENT, create_access_token  # noqa: E402
from clinicavoice.config import Settings, get_settings  # noqa: E402
from clinicavoice.integrations import LoggingNotifier  # noqa: E402
from clinicavoice.services import build_services  # noqa: E402
from clinicavoice.store import SqlDocumentStore  # noqa: E402

TODAY = date(2024, 6, 15)
CLINICIAN_ID = 'clinician-0001-aaaa'
OTHER_CLINICIAN_ID = 'clinician-0002-bbbb'
INTERNAL_TOKEN = 'internal-test-token'


@pytest.fixture
def settings():
    return Settings(
        database_url='sqlite://',
        jwt_secret='test-secret',
        frontend_url='https://portal.example.test',
        internal_api_token=INTERNAL_TOKEN,
        inline_tasks=True,
    )


@pytest.fixture
def store():
    engine = sa.create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    yield SqlDocumentStore.from_engine(engine)
    engine.dispose()


@pytest.fixture
def notifier():
    return LoggingNotifier('clinic@example.test')


@pytest.fixture
def services(settings, store, notifier):
    svc = build_services(settings, store, inline_tasks=True, notifier=notifier)
    yield svc
    svc.close()


@pytest.fixture
def frozen_today(monkeypatch):
    """Pin the calendar date used for ages, visit windows and past checks."""

    monkeypatch.setattr(time_utils, 'today', lambda: TODAY)
    return TODAY


@pytest.fixture
def client(services, settings):
    main.app.dependency_overrides[main.get_services] = lambda: services
    main.app.dependency_overrides[get_settings] = lambda: settings
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_token(settings):
    def _make(subject_id, role=CLINICIAN, **claims):
        return create_access_token(subject_id, role, settings=settings, **claims)

    return _make


@pytest.fixture
def clinician_token(make_token):
    return make_token(CLINICIAN_ID)


@pytest.fixture
def other_clinician_token(make_token):
    return make_token(OTHER_CLINICIAN_ID)


@pytest.fixture
def patient_token(make_token):
    def _make(portal_user_id):
        return make_token(portal_user_id, PATIENT)

    return _make
