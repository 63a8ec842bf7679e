from datetime import datetime, timedelta, timezone

import pytest

from app import create_app
from config import TestingConfig
from rollcall.modules.attendance_manager import AttendanceManager
from rollcall.modules.auth_manager import AuthManager
from rollcall.modules.class_manager import ClassManager
from rollcall.modules.database_manager import DatabaseManager
from rollcall.modules.qr_generator import QRGenerator
from rollcall.modules.report_generator import ReportGenerator
from rollcall.modules.session_manager import SessionManager

PASSWORD = 'secret123'


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)

    def set(self, now):
        self.now = now


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def db(tmp_path, clock):
    manager = DatabaseManager(str(tmp_path / 'rollcall.db'), clock=clock)
    yield manager
    manager.close_all_connections()


@pytest.fixture
def auth(db):
    return AuthManager(db)


@pytest.fixture
def classes(db):
    return ClassManager(db)


@pytest.fixture
def sessions(db, classes, clock):
    return SessionManager(db, classes, QRGenerator(box_size=2),
                          session_duration=timedelta(hours=1), clock=clock)


@pytest.fixture
def attendance(db, clock):
    return AttendanceManager(db, clock=clock)


@pytest.fixture
def reports(db, clock):
    return ReportGenerator(db, clock=clock)


@pytest.fixture
def teacher(auth):
    return auth.register('teacher@uni.edu', PASSWORD, 'Dr. Ada Lovelace', 'teacher')


@pytest.fixture
def student(auth):
    return auth.register('juan@uni.edu', PASSWORD, 'Dela Cruz, Juan', 'student')


@pytest.fixture
def other_student(auth):
    return auth.register('maria@uni.edu', PASSWORD, 'Santos, Maria', 'student')


@pytest.fixture
def course(classes, teacher):
    return classes.create_class(teacher, 'Computer Science 101', 'Intro course')


@pytest.fixture
def app(tmp_path, clock):
    class Config(TestingConfig):
        DATABASE_PATH = tmp_path / 'app.db'

    application = create_app(Config, clock=clock)
    yield application
    application.extensions['rollcall'].backend.close_all_connections()


@pytest.fixture
def client(app):
    return app.test_client()


def register_and_login(client, email, role, full_name='Test User'):
    response = client.post('/auth/register', json={
        'email': email,
        'password': PASSWORD,
        'full_name': full_name,
        'role': role
    })
    assert response.status_code == 201, response.get_json()
    response = client.post('/auth/login', json={'email': email, 'password': PASSWORD})
    assert response.status_code == 200, response.get_json()
    return response.get_json()
