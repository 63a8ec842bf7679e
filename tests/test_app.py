import base64
import io

import pytest
from flask import session
from openpyxl import load_workbook

from app import ACCESS_TOKEN_KEY, create_app, services
from config import TestingConfig
from conftest import register_and_login
from rollcall.modules.database_manager import Backend


@pytest.fixture
def teacher_client(app):
    client = app.test_client()
    register_and_login(client, 'teacher@uni.edu', 'teacher', 'Dr. Ada Lovelace')
    return client


@pytest.fixture
def student_client(app):
    client = app.test_client()
    register_and_login(client, 'juan@uni.edu', 'student', 'Dela Cruz, Juan')
    return client


@pytest.fixture
def course(teacher_client):
    response = teacher_client.post('/teacher/classes', json={
        'name': 'Computer Science 101',
        'description': 'Intro course'
    })
    assert response.status_code == 201
    return response.get_json()['class']


def test_login_redirects_by_role(client):
    data = register_and_login(client, 'teacher@uni.edu', 'teacher', 'Dr. Ada Lovelace')
    assert data['redirect'] == '/dashboard/teacher'
    assert data['profile']['role'] == 'teacher'

    other = client.application.test_client()
    data = register_and_login(other, 'juan@uni.edu', 'student', 'Dela Cruz, Juan')
    assert data['redirect'] == '/dashboard/student'


def test_login_with_bad_password(client):
    register_and_login(client, 'juan@uni.edu', 'student')
    response = client.post('/auth/login', json={'email': 'juan@uni.edu', 'password': 'nope'})
    assert response.status_code == 401
    assert response.get_json()['success'] is False


def test_register_validation_error(client):
    response = client.post('/auth/register', json={
        'email': 'juan@uni.edu',
        'password': '1',
        'full_name': 'Juan',
        'role': 'student'
    })
    assert response.status_code == 400


def test_protected_routes_require_login(client):
    assert client.get('/teacher/classes').status_code == 401
    assert client.get('/student/classes').status_code == 401
    assert client.get('/scan?token=abc').status_code == 401


def test_roles_are_enforced(teacher_client, student_client):
    assert student_client.get('/teacher/classes').status_code == 403
    assert teacher_client.post('/student/enroll', json={'code': 'ABC123'}).status_code == 403


def test_me_and_logout(student_client):
    response = student_client.get('/auth/me')
    assert response.get_json()['profile']['email'] == 'juan@uni.edu'

    assert student_client.post('/auth/logout').status_code == 200
    assert student_client.get('/auth/me').status_code == 401


def test_attendance_flow(app, teacher_client, student_client, course, clock):
    response = student_client.post('/student/enroll', json={'code': course['invite_code']})
    assert response.status_code == 201
    assert response.get_json()['message'] == 'Successfully joined Computer Science 101!'

    response = student_client.post('/student/enroll', json={'code': course['invite_code']})
    assert response.status_code == 409
    assert response.get_json()['message'] == 'You are already enrolled in this class!'

    qr = teacher_client.get(f"/teacher/classes/{course['id']}/qr").get_json()
    assert qr['scan_url'].startswith('http://testserver/scan?token=')
    assert base64.b64decode(qr['qr_image']).startswith(b'\x89PNG')

    scan_path = qr['scan_url'][len('http://testserver'):]
    response = student_client.get(scan_path)
    assert response.status_code == 200
    assert response.get_json()['already_marked'] is False

    response = student_client.post('/scan', json={'qr_data': qr['scan_url']})
    assert response.status_code == 200
    assert response.get_json()['already_marked'] is True

    summary = student_client.get('/student/summary').get_json()
    assert summary['enrolled_classes'] == 1
    assert summary['present_count'] == 1

    history = student_client.get(f"/student/classes/{course['id']}/history").get_json()
    assert history['class_name'] == 'Computer Science 101'
    assert [entry['status'] for entry in history['history']] == ['present']

    classes = student_client.get('/student/classes').get_json()['classes']
    assert classes[0]['teacher_name'] == 'Dr. Ada Lovelace'

    report = teacher_client.get(f"/teacher/classes/{course['id']}/report").get_json()
    assert report['total_sessions'] == 1
    assert report['rows'][0]['percentage'] == 100

    listed = teacher_client.get('/teacher/classes').get_json()['classes']
    assert listed[0]['session_count'] == 1


def test_scan_errors(teacher_client, student_client, course, clock):
    assert student_client.post('/scan', json={'qr_data': 'not a token'}).status_code == 400
    assert student_client.get('/scan').status_code == 400
    assert student_client.get('/scan?token=unknownToken').status_code == 400

    qr = teacher_client.get(f"/teacher/classes/{course['id']}/qr").get_json()
    clock.advance(hours=1)
    response = student_client.post('/scan', json={'qr_data': qr['scan_url']})
    assert response.status_code == 410
    assert response.get_json()['error_type'] == 'expired_token'


def test_qr_reuse_and_regenerate(teacher_client, course):
    first = teacher_client.get(f"/teacher/classes/{course['id']}/qr").get_json()
    second = teacher_client.get(f"/teacher/classes/{course['id']}/qr").get_json()
    assert first['session']['id'] == second['session']['id']

    response = teacher_client.post(f"/teacher/classes/{course['id']}/qr/regenerate")
    assert response.get_json()['session']['id'] != first['session']['id']

    image = teacher_client.get(f"/teacher/classes/{course['id']}/qr.png")
    assert image.mimetype == 'image/png'
    assert image.data.startswith(b'\x89PNG')


def test_enroll_with_unknown_code(student_client):
    response = student_client.post('/student/enroll', json={'code': 'ZZZZZZ'})
    assert response.status_code == 404
    assert response.get_json()['message'] == 'Invalid Invite Code. Please check and try again.'


def test_export_report_download(teacher_client, course):
    response = teacher_client.get(f"/teacher/classes/{course['id']}/report/export?format=excel")
    assert response.status_code == 200
    assert 'Computer_Science_101_Report.xlsx' in response.headers['Content-Disposition']

    sheet = load_workbook(io.BytesIO(response.data))['Attendance']
    assert [cell.value for cell in sheet[1]] == [
        'Student Name', 'Email', 'Total Present', 'Total Absent', 'Total Sessions',
        'Attendance %'
    ]

    response = teacher_client.get(f"/teacher/classes/{course['id']}/report/export?format=csv")
    assert response.mimetype == 'text/csv'

    response = teacher_client.get(f"/teacher/classes/{course['id']}/report/export?format=pdf")
    assert response.status_code == 400


def test_delete_class(teacher_client, course):
    response = teacher_client.delete(f"/teacher/classes/{course['id']}")
    assert response.status_code == 200
    assert teacher_client.get('/teacher/classes').get_json()['classes'] == []

    report = teacher_client.get(f"/teacher/classes/{course['id']}/report").get_json()
    assert report['rows'] == []


def test_other_teacher_cannot_touch_class(app, course):
    other = app.test_client()
    register_and_login(other, 'other@uni.edu', 'teacher')
    assert other.get(f"/teacher/classes/{course['id']}/qr").status_code == 403
    assert other.delete(f"/teacher/classes/{course['id']}").status_code == 403


def test_repair_profile(app, client):
    register_and_login(client, 'teacher@uni.edu', 'teacher')
    services = app.extensions['rollcall']
    profile = client.get('/auth/me').get_json()['profile']
    services.backend.delete('profiles', {'id': profile['id']})

    assert client.get('/auth/me').status_code == 404
    response = client.post('/auth/repair-profile')
    assert response.get_json()['created'] is True
    assert client.get('/auth/me').get_json()['profile']['role'] == 'teacher'


def test_unknown_route_returns_json(client):
    response = client.get('/nowhere')
    assert response.status_code == 404
    assert response.get_json()['success'] is False


class TokenScopedBackend(Backend):
    """Store that hands out one view per access token."""

    def __init__(self, access_token=None):
        self.access_token = access_token

    def scoped(self, access_token):
        if access_token == self.access_token:
            return self
        return TokenScopedBackend(access_token)


def test_each_request_uses_the_callers_token(tmp_path, clock):
    class Config(TestingConfig):
        DATABASE_PATH = tmp_path / 'unused.db'

    app = create_app(Config, backend=TokenScopedBackend(), clock=clock)

    with app.test_request_context('/'):
        session[ACCESS_TOKEN_KEY] = 'token-A'
        alice = services()
        assert alice.backend.access_token == 'token-A'
        assert alice.attendance.db is alice.backend
        assert alice.reports.db is alice.backend
        assert services() is alice

    with app.test_request_context('/'):
        session[ACCESS_TOKEN_KEY] = 'token-B'
        assert services().backend.access_token == 'token-B'

    with app.test_request_context('/'):
        assert services() is app.extensions['rollcall']
