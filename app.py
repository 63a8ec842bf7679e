"""
Rollcall QR Attendance - Main Application

This module builds the Flask application: it wires the configured backend into
the managers and exposes the teacher and student actions as JSON endpoints.
Every endpoint is an action boundary; errors raised by the managers are turned
into a user-facing message here and nowhere else.

Features:
- Registration, login and profile repair
- Class creation, deletion and invite-code enrollment
- Time-limited QR code sessions
- QR scan processing
- Attendance reports with Excel/CSV download
"""

import base64
import io
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import wraps
from typing import Callable, Optional

from flask import Blueprint, Flask, current_app, g, jsonify, request, send_file, session
from werkzeug.exceptions import HTTPException

from config import init_config
from rollcall.modules.attendance_manager import AttendanceManager
from rollcall.modules.auth_manager import AuthManager
from rollcall.modules.class_manager import ClassManager
from rollcall.modules.database_manager import Backend, DatabaseManager
from rollcall.modules.errors import AttendanceError, ValidationError
from rollcall.modules.models import ROLE_STUDENT, ROLE_TEACHER, to_json, utcnow
from rollcall.modules.qr_generator import QRGenerator
from rollcall.modules.report_generator import ReportGenerator
from rollcall.modules.session_manager import SessionManager

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
)
logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = 'access_token'

bp = Blueprint('rollcall', __name__)


@dataclass
class Services:
    """Managers wired to one backend."""
    backend: Backend
    auth: AuthManager
    classes: ClassManager
    sessions: SessionManager
    attendance: AttendanceManager
    reports: ReportGenerator
    clock: Callable[[], datetime] = utcnow


def create_backend(config_class, clock: Callable[[], datetime] = utcnow) -> Backend:
    """Build the store selected by the configuration."""
    if config_class.BACKEND == 'supabase':
        from rollcall.modules.supabase_backend import SupabaseBackend
        return SupabaseBackend.from_credentials(config_class.SUPABASE_URL,
                                                config_class.SUPABASE_KEY)
    return DatabaseManager(str(config_class.DATABASE_PATH),
                           auth_session_hours=config_class.AUTH_SESSION_HOURS,
                           clock=clock)


def build_services(config_class, backend: Backend,
                   clock: Callable[[], datetime] = utcnow) -> Services:
    qr_generator = QRGenerator(
        box_size=config_class.QR_CODE_SIZE,
        border=config_class.QR_CODE_BORDER,
        error_correction=config_class.QR_CODE_ERROR_CORRECT
    )
    classes = ClassManager(backend, invite_code_length=config_class.INVITE_CODE_LENGTH)
    return Services(
        backend=backend,
        auth=AuthManager(backend, password_min_length=config_class.PASSWORD_MIN_LENGTH),
        classes=classes,
        sessions=SessionManager(
            backend, classes, qr_generator,
            session_duration=timedelta(minutes=config_class.SESSION_DURATION_MINUTES),
            token_bytes=config_class.QR_TOKEN_BYTES,
            clock=clock
        ),
        attendance=AttendanceManager(backend, clock=clock),
        reports=ReportGenerator(backend, clock=clock),
        clock=clock
    )


def create_app(config_class=None, backend: Optional[Backend] = None,
               clock: Callable[[], datetime] = utcnow) -> Flask:
    """
    Application factory.

    Args:
        config_class: Configuration class; selected from FLASK_ENV when omitted
        backend (Backend): Store to use instead of the configured one
        clock (Callable): Source of the current UTC time

    Returns:
        Flask: Configured application
    """
    app = Flask(__name__)
    config_class = init_config(app, config_class)
    app.config['ROLLCALL'] = config_class

    if backend is None:
        backend = create_backend(config_class, clock)
    app.extensions['rollcall'] = build_services(config_class, backend, clock)

    app.register_blueprint(bp)
    register_error_handlers(app)

    logger.info(f"Rollcall initialized with {config_class.BACKEND} backend")
    return app


def services() -> Services:
    """Managers for this request, bound to the caller's access token."""
    if 'services' not in g:
        base = current_app.extensions['rollcall']
        backend = base.backend.scoped(session.get(ACCESS_TOKEN_KEY))
        if backend is base.backend:
            g.services = base
        else:
            g.services = build_services(current_app.config['ROLLCALL'], backend, base.clock)
    return g.services


def register_error_handlers(app):
    @app.errorhandler(AttendanceError)
    def handle_attendance_error(error):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return jsonify({'success': False, 'message': error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        logger.error(f"Unhandled error on {request.path}: {str(error)}", exc_info=True)
        return jsonify({
            'success': False,
            'message': 'An unexpected error occurred. Please try again.'
        }), 500


def role_required(role):
    """Decorator to require a signed-in user with the given role"""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            g.profile = services().auth.require_role(session.get(ACCESS_TOKEN_KEY), role)
            return f(*args, **kwargs)
        return decorated_function
    return decorator


teacher_required = role_required(ROLE_TEACHER)
student_required = role_required(ROLE_STUDENT)


def request_data():
    """JSON body or form fields."""
    return request.get_json(silent=True) or request.form.to_dict()


def public_origin() -> str:
    return current_app.config['ROLLCALL'].PUBLIC_ORIGIN or request.host_url.rstrip('/')


# ---------------- AUTH ----------------

@bp.route('/auth/register', methods=['POST'])
def register():
    data = request_data()
    profile = services().auth.register(
        email=data.get('email', ''),
        password=data.get('password', ''),
        full_name=data.get('full_name', ''),
        role=data.get('role', ROLE_STUDENT)
    )
    return jsonify({
        'success': True,
        'message': 'Registration successful! You can now sign in.',
        'profile': to_json(profile)
    }), 201


@bp.route('/auth/login', methods=['POST'])
def login():
    data = request_data()
    auth = services().auth
    user, profile = auth.sign_in(data.get('email', ''), data.get('password', ''))

    session.clear()
    session[ACCESS_TOKEN_KEY] = user.access_token
    session.permanent = True

    return jsonify({
        'success': True,
        'message': f"Welcome back, {profile.full_name if profile else user.email}!",
        'profile': to_json(profile) if profile else None,
        'redirect': auth.dashboard_for(profile)
    })


@bp.route('/auth/logout', methods=['POST'])
def logout():
    services().auth.sign_out(session.get(ACCESS_TOKEN_KEY))
    session.clear()
    return jsonify({'success': True, 'message': 'You have been logged out successfully.'})


@bp.route('/auth/me')
def me():
    profile = services().auth.get_current_profile(session.get(ACCESS_TOKEN_KEY))
    return jsonify({'success': True, 'profile': to_json(profile)})


@bp.route('/auth/repair-profile', methods=['POST'])
def repair_profile():
    result = services().auth.repair_profile(session.get(ACCESS_TOKEN_KEY))
    return jsonify({
        'success': True,
        'created': result['created'],
        'message': result['message'],
        'profile': to_json(result['profile'])
    })


# ---------------- TEACHER ----------------

@bp.route('/teacher/classes')
@teacher_required
def teacher_classes():
    entries = services().classes.list_teacher_classes(g.profile)
    return jsonify({
        'success': True,
        'classes': [
            dict(to_json(entry['class']), session_count=entry['session_count'])
            for entry in entries
        ]
    })


@bp.route('/teacher/classes', methods=['POST'])
@teacher_required
def create_class():
    data = request_data()
    record = services().classes.create_class(g.profile, data.get('name', ''),
                                             data.get('description'))
    return jsonify({
        'success': True,
        'message': 'Class created successfully!',
        'class': to_json(record)
    }), 201


@bp.route('/teacher/classes/<class_id>', methods=['DELETE'])
@teacher_required
def delete_class(class_id):
    services().classes.delete_class(g.profile, class_id)
    return jsonify({'success': True, 'message': 'Class deleted successfully'})


def _session_qr_response(result):
    return jsonify({
        'success': True,
        'class': to_json(result['class']),
        'session': to_json(result['session']),
        'scan_url': result['scan_url'],
        'qr_image': result['qr']['image_base64'],
        'expires_at': result['session'].expires_at.isoformat()
    })


@bp.route('/teacher/classes/<class_id>/qr')
@teacher_required
def class_qr(class_id):
    result = services().sessions.get_session_qr(g.profile, class_id, public_origin())
    return _session_qr_response(result)


@bp.route('/teacher/classes/<class_id>/qr/regenerate', methods=['POST'])
@teacher_required
def regenerate_class_qr(class_id):
    result = services().sessions.get_session_qr(g.profile, class_id, public_origin(),
                                                regenerate=True)
    return _session_qr_response(result)


@bp.route('/teacher/classes/<class_id>/qr.png')
@teacher_required
def class_qr_image(class_id):
    result = services().sessions.get_session_qr(g.profile, class_id, public_origin())
    png = base64.b64decode(result['qr']['image_base64'])
    return send_file(io.BytesIO(png), mimetype='image/png')


@bp.route('/teacher/classes/<class_id>/report')
@teacher_required
def class_report(class_id):
    report = services().reports.build_class_report(class_id, requester=g.profile)
    return jsonify(dict(report.to_dict(), success=True))


@bp.route('/teacher/classes/<class_id>/report/export')
@teacher_required
def export_class_report(class_id):
    output_format = request.args.get('format', 'excel')
    reports = services().reports
    report = reports.build_class_report(class_id, requester=g.profile)
    result = reports.export_report(report, output_format)
    return send_file(
        result['content'],
        mimetype=result['mime_type'],
        as_attachment=True,
        download_name=result['filename']
    )


# ---------------- STUDENT ----------------

@bp.route('/student/classes')
@student_required
def student_classes():
    entries = services().classes.list_student_classes(g.profile)
    return jsonify({
        'success': True,
        'classes': [
            {
                'id': entry['class'].id,
                'name': entry['class'].name,
                'description': entry['class'].description,
                'teacher_name': entry['teacher_name']
            }
            for entry in entries
        ]
    })


@bp.route('/student/enroll', methods=['POST'])
@student_required
def enroll():
    data = request_data()
    record = services().classes.enroll_with_code(g.profile, data.get('code', ''))
    return jsonify({
        'success': True,
        'message': f"Successfully joined {record.name}!",
        'class': {'id': record.id, 'name': record.name}
    }), 201


@bp.route('/student/classes/<class_id>/history')
@student_required
def class_history(class_id):
    record = services().classes.get_class(class_id)
    history = services().attendance.get_student_history(g.profile, class_id=class_id)
    return jsonify({
        'success': True,
        'class_name': record.name,
        'history': [
            {
                'status': entry['status'],
                'session_date': entry['session_date'].isoformat(),
                'marked_at': entry['marked_at'].isoformat() if entry['marked_at'] else None
            }
            for entry in history
        ]
    })


@bp.route('/student/summary')
@student_required
def student_summary():
    summary = services().attendance.get_student_summary(g.profile)
    return jsonify(dict(summary, success=True))


@bp.route('/scan', methods=['GET', 'POST'])
@student_required
def scan():
    """Process a QR code scan; GET serves the URL encoded in the QR code itself."""
    if request.method == 'POST':
        qr_data = request_data().get('qr_data', '')
    else:
        qr_data = request.args.get('token', '')
        if not qr_data:
            raise ValidationError('No QR code data provided')

    result = services().attendance.process_attendance_scan(g.profile, qr_data)
    return jsonify({
        'success': True,
        'already_marked': result.already_marked,
        'message': result.message,
        'session_id': result.session.id,
        'class_id': result.session.class_id,
        'marked_at': result.log.marked_at.isoformat() if result.log and result.log.marked_at else None
    })


if __name__ == '__main__':
    application = create_app()
    application.run(debug=application.config['ROLLCALL'].DEBUG, host='0.0.0.0', port=5000)
