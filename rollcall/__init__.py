# Rollcall QR Attendance - App Package
"""
Application package for Rollcall, a QR code attendance tracker for university
classes. Business logic lives in ``rollcall.modules``; the Flask wiring lives
in the top-level ``app`` module.
"""

__version__ = "1.0.0"

from .modules.attendance_manager import AttendanceManager
from .modules.auth_manager import AuthManager
from .modules.class_manager import ClassManager
from .modules.database_manager import Backend, DatabaseManager
from .modules.qr_generator import QRGenerator
from .modules.report_generator import ReportGenerator
from .modules.session_manager import SessionManager

__all__ = [
    'AttendanceManager',
    'AuthManager',
    'Backend',
    'ClassManager',
    'DatabaseManager',
    'QRGenerator',
    'ReportGenerator',
    'SessionManager'
]
