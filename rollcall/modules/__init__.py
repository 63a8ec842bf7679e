# Rollcall QR Attendance - Modules Package
"""
Core business logic: store adapters, authentication, classes, attendance
sessions, scan processing and reports.
"""
