"""
Attendance Kiosk - Face Recognition Attendance

A modular Python service for a face-recognition attendance kiosk: real-time
recognition, attendance decisions and reliable delivery to a remote ledger.
Provides a local HTTP API for status and operator actions.
"""

__version__ = "1.0.0"
__author__ = "Attendance Kiosk Team"
