"""
Payroll Engine - Background Tasks Package

Celery background tasks.
"""
