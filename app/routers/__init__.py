"""
Payroll Engine - Routers Package

FastAPI route handlers.

Routers:
- payroll: payroll runs, records, statutory exports, attendance locks, deadlines
"""
