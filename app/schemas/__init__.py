"""
Payroll Engine - Schemas Package

Pydantic schemas for request/response validation and for the data the
calculation core exchanges with its persistence ports.
"""
