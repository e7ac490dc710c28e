"""
Payroll Engine - Services Package

Business logic services. Calculators under tax_calculators/ are pure; the
orchestrator and the lifecycle services work through the ports in
payroll_ports.
"""
