"""
Payroll Engine - FastAPI Dependencies

Wires the payroll services to the SQLAlchemy repository for the HTTP layer.
Tests override ``get_session_factory`` to point everything at their own
database.
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import Settings, get_settings
from app.database import async_session_maker
from app.services.attendance_service import AttendanceLockService
from app.services.deadline_service import DeadlineService
from app.services.loan_service import LoanService
from app.services.payroll_repository import SqlAlchemyPayrollRepository
from app.services.payroll_service import PayrollRunService
from app.services.reimbursement_service import ReimbursementService
from app.services.salary_structure_service import SalaryStructureService
from app.services.statutory_export_service import StatutoryExportService


def get_session_factory() -> async_sessionmaker:
    return async_session_maker


def get_repository(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> SqlAlchemyPayrollRepository:
    return SqlAlchemyPayrollRepository(session_factory)


def get_payroll_run_service(
    repository: SqlAlchemyPayrollRepository = Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> PayrollRunService:
    return PayrollRunService.from_settings(repository, settings)


def get_export_service(
    repository: SqlAlchemyPayrollRepository = Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> StatutoryExportService:
    return StatutoryExportService.from_settings(repository, settings)


def get_attendance_lock_service(
    repository: SqlAlchemyPayrollRepository = Depends(get_repository),
) -> AttendanceLockService:
    return AttendanceLockService(repository)


def get_loan_service(
    repository: SqlAlchemyPayrollRepository = Depends(get_repository),
) -> LoanService:
    return LoanService(repository)


def get_reimbursement_service(
    repository: SqlAlchemyPayrollRepository = Depends(get_repository),
) -> ReimbursementService:
    return ReimbursementService(repository)


def get_salary_structure_service(
    repository: SqlAlchemyPayrollRepository = Depends(get_repository),
) -> SalaryStructureService:
    return SalaryStructureService(repository)


def get_deadline_service(
    repository: SqlAlchemyPayrollRepository = Depends(get_repository),
) -> DeadlineService:
    return DeadlineService(repository)
