"""
Payroll Engine - Payroll Router

HTTP adapter over the payroll services. Handlers only translate between
HTTP and the services; errors surface through the AppException handlers.
"""

import uuid
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field

from app.dependencies import (
    get_attendance_lock_service,
    get_deadline_service,
    get_export_service,
    get_loan_service,
    get_payroll_run_service,
    get_reimbursement_service,
    get_salary_structure_service,
)
from app.schemas.loan import LoanCloseRequest, LoanCreate, LoanData, LoanDeductionData
from app.schemas.payroll import (
    AttendanceLockData,
    PayrollRecordData,
    PayrollRunData,
    PayrollRunSummary,
    RunPayrollRequest,
    SalaryStructureCreate,
    SalaryStructureData,
    VerifyRecordRequest,
)
from app.schemas.reimbursement import (
    ApproveClaimRequest,
    ReimbursementClaimCreate,
    ReimbursementClaimData,
    RejectClaimRequest,
)
from app.schemas.statutory import (
    ExportResult,
    Form16Data,
    MarkFiledRequest,
    StatutoryDeadlineData,
    UpcomingDeadline,
)
from app.services.attendance_service import AttendanceLockService
from app.services.deadline_service import DeadlineService
from app.services.loan_service import LoanService
from app.services.payroll_service import PayrollRunService
from app.services.reimbursement_service import ReimbursementService
from app.services.salary_structure_service import SalaryStructureService
from app.services.statutory_export_service import StatutoryExportService


router = APIRouter()


class CancelRunRequest(BaseModel):
    reason: str = Field("Cancelled", max_length=500)


class AttendanceLockRequest(BaseModel):
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=2000, le=2100)
    locked_by: str = Field(..., min_length=1, max_length=100)


class UnlockRequest(BaseModel):
    requested_by: str = Field(..., min_length=1, max_length=100)
    reason: str = Field(..., min_length=1, max_length=1000)


class UnlockApproval(BaseModel):
    approved_by: str = Field(..., min_length=1, max_length=100)


def _download(result: ExportResult, media_type: str) -> Response:
    return Response(
        content=result.content,
        media_type=media_type,
        headers={
            "Content-Disposition": f"attachment; filename={result.filename}",
            "X-Included-Count": str(result.included_count),
            "X-Excluded-Count": str(result.excluded_count),
        },
    )


# ===========================================
# PAYROLL RUNS
# ===========================================

@router.post(
    "/runs",
    response_model=PayrollRunSummary,
    status_code=status.HTTP_201_CREATED,
    summary="Run payroll for a month",
    description="Creates the run and processes every employee. 409 when attendance is not locked or a run exists.",
)
async def run_payroll(
    data: RunPayrollRequest,
    service: PayrollRunService = Depends(get_payroll_run_service),
):
    return await service.run_payroll(data.month, data.year, data.initiated_by)


@router.get("/runs/{run_id}", response_model=PayrollRunData, summary="Get a payroll run")
async def get_run(
    run_id: uuid.UUID,
    service: PayrollRunService = Depends(get_payroll_run_service),
):
    return await service.get_run(run_id)


@router.get("/runs/{run_id}/records", response_model=List[PayrollRecordData], summary="List a run's records")
async def list_run_records(
    run_id: uuid.UUID,
    service: PayrollRunService = Depends(get_payroll_run_service),
):
    await service.get_run(run_id)
    return await service.repository.list_payroll_records(run_id)


@router.post("/runs/{run_id}/cancel", response_model=PayrollRunData, summary="Cancel a pending or processing run")
async def cancel_run(
    run_id: uuid.UUID,
    data: CancelRunRequest,
    service: PayrollRunService = Depends(get_payroll_run_service),
):
    return await service.cancel_run(run_id, data.reason)


@router.post("/runs/{run_id}/revert", response_model=PayrollRunData, summary="Revert a finished run")
async def revert_run(
    run_id: uuid.UUID,
    service: PayrollRunService = Depends(get_payroll_run_service),
):
    return await service.revert_run(run_id)


@router.post(
    "/runs/{run_id}/employees/{employee_id}/recalculate",
    response_model=PayrollRecordData,
    summary="Recalculate one employee",
)
async def recalculate_employee(
    run_id: uuid.UUID,
    employee_id: uuid.UUID,
    service: PayrollRunService = Depends(get_payroll_run_service),
):
    return await service.recalculate_employee(run_id, employee_id)


@router.post("/records/{record_id}/verify", response_model=PayrollRecordData, summary="Verify a payroll record")
async def verify_record(
    record_id: uuid.UUID,
    data: VerifyRecordRequest,
    service: PayrollRunService = Depends(get_payroll_run_service),
):
    return await service.verify_record(record_id, data.verified_by)


@router.post("/records/{record_id}/mark-paid", response_model=PayrollRecordData, summary="Mark a record paid")
async def mark_record_paid(
    record_id: uuid.UUID,
    service: PayrollRunService = Depends(get_payroll_run_service),
):
    return await service.mark_record_paid(record_id)


# ===========================================
# STATUTORY EXPORTS
# ===========================================

@router.get("/runs/{run_id}/exports/ecr", summary="Download the PF ECR file")
async def export_ecr(
    run_id: uuid.UUID,
    service: StatutoryExportService = Depends(get_export_service),
):
    return _download(await service.export_ecr(run_id), "text/plain")


@router.get("/runs/{run_id}/exports/esi-challan", summary="Download the ESI challan")
async def export_esi_challan(
    run_id: uuid.UUID,
    service: StatutoryExportService = Depends(get_export_service),
):
    return _download(await service.export_esi_challan(run_id), "text/csv")


@router.get("/exports/form-24q", summary="Download the Form 24Q quarterly summary")
async def export_form24q(
    quarter: int = Query(..., ge=1, le=4),
    fy_start_year: int = Query(..., ge=2000, le=2100),
    service: StatutoryExportService = Depends(get_export_service),
):
    return _download(await service.export_form24q(quarter, fy_start_year), "text/plain")


@router.get("/exports/form-16/{employee_id}", response_model=Form16Data, summary="Form 16 data for an employee")
async def export_form16(
    employee_id: uuid.UUID,
    fy_start_year: int = Query(..., ge=2000, le=2100),
    service: StatutoryExportService = Depends(get_export_service),
):
    return await service.export_form16(employee_id, fy_start_year)


# ===========================================
# ATTENDANCE LOCKS
# ===========================================

@router.post(
    "/attendance-locks",
    response_model=AttendanceLockData,
    status_code=status.HTTP_201_CREATED,
    summary="Lock attendance for a month",
)
async def lock_attendance(
    data: AttendanceLockRequest,
    service: AttendanceLockService = Depends(get_attendance_lock_service),
):
    return await service.lock(data.month, data.year, data.locked_by)


@router.post("/attendance-locks/{lock_id}/unlock-request", response_model=AttendanceLockData)
async def request_unlock(
    lock_id: uuid.UUID,
    data: UnlockRequest,
    service: AttendanceLockService = Depends(get_attendance_lock_service),
):
    return await service.request_unlock(lock_id, data.requested_by, data.reason)


@router.post("/attendance-locks/{lock_id}/unlock-approval", response_model=AttendanceLockData)
async def approve_unlock(
    lock_id: uuid.UUID,
    data: UnlockApproval,
    service: AttendanceLockService = Depends(get_attendance_lock_service),
):
    return await service.approve_unlock(lock_id, data.approved_by)


# ===========================================
# STATUTORY DEADLINES
# ===========================================

@router.get("/deadlines/upcoming", response_model=List[UpcomingDeadline], summary="Upcoming statutory deadlines")
async def upcoming_deadlines(
    within_days: int = Query(30, ge=0, le=366),
    today: Optional[date] = Query(None),
    service: DeadlineService = Depends(get_deadline_service),
):
    return await service.upcoming(today, within_days)


@router.post("/deadlines/{deadline_id}/filed", response_model=StatutoryDeadlineData, summary="Mark a deadline filed")
async def mark_deadline_filed(
    deadline_id: uuid.UUID,
    data: MarkFiledRequest,
    service: DeadlineService = Depends(get_deadline_service),
):
    return await service.mark_filed(deadline_id, data)


# ===========================================
# SALARY STRUCTURES
# ===========================================

@router.post(
    "/salary-structures",
    response_model=SalaryStructureData,
    status_code=status.HTTP_201_CREATED,
    summary="Add an effective-dated salary structure",
)
async def add_salary_structure(
    data: SalaryStructureCreate,
    service: SalaryStructureService = Depends(get_salary_structure_service),
):
    return await service.add_structure(data)


@router.get(
    "/employees/{employee_id}/salary-structures",
    response_model=List[SalaryStructureData],
    summary="List an employee's salary structures",
)
async def list_salary_structures(
    employee_id: uuid.UUID,
    service: SalaryStructureService = Depends(get_salary_structure_service),
):
    return await service.list_structures(employee_id)


# ===========================================
# LOANS
# ===========================================

@router.post("/loans", response_model=LoanData, status_code=status.HTTP_201_CREATED, summary="Create a loan")
async def create_loan(
    data: LoanCreate,
    service: LoanService = Depends(get_loan_service),
):
    return await service.create_loan(data)


@router.get("/loans/{loan_id}", response_model=LoanData, summary="Get a loan")
async def get_loan(
    loan_id: uuid.UUID,
    service: LoanService = Depends(get_loan_service),
):
    return await service.get_loan(loan_id)


@router.get("/loans/{loan_id}/schedule", response_model=List[LoanDeductionData], summary="Loan repayment schedule")
async def get_loan_schedule(
    loan_id: uuid.UUID,
    service: LoanService = Depends(get_loan_service),
):
    return await service.get_schedule(loan_id)


@router.post("/loans/{loan_id}/disburse", response_model=LoanData)
async def disburse_loan(
    loan_id: uuid.UUID,
    service: LoanService = Depends(get_loan_service),
):
    return await service.disburse(loan_id)


@router.post("/loans/{loan_id}/close", response_model=LoanData)
async def close_loan(
    loan_id: uuid.UUID,
    data: LoanCloseRequest,
    service: LoanService = Depends(get_loan_service),
):
    return await service.close(loan_id, data.reason)


@router.post("/loans/{loan_id}/cancel", response_model=LoanData)
async def cancel_loan(
    loan_id: uuid.UUID,
    data: LoanCloseRequest,
    service: LoanService = Depends(get_loan_service),
):
    return await service.cancel(loan_id, data.reason)


# ===========================================
# REIMBURSEMENTS
# ===========================================

@router.post(
    "/reimbursements",
    response_model=ReimbursementClaimData,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a reimbursement claim",
)
async def submit_reimbursement(
    data: ReimbursementClaimCreate,
    service: ReimbursementService = Depends(get_reimbursement_service),
):
    return await service.submit_claim(data)


@router.post("/reimbursements/{claim_id}/approve", response_model=ReimbursementClaimData)
async def approve_reimbursement(
    claim_id: uuid.UUID,
    data: ApproveClaimRequest,
    service: ReimbursementService = Depends(get_reimbursement_service),
):
    return await service.approve_claim(claim_id, data.approved_by)


@router.post("/reimbursements/{claim_id}/reject", response_model=ReimbursementClaimData)
async def reject_reimbursement(
    claim_id: uuid.UUID,
    data: RejectClaimRequest,
    service: ReimbursementService = Depends(get_reimbursement_service),
):
    return await service.reject_claim(claim_id, data.rejected_by, data.reason)


@router.get(
    "/employees/{employee_id}/reimbursements",
    response_model=List[ReimbursementClaimData],
    summary="List an employee's reimbursement claims",
)
async def list_reimbursements(
    employee_id: uuid.UUID,
    service: ReimbursementService = Depends(get_reimbursement_service),
):
    return await service.list_claims(employee_id)
