"""
Payroll Engine - Reimbursement Service

Expense claims move SUBMITTED -> APPROVED or SUBMITTED -> REJECTED. The next
payroll run for a month on or after the expense date pays approved claims
on top of net pay.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from app.models.reimbursement import ClaimStatus
from app.schemas.reimbursement import ReimbursementClaimCreate, ReimbursementClaimData
from app.services.payroll_ports import ReimbursementRepository
from app.utils.error_handling import InvalidStateTransitionError, NotFoundException, PayrollValidationError

logger = logging.getLogger(__name__)


class ReimbursementService:
    def __init__(self, repository: ReimbursementRepository):
        self.repository = repository

    async def submit_claim(self, data: ReimbursementClaimCreate) -> ReimbursementClaimData:
        claim = await self.repository.add_reimbursement_claim(ReimbursementClaimData(
            employee_id=data.employee_id,
            expense_date=data.expense_date,
            amount=data.amount,
            description=data.description,
            status=ClaimStatus.SUBMITTED,
        ))
        logger.info(f"Submitted reimbursement claim {claim.id} for employee {claim.employee_id}: {claim.amount}")
        return claim

    async def get_claim(self, claim_id: UUID) -> ReimbursementClaimData:
        claim = await self.repository.get_reimbursement_claim(claim_id)
        if claim is None:
            raise NotFoundException("Reimbursement claim", claim_id)
        return claim

    async def list_claims(self, employee_id: UUID) -> List[ReimbursementClaimData]:
        return await self.repository.list_reimbursement_claims(employee_id)

    async def approve_claim(self, claim_id: UUID, approved_by: str) -> ReimbursementClaimData:
        """Approve a submitted claim so the next payroll run pays it."""
        claim = await self.get_claim(claim_id)
        self._require_submitted(claim, ClaimStatus.APPROVED)
        approved = await self.repository.save_reimbursement_claim(claim.model_copy(update={
            "status": ClaimStatus.APPROVED,
            "approved_by": approved_by,
            "approved_at": datetime.now(timezone.utc),
        }))
        logger.info(f"Reimbursement claim {claim_id} approved by {approved_by}")
        return approved

    async def reject_claim(self, claim_id: UUID, rejected_by: str, reason: Optional[str]) -> ReimbursementClaimData:
        claim = await self.get_claim(claim_id)
        self._require_submitted(claim, ClaimStatus.REJECTED)
        if not reason or not reason.strip():
            raise PayrollValidationError("A rejection reason is required", field="reason")
        return await self.repository.save_reimbursement_claim(claim.model_copy(update={
            "status": ClaimStatus.REJECTED,
            "rejected_by": rejected_by,
            "rejected_at": datetime.now(timezone.utc),
            "rejection_reason": reason.strip(),
        }))

    @staticmethod
    def _require_submitted(claim: ReimbursementClaimData, target: ClaimStatus) -> None:
        if claim.status != ClaimStatus.SUBMITTED:
            raise InvalidStateTransitionError("Reimbursement claim", claim.status.value, target.value)
