"""
Tests for the reimbursement claim workflow.
"""

from datetime import date
from uuid import uuid4

import pytest

from app.models.reimbursement import ClaimStatus
from app.schemas.reimbursement import ReimbursementClaimCreate
from app.services.reimbursement_service import ReimbursementService
from app.utils.error_handling import InvalidStateTransitionError, NotFoundException, PayrollValidationError


class TestReimbursementClaims:
    """Submit, approve, reject."""

    def _request(self, **overrides) -> ReimbursementClaimCreate:
        data = dict(
            employee_id=uuid4(),
            expense_date=date(2024, 6, 12),
            amount=150_000,
            description="Client visit travel",
        )
        data.update(overrides)
        return ReimbursementClaimCreate(**data)

    @pytest.mark.asyncio
    async def test_submit_then_approve(self, repository):
        service = ReimbursementService(repository)
        claim = await service.submit_claim(self._request())
        assert claim.status == ClaimStatus.SUBMITTED
        assert claim.synced is False

        approved = await service.approve_claim(claim.id, "finance.lead")

        assert approved.status == ClaimStatus.APPROVED
        assert approved.approved_by == "finance.lead"
        assert approved.approved_at is not None
        assert repository.claims[claim.id].status == ClaimStatus.APPROVED

    @pytest.mark.asyncio
    async def test_reject_needs_reason(self, repository):
        service = ReimbursementService(repository)
        claim = await service.submit_claim(self._request())

        with pytest.raises(PayrollValidationError):
            await service.reject_claim(claim.id, "finance.lead", "   ")

        rejected = await service.reject_claim(claim.id, "finance.lead", " No receipt ")
        assert rejected.status == ClaimStatus.REJECTED
        assert rejected.rejection_reason == "No receipt"

    @pytest.mark.asyncio
    async def test_only_submitted_claims_move(self, repository):
        service = ReimbursementService(repository)
        claim = await service.submit_claim(self._request())
        await service.approve_claim(claim.id, "finance.lead")

        with pytest.raises(InvalidStateTransitionError):
            await service.approve_claim(claim.id, "finance.lead")
        with pytest.raises(InvalidStateTransitionError):
            await service.reject_claim(claim.id, "finance.lead", "Duplicate")

    @pytest.mark.asyncio
    async def test_unknown_claim(self, repository):
        with pytest.raises(NotFoundException):
            await ReimbursementService(repository).approve_claim(uuid4(), "finance.lead")

    @pytest.mark.asyncio
    async def test_list_is_per_employee_oldest_first(self, repository):
        service = ReimbursementService(repository)
        employee_id = uuid4()
        await service.submit_claim(self._request(employee_id=employee_id, expense_date=date(2024, 6, 20)))
        await service.submit_claim(self._request(employee_id=employee_id, expense_date=date(2024, 6, 2)))
        await service.submit_claim(self._request())

        claims = await service.list_claims(employee_id)
        assert [c.expense_date.day for c in claims] == [2, 20]
