"""
Payroll Engine - Attendance Lock Service

Payroll only runs against locked attendance. Corrections after the lock go
through a request/approve unlock, and approving an unlock is refused while a
payroll run for the period still stands.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from app.schemas.payroll import AttendanceLockData
from app.services.payroll_ports import AttendanceLockRepository
from app.services.payroll_service import validate_period
from app.utils.error_handling import (
    ConflictException,
    InvalidStateTransitionError,
    NotFoundException,
    PayrollValidationError,
    RunIntegrityError,
)

logger = logging.getLogger(__name__)


class AttendanceLockService:
    def __init__(self, repository: AttendanceLockRepository):
        self.repository = repository

    async def lock(self, month: int, year: int, locked_by: str) -> AttendanceLockData:
        """Lock attendance for a period. A lock whose unlock was approved is re-locked."""
        validate_period(month, year)
        existing = await self.repository.get_attendance_lock(month, year)
        if existing is not None:
            if existing.is_locked:
                raise ConflictException(
                    f"Attendance for {month:02d}/{year} is already locked",
                    resource_type="AttendanceLock",
                )
            return await self.relock(existing.id, locked_by)

        lock = await self.repository.save_attendance_lock(AttendanceLockData(
            month=month,
            year=year,
            locked_by=locked_by,
            locked_at=datetime.now(timezone.utc),
        ))
        logger.info(f"Attendance locked for {month:02d}/{year} by {locked_by}")
        return lock

    async def request_unlock(self, lock_id: UUID, requested_by: str, reason: str) -> AttendanceLockData:
        lock = await self._get(lock_id)
        if not reason or not reason.strip():
            raise PayrollValidationError("A reason is required to request an unlock", field="reason")
        if not lock.is_locked:
            raise InvalidStateTransitionError("Attendance lock", "unlocked", "unlock_requested")
        if lock.unlock_pending:
            raise ConflictException("An unlock request is already pending", resource_type="AttendanceLock")

        return await self.repository.save_attendance_lock(lock.model_copy(update={
            "unlock_requested_by": requested_by,
            "unlock_requested_at": datetime.now(timezone.utc),
            "unlock_reason": reason.strip(),
        }))

    async def approve_unlock(self, lock_id: UUID, approved_by: str) -> AttendanceLockData:
        lock = await self._get(lock_id)
        if not lock.unlock_pending:
            raise InvalidStateTransitionError("Attendance lock", "locked", "unlocked")

        run = await self.repository.find_active_run(lock.month, lock.year)
        if run is not None:
            raise RunIntegrityError(
                f"Payroll run {run.id} exists for {lock.month:02d}/{lock.year}; revert it before unlocking attendance",
                details={"run_id": str(run.id), "run_status": run.status.value},
            )

        unlocked = await self.repository.save_attendance_lock(lock.model_copy(update={
            "unlock_approved_by": approved_by,
            "unlock_approved_at": datetime.now(timezone.utc),
        }))
        logger.info(f"Attendance unlocked for {lock.month:02d}/{lock.year} by {approved_by}")
        return unlocked

    async def relock(self, lock_id: UUID, locked_by: str) -> AttendanceLockData:
        """Lock again and clear the unlock trail."""
        lock = await self._get(lock_id)
        return await self.repository.save_attendance_lock(lock.model_copy(update={
            "locked_by": locked_by,
            "locked_at": datetime.now(timezone.utc),
            "unlock_requested_by": None,
            "unlock_requested_at": None,
            "unlock_reason": None,
            "unlock_approved_by": None,
            "unlock_approved_at": None,
        }))

    async def is_locked(self, month: int, year: int) -> bool:
        lock = await self.repository.get_attendance_lock(month, year)
        return lock is not None and lock.is_locked

    async def get_lock(self, month: int, year: int) -> Optional[AttendanceLockData]:
        return await self.repository.get_attendance_lock(month, year)

    async def _get(self, lock_id: UUID) -> AttendanceLockData:
        lock = await self.repository.get_attendance_lock_by_id(lock_id)
        if lock is None:
            raise NotFoundException("Attendance lock", lock_id)
        return lock
