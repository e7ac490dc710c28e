"""
Payroll Engine - Salary Structure Service

Salary structures are effective-dated. Adding a new one ends the current
open-ended structure the day before the new one starts.
"""

import logging
from datetime import timedelta
from typing import List
from uuid import UUID

from app.schemas.payroll import SalaryStructureCreate, SalaryStructureData
from app.services.payroll_ports import SalaryStructureRepository
from app.utils.error_handling import ConflictException, ErrorCode, PayrollValidationError

logger = logging.getLogger(__name__)


class SalaryStructureService:
    def __init__(self, repository: SalaryStructureRepository):
        self.repository = repository

    async def add_structure(self, data: SalaryStructureCreate) -> SalaryStructureData:
        structure = SalaryStructureData(**data.model_dump())
        error = structure.compliance_error()
        if error:
            raise PayrollValidationError(error, field="basic", code=ErrorCode.INVALID_SALARY_STRUCTURE)

        existing = await self.repository.list_salary_structures(data.employee_id)
        for other in existing:
            if other.effective_from >= structure.effective_from:
                raise ConflictException(
                    f"A salary structure already starts on or after {structure.effective_from.isoformat()}",
                    resource_type="SalaryStructure",
                    details={"existing_structure_id": str(other.id)},
                )

        superseded = None
        open_ended = [s for s in existing if s.effective_to is None]
        if open_ended:
            current = max(open_ended, key=lambda s: s.effective_from)
            superseded = current.model_copy(update={
                "effective_to": structure.effective_from - timedelta(days=1),
            })

        saved = await self.repository.add_salary_structure(structure, superseded)
        logger.info(
            f"Salary structure {saved.id} for employee {saved.employee_id} effective {saved.effective_from}"
        )
        return saved

    async def list_structures(self, employee_id: UUID) -> List[SalaryStructureData]:
        structures = await self.repository.list_salary_structures(employee_id)
        return sorted(structures, key=lambda s: s.effective_from)
