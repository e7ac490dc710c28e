"""
Tests for the payroll HTTP endpoints.
"""

from datetime import date
from uuid import uuid4

import pytest

from app.models.payroll import Gender
from app.schemas.payroll import AttendanceSummaryData, EmployeeProfile, SalaryStructureData


API = "/api/v1/payroll"


async def _seed_employee(repo, code: str = "E001", basic: int = 1_200_000) -> EmployeeProfile:
    employee = await repo.add_employee(EmployeeProfile(
        id=uuid4(),
        employee_code=code,
        full_name="Asha Rao",
        gender=Gender.FEMALE,
        uan="100000000001",
        esic_number="3100000001",
        pan="ABCDE1234F",
        date_of_joining=date(2020, 1, 1),
    ))
    await repo.add_salary_structure(SalaryStructureData(
        employee_id=employee.id,
        effective_from=date(2020, 1, 1),
        basic=basic,
    ))
    await repo.save_attendance_summary(AttendanceSummaryData(
        employee_id=employee.id, month=6, year=2024, working_days=30, paid_days=30,
    ))
    return employee


async def _lock(client, month: int = 6, year: int = 2024):
    return await client.post(f"{API}/attendance-locks", json={
        "month": month, "year": year, "locked_by": "hr.manager",
    })


class TestHealth:
    """Service endpoints."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestPayrollRunEndpoints:
    """Run creation, conflicts and lookups."""

    @pytest.mark.asyncio
    async def test_run_requires_locked_attendance(self, client):
        response = await client.post(f"{API}/runs", json={"month": 6, "year": 2024})
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "ATTENDANCE_NOT_LOCKED"

    @pytest.mark.asyncio
    async def test_run_then_duplicate(self, client, sql_repository):
        await _seed_employee(sql_repository)
        assert (await _lock(client)).status_code == 201

        response = await client.post(f"{API}/runs", json={"month": 6, "year": 2024, "initiated_by": "payroll.admin"})
        assert response.status_code == 201
        summary = response.json()
        assert summary["status"] == "completed"
        assert summary["success"] == 1
        assert summary["error"] == 0

        duplicate = await client.post(f"{API}/runs", json={"month": 6, "year": 2024})
        assert duplicate.status_code == 409
        assert duplicate.json()["detail"]["code"] == "DUPLICATE_RUN"

        run = await client.get(f"{API}/runs/{summary['run_id']}")
        assert run.status_code == 200
        assert run.json()["total_gross"] == 1_200_000

        records = await client.get(f"{API}/runs/{summary['run_id']}/records")
        assert [r["employee_name"] for r in records.json()] == ["Asha Rao"]

    @pytest.mark.asyncio
    async def test_unknown_run(self, client):
        response = await client.get(f"{API}/runs/{uuid4()}")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_invalid_month(self, client):
        response = await client.post(f"{API}/runs", json={"month": 13, "year": 2024})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_verified_record_is_immutable(self, client, sql_repository):
        employee = await _seed_employee(sql_repository)
        await _lock(client)
        run_id = (await client.post(f"{API}/runs", json={"month": 6, "year": 2024})).json()["run_id"]
        record = (await client.get(f"{API}/runs/{run_id}/records")).json()[0]

        verified = await client.post(f"{API}/records/{record['id']}/verify", json={"verified_by": "finance"})
        assert verified.status_code == 200
        assert verified.json()["status"] == "verified"

        response = await client.post(f"{API}/runs/{run_id}/employees/{employee.id}/recalculate")
        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "RECORD_IMMUTABLE"


class TestExportEndpoints:
    """File downloads."""

    @pytest.mark.asyncio
    async def test_ecr_download(self, client, sql_repository):
        await _seed_employee(sql_repository)
        await _lock(client)
        run_id = (await client.post(f"{API}/runs", json={"month": 6, "year": 2024})).json()["run_id"]

        response = await client.get(f"{API}/runs/{run_id}/exports/ecr")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert response.headers["content-disposition"] == "attachment; filename=ECR_06_2024.txt"
        assert response.headers["x-included-count"] == "1"
        assert response.text.splitlines()[1].startswith("100000000001#~#Asha Rao#~#12000.00")

    @pytest.mark.asyncio
    async def test_esi_challan_download(self, client, sql_repository):
        await _seed_employee(sql_repository)
        await _lock(client)
        run_id = (await client.post(f"{API}/runs", json={"month": 6, "year": 2024})).json()["run_id"]

        response = await client.get(f"{API}/runs/{run_id}/exports/esi-challan")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "3100000001,Asha Rao,12000.00,90.00,390.00,480.00,30" in response.text

    @pytest.mark.asyncio
    async def test_form24q_without_runs(self, client):
        response = await client.get(f"{API}/exports/form-24q", params={"quarter": 1, "fy_start_year": 2024})
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_form16_data(self, client, sql_repository):
        employee = await _seed_employee(sql_repository)
        await _lock(client)
        await client.post(f"{API}/runs", json={"month": 6, "year": 2024})

        response = await client.get(f"{API}/exports/form-16/{employee.id}", params={"fy_start_year": 2024})

        assert response.status_code == 200
        data = response.json()
        assert data["months_paid"] == 1
        assert data["part_a"]["financial_year"] == "2024-25"
        assert data["part_a"]["pan"] == "ABCDE1234F"
        assert data["part_b"]["gross_salary"] == 1_200_000
        assert data["quarters"][0]["amount_paid"] == 1_200_000

    @pytest.mark.asyncio
    async def test_form16_unknown_employee(self, client):
        response = await client.get(f"{API}/exports/form-16/{uuid4()}", params={"fy_start_year": 2024})
        assert response.status_code == 404


class TestAttendanceLockEndpoints:
    """Lock and unlock over HTTP."""

    @pytest.mark.asyncio
    async def test_lock_twice(self, client):
        assert (await _lock(client)).status_code == 201
        assert (await _lock(client)).status_code == 409

    @pytest.mark.asyncio
    async def test_unlock_flow(self, client):
        lock = (await _lock(client)).json()

        requested = await client.post(
            f"{API}/attendance-locks/{lock['id']}/unlock-request",
            json={"requested_by": "hr.exec", "reason": "Missed overtime entries"},
        )
        assert requested.status_code == 200

        approved = await client.post(
            f"{API}/attendance-locks/{lock['id']}/unlock-approval",
            json={"approved_by": "hr.head"},
        )
        assert approved.status_code == 200
        assert approved.json()["unlock_approved_by"] == "hr.head"

        response = await client.post(f"{API}/runs", json={"month": 6, "year": 2024})
        assert response.json()["detail"]["code"] == "ATTENDANCE_NOT_LOCKED"


class TestSalaryStructureEndpoints:
    """Salary structure validation."""

    @pytest.mark.asyncio
    async def test_basic_below_half_of_gross_is_rejected(self, client):
        response = await client.post(f"{API}/salary-structures", json={
            "employee_id": str(uuid4()),
            "effective_from": "2024-07-01",
            "basic": 100_000,
            "hra": 500_000,
        })
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_add_and_list(self, client):
        employee_id = str(uuid4())
        created = await client.post(f"{API}/salary-structures", json={
            "employee_id": employee_id,
            "effective_from": "2024-07-01",
            "basic": 1_500_000,
            "hra": 500_000,
        })
        assert created.status_code == 201

        listed = await client.get(f"{API}/employees/{employee_id}/salary-structures")
        assert [s["basic"] for s in listed.json()] == [1_500_000]


class TestLoanEndpoints:
    """Loan creation and schedule."""

    @pytest.mark.asyncio
    async def test_create_and_schedule(self, client):
        created = await client.post(f"{API}/loans", json={
            "employee_id": str(uuid4()),
            "principal": 12_000_000,
            "annual_interest_rate": "12",
            "tenure_months": 12,
            "start_date": "2024-06-01",
        })
        assert created.status_code == 201
        loan = created.json()
        assert loan["emi_amount"] == 1_066_185
        assert loan["status"] == "pending"

        schedule = await client.get(f"{API}/loans/{loan['id']}/schedule")
        rows = schedule.json()
        assert len(rows) == 12
        assert rows[-1]["balance_after"] == 0

        disbursed = await client.post(f"{API}/loans/{loan['id']}/disburse")
        assert disbursed.json()["status"] == "active"

    @pytest.mark.asyncio
    async def test_unknown_loan(self, client):
        response = await client.get(f"{API}/loans/{uuid4()}")
        assert response.status_code == 404


class TestReimbursementEndpoints:
    """Claim submission, approval and payout."""

    async def _submit(self, client, employee_id, amount: int = 50_000):
        return await client.post(f"{API}/reimbursements", json={
            "employee_id": str(employee_id),
            "expense_date": "2024-06-12",
            "amount": amount,
            "description": "Client visit travel",
        })

    @pytest.mark.asyncio
    async def test_approved_claim_is_paid_by_the_run(self, client, sql_repository):
        employee = await _seed_employee(sql_repository)
        created = await self._submit(client, employee.id)
        assert created.status_code == 201
        claim = created.json()
        assert claim["status"] == "submitted"

        approved = await client.post(f"{API}/reimbursements/{claim['id']}/approve", json={"approved_by": "finance.lead"})
        assert approved.json()["status"] == "approved"
        again = await client.post(f"{API}/reimbursements/{claim['id']}/approve", json={"approved_by": "finance.lead"})
        assert again.status_code == 409
        assert again.json()["detail"]["code"] == "INVALID_STATE_TRANSITION"

        await _lock(client)
        run_id = (await client.post(f"{API}/runs", json={"month": 6, "year": 2024})).json()["run_id"]
        records = (await client.get(f"{API}/runs/{run_id}/records")).json()
        assert records[0]["reimbursements"] == 50_000
        assert records[0]["net_pay"] == 1_097_000

        claims = (await client.get(f"{API}/employees/{employee.id}/reimbursements")).json()
        assert claims[0]["payroll_run_id"] == run_id

    @pytest.mark.asyncio
    async def test_reject_needs_reason(self, client):
        claim = (await self._submit(client, uuid4())).json()

        missing = await client.post(f"{API}/reimbursements/{claim['id']}/reject", json={"rejected_by": "finance.lead", "reason": ""})
        assert missing.status_code == 422

        rejected = await client.post(
            f"{API}/reimbursements/{claim['id']}/reject",
            json={"rejected_by": "finance.lead", "reason": "No receipt"},
        )
        assert rejected.status_code == 200
        assert rejected.json()["status"] == "rejected"
        assert rejected.json()["rejection_reason"] == "No receipt"

    @pytest.mark.asyncio
    async def test_amount_must_be_positive(self, client):
        response = await self._submit(client, uuid4(), amount=0)
        assert response.status_code == 422
