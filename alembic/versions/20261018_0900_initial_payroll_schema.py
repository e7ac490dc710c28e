"""Initial payroll schema - employees, salary structures, attendance, runs, loans, statutory deadlines

Revision ID: 20261018_0900_initial_payroll
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '20261018_0900_initial_payroll'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    # Shared by more than one table, so created once up front
    gender_enum = postgresql.ENUM('MALE', 'FEMALE', name='gender', create_type=False)
    gender_enum.create(op.get_bind(), checkfirst=True)

    tax_regime_enum = postgresql.ENUM('OLD', 'NEW', name='taxregime', create_type=False)
    tax_regime_enum.create(op.get_bind(), checkfirst=True)

    # =====================================================
    # EMPLOYEES AND SALARY STRUCTURES
    # =====================================================
    op.create_table(
        'employees',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('employee_code', sa.String(50), nullable=False),
        sa.Column('full_name', sa.String(200), nullable=False),
        sa.Column('gender', gender_enum, nullable=True),
        sa.Column('work_state', sa.String(2), nullable=True, comment='Two-letter state code, drives Professional Tax'),
        sa.Column('uan', sa.String(12), nullable=True, comment='EPFO Universal Account Number'),
        sa.Column('esic_number', sa.String(17), nullable=True),
        sa.Column('pan', sa.String(10), nullable=True),
        sa.Column('date_of_joining', sa.Date(), nullable=False),
        sa.Column('date_of_exit', sa.Date(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_employees'),
        sa.UniqueConstraint('employee_code', name='uq_employees_employee_code'),
    )

    op.create_table(
        'salary_structures',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('employee_id', sa.Uuid(), sa.ForeignKey('employees.id', ondelete='CASCADE', name='fk_salary_structures_employee_id_employees'), nullable=False),
        sa.Column('effective_from', sa.Date(), nullable=False),
        sa.Column('effective_to', sa.Date(), nullable=True),
        sa.Column('basic', sa.BigInteger(), nullable=False),
        sa.Column('hra', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('special_allowance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('lta', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('medical_allowance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('conveyance_allowance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('other_allowances', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('tax_regime', tax_regime_enum, nullable=False, server_default='NEW'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_salary_structures'),
        sa.UniqueConstraint('employee_id', 'effective_from', name='uq_salary_structure_employee_from'),
        sa.CheckConstraint('basic >= 0', name='ck_salary_structures_basic_non_negative'),
    )
    op.create_index('ix_salary_structures_employee_id', 'salary_structures', ['employee_id'])

    # =====================================================
    # ATTENDANCE
    # =====================================================
    op.create_table(
        'attendance_summaries',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('employee_id', sa.Uuid(), sa.ForeignKey('employees.id', ondelete='CASCADE', name='fk_attendance_summaries_employee_id_employees'), nullable=False),
        sa.Column('month', sa.Integer(), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('working_days', sa.Integer(), nullable=False),
        sa.Column('paid_days', sa.Integer(), nullable=False),
        sa.Column('lop_days', sa.Integer(), nullable=False, server_default='0'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_attendance_summaries'),
        sa.UniqueConstraint('employee_id', 'month', 'year', name='uq_attendance_summary_period'),
    )
    op.create_index('ix_attendance_summaries_employee_id', 'attendance_summaries', ['employee_id'])

    op.create_table(
        'attendance_locks',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('month', sa.Integer(), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('locked_by', sa.String(100), nullable=False),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('unlock_requested_by', sa.String(100), nullable=True),
        sa.Column('unlock_requested_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('unlock_reason', sa.Text(), nullable=True),
        sa.Column('unlock_approved_by', sa.String(100), nullable=True),
        sa.Column('unlock_approved_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_attendance_locks'),
        sa.UniqueConstraint('month', 'year', name='uq_attendance_lock_period'),
    )

    op.create_table(
        'professional_tax_slabs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('state_code', sa.String(2), nullable=False),
        sa.Column('salary_from', sa.BigInteger(), nullable=False),
        sa.Column('salary_to', sa.BigInteger(), nullable=True, comment='Exclusive upper bound; NULL means no upper bound'),
        sa.Column('tax_amount', sa.BigInteger(), nullable=False),
        sa.Column('month', sa.Integer(), nullable=True, comment='Set for month-specific slabs such as a February surcharge'),
        sa.Column('gender', gender_enum, nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_professional_tax_slabs'),
    )
    op.create_index('ix_professional_tax_slabs_state_code', 'professional_tax_slabs', ['state_code'])

    # =====================================================
    # PAYROLL RUNS AND RECORDS
    # =====================================================
    op.create_table(
        'payroll_runs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('month', sa.Integer(), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('status', sa.Enum('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', 'REVERTED', name='payrollrunstatus'), nullable=False),
        sa.Column('current_stage', sa.Enum('VALIDATION', 'CALCULATION', 'STATUTORY', 'FINALIZATION', name='payrollrunstage'), nullable=False),
        sa.Column('total_employees', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('success_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('errors', sa.JSON(), nullable=True, comment='List of {employee_id, message} entries'),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('total_gross', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_deductions', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_net_pay', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_employer_cost', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_employee_pf', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_employer_pf', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_employee_esi', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_employer_esi', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_professional_tax', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_tds', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_reimbursements', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('initiated_by', sa.String(100), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reverted_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_payroll_runs'),
    )
    op.create_index('ix_payroll_runs_status', 'payroll_runs', ['status'])
    # At most one run per period that has not been reverted
    op.create_index(
        'uq_payroll_runs_active_period', 'payroll_runs', ['month', 'year'],
        unique=True, postgresql_where=sa.text("status <> 'REVERTED'"),
    )

    op.create_table(
        'payroll_records',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('payroll_run_id', sa.Uuid(), sa.ForeignKey('payroll_runs.id', ondelete='CASCADE', name='fk_payroll_records_payroll_run_id_payroll_runs'), nullable=False),
        sa.Column('employee_id', sa.Uuid(), sa.ForeignKey('employees.id', ondelete='CASCADE', name='fk_payroll_records_employee_id_employees'), nullable=False),
        sa.Column('month', sa.Integer(), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('status', sa.Enum('CALCULATED', 'VERIFIED', 'PAID', 'ERROR', name='payrollrecordstatus'), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('employee_name', sa.String(200), nullable=False),
        sa.Column('uan', sa.String(12), nullable=True),
        sa.Column('esic_number', sa.String(17), nullable=True),
        sa.Column('pan', sa.String(10), nullable=True),
        sa.Column('tax_regime', tax_regime_enum, nullable=True),
        sa.Column('working_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('paid_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lop_days', sa.Integer(), nullable=False, server_default='0'),
        *[
            sa.Column(name, sa.BigInteger(), nullable=False, server_default='0')
            for name in (
                'basic', 'hra', 'special_allowance', 'lta', 'medical_allowance',
                'conveyance_allowance', 'other_allowances', 'gross_before_lop',
                'lop_deduction', 'gross_earnings', 'pf_base', 'employee_pf',
                'employer_epf', 'employer_eps', 'employer_edli', 'employer_pf_admin',
            )
        ],
        sa.Column('esi_applicable', sa.Boolean(), nullable=False, server_default=sa.false()),
        *[
            sa.Column(name, sa.BigInteger(), nullable=False, server_default='0')
            for name in (
                'employee_esi', 'employer_esi', 'professional_tax', 'tds',
                'reimbursements', 'loan_deductions', 'total_deductions', 'net_pay', 'employer_cost',
            )
        ],
        sa.Column('verified_by', sa.String(100), nullable=True),
        sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_payroll_records'),
        sa.UniqueConstraint('payroll_run_id', 'employee_id', name='uq_payroll_record_run_employee'),
    )
    op.create_index('ix_payroll_records_payroll_run_id', 'payroll_records', ['payroll_run_id'])
    op.create_index('ix_payroll_records_employee_id', 'payroll_records', ['employee_id'])

    # =====================================================
    # EMPLOYEE LOANS
    # =====================================================
    op.create_table(
        'employee_loans',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('employee_id', sa.Uuid(), sa.ForeignKey('employees.id', ondelete='CASCADE', name='fk_employee_loans_employee_id_employees'), nullable=False),
        sa.Column('loan_type', sa.Enum('SALARY_ADVANCE', 'PERSONAL', 'EMERGENCY', 'OTHER', name='loantype'), nullable=False),
        sa.Column('principal', sa.BigInteger(), nullable=False),
        sa.Column('annual_interest_rate', sa.Numeric(precision=5, scale=2), nullable=False, server_default='0', comment='Annual rate in percent'),
        sa.Column('tenure_months', sa.Integer(), nullable=False),
        sa.Column('emi_amount', sa.BigInteger(), nullable=False),
        sa.Column('total_interest', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_repayment', sa.BigInteger(), nullable=False),
        sa.Column('remaining_balance', sa.BigInteger(), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('status', sa.Enum('PENDING', 'ACTIVE', 'CLOSED', 'CANCELLED', 'DEFAULTED', name='loanstatus'), nullable=False),
        sa.Column('disbursed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('closure_reason', sa.Text(), nullable=True),
        sa.Column('approved_by', sa.String(100), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_employee_loans'),
    )
    op.create_index('ix_employee_loans_employee_id', 'employee_loans', ['employee_id'])
    op.create_index('ix_employee_loans_status', 'employee_loans', ['status'])

    op.create_table(
        'loan_deductions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('loan_id', sa.Uuid(), sa.ForeignKey('employee_loans.id', ondelete='CASCADE', name='fk_loan_deductions_loan_id_employee_loans'), nullable=False),
        sa.Column('employee_id', sa.Uuid(), nullable=False),
        sa.Column('month', sa.Integer(), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('installment_number', sa.Integer(), nullable=False),
        sa.Column('emi_amount', sa.BigInteger(), nullable=False),
        sa.Column('principal_component', sa.BigInteger(), nullable=False),
        sa.Column('interest_component', sa.BigInteger(), nullable=False),
        sa.Column('balance_after', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.Enum('SCHEDULED', 'DEDUCTED', 'SKIPPED', name='loandeductionstatus'), nullable=False),
        sa.Column('payroll_run_id', sa.Uuid(), sa.ForeignKey('payroll_runs.id', ondelete='SET NULL', name='fk_loan_deductions_payroll_run_id_payroll_runs'), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_loan_deductions'),
        sa.UniqueConstraint('loan_id', 'month', 'year', name='uq_loan_deduction_period'),
    )
    op.create_index('ix_loan_deductions_loan_id', 'loan_deductions', ['loan_id'])
    op.create_index('ix_loan_deductions_employee_id', 'loan_deductions', ['employee_id'])

    # =====================================================
    # REIMBURSEMENT CLAIMS
    # =====================================================
    op.create_table(
        'reimbursement_claims',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('employee_id', sa.Uuid(), sa.ForeignKey('employees.id', ondelete='CASCADE', name='fk_reimbursement_claims_employee_id_employees'), nullable=False),
        sa.Column('expense_date', sa.Date(), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False, comment='Paise'),
        sa.Column('description', sa.String(500), nullable=False),
        sa.Column('status', sa.Enum('SUBMITTED', 'APPROVED', 'REJECTED', name='claimstatus'), nullable=False),
        sa.Column('approved_by', sa.String(100), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_by', sa.String(100), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('payroll_run_id', sa.Uuid(), sa.ForeignKey('payroll_runs.id', ondelete='SET NULL', name='fk_reimbursement_claims_payroll_run_id_payroll_runs'), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_reimbursement_claims'),
    )
    op.create_index('ix_reimbursement_claims_employee_id', 'reimbursement_claims', ['employee_id'])
    op.create_index('ix_reimbursement_claims_status', 'reimbursement_claims', ['status'])
    op.create_index('ix_reimbursement_claims_payroll_run_id', 'reimbursement_claims', ['payroll_run_id'])

    # =====================================================
    # STATUTORY DEADLINES
    # =====================================================
    op.create_table(
        'statutory_deadlines',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('deadline_type', sa.Enum(
            'PF_PAYMENT', 'PF_RETURN', 'ESI_PAYMENT', 'TDS_DEPOSIT', 'TDS_RETURN_24Q', 'PT_PAYMENT', 'FORM_16',
            name='deadlinetype',
        ), nullable=False),
        sa.Column('month', sa.Integer(), nullable=False, comment='Period the filing covers'),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('due_date', sa.Date(), nullable=False),
        sa.Column('description', sa.String(255), nullable=False),
        sa.Column('status', sa.Enum('PENDING', 'FILED', 'OVERDUE', name='deadlinestatus'), nullable=False),
        sa.Column('alert_7_day_sent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('alert_3_day_sent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('alert_1_day_sent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('overdue_alert_sent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('filed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('filed_by', sa.String(100), nullable=True),
        sa.Column('filing_reference', sa.String(100), nullable=True),
        sa.Column('amount_paid', sa.BigInteger(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_statutory_deadlines'),
        sa.UniqueConstraint('deadline_type', 'month', 'year', name='uq_statutory_deadline_period'),
    )
    op.create_index('ix_statutory_deadlines_due_date', 'statutory_deadlines', ['due_date'])
    op.create_index('ix_statutory_deadlines_status', 'statutory_deadlines', ['status'])


def downgrade() -> None:
    """Drop the payroll schema."""
    op.drop_table('statutory_deadlines')
    op.drop_table('reimbursement_claims')
    op.drop_table('loan_deductions')
    op.drop_table('employee_loans')
    op.drop_table('payroll_records')
    op.drop_index('uq_payroll_runs_active_period', table_name='payroll_runs')
    op.drop_table('payroll_runs')
    op.drop_table('professional_tax_slabs')
    op.drop_table('attendance_locks')
    op.drop_table('attendance_summaries')
    op.drop_table('salary_structures')
    op.drop_table('employees')

    # Drop enums
    for name in (
        'deadlinestatus', 'deadlinetype', 'claimstatus', 'loandeductionstatus', 'loanstatus', 'loantype',
        'payrollrecordstatus', 'payrollrunstage', 'payrollrunstatus', 'taxregime', 'gender',
    ):
        sa.Enum(name=name).drop(op.get_bind(), checkfirst=True)
