"""Create billing core tables.

Revision ID: create_billing_core
Revises:
Create Date: 2026-10-19

Estimation -> Quotation -> Invoice pipeline with GST split per line,
payments ledger, IRN records and e-invoice exchange log.

Numbering uses document_sequences:
- Financial year based (April-March)
- Format: {PREFIX}/{FY}/{SEQUENCE}, e.g. INV/25-26/00001
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB


# revision identifiers, used by Alembic.
revision: str = 'create_billing_core'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _money(name: str, nullable: bool = False, default: str = '0'):
    return sa.Column(name, sa.Numeric(14, 2), nullable=nullable, server_default=default)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    ]


def _buyer_columns():
    return [
        sa.Column('buyer_name', sa.String(200), nullable=False),
        sa.Column('buyer_trade_name', sa.String(200), nullable=True),
        sa.Column('buyer_gstin', sa.String(15), nullable=True),
        sa.Column('buyer_state_code', sa.String(2), nullable=False),
        sa.Column('buyer_address_line1', sa.String(255), nullable=True),
        sa.Column('buyer_address_line2', sa.String(255), nullable=True),
        sa.Column('buyer_city', sa.String(100), nullable=True),
        sa.Column('buyer_pincode', sa.String(10), nullable=True),
        sa.Column('buyer_email', sa.String(255), nullable=True),
        sa.Column('buyer_phone', sa.String(20), nullable=True),
    ]


def _tax_totals():
    return [
        _money('subtotal'),
        _money('cgst_total'),
        _money('sgst_total'),
        _money('igst_total'),
        _money('tax_amount'),
        _money('discount'),
        _money('total_with_gst'),
    ]


def _taxed_line_columns():
    return [
        sa.Column('item_number', sa.Integer, nullable=False),
        sa.Column('category', sa.String(100), nullable=True),
        sa.Column('description', sa.String(500), nullable=False),
        sa.Column('hsn_sac_code', sa.String(8), nullable=False),
        sa.Column('is_service', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('quantity', sa.Numeric(12, 3), nullable=False),
        sa.Column('unit', sa.String(20), nullable=False),
        _money('unit_price'),
        _money('taxable_value'),
        sa.Column('gst_rate', sa.Numeric(5, 2), nullable=False),
        _money('cgst_amount'),
        _money('sgst_amount'),
        _money('igst_amount'),
        _money('total_tax'),
        _money('line_total'),
    ]


def upgrade() -> None:
    """Create billing core tables."""

    conn = op.get_bind()
    inspector = sa.inspect(conn)
    if 'invoices' in inspector.get_table_names():
        print("billing tables already exist, skipping...")
        return

    op.create_table(
        'clients',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('trade_name', sa.String(200), nullable=True),
        sa.Column('gstin', sa.String(15), nullable=True),
        sa.Column('state_code', sa.String(2), nullable=True),
        sa.Column('address_line1', sa.String(255), nullable=True),
        sa.Column('address_line2', sa.String(255), nullable=True),
        sa.Column('city', sa.String(100), nullable=True),
        sa.Column('pincode', sa.String(10), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(20), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )

    op.create_table(
        'projects',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('client_id', UUID(as_uuid=True), sa.ForeignKey('clients.id', ondelete='SET NULL'), nullable=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('ix_projects_client_id', 'projects', ['client_id'])

    op.create_table(
        'estimations',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('estimation_number', sa.String(50), nullable=False, unique=True),
        sa.Column('client_id', UUID(as_uuid=True), sa.ForeignKey('clients.id', ondelete='SET NULL'), nullable=True),
        sa.Column('project_id', UUID(as_uuid=True), sa.ForeignKey('projects.id', ondelete='SET NULL'), nullable=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='DRAFT'),
        _money('subtotal'),
        _money('discount'),
        sa.Column('margin_percent', sa.Numeric(5, 2), nullable=False, server_default='0'),
        _money('total'),
        sa.Column('validity_days', sa.Integer, nullable=False, server_default='7'),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('converted_to_quotation_id', UUID(as_uuid=True), nullable=True, unique=True),
        sa.Column('converted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('converted_by', UUID(as_uuid=True), nullable=True),
        sa.Column('created_by', UUID(as_uuid=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_estimations_status', 'estimations', ['status'])

    op.create_table(
        'estimation_items',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('estimation_id', UUID(as_uuid=True), sa.ForeignKey('estimations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('item_number', sa.Integer, nullable=False),
        sa.Column('category', sa.String(100), nullable=True),
        sa.Column('description', sa.String(500), nullable=False),
        sa.Column('quantity', sa.Numeric(12, 3), nullable=False),
        sa.Column('unit', sa.String(20), nullable=False, server_default='pcs'),
        _money('unit_price'),
        _money('amount'),
        sa.Column('notes', sa.Text, nullable=True),
    )
    op.create_index('ix_estimation_items_estimation_id', 'estimation_items', ['estimation_id'])

    op.create_table(
        'quotations',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('quotation_number', sa.String(50), nullable=False, unique=True),
        sa.Column('estimation_id', UUID(as_uuid=True), sa.ForeignKey('estimations.id', ondelete='RESTRICT'), nullable=False, unique=True),
        sa.Column('client_id', UUID(as_uuid=True), nullable=True),
        sa.Column('project_id', UUID(as_uuid=True), nullable=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('status', sa.String(50), nullable=False, server_default='DRAFT'),
        sa.Column('quotation_type', sa.String(3), nullable=False),
        sa.Column('valid_until', sa.Date, nullable=True),
        *_buyer_columns(),
        sa.Column('seller_gstin', sa.String(15), nullable=False),
        sa.Column('seller_state_code', sa.String(2), nullable=False),
        sa.Column('is_interstate', sa.Boolean, nullable=False, server_default='false'),
        *_tax_totals(),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('converted_to_invoice_id', UUID(as_uuid=True), nullable=True, unique=True),
        sa.Column('converted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('converted_by', UUID(as_uuid=True), nullable=True),
        sa.Column('created_by', UUID(as_uuid=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_quotations_status', 'quotations', ['status'])
    op.create_index('ix_quotations_client_id', 'quotations', ['client_id'])

    op.create_table(
        'quotation_items',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('quotation_id', UUID(as_uuid=True), sa.ForeignKey('quotations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('estimation_item_id', UUID(as_uuid=True), nullable=True),
        *_taxed_line_columns(),
    )
    op.create_index('ix_quotation_items_quotation_id', 'quotation_items', ['quotation_id'])

    op.create_table(
        'invoices',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('invoice_number', sa.String(50), nullable=False, unique=True),
        sa.Column('quotation_id', UUID(as_uuid=True), sa.ForeignKey('quotations.id', ondelete='RESTRICT'), nullable=False, unique=True),
        sa.Column('client_id', UUID(as_uuid=True), nullable=True),
        sa.Column('project_id', UUID(as_uuid=True), nullable=True),
        sa.Column('invoice_type', sa.String(3), nullable=False),
        sa.Column('status', sa.String(50), nullable=False, server_default='DRAFT'),
        sa.Column('invoice_date', sa.Date, nullable=False),
        sa.Column('due_date', sa.Date, nullable=False),
        sa.Column('payment_terms', sa.String(200), nullable=True),
        *_buyer_columns(),
        sa.Column('seller_gstin', sa.String(15), nullable=False),
        sa.Column('seller_state_code', sa.String(2), nullable=False),
        sa.Column('place_of_supply', sa.String(2), nullable=False),
        sa.Column('is_interstate', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('is_reverse_charge', sa.Boolean, nullable=False, server_default='false'),
        *_tax_totals(),
        _money('paid_amount'),
        _money('outstanding_amount'),
        sa.Column('e_invoice_status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('irn', sa.String(64), nullable=True, unique=True),
        sa.Column('ack_no', sa.String(50), nullable=True),
        sa.Column('ack_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('irn_generated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('signed_invoice', sa.Text, nullable=True),
        sa.Column('signed_qr_code', sa.Text, nullable=True),
        sa.Column('einvoice_error_code', sa.String(50), nullable=True),
        sa.Column('einvoice_error_message', sa.Text, nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('created_by', UUID(as_uuid=True), nullable=True),
        sa.Column('issued_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_by', UUID(as_uuid=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('outstanding_amount >= 0', name='ck_invoices_outstanding_non_negative'),
    )
    op.create_index('ix_invoices_status', 'invoices', ['status'])
    op.create_index('ix_invoices_client_id', 'invoices', ['client_id'])
    op.create_index('ix_invoices_invoice_date', 'invoices', ['invoice_date'])
    op.create_index('ix_invoices_due_date', 'invoices', ['due_date'])

    op.create_table(
        'invoice_items',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('invoice_id', UUID(as_uuid=True), sa.ForeignKey('invoices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('quotation_item_id', UUID(as_uuid=True), nullable=True),
        *_taxed_line_columns(),
    )
    op.create_index('ix_invoice_items_invoice_id', 'invoice_items', ['invoice_id'])

    op.create_table(
        'payments',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('invoice_id', UUID(as_uuid=True), sa.ForeignKey('invoices.id', ondelete='RESTRICT'), nullable=False),
        _money('amount', default=None),
        sa.Column('method', sa.String(20), nullable=False),
        sa.Column('payment_date', sa.Date, nullable=False),
        sa.Column('reference', sa.String(100), nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        _money('outstanding_after', default=None),
        sa.Column('created_by', UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint('amount > 0', name='ck_payments_amount_positive'),
    )
    op.create_index('ix_payments_invoice_id', 'payments', ['invoice_id'])

    op.create_table(
        'irn_records',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('invoice_id', UUID(as_uuid=True), sa.ForeignKey('invoices.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('irn', sa.String(64), nullable=False, unique=True),
        sa.Column('ack_no', sa.String(50), nullable=False),
        sa.Column('ack_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('signed_payload', sa.Text, nullable=True),
        sa.Column('qr_code', sa.Text, nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_reason_code', sa.String(1), nullable=True),
        sa.Column('cancel_remarks', sa.String(100), nullable=True),
        sa.Column('cancelled_by', UUID(as_uuid=True), nullable=True),
        sa.Column('created_by', UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('ix_irn_records_invoice_id', 'irn_records', ['invoice_id'])

    op.create_table(
        'einvoice_logs',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('invoice_id', UUID(as_uuid=True), sa.ForeignKey('invoices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('action', sa.String(20), nullable=False),
        sa.Column('success', sa.Boolean, nullable=False),
        sa.Column('request_payload', JSONB, nullable=True),
        sa.Column('response_payload', JSONB, nullable=True),
        sa.Column('error_code', sa.String(50), nullable=True),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('retryable', sa.Boolean, nullable=True),
        sa.Column('created_by', UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('ix_einvoice_logs_invoice_id', 'einvoice_logs', ['invoice_id'])

    op.create_table(
        'document_sequences',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('document_type', sa.String(10), nullable=False),
        sa.Column('company_code', sa.String(10), nullable=False, server_default=''),
        sa.Column('financial_year', sa.String(10), nullable=False),
        sa.Column('current_number', sa.Integer, nullable=False, server_default='0'),
        sa.Column('padding_length', sa.Integer, nullable=False, server_default='5'),
        *_timestamps(),
        sa.UniqueConstraint('document_type', 'financial_year', name='uq_document_type_fy'),
    )
    op.create_index('ix_document_sequences_document_type', 'document_sequences', ['document_type'])

    print("Created billing core tables")


def downgrade() -> None:
    """Drop billing core tables."""
    for table in (
        'document_sequences',
        'einvoice_logs',
        'irn_records',
        'payments',
        'invoice_items',
        'invoices',
        'quotation_items',
        'quotations',
        'estimation_items',
        'estimations',
        'projects',
        'clients',
    ):
        op.drop_table(table)
