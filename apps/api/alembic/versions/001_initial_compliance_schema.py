"""Tenant configuration, registry entries and transmission events.

Revision ID: 001
Revises:
Create Date: 2025-03-01
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'tenant_configs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('tenant_name', sa.String(length=255), nullable=True),
        sa.Column('mode', sa.String(length=20), nullable=False),
        sa.Column('environment', sa.String(length=20), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False),
        sa.Column('auto_submit', sa.Boolean(), nullable=False),
        sa.Column('flow_control_seconds', sa.Integer(), nullable=False),
        sa.Column('max_records_per_submission', sa.Integer(), nullable=False),
        sa.Column('certificate_ciphertext', sa.Text(), nullable=True),
        sa.Column('certificate_password_ciphertext', sa.Text(), nullable=True),
        sa.Column('certificate_key_id', sa.String(length=255), nullable=True),
        sa.Column('certificate_subject', sa.String(length=512), nullable=True),
        sa.Column('certificate_issuer', sa.String(length=512), nullable=True),
        sa.Column('certificate_not_before', sa.DateTime(), nullable=True),
        sa.Column('certificate_not_after', sa.DateTime(), nullable=True),
        sa.Column('certificate_uploaded_at', sa.DateTime(), nullable=True),
        sa.Column('last_sequence', sa.BigInteger(), nullable=False),
        sa.Column('last_submission_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tenant_configs_id', 'tenant_configs', ['id'])
    op.create_index('ix_tenant_configs_tenant_id', 'tenant_configs', ['tenant_id'], unique=True)
    op.create_index('ix_tenant_configs_certificate_not_after', 'tenant_configs', ['certificate_not_after'])

    op.create_table(
        'registry_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('invoice_id', sa.String(length=255), nullable=False),
        sa.Column('direction', sa.String(length=20), nullable=False),
        sa.Column('sequence_number', sa.BigInteger(), nullable=False),
        sa.Column('previous_hash', sa.String(length=64), nullable=True),
        sa.Column('current_hash', sa.String(length=64), nullable=False),
        sa.Column('hash_version', sa.String(length=10), nullable=False),
        sa.Column('canonical_fields', sa.JSON(), nullable=False),
        sa.Column('document_json', sa.JSON(), nullable=False),
        sa.Column('signed_xml', sa.Text(), nullable=True),
        sa.Column('signature_fingerprint', sa.String(length=128), nullable=True),
        sa.Column('unsignable', sa.Boolean(), nullable=False),
        sa.Column('qr_payload', sa.Text(), nullable=False),
        sa.Column('qr_url', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('confirmation_code', sa.String(length=255), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('next_eligible_retry', sa.DateTime(), nullable=True),
        sa.Column('activated_at', sa.DateTime(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'sequence_number', name='uq_registry_tenant_sequence'),
        sa.UniqueConstraint('tenant_id', 'invoice_id', 'direction', name='uq_registry_tenant_invoice'),
    )
    op.create_index('ix_registry_entries_id', 'registry_entries', ['id'])
    op.create_index('ix_registry_entries_tenant_id', 'registry_entries', ['tenant_id'])
    op.create_index('ix_registry_entries_invoice_id', 'registry_entries', ['invoice_id'])
    op.create_index('ix_registry_entries_sequence_number', 'registry_entries', ['sequence_number'])
    op.create_index('ix_registry_entries_current_hash', 'registry_entries', ['current_hash'])
    op.create_index('ix_registry_entries_status', 'registry_entries', ['status'])
    op.create_index('ix_registry_entries_next_eligible_retry', 'registry_entries', ['next_eligible_retry'])
    op.create_index('ix_registry_entries_created_at', 'registry_entries', ['created_at'])

    op.create_table(
        'transmission_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('entry_id', sa.Integer(), nullable=True),
        sa.Column('event_type', sa.String(length=50), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('actor', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['entry_id'], ['registry_entries.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_transmission_events_id', 'transmission_events', ['id'])
    op.create_index('ix_transmission_events_tenant_id', 'transmission_events', ['tenant_id'])
    op.create_index('ix_transmission_events_entry_id', 'transmission_events', ['entry_id'])
    op.create_index('ix_transmission_events_event_type', 'transmission_events', ['event_type'])
    op.create_index('ix_transmission_events_created_at', 'transmission_events', ['created_at'])


def downgrade() -> None:
    op.drop_table('transmission_events')
    op.drop_table('registry_entries')
    op.drop_table('tenant_configs')
