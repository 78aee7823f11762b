"""initial signing schema

Revision ID: 3b8e1f27c4a9
Revises:
Create Date: 2026-10-19 09:12:40.118305

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
import sqlmodel


# revision identifiers, used by Alembic.
revision: str = '3b8e1f27c4a9'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


REQUEST_STATUS = sa.Enum('PENDING', 'SENT', 'VIEWED', 'VERIFIED', 'SIGNED', 'EXPIRED',
                         'CANCELLED', 'DECLINED', name='requeststatus')
PACKAGE_STATUS = sa.Enum('PENDING', 'PARTIAL', 'COMPLETE', 'EXPIRED', 'CANCELLED',
                         name='packagestatus')
ROLE_STATUS = sa.Enum('SENT', 'SIGNED', 'DECLINED', name='rolestatus')
VERIFICATION_METHOD = sa.Enum('EMAIL', 'SMS', 'BOTH', name='verificationmethod')
SIGNATURE_TYPE = sa.Enum('TYPED', 'DRAWN', name='signaturetype')
AUDIT_ACTION = sa.Enum('CREATE', 'UPDATE', 'CANCEL', 'REPLACE', name='auditaction')


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade():
    """
    Creates every table of the signing workflow.
    Enum columns store the member NAME, as SQLModel maps str enums.
    """
    op.create_table(
        'apikey',
        *_timestamps(),
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('key_hash', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('tenant_name', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_apikey_key_hash'), 'apikey', ['key_hash'], unique=True)
    op.create_index(op.f('ix_apikey_tenant_id'), 'apikey', ['tenant_id'], unique=False)

    op.create_table(
        'signingpackage',
        *_timestamps(),
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('package_code', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('external_ref', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('external_type', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('template_code', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('template_version', sa.Integer(), nullable=True),
        sa.Column('document_name', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('document_content', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('jurisdiction', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('merge_variables', sa.JSON(), nullable=True),
        sa.Column('event_date', sa.Date(), nullable=True),
        sa.Column('status', PACKAGE_STATUS, nullable=False),
        sa.Column('total_signers', sa.Integer(), nullable=False),
        sa.Column('completed_signers', sa.Integer(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('callback_url', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('created_by', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_signingpackage_package_code'), 'signingpackage', ['package_code'], unique=True)
    op.create_index(op.f('ix_signingpackage_tenant_id'), 'signingpackage', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_signingpackage_external_ref'), 'signingpackage', ['external_ref'], unique=False)
    op.create_index(op.f('ix_signingpackage_status'), 'signingpackage', ['status'], unique=False)

    op.create_table(
        'signaturerequest',
        *_timestamps(),
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('reference_code', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('external_ref', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('external_type', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('document_name', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('document_content', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('document_content_snapshot', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('document_url', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('template_code', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('template_version', sa.Integer(), nullable=True),
        sa.Column('jurisdiction', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('merge_variables', sa.JSON(), nullable=True),
        sa.Column('signer_name', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('signer_email', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('signer_phone', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('verification_method', VERIFICATION_METHOD, nullable=False),
        sa.Column('status', REQUEST_STATUS, nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('signed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('decline_reason', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('package_id', sa.Uuid(), nullable=True),
        sa.Column('roles_display', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('callback_url', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('created_by', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.ForeignKeyConstraint(['package_id'], ['signingpackage.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_signaturerequest_reference_code'), 'signaturerequest', ['reference_code'], unique=True)
    op.create_index(op.f('ix_signaturerequest_tenant_id'), 'signaturerequest', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_signaturerequest_external_ref'), 'signaturerequest', ['external_ref'], unique=False)
    op.create_index(op.f('ix_signaturerequest_signer_email'), 'signaturerequest', ['signer_email'], unique=False)
    op.create_index(op.f('ix_signaturerequest_status'), 'signaturerequest', ['status'], unique=False)
    op.create_index(op.f('ix_signaturerequest_expires_at'), 'signaturerequest', ['expires_at'], unique=False)
    op.create_index(op.f('ix_signaturerequest_package_id'), 'signaturerequest', ['package_id'], unique=False)

    op.create_table(
        'signingtoken',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('request_id', sa.Uuid(), nullable=False),
        sa.Column('token', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('verification_code', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('code_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('code_attempts', sa.Integer(), nullable=False),
        sa.Column('code_channel', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('is_verified', sa.Boolean(), nullable=False),
        sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['request_id'], ['signaturerequest.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_signingtoken_request_id'), 'signingtoken', ['request_id'], unique=True)
    op.create_index(op.f('ix_signingtoken_token'), 'signingtoken', ['token'], unique=True)

    op.create_table(
        'signature',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('request_id', sa.Uuid(), nullable=False),
        sa.Column('signature_type', SIGNATURE_TYPE, nullable=False),
        sa.Column('typed_name', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('signature_image', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('signer_ip', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('user_agent', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('consent_text', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('verification_method_used', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('signed_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['request_id'], ['signaturerequest.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_signature_request_id'), 'signature', ['request_id'], unique=True)

    op.create_table(
        'signingrole',
        *_timestamps(),
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('package_id', sa.Uuid(), nullable=False),
        sa.Column('role_name', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('signer_name', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('signer_email', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('signer_phone', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('date_of_birth', sa.Date(), nullable=True),
        sa.Column('is_minor', sa.Boolean(), nullable=False),
        sa.Column('is_package_admin', sa.Boolean(), nullable=False),
        sa.Column('request_id', sa.Uuid(), nullable=True),
        sa.Column('consolidated_group', sa.Uuid(), nullable=False),
        sa.Column('status', ROLE_STATUS, nullable=False),
        sa.Column('signed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['package_id'], ['signingpackage.id']),
        sa.ForeignKeyConstraint(['request_id'], ['signaturerequest.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_signingrole_package_id'), 'signingrole', ['package_id'], unique=False)
    op.create_index(op.f('ix_signingrole_request_id'), 'signingrole', ['request_id'], unique=False)
    op.create_index(op.f('ix_signingrole_consolidated_group'), 'signingrole', ['consolidated_group'], unique=False)

    op.create_table(
        'documenttemplate',
        *_timestamps(),
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('template_code', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('name', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('description', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('html_content', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('jurisdiction', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_by', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_documenttemplate_tenant_id'), 'documenttemplate', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_documenttemplate_template_code'), 'documenttemplate', ['template_code'], unique=False)

    op.create_table(
        'jurisdictionaddendum',
        *_timestamps(),
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('jurisdiction_code', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('jurisdiction_name', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('addendum_html', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_jurisdictionaddendum_tenant_id'), 'jurisdictionaddendum', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_jurisdictionaddendum_jurisdiction_code'), 'jurisdictionaddendum',
                    ['jurisdiction_code'], unique=False)

    op.create_table(
        'auditlog',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=True),
        sa.Column('entity_type', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('entity_id', sa.Uuid(), nullable=False),
        sa.Column('action', AUDIT_ACTION, nullable=False),
        sa.Column('changes', sa.JSON(), nullable=True),
        sa.Column('ip_address', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_auditlog_tenant_id'), 'auditlog', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_auditlog_entity_id'), 'auditlog', ['entity_id'], unique=False)


def downgrade():
    """Drops tables in reverse dependency order, then the Postgres enum types."""
    for table in ('auditlog', 'jurisdictionaddendum', 'documenttemplate', 'signingrole',
                  'signature', 'signingtoken', 'signaturerequest', 'signingpackage', 'apikey'):
        op.drop_table(table)

    bind = op.get_bind()
    if bind.dialect.name == 'postgresql':
        for enum in (REQUEST_STATUS, PACKAGE_STATUS, ROLE_STATUS, VERIFICATION_METHOD,
                     SIGNATURE_TYPE, AUDIT_ACTION):
            enum.drop(bind, checkfirst=True)
