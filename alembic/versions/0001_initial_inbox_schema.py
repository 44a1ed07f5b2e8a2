"""Initial inbox schema

Revision ID: 0001_initial_inbox_schema
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '0001_initial_inbox_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'tenants',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'profiles',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), sa.ForeignKey('tenants.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('full_name', sa.String(200), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_profiles_tenant_id', 'profiles', ['tenant_id'])

    op.create_table(
        'wa_channels',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('phone_number_id', sa.String(64), nullable=False, unique=True),
        sa.Column('waba_id', sa.String(64), nullable=True),
        sa.Column('display_phone', sa.String(50), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_wa_channels_tenant_id', 'wa_channels', ['tenant_id'])

    op.create_table(
        'contacts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('phone_e164', sa.String(32), nullable=False),
        sa.Column('name', sa.String(200), nullable=True),
        sa.Column('last_seen_at', sa.DateTime(), nullable=True),
        sa.Column('last_seen_by_agent_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('tenant_id', 'phone_e164', name='contacts_tenant_phone_uq'),
    )

    op.create_table(
        'conversations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('contact_id', sa.String(36), sa.ForeignKey('contacts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('assigned_to', sa.String(36), sa.ForeignKey('profiles.id', ondelete='SET NULL'), nullable=True),
        sa.Column('last_message_at', sa.DateTime(), nullable=True),
        sa.Column('unread_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('tenant_id', 'contact_id', name='conversations_tenant_contact_uq'),
        sa.CheckConstraint('unread_count >= 0', name='conversations_unread_non_negative'),
    )

    op.create_table(
        'messages',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('conversation_id', sa.String(36), sa.ForeignKey('conversations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('direction', sa.String(3), nullable=False),
        sa.Column('type', sa.String(30), nullable=False),
        sa.Column('text_body', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('wa_message_id', sa.String(128), nullable=True),
        sa.Column('created_by', sa.String(36), sa.ForeignKey('profiles.id', ondelete='SET NULL'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('payload', sa.JSON().with_variant(postgresql.JSONB(), 'postgresql'), nullable=False),
    )
    op.create_index('messages_conversation_created_idx', 'messages', ['conversation_id', 'created_at'])
    op.create_index('messages_status_created_idx', 'messages', ['status', 'created_at'])

    # Redelivered webhooks collide here; outbound rows stay NULL until the provider answers
    op.create_index(
        'messages_tenant_wa_message_id_uq',
        'messages',
        ['tenant_id', 'wa_message_id'],
        unique=True,
        postgresql_where=sa.text('wa_message_id IS NOT NULL'),
        sqlite_where=sa.text('wa_message_id IS NOT NULL'),
    )


def downgrade() -> None:
    op.drop_index('messages_tenant_wa_message_id_uq', table_name='messages')
    op.drop_index('messages_status_created_idx', table_name='messages')
    op.drop_index('messages_conversation_created_idx', table_name='messages')
    op.drop_table('messages')
    op.drop_table('conversations')
    op.drop_table('contacts')
    op.drop_index('ix_wa_channels_tenant_id', table_name='wa_channels')
    op.drop_table('wa_channels')
    op.drop_index('ix_profiles_tenant_id', table_name='profiles')
    op.drop_table('profiles')
    op.drop_table('tenants')
