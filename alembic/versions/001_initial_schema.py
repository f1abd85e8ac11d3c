"""initial_schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('hashed_password', sa.String(length=255), nullable=True),
        sa.Column('avatar', sa.String(length=500), nullable=True),
        sa.Column('role', sa.String(length=20), nullable=False, server_default='user'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('settings', sa.JSON(), nullable=True),
        sa.Column('reset_token', sa.String(length=128), nullable=True),
        sa.Column('reset_token_expires_at', sa.DateTime(), nullable=True),
        sa.Column('verification_token', sa.String(length=128), nullable=True),
        sa.Column('email_verified_at', sa.DateTime(), nullable=True),
        sa.Column('bot_api_token', sa.String(length=128), nullable=True),
        sa.Column('last_login_at', sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_role', 'users', ['role'])
    op.create_index('ix_users_status', 'users', ['status'])
    op.create_index('ix_users_reset_token', 'users', ['reset_token'])
    op.create_index('ix_users_verification_token', 'users', ['verification_token'])
    op.create_index('ix_users_bot_api_token', 'users', ['bot_api_token'], unique=True)

    op.create_table(
        'channels',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('channel_name', sa.String(length=255), nullable=False),
        sa.Column('channel_id', sa.String(length=100), nullable=False),
        sa.Column('channel_secret_encrypted', sa.Text(), nullable=False),
        sa.Column('channel_access_token_encrypted', sa.Text(), nullable=False),
        sa.Column('webhook_url', sa.String(length=500), nullable=True),
        sa.Column('basic_id', sa.String(length=100), nullable=True),
        sa.Column('picture_url', sa.String(length=500), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        *_timestamps(),
        sa.UniqueConstraint('user_id', 'channel_id', name='uq_channel_owner_platform_id'),
    )
    op.create_index('ix_channels_user_id', 'channels', ['user_id'])
    op.create_index('ix_channels_channel_id', 'channels', ['channel_id'])
    op.create_index('ix_channels_status', 'channels', ['status'])
    op.create_index('idx_channel_platform_status', 'channels', ['channel_id', 'status'])

    op.create_table(
        'line_users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('channel_id', sa.Integer(), sa.ForeignKey('channels.id', ondelete='CASCADE'), nullable=False),
        sa.Column('line_user_id', sa.String(length=100), nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=True),
        sa.Column('picture_url', sa.String(length=500), nullable=True),
        sa.Column('status_message', sa.Text(), nullable=True),
        sa.Column('language', sa.String(length=10), nullable=True),
        sa.Column('is_blocked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_spam', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('follow_status', sa.String(length=20), nullable=False, server_default='unknown'),
        sa.Column('source_type', sa.String(length=10), nullable=False, server_default='user'),
        sa.Column('group_id', sa.String(length=100), nullable=True),
        sa.Column('room_id', sa.String(length=100), nullable=True),
        sa.Column('member_count', sa.Integer(), nullable=True),
        sa.Column('last_message_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('channel_id', 'line_user_id', name='uq_line_user_per_channel'),
    )
    op.create_index('ix_line_users_channel_id', 'line_users', ['channel_id'])
    op.create_index('ix_line_users_line_user_id', 'line_users', ['line_user_id'])
    op.create_index('ix_line_users_follow_status', 'line_users', ['follow_status'])
    op.create_index('ix_line_users_source_type', 'line_users', ['source_type'])

    op.create_table(
        'admin_permissions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('owner_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('admin_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('channel_id', sa.Integer(), sa.ForeignKey('channels.id', ondelete='CASCADE'), nullable=True),
        sa.Column('permissions', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('invite_email', sa.String(length=255), nullable=True),
        sa.Column('invite_token', sa.String(length=128), nullable=True),
        sa.Column('invite_expires_at', sa.DateTime(), nullable=True),
        sa.Column('invited_at', sa.DateTime(), nullable=False),
        sa.Column('accepted_at', sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_admin_permissions_owner_id', 'admin_permissions', ['owner_id'])
    op.create_index('ix_admin_permissions_admin_id', 'admin_permissions', ['admin_id'])
    op.create_index('ix_admin_permissions_channel_id', 'admin_permissions', ['channel_id'])
    op.create_index('ix_admin_permissions_status', 'admin_permissions', ['status'])
    op.create_index('ix_admin_permissions_invite_token', 'admin_permissions', ['invite_token'], unique=True)
    op.create_index('idx_admin_perm_owner_admin', 'admin_permissions', ['owner_id', 'admin_id'])
    op.create_index('idx_admin_perm_admin_status', 'admin_permissions', ['admin_id', 'status'])
    op.create_index(
        'uq_active_grant_scope', 'admin_permissions', ['owner_id', 'admin_id', 'channel_id'],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )
    op.create_index(
        'uq_active_grant_all_channels', 'admin_permissions', ['owner_id', 'admin_id'],
        unique=True,
        postgresql_where=sa.text("status = 'active' AND channel_id IS NULL"),
        sqlite_where=sa.text("status = 'active' AND channel_id IS NULL"),
    )

    op.create_table(
        'tags',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('owner_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('color', sa.String(length=20), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('owner_id', 'name', name='uq_tag_owner_name'),
    )
    op.create_index('ix_tags_owner_id', 'tags', ['owner_id'])

    op.create_table(
        'conversations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('channel_id', sa.Integer(), sa.ForeignKey('channels.id', ondelete='CASCADE'), nullable=False),
        sa.Column('contact_id', sa.Integer(), sa.ForeignKey('line_users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='unread'),
        sa.Column('assigned_to', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('priority', sa.String(length=10), nullable=False, server_default='normal'),
        sa.Column('last_message_preview', sa.String(length=255), nullable=True),
        sa.Column('last_message_at', sa.DateTime(), nullable=True),
        sa.Column('unread_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('channel_id', 'contact_id', name='uq_conversation_channel_contact'),
    )
    op.create_index('ix_conversations_channel_id', 'conversations', ['channel_id'])
    op.create_index('ix_conversations_contact_id', 'conversations', ['contact_id'])
    op.create_index('ix_conversations_status', 'conversations', ['status'])
    op.create_index('ix_conversations_assigned_to', 'conversations', ['assigned_to'])
    op.create_index('ix_conversations_last_message_at', 'conversations', ['last_message_at'])
    op.create_index('idx_conv_channel_status_last', 'conversations', ['channel_id', 'status', 'last_message_at'])

    op.create_table(
        'conversation_tags',
        sa.Column('conversation_id', sa.Integer(),
                  sa.ForeignKey('conversations.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('tag_id', sa.Integer(), sa.ForeignKey('tags.id', ondelete='CASCADE'), primary_key=True),
    )

    op.create_table(
        'messages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('conversation_id', sa.Integer(),
                  sa.ForeignKey('conversations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('channel_id', sa.Integer(), sa.ForeignKey('channels.id', ondelete='CASCADE'), nullable=False),
        sa.Column('contact_id', sa.Integer(), sa.ForeignKey('line_users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('platform_message_id', sa.String(length=100), nullable=True),
        sa.Column('direction', sa.String(length=10), nullable=False),
        sa.Column('message_type', sa.String(length=20), nullable=False),
        sa.Column('content', sa.Text(), nullable=True),
        sa.Column('flex_content', sa.JSON(), nullable=True),
        sa.Column('media_url', sa.String(length=500), nullable=True),
        sa.Column('sticker_id', sa.String(length=50), nullable=True),
        sa.Column('package_id', sa.String(length=50), nullable=True),
        sa.Column('reply_token', sa.String(length=100), nullable=True),
        sa.Column('sender_info', sa.JSON(), nullable=True),
        sa.Column('sent_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('source_type', sa.String(length=20), nullable=False, server_default='manual'),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('read_at', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_messages_conversation_id', 'messages', ['conversation_id'])
    op.create_index('ix_messages_channel_id', 'messages', ['channel_id'])
    op.create_index('ix_messages_contact_id', 'messages', ['contact_id'])
    op.create_index('ix_messages_platform_message_id', 'messages', ['platform_message_id'])
    op.create_index('ix_messages_direction', 'messages', ['direction'])
    op.create_index('ix_messages_is_read', 'messages', ['is_read'])
    op.create_index('ix_messages_created_at', 'messages', ['created_at'])
    op.create_index('idx_msg_conversation_created', 'messages', ['conversation_id', 'created_at'])
    op.create_index('idx_msg_channel_direction_created', 'messages', ['channel_id', 'direction', 'created_at'])

    op.create_table(
        'quick_replies',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('channel_id', sa.Integer(), sa.ForeignKey('channels.id', ondelete='CASCADE'), nullable=False),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('shortcut', sa.String(length=50), nullable=True),
        sa.Column('messages', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('use_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        *_timestamps(),
    )
    op.create_index('ix_quick_replies_channel_id', 'quick_replies', ['channel_id'])
    op.create_index('ix_quick_replies_shortcut', 'quick_replies', ['shortcut'])

    op.create_table(
        'broadcasts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('channel_id', sa.Integer(), sa.ForeignKey('channels.id', ondelete='CASCADE'), nullable=False),
        sa.Column('message_type', sa.String(length=20), nullable=False, server_default='text'),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('media_url', sa.String(length=500), nullable=True),
        sa.Column('flex_content', sa.JSON(), nullable=True),
        sa.Column('messages', sa.JSON(), nullable=True),
        sa.Column('target_type', sa.String(length=20), nullable=False, server_default='all'),
        sa.Column('target_tags', sa.JSON(), nullable=True),
        sa.Column('target_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sent_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='draft'),
        sa.Column('scheduled_at', sa.DateTime(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_broadcasts_channel_id', 'broadcasts', ['channel_id'])
    op.create_index('ix_broadcasts_status', 'broadcasts', ['status'])
    op.create_index('ix_broadcasts_scheduled_at', 'broadcasts', ['scheduled_at'])
    op.create_index('idx_broadcast_channel_created', 'broadcasts', ['channel_id', 'created_at'])
    op.create_index('idx_broadcast_status_scheduled', 'broadcasts', ['status', 'scheduled_at'])

    op.create_table(
        'broadcast_recipients',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('broadcast_id', sa.Integer(), sa.ForeignKey('broadcasts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('channel_id', sa.Integer(), sa.ForeignKey('channels.id', ondelete='CASCADE'), nullable=False),
        sa.Column('contact_id', sa.Integer(), sa.ForeignKey('line_users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('line_user_id', sa.String(length=100), nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=True),
        sa.Column('picture_url', sa.String(length=500), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('broadcast_id', 'line_user_id', name='uq_broadcast_recipient'),
    )
    op.create_index('ix_broadcast_recipients_broadcast_id', 'broadcast_recipients', ['broadcast_id'])
    op.create_index('ix_broadcast_recipients_channel_id', 'broadcast_recipients', ['channel_id'])
    op.create_index('ix_broadcast_recipients_status', 'broadcast_recipients', ['status'])
    op.create_index('idx_recipient_broadcast_status', 'broadcast_recipients', ['broadcast_id', 'status'])


def downgrade() -> None:
    op.drop_table('broadcast_recipients')
    op.drop_table('broadcasts')
    op.drop_table('quick_replies')
    op.drop_table('messages')
    op.drop_table('conversation_tags')
    op.drop_table('conversations')
    op.drop_table('tags')
    op.drop_table('admin_permissions')
    op.drop_table('line_users')
    op.drop_table('channels')
    op.drop_table('users')
