"""Add users and images tables

Revision ID: 001_users_and_images
Revises:
Create Date: 2026-10-19

- users: one row per Sign in with Apple subject (refresh token, credits)
- images: one row per upload with its processing status
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '001_users_and_images'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('apple_user_id', sa.String(), nullable=False),
        sa.Column('apple_refresh_token', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('usage_credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )

    op.create_table(
        'images',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('apple_user_id', sa.String(), nullable=False),
        sa.Column('original_s3_key', sa.String(), nullable=False),
        sa.Column('processed_s3_key', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='UPLOADED'),
        sa.Column('prompt', sa.String(), nullable=True),
        sa.Column('error_message', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )

    # Names match what SQLModel generates for index=True columns
    op.create_index('ix_users_apple_user_id', 'users', ['apple_user_id'], unique=True)
    op.create_index('ix_images_apple_user_id', 'images', ['apple_user_id'])
    op.create_index('ix_images_status', 'images', ['status'])


def downgrade() -> None:
    op.drop_index('ix_images_status', 'images')
    op.drop_index('ix_images_apple_user_id', 'images')
    op.drop_index('ix_users_apple_user_id', 'users')
    op.drop_table('images')
    op.drop_table('users')
