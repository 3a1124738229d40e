"""Create image_jobs table

Revision ID: 001_image_jobs
Revises:
Create Date: 2026-10-19

One row per uploaded image: upload metadata, processing status, brand and
product context, and the generated versions keyed by version type.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_image_jobs'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'image_jobs',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('original_file_name', sa.String(), nullable=False),
        sa.Column('original_file_size', sa.Integer(), nullable=False),
        sa.Column('mime_type', sa.String(), nullable=False),
        sa.Column('original_file_path', sa.String(), nullable=False, server_default=''),
        sa.Column('status', sa.String(), nullable=False, server_default='PENDING'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('run_ai_analysis', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('brand_context', sa.JSON(), nullable=True),
        sa.Column('product_context', sa.JSON(), nullable=True),
        sa.Column('versions', sa.JSON(), nullable=True),
        sa.Column('error_message', sa.String(), nullable=True),
        sa.Column('error_code', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('processing_started_at', sa.DateTime(), nullable=True),
        sa.Column('processing_ended_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_image_jobs_status', 'image_jobs', ['status'], unique=False)
    op.create_index('ix_image_jobs_created_at', 'image_jobs', ['created_at'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_image_jobs_created_at', table_name='image_jobs')
    op.drop_index('ix_image_jobs_status', table_name='image_jobs')
    op.drop_table('image_jobs')
