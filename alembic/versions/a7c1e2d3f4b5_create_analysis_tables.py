"""Create documents, analyses, step ledger and result tables.

Revision ID: a7c1e2d3f4b5
Revises:
Create Date: 2026-10-17

The analyses table carries a partial unique index over active statuses so
concurrent triggers for one document converge on a single run. Chunk
embeddings use pgvector.
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from pgvector.sqlalchemy import Vector

# revision identifiers, used by Alembic.
revision = 'a7c1e2d3f4b5'
down_revision = None
branch_labels = None
depends_on = None

EMBEDDING_DIMENSION = 1024
ACTIVE_PREDICATE = sa.text("status IN ('pending', 'pending_ocr', 'processing')")


def _run_fk():
    return sa.ForeignKey('analyses.id', ondelete='CASCADE')


def upgrade() -> None:
    """Create the analysis schema."""
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.create_table(
        'documents',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('file_name', sa.String(), nullable=False),
        sa.Column('file_url', sa.String(), nullable=True),
        sa.Column('mime_type', sa.String(), nullable=True),
        sa.Column('page_count', sa.Integer(), nullable=True),
        sa.Column('raw_text', sa.Text(), nullable=True,
                  comment='Text extracted at upload time, empty for scanned files'),
        sa.Column('is_scanned', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_documents_tenant_id', 'documents', ['tenant_id'])

    op.create_table(
        'analyses',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('document_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('documents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('run_number', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('status', sa.String(), nullable=False, server_default='pending',
                  comment='pending | pending_ocr | processing | completed | failed | cancelled'),

        # Progress
        sa.Column('progress_stage', sa.String(), nullable=True),
        sa.Column('progress_percent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('progress_message', sa.String(), nullable=True),
        sa.Column('queue_position', sa.Integer(), nullable=True),

        # Control
        sa.Column('cancel_requested', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('attempt', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('perspective', sa.String(), nullable=False, server_default='balanced',
                  comment='receiving | disclosing | balanced'),
        sa.Column('rescore_generation', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1',
                  comment='Optimistic concurrency counter'),

        # Budget
        sa.Column('token_usage', postgresql.JSONB(), nullable=True),
        sa.Column('estimated_tokens', sa.Integer(), nullable=True),
        sa.Column('estimated_cost', sa.Numeric(12, 6), nullable=True),
        sa.Column('was_truncated', sa.Boolean(), nullable=False, server_default=sa.false()),

        # Results
        sa.Column('overall_risk_score', sa.Float(), nullable=True),
        sa.Column('overall_risk_level', sa.String(), nullable=True),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('gap_analysis', postgresql.JSONB(), nullable=True),

        # Failure details
        sa.Column('error_code', sa.String(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('debug_metadata', postgresql.JSONB(), nullable=True),

        sa.Column('workflow_id', sa.String(), nullable=True),
        sa.Column('started_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('completed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('processing_time_ms', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=True),
    )
    op.create_index('ix_analyses_tenant_id', 'analyses', ['tenant_id'])
    op.create_index('ix_analyses_document_id', 'analyses', ['document_id'])
    op.create_index(
        'uq_analyses_active_document',
        'analyses',
        ['tenant_id', 'document_id'],
        unique=True,
        postgresql_where=ACTIVE_PREDICATE,
    )

    op.create_table(
        'analysis_steps',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('analysis_id', postgresql.UUID(as_uuid=True), _run_fk(), nullable=False),
        sa.Column('stage_name', sa.String(), nullable=False),
        sa.Column('step_key', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='completed'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('output', postgresql.JSONB(), nullable=True,
                  comment='Step result replayed when a run resumes'),
        sa.Column('token_usage', postgresql.JSONB(), nullable=True),
        sa.Column('progress_delta', sa.Float(), nullable=True),
        sa.Column('completed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.UniqueConstraint('analysis_id', 'stage_name', 'step_key', name='uq_analysis_steps_key'),
    )

    op.create_table(
        'document_chunks',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('analysis_id', postgresql.UUID(as_uuid=True), _run_fk(), nullable=False),
        sa.Column('document_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('chunk_index', sa.Integer(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('section_path', postgresql.JSONB(), nullable=True),
        sa.Column('chunk_type', sa.String(), nullable=False, server_default='clause'),
        sa.Column('token_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('start_position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('end_position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('embedding', Vector(EMBEDDING_DIMENSION), nullable=True),
        sa.UniqueConstraint('analysis_id', 'chunk_index', name='uq_document_chunks_analysis_index'),
    )

    op.create_table(
        'chunk_classifications',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('analysis_id', postgresql.UUID(as_uuid=True), _run_fk(), nullable=False),
        sa.Column('document_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('chunk_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('chunk_index', sa.Integer(), nullable=False),
        sa.Column('category', sa.String(), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False),
        sa.Column('is_primary', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('rationale', sa.Text(), nullable=True),
        sa.UniqueConstraint('analysis_id', 'chunk_id', 'category', name='uq_chunk_classifications_key'),
    )

    op.create_table(
        'clause_extractions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('analysis_id', postgresql.UUID(as_uuid=True), _run_fk(), nullable=False),
        sa.Column('document_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('chunk_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('category', sa.String(), nullable=False),
        sa.Column('clause_text', sa.Text(), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False, server_default='0'),
        sa.Column('risk_level', sa.String(), nullable=False,
                  comment='standard | cautious | aggressive | unknown'),
        sa.Column('risk_explanation', sa.Text(), nullable=True),
        sa.Column('evidence', postgresql.JSONB(), nullable=True),
        sa.Column('start_position', sa.Integer(), nullable=True),
        sa.Column('end_position', sa.Integer(), nullable=True),
        sa.UniqueConstraint('analysis_id', 'chunk_id', 'category', name='uq_clause_extractions_key'),
    )

    op.create_table(
        'analysis_gaps',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('analysis_id', postgresql.UUID(as_uuid=True), _run_fk(), nullable=False),
        sa.Column('category', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False, comment='missing | weak'),
        sa.Column('importance', sa.String(), nullable=False, comment='critical | important | optional'),
        sa.Column('explanation', sa.Text(), nullable=True),
        sa.Column('suggested_language', sa.Text(), nullable=True),
        sa.UniqueConstraint('analysis_id', 'category', name='uq_analysis_gaps_key'),
    )


def downgrade() -> None:
    """Drop the analysis schema."""
    op.drop_table('analysis_gaps')
    op.drop_table('clause_extractions')
    op.drop_table('chunk_classifications')
    op.drop_table('document_chunks')
    op.drop_table('analysis_steps')
    op.drop_index('uq_analyses_active_document', table_name='analyses')
    op.drop_index('ix_analyses_document_id', table_name='analyses')
    op.drop_index('ix_analyses_tenant_id', table_name='analyses')
    op.drop_table('analyses')
    op.drop_index('ix_documents_tenant_id', table_name='documents')
    op.drop_table('documents')
