"""Initial schema: source files, document chunks and hybrid search

Revision ID: 3b9f2c1d8e47
Revises:
Create Date: 2026-10-18 10:02:41.518204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3b9f2c1d8e47'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

EMBEDDING_DIMENSIONS = 1536


HYBRID_SEARCH_FUNCTION = f"""
CREATE OR REPLACE FUNCTION hybrid_search_documents(
  query_embedding vector({EMBEDDING_DIMENSIONS}),
  query tsquery,
  match_threshold float DEFAULT 0.2,
  match_count int DEFAULT 5,
  p_room_id text DEFAULT NULL,
  vector_weight float DEFAULT 0.6,
  keyword_weight float DEFAULT 0.4
)
RETURNS TABLE (
  id text,
  content text,
  file_name text,
  similarity double precision,
  keyword_rank double precision,
  combined_score double precision
)
LANGUAGE plpgsql
AS $$
BEGIN
  RETURN QUERY
  WITH vector_search AS (
    SELECT d.id, d.content, d.file_name,
           (1 - (d.embedding <=> query_embedding))::double precision AS similarity
    FROM document d
    WHERE (p_room_id IS NULL OR d.room_id = p_room_id)
      AND d.embedding IS NOT NULL
  ),
  keyword_search AS (
    SELECT d.id, d.content, d.file_name,
           ts_rank(d.content_tsv, query)::double precision AS rank
    FROM document d
    WHERE (p_room_id IS NULL OR d.room_id = p_room_id)
      AND query IS NOT NULL
      AND d.content_tsv @@ query
      AND d.embedding IS NOT NULL
  ),
  combined AS (
    SELECT COALESCE(v.id, k.id) AS id,
           COALESCE(v.content, k.content) AS content,
           COALESCE(v.file_name, k.file_name) AS file_name,
           COALESCE(v.similarity, 0) AS similarity,
           COALESCE(k.rank, 0) AS keyword_rank,
           (COALESCE(v.similarity, 0) * vector_weight
            + COALESCE(k.rank, 0) * keyword_weight) AS combined_score
    FROM vector_search v
    FULL OUTER JOIN keyword_search k ON v.id = k.id
    WHERE COALESCE(v.similarity, 0) > match_threshold OR COALESCE(k.rank, 0) > 0
  )
  SELECT c.id, c.content, c.file_name, c.similarity, c.keyword_rank, c.combined_score
  FROM combined c
  ORDER BY c.combined_score DESC, c.id
  LIMIT match_count;
END;
$$;
"""


def upgrade() -> None:
    """Upgrade schema."""
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    # Create source_file table
    op.create_table('source_file',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('room_id', sa.Text(), nullable=False),
        sa.Column('file_name', sa.Text(), nullable=False),
        sa.Column('file_size', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('mime_type', sa.Text(), nullable=False),
        sa.Column('processing_status', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('chunk_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed_chunks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('file_data', sa.LargeBinary(), nullable=True),
        sa.Column('locked_by', sa.Text(), nullable=True),
        sa.Column('lease_expires_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint(
            "processing_status IN ('pending', 'processing', 'completed', 'failed')",
            name='ck_source_file_status',
        ),
        sa.CheckConstraint('processed_chunks <= chunk_count', name='ck_source_file_progress'),
        sa.PrimaryKeyConstraint('id')
    )

    # Create document (chunk) table
    op.create_table('document',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('room_id', sa.Text(), nullable=False),
        sa.Column('file_id', sa.Text(), nullable=False),
        sa.Column('file_name', sa.Text(), nullable=False),
        sa.Column('chunk_index', sa.Integer(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('embedding', Vector(EMBEDDING_DIMENSIONS), nullable=True),
        sa.Column(
            'content_tsv',
            postgresql.TSVECTOR(),
            sa.Computed("to_tsvector('simple', content)", persisted=True),
        ),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['file_id'], ['source_file.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )

    # Create indexes
    op.create_index('idx_source_file_room', 'source_file', ['room_id', 'created_at'])
    op.create_index('idx_document_room', 'document', ['room_id'])
    op.create_index('idx_document_file_chunk', 'document', ['file_id', 'chunk_index'])
    op.create_index('idx_document_content_tsv', 'document', ['content_tsv'], postgresql_using='gin')

    op.execute(HYBRID_SEARCH_FUNCTION)


def downgrade() -> None:
    """Downgrade schema."""
    op.execute(
        f"DROP FUNCTION IF EXISTS hybrid_search_documents("
        f"vector({EMBEDDING_DIMENSIONS}), tsquery, float, int, text, float, float)"
    )

    # Drop indexes
    op.drop_index('idx_document_content_tsv', table_name='document')
    op.drop_index('idx_document_file_chunk', table_name='document')
    op.drop_index('idx_document_room', table_name='document')
    op.drop_index('idx_source_file_room', table_name='source_file')

    # Drop tables
    op.drop_table('document')
    op.drop_table('source_file')
