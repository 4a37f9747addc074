"""create user_embeddings table

Revision ID: emb001
Revises:
Create Date: 2026-10-17 09:00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects import postgresql

from settings import settings


# revision identifiers, used by Alembic.
revision: str = 'emb001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Add user_embeddings table with owner and IVFFlat indexes."""
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.create_table(
        'user_embeddings',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('owner_id', sa.String(128), nullable=False,
                  comment='租户标识（JWT sub）'),
        sa.Column('content', sa.Text(), nullable=False,
                  comment='原始文本'),
        sa.Column('embedding', Vector(settings.embedding_dimension), nullable=False,
                  comment='嵌入向量'),
        sa.Column('metadata', postgresql.JSONB(), nullable=False,
                  server_default=sa.text("'{}'::jsonb"),
                  comment='过滤用元数据'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_index('ix_user_embeddings_owner_id', 'user_embeddings', ['owner_id'], unique=False)
    op.create_index(
        'ix_user_embeddings_owner_created', 'user_embeddings', ['owner_id', 'created_at'], unique=False,
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_user_embeddings_embedding_ivfflat ON user_embeddings "
        f"USING ivfflat (embedding vector_cosine_ops) WITH (lists = {int(settings.index_ivfflat_lists)})"
    )


def downgrade() -> None:
    """Drop user_embeddings table."""
    op.execute("DROP INDEX IF EXISTS ix_user_embeddings_embedding_ivfflat")
    op.drop_index('ix_user_embeddings_owner_created', table_name='user_embeddings')
    op.drop_index('ix_user_embeddings_owner_id', table_name='user_embeddings')
    op.drop_table('user_embeddings')
