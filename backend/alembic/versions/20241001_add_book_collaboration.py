"""add_book_collaboration

Revision ID: 20241001_book_collab
Revises:
Create Date: 2024-10-01 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '20241001_book_collab'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


collaborator_role = sa.Enum('owner', 'editor', 'reviewer', 'viewer', name='collaboratorrole')
invitation_status = sa.Enum('pending', 'accepted', 'rejected', 'expired', name='invitationstatus')
section_type = sa.Enum('page', 'element', 'chapter', name='sectiontype')
comment_type = sa.Enum('comment', 'suggestion', 'question', 'approval', name='commenttype')
comment_status = sa.Enum('open', 'resolved', 'closed', name='commentstatus')


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), default=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'books',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('author_id', UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_books_author_id', 'books', ['author_id'])

    op.create_table(
        'book_collaborators',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('book_id', UUID(as_uuid=True), sa.ForeignKey('books.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role', collaborator_role, nullable=False, server_default='viewer'),
        sa.Column('permissions', sa.JSON(), nullable=False),
        sa.Column('invited_by', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('joined_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('book_id', 'user_id', name='uq_book_collaborators_book_user'),
    )
    op.create_index('ix_book_collaborators_book_id', 'book_collaborators', ['book_id'])

    op.create_table(
        'collaboration_invitations',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('book_id', UUID(as_uuid=True), sa.ForeignKey('books.id', ondelete='CASCADE'), nullable=False),
        sa.Column('inviter_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('invitee_email', sa.String(255), nullable=False),
        sa.Column('invitee_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('role', collaborator_role, nullable=False, server_default='viewer'),
        sa.Column('permissions', sa.JSON(), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('status', invitation_status, nullable=False, server_default='pending'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_collaboration_invitations_invitee_email', 'collaboration_invitations', ['invitee_email'])
    op.create_index('ix_collaboration_invitations_book_email', 'collaboration_invitations', ['book_id', 'invitee_email'])

    op.create_table(
        'editing_sessions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('book_id', UUID(as_uuid=True), sa.ForeignKey('books.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('section_id', sa.String(255), nullable=False),
        sa.Column('section_type', section_type, nullable=False),
        sa.Column('cursor_position', sa.JSON(), nullable=True),
        sa.Column('locked_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('last_activity', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('book_id', 'section_id', 'user_id', name='uq_editing_sessions_book_section_user'),
    )
    op.create_index('ix_editing_sessions_book_id', 'editing_sessions', ['book_id'])

    op.create_table(
        'user_presence',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('book_id', UUID(as_uuid=True), sa.ForeignKey('books.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('current_section', sa.String(255), nullable=True),
        sa.Column('is_online', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('last_seen', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('book_id', 'user_id', name='uq_user_presence_book_user'),
    )
    op.create_index('ix_user_presence_book_id', 'user_presence', ['book_id'])

    op.create_table(
        'book_comments',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('book_id', UUID(as_uuid=True), sa.ForeignKey('books.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('section_id', sa.String(255), nullable=True),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('position_start', sa.Integer(), nullable=True),
        sa.Column('position_end', sa.Integer(), nullable=True),
        sa.Column('comment_type', comment_type, nullable=False, server_default='comment'),
        sa.Column('status', comment_status, nullable=False, server_default='open'),
        sa.Column('parent_id', UUID(as_uuid=True), sa.ForeignKey('book_comments.id', ondelete='CASCADE'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_book_comments_book_id', 'book_comments', ['book_id'])
    op.create_index('ix_book_comments_parent_id', 'book_comments', ['parent_id'])


def downgrade() -> None:
    op.drop_index('ix_book_comments_parent_id', table_name='book_comments')
    op.drop_index('ix_book_comments_book_id', table_name='book_comments')
    op.drop_table('book_comments')
    op.drop_index('ix_user_presence_book_id', table_name='user_presence')
    op.drop_table('user_presence')
    op.drop_index('ix_editing_sessions_book_id', table_name='editing_sessions')
    op.drop_table('editing_sessions')
    op.drop_index('ix_collaboration_invitations_book_email', table_name='collaboration_invitations')
    op.drop_index('ix_collaboration_invitations_invitee_email', table_name='collaboration_invitations')
    op.drop_table('collaboration_invitations')
    op.drop_index('ix_book_collaborators_book_id', table_name='book_collaborators')
    op.drop_table('book_collaborators')
    op.drop_index('ix_books_author_id', table_name='books')
    op.drop_table('books')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')

    bind = op.get_bind()
    for enum_type in (comment_status, comment_type, section_type, invitation_status, collaborator_role):
        enum_type.drop(bind, checkfirst=True)
