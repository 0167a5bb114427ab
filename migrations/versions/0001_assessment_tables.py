"""create assessment, assignment, attempt and answer tables

Revision ID: 0001_assessment_tables
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_assessment_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'assessments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('questions', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_table(
        'assigned_assessments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('assessment_id', sa.Integer(), nullable=False),
        sa.Column('section_id', sa.Integer(), nullable=True),
        sa.Column('allowed_attempts', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('time_limit_minutes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('deadline', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['assessment_id'], ['assessments.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_table(
        'student_assessments_take',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('assigned_assessment_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('score', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['assigned_assessment_id'], ['assigned_assessments.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(
        'ix_student_assessments_take_assigned_assessment_id',
        'student_assessments_take', ['assigned_assessment_id'],
    )
    op.create_index('ix_student_assessments_take_user_id', 'student_assessments_take', ['user_id'])
    op.create_table(
        'student_assessments_answer',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('attempt_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('question_index', sa.Integer(), nullable=False),
        sa.Column('answer', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['attempt_id'], ['student_assessments_take.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_student_assessments_answer_attempt_id', 'student_assessments_answer', ['attempt_id'])


def downgrade() -> None:
    op.drop_index('ix_student_assessments_answer_attempt_id', table_name='student_assessments_answer')
    op.drop_table('student_assessments_answer')
    op.drop_index('ix_student_assessments_take_user_id', table_name='student_assessments_take')
    op.drop_index('ix_student_assessments_take_assigned_assessment_id', table_name='student_assessments_take')
    op.drop_table('student_assessments_take')
    op.drop_table('assigned_assessments')
    op.drop_table('assessments')
