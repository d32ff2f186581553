"""Initial schema with projects, tasks, approval slots, attachments and code counters.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ID_TYPE = sa.BigInteger().with_variant(sa.Integer(), 'sqlite')


def upgrade() -> None:
    # Create projects table (only the columns the task engine reads)
    op.create_table(
        'projects',
        sa.Column('id', ID_TYPE, primary_key=True, autoincrement=True),
        sa.Column('tenant_id', sa.BigInteger, nullable=False),
        sa.Column('code', sa.String(20), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('deleted_at', sa.DateTime),
        sa.UniqueConstraint('tenant_id', 'code', name='uq_projects_tenant_code'),
    )
    op.create_index('ix_projects_tenant_id', 'projects', ['tenant_id'])
    op.create_index('ix_projects_deleted_at', 'projects', ['deleted_at'])

    # Create task_code_sequences table (per tenant + project task counter)
    op.create_table(
        'task_code_sequences',
        sa.Column('id', ID_TYPE, primary_key=True, autoincrement=True),
        sa.Column('tenant_id', sa.BigInteger, nullable=False),
        sa.Column('project_id', ID_TYPE, sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('next_number', sa.Integer, nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('tenant_id', 'project_id', name='uq_task_code_sequences_tenant_project'),
        sa.CheckConstraint('next_number > 0', name='chk_task_code_next_number_positive'),
    )
    op.create_index('ix_task_code_sequences_project_id', 'task_code_sequences', ['project_id'])

    # Create tasks table
    op.create_table(
        'tasks',
        sa.Column('id', ID_TYPE, primary_key=True, autoincrement=True),
        sa.Column('tenant_id', sa.BigInteger, nullable=False),
        sa.Column('project_id', ID_TYPE, sa.ForeignKey('projects.id'), nullable=False),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('description_before', sa.Text),
        sa.Column('description_after', sa.Text),
        sa.Column('reason', sa.Text),
        sa.Column('revision', sa.Text),
        sa.Column('priority_id', sa.BigInteger, nullable=False),
        sa.Column('type_id', sa.BigInteger),
        sa.Column('stack_id', sa.BigInteger),
        sa.Column('assigned_to', sa.BigInteger),
        sa.Column('created_by', sa.BigInteger, nullable=False),
        sa.Column('updated_by', sa.BigInteger),
        sa.Column('approved_by', sa.BigInteger),
        sa.Column('completed_by', sa.BigInteger),
        sa.Column('done_by', sa.BigInteger),
        sa.Column('status_id', sa.Integer, nullable=False, server_default='1'),
        sa.Column('active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('approval_status_id', sa.Integer, nullable=False, server_default='20'),
        sa.Column('approval_date', sa.DateTime),
        sa.Column('start_date', sa.DateTime),
        sa.Column('due_date', sa.DateTime),
        sa.Column('completed_date', sa.DateTime),
        sa.Column('done_at', sa.DateTime),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('deleted_at', sa.DateTime),
        sa.UniqueConstraint('tenant_id', 'code', name='uq_tasks_tenant_code'),
    )
    for column in (
        'tenant_id', 'project_id', 'priority_id', 'type_id', 'stack_id', 'assigned_to',
        'created_by', 'status_id', 'approval_status_id', 'created_at', 'deleted_at',
    ):
        op.create_index(f'ix_tasks_{column}', 'tasks', [column])

    # Create approval_tasks table (exactly two slots per task)
    op.create_table(
        'approval_tasks',
        sa.Column('id', ID_TYPE, primary_key=True, autoincrement=True),
        sa.Column('task_id', ID_TYPE, sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sequence', sa.SmallInteger, nullable=False),
        sa.Column('approved_by', sa.BigInteger),
        sa.Column('approval_status_id', sa.Integer, nullable=False, server_default='20'),
        sa.Column('approval_date', sa.DateTime),
        sa.Column('note', sa.String(500)),
        sa.Column('active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('task_id', 'sequence', name='uq_approval_tasks_task_sequence'),
        sa.CheckConstraint('sequence IN (1, 2)', name='chk_approval_tasks_sequence'),
    )
    op.create_index('ix_approval_tasks_task_id', 'approval_tasks', ['task_id'])
    op.create_index('ix_approval_tasks_approved_by', 'approval_tasks', ['approved_by'])
    op.create_index('ix_approval_tasks_approval_status_id', 'approval_tasks', ['approval_status_id'])

    # Create task_files table (attachment metadata)
    op.create_table(
        'task_files',
        sa.Column('id', ID_TYPE, primary_key=True, autoincrement=True),
        sa.Column('task_id', ID_TYPE, sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('file_name', sa.String(255), nullable=False),
        sa.Column('file_path', sa.String(500), nullable=False),
        sa.Column('file_size', sa.BigInteger),
        sa.Column('file_type', sa.String(100)),
        sa.Column('attachment_category', sa.Integer, nullable=False),
        sa.Column('active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_task_files_task_id', 'task_files', ['task_id'])
    op.create_index('ix_task_files_attachment_category', 'task_files', ['attachment_category'])


def downgrade() -> None:
    # Drop tables in reverse dependency order
    op.drop_table('task_files')
    op.drop_table('approval_tasks')
    op.drop_table('tasks')
    op.drop_table('task_code_sequences')
    op.drop_table('projects')
