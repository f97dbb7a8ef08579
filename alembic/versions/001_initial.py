"""Initial schema: tenants, rate windows, usage log, settings, results and sessions

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create tenants table
    op.create_table(
        'tenants',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('site_url', sa.String(length=500), nullable=False),
        sa.Column('site_name', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('api_key_hash', sa.String(length=255), nullable=False),
        sa.Column('api_key_prefix', sa.String(length=32), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('ai_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('performance_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('ai_monthly_limit', sa.Integer(), nullable=False, server_default='1000'),
        sa.Column('test_daily_limit', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('last_seen_at', sa.DateTime(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('site_url', name='uq_tenants_site_url')
    )
    op.create_index('ix_tenants_api_key_prefix', 'tenants', ['api_key_prefix'])
    op.create_index('idx_tenant_prefix_active', 'tenants', ['api_key_prefix', 'is_active'])

    # Create rate_windows table
    op.create_table(
        'rate_windows',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('identifier', sa.String(length=255), nullable=False),
        sa.Column('endpoint', sa.String(length=100), nullable=False),
        sa.Column('window_start', sa.DateTime(), nullable=False),
        sa.Column('request_count', sa.Integer(), nullable=False, server_default='1'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('identifier', 'endpoint', 'window_start', name='uq_rate_window')
    )
    op.create_index('ix_rate_windows_window_start', 'rate_windows', ['window_start'])

    # Create usage_records table
    op.create_table(
        'usage_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('endpoint', sa.String(length=100), nullable=False),
        sa.Column('category', sa.String(length=32), nullable=False, server_default='other'),
        sa.Column('tokens_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('input_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('output_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cost_usd', sa.Float(), nullable=False, server_default='0'),
        sa.Column('status_code', sa.Integer(), nullable=True),
        sa.Column('response_time_ms', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('request_ip', sa.String(length=45), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_usage_records_endpoint', 'usage_records', ['endpoint'])
    op.create_index('ix_usage_records_created_at', 'usage_records', ['created_at'])
    op.create_index(
        'idx_usage_tenant_category_date',
        'usage_records',
        ['tenant_id', 'category', 'created_at'],
        unique=False
    )

    # Create app_settings table
    op.create_table(
        'app_settings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('setting_key', sa.String(length=100), nullable=False),
        sa.Column('setting_value', sa.Text(), nullable=True),
        sa.Column('is_encrypted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('category', sa.String(length=50), nullable=False, server_default='general'),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('setting_key', name='uq_app_settings_key')
    )
    op.create_index('ix_app_settings_category', 'app_settings', ['category'])

    # Create performance_results table
    op.create_table(
        'performance_results',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('test_url', sa.String(length=2000), nullable=False),
        sa.Column('strategy', sa.String(length=16), nullable=False, server_default='mobile'),
        sa.Column('performance_score', sa.Integer(), nullable=True),
        sa.Column('accessibility_score', sa.Integer(), nullable=True),
        sa.Column('best_practices_score', sa.Integer(), nullable=True),
        sa.Column('seo_score', sa.Integer(), nullable=True),
        sa.Column('fcp_ms', sa.Integer(), nullable=True),
        sa.Column('lcp_ms', sa.Integer(), nullable=True),
        sa.Column('cls', sa.Float(), nullable=True),
        sa.Column('tbt_ms', sa.Integer(), nullable=True),
        sa.Column('si_ms', sa.Integer(), nullable=True),
        sa.Column('tti_ms', sa.Integer(), nullable=True),
        sa.Column('opportunities', sa.JSON(), nullable=True),
        sa.Column('diagnostics', sa.JSON(), nullable=True),
        sa.Column('ai_analysis', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_performance_results_created_at', 'performance_results', ['created_at'])
    op.create_index('idx_result_lookup', 'performance_results', ['tenant_id', 'strategy', 'created_at'])

    # Create optimization_sessions table
    op.create_table(
        'optimization_sessions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('session_type', sa.String(length=32), nullable=False, server_default='full_audit'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='running'),
        sa.Column('initial_scores', sa.JSON(), nullable=True),
        sa.Column('final_scores', sa.JSON(), nullable=True),
        sa.Column('recommendations', sa.JSON(), nullable=True),
        sa.Column('actions_taken', sa.JSON(), nullable=True),
        sa.Column('total_tokens_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_cost_usd', sa.Float(), nullable=False, server_default='0'),
        sa.Column('iterations', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_log', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_optimization_sessions_tenant_id', 'optimization_sessions', ['tenant_id'])
    op.create_index('ix_optimization_sessions_status', 'optimization_sessions', ['status'])


def downgrade() -> None:
    op.drop_index('ix_optimization_sessions_status', table_name='optimization_sessions')
    op.drop_index('ix_optimization_sessions_tenant_id', table_name='optimization_sessions')
    op.drop_table('optimization_sessions')

    op.drop_index('idx_result_lookup', table_name='performance_results')
    op.drop_index('ix_performance_results_created_at', table_name='performance_results')
    op.drop_table('performance_results')

    op.drop_index('ix_app_settings_category', table_name='app_settings')
    op.drop_table('app_settings')

    op.drop_index('idx_usage_tenant_category_date', table_name='usage_records')
    op.drop_index('ix_usage_records_created_at', table_name='usage_records')
    op.drop_index('ix_usage_records_endpoint', table_name='usage_records')
    op.drop_table('usage_records')

    op.drop_index('ix_rate_windows_window_start', table_name='rate_windows')
    op.drop_table('rate_windows')

    op.drop_index('idx_tenant_prefix_active', table_name='tenants')
    op.drop_index('ix_tenants_api_key_prefix', table_name='tenants')
    op.drop_table('tenants')
