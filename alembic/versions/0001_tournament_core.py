"""tournament core tables: wallets, tournaments, participants, matches, disputes

Revision ID: 0001_tournament_core
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = '0001_tournament_core'
down_revision = None
branch_labels = None
depends_on = None

# Shared enum types are created once up front, tables reference them with create_type=False
ENUMS = {
    'participant_type': ('USER', 'TEAM'),
    'transaction_type': (
        'DEPOSIT', 'WITHDRAWAL', 'ENTRY_FEE', 'REFUND', 'PRIZE_PAYOUT',
        'ADJUSTMENT_CREDIT', 'ADJUSTMENT_DEBIT',
    ),
    'transaction_status': ('PENDING', 'REQUIRES_APPROVAL', 'COMPLETED', 'FAILED'),
    'tournament_status': (
        'PENDING', 'UPCOMING', 'REGISTRATION_OPEN', 'REGISTRATION_CLOSED',
        'ONGOING', 'COMPLETED', 'CANCELED',
    ),
    'bracket_type': ('SINGLE_ELIMINATION', 'DOUBLE_ELIMINATION', 'ROUND_ROBIN', 'SWISS'),
    'check_in_status': ('NOT_CHECKED_IN', 'CHECKED_IN'),
    'match_status': (
        'PENDING', 'SCHEDULED', 'IN_PROGRESS', 'AWAITING_SCORES',
        'AWAITING_CONFIRMATION', 'DISPUTED', 'COMPLETED', 'CANCELED',
    ),
    'dispute_status': (
        'OPEN', 'UNDER_REVIEW', 'RESOLVED_PARTICIPANT1_WIN', 'RESOLVED_PARTICIPANT2_WIN',
        'RESOLVED_REPLAY_MATCH', 'RESOLVED_NO_ACTION', 'CLOSED_INVALID',
    ),
}


def enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def uuid_pk() -> sa.Column:
    return sa.Column('id', sa.Uuid(as_uuid=False), nullable=False)


def timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        'wallets',
        uuid_pk(),
        sa.Column('user_id', sa.String(64), nullable=False, comment='Owner id from the identity provider'),
        sa.Column('balance', sa.BigInteger, nullable=False, server_default='0', comment='Balance in minor currency units'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        *timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_wallets'),
        sa.UniqueConstraint('user_id', name='uq_wallets_user_id'),
        sa.CheckConstraint('balance >= 0', name='ck_wallets_balance_non_negative'),
    )

    op.create_table(
        'tournaments',
        uuid_pk(),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('rules', sa.Text, nullable=True),
        sa.Column('game_id', sa.String(64), nullable=False),
        sa.Column('organizer_id', sa.String(64), nullable=False),
        sa.Column('managed_by', sa.JSON, nullable=False, comment='User ids allowed to make tournament decisions'),
        sa.Column('status', enum('tournament_status'), nullable=False),
        sa.Column('bracket_type', enum('bracket_type'), nullable=False),
        sa.Column('entry_fee', sa.BigInteger, nullable=False, server_default='0'),
        sa.Column('prize_pool', sa.BigInteger, nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('max_participants', sa.Integer, nullable=False),
        sa.Column('current_participants', sa.Integer, nullable=False, server_default='0'),
        sa.Column('current_round', sa.Integer, nullable=False, server_default='0'),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('settings', sa.JSON, nullable=False),
        sa.Column('cancel_reason', sa.Text, nullable=True),
        *timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_tournaments'),
        sa.CheckConstraint('entry_fee >= 0', name='ck_tournaments_entry_fee_non_negative'),
        sa.CheckConstraint('prize_pool >= 0', name='ck_tournaments_prize_pool_non_negative'),
        sa.CheckConstraint('max_participants > 1', name='ck_tournaments_max_participants_min'),
        sa.CheckConstraint(
            'current_participants >= 0 AND current_participants <= max_participants',
            name='ck_tournaments_participant_count_bounds',
        ),
    )
    op.create_index('ix_tournaments_game_id', 'tournaments', ['game_id'])
    op.create_index('ix_tournaments_organizer_id', 'tournaments', ['organizer_id'])
    op.create_index('ix_tournaments_status', 'tournaments', ['status'])

    op.create_table(
        'wallet_transactions',
        uuid_pk(),
        sa.Column('wallet_id', sa.Uuid(as_uuid=False), nullable=False),
        sa.Column('tx_type', enum('transaction_type'), nullable=False),
        sa.Column('status', enum('transaction_status'), nullable=False),
        sa.Column('amount', sa.BigInteger, nullable=False, comment='Positive amount in minor units'),
        sa.Column('balance_before', sa.BigInteger, nullable=True),
        sa.Column('balance_after', sa.BigInteger, nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
        sa.Column('reference_transaction_id', sa.Uuid(as_uuid=False), nullable=True),
        sa.Column('tournament_id', sa.Uuid(as_uuid=False), nullable=True),
        sa.Column('memo', sa.Text, nullable=True),
        sa.Column('processed_by', sa.String(64), nullable=True),
        sa.Column('transaction_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('integrity_hash', sa.String(64), nullable=True, comment='SHA-256 over the immutable fields'),
        *timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_wallet_transactions'),
        sa.ForeignKeyConstraint(
            ['wallet_id'], ['wallets.id'],
            name='fk_wallet_transactions_wallet_id_wallets', ondelete='RESTRICT',
        ),
        sa.ForeignKeyConstraint(
            ['reference_transaction_id'], ['wallet_transactions.id'],
            name='fk_wallet_transactions_reference_transaction_id_wallet_transactions',
            ondelete='RESTRICT',
        ),
        sa.ForeignKeyConstraint(
            ['tournament_id'], ['tournaments.id'],
            name='fk_wallet_transactions_tournament_id_tournaments', ondelete='SET NULL',
        ),
        sa.UniqueConstraint('idempotency_key', name='uq_wallet_transactions_idempotency_key'),
        sa.CheckConstraint('amount > 0', name='ck_wallet_transactions_amount_positive'),
    )
    op.create_index('ix_wallet_transactions_wallet_id', 'wallet_transactions', ['wallet_id'])
    op.create_index('ix_wallet_transactions_tx_type', 'wallet_transactions', ['tx_type'])
    op.create_index('ix_wallet_transactions_status', 'wallet_transactions', ['status'])
    op.create_index(
        'ix_wallet_transactions_reference_transaction_id', 'wallet_transactions', ['reference_transaction_id']
    )
    op.create_index('ix_wallet_transactions_tournament_id', 'wallet_transactions', ['tournament_id'])

    op.create_table(
        'tournament_participants',
        uuid_pk(),
        sa.Column('tournament_id', sa.Uuid(as_uuid=False), nullable=False),
        sa.Column('participant_id', sa.String(64), nullable=False),
        sa.Column('participant_type', enum('participant_type'), nullable=False),
        sa.Column('payer_user_id', sa.String(64), nullable=True, comment='User whose wallet paid the entry fee'),
        sa.Column('registered_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('check_in_status', enum('check_in_status'), nullable=False),
        sa.Column('checked_in_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('seed', sa.Integer, nullable=True),
        sa.Column('entry_fee_transaction_id', sa.Uuid(as_uuid=False), nullable=True),
        sa.Column('refund_transaction_id', sa.Uuid(as_uuid=False), nullable=True),
        *timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_tournament_participants'),
        sa.ForeignKeyConstraint(
            ['tournament_id'], ['tournaments.id'],
            name='fk_tournament_participants_tournament_id_tournaments', ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['entry_fee_transaction_id'], ['wallet_transactions.id'],
            name='fk_tournament_participants_entry_fee_transaction_id_wallet_transactions',
            ondelete='RESTRICT',
        ),
        sa.ForeignKeyConstraint(
            ['refund_transaction_id'], ['wallet_transactions.id'],
            name='fk_tournament_participants_refund_transaction_id_wallet_transactions',
            ondelete='RESTRICT',
        ),
        sa.UniqueConstraint('tournament_id', 'participant_id', name='uq_tournament_participant'),
        sa.CheckConstraint('seed IS NULL OR seed > 0', name='ck_tournament_participants_seed_positive'),
    )
    op.create_index('ix_tournament_participants_tournament_id', 'tournament_participants', ['tournament_id'])
    op.create_index('ix_tournament_participants_participant_id', 'tournament_participants', ['participant_id'])

    op.create_table(
        'matches',
        uuid_pk(),
        sa.Column('tournament_id', sa.Uuid(as_uuid=False), nullable=False),
        sa.Column('round_number', sa.Integer, nullable=False),
        sa.Column('match_number_in_round', sa.Integer, nullable=False),
        sa.Column('participant1_id', sa.String(64), nullable=True),
        sa.Column('participant1_type', enum('participant_type'), nullable=True),
        sa.Column('participant2_id', sa.String(64), nullable=True),
        sa.Column('participant2_type', enum('participant_type'), nullable=True),
        sa.Column('participant1_score', sa.Integer, nullable=True),
        sa.Column('participant2_score', sa.Integer, nullable=True),
        sa.Column('winner_id', sa.String(64), nullable=True),
        sa.Column('winner_type', enum('participant_type'), nullable=True),
        sa.Column('status', enum('match_status'), nullable=False),
        sa.Column('result_proof_urls', sa.JSON, nullable=False),
        sa.Column('result_submitted_by', sa.String(64), nullable=True),
        sa.Column('is_confirmed', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('moderator_notes', sa.Text, nullable=True),
        sa.Column('next_match_id', sa.Uuid(as_uuid=False), nullable=True),
        sa.Column('next_match_loser_id', sa.Uuid(as_uuid=False), nullable=True),
        sa.Column('scheduled_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('actual_start_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('actual_end_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('progressed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata', sa.JSON, nullable=False),
        *timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_matches'),
        sa.ForeignKeyConstraint(
            ['tournament_id'], ['tournaments.id'],
            name='fk_matches_tournament_id_tournaments', ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['next_match_id'], ['matches.id'],
            name='fk_matches_next_match_id_matches', ondelete='SET NULL',
        ),
        sa.ForeignKeyConstraint(
            ['next_match_loser_id'], ['matches.id'],
            name='fk_matches_next_match_loser_id_matches', ondelete='SET NULL',
        ),
    )
    op.create_index('ix_matches_tournament_id', 'matches', ['tournament_id'])
    op.create_index('ix_matches_status', 'matches', ['status'])
    op.create_index(
        'ix_matches_tournament_round', 'matches', ['tournament_id', 'round_number', 'match_number_in_round']
    )

    op.create_table(
        'dispute_tickets',
        uuid_pk(),
        sa.Column('match_id', sa.Uuid(as_uuid=False), nullable=False),
        sa.Column('reporter_id', sa.String(64), nullable=False),
        sa.Column('reason', sa.Text, nullable=False),
        sa.Column('status', enum('dispute_status'), nullable=False),
        sa.Column('resolution_details', sa.Text, nullable=True),
        sa.Column('moderator_id', sa.String(64), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        *timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_dispute_tickets'),
        sa.ForeignKeyConstraint(
            ['match_id'], ['matches.id'],
            name='fk_dispute_tickets_match_id_matches', ondelete='CASCADE',
        ),
    )
    op.create_index('ix_dispute_tickets_match_id', 'dispute_tickets', ['match_id'])
    op.create_index('ix_dispute_tickets_status', 'dispute_tickets', ['status'])

    # At most one OPEN/UNDER_REVIEW ticket per match
    op.create_index(
        'uq_dispute_tickets_open_match',
        'dispute_tickets',
        ['match_id'],
        unique=True,
        postgresql_where=sa.text("status IN ('OPEN', 'UNDER_REVIEW')"),
    )


def downgrade() -> None:
    op.drop_index('uq_dispute_tickets_open_match', table_name='dispute_tickets')
    op.drop_table('dispute_tickets')
    op.drop_table('matches')
    op.drop_table('tournament_participants')
    op.drop_table('wallet_transactions')
    op.drop_table('tournaments')
    op.drop_table('wallets')

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
