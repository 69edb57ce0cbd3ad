"""Add partial unique index on bookings(booking_date, booking_time) for non-cancelled rows

Revision ID: 0002_add_partial_unique_index_bookings_slot_active
Revises: 0001_initial_schema
Create Date: 2025-06-15 12:00:00

"""
from alembic import op
import sqlalchemy as sa

from booking.migrations.utils import index_exists

# revision identifiers, used by Alembic.
revision = '0002_add_partial_unique_index_bookings_slot_active'
down_revision = '0001_initial_schema'
branch_labels = None
depends_on = None

INDEX_NAME = 'ux_bookings_slot_active'
ACTIVE_WHERE = "status <> 'cancelled'"


def upgrade() -> None:
    """Guarantee at most one non-cancelled booking per (date, time).

    Existing double bookings would make the index creation fail, so for each
    occupied slot the row with the smallest id is kept and the others are
    cancelled first.
    """
    op.execute(
        f"""
        UPDATE bookings
        SET status = 'cancelled',
            cancelled_by = 'migration',
            cancelled_at = CURRENT_TIMESTAMP
        WHERE id IN (
            SELECT id FROM (
                SELECT id,
                       ROW_NUMBER() OVER (PARTITION BY booking_date, booking_time ORDER BY id) AS rn
                FROM bookings
                WHERE {ACTIVE_WHERE}
            ) ranked
            WHERE rn > 1
        )
        """
    )

    if index_exists('bookings', INDEX_NAME):
        return
    op.create_index(
        INDEX_NAME,
        'bookings',
        ['booking_date', 'booking_time'],
        unique=True,
        postgresql_where=sa.text(ACTIVE_WHERE),
        sqlite_where=sa.text(ACTIVE_WHERE),
    )


def downgrade() -> None:
    op.drop_index(INDEX_NAME, table_name='bookings')
