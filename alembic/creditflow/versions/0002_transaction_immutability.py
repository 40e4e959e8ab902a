"""enforce append-only credit transactions and ownership corrections

Revision ID: 0002_transaction_immutability
Revises: 0001_creditflow
Create Date: 2026-10-18
"""

from alembic import op


revision = "0002_transaction_immutability"
down_revision = "0001_creditflow"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_append_only_mutation()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            RAISE EXCEPTION '% is append-only; % is not allowed', TG_TABLE_NAME, TG_OP;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_credit_transactions_immutable
        BEFORE UPDATE OR DELETE ON credit_transactions
        FOR EACH ROW
        EXECUTE FUNCTION prevent_append_only_mutation();
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_ownership_corrections_immutable
        BEFORE UPDATE OR DELETE ON ownership_corrections
        FOR EACH ROW
        EXECUTE FUNCTION prevent_append_only_mutation();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_ownership_corrections_immutable ON ownership_corrections;")
    op.execute("DROP TRIGGER IF EXISTS trg_credit_transactions_immutable ON credit_transactions;")
    op.execute("DROP FUNCTION IF EXISTS prevent_append_only_mutation();")
