"""
Database Constraints for the Delivery Ledger

Enforces delivery immutability at database level (triggers). A recorded
delivery keeps its amount, parent order and sequence forever and is never
deleted; corrections go through compensating entries instead.
"""

from sqlalchemy import DDL
import logging

logger = logging.getLogger(__name__)

IMMUTABLE_MESSAGE = "Delivery amount, order and sequence are immutable once recorded."
DELETE_MESSAGE = "Recorded deliveries cannot be deleted."


def create_ledger_constraints(engine):
    """
    Create database-level guards for the deliveries table.

    This prevents direct SQL updates even if application checks are bypassed.
    """

    # SQLite: triggers raising ABORT
    if engine.dialect.name == 'sqlite':
        update_trigger_sql = f"""
        CREATE TRIGGER IF NOT EXISTS prevent_delivery_ledger_update
        BEFORE UPDATE OF total_amount, parent_order_id, delivery_sequence ON deliveries
        FOR EACH ROW
        WHEN NEW.total_amount IS NOT OLD.total_amount
          OR NEW.parent_order_id IS NOT OLD.parent_order_id
          OR NEW.delivery_sequence IS NOT OLD.delivery_sequence
        BEGIN
            SELECT RAISE(ABORT, '{IMMUTABLE_MESSAGE}');
        END;
        """

        delete_trigger_sql = f"""
        CREATE TRIGGER IF NOT EXISTS prevent_delivery_delete
        BEFORE DELETE ON deliveries
        FOR EACH ROW
        BEGIN
            SELECT RAISE(ABORT, '{DELETE_MESSAGE}');
        END;
        """

        with engine.begin() as conn:
            conn.execute(DDL(update_trigger_sql))
            conn.execute(DDL(delete_trigger_sql))

    # PostgreSQL: one trigger function for both events
    elif engine.dialect.name == 'postgresql':
        function_sql = f"""
        CREATE OR REPLACE FUNCTION guard_delivery_ledger() RETURNS trigger AS $$
        BEGIN
            IF TG_OP = 'DELETE' THEN
                RAISE EXCEPTION '{DELETE_MESSAGE}';
            END IF;
            IF NEW.total_amount IS DISTINCT FROM OLD.total_amount
               OR NEW.parent_order_id IS DISTINCT FROM OLD.parent_order_id
               OR NEW.delivery_sequence IS DISTINCT FROM OLD.delivery_sequence THEN
                RAISE EXCEPTION '{IMMUTABLE_MESSAGE}';
            END IF;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
        """

        trigger_sql = """
        DO $$
        BEGIN
            IF NOT EXISTS (
                SELECT 1 FROM pg_trigger
                WHERE tgname = 'guard_delivery_ledger'
            ) THEN
                CREATE TRIGGER guard_delivery_ledger
                BEFORE UPDATE OR DELETE ON deliveries
                FOR EACH ROW EXECUTE FUNCTION guard_delivery_ledger();
            END IF;
        END $$;
        """

        with engine.begin() as conn:
            conn.execute(DDL(function_sql))
            conn.execute(DDL(trigger_sql))

    else:
        logger.warning(f"No ledger guards available for dialect '{engine.dialect.name}'")
