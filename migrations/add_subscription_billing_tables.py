"""
Create the subscription billing tables and their PostgreSQL row-level security

Tables (created from the ORM models, idempotent):
- organizaciones, clientes
- planes_suscripcion_org, cupones_suscripcion
- suscripciones_org, pagos_suscripcion, checkout_tokens
- webhook_receipts (global ledger, no tenant policy)

suscripciones_org carries a partial unique index: at most one non-cancelled
subscription per (organizacion_id, plan_id, cliente_id).

Every tenant-owned table gets a policy that only exposes rows where
organizacion_id matches `app.current_tenant_id`, unless `app.bypass_rls` is 'true'.
Both settings are written by nexo.tenant.TenantExecutor at the start of each scope.

Run with: python migrations/add_subscription_billing_tables.py [--down]
"""

from sqlalchemy import text

from nexo import models  # noqa: F401
from nexo.database import Base, engine

TENANT_TABLES = [
    "clientes",
    "planes_suscripcion_org",
    "cupones_suscripcion",
    "suscripciones_org",
    "pagos_suscripcion",
    "checkout_tokens",
]

POLICY_NAME = "tenant_isolation"

TENANT_PREDICATE = """
    current_setting('app.bypass_rls', true) = 'true'
    OR organizacion_id = NULLIF(current_setting('app.current_tenant_id', true), '')::integer
"""


def upgrade():
    Base.metadata.create_all(bind=engine, checkfirst=True)
    print("✅ Billing tables created (or already present)")

    if engine.dialect.name != "postgresql":
        print("ℹ️  Not a PostgreSQL database, skipping row-level security")
        return

    with engine.connect() as conn:
        for table in TENANT_TABLES:
            conn.execute(text(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY"))
            # The application role usually owns the tables; FORCE makes the policy apply to it too
            conn.execute(text(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY"))
            conn.execute(text(f"DROP POLICY IF EXISTS {POLICY_NAME} ON {table}"))
            conn.execute(
                text(
                    f"""
                    CREATE POLICY {POLICY_NAME} ON {table}
                    USING ({TENANT_PREDICATE})
                    WITH CHECK ({TENANT_PREDICATE})
                    """
                )
            )
            print(f"✅ Row-level security enabled on {table}")

        # Tables created before the live-subscription rule existed only get it here
        conn.execute(
            text(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS uq_suscripcion_viva_cliente_plan
                ON suscripciones_org (organizacion_id, plan_id, cliente_id)
                WHERE estado != 'cancelada'
                """
            )
        )
        print("✅ One live subscription per client and plan enforced")

        # Due-date scans of the daily sweeps
        conn.execute(
            text(
                """
                CREATE INDEX IF NOT EXISTS ix_suscripciones_org_estado_proximo_cobro
                ON suscripciones_org (estado, fecha_proximo_cobro)
                """
            )
        )
        conn.execute(
            text(
                """
                CREATE INDEX IF NOT EXISTS ix_webhook_receipts_resultado_creado
                ON webhook_receipts (resultado, creado_en)
                """
            )
        )
        conn.commit()
        print("\n✅ Migration completed successfully!")


def downgrade():
    if engine.dialect.name != "postgresql":
        print("ℹ️  Not a PostgreSQL database, nothing to roll back")
        return

    with engine.connect() as conn:
        for table in TENANT_TABLES:
            conn.execute(text(f"DROP POLICY IF EXISTS {POLICY_NAME} ON {table}"))
            conn.execute(text(f"ALTER TABLE {table} NO FORCE ROW LEVEL SECURITY"))
            conn.execute(text(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY"))
        conn.execute(text("DROP INDEX IF EXISTS ix_suscripciones_org_estado_proximo_cobro"))
        conn.execute(text("DROP INDEX IF EXISTS ix_webhook_receipts_resultado_creado"))
        conn.commit()
        print("✅ Row-level security removed (tables kept)")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Manage subscription billing tables migration")
    parser.add_argument("--down", action="store_true", help="Rollback the migration")
    args = parser.parse_args()

    if args.down:
        print("Rolling back migration...")
        downgrade()
    else:
        print("Running migration...")
        upgrade()
