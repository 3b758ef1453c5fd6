"""Seed data for development and testing."""

from sqlalchemy.orm import Session

from verifactu_api.models import ComplianceMode, Environment, TenantConfig

DEMO_TENANT_ID = 1


def seed_demo_tenant(db: Session, tenant_id: int = DEMO_TENANT_ID) -> TenantConfig:
    """Seed an enabled live-mode tenant pointed at the authority's test endpoint."""
    config = db.query(TenantConfig).filter(TenantConfig.tenant_id == tenant_id).first()
    if config:
        return config

    config = TenantConfig(
        tenant_id=tenant_id,
        tenant_name="Demo Facturacion SL",
        mode=ComplianceMode.LIVE,
        environment=Environment.TESTING,
        enabled=True,
        auto_submit=True,
        flow_control_seconds=60,
        max_records_per_submission=10,
        last_sequence=0,
    )
    db.add(config)
    db.flush()
    return config


def seed_all(db: Session):
    """Seed all demo data."""
    seed_demo_tenant(db)
    db.commit()
