"""
Shared fixtures for the billing test-suite

Run with: python -m pytest tests -v

Every test gets a fresh in-memory SQLite schema with the same small world:
- org 1 is the platform operator, orgs 2 and 3 are tenants linked in its CRM, org 4 is not linked
- platform CRM clients 10 and 11 are linked to orgs 2 and 3; clients 12-15 are plain platform customers
- platform plans "basic" (id 100) and "pro" (id 101); tenant plans "yoga" (org 2) and "corte" (org 3)
- platform coupons WELCOME100 (100%), ONEUSE (exhausted) and PRO10 (only for "pro")
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["PLATFORM_ORG_ID"] = "1"
os.environ.pop("REDIS_URL", None)

from datetime import date, datetime, timedelta  # noqa: E402

import pytest  # noqa: E402

from nexo.database import Base, engine  # noqa: E402
from nexo.errors import GatewayError  # noqa: E402
from nexo.models import Client, Coupon, Organization, Plan, Subscription  # noqa: E402
from nexo.tenant import executor  # noqa: E402

FIXED_NOW = datetime(2026, 3, 10, 12, 0, 0)


class MutableClock:
    """Injectable clock that tests can move forward"""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeGateway:
    """In-memory stand-in for the Dodo Payments client"""

    name = "dodo"

    def __init__(self, statuses=None, fail_create=False):
        self.statuses = statuses or {}
        self.fail_create = fail_create
        self.created = []
        self.cancelled = []

    def is_available(self) -> bool:
        return True

    async def create_subscription(self, request):
        if self.fail_create:
            raise GatewayError("Gateway unavailable")
        self.created.append(request)
        gateway_id = f"sub_{request.subscription_id}"
        return {
            "subscription_id": gateway_id,
            "checkout_url": f"https://checkout.test/{gateway_id}",
            "customer_id": "cus_test",
        }

    async def get_subscription(self, subscription_id):
        status = self.statuses.get(subscription_id, "pending")
        if isinstance(status, Exception):
            raise status
        return {"status": status, "raw": {"subscription_id": subscription_id}}

    async def cancel_subscription(self, subscription_id):
        self.cancelled.append(subscription_id)
        return {"subscription_id": subscription_id, "status": "cancelled"}


class RecordingSender:
    """Email sender that keeps what it was asked to send"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def __call__(self, to, subject, mjml_content, from_address=None):
        if self.fail:
            raise RuntimeError("SMTP down")
        self.sent.append({"to": to, "subject": subject, "mjml": mjml_content})
        return {"id": f"email_{len(self.sent)}"}


@pytest.fixture(autouse=True)
def database():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def world(database):
    with executor.bypass_scope() as db:
        db.add_all(
            [
                Organization(id=1, nombre_comercial="Nexo", email_admin="ops@nexo.app"),
                Organization(
                    id=2,
                    nombre_comercial="Spa Luna",
                    email_admin="admin@spaluna.mx",
                    modulos_activos={"core": True, "pos": False},
                ),
                Organization(id=3, nombre_comercial="Barber Co", email_admin="hola@barber.co"),
                Organization(id=4, nombre_comercial="Sin Vinculo"),
            ]
        )
        db.flush()
        db.add_all(
            [
                Client(id=10, organizacion_id=1, nombre="Spa Luna", email="admin@spaluna.mx", organizacion_vinculada_id=2),
                Client(id=11, organizacion_id=1, nombre="Barber Co", email="hola@barber.co", organizacion_vinculada_id=3),
                Client(id=12, organizacion_id=1, nombre="Estudio Norte", email="pagos@estudionorte.mx"),
                Client(id=13, organizacion_id=1, nombre="Clinica Sol", email="admin@clinicasol.mx"),
                Client(id=14, organizacion_id=1, nombre="Gimnasio Roca", email="cuentas@gimnasioroca.mx"),
                Client(id=15, organizacion_id=1, nombre="Taller Mar", email="hola@tallermar.mx"),
                Client(id=20, organizacion_id=2, nombre="Ana Lopez", email="ana@example.com"),
                Client(id=21, organizacion_id=2, nombre="Sin Correo"),
                Client(id=30, organizacion_id=3, nombre="Luis Perez", email="luis@example.com"),
            ]
        )
        db.add_all(
            [
                Plan(
                    id=100,
                    organizacion_id=1,
                    codigo="basic",
                    nombre="Basico",
                    precio_mensual=299.0,
                    dias_trial=14,
                    modulos_habilitados=["agendamiento"],
                ),
                Plan(
                    id=101,
                    organizacion_id=1,
                    codigo="pro",
                    nombre="Pro",
                    precio_mensual=599.0,
                    precio_anual=5990.0,
                    modulos_habilitados=["agendamiento", "pos", "inventario"],
                ),
                Plan(id=200, organizacion_id=2, codigo="yoga", nombre="Yoga Ilimitado", precio_mensual=800.0, dias_trial=7),
                Plan(id=300, organizacion_id=3, codigo="corte", nombre="Corte Mensual", precio_mensual=150.0),
            ]
        )
        db.add_all(
            [
                Coupon(
                    id=1,
                    organizacion_id=1,
                    codigo="WELCOME100",
                    tipo_descuento="porcentaje",
                    porcentaje_descuento=100,
                    usos_maximos=10,
                    usos_actuales=0,
                ),
                Coupon(
                    id=2,
                    organizacion_id=1,
                    codigo="ONEUSE",
                    tipo_descuento="porcentaje",
                    porcentaje_descuento=20,
                    usos_maximos=1,
                    usos_actuales=1,
                ),
                Coupon(
                    id=3,
                    organizacion_id=1,
                    codigo="PRO10",
                    tipo_descuento="monto_fijo",
                    monto_descuento=10,
                    planes_aplicables=["pro"],
                ),
            ]
        )
    return {"platform": 1, "spa": 2, "barber": 3, "unlinked": 4}


@pytest.fixture
def make_subscription(world):
    """Insert a subscription row directly (defaults: org 2's active platform "pro" plan)"""

    def _make(**fields):
        values = dict(
            organizacion_id=1,
            plan_id=101,
            cliente_id=10,
            periodo="mensual",
            estado="activa",
            fecha_inicio=date(2026, 1, 10),
            fecha_proximo_cobro=date(2026, 4, 10),
            precio_actual=599.0,
            moneda="MXN",
            actualizado_en=datetime(2026, 3, 1, 9, 0, 0),
        )
        values.update(fields)
        with executor.bypass_scope() as db:
            sub = Subscription(**values)
            db.add(sub)
            db.flush()
            return sub.id

    return _make


@pytest.fixture
def fetch():
    """Load a row by primary key outside of any tenant"""

    def _fetch(model, pk):
        with executor.bypass_scope() as db:
            return db.get(model, pk)

    return _fetch


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def sender():
    return RecordingSender()
