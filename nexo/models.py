import secrets
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declared_attr, relationship

from .database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column is stored in"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_checkout_token() -> str:
    """Generate an unguessable public checkout token"""
    return secrets.token_urlsafe(32)


class TenantScoped:
    """Rows owned by one organization; only reachable inside that tenant's scope (or bypass)"""

    @declared_attr
    def organizacion_id(cls):
        return Column(Integer, ForeignKey("organizaciones.id"), index=True, nullable=False)


class Organization(Base):
    __tablename__ = "organizaciones"

    id = Column(Integer, primary_key=True, index=True)
    nombre_comercial = Column(String(255), nullable=False)
    email_admin = Column(String(255), nullable=True)
    plan_actual = Column(String(50), nullable=True)  # plan code synced from the platform subscription
    modulos_activos = Column(JSON, default=dict, nullable=True)  # {"core": true, "pos": false, ...}
    creado_en = Column(DateTime, default=utcnow)
    actualizado_en = Column(DateTime, default=utcnow, onupdate=utcnow)


class Client(TenantScoped, Base):
    __tablename__ = "clientes"

    id = Column(Integer, primary_key=True, index=True)
    nombre = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    telefono = Column(String(50), nullable=True)
    # Set when this CRM row represents another tenant of the platform (dogfooding)
    organizacion_vinculada_id = Column(
        Integer, ForeignKey("organizaciones.id"), nullable=True, index=True
    )
    creado_en = Column(DateTime, default=utcnow)


class Plan(TenantScoped, Base):
    __tablename__ = "planes_suscripcion_org"
    __table_args__ = (UniqueConstraint("organizacion_id", "codigo", name="uq_plan_codigo"),)

    id = Column(Integer, primary_key=True, index=True)
    codigo = Column(String(50), nullable=False)
    nombre = Column(String(255), nullable=False)
    descripcion = Column(Text, nullable=True)
    precio_mensual = Column(Float, nullable=False, default=0)
    precio_trimestral = Column(Float, nullable=True)
    precio_semestral = Column(Float, nullable=True)
    precio_anual = Column(Float, nullable=True)
    moneda = Column(String(3), nullable=False, default="MXN")
    dias_trial = Column(Integer, nullable=False, default=0)
    features = Column(JSON, default=list, nullable=True)  # marketing feature list
    limites = Column(JSON, default=dict, nullable=True)  # {"usuarios": 5, "profesionales": 10}
    modulos_habilitados = Column(JSON, default=list, nullable=True)  # ["agendamiento", "pos"]
    activo = Column(Boolean, default=True, nullable=False)
    creado_en = Column(DateTime, default=utcnow)
    actualizado_en = Column(DateTime, default=utcnow, onupdate=utcnow)


class Coupon(TenantScoped, Base):
    __tablename__ = "cupones_suscripcion"
    __table_args__ = (UniqueConstraint("organizacion_id", "codigo", name="uq_cupon_codigo"),)

    id = Column(Integer, primary_key=True, index=True)
    codigo = Column(String(50), nullable=False)
    nombre = Column(String(255), nullable=True)
    tipo_descuento = Column(String(20), nullable=False, default="porcentaje")  # porcentaje, monto_fijo
    porcentaje_descuento = Column(Float, nullable=True)
    monto_descuento = Column(Float, nullable=True)
    usos_maximos = Column(Integer, nullable=True)  # None means unlimited
    usos_actuales = Column(Integer, nullable=False, default=0)
    fecha_inicio = Column(Date, nullable=True)
    fecha_expiracion = Column(Date, nullable=True)
    planes_aplicables = Column(JSON, default=list, nullable=True)  # plan codes; empty = all plans
    activo = Column(Boolean, default=True, nullable=False)
    creado_en = Column(DateTime, default=utcnow)
    actualizado_en = Column(DateTime, default=utcnow, onupdate=utcnow)


class Subscription(TenantScoped, Base):
    __tablename__ = "suscripciones_org"
    __table_args__ = (
        # One live subscription per (vendor, client, plan); cancelled rows are history
        Index(
            "uq_suscripcion_viva_cliente_plan",
            "organizacion_id",
            "plan_id",
            "cliente_id",
            unique=True,
            postgresql_where=text("estado != 'cancelada'"),
            sqlite_where=text("estado != 'cancelada'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    plan_id = Column(Integer, ForeignKey("planes_suscripcion_org.id"), nullable=False, index=True)
    cliente_id = Column(Integer, ForeignKey("clientes.id"), nullable=True, index=True)
    suscriptor_externo = Column(JSON, nullable=True)  # {"nombre": ..., "email": ...} when no CRM client
    periodo = Column(String(20), nullable=False, default="mensual")  # mensual, trimestral, semestral, anual
    estado = Column(String(20), nullable=False, index=True)
    fecha_inicio = Column(Date, nullable=False)
    fecha_proximo_cobro = Column(Date, nullable=True)  # null while pendiente_pago
    fecha_fin = Column(Date, nullable=True)
    es_trial = Column(Boolean, default=False, nullable=False)
    fecha_fin_trial = Column(Date, nullable=True)
    fecha_gracia = Column(Date, nullable=True)  # set only when entering grace_period
    gateway = Column(String(30), nullable=True)
    customer_id_gateway = Column(String(255), nullable=True)
    subscription_id_gateway = Column(String(255), nullable=True, index=True)
    precio_actual = Column(Float, nullable=False, default=0)
    moneda = Column(String(3), nullable=False, default="MXN")
    auto_cobro = Column(Boolean, default=True, nullable=False)
    meses_activo = Column(Integer, default=0, nullable=False)
    total_pagado = Column(Float, default=0, nullable=False)
    cupon_aplicado_id = Column(Integer, ForeignKey("cupones_suscripcion.id"), nullable=True)
    descuento_porcentaje = Column(Float, nullable=True)
    descuento_monto = Column(Float, nullable=True)
    razon_cancelacion = Column(Text, nullable=True)
    cancelado_por = Column(Integer, nullable=True)
    creado_por = Column(Integer, nullable=True)
    creado_en = Column(DateTime, default=utcnow)
    # Optimistic-lock version token: every write sets it explicitly
    actualizado_en = Column(DateTime, default=utcnow, nullable=False)

    plan = relationship("Plan")
    cliente = relationship("Client")
    pagos = relationship("Payment", back_populates="suscripcion")


class Payment(TenantScoped, Base):
    __tablename__ = "pagos_suscripcion"

    id = Column(Integer, primary_key=True, index=True)
    suscripcion_id = Column(Integer, ForeignKey("suscripciones_org.id"), nullable=False, index=True)
    monto = Column(Float, nullable=False)
    moneda = Column(String(3), nullable=False, default="MXN")
    estado = Column(String(20), nullable=False, default="pendiente")  # pendiente, completado, fallido, reembolsado
    gateway = Column(String(30), nullable=True)
    transaction_id = Column(String(255), nullable=True, index=True)
    payment_id_gateway = Column(String(255), nullable=True)
    error_mensaje = Column(Text, nullable=True)
    monto_reembolsado = Column(Float, nullable=True)
    razon_reembolso = Column(Text, nullable=True)
    fecha_pago = Column(DateTime, nullable=True)
    creado_en = Column(DateTime, default=utcnow)
    actualizado_en = Column(DateTime, default=utcnow, onupdate=utcnow)

    suscripcion = relationship("Subscription", back_populates="pagos")


class CheckoutToken(TenantScoped, Base):
    __tablename__ = "checkout_tokens"

    id = Column(Integer, primary_key=True, index=True)
    token = Column(String(64), unique=True, index=True, nullable=False, default=generate_checkout_token)
    cliente_id = Column(Integer, ForeignKey("clientes.id"), nullable=False)
    plan_id = Column(Integer, ForeignKey("planes_suscripcion_org.id"), nullable=False)
    periodo = Column(String(20), nullable=False, default="mensual")
    precio_calculado = Column(Float, nullable=False)
    moneda = Column(String(3), nullable=False, default="MXN")
    cupon_codigo = Column(String(50), nullable=True)
    estado = Column(String(20), nullable=False, default="pendiente")  # pendiente, usado, cancelado, expirado
    expira_en = Column(DateTime, nullable=False)
    suscripcion_id = Column(Integer, ForeignKey("suscripciones_org.id"), nullable=True)
    creado_por = Column(Integer, nullable=True)
    creado_en = Column(DateTime, default=utcnow)
    usado_en = Column(DateTime, nullable=True)


class WebhookReceipt(Base):
    __tablename__ = "webhook_receipts"
    __table_args__ = (UniqueConstraint("gateway", "request_id", name="uq_webhook_gateway_request"),)

    id = Column(Integer, primary_key=True, index=True)
    gateway = Column(String(30), nullable=False)
    request_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=True)
    data_id = Column(String(255), nullable=True)
    organizacion_id = Column(Integer, nullable=True)  # informational; the ledger lives outside tenants
    resultado = Column(String(20), nullable=False)  # success, error, skipped, duplicado, ignorado
    mensaje = Column(Text, nullable=True)
    creado_en = Column(DateTime, default=utcnow, index=True)
