"""Billing domain schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, field_validator

from .repository import PERIODS
from .states import SubscriptionState


def _check_period(v: str) -> str:
    if v not in PERIODS:
        raise ValueError(f"periodo must be one of {', '.join(PERIODS)}")
    return v


class ExternalSubscriber(BaseModel):
    nombre: Optional[str] = None
    email: EmailStr


class CheckoutRequest(BaseModel):
    """Schema for creating a subscription checkout"""

    plan_id: int
    periodo: str = "mensual"
    cupon_codigo: Optional[str] = None
    trial: bool = False
    # Customer billing (the caller's organization sells its own plan)
    customer_billing: bool = False
    cliente_id: Optional[int] = None
    suscriptor_externo: Optional[ExternalSubscriber] = None

    @field_validator("periodo")
    @classmethod
    def validate_periodo(cls, v: str) -> str:
        return _check_period(v)

    @field_validator("cupon_codigo")
    @classmethod
    def normalize_coupon(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().upper()
        return v or None


class ChangeStateRequest(BaseModel):
    """Schema for a manual state change"""

    estado: SubscriptionState
    razon: Optional[str] = None


class CancelRequest(BaseModel):
    """Schema for canceling subscription"""

    razon: Optional[str] = None


class ChangePlanRequest(BaseModel):
    """Schema for changing subscription plan"""

    plan_id: int


class UpdateEntitlementsRequest(BaseModel):
    modulos_habilitados: Optional[list[str]] = None
    limites: Optional[dict] = None
    features: Optional[list[str]] = None


class RefundRequest(BaseModel):
    monto: float
    razon: Optional[str] = None

    @field_validator("monto")
    @classmethod
    def validate_monto(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("monto must be greater than zero")
        return v


class CheckoutTokenRequest(BaseModel):
    cliente_id: int
    plan_id: int
    periodo: str = "mensual"
    cupon_codigo: Optional[str] = None

    @field_validator("periodo")
    @classmethod
    def validate_periodo(cls, v: str) -> str:
        return _check_period(v)


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    organizacion_id: int
    plan_id: int
    cliente_id: Optional[int] = None
    periodo: str
    estado: str
    fecha_inicio: date
    fecha_proximo_cobro: Optional[date] = None
    fecha_fin: Optional[date] = None
    es_trial: bool
    fecha_fin_trial: Optional[date] = None
    fecha_gracia: Optional[date] = None
    precio_actual: float
    moneda: str
    meses_activo: int
    total_pagado: float
    actualizado_en: datetime


class CheckoutResponse(BaseModel):
    subscription: SubscriptionResponse
    precio_final: float
    checkout_url: Optional[str] = None
    billing_type: str


class CheckoutTokenResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    token: str
    cliente_id: int
    plan_id: int
    periodo: str
    precio_calculado: float
    moneda: str
    cupon_codigo: Optional[str] = None
    estado: str
    expira_en: datetime
    suscripcion_id: Optional[int] = None


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    suscripcion_id: int
    monto: float
    moneda: str
    estado: str
    monto_reembolsado: Optional[float] = None
    razon_reembolso: Optional[str] = None


class PlanResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    codigo: str
    nombre: str
    modulos_habilitados: Optional[list] = None
    limites: Optional[dict] = None
    features: Optional[list] = None
