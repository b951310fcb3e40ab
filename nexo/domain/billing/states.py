"""Subscription lifecycle states and the allowed transition graph"""

from enum import Enum
from types import MappingProxyType

from ...errors import ValidationError


class SubscriptionState(str, Enum):
    TRIAL = "trial"
    PENDIENTE_PAGO = "pendiente_pago"
    ACTIVA = "activa"
    PAUSADA = "pausada"
    VENCIDA = "vencida"
    GRACE_PERIOD = "grace_period"
    SUSPENDIDA = "suspendida"
    CANCELADA = "cancelada"


S = SubscriptionState

# grace_period is never a target here: only the lock-guarded dunning path enters it
TRANSITIONS = MappingProxyType(
    {
        S.TRIAL: frozenset({S.ACTIVA, S.CANCELADA, S.VENCIDA, S.PENDIENTE_PAGO}),
        S.PENDIENTE_PAGO: frozenset({S.ACTIVA, S.CANCELADA, S.VENCIDA}),
        S.ACTIVA: frozenset({S.PAUSADA, S.CANCELADA, S.VENCIDA, S.SUSPENDIDA}),
        S.PAUSADA: frozenset({S.ACTIVA, S.CANCELADA}),
        S.VENCIDA: frozenset({S.ACTIVA, S.SUSPENDIDA}),
        S.GRACE_PERIOD: frozenset({S.ACTIVA, S.SUSPENDIDA, S.CANCELADA}),
        S.SUSPENDIDA: frozenset({S.ACTIVA, S.CANCELADA}),
        S.CANCELADA: frozenset(),
    }
)

TERMINAL_STATES = frozenset({S.CANCELADA})
NON_TERMINAL_STATES = frozenset(set(S) - TERMINAL_STATES)

# States a dunning write must never overwrite (a payment or a cancellation won the race)
DUNNING_PROTECTED_STATES = (S.ACTIVA.value, S.CANCELADA.value)

# Entering `activa` from these states converts a trial/checkout into a paid plan
CONVERSION_SOURCES = frozenset({S.TRIAL, S.PENDIENTE_PAGO})


def parse_state(value) -> SubscriptionState:
    """Coerce a raw value into a SubscriptionState"""
    try:
        return SubscriptionState(value)
    except ValueError:
        raise ValidationError(f"Invalid subscription state: {value}", {"estado": value})


def can_transition(current, new) -> bool:
    current, new = SubscriptionState(current), SubscriptionState(new)
    if current == new:
        return True
    return new in TRANSITIONS.get(current, frozenset())


def validate_transition(current, new) -> None:
    """Raise ValidationError unless `current -> new` is in the transition table"""
    current_state, new_state = parse_state(current), parse_state(new)
    if not can_transition(current_state, new_state):
        raise ValidationError(
            f"Invalid transition: {current_state.value} -> {new_state.value}",
            {"from": current_state.value, "to": new_state.value},
        )
