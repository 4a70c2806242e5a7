from __future__ import annotations

from enum import Enum

from optionrelay.common.errors import InvalidTransition


class OrderState(str, Enum):
    """
    Canonical lifecycle states for relayed orders.

    Notes:
    - OPEN is the only non-terminal state; every transition is one-way.
    - Partial fills are not representable: orders are single-shot.
    """

    OPEN = "OPEN"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


TERMINAL_STATES: frozenset[OrderState] = frozenset(
    {
        OrderState.FILLED,
        OrderState.CANCELLED,
        OrderState.EXPIRED,
    }
)


ALLOWED_TRANSITIONS: frozenset[tuple[OrderState, OrderState]] = frozenset(
    {
        (OrderState.OPEN, OrderState.FILLED),
        (OrderState.OPEN, OrderState.CANCELLED),
        (OrderState.OPEN, OrderState.EXPIRED),
    }
)


def parse_state(value: OrderState | str) -> OrderState:
    if isinstance(value, OrderState):
        return value
    try:
        return OrderState(str(value or "").strip().upper())
    except ValueError as e:
        raise InvalidTransition(f"unknown order state: {value!r}") from e


def is_terminal(state: OrderState | str) -> bool:
    return parse_state(state) in TERMINAL_STATES


def validate_transition(*, prev: OrderState, nxt: OrderState) -> bool:
    return (prev, nxt) in ALLOWED_TRANSITIONS


def require_transition(*, prev: OrderState, nxt: OrderState, order_id: str | None = None) -> None:
    if not validate_transition(prev=prev, nxt=nxt):
        raise InvalidTransition(
            f"invalid_transition:{prev.value}->{nxt.value}",
            order_id=order_id,
            prev=prev.value,
            nxt=nxt.value,
        )
