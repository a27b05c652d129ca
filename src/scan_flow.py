"""
Scan State Machine.

A ScanSession walks an operator through the inputs a scan flow needs, one
required input per step, and turns each complete goods scan into a
ScanOperation for the engine. The session itself never touches the store:
nothing is persisted until the caller applies an operation, so cancelling
mid-flow can never leave a half-applied line.

Flows:
    fg-check     mode -> operator -> shipment -> pallet -> line
    delivery     operator (giver) -> receiver -> LSX -> receiving line -> line
    stock-check  operator -> line (scope is the facility)

The state is an immutable SessionState value: the current Step plus the
context collected so far. Every accepted input produces a new value.
"""

import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from exceptions import InvalidTransitionError, ValidationError
from identity import (
    normalize_employee_id,
    normalize_part,
    normalize_shipment_code,
    parse_goods_scan,
    parse_quantity,
)
from logger import get_logger
from models import CheckMode, Number

logger = get_logger(__name__)


class Step(str, Enum):
    AWAITING_MODE = 'awaiting-mode'
    AWAITING_OPERATOR = 'awaiting-operator'
    AWAITING_RECEIVER = 'awaiting-receiver'
    AWAITING_SHIPMENT = 'awaiting-shipment'
    AWAITING_PALLET = 'awaiting-pallet'
    AWAITING_LINE = 'awaiting-line'
    AWAITING_QUANTITY = 'awaiting-quantity'
    COMPLETE = 'complete'
    CANCELLED = 'cancelled'


class FlowType(str, Enum):
    FG_CHECK = 'fg-check'
    DELIVERY = 'delivery'
    STOCK_CHECK = 'stock-check'


FLOW_STEPS: Dict[FlowType, Tuple[Step, ...]] = {
    FlowType.FG_CHECK: (Step.AWAITING_MODE, Step.AWAITING_OPERATOR, Step.AWAITING_SHIPMENT,
                        Step.AWAITING_PALLET, Step.AWAITING_LINE),
    FlowType.DELIVERY: (Step.AWAITING_OPERATOR, Step.AWAITING_RECEIVER, Step.AWAITING_SHIPMENT,
                        Step.AWAITING_PALLET, Step.AWAITING_LINE),
    FlowType.STOCK_CHECK: (Step.AWAITING_OPERATOR, Step.AWAITING_LINE),
}

PROMPTS = {
    Step.AWAITING_MODE: "Choose check mode (pn = carton, pn-qty = quantity)",
    Step.AWAITING_OPERATOR: "Scan your employee badge",
    Step.AWAITING_RECEIVER: "Scan the receiving employee's badge",
    Step.AWAITING_SHIPMENT: "Scan the shipment / LSX code",
    Step.AWAITING_PALLET: "Scan the pallet code",
    Step.AWAITING_LINE: "Scan the goods label",
    Step.AWAITING_QUANTITY: "Scan the quantity label",
    Step.COMPLETE: "Session complete",
    Step.CANCELLED: "Session cancelled",
}


@dataclass(frozen=True)
class SessionContext:
    """Values collected by the session so far. Empty fields are not yet scanned."""
    flow: FlowType
    mode: Optional[CheckMode] = None
    operator_id: Optional[str] = None
    operator_name_hint: Optional[str] = None
    receiver_id: Optional[str] = None
    shipment_code: Optional[str] = None
    pallet: Optional[str] = None
    facility: Optional[str] = None

    @property
    def scope(self) -> Optional[str]:
        """Scope the session's lines belong to: the facility or the shipment."""
        if self.flow == FlowType.STOCK_CHECK:
            return self.facility
        return self.shipment_code


@dataclass(frozen=True)
class PendingGoods:
    """A quantity-mode goods label waiting for its quantity scan."""
    material_code: str
    po_or_pallet: str
    customer_code: str = ''
    imd: str = ''


@dataclass(frozen=True)
class SessionState:
    step: Step
    context: SessionContext
    pending_goods: Optional[PendingGoods] = None

    @property
    def is_terminal(self) -> bool:
        return self.step in (Step.COMPLETE, Step.CANCELLED)

    @property
    def prompt(self) -> str:
        return PROMPTS[self.step]


@dataclass(frozen=True)
class ScanOperation:
    """A fully validated goods scan, ready for ReconciliationEngine.apply_scan."""
    scope: str
    shipment_code: str
    material_code: str
    po_or_pallet: str
    mode: CheckMode
    delta_quantity: Optional[Number]
    operator_id: str
    pallet: Optional[str] = None
    customer_code: Optional[str] = None
    imd: Optional[str] = None



@dataclass(frozen=True)
class StepOutcome:
    """
    Result of one submitted input.

    Attributes:
        accepted: True if the input was valid and stored
        state: Session state after the input
        message: Operator message (error text, or the next prompt)
        error: ValidationError when the input was rejected
        operation: Set when the input completed a goods scan
    """
    accepted: bool
    state: SessionState
    message: str
    error: Optional[ValidationError] = None
    operation: Optional[ScanOperation] = None


@dataclass(frozen=True)
class SessionResult:
    """Returned by complete(): the session context and every applied scan."""
    session_id: str
    context: SessionContext
    operations: Tuple[ScanOperation, ...]
    completed_at: datetime

    @property
    def total_quantity(self) -> Number:
        return sum(op.delta_quantity or 0 for op in self.operations if op.mode == CheckMode.QUANTITY)

    @property
    def total_cartons(self) -> int:
        return sum(1 for op in self.operations if op.mode == CheckMode.CARTON)


class ScanSession:
    """
    One operator's pass through a scan flow.

    Usage:
        session = ScanSession(FlowType.FG_CHECK, mode=CheckMode.QUANTITY)
        outcome = session.submit("ASP0001")
        ...
        if outcome.operation:
            result = engine.apply_scan(...)
            if result.accepted:
                session.record(outcome.operation)
        summary = session.complete()

    Args:
        flow: Which flow to run
        mode: Check mode; fg-check asks for it when omitted, delivery and
              stock-check always count quantities
        facility: Scope of a stock-check session (required for stock-check)
        customer_map: Customer code -> material code mapping for goods labels
        session_id: Identifier for logs; generated when omitted
    """

    def __init__(self, flow, mode=None, facility: Optional[str] = None,
                 customer_map: Optional[Dict[str, str]] = None,
                 session_id: Optional[str] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.flow = FlowType(flow)
        self.session_id = session_id or f"{self.flow.value}-{uuid.uuid4().hex[:8]}"
        self.customer_map = customer_map or {}
        self._clock = clock
        self._operations: List[ScanOperation] = []

        if self.flow == FlowType.FG_CHECK:
            check_mode = CheckMode.parse(mode) if mode is not None else None
        else:
            check_mode = CheckMode.QUANTITY

        if self.flow == FlowType.STOCK_CHECK:
            facility = normalize_shipment_code(facility)
            if not facility:
                raise ValueError("A stock-check session needs a facility scope")
        else:
            facility = None

        context = SessionContext(flow=self.flow, mode=check_mode, facility=facility)
        first_step = FLOW_STEPS[self.flow][0]
        if first_step == Step.AWAITING_MODE and check_mode is not None:
            first_step = self._next_step(Step.AWAITING_MODE)

        self._state = SessionState(step=first_step, context=context)
        logger.debug(f"Session {self.session_id} started: {self.flow.value}, step {first_step.value}")

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def step(self) -> Step:
        return self._state.step

    @property
    def context(self) -> SessionContext:
        return self._state.context

    @property
    def operations(self) -> Tuple[ScanOperation, ...]:
        return tuple(self._operations)

    def _next_step(self, step: Step) -> Step:
        steps = FLOW_STEPS[self.flow]
        return steps[steps.index(step) + 1]

    def _advance(self, message: Optional[str] = None, **changes) -> StepOutcome:
        context = replace(self._state.context, **changes)
        self._state = SessionState(step=self._next_step(self._state.step), context=context)
        return StepOutcome(accepted=True, state=self._state, message=message or self._state.prompt)

    def _reject(self, message: str, field_name: str) -> StepOutcome:
        logger.info(f"Session {self.session_id}: input rejected at {self._state.step.value}: {message}")
        return StepOutcome(accepted=False, state=self._state, message=message,
                           error=ValidationError(message, field=field_name))

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def submit(self, raw) -> StepOutcome:
        """
        Feed one scanned (or typed) input to the current step.

        Invalid input leaves the state unchanged and returns the error
        message; only that input is discarded.

        Raises:
            InvalidTransitionError: If the session is complete or cancelled
        """
        if self._state.is_terminal:
            raise InvalidTransitionError(
                f"Session {self.session_id} is {self._state.step.value}; no more input is accepted.")

        handler = {
            Step.AWAITING_MODE: self._on_mode,
            Step.AWAITING_OPERATOR: self._on_operator,
            Step.AWAITING_RECEIVER: self._on_receiver,
            Step.AWAITING_SHIPMENT: self._on_shipment,
            Step.AWAITING_PALLET: self._on_pallet,
            Step.AWAITING_LINE: self._on_line,
            Step.AWAITING_QUANTITY: self._on_quantity,
        }[self._state.step]
        return handler(raw)

    def _on_mode(self, raw) -> StepOutcome:
        try:
            mode = CheckMode.parse(raw)
        except ValueError:
            return self._reject(f'Unknown check mode "{raw}". Use pn or pn-qty.', "mode")
        return self._advance(mode=mode)

    def _on_operator(self, raw) -> StepOutcome:
        result = normalize_employee_id(raw)
        if not result.valid:
            return self._reject(result.error, "operator_id")
        return self._advance(operator_id=result.id, operator_name_hint=result.name_hint)

    def _on_receiver(self, raw) -> StepOutcome:
        result = normalize_employee_id(raw)
        if not result.valid:
            return self._reject(result.error, "receiver_id")
        return self._advance(receiver_id=result.id)

    def _on_shipment(self, raw) -> StepOutcome:
        code = normalize_shipment_code(raw, extract_lsx=self.flow == FlowType.DELIVERY)
        if not code:
            return self._reject("Shipment code is empty. Scan the shipment label.", "shipment_code")
        return self._advance(shipment_code=code)

    def _on_pallet(self, raw) -> StepOutcome:
        pallet = normalize_part(raw)
        if not pallet:
            return self._reject("Pallet code is empty. Scan the pallet label.", "pallet")
        return self._advance(pallet=pallet)

    def _on_line(self, raw) -> StepOutcome:
        goods = parse_goods_scan(raw, self.customer_map)
        if not goods.valid:
            return self._reject(goods.error, "goods")

        if self.context.mode == CheckMode.QUANTITY and goods.quantity is None:
            pending = PendingGoods(
                material_code=goods.material_code,
                po_or_pallet=goods.po_or_pallet,
                customer_code=goods.customer_code,
                imd=goods.imd,
            )
            self._state = SessionState(step=Step.AWAITING_QUANTITY, context=self.context,
                                       pending_goods=pending)
            return StepOutcome(accepted=True, state=self._state,
                               message=f"{goods.material_code}: {self._state.prompt}")

        return self._goods_ready(goods.material_code, goods.po_or_pallet, goods.quantity,
                                 goods.customer_code, goods.imd)

    def _on_quantity(self, raw) -> StepOutcome:
        quantity = parse_quantity(raw)
        if quantity is None or quantity <= 0:
            return self._reject(f'Invalid quantity "{raw}". Scan a positive quantity.', "quantity")

        pending = self._state.pending_goods
        return self._goods_ready(pending.material_code, pending.po_or_pallet, quantity,
                                 pending.customer_code, pending.imd)

    def _goods_ready(self, material_code: str, po_or_pallet: str, quantity: Optional[Number],
                     customer_code: str, imd: str) -> StepOutcome:
        context = self.context
        operation = ScanOperation(
            scope=context.scope,
            shipment_code=context.scope if self.flow == FlowType.STOCK_CHECK else context.shipment_code,
            material_code=material_code,
            po_or_pallet=po_or_pallet,
            mode=context.mode,
            delta_quantity=quantity if context.mode == CheckMode.QUANTITY else None,
            operator_id=context.operator_id,
            pallet=context.pallet,
            customer_code=customer_code or None,
            imd=imd or None,
        )
        self._state = SessionState(step=Step.AWAITING_LINE, context=context)
        return StepOutcome(accepted=True, state=self._state, message=self._state.prompt,
                           operation=operation)

    def record(self, operation: ScanOperation) -> None:
        """Remember an operation the engine has applied, for the session result."""
        self._operations.append(operation)

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def cancel(self) -> SessionState:
        """Abandon the session from any step. Lines already applied stay applied."""
        self._state = SessionState(step=Step.CANCELLED, context=SessionContext(flow=self.flow))
        self._operations.clear()
        logger.info(f"Session {self.session_id} cancelled")
        return self._state

    def complete(self) -> SessionResult:
        """
        Finish the session.

        Raises:
            InvalidTransitionError: Unless the session is waiting for a goods label
        """
        if self._state.step != Step.AWAITING_LINE:
            raise InvalidTransitionError(
                f"Cannot complete session {self.session_id} at step {self._state.step.value}.")

        result = SessionResult(
            session_id=self.session_id,
            context=self.context,
            operations=tuple(self._operations),
            completed_at=self._clock(),
        )
        self._state = SessionState(step=Step.COMPLETE, context=self.context)
        logger.info(f"Session {self.session_id} complete: {len(result.operations)} scans")
        return result
