import logging
from dataclasses import dataclass
from decimal import Decimal
from functools import reduce
from typing import Iterable, List, Tuple

from .errors import InsufficientLotsError
from .ledger import LotLedger
from .models import (
    ONE, ZERO, ClosedLot, FIFOResult, Lot, Transaction, TransactionKind
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _MatchState:
    """Acumulador del fold: cola de lotes abiertos + lotes cerrados."""
    lots: Tuple[Lot, ...] = ()
    closed: Tuple[ClosedLot, ...] = ()


class FifoEngine:
    """
    Matching FIFO de un instrumento.

    Las transacciones se ordenan por fecha (estable) y se reducen sobre un
    estado inmutable; una venta consume los lotes más antiguos primero.
    """

    def __init__(self, ledger: LotLedger):
        self.ledger = ledger
        self.instrument = ledger.instrument

    def process(self) -> FIFOResult:
        ordered = self.ledger.ordered()
        state = reduce(self._apply, ordered, _MatchState())

        total_gain = sum((c.gain_abs for c in state.closed), ZERO)
        cost_closed = sum((c.cost_basis for c in state.closed), ZERO)
        gain_pct = total_gain / cost_closed if cost_closed else ZERO

        logger.debug("%s: %d lotes abiertos, %d lotes cerrados, P&L %s",
                     self.instrument, len(state.lots), len(state.closed), total_gain)

        return FIFOResult(
            instrument=self.instrument,
            open_positions=state.lots,
            closed_lots=state.closed,
            total_gain_abs=total_gain,
            total_gain_percent=gain_pct,
        )

    def _apply(self, state: _MatchState, tx: Transaction) -> _MatchState:
        if tx.kind == TransactionKind.BUY:
            return _MatchState(lots=state.lots + (self._handle_buy(tx),), closed=state.closed)
        lots, closed = self._consume_fifo_lots(state.lots, tx)
        return _MatchState(lots=lots, closed=state.closed + closed)

    def _handle_buy(self, tx: Transaction) -> Lot:
        # La comisión de compra se amortiza en el costo unitario
        unit_cost = tx.unit_price + tx.commission / tx.quantity
        return Lot(
            origin_date=tx.date,
            remaining_quantity=tx.quantity,
            unit_cost=unit_cost,
            original_quantity=tx.quantity,
            currency=tx.currency,
            exchange_rate=tx.exchange_rate or ONE,
        )

    def _consume_fifo_lots(self, lots: Tuple[Lot, ...], sell: Transaction) -> Tuple[Tuple[Lot, ...], Tuple[ClosedLot, ...]]:
        available = sum((lot.remaining_quantity for lot in lots), ZERO)
        if sell.quantity > available:
            raise InsufficientLotsError(self.instrument, sell.quantity, available, sell.date)

        queue: List[Lot] = list(lots)
        closed: List[ClosedLot] = []
        to_sell = sell.quantity
        commission_left = sell.commission

        while to_sell > 0:
            lot = queue[0]
            taken = min(lot.remaining_quantity, to_sell)
            to_sell -= taken

            # El último tramo se lleva el resto para que las partes sumen la comisión exacta
            if to_sell == 0:
                share = commission_left
            else:
                share = sell.commission * taken / sell.quantity
                commission_left -= share

            closed.append(ClosedLot(
                instrument=self.instrument,
                buy_date=lot.origin_date,
                sell_date=sell.date,
                quantity=taken,
                buy_unit_cost=lot.unit_cost,
                sell_unit_price=sell.unit_price,
                sell_commission_share=share,
                currency=sell.currency,
                buy_exchange_rate=lot.exchange_rate,
            ))

            if taken == lot.remaining_quantity:
                queue.pop(0)
            else:
                queue[0] = lot.reduce(taken)

        return tuple(queue), tuple(closed)


def calculate_fifo(transactions: Iterable[Transaction], instrument: str = None) -> FIFOResult:
    """Atajo: arma el ledger del instrumento y corre el matching."""
    transactions = list(transactions)
    if instrument is None:
        instrument = next((tx.instrument for tx in transactions if tx.instrument), '')
    return FifoEngine(LotLedger(instrument, transactions)).process()
