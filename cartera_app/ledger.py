import logging
from decimal import Decimal, InvalidOperation
from typing import Iterable, List, Tuple

from .errors import InvalidTransactionError
from .models import Transaction, TransactionKind

logger = logging.getLogger(__name__)


def _is_finite(value) -> bool:
    if value is None:
        return True  # los None se rechazan abajo con su propio motivo
    try:
        return Decimal(str(value)).is_finite()
    except InvalidOperation:
        return False


def validate_transaction(tx: Transaction, instrument: str = None):
    """Rechaza datos estructuralmente inválidos antes del matching."""
    if instrument and tx.instrument and tx.instrument != instrument:
        raise InvalidTransactionError(
            f"pertenece a {tx.instrument}, no a {instrument}", tx, instrument)
    if not isinstance(tx.kind, TransactionKind):
        raise InvalidTransactionError(f"tipo desconocido {tx.kind!r}", tx, instrument)
    for name in ('quantity', 'unit_price', 'commission'):
        if not _is_finite(getattr(tx, name)):
            raise InvalidTransactionError(f"{name} no finito ({getattr(tx, name)})", tx, instrument)
    if tx.quantity is None or tx.quantity <= 0:
        raise InvalidTransactionError(f"cantidad no positiva ({tx.quantity})", tx, instrument)
    if tx.unit_price is None or tx.unit_price < 0:
        raise InvalidTransactionError(f"precio negativo ({tx.unit_price})", tx, instrument)
    if tx.commission is None or tx.commission < 0:
        raise InvalidTransactionError(f"comisión negativa ({tx.commission})", tx, instrument)


def chronological(transactions: Iterable[Transaction]) -> List[Transaction]:
    # sorted() es estable: a igual fecha se respeta el orden de carga
    return sorted(transactions, key=lambda tx: tx.date)


class LotLedger:
    """
    Registro en memoria de las transacciones de un instrumento.
    Conserva el orden de carga; ordered() devuelve la secuencia cronológica
    que consume el motor FIFO.
    """

    def __init__(self, instrument: str, transactions: Iterable[Transaction] = ()):
        self.instrument = instrument
        self._transactions: List[Transaction] = []
        for tx in transactions:
            self.record(tx)

    def record(self, tx: Transaction) -> Transaction:
        validate_transaction(tx, self.instrument)
        self._transactions.append(tx)
        return tx

    def __len__(self):
        return len(self._transactions)

    def __iter__(self):
        return iter(self._transactions)

    @property
    def transactions(self) -> Tuple[Transaction, ...]:
        return tuple(self._transactions)

    def ordered(self) -> Tuple[Transaction, ...]:
        ordered = chronological(self._transactions)
        self.validate_sequence(ordered)
        return tuple(ordered)

    def validate_sequence(self, ordered: List[Transaction]):
        """Una venta sin ninguna compra previa es un dato corrupto, no una sobreventa."""
        for tx in ordered:
            if tx.kind == TransactionKind.BUY:
                return
            raise InvalidTransactionError("venta sin compra previa", tx, self.instrument)

    @property
    def bought_quantity(self) -> Decimal:
        return sum((tx.quantity for tx in self._transactions if tx.kind == TransactionKind.BUY), Decimal('0'))

    @property
    def sold_quantity(self) -> Decimal:
        return sum((tx.quantity for tx in self._transactions if tx.kind == TransactionKind.SELL), Decimal('0'))
