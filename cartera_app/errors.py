"""
Errores estructurados del motor de cartera.

Cada error expone un `kind` y sus campos de contexto, de modo que la capa que
llama (API, CLI, agregador) decida si loguearlo, ignorarlo o mostrarlo.
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class CarteraError(Exception):
    """Base de todos los errores del motor."""
    kind = 'cartera_error'

    def context(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        data = {'error': self.kind, 'message': str(self)}
        data.update(self.context())
        return data


class InvalidTransactionError(CarteraError):
    """Transacción rechazada antes de entrar al matcher."""
    kind = 'invalid_transaction'

    def __init__(self, reason: str, transaction: Any = None, instrument: Optional[str] = None):
        self.reason = reason
        self.transaction = transaction
        self.instrument = instrument or getattr(transaction, 'instrument', None)

        msg = f"Transacción inválida: {reason}"
        if self.instrument:
            msg = f"{msg} ({self.instrument})"
        super().__init__(msg)

    def context(self) -> Dict[str, Any]:
        tx = self.transaction
        return {
            'reason': self.reason,
            'instrument': self.instrument,
            'date': tx.date.isoformat() if getattr(tx, 'date', None) else None,
            'transaction_id': getattr(tx, 'id', None),
        }


class InsufficientLotsError(CarteraError):
    """Una venta supera la cantidad abierta disponible del instrumento."""
    kind = 'insufficient_lots'

    def __init__(self, instrument: str, attempted_quantity: Decimal,
                 available_quantity: Decimal, date=None):
        self.instrument = instrument
        self.attempted_quantity = attempted_quantity
        self.available_quantity = available_quantity
        self.date = date
        super().__init__(
            f"Venta de {attempted_quantity} {instrument} con solo "
            f"{available_quantity} disponibles"
        )

    def context(self) -> Dict[str, Any]:
        return {
            'instrument': self.instrument,
            'attempted_quantity': float(self.attempted_quantity),
            'available_quantity': float(self.available_quantity),
            'date': self.date.isoformat() if self.date else None,
        }


class NonConvergentXIRRError(CarteraError):
    """
    El solver XIRR no encontró solución. Es un error "blando": el solver
    devuelve 0 con un código de motivo y solo se lanza vía
    XirrResult.raise_for_status().
    """
    kind = 'non_convergent_xirr'

    def __init__(self, status, iterations: int = 0):
        self.status = status
        self.iterations = iterations
        super().__init__(f"XIRR sin solución ({getattr(status, 'value', status)}, {iterations} iteraciones)")

    def context(self) -> Dict[str, Any]:
        return {
            'status': getattr(self.status, 'value', self.status),
            'iterations': self.iterations,
        }
