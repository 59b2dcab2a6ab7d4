import logging
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .errors import NonConvergentXIRRError

logger = logging.getLogger(__name__)

ZERO = Decimal('0')
ONE = Decimal('1')


class TransactionKind(str, Enum):
    BUY = 'BUY'
    SELL = 'SELL'

    @classmethod
    def parse(cls, value) -> 'TransactionKind':
        s = str(value).strip().upper()
        if s in ('BUY', 'COMPRA', 'C'):
            return cls.BUY
        if s in ('SELL', 'VENTA', 'V'):
            return cls.SELL
        raise ValueError(f"Tipo de operación desconocido: {value!r}")


class Currency(str, Enum):
    ARS = 'ARS'
    USD = 'USD'
    EUR = 'EUR'

    @classmethod
    def parse(cls, value) -> 'Currency':
        s = str(value).strip().upper()
        if s in ('$', 'PESOS'):
            return cls.ARS
        if s in ('US$', 'U$S', 'DOLARES', 'MEP', 'CCL'):
            return cls.USD
        return cls(s)


class InstrumentKind(str, Enum):
    BOND = 'BOND'
    EQUITY = 'EQUITY'
    ETF = 'ETF'
    CEDEAR = 'CEDEAR'
    TREASURY = 'TREASURY'
    CRYPTO = 'CRYPTO'
    OTHER = 'OTHER'

    @classmethod
    def parse(cls, value) -> 'InstrumentKind':
        s = str(value).strip().upper()
        # Obligaciones negociables y bonos soberanos cotizan igual
        if s in ('ON', 'CORPORATE_BOND', 'BONO', 'BONOS'):
            return cls.BOND
        if s in ('ACCION', 'STOCK'):
            return cls.EQUITY
        if not s or s in ('NAN', 'NONE', '<NA>'):
            return cls.OTHER
        try:
            return cls(s)
        except ValueError:
            logger.warning("Tipo de instrumento desconocido %r, se usa OTHER", value)
            return cls.OTHER


class ValuationBasis(str, Enum):
    MARKET = 'MARKET'
    COST_BASIS_FALLBACK = 'COST_BASIS_FALLBACK'


class XirrStatus(str, Enum):
    CONVERGED = 'CONVERGED'
    NO_SIGN_CHANGE = 'NO_SIGN_CHANGE'
    FLAT_DERIVATIVE = 'FLAT_DERIVATIVE'
    MAX_ITERATIONS = 'MAX_ITERATIONS'
    NUMERICAL_ERROR = 'NUMERICAL_ERROR'


@dataclass(frozen=True)
class Transaction:
    """Una compra o venta de un instrumento. Inmutable una vez registrada."""
    date: date
    kind: TransactionKind
    quantity: Decimal
    unit_price: Decimal
    commission: Decimal = ZERO
    currency: Currency = Currency.USD
    instrument: str = ''
    exchange_rate: Optional[Decimal] = None # TC (ARS por USD) al momento de operar
    id: Optional[str] = None

    @property
    def gross_amount(self) -> Decimal:
        return self.quantity * self.unit_price

    @property
    def is_buy(self) -> bool:
        return self.kind == TransactionKind.BUY


@dataclass(frozen=True)
class Lot:
    """Porción de una compra todavía no consumida por ventas (bucket FIFO)."""
    origin_date: date
    remaining_quantity: Decimal
    unit_cost: Decimal # precio + comisión prorrateada por unidad
    original_quantity: Decimal
    currency: Currency = Currency.USD
    exchange_rate: Decimal = ONE # TC de la compra (1 si se operó en USD sin TC)

    @property
    def cost_basis(self) -> Decimal:
        return self.remaining_quantity * self.unit_cost

    @property
    def local_unit_cost(self) -> Decimal:
        """Costo unitario expresado en la moneda local al TC de compra."""
        return self.unit_cost * self.exchange_rate

    def reduce(self, quantity: Decimal) -> 'Lot':
        return replace(self, remaining_quantity=self.remaining_quantity - quantity)


@dataclass(frozen=True)
class ClosedLot:
    """Registro de una venta consumiendo todo o parte de un lote."""
    instrument: str
    buy_date: date
    sell_date: date
    quantity: Decimal
    buy_unit_cost: Decimal
    sell_unit_price: Decimal
    sell_commission_share: Decimal
    currency: Currency = Currency.USD
    buy_exchange_rate: Decimal = ONE
    gain_abs: Decimal = field(init=False)

    def __post_init__(self):
        gain = self.quantity * (self.sell_unit_price - self.buy_unit_cost) - self.sell_commission_share
        object.__setattr__(self, 'gain_abs', gain)

    @property
    def cost_basis(self) -> Decimal:
        return self.quantity * self.buy_unit_cost

    @property
    def gain_percent(self) -> Decimal:
        basis = self.cost_basis
        return self.gain_abs / basis if basis else ZERO


def _weighted_rate(pairs) -> Decimal:
    pairs = list(pairs)
    qty = sum((q for q, _ in pairs), ZERO)
    return sum((q * r for q, r in pairs), ZERO) / qty if qty else ONE


@dataclass(frozen=True)
class FIFOResult:
    """Resultado del matching FIFO para un instrumento."""
    instrument: str
    open_positions: Tuple[Lot, ...] = ()
    closed_lots: Tuple[ClosedLot, ...] = ()
    total_gain_abs: Decimal = ZERO
    total_gain_percent: Decimal = ZERO

    @property
    def open_quantity(self) -> Decimal:
        return sum((lot.remaining_quantity for lot in self.open_positions), ZERO)

    @property
    def open_cost_basis(self) -> Decimal:
        return sum((lot.cost_basis for lot in self.open_positions), ZERO)

    @property
    def average_open_cost(self) -> Decimal:
        qty = self.open_quantity
        return self.open_cost_basis / qty if qty else ZERO

    @property
    def closed_quantity(self) -> Decimal:
        return sum((c.quantity for c in self.closed_lots), ZERO)

    @property
    def open_exchange_rate_avg(self) -> Decimal:
        return _weighted_rate((lot.remaining_quantity, lot.exchange_rate) for lot in self.open_positions)

    @property
    def closed_exchange_rate_avg(self) -> Decimal:
        """TC de compra promedio de lo vendido, ponderado por cantidad consumida."""
        return _weighted_rate((c.quantity, c.buy_exchange_rate) for c in self.closed_lots)


@dataclass(frozen=True)
class CashflowPoint:
    """Flujo fechado: negativo = egreso (compra), positivo = ingreso."""
    date: date
    amount: Decimal


@dataclass(frozen=True)
class Quote:
    """Cotización cruda tal como llega del proveedor de precios."""
    raw_price: Decimal
    raw_currency: Currency
    instrument_kind: InstrumentKind


@dataclass(frozen=True)
class Valuation:
    value_per_unit: Decimal
    valuation_basis: ValuationBasis
    market_value: Decimal = ZERO
    cost_basis: Decimal = ZERO

    @property
    def unrealized_gain(self) -> Decimal:
        return self.market_value - self.cost_basis

    @property
    def is_estimated(self) -> bool:
        return self.valuation_basis == ValuationBasis.COST_BASIS_FALLBACK


@dataclass(frozen=True)
class XirrResult:
    """Tasa anual (0.12 == 12%) con el motivo por el que se obtuvo."""
    rate: float
    status: XirrStatus
    iterations: int = 0

    @property
    def converged(self) -> bool:
        return self.status == XirrStatus.CONVERGED

    def raise_for_status(self) -> 'XirrResult':
        if not self.converged:
            raise NonConvergentXIRRError(self.status, self.iterations)
        return self


@dataclass
class PositionSummary:
    """Resumen de una posición: FIFO, valuación y TIR."""
    instrument: str
    fifo: FIFOResult
    valuation: Valuation
    xirr: XirrResult
    market_yield: Optional[XirrResult] = None

    @property
    def realized_gain(self) -> Decimal:
        return self.fifo.total_gain_abs

    @property
    def unrealized_gain(self) -> Decimal:
        return self.valuation.unrealized_gain


@dataclass
class PortfolioSummary:
    """Contenedor de los totales de cartera calculados por el agregador."""
    positions: List[PositionSummary] = field(default_factory=list)
    errors: List[Dict] = field(default_factory=list)
    total_realized: Decimal = ZERO
    total_unrealized: Decimal = ZERO
    total_cost_basis: Decimal = ZERO
    total_market_value: Decimal = ZERO
    consolidated_xirr: Optional[XirrResult] = None
    estimated_positions: int = 0
