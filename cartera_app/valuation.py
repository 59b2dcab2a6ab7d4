"""
Normalizador de valuación.

Convierte una cotización cruda en un valor por unidad comparable con el costo
unitario de los lotes (USD). Aplica, en orden, reglas heurísticas de negocio:

1. Precio en ARS, o en "USD" mayor a ARS_MISLABEL_THRESHOLD: se divide por el
   tipo de cambio. Algunos feeds etiquetan como USD precios de bonos en pesos;
   es una heurística por magnitud, no una fuente de verdad sobre la moneda.
2. Bono con precio mayor a PAR_QUOTE_THRESHOLD: cotiza como % del valor
   nominal (98.50 == 98.5%), se divide por 100.
3. Valor de mercado de la posición <= MIN_MARKET_VALUE: cotización faltante,
   se usa el costo (COST_BASIS_FALLBACK).
4. Valor de mercado de un bono mayor a BOND_SANITY_THRESHOLD: se asume que
   faltó la conversión a USD y se vuelve a dividir por el tipo de cambio.

La valuación nunca lanza excepciones: un dashboard tiene que poder mostrarse
aunque falten precios.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from .models import (
    ZERO, Currency, InstrumentKind, Quote, Valuation, ValuationBasis
)

logger = logging.getLogger(__name__)

ARS_MISLABEL_THRESHOLD = Decimal('400')
PAR_QUOTE_THRESHOLD = Decimal('2.0')
MIN_MARKET_VALUE = Decimal('1')
BOND_SANITY_THRESHOLD = Decimal('1000000')
PAR_DIVISOR = Decimal('100')


def _as_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _to_decimal(value, default: Decimal) -> Decimal:
    if value is None or value == '':
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        logger.warning("Umbral inválido %r, se usa %s", value, default)
        return default


@dataclass(frozen=True)
class ValuationPolicy:
    ars_mislabel_threshold: Decimal = ARS_MISLABEL_THRESHOLD
    par_quote_threshold: Decimal = PAR_QUOTE_THRESHOLD
    min_market_value: Decimal = MIN_MARKET_VALUE
    bond_sanity_threshold: Decimal = BOND_SANITY_THRESHOLD

    @classmethod
    def from_config(cls, config) -> 'ValuationPolicy':
        return cls(
            ars_mislabel_threshold=_to_decimal(getattr(config, 'ARS_MISLABEL_THRESHOLD', None), ARS_MISLABEL_THRESHOLD),
            par_quote_threshold=_to_decimal(getattr(config, 'PAR_QUOTE_THRESHOLD', None), PAR_QUOTE_THRESHOLD),
            min_market_value=_to_decimal(getattr(config, 'MIN_MARKET_VALUE', None), MIN_MARKET_VALUE),
            bond_sanity_threshold=_to_decimal(getattr(config, 'BOND_SANITY_THRESHOLD', None), BOND_SANITY_THRESHOLD),
        )


DEFAULT_POLICY = ValuationPolicy()


def is_ars_denominated(price: Decimal, currency: Currency, policy: ValuationPolicy = DEFAULT_POLICY) -> bool:
    """Regla 1."""
    if currency == Currency.ARS:
        return True
    return currency == Currency.USD and price > policy.ars_mislabel_threshold


def is_par_quote(price: Decimal, kind: InstrumentKind, policy: ValuationPolicy = DEFAULT_POLICY) -> bool:
    """Regla 2."""
    return kind == InstrumentKind.BOND and price > policy.par_quote_threshold


def needs_cost_fallback(market_value: Decimal, policy: ValuationPolicy = DEFAULT_POLICY) -> bool:
    """Regla 3."""
    return market_value <= policy.min_market_value


def exceeds_bond_sanity(market_value: Decimal, kind: InstrumentKind, policy: ValuationPolicy = DEFAULT_POLICY) -> bool:
    """Regla 4."""
    return kind == InstrumentKind.BOND and market_value > policy.bond_sanity_threshold


def normalize_price(quote: Quote, exchange_rate, policy: ValuationPolicy = DEFAULT_POLICY) -> Optional[Decimal]:
    """
    Aplica las reglas 1 y 2 sobre el precio. Devuelve None si hacía falta
    convertir de ARS y el tipo de cambio no sirve.
    """
    price = _as_decimal(quote.raw_price)
    rate = _as_decimal(exchange_rate) if exchange_rate is not None else ZERO

    if is_ars_denominated(price, quote.raw_currency, policy):
        if rate <= 0:
            logger.warning("Precio %s %s requiere TC pero el TC es %s", price, quote.raw_currency.value, exchange_rate)
            return None
        if quote.raw_currency == Currency.USD:
            logger.warning("Precio USD %s supera %s: se trata como ARS", price, policy.ars_mislabel_threshold)
        price = price / rate

    if is_par_quote(price, quote.instrument_kind, policy):
        price = price / PAR_DIVISOR

    return price


def value_position(quote: Optional[Quote], quantity: Decimal, unit_cost: Decimal,
                   exchange_rate, policy: ValuationPolicy = DEFAULT_POLICY) -> Valuation:
    """Valúa una posición abierta de `quantity` unidades con costo unitario `unit_cost`."""
    quantity = _as_decimal(quantity)
    unit_cost = _as_decimal(unit_cost)
    cost_basis = quantity * unit_cost

    price = normalize_price(quote, exchange_rate, policy) if quote is not None else None

    if quantity == 0:
        # Posición cerrada: no hay nada que valuar
        return Valuation(
            value_per_unit=price if price is not None else unit_cost,
            valuation_basis=ValuationBasis.MARKET if price is not None else ValuationBasis.COST_BASIS_FALLBACK,
        )

    market_value = quantity * price if price is not None else ZERO
    if needs_cost_fallback(market_value, policy):
        logger.warning("Sin cotización útil (valor %s), se valúa a costo", market_value)
        return Valuation(
            value_per_unit=unit_cost,
            valuation_basis=ValuationBasis.COST_BASIS_FALLBACK,
            market_value=cost_basis,
            cost_basis=cost_basis,
        )

    if exceeds_bond_sanity(market_value, quote.instrument_kind, policy):
        rate = _as_decimal(exchange_rate) if exchange_rate is not None else ZERO
        if rate > 0:
            logger.warning("Valor de bono %s supera %s: se reconvierte por TC %s",
                           market_value, policy.bond_sanity_threshold, rate)
            market_value = market_value / rate

    return Valuation(
        value_per_unit=market_value / quantity,
        valuation_basis=ValuationBasis.MARKET,
        market_value=market_value,
        cost_basis=cost_basis,
    )
