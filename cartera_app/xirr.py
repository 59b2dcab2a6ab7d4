"""
TIR (XIRR) por Newton-Raphson sobre flujos fechados, base Actual/365.

El solver es puro: ordena los flujos por fecha antes de calcular, así que el
orden de entrada no cambia el resultado. Nunca devuelve NaN ni infinito; si no
hay solución devuelve 0 junto con el motivo (XirrStatus).
"""

import logging
import math
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Iterable, List, Sequence, Tuple

from .models import (
    CashflowPoint, Transaction, TransactionKind, XirrResult, XirrStatus
)

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365.0
INITIAL_GUESS = 0.10
MAX_ITERATIONS = 100
TOLERANCE = 1e-6
DERIVATIVE_FLOOR = 1e-6
FALLBACK_GUESSES = (0.05, 0.1, 0.01, -0.1, 0.2)


def _year_fractions(flows: Iterable[CashflowPoint]) -> List[Tuple[float, float]]:
    ordered = sorted(flows, key=lambda f: f.date)
    if not ordered:
        return []
    t0 = ordered[0].date
    return [((f.date - t0).days / DAYS_PER_YEAR, float(f.amount)) for f in ordered]


def _npv(rate: float, points: Sequence[Tuple[float, float]]) -> float:
    return sum(amount / (1.0 + rate) ** t for t, amount in points)


def _npv_derivative(rate: float, points: Sequence[Tuple[float, float]]) -> float:
    return sum(-t * amount / (1.0 + rate) ** (t + 1.0) for t, amount in points)


def xnpv(rate: float, flows: Iterable[CashflowPoint]) -> float:
    return _npv(rate, _year_fractions(flows))


def xnpv_derivative(rate: float, flows: Iterable[CashflowPoint]) -> float:
    return _npv_derivative(rate, _year_fractions(flows))


def _is_finite(amount) -> bool:
    try:
        return math.isfinite(amount) if isinstance(amount, float) else Decimal(str(amount)).is_finite()
    except (InvalidOperation, ValueError):
        return False


def has_sign_change(flows: Iterable[CashflowPoint]) -> bool:
    amounts = [f.amount for f in flows]
    return any(a < 0 for a in amounts) and any(a > 0 for a in amounts)


def _newton(points: Sequence[Tuple[float, float]], guess: float, max_iterations: int,
            damped: bool = False) -> XirrResult:
    rate = float(guess)

    for iteration in range(1, max_iterations + 1):
        try:
            f = _npv(rate, points)
            df = _npv_derivative(rate, points)
        except (OverflowError, ZeroDivisionError):
            logger.debug("XIRR: desborde numérico con tasa %s", rate)
            return XirrResult(rate=0.0, status=XirrStatus.NUMERICAL_ERROR, iterations=iteration)

        if not (math.isfinite(f) and math.isfinite(df)):
            return XirrResult(rate=0.0, status=XirrStatus.NUMERICAL_ERROR, iterations=iteration)

        if abs(df) < DERIVATIVE_FLOOR:
            logger.debug("XIRR: derivada plana (%s) en iteración %d", df, iteration)
            return XirrResult(rate=0.0, status=XirrStatus.FLAT_DERIVATIVE, iterations=iteration)

        new_rate = rate - f / df
        if not math.isfinite(new_rate):
            return XirrResult(rate=0.0, status=XirrStatus.NUMERICAL_ERROR, iterations=iteration)
        # (1 + r) <= 0 no tiene potencia real fraccionaria
        if new_rate <= -1.0:
            if not damped:
                return XirrResult(rate=0.0, status=XirrStatus.NUMERICAL_ERROR, iterations=iteration)
            rate = (rate - 1.0) / 2.0  # mitad de camino hacia -1
            continue

        if abs(new_rate - rate) < TOLERANCE:
            logger.debug("XIRR: convergió a %.6f en %d iteraciones", new_rate, iteration)
            return XirrResult(rate=new_rate, status=XirrStatus.CONVERGED, iterations=iteration)

        rate = new_rate

    return XirrResult(rate=0.0, status=XirrStatus.MAX_ITERATIONS, iterations=max_iterations)


def solve_xirr(flows: Iterable[CashflowPoint], guess: float = INITIAL_GUESS,
               max_iterations: int = MAX_ITERATIONS) -> XirrResult:
    """
    Newton-Raphson desde `guess`. Si no converge, reintenta desde
    FALLBACK_GUESSES recortando los pasos que cruzan -1 (pérdidas fuertes,
    donde el primer paso desde 0.10 sale del dominio). Si ningún intento
    converge devuelve 0 con el motivo del primero.
    """
    flows = list(flows)
    if not all(_is_finite(f.amount) for f in flows):
        return XirrResult(rate=0.0, status=XirrStatus.NUMERICAL_ERROR, iterations=0)
    if not has_sign_change(flows):
        return XirrResult(rate=0.0, status=XirrStatus.NO_SIGN_CHANGE, iterations=0)

    points = _year_fractions(flows)
    first = _newton(points, guess, max_iterations)
    if first.converged:
        return first

    for retry in FALLBACK_GUESSES:
        result = _newton(points, retry, max_iterations, damped=True)
        if result.converged:
            logger.debug("XIRR: convergió reintentando desde %s", retry)
            return result

    logger.warning("XIRR: sin solución (%s)", first.status.value)
    return first


def xirr(flows: Iterable[CashflowPoint]) -> float:
    """Tasa anual, o 0 si no se pudo calcular."""
    return solve_xirr(flows).rate


# --- CONSTRUCCIÓN DE FLUJOS ---

def position_cashflows(transactions: Iterable[Transaction]) -> List[CashflowPoint]:
    """Compras como egreso (precio + comisión), ventas como ingreso neto de comisión."""
    flows = []
    for tx in transactions:
        if tx.kind == TransactionKind.BUY:
            amount = -(tx.gross_amount + tx.commission)
        else:
            amount = tx.gross_amount - tx.commission
        flows.append(CashflowPoint(date=tx.date, amount=amount))
    return flows


def with_terminal_value(flows: Iterable[CashflowPoint], market_value: Decimal, as_of: date) -> List[CashflowPoint]:
    """Agrega el valor de mercado de lo que sigue abierto como ingreso a la fecha de corte."""
    flows = list(flows)
    if market_value and market_value > 0:
        flows.append(CashflowPoint(date=as_of, amount=market_value))
    return flows


def market_yield(market_value: Decimal, projected: Iterable[CashflowPoint], as_of: date) -> XirrResult:
    """
    TIR teórica: comprar hoy la posición a valor de mercado y cobrar los
    flujos proyectados (cupones, amortizaciones) posteriores a `as_of`.
    """
    future = [cf for cf in projected if cf.date > as_of]
    if not market_value or market_value <= 0 or not future:
        return XirrResult(rate=0.0, status=XirrStatus.NO_SIGN_CHANGE, iterations=0)
    flows = [CashflowPoint(date=as_of, amount=-market_value)] + future
    return solve_xirr(flows)
