import logging
import re
from collections import OrderedDict
from dataclasses import asdict, is_dataclass, replace
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Dict, Iterable, List, Optional

import pandas as pd

from .engine import FifoEngine
from .errors import CarteraError, InvalidTransactionError
from .ledger import LotLedger
from .models import (
    ZERO, CashflowPoint, Currency, FIFOResult, InstrumentKind, PortfolioSummary,
    PositionSummary, Quote, Transaction, TransactionKind, Valuation, XirrResult
)
from .valuation import DEFAULT_POLICY, ValuationPolicy, value_position
from .xirr import market_yield, position_cashflows, solve_xirr, with_terminal_value

logger = logging.getLogger(__name__)

# --- PARSEO Y CARGA ---
def parse_decimal(x) -> Decimal:
    if x is None or (not isinstance(x, str) and pd.isna(x)): return ZERO
    s = str(x).strip().replace('"', '')
    if not s: return ZERO
    s = re.sub(r'[^\d,\.-]', '', s)

    # If both separators are present, decide which is decimal
    if '.' in s and ',' in s:
        # The one that appears last is the decimal separator
        if s.rfind('.') > s.rfind(','):
            s = s.replace(',', '') # Comma is thousands separator
        else:
            s = s.replace('.', '') # Period is thousands separator
            s = s.replace(',', '.') # Comma is decimal separator
    elif ',' in s:
        # If only comma is present, assume it's the decimal separator
        s = s.replace(',', '.')
    elif s.count('.') > 1:
        # Several dots can only be thousands separators (98.125 stays a price)
        s = s.replace('.', '')

    try: return Decimal(s)
    except (InvalidOperation, ValueError): return ZERO


def _parse_dates(col: pd.Series) -> pd.Series:
    # Formatos argentinos primero, ISO como último recurso
    for fmt in ('%d-%m-%Y', '%d/%m/%Y', '%Y-%m-%d'):
        parsed = pd.to_datetime(col, format=fmt, errors='coerce')
        if not parsed.isna().all():
            return parsed
    return parsed


def _read_csv(stream, label: str) -> pd.DataFrame:
    try:
        # Auto-detect separator using python engine
        df = pd.read_csv(stream, sep=None, engine='python', keep_default_na=False, quotechar='"', dtype=str)
    except Exception as e:
        logger.error("Error leyendo CSV de %s: %s", label, e)
        return pd.DataFrame()
    df.columns = [c.strip() for c in df.columns]
    return df


# Nombres completos: "Tipo de instrumento" no es el tipo de operación
KIND_HEADERS = (
    'tipo', 'tipo de operacion', 'tipo de operación', 'tipo operacion', 'tipo operación',
    'operacion', 'operación', 'type', 'kind',
)


def load_transactions_frame(stream) -> pd.DataFrame:
    df_t = _read_csv(stream, 'transacciones')
    if df_t.empty: return df_t

    col_map_t = {}
    for c in df_t.columns:
        lc = c.lower()
        if 'fecha' in lc or lc == 'date': col_map_t[c] = 'date'
        elif 'cambio' in lc or lc in ('tc', 'exchange rate', 'exchange_rate'): col_map_t[c] = 'exchange_rate'
        elif lc in KIND_HEADERS: col_map_t[c] = 'kind'
        elif lc in ('ticker', 'especie', 'instrumento', 'symbol', 'instrument'): col_map_t[c] = 'instrument'
        elif 'cantidad' in lc or 'nominales' in lc or lc == 'quantity': col_map_t[c] = 'qty'
        elif 'precio' in lc or lc == 'price': col_map_t[c] = 'price'
        elif 'comisi' in lc or lc == 'commission': col_map_t[c] = 'commission'
        elif 'moneda' in lc or lc == 'currency': col_map_t[c] = 'currency'

    df_t = df_t.rename(columns=col_map_t)

    required_cols = ['date', 'instrument', 'qty', 'price']
    missing_cols = [col for col in required_cols if col not in df_t.columns]
    if missing_cols:
        logger.error("Faltan columnas en el CSV de transacciones: %s. Encontradas: %s",
                     missing_cols, df_t.columns.tolist())
        return pd.DataFrame()

    if 'commission' not in df_t.columns: df_t['commission'] = '0'
    if 'currency' not in df_t.columns: df_t['currency'] = 'USD'
    if 'exchange_rate' not in df_t.columns: df_t['exchange_rate'] = ''

    for col in ('qty', 'price', 'commission'):
        df_t[col] = df_t[col].apply(parse_decimal)
    if 'kind' not in df_t.columns:
        # Sin columna de tipo: el signo de la cantidad indica compra o venta
        df_t['kind'] = df_t['qty'].apply(lambda q: 'SELL' if q < 0 else 'BUY')
        df_t['qty'] = df_t['qty'].apply(abs)
    df_t['exchange_rate'] = df_t['exchange_rate'].apply(lambda v: parse_decimal(v) if str(v).strip() else None)
    df_t['date_obj'] = _parse_dates(df_t['date'])

    dropped = int(df_t['date_obj'].isna().sum())
    if dropped:
        logger.warning("Se descartan %d filas con fecha ilegible", dropped)
    return df_t.dropna(subset=['date_obj']).reset_index(drop=True)


def frame_to_transactions(df_t: pd.DataFrame) -> List[Transaction]:
    transactions = []
    for idx, row in df_t.iterrows():
        try:
            kind = TransactionKind.parse(row['kind'])
            currency = Currency.parse(row['currency'] or 'USD')
        except ValueError as e:
            raise InvalidTransactionError(f"fila {idx}: {e}", instrument=str(row['instrument'])) from e
        rate = row['exchange_rate']
        transactions.append(Transaction(
            date=row['date_obj'].date(),
            kind=kind,
            quantity=row['qty'],
            unit_price=row['price'],
            commission=row['commission'],
            currency=currency,
            instrument=str(row['instrument']).strip().upper(),
            exchange_rate=rate if isinstance(rate, Decimal) and rate > 0 else None,
            id=f"row-{idx}",
        ))
    return transactions


def load_quotes_frame(stream) -> Dict[str, Quote]:
    df_q = _read_csv(stream, 'cotizaciones')
    if df_q.empty: return {}

    col_map_q = {}
    for c in df_q.columns:
        lc = c.lower()
        if lc in ('ticker', 'especie', 'instrumento', 'symbol', 'instrument'): col_map_q[c] = 'instrument'
        elif 'precio' in lc or lc == 'price': col_map_q[c] = 'price'
        elif 'moneda' in lc or lc == 'currency': col_map_q[c] = 'currency'
        elif 'tipo' in lc or lc in ('type', 'kind'): col_map_q[c] = 'kind'
    df_q = df_q.rename(columns=col_map_q)

    if 'instrument' not in df_q.columns or 'price' not in df_q.columns:
        logger.error("CSV de cotizaciones sin columnas ticker/precio. Encontradas: %s", df_q.columns.tolist())
        return {}
    if 'currency' not in df_q.columns: df_q['currency'] = 'USD'
    if 'kind' not in df_q.columns: df_q['kind'] = 'OTHER'

    quotes = {}
    for _, row in df_q.iterrows():
        try:
            currency = Currency.parse(row['currency'] or 'USD')
        except ValueError:
            logger.warning("Moneda desconocida %r para %s, se ignora la cotización", row['currency'], row['instrument'])
            continue
        quotes[str(row['instrument']).strip().upper()] = Quote(
            raw_price=parse_decimal(row['price']),
            raw_currency=currency,
            instrument_kind=InstrumentKind.parse(row['kind']),
        )
    return quotes


# --- AGREGACIÓN ---

def to_usd(tx: Transaction, exchange_rate=None) -> Transaction:
    """
    Conversión spot: usa el TC de la operación o, si no tiene, el TC actual.
    El TC usado queda en la transacción para que el lote lo conserve.
    """
    if tx.currency != Currency.ARS:
        return tx
    rate = tx.exchange_rate or (Decimal(str(exchange_rate)) if exchange_rate else None)
    if not rate or rate <= 0:
        raise InvalidTransactionError("operación en ARS sin tipo de cambio", tx)
    return replace(tx, unit_price=tx.unit_price / rate, commission=tx.commission / rate,
                   currency=Currency.USD, exchange_rate=rate)


def group_by_instrument(transactions: Iterable[Transaction]) -> Dict[str, List[Transaction]]:
    grouped = OrderedDict()
    for tx in transactions:
        grouped.setdefault(tx.instrument, []).append(tx)
    return grouped


def analyze_position(instrument: str, transactions: Iterable[Transaction], quote: Optional[Quote],
                     exchange_rate, as_of: date, policy: ValuationPolicy = DEFAULT_POLICY,
                     projected: Iterable[CashflowPoint] = ()) -> PositionSummary:
    usd_txs = [to_usd(tx, exchange_rate) for tx in transactions]
    fifo = FifoEngine(LotLedger(instrument, usd_txs)).process()
    valuation = value_position(quote, fifo.open_quantity, fifo.average_open_cost, exchange_rate, policy)

    flows = with_terminal_value(position_cashflows(usd_txs), valuation.market_value, as_of)
    result = solve_xirr(flows)
    if not result.converged:
        logger.info("%s: TIR no disponible (%s)", instrument, result.status.value)

    projected = list(projected)
    return PositionSummary(
        instrument=instrument,
        fifo=fifo,
        valuation=valuation,
        xirr=result,
        market_yield=market_yield(valuation.market_value, projected, as_of) if projected else None,
    )


def analyze_portfolio(transactions: Iterable[Transaction], quotes: Dict[str, Quote], exchange_rate,
                      as_of: date = None, policy: ValuationPolicy = None,
                      projected_cashflows: Dict[str, List[CashflowPoint]] = None) -> PortfolioSummary:
    """
    Corre FIFO + valuación + TIR por instrumento y suma los totales.
    Un instrumento con datos rotos se reporta en `errors` sin frenar al resto.
    """
    as_of = as_of or date.today()
    policy = policy or DEFAULT_POLICY
    projected_cashflows = projected_cashflows or {}
    summary = PortfolioSummary()
    all_flows: List[CashflowPoint] = []

    for instrument, txs in group_by_instrument(transactions).items():
        try:
            position = analyze_position(instrument, txs, quotes.get(instrument), exchange_rate, as_of,
                                        policy, projected_cashflows.get(instrument, ()))
        except CarteraError as e:
            logger.warning("Se omite %s: %s", instrument, e)
            summary.errors.append(e.to_dict())
            continue

        summary.positions.append(position)
        summary.total_realized += position.realized_gain
        summary.total_unrealized += position.unrealized_gain
        summary.total_cost_basis += position.valuation.cost_basis
        summary.total_market_value += position.valuation.market_value
        if position.valuation.is_estimated and position.fifo.open_quantity > 0:
            summary.estimated_positions += 1
        all_flows.extend(position_cashflows(to_usd(tx, exchange_rate) for tx in txs))

    summary.consolidated_xirr = solve_xirr(with_terminal_value(all_flows, summary.total_market_value, as_of))
    logger.info("Cartera: %d posiciones, %d con error, realizado %s, no realizado %s",
                len(summary.positions), len(summary.errors), summary.total_realized, summary.total_unrealized)
    return summary


def realized_by_year(fifo_results: Iterable[FIFOResult]) -> Dict[int, Decimal]:
    """P&L realizado agrupado por año de venta."""
    totals: Dict[int, Decimal] = {}
    for result in fifo_results:
        for closed in result.closed_lots:
            year = closed.sell_date.year
            totals[year] = totals.get(year, ZERO) + closed.gain_abs
    return dict(sorted(totals.items()))


def analyze_files(trans_stream, quotes_stream, exchange_rate, as_of: date = None,
                  policy: ValuationPolicy = None) -> PortfolioSummary:
    df_t = load_transactions_frame(trans_stream)
    if df_t.empty:
        raise InvalidTransactionError("no se cargaron transacciones")
    quotes = load_quotes_frame(quotes_stream) if quotes_stream is not None else {}
    return analyze_portfolio(frame_to_transactions(df_t), quotes, exchange_rate, as_of, policy)


# --- SERIALIZACIÓN (JSON para dashboards) ---

def to_jsonable(obj):
    if is_dataclass(obj) and not isinstance(obj, type):
        return to_jsonable(asdict(obj))
    if isinstance(obj, dict):
        return {k: to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_jsonable(v) for v in obj]
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, date):
        return obj.isoformat()
    return obj


def fifo_to_dict(result: FIFOResult) -> dict:
    data = to_jsonable(result)
    data.update(to_jsonable({
        'open_quantity': result.open_quantity,
        'open_cost_basis': result.open_cost_basis,
        'average_open_cost': result.average_open_cost,
        'closed_quantity': result.closed_quantity,
        'open_exchange_rate_avg': result.open_exchange_rate_avg,
        'closed_exchange_rate_avg': result.closed_exchange_rate_avg,
    }))
    return data


def valuation_to_dict(valuation: Valuation) -> dict:
    data = to_jsonable(valuation)
    data['unrealized_gain'] = float(valuation.unrealized_gain)
    return data


def xirr_to_dict(result: Optional[XirrResult]) -> Optional[dict]:
    if result is None:
        return None
    data = to_jsonable(result)
    data['converged'] = result.converged
    return data


def portfolio_to_dict(summary: PortfolioSummary) -> dict:
    return {
        'positions': [{
            'instrument': p.instrument,
            'fifo': fifo_to_dict(p.fifo),
            'valuation': valuation_to_dict(p.valuation),
            'xirr': xirr_to_dict(p.xirr),
            'market_yield': xirr_to_dict(p.market_yield),
        } for p in summary.positions],
        'errors': summary.errors,
        'totals': to_jsonable({
            'realized': summary.total_realized,
            'unrealized': summary.total_unrealized,
            'cost_basis': summary.total_cost_basis,
            'market_value': summary.total_market_value,
            'estimated_positions': summary.estimated_positions,
        }),
        'realized_by_year': {str(y): float(v) for y, v in realized_by_year(p.fifo for p in summary.positions).items()},
        'consolidated_xirr': xirr_to_dict(summary.consolidated_xirr),
    }
