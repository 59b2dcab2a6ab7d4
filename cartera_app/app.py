import io
import logging
from datetime import date
from decimal import Decimal, InvalidOperation

from flask import Flask, jsonify, request

from cartera_app.config import Config, configure_logging
from .engine import calculate_fifo
from .errors import CarteraError, InsufficientLotsError, InvalidTransactionError
from .logic import (
    analyze_files, fifo_to_dict, parse_decimal, portfolio_to_dict, valuation_to_dict, xirr_to_dict
)
from .models import CashflowPoint, Currency, InstrumentKind, Quote, Transaction, TransactionKind
from .valuation import ValuationPolicy, value_position
from .xirr import solve_xirr

app = Flask(__name__)
app.config.from_object(Config)

logger = logging.getLogger(__name__)

POLICY = ValuationPolicy.from_config(Config)


def _parse_date(value, field='date'):
    try:
        return date.fromisoformat(str(value)[:10])
    except (TypeError, ValueError):
        raise InvalidTransactionError(f"fecha inválida en '{field}': {value!r}")


def _parse_amount(value, field):
    if value is None or value == '':
        raise InvalidTransactionError(f"falta '{field}'")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise InvalidTransactionError(f"número inválido en '{field}': {value!r}")
    if not amount.is_finite():
        raise InvalidTransactionError(f"número no finito en '{field}': {value!r}")
    return amount


def _transaction_from_json(data, instrument):
    try:
        kind = TransactionKind.parse(data.get('kind', ''))
        currency = Currency.parse(data.get('currency') or 'USD')
    except ValueError as e:
        raise InvalidTransactionError(str(e), instrument=instrument)
    rate = data.get('exchange_rate')
    return Transaction(
        date=_parse_date(data.get('date')),
        kind=kind,
        quantity=_parse_amount(data.get('quantity'), 'quantity'),
        unit_price=_parse_amount(data.get('unit_price'), 'unit_price'),
        commission=_parse_amount(data.get('commission', 0), 'commission'),
        currency=currency,
        instrument=instrument,
        exchange_rate=_parse_amount(rate, 'exchange_rate') if rate not in (None, '') else None,
        id=data.get('id'),
    )


@app.errorhandler(CarteraError)
def handle_engine_error(error):
    status = 422 if isinstance(error, InsufficientLotsError) else 400
    logger.info("Error del motor (%s): %s", error.kind, error)
    return jsonify(error.to_dict()), status


@app.route('/api/health')
def health():
    return jsonify({'status': 'ok'})


@app.route('/api/fifo', methods=['POST'])
def fifo():
    payload = request.get_json(silent=True) or {}
    instrument = str(payload.get('instrument', '')).strip().upper()
    transactions = [_transaction_from_json(t, instrument) for t in payload.get('transactions', [])]
    return jsonify(fifo_to_dict(calculate_fifo(transactions, instrument)))


@app.route('/api/xirr', methods=['POST'])
def xirr():
    payload = request.get_json(silent=True) or {}
    flows = [
        CashflowPoint(date=_parse_date(f.get('date')), amount=_parse_amount(f.get('amount'), 'amount'))
        for f in payload.get('flows', [])
    ]
    return jsonify(xirr_to_dict(solve_xirr(flows)))


@app.route('/api/valuation', methods=['POST'])
def valuation():
    payload = request.get_json(silent=True) or {}
    quote = None
    if payload.get('price') not in (None, ''):
        try:
            currency = Currency.parse(payload.get('currency') or 'USD')
        except ValueError as e:
            raise InvalidTransactionError(str(e))
        quote = Quote(
            raw_price=_parse_amount(payload.get('price'), 'price'),
            raw_currency=currency,
            instrument_kind=InstrumentKind.parse(payload.get('instrument_kind', 'OTHER')),
        )
    result = value_position(
        quote,
        _parse_amount(payload.get('quantity'), 'quantity'),
        _parse_amount(payload.get('unit_cost', 0), 'unit_cost'),
        _parse_amount(payload.get('exchange_rate', 0), 'exchange_rate'),
        POLICY,
    )
    return jsonify(valuation_to_dict(result))


@app.route('/api/portfolio', methods=['POST'])
def portfolio():
    if 'transactions' not in request.files:
        return jsonify({'error': 'missing_file', 'message': 'Falta el archivo de transacciones'}), 400

    trans_stream = io.StringIO(request.files['transactions'].read().decode('utf-8-sig'))
    quotes_stream = None
    if 'quotes' in request.files:
        quotes_stream = io.StringIO(request.files['quotes'].read().decode('utf-8-sig'))

    exchange_rate = parse_decimal(request.form.get('exchange_rate') or Config.DEFAULT_EXCHANGE_RATE)
    as_of = _parse_date(request.form['as_of'], 'as_of') if request.form.get('as_of') else None

    summary = analyze_files(trans_stream, quotes_stream, exchange_rate, as_of, POLICY)
    return jsonify(portfolio_to_dict(summary))


if __name__ == '__main__':
    configure_logging()
    app.run(debug=app.config['DEBUG'])
