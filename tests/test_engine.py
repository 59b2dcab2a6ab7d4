import random
import unittest
from datetime import date, timedelta
from decimal import Decimal

from cartera_app.engine import FifoEngine, calculate_fifo
from cartera_app.errors import InsufficientLotsError, InvalidTransactionError
from cartera_app.ledger import LotLedger
from cartera_app.models import Transaction, TransactionKind


def buy(d, qty, price, commission='0', instrument='AAPL'):
    return Transaction(date=d, kind=TransactionKind.BUY, quantity=Decimal(qty),
                       unit_price=Decimal(price), commission=Decimal(commission), instrument=instrument)


def sell(d, qty, price, commission='0', instrument='AAPL'):
    return Transaction(date=d, kind=TransactionKind.SELL, quantity=Decimal(qty),
                       unit_price=Decimal(price), commission=Decimal(commission), instrument=instrument)


class TestFifoEngine(unittest.TestCase):

    def test_buy_then_partial_sell(self):
        """
        Compra 100 a 10 + 5 de comisión, venta 60 a 15 + 3 de comisión.
        Costo unitario = 10 + 5/100 = 10.05
        P&L = 60 * (15 - 10.05) - 3 = 297 - 3 = 294
        """
        result = calculate_fifo([
            buy(date(2024, 1, 1), '100', '10', '5'),
            sell(date(2024, 6, 1), '60', '15', '3'),
        ])

        self.assertEqual(len(result.closed_lots), 1)
        closed = result.closed_lots[0]
        self.assertEqual(closed.quantity, Decimal('60'))
        self.assertEqual(closed.buy_unit_cost, Decimal('10.05'))
        self.assertEqual(closed.sell_commission_share, Decimal('3'))
        self.assertEqual(closed.gain_abs, Decimal('294'))

        self.assertEqual(len(result.open_positions), 1)
        self.assertEqual(result.open_positions[0].remaining_quantity, Decimal('40'))
        self.assertEqual(result.open_positions[0].original_quantity, Decimal('100'))
        self.assertEqual(result.total_gain_abs, Decimal('294'))
        self.assertEqual(result.total_gain_percent, Decimal('294') / Decimal('603'))

    def test_sell_spans_several_lots(self):
        """La venta consume primero el lote más viejo y prorratea la comisión por cantidad."""
        result = calculate_fifo([
            buy(date(2024, 1, 1), '10', '100'),
            buy(date(2024, 2, 1), '10', '120'),
            sell(date(2024, 3, 1), '15', '130', '3'),
        ])

        first, second = result.closed_lots
        self.assertEqual(first.quantity, Decimal('10'))
        self.assertEqual(first.buy_unit_cost, Decimal('100'))
        self.assertEqual(first.sell_commission_share, Decimal('2'))
        self.assertEqual(first.gain_abs, Decimal('298'))
        self.assertEqual(first.buy_date, date(2024, 1, 1))

        self.assertEqual(second.quantity, Decimal('5'))
        self.assertEqual(second.buy_unit_cost, Decimal('120'))
        self.assertEqual(second.sell_commission_share, Decimal('1'))
        self.assertEqual(second.gain_abs, Decimal('49'))

        self.assertEqual(result.total_gain_abs, Decimal('347'))
        self.assertEqual(len(result.open_positions), 1)
        self.assertEqual(result.open_positions[0].remaining_quantity, Decimal('5'))
        self.assertEqual(result.open_positions[0].origin_date, date(2024, 2, 1))

    def test_commission_shares_add_up_exactly(self):
        result = calculate_fifo([
            buy(date(2024, 1, 1), '1', '10'),
            buy(date(2024, 1, 2), '1', '10'),
            buy(date(2024, 1, 3), '1', '10'),
            sell(date(2024, 2, 1), '3', '12', '1'),
        ])
        self.assertEqual(len(result.closed_lots), 3)
        self.assertEqual(sum(c.sell_commission_share for c in result.closed_lots), Decimal('1'))

    def test_partial_sell_keeps_lot_at_front(self):
        result = calculate_fifo([
            buy(date(2024, 1, 1), '10', '100'),
            buy(date(2024, 2, 1), '10', '200'),
            sell(date(2024, 3, 1), '4', '150'),
            sell(date(2024, 4, 1), '4', '150'),
        ])
        self.assertEqual([lot.remaining_quantity for lot in result.open_positions], [Decimal('2'), Decimal('10')])
        self.assertTrue(all(c.buy_unit_cost == Decimal('100') for c in result.closed_lots))

    def test_full_exit_leaves_no_open_lots(self):
        result = calculate_fifo([
            buy(date(2024, 1, 1), '10', '100'),
            sell(date(2024, 2, 1), '10', '90'),
        ])
        self.assertEqual(result.open_positions, ())
        self.assertEqual(result.open_quantity, Decimal('0'))
        self.assertEqual(result.average_open_cost, Decimal('0'))
        self.assertEqual(result.total_gain_abs, Decimal('-100'))
        self.assertEqual(result.total_gain_percent, Decimal('-0.1'))

    def test_no_sales_means_zero_percent(self):
        result = calculate_fifo([buy(date(2024, 1, 1), '10', '100', '10')])
        self.assertEqual(result.closed_lots, ())
        self.assertEqual(result.total_gain_percent, Decimal('0'))
        self.assertEqual(result.open_cost_basis, Decimal('1010'))
        self.assertEqual(result.average_open_cost, Decimal('101'))

    def test_zero_price_buy_is_allowed(self):
        """Una compra a precio 0 (derechos, acciones liberadas) solo carga la comisión."""
        result = calculate_fifo([buy(date(2024, 1, 1), '4', '0', '2')])
        self.assertEqual(result.open_positions[0].unit_cost, Decimal('0.5'))

    def test_unsorted_input_is_sorted_by_date(self):
        result = calculate_fifo([
            sell(date(2024, 3, 1), '5', '20'),
            buy(date(2024, 2, 1), '5', '12'),
            buy(date(2024, 1, 1), '5', '10'),
        ])
        self.assertEqual(result.closed_lots[0].buy_unit_cost, Decimal('10'))
        self.assertEqual(result.open_positions[0].unit_cost, Decimal('12'))

    def test_same_day_ties_keep_input_order(self):
        d = date(2024, 1, 1)
        result = calculate_fifo([
            buy(d, '5', '10'),
            buy(d, '5', '11'),
            sell(d, '5', '12'),
        ])
        self.assertEqual(result.closed_lots[0].buy_unit_cost, Decimal('10'))

    def test_usd_lots_default_to_unit_exchange_rate(self):
        result = calculate_fifo([
            buy(date(2024, 1, 1), '10', '100'),
            sell(date(2024, 2, 1), '4', '110'),
        ])
        self.assertEqual(result.open_positions[0].exchange_rate, Decimal('1'))
        self.assertEqual(result.closed_lots[0].buy_exchange_rate, Decimal('1'))
        self.assertEqual(result.open_exchange_rate_avg, Decimal('1'))
        self.assertEqual(result.closed_exchange_rate_avg, Decimal('1'))

        empty = calculate_fifo([buy(date(2024, 1, 1), '1', '1')])
        self.assertEqual(empty.closed_exchange_rate_avg, Decimal('1'))

    def test_instrument_is_inferred(self):
        result = calculate_fifo([buy(date(2024, 1, 1), '1', '1', instrument='GGAL')])
        self.assertEqual(result.instrument, 'GGAL')


class TestFifoInvariants(unittest.TestCase):

    def _random_history(self, rng, n=40):
        """Historia aleatoria sin sobreventas, con fechas distintas."""
        txs = []
        held = Decimal('0')
        d = date(2020, 1, 1)
        for _ in range(n):
            d += timedelta(days=rng.randint(1, 20))
            price = Decimal(rng.randint(50, 150))
            commission = Decimal(rng.randint(0, 5))
            if held > 0 and rng.random() < 0.4:
                qty = Decimal(rng.randint(1, int(held)))
                txs.append(sell(d, qty, price, commission))
                held -= qty
            else:
                qty = Decimal(rng.randint(1, 30))
                txs.append(buy(d, qty, price, commission))
                held += qty
        return txs

    def test_quantity_conservation(self):
        rng = random.Random(7)
        for _ in range(25):
            txs = self._random_history(rng)
            result = calculate_fifo(txs)
            bought = sum(t.quantity for t in txs if t.kind == TransactionKind.BUY)
            sold = sum(t.quantity for t in txs if t.kind == TransactionKind.SELL)

            self.assertEqual(result.open_quantity + result.closed_quantity, bought)
            self.assertEqual(result.closed_quantity, sold)
            self.assertEqual(result.open_quantity, bought - sold)
            self.assertTrue(all(lot.remaining_quantity > 0 for lot in result.open_positions))

    def test_order_invariance(self):
        rng = random.Random(42)
        for _ in range(10):
            txs = self._random_history(rng)
            expected = calculate_fifo(txs)
            for _ in range(10):
                shuffled = list(txs)
                rng.shuffle(shuffled)
                self.assertEqual(calculate_fifo(shuffled), expected)

    def test_total_gain_is_sum_of_closed_lots(self):
        rng = random.Random(3)
        result = calculate_fifo(self._random_history(rng, n=60))
        self.assertEqual(result.total_gain_abs, sum(c.gain_abs for c in result.closed_lots))


class TestFifoErrors(unittest.TestCase):

    def test_oversell_raises(self):
        ledger = LotLedger('AAPL', [
            buy(date(2024, 1, 1), '10', '100'),
            sell(date(2024, 2, 1), '4', '110'),
            sell(date(2024, 3, 1), '7', '120'),
        ])
        before = ledger.transactions

        with self.assertRaises(InsufficientLotsError) as ctx:
            FifoEngine(ledger).process()

        err = ctx.exception
        self.assertEqual(err.instrument, 'AAPL')
        self.assertEqual(err.attempted_quantity, Decimal('7'))
        self.assertEqual(err.available_quantity, Decimal('6'))
        self.assertEqual(err.date, date(2024, 3, 1))
        self.assertEqual(err.to_dict()['error'], 'insufficient_lots')
        # El ledger no queda alterado y el cálculo es repetible
        self.assertEqual(ledger.transactions, before)
        with self.assertRaises(InsufficientLotsError):
            FifoEngine(ledger).process()

    def test_sell_without_any_buy_is_invalid(self):
        with self.assertRaises(InvalidTransactionError) as ctx:
            calculate_fifo([
                sell(date(2024, 1, 1), '1', '10'),
                buy(date(2024, 2, 1), '1', '10'),
            ])
        self.assertIn('venta sin compra previa', ctx.exception.reason)

    def test_non_positive_quantity_is_invalid(self):
        for qty in ('0', '-5'):
            with self.assertRaises(InvalidTransactionError):
                LotLedger('AAPL', [buy(date(2024, 1, 1), qty, '10')])

    def test_negative_price_or_commission_is_invalid(self):
        with self.assertRaises(InvalidTransactionError):
            LotLedger('AAPL', [buy(date(2024, 1, 1), '1', '-10')])
        with self.assertRaises(InvalidTransactionError):
            LotLedger('AAPL', [buy(date(2024, 1, 1), '1', '10', '-1')])

    def test_non_finite_numbers_are_invalid(self):
        for bad in ('NaN', 'Infinity', 'sNaN'):
            with self.assertRaises(InvalidTransactionError):
                LotLedger('AAPL', [buy(date(2024, 1, 1), bad, '10')])
            with self.assertRaises(InvalidTransactionError):
                LotLedger('AAPL', [buy(date(2024, 1, 1), '1', bad)])
            with self.assertRaises(InvalidTransactionError):
                LotLedger('AAPL', [buy(date(2024, 1, 1), '1', '10', bad)])

    def test_foreign_instrument_is_invalid(self):
        ledger = LotLedger('AAPL')
        with self.assertRaises(InvalidTransactionError) as ctx:
            ledger.record(buy(date(2024, 1, 1), '1', '10', instrument='MSFT'))
        self.assertEqual(ctx.exception.to_dict()['instrument'], 'AAPL')
        self.assertEqual(len(ledger), 0)

    def test_ledger_tracks_quantities(self):
        ledger = LotLedger('AAPL', [
            buy(date(2024, 1, 1), '10', '100'),
            sell(date(2024, 2, 1), '4', '110'),
        ])
        self.assertEqual(ledger.bought_quantity, Decimal('10'))
        self.assertEqual(ledger.sold_quantity, Decimal('4'))


if __name__ == '__main__':
    unittest.main()
