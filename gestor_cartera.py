import argparse
import csv
import os
import sys
from datetime import date

from cartera_app.config import Config, configure_logging
from cartera_app.errors import CarteraError
from cartera_app.logic import (
    frame_to_transactions, load_quotes_frame, load_transactions_frame, analyze_portfolio,
    parse_decimal, realized_by_year
)
from cartera_app.valuation import ValuationPolicy

# ==========================================
# ESTILOS Y COLORES
# ==========================================
class Style:
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED_TXT = '\033[91m'
    GREEN_TXT = '\033[92m'
    WHITE = '\033[97m'
    CYAN = '\033[96m'
    YELLOW = '\033[93m'

    @staticmethod
    def color_line(text, val, is_estimated=False):
        if is_estimated: return f"{Style.YELLOW}{text}{Style.RESET}"
        if val > 0.001: return f"{Style.GREEN_TXT}{text}{Style.RESET}"
        if val < -0.001: return f"{Style.RED_TXT}{text}{Style.RESET}"
        return f"{Style.WHITE}{text}{Style.RESET}"

# ==========================================
# CONFIGURACIÓN
# ==========================================
def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Gestor de Cartera: P&L FIFO y TIR por posición')
    parser.add_argument('--transactions', type=str, default='Transacciones.csv', help='Ruta CSV de operaciones')
    parser.add_argument('--quotes', type=str, default=None, help='Ruta CSV de cotizaciones')
    parser.add_argument('--exchange-rate', type=str, default=Config.DEFAULT_EXCHANGE_RATE, help='TC ARS por USD')
    parser.add_argument('--as-of', type=date.fromisoformat, default=None, help='Fecha de corte (AAAA-MM-DD)')
    parser.add_argument('--report', action='store_true', help='Generar CSVs en informes/')
    parser.add_argument('--log-level', type=str, default=Config.LOG_LEVEL)
    return parser.parse_args(argv)

def fmt_rate(result):
    if result is None or not result.converged: return "n/a"
    return f"{result.rate * 100:.2f}%"

# ==========================================
# REPORTING (Consola)
# ==========================================
def print_report(summary, as_of):
    print("\n" + Style.BOLD + "="*100 + Style.RESET)
    print(f" {Style.BOLD}INFORME DE CARTERA al {as_of.isoformat()}{Style.RESET}")
    print(Style.BOLD + "="*100 + Style.RESET)

    # 1. Posiciones
    print(f"\n{Style.BOLD}1. POSICIONES{Style.RESET}")
    if summary.positions:
        print(f"{'TICKER':<10} {'CANT':>12} {'COSTO':>12} {'VALOR':>12} {'REALIZ.':>10} {'NO REALIZ.':>11} {'TIR':>8}")
        print("-" * 100)
        for p in summary.positions:
            v = p.valuation
            line = (f"{p.instrument:<10} {float(p.fifo.open_quantity):>12.2f} {float(v.cost_basis):>12.2f} "
                    f"{float(v.market_value):>12.2f} {float(p.realized_gain):>10.2f} "
                    f"{float(v.unrealized_gain):>11.2f} {fmt_rate(p.xirr):>8}")
            if v.is_estimated and p.fifo.open_quantity > 0: line += "  (a costo)"
            print(Style.color_line(line, float(p.realized_gain + v.unrealized_gain),
                                   is_estimated=v.is_estimated and p.fifo.open_quantity > 0))
    else:
        print("   (Sin posiciones)")

    # 2. Realizado por año
    print(f"\n{Style.BOLD}2. P&L REALIZADO POR AÑO{Style.RESET}")
    for year, total in realized_by_year(p.fifo for p in summary.positions).items():
        print(Style.color_line(f"{year}: {float(total):.2f} USD", float(total)))

    # 3. Errores
    if summary.errors:
        print(f"\n{Style.BOLD}3. INSTRUMENTOS OMITIDOS{Style.RESET}")
        for err in summary.errors:
            print(f"{Style.RED_TXT}{err.get('instrument') or '?'}: {err['message']}{Style.RESET}")

    print("-" * 100)
    print(f"REALIZADO: {Style.color_line(f'{float(summary.total_realized):.2f} USD', float(summary.total_realized))}")
    print(f"NO REALIZADO: {Style.color_line(f'{float(summary.total_unrealized):.2f} USD', float(summary.total_unrealized))}")
    print(f"VALOR CARTERA: {float(summary.total_market_value):.2f} USD")
    print(f"TIR CONSOLIDADA: {fmt_rate(summary.consolidated_xirr)}")

# ==========================================
# EXPORTACIÓN (CSV Folders)
# ==========================================
def fmt_num(val, places=2):
    """Convierte a string formato argentino (coma decimal)"""
    if val is None: return "0,00"
    return f"{float(val):.{places}f}".replace('.', ',')

def export_all(summary, as_of, base_dir="informes"):
    base_dir = os.path.join(base_dir, as_of.isoformat())
    os.makedirs(base_dir, exist_ok=True)

    # Lotes cerrados CSV
    with open(os.path.join(base_dir, "lotes_cerrados.csv"), 'w', newline='', encoding='utf-8-sig') as f:
        w = csv.writer(f, delimiter=';')
        w.writerow(["TICKER", "F.COMPRA", "F.VENTA", "CANTIDAD", "COSTO UNIT", "TC COMPRA", "PRECIO VENTA", "COMISION", "P&L"])
        for p in summary.positions:
            for c in p.fifo.closed_lots:
                w.writerow([p.instrument, c.buy_date.isoformat(), c.sell_date.isoformat(),
                            fmt_num(c.quantity, 4), fmt_num(c.buy_unit_cost, 4), fmt_num(c.buy_exchange_rate),
                            fmt_num(c.sell_unit_price, 4), fmt_num(c.sell_commission_share), fmt_num(c.gain_abs)])

    # Lotes abiertos CSV
    with open(os.path.join(base_dir, "lotes_abiertos.csv"), 'w', newline='', encoding='utf-8-sig') as f:
        w = csv.writer(f, delimiter=';')
        w.writerow(["TICKER", "F.COMPRA", "CANTIDAD", "COSTO UNIT", "TC COMPRA", "COSTO TOTAL", "VALUACION"])
        for p in summary.positions:
            for lot in p.fifo.open_positions:
                w.writerow([p.instrument, lot.origin_date.isoformat(), fmt_num(lot.remaining_quantity, 4),
                            fmt_num(lot.unit_cost, 4), fmt_num(lot.exchange_rate), fmt_num(lot.cost_basis),
                            p.valuation.valuation_basis.value])

    print(f"{Style.CYAN}CSVs generados en: {base_dir}/{Style.RESET}")
    return base_dir

def main(argv=None):
    args = parse_args(argv)
    configure_logging(args.log_level)
    as_of = args.as_of or date.today()

    with open(args.transactions, 'r', encoding='utf-8') as ft:
        df_t = load_transactions_frame(ft)
    if df_t.empty: sys.exit("Error: No se cargaron transacciones.")

    quotes = {}
    if args.quotes:
        with open(args.quotes, 'r', encoding='utf-8') as fq:
            quotes = load_quotes_frame(fq)

    try:
        transactions = frame_to_transactions(df_t)
    except CarteraError as e:
        sys.exit(f"Error: {e}")

    summary = analyze_portfolio(transactions, quotes, parse_decimal(args.exchange_rate), as_of,
                                ValuationPolicy.from_config(Config))
    print_report(summary, as_of)

    if args.report:
        export_all(summary, as_of)
    return summary

if __name__ == "__main__":
    main()
