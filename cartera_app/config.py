import logging
import os
from dotenv import load_dotenv

# Load environment variables from a .env file
load_dotenv()

class Config:
    """Base configuration."""
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'you-will-never-guess'
    DEBUG = os.environ.get('DEBUG', 'False').lower() in ('true', '1', 't')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

    # Tipo de cambio (ARS por USD) usado por la CLI si no se pasa --exchange-rate
    DEFAULT_EXCHANGE_RATE = os.environ.get('DEFAULT_EXCHANGE_RATE')

    # Umbrales de la heurística de valuación (ver valuation.ValuationPolicy)
    ARS_MISLABEL_THRESHOLD = os.environ.get('ARS_MISLABEL_THRESHOLD', '400')
    PAR_QUOTE_THRESHOLD = os.environ.get('PAR_QUOTE_THRESHOLD', '2.0')
    MIN_MARKET_VALUE = os.environ.get('MIN_MARKET_VALUE', '1')
    BOND_SANITY_THRESHOLD = os.environ.get('BOND_SANITY_THRESHOLD', '1000000')


def configure_logging(level=None):
    """Configura el logging raíz para los puntos de entrada (CLI y app)."""
    level = level or Config.LOG_LEVEL
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
