"""Módulo de configuración del backend de pagos UPI.

Proporciona lectura de variables de entorno (con soporte de archivo .env local)
y los parámetros de negocio usados por el ledger: límites de monto, montos de
crédito asignables y handles de direcciones UPI.

Formato esperado en UPI_HANDLES:
  "@oksbi,@okaxis,..." (lista separada por comas).
"""

import os
from decimal import Decimal
from pathlib import Path
from functools import lru_cache
from typing import List
from dotenv import load_dotenv

DEFAULT_UPI_HANDLES = ['@oksbi', '@okaxis', '@okicici', '@okhdfcbank', '@okyesbank']
DEFAULT_CREDIT_AMOUNTS = [20000, 35000, 50000, 75000, 90000, 100000]

# parse_list: Convierte una cadena separada por comas en lista limpia.
def parse_list(raw: str) -> List[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(',') if item.strip()]

# parse_amounts: Igual que parse_list pero devolviendo enteros; ignora basura.
def parse_amounts(raw: str) -> List[int]:
    amounts: List[int] = []
    for item in parse_list(raw):
        try:
            amounts.append(int(item))
        except ValueError:
            continue
    return amounts

# get_settings: Devuelve (cacheado) la instancia única de Settings.
@lru_cache
def get_settings():
    return Settings()

class Settings:
    """Agrupa todos los parámetros de configuración usados en la aplicación.

    Se inicializa leyendo variables de entorno. Incluye base de datos, JWT,
    clave de cifrado de campos sensibles, notificaciones y reintentos.
    """
    def __init__(self):
        # Cargar .env local (aislado al directorio del módulo)
        base_dir = Path(__file__).resolve().parent
        load_dotenv(base_dir / '.env')

        default_db_path = base_dir / 'upi_ledger.db'
        self.database_url = os.getenv('UPI_DB_URL', f"sqlite:///{default_db_path}")
        self.jwt_secret = os.getenv('JWT_SECRET', 'dev-secret-change')
        self.jwt_algorithm = os.getenv('JWT_ALG', 'HS256')
        self.jwt_exp_minutes = int(os.getenv('JWT_EXP_MIN', '60'))

        # Clave Fernet (base64 urlsafe). Vacía = se genera una por proceso.
        self.field_encryption_key = os.getenv('FIELD_ENCRYPTION_KEY', '')
        self.pin_hash_rounds = int(os.getenv('PIN_HASH_ROUNDS', '12'))

        # Notificaciones push (mejor esfuerzo)
        self.notification_url = os.getenv('NOTIFICATION_URL', '')
        self.notification_workers = int(os.getenv('NOTIFICATION_WORKERS', '4'))
        self.request_timeout = float(os.getenv('REQUEST_TIMEOUT', '3'))

        # Reintentos ante colisión de identificadores generados
        self.tx_id_retries = int(os.getenv('TX_ID_RETRIES', '3'))
        self.upi_id_retries = int(os.getenv('UPI_ID_RETRIES', '10'))

        self.upi_handles = parse_list(os.getenv('UPI_HANDLES', '')) or list(DEFAULT_UPI_HANDLES)
        self.credit_amounts = parse_amounts(os.getenv('CREDIT_AMOUNTS', '')) or list(DEFAULT_CREDIT_AMOUNTS)
        self.max_amount = Decimal(os.getenv('MAX_TRANSFER_AMOUNT', '999999999999.99'))
        self.history_page_size = int(os.getenv('HISTORY_PAGE_SIZE', '20'))
        self.log_level = os.getenv('LOG_LEVEL', 'INFO').upper()
