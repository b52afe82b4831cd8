"""Modelos de datos persistentes.

Incluye usuarios, fuentes de fondos (cuenta bancaria, línea de crédito bancaria,
línea de crédito de red), el registro global de direcciones UPI y el log
inmutable de transacciones.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import ClassVar, Optional

from sqlalchemy import Column, Text
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field

from security import encrypt_value, decrypt_value


# utcnow: Marca de tiempo UTC con zona horaria.
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EncryptedString(TypeDecorator):
    """Columna de texto cifrada con Fernet al escribir y descifrada al leer."""
    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return encrypt_value(value)

    def process_result_value(self, value, dialect):
        return decrypt_value(value)


class User(SQLModel, table=True):
    """Usuario dueño de fuentes de fondos.

    Campos:
      phone: Único, usado para resolver receptores por número.
      aadhaar_number / pan_number: Cifrados en reposo.
      fcm_token: Destino de notificaciones push.
    """
    __tablename__ = 'users'

    id: Optional[int] = Field(default=None, primary_key=True)
    phone: str = Field(index=True, unique=True)
    name: Optional[str] = None
    password_hash: Optional[str] = None
    aadhaar_number: Optional[str] = Field(default=None, sa_column=Column(EncryptedString, nullable=True))
    pan_number: Optional[str] = Field(default=None, sa_column=Column(EncryptedString, nullable=True))
    fcm_token: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class UpiAddress(SQLModel, table=True):
    """Registro global de direcciones UPI.

    Toda entidad con dirección inserta aquí su fila en la misma transacción;
    la restricción única sobre address es el único dominio de unicidad.
    """
    __tablename__ = 'upi_addresses'

    id: Optional[int] = Field(default=None, primary_key=True)
    address: str = Field(index=True, unique=True)
    user_id: int = Field(index=True, foreign_key='users.id')
    kind: str  # bank_account | bank_credit_line | network_credit_line
    created_at: datetime = Field(default_factory=utcnow)


class BankAccount(SQLModel, table=True):
    """Cuenta de depósito vinculada por el usuario.

    balance nunca debe quedar negativo; solo el ledger lo modifica.
    """
    __tablename__ = 'bank_accounts'
    source_kind: ClassVar[str] = 'bank_account'

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True, foreign_key='users.id')
    bank_id: int = Field(index=True)
    upi_id: str = Field(index=True, unique=True)
    account_holder_name: Optional[str] = None
    account_number: str = Field(sa_column=Column(EncryptedString, nullable=False))
    account_fingerprint: str = Field(unique=True)
    account_type: str = Field(default='saving')  # saving | current | salary | fixed_deposit
    balance: Decimal = Field(default=Decimal('0.00'), max_digits=18, decimal_places=2)
    pin_hash: Optional[str] = None
    pin_length: Optional[int] = None
    is_primary: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)


class BankCreditLine(SQLModel, table=True):
    """Línea de crédito emitida por el banco de una cuenta vinculada.

    A lo sumo una por cuenta bancaria; sin PIN no autoriza débitos.
    """
    __tablename__ = 'bank_credit_lines'
    source_kind: ClassVar[str] = 'bank_credit_line'

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True, foreign_key='users.id')
    bank_account_id: int = Field(unique=True, foreign_key='bank_accounts.id')
    upi_id: str = Field(index=True, unique=True)
    credit_limit: Decimal = Field(max_digits=18, decimal_places=2)
    available_credit: Decimal = Field(max_digits=18, decimal_places=2)
    pin_hash: Optional[str] = None
    pin_length: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)


class NetworkCreditLine(SQLModel, table=True):
    """Línea de crédito emitida por la red (no anclada a un banco)."""
    __tablename__ = 'network_credit_lines'
    source_kind: ClassVar[str] = 'network_credit_line'

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True, unique=True, foreign_key='users.id')
    upi_id: str = Field(index=True, unique=True)
    credit_limit: Decimal = Field(max_digits=18, decimal_places=2)
    available_credit: Decimal = Field(max_digits=18, decimal_places=2)
    pin_hash: Optional[str] = None
    pin_length: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)


class Transaction(SQLModel, table=True):
    """Registro inmutable de cada intento de transferencia.

    Exactamente uno de from_account_id/from_upi_id y uno de
    to_account_id/to_upi_id/to_bank_id/to_phone vienen informados; to_phone
    solo queda cuando el teléfono del receptor no llegó a resolverse.
    """
    __tablename__ = 'transactions'

    id: Optional[int] = Field(default=None, primary_key=True)
    transaction_id: str = Field(index=True, unique=True)
    type: str = Field(default='bank', index=True)  # bank | credit_upi
    status: str = Field(default='pending', index=True)  # pending | completed | failed
    from_account_id: Optional[int] = Field(default=None, index=True)
    from_upi_id: Optional[str] = Field(default=None, index=True)
    to_account_id: Optional[int] = Field(default=None, index=True)
    to_upi_id: Optional[str] = Field(default=None, index=True)
    to_bank_id: Optional[int] = Field(default=None, index=True)
    to_phone: Optional[str] = Field(default=None, index=True)
    amount: Decimal = Field(max_digits=18, decimal_places=2)
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)


CREDIT_LINE_MODELS = (BankCreditLine, NetworkCreditLine)
