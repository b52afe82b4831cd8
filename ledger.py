"""Ledger de saldos y crédito disponible.

apply_transfer mueve valor entre dos fuentes dentro de una única transacción
de base de datos: bloquea ambas filas en orden determinístico y aplica
UPDATEs condicionales, de modo que la verificación de suficiencia y la
mutación son la misma sentencia.
"""

import logging
from decimal import Decimal

from sqlalchemy import Numeric, func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from errors import CreditLimitExceeded, InsufficientFunds, InvalidReceiver, ValidationError
from models import BankAccount, CREDIT_LINE_MODELS
from resolver import same_source

logger = logging.getLogger(__name__)


# balance_of: Saldo (cuenta) o crédito disponible (línea) de una fuente.
def balance_of(source) -> Decimal:
    if isinstance(source, BankAccount):
        return Decimal(source.balance)
    if isinstance(source, CREDIT_LINE_MODELS):
        return Decimal(source.available_credit)
    raise TypeError(f"Unsupported funding source: {source!r}")

def sufficient(source, amount: Decimal) -> bool:
    return balance_of(source) >= amount

# has_headroom: La línea receptora no puede superar su techo de crédito.
def has_headroom(line, amount: Decimal) -> bool:
    return Decimal(line.available_credit) + amount <= Decimal(line.credit_limit)

# _cents: Redondeo a centavos en SQL (SQLite guarda NUMERIC como REAL), así la
# condición del UPDATE coincide con el saldo que ve sufficient().
def _cents(expression):
    return func.round(expression, 2, type_=Numeric(18, 2))

def _debit_statement(source, amount: Decimal):
    model = type(source)
    column = model.balance if model is BankAccount else model.available_credit
    return (update(model)
            .where(model.id == source.id, _cents(column) >= amount)
            .values({column.key: _cents(column - amount)}))

def _credit_statement(source, amount: Decimal):
    model = type(source)
    if model is BankAccount:
        return (update(BankAccount)
                .where(BankAccount.id == source.id)
                .values(balance=_cents(BankAccount.balance + amount)))
    return (update(model)
            .where(model.id == source.id, _cents(model.available_credit + amount) <= _cents(model.credit_limit))
            .values(available_credit=_cents(model.available_credit + amount)))

# _lock_rows: SELECT ... FOR UPDATE sobre ambas filas, ordenadas por (tabla, id)
# para que dos transferencias cruzadas no se bloqueen mutuamente.
def _lock_rows(session: Session, *sources):
    for source in sorted(sources, key=lambda s: (type(s).__tablename__, s.id)):
        model = type(source)
        statement = (select(model)
                     .where(model.id == source.id)
                     .with_for_update()
                     .execution_options(populate_existing=True))
        session.exec(statement).one()

def apply_transfer(session: Session, debit_source, credit_source, amount: Decimal):
    """Debita debit_source y acredita credit_source de forma atómica.

    Lanza InsufficientFunds o CreditLimitExceeded (con rollback completo) si la
    condición deja de cumplirse con las filas ya bloqueadas.
    """
    if amount <= 0:
        raise ValidationError('Amount must be positive')
    if same_source(debit_source, credit_source):
        raise InvalidReceiver('Invalid receiver account')
    if not isinstance(debit_source, (BankAccount,) + CREDIT_LINE_MODELS):
        raise TypeError(f"Unsupported funding source: {debit_source!r}")
    if not isinstance(credit_source, (BankAccount,) + CREDIT_LINE_MODELS):
        raise TypeError(f"Unsupported funding source: {credit_source!r}")
    try:
        _lock_rows(session, debit_source, credit_source)
        connection = session.connection()
        if connection.execute(_debit_statement(debit_source, amount)).rowcount != 1:
            raise InsufficientFunds('Insufficient balance')
        if connection.execute(_credit_statement(credit_source, amount)).rowcount != 1:
            raise CreditLimitExceeded()
        session.commit()
    except Exception:
        session.rollback()
        raise
    # Ya confirmado: una falla al recargar no deshace ni invalida el movimiento.
    try:
        session.refresh(debit_source)
        session.refresh(credit_source)
    except SQLAlchemyError as e:
        logger.warning("Could not reload balances after commit: %s", e)
    logger.info("Moved %s from %s %s to %s %s", amount, debit_source.source_kind, debit_source.id,
                credit_source.source_kind, credit_source.id)
