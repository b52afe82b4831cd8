"""Ciclo de vida de las fuentes de fondos.

Vinculación de cuentas bancarias, activación de líneas de crédito (bancaria y
de red), configuración de PIN y generación de direcciones UPI. Toda dirección
se registra en UpiAddress dentro de la misma transacción que su dueño.
"""

import logging
import random
import re
from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from config import get_settings
from database import DBSession
from errors import AlreadyExists, InternalError, NotFound, Unauthorized, ValidationError
from models import BankAccount, BankCreditLine, NetworkCreditLine, UpiAddress, User
from security import Caller, fingerprint, hash_password, hash_pin, validate_pin_format
from transaction import mask_account_number

logger = logging.getLogger(__name__)
settings = get_settings()

ACCOUNT_TYPES = ('saving', 'current', 'salary', 'fixed_deposit')
ACCOUNT_NUMBER_PATTERN = re.compile(r'^\d{9,18}$')
AADHAAR_PATTERN = re.compile(r'^\d{12}$')
PAN_PATTERN = re.compile(r'^[A-Z]{5}[0-9]{4}[A-Z]$')


# generate_upi_id: nombre en minúsculas alfanumérico + 1..9999 + handle aleatorio.
# Solo propone candidatos; la restricción única del registro decide.
def generate_upi_id(session: Session, name: Optional[str]) -> str:
    base = re.sub(r'[^a-zA-Z0-9]', '', name or '').lower() or 'user'
    candidate = base + str(random.randint(1, 9999)) + random.choice(settings.upi_handles)
    for _ in range(settings.upi_id_retries):
        if not session.exec(select(UpiAddress).where(UpiAddress.address == candidate)).first():
            break
        candidate = base + str(random.randint(1, 9999)) + random.choice(settings.upi_handles)
    return candidate

def _persist_with_upi(session: Session, name: Optional[str], user_id: int, kind: str, build, conflict):
    """Inserta la entidad y su dirección UPI; reintenta si la dirección choca.

    conflict() se consulta tras un IntegrityError para distinguir un duplicado
    real de la entidad (AlreadyExists) de una colisión de dirección.
    """
    for attempt in range(settings.upi_id_retries):
        upi_id = generate_upi_id(session, name)
        entity = build(upi_id)
        session.add(entity)
        session.add(UpiAddress(address=upi_id, user_id=user_id, kind=kind))
        try:
            session.commit()
        except IntegrityError as e:
            session.rollback()
            if conflict():
                raise AlreadyExists()
            logger.warning("UPI id %s collided (attempt %d): %s", upi_id, attempt + 1, e.orig)
            continue
        session.refresh(entity)
        logger.info("Created %s %s with UPI id %s for user %s", kind, entity.id, upi_id, user_id)
        return entity
    logger.error("Could not allocate a unique UPI id for user %s after %d attempts", user_id, settings.upi_id_retries)
    raise InternalError()

def _get_user(session: Session, caller: Caller) -> User:
    user = session.get(User, caller.user_id)
    if not user:
        raise NotFound('User not found')
    return user

def _owned_account(session: Session, caller: Caller, account_id: int) -> BankAccount:
    account = session.get(BankAccount, account_id)
    if not account:
        raise NotFound('Bank account not found')
    if account.user_id != caller.user_id:
        raise Unauthorized('Unauthorized')
    return account

# ----------------------------- Usuarios -----------------------------

def create_user(phone: str, name: Optional[str], password: str) -> User:
    if not phone:
        raise ValidationError('The phone field is required.')
    with DBSession() as s:
        if s.exec(select(User).where(User.phone == phone)).first():
            raise AlreadyExists('Phone already registered')
        user = User(phone=phone, name=name, password_hash=hash_password(password))
        s.add(user)
        try:
            s.commit()
        except IntegrityError:
            raise AlreadyExists('Phone already registered')
        s.refresh(user)
        return user

def update_fcm_token(caller: Caller, token: str) -> None:
    with DBSession() as s:
        user = _get_user(s, caller)
        user.fcm_token = token
        s.add(user)
        s.commit()

# -------------------------- Cuentas bancarias --------------------------

def link_bank_account(caller: Caller, bank_id: int, account_number: str, account_type: str, pin, pin_confirmation,
                      account_holder_name: Optional[str] = None, aadhaar_number: Optional[str] = None,
                      pan_number: Optional[str] = None) -> BankAccount:
    """Vincula una cuenta bancaria al usuario.

    Guarda Aadhaar/PAN en el usuario si aún no los tiene (obligatorios en ese
    caso), hashea el PIN y marca como primaria la primera cuenta del usuario.
    """
    account_number = str(account_number or '')
    if not ACCOUNT_NUMBER_PATTERN.match(account_number):
        raise ValidationError('The account number must be between 9 and 18 digits.')
    if account_type not in ACCOUNT_TYPES:
        raise ValidationError('The selected account type is invalid.')
    pin = validate_pin_format(pin)
    if str(pin_confirmation) != pin:
        raise ValidationError('The pin code confirmation does not match.')

    digest = fingerprint(account_number)
    with DBSession() as s:
        user = _get_user(s, caller)
        if not user.aadhaar_number:
            if not aadhaar_number or not AADHAAR_PATTERN.match(str(aadhaar_number)):
                raise ValidationError('The aadhaar number must be 12 digits.')
            user.aadhaar_number = str(aadhaar_number)
        if not user.pan_number:
            if not pan_number or not PAN_PATTERN.match(str(pan_number)):
                raise ValidationError('The pan number format is invalid.')
            user.pan_number = str(pan_number)
        if not user.name and account_holder_name:
            user.name = account_holder_name
        if s.exec(select(BankAccount).where(BankAccount.account_fingerprint == digest)).first():
            raise AlreadyExists('The account number has already been taken.')
        s.add(user)
        s.commit()

        is_primary = s.exec(select(BankAccount).where(BankAccount.user_id == user.id)).first() is None
        holder = user.name or account_holder_name

        def build(upi_id):
            return BankAccount(
                user_id=user.id,
                bank_id=bank_id,
                upi_id=upi_id,
                account_holder_name=holder,
                account_number=account_number,
                account_fingerprint=digest,
                account_type=account_type,
                balance=Decimal('0.00'),
                pin_hash=hash_pin(pin),
                pin_length=len(pin),
                is_primary=is_primary,
            )

        def conflict():
            return s.exec(select(BankAccount).where(BankAccount.account_fingerprint == digest)).first() is not None

        return _persist_with_upi(s, holder, user.id, BankAccount.source_kind, build, conflict)

def set_primary_account(caller: Caller, account_id: int) -> BankAccount:
    """Mueve la marca de cuenta primaria en una sola transacción."""
    with DBSession() as s:
        account = _owned_account(s, caller, account_id)
        s.connection().execute(
            update(BankAccount).where(BankAccount.user_id == caller.user_id).values(is_primary=False)
        )
        s.connection().execute(
            update(BankAccount).where(BankAccount.id == account.id).values(is_primary=True)
        )
        s.commit()
        s.refresh(account)
        return account

def list_bank_accounts(caller: Caller) -> list:
    with DBSession() as s:
        accounts = s.exec(select(BankAccount).where(BankAccount.user_id == caller.user_id)
                          .order_by(BankAccount.id)).all()
        result = []
        for account in accounts:
            line = s.exec(select(BankCreditLine).where(BankCreditLine.bank_account_id == account.id)).first()
            result.append({
                'id': account.id,
                'bank_id': account.bank_id,
                'upi_id': account.upi_id,
                'account_holder_name': account.account_holder_name,
                'account_number': mask_account_number(account.account_number),
                'account_type': account.account_type,
                'is_primary': account.is_primary,
                'bank_credit_upi': {
                    'id': line.id,
                    'upi_id': line.upi_id,
                    'status': 'active' if line.pin_hash else 'inactive',
                } if line else None,
            })
        return result

# -------------------------- Líneas de crédito --------------------------

def activate_bank_credit_line(caller: Caller, bank_account_id: int) -> BankCreditLine:
    """Activa la línea de crédito de una cuenta propia con un límite aleatorio."""
    with DBSession() as s:
        account = _owned_account(s, caller, bank_account_id)
        if s.exec(select(BankCreditLine).where(BankCreditLine.bank_account_id == account.id)).first():
            raise AlreadyExists('Already activated')
        limit = Decimal(random.choice(settings.credit_amounts))

        def build(upi_id):
            return BankCreditLine(user_id=caller.user_id, bank_account_id=account.id, upi_id=upi_id,
                                  credit_limit=limit, available_credit=limit)

        def conflict():
            return s.exec(select(BankCreditLine).where(BankCreditLine.bank_account_id == account.id)).first() is not None

        return _persist_with_upi(s, account.account_holder_name, caller.user_id, BankCreditLine.source_kind,
                                 build, conflict)

def activate_network_credit_line(caller: Caller) -> NetworkCreditLine:
    with DBSession() as s:
        user = _get_user(s, caller)
        if s.exec(select(NetworkCreditLine).where(NetworkCreditLine.user_id == user.id)).first():
            raise AlreadyExists('Already exists')
        limit = Decimal(random.choice(settings.credit_amounts))

        def build(upi_id):
            return NetworkCreditLine(user_id=user.id, upi_id=upi_id, credit_limit=limit, available_credit=limit)

        def conflict():
            return s.exec(select(NetworkCreditLine).where(NetworkCreditLine.user_id == user.id)).first() is not None

        return _persist_with_upi(s, user.name, user.id, NetworkCreditLine.source_kind, build, conflict)

def set_credit_line_pin(caller: Caller, kind: str, line_id: int, pin, pin_confirmation):
    """Configura (o reemplaza) el PIN de una línea de crédito propia."""
    models = {'bank': BankCreditLine, 'network': NetworkCreditLine}
    if kind not in models:
        raise ValidationError('The selected credit line kind is invalid.')
    pin = validate_pin_format(pin)
    if str(pin_confirmation) != pin:
        raise ValidationError('The pin code confirmation does not match.')
    with DBSession() as s:
        line = s.get(models[kind], line_id)
        if not line:
            raise NotFound('Credit line not found')
        if line.user_id != caller.user_id:
            raise Unauthorized('Unauthorized')
        line.pin_hash = hash_pin(pin)
        line.pin_length = len(pin)
        s.add(line)
        s.commit()
        s.refresh(line)
        return line

def list_credit_lines(caller: Caller) -> list:
    with DBSession() as s:
        lines = list(s.exec(select(BankCreditLine).where(BankCreditLine.user_id == caller.user_id)
                            .order_by(BankCreditLine.id)).all())
        lines += list(s.exec(select(NetworkCreditLine).where(NetworkCreditLine.user_id == caller.user_id)).all())
        return [{
            'id': line.id,
            'kind': 'bank' if isinstance(line, BankCreditLine) else 'network',
            'upi_id': line.upi_id,
            'bank_account_id': getattr(line, 'bank_account_id', None),
            'credit_limit': line.credit_limit,
            'available_credit': line.available_credit,
            'status': 'active' if line.pin_hash else 'inactive',
        } for line in lines]
