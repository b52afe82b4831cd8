"""Servicio del log de transacciones: escritura de registros y consultas de historial."""

import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import and_, func, not_, or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from config import get_settings
from database import DBSession
from errors import NotFound, ValidationError
from models import BankAccount, BankCreditLine, Transaction, UpiAddress, User

logger = logging.getLogger(__name__)
settings = get_settings()

STATUS_PENDING = 'pending'
STATUS_COMPLETED = 'completed'
STATUS_FAILED = 'failed'
STATUSES = (STATUS_PENDING, STATUS_COMPLETED, STATUS_FAILED)

TYPE_BANK = 'bank'
TYPE_CREDIT_UPI = 'credit_upi'

DATE_RANGES = {
    '24h': timedelta(hours=24),
    '7d': timedelta(days=7),
    '14d': timedelta(days=14),
    '1m': timedelta(days=30),
    '3m': timedelta(days=90),
}

AMOUNT_RANGES = {
    'upto_1000': (None, 1000),
    '1000_10000': (1000, 10000),
    '10000_15000': (10000, 15000),
    '15000_25000': (15000, 25000),
    '25000_50000': (25000, 50000),
    '50000_75000': (50000, 75000),
    '75000_100000': (75000, 100000),
}

PAYMENT_TYPES = ('send_money', 'receive_money', 'self_transfer')

SENDER_FIELDS = ('from_account_id', 'from_upi_id')
RECEIVER_FIELDS = ('to_account_id', 'to_upi_id', 'to_bank_id', 'to_phone')


# mask_account_number: Deja visibles solo los últimos 4 dígitos.
def mask_account_number(number: Optional[str]) -> Optional[str]:
    if not number:
        return None
    return 'XXXX XXXX ' + number[-4:]

# _pick_one: Primer campo informado según precedencia; el resto queda en None.
def _pick_one(payload: dict, fields) -> dict:
    for name in fields:
        if payload.get(name) not in (None, ''):
            return {name: payload[name]}
    return {}

def serialize(tx: Transaction) -> dict:
    return {
        'transaction_id': tx.transaction_id,
        'type': tx.type,
        'status': tx.status,
        'amount': tx.amount,
        'description': tx.description,
        'from_account_id': tx.from_account_id,
        'from_upi_id': tx.from_upi_id,
        'to_account_id': tx.to_account_id,
        'to_upi_id': tx.to_upi_id,
        'to_bank_id': tx.to_bank_id,
        'to_phone': tx.to_phone,
        'created_at': tx.created_at,
    }


class OwnedRefs:
    """Referencias (ids y direcciones) que pertenecen a un usuario.

    Permite expresar "el usuario es emisor/receptor" como cláusulas SQL sobre
    los campos sueltos del registro.
    """
    def __init__(self, session: Session, user_id: int):
        self.user_id = user_id
        self.account_ids = list(session.exec(select(BankAccount.id).where(BankAccount.user_id == user_id)).all())
        self.upi_ids = list(session.exec(select(UpiAddress.address).where(UpiAddress.user_id == user_id)).all())
        self.line_ids = list(session.exec(select(BankCreditLine.id).where(BankCreditLine.user_id == user_id)).all())

    def sender_clause(self):
        return or_(Transaction.from_account_id.in_(self.account_ids),
                   Transaction.from_upi_id.in_(self.upi_ids))

    def receiver_clause(self):
        return or_(Transaction.to_account_id.in_(self.account_ids),
                   Transaction.to_upi_id.in_(self.upi_ids),
                   Transaction.to_bank_id.in_(self.line_ids))

    def is_sender(self, tx: Transaction) -> bool:
        return tx.from_account_id in self.account_ids or tx.from_upi_id in self.upi_ids

    def is_receiver(self, tx: Transaction) -> bool:
        return (tx.to_account_id in self.account_ids or tx.to_upi_id in self.upi_ids
                or tx.to_bank_id in self.line_ids)


# _describe_party: Resume al dueño de una referencia (cuenta, UPI o línea).
def _describe_party(session: Session, account_id=None, upi_id=None, bank_line_id=None,
                    phone=None) -> Optional[dict]:
    user = None
    summary = {}
    if account_id is not None:
        account = session.get(BankAccount, account_id)
        if account:
            user = session.get(User, account.user_id)
            summary['account'] = mask_account_number(account.account_number)
    elif upi_id:
        owner = session.exec(select(UpiAddress).where(UpiAddress.address == upi_id)).first()
        if owner:
            user = session.get(User, owner.user_id)
        summary['upi'] = upi_id
    elif bank_line_id is not None:
        line = session.get(BankCreditLine, bank_line_id)
        if line:
            user = session.get(User, line.user_id)
            summary['upi'] = line.upi_id
    elif phone:
        user = session.exec(select(User).where(User.phone == phone)).first()
        summary['phone'] = phone
    if user is None and not summary:
        return None
    return {'id': user.id if user else None, 'name': user.name if user else None, **summary}

def _sender_party(session: Session, tx: Transaction):
    return _describe_party(session, account_id=tx.from_account_id, upi_id=tx.from_upi_id)

def _receiver_party(session: Session, tx: Transaction):
    return _describe_party(session, account_id=tx.to_account_id, upi_id=tx.to_upi_id, bank_line_id=tx.to_bank_id,
                           phone=tx.to_phone)


class TransactionService:
    """Agrupa escritura del log y consultas de historial por usuario."""

    @staticmethod
    def generate_transaction_id() -> str:
        """TXN + fecha/hora + 4 dígitos aleatorios; puede colisionar."""
        return 'TXN' + datetime.now().strftime('%Y%m%d%H%M%S') + str(random.randint(1000, 9999))

    @staticmethod
    def record(payload: dict, status: str = STATUS_COMPLETED) -> Optional[str]:
        """Escribe un registro de transacción; nunca propaga excepciones.

        Usa el transaction_id del payload o genera uno. Si choca con la
        restricción única se genera otro y se reintenta. Devuelve el id
        escrito o None si no se pudo registrar.
        """
        try:
            if status not in STATUSES:
                raise ValueError(f"Invalid status {status!r}")
            sender = _pick_one(payload, SENDER_FIELDS)
            if not sender:
                raise ValueError("Invalid sender details")
            receiver = _pick_one(payload, RECEIVER_FIELDS)
            if not receiver:
                raise ValueError("Invalid receiver details")
            tx_id = payload.get('transaction_id') or TransactionService.generate_transaction_id()
        except Exception as e:
            logger.error("Transaction record rejected: %s", e)
            return None

        for attempt in range(settings.tx_id_retries + 1):
            try:
                with DBSession() as s:
                    row = Transaction(
                        transaction_id=tx_id,
                        type=payload.get('type') or TYPE_BANK,
                        status=status,
                        amount=payload.get('amount') or 0,
                        description=payload.get('description'),
                        **sender,
                        **receiver,
                    )
                    s.add(row)
                    s.commit()
                return tx_id
            except IntegrityError as e:
                logger.warning("Transaction id %s collided (attempt %d): %s", tx_id, attempt + 1, e.orig)
                tx_id = TransactionService.generate_transaction_id()
            except Exception as e:
                logger.error("Transaction failed: %s", e)
                return None
        logger.error("Transaction record dropped after %d id collisions", settings.tx_id_retries + 1)
        return None

    @staticmethod
    def get_transaction(tx_id: str) -> Optional[Transaction]:
        """Recupera una transacción por su transaction_id o None si no existe."""
        with DBSession() as s:
            statement = select(Transaction).where(Transaction.transaction_id == tx_id)
            return s.exec(statement).first()

    @staticmethod
    def list_for_user(user_id: int, status: Optional[str] = None, date_range: Optional[str] = None,
                      amount_range: Optional[str] = None, payment_type: Optional[str] = None,
                      page: int = 1) -> dict:
        """Historial paginado del usuario (más recientes primero) con filtros.

        Cada fila indica mode (debit si el usuario envió, credit si recibió),
        la contraparte y el mes para agrupar en la interfaz.
        """
        if status and status not in STATUSES:
            raise ValidationError('The selected status is invalid.')
        if date_range and date_range not in DATE_RANGES:
            raise ValidationError('The selected date range is invalid.')
        if amount_range and amount_range not in AMOUNT_RANGES:
            raise ValidationError('The selected amount range is invalid.')
        if payment_type and payment_type not in PAYMENT_TYPES:
            raise ValidationError('The selected payment type is invalid.')
        page = max(int(page or 1), 1)
        per_page = settings.history_page_size

        with DBSession() as s:
            owned = OwnedRefs(s, user_id)
            sent, received = owned.sender_clause(), owned.receiver_clause()
            conditions = [or_(sent, received)]
            if status:
                conditions.append(Transaction.status == status)
            if date_range:
                conditions.append(Transaction.created_at >= datetime.now(timezone.utc) - DATE_RANGES[date_range])
            if amount_range:
                low, high = AMOUNT_RANGES[amount_range]
                if low is not None:
                    conditions.append(Transaction.amount >= low)
                conditions.append(Transaction.amount <= high)
            if payment_type == 'send_money':
                conditions.append(and_(sent, not_(received)))
            elif payment_type == 'receive_money':
                conditions.append(and_(received, not_(sent)))
            elif payment_type == 'self_transfer':
                conditions.append(and_(sent, received))

            where = and_(*conditions)
            total = s.exec(select(func.count()).select_from(Transaction).where(where)).one()
            rows = s.exec(
                select(Transaction).where(where)
                .order_by(Transaction.created_at.desc(), Transaction.id.desc())
                .offset((page - 1) * per_page).limit(per_page)
            ).all()

            data = []
            for tx in rows:
                auth_is_sender = owned.is_sender(tx)
                counterparty = _receiver_party(s, tx) if auth_is_sender else _sender_party(s, tx)
                data.append({
                    'transaction_id': tx.transaction_id,
                    'amount': tx.amount,
                    'status': tx.status,
                    'type': tx.type,
                    'mode': 'debit' if auth_is_sender else 'credit',
                    'created_at': tx.created_at,
                    'counterparty': counterparty,
                    'month': tx.created_at.strftime('%B %Y'),
                })
        return {
            'data': data,
            'page': page,
            'per_page': per_page,
            'total': total,
            'last_page': max((total + per_page - 1) // per_page, 1),
        }

    @staticmethod
    def get_for_user(tx_id: str, user_id: int) -> dict:
        """Detalle de una transacción visible solo para emisor o receptor."""
        with DBSession() as s:
            tx = s.exec(select(Transaction).where(Transaction.transaction_id == tx_id)).first()
            if not tx:
                raise NotFound('Not Found')
            owned = OwnedRefs(s, user_id)
            if owned.is_sender(tx):
                auth_role = 'sender'
            elif owned.is_receiver(tx):
                auth_role = 'receiver'
            else:
                raise NotFound('Invalid transaction')
            response = serialize(tx)
            response['sender'] = _sender_party(s, tx)
            response['receiver'] = _receiver_party(s, tx)
            response['auth_role'] = auth_role
            return response

    @staticmethod
    def recent_recipients(user_id: int, limit: int = 20) -> list:
        """Últimos usuarios distintos (no el propio) a los que se envió dinero."""
        with DBSession() as s:
            owned = OwnedRefs(s, user_id)
            rows = s.exec(
                select(Transaction)
                .where(owned.sender_clause(), not_(owned.receiver_clause()),
                       Transaction.status == STATUS_COMPLETED)
                .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            ).all()
            seen = set()
            recipients = []
            for tx in rows:
                party = _receiver_party(s, tx)
                if not party or party['id'] is None or party['id'] in seen or party['id'] == user_id:
                    continue
                seen.add(party['id'])
                user = s.get(User, party['id'])
                recipients.append({'id': user.id, 'name': user.name, 'phone': user.phone})
                if len(recipients) >= limit:
                    break
            return recipients
