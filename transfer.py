"""Orquestación de transferencias.

Cada intento recorre la máquina de estados
VALIDATED -> RECEIVER_RESOLVED -> SENDER_AUTHORIZED -> SUFFICIENCY_CHECKED
-> APPLIED -> RECORDED -> NOTIFIED y termina en COMPLETED o FAILED.
El transaction_id se reserva al crear el intento y todo intento que pasa la
validación deja exactamente un registro en el log.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional, Union

from sqlmodel import Session

from authorization import authorize, check_pin
from config import get_settings
from database import DBSession
from errors import (CreditLimitExceeded, InsufficientFunds, InternalError, NotFound, PaymentError, Unauthorized,
                    ValidationError)
from ledger import apply_transfer, balance_of, has_headroom, sufficient
from models import BankAccount, BankCreditLine, User
from resolver import (AccountRef, CreditLineRef, PhoneRef, ReceiverRef, SenderRef, UpiRef, ensure_distinct,
                      resolve_receiver_account, resolve_receiver_line, resolve_sender)
from security import Caller, validate_pin_format
from transaction import STATUS_COMPLETED, STATUS_FAILED, TYPE_BANK, TYPE_CREDIT_UPI, TransactionService

logger = logging.getLogger(__name__)
settings = get_settings()

CENT = Decimal('0.01')
MAX_DESCRIPTION = 255


class TransferState(str, Enum):
    VALIDATED = 'validated'
    RECEIVER_RESOLVED = 'receiver_resolved'
    SENDER_AUTHORIZED = 'sender_authorized'
    SUFFICIENCY_CHECKED = 'sufficiency_checked'
    APPLIED = 'applied'
    RECORDED = 'recorded'
    NOTIFIED = 'notified'
    COMPLETED = 'completed'
    FAILED = 'failed'


@dataclass
class TransferRequest:
    """Instrucción de pago ya normalizada a referencias etiquetadas."""
    amount: Union[Decimal, str, int, float]
    sender: Optional[SenderRef]
    receiver: Optional[Union[ReceiverRef, CreditLineRef]]
    pin: Optional[str]
    description: Optional[str] = None


# parse_amount: Decimal positivo, máximo 2 decimales y dentro del tope.
def parse_amount(raw) -> Decimal:
    if raw is None or isinstance(raw, bool):
        raise ValidationError('The amount field is required.')
    try:
        amount = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        raise ValidationError('The amount field must be a number.')
    if not amount.is_finite():
        raise ValidationError('The amount field must be a number.')
    if amount <= 0 or amount > settings.max_amount:
        raise ValidationError(f"The amount field must be between 0.01 and {settings.max_amount}.")
    if amount != amount.quantize(CENT):
        raise ValidationError('The amount field must have at most 2 decimal places.')
    return amount.quantize(CENT)


class TransferAttempt:
    """Estado individual de un intento de transferencia.

    Guarda la variante, las fuentes resueltas, el historial de estados y el
    error final, además del transaction_id reservado al inicio. Las
    referencias que van al log se copian como valores planos al resolver cada
    fuente: tras un rollback las filas ORM quedan expiradas y no se leen.
    """
    def __init__(self, variant: str, request: TransferRequest, caller: Caller):
        self.tx_id = TransactionService.generate_transaction_id()
        self.variant = variant
        self.request = request
        self.caller = caller
        self.amount: Optional[Decimal] = None
        self.sender = None
        self.receiver = None
        self.sender_ref: dict = {}
        self.receiver_ref: dict = {}
        self.state: Optional[TransferState] = None
        self.history = []
        self.error: Optional[str] = None
        self.recorded_id: Optional[str] = None

    def advance(self, state: TransferState):
        self.state = state
        self.history.append(state.value)

    @property
    def type(self) -> str:
        return TYPE_BANK if isinstance(self.request.sender, AccountRef) else TYPE_CREDIT_UPI

    @property
    def applied(self) -> bool:
        return TransferState.APPLIED.value in self.history

    def bind_sender(self, source):
        self.sender = source
        if isinstance(source, BankAccount):
            self.sender_ref = {'from_account_id': source.id}
        else:
            self.sender_ref = {'from_upi_id': source.upi_id}

    # bind_receiver: El receptor queda registrado tal como fue direccionado.
    def bind_receiver(self, source):
        self.receiver = source
        if isinstance(self.request.receiver, UpiRef):
            self.receiver_ref = {'to_upi_id': self.request.receiver.upi_id}
        elif isinstance(source, BankAccount):
            self.receiver_ref = {'to_account_id': source.id}
        else:
            self.receiver_ref = {'to_bank_id': source.id}

    # record_payload: Referencias copiadas al resolver, o las crudas de la
    # solicitud si la resolución no llegó a completarse.
    def record_payload(self) -> dict:
        payload = {
            'transaction_id': self.tx_id,
            'type': self.type,
            'amount': self.amount,
            'description': self.request.description,
        }
        sender_ref = self.request.sender
        if self.sender_ref:
            payload.update(self.sender_ref)
        elif isinstance(sender_ref, AccountRef):
            payload['from_account_id'] = sender_ref.account_id
        elif isinstance(sender_ref, UpiRef):
            payload['from_upi_id'] = sender_ref.upi_id

        receiver_ref = self.request.receiver
        if self.receiver_ref:
            payload.update(self.receiver_ref)
        elif isinstance(receiver_ref, UpiRef):
            payload['to_upi_id'] = receiver_ref.upi_id
        elif isinstance(receiver_ref, AccountRef):
            payload['to_account_id'] = receiver_ref.account_id
        elif isinstance(receiver_ref, CreditLineRef):
            payload['to_bank_id'] = receiver_ref.line_id
        elif isinstance(receiver_ref, PhoneRef):
            payload['to_phone'] = receiver_ref.phone
        return payload

    def to_dict(self):
        return {
            'transaction_id': self.tx_id,
            'variant': self.variant,
            'type': self.type,
            'amount': str(self.amount) if self.amount is not None else None,
            'history': self.history,
            'error': self.error,
        }


class TransferOrchestrator:
    """Coordina resolución, autorización, ledger, registro y notificación."""
    def __init__(self, writer=TransactionService, notifier=None):
        self.writer = writer
        self.notifier = notifier

    # ------------------------------------------------------------------
    # Operaciones públicas
    # ------------------------------------------------------------------
    def transfer_to_account(self, caller: Caller, request: TransferRequest) -> dict:
        """Pago a una cuenta bancaria identificada por id, UPI o teléfono."""
        attempt = TransferAttempt('transfer_to_account', request, caller)
        self._validate(attempt, (AccountRef, UpiRef, PhoneRef))
        context = self._execute(attempt, self._resolve_account_receiver, None)
        receiver = attempt.receiver
        return {
            'transaction_id': attempt.tx_id,
            'type': attempt.type,
            'amount': attempt.amount,
            'timestamp': context['timestamp'],
            'receiver': {
                'name': context['receiver_name'],
                'account_holder_name': receiver.account_holder_name,
                'bank_account_number': context['receiver_last4'],
            },
        }

    def pay_to_credit_line(self, caller: Caller, request: TransferRequest) -> dict:
        """Pago hacia una línea de crédito bancaria (reponer crédito disponible)."""
        attempt = TransferAttempt('pay_to_credit_line', request, caller)
        self._validate(attempt, (CreditLineRef,))
        context = self._execute(attempt, self._resolve_line_receiver, self._check_line_receiver)
        line = attempt.receiver
        return {
            'transaction_id': attempt.tx_id,
            'type': attempt.type,
            'amount': attempt.amount,
            'timestamp': context['timestamp'],
            'receiver_line': {
                'id': line.id,
                'upi_id': line.upi_id,
                'bank_account_id': line.bank_account_id,
                'credit_limit': line.credit_limit,
                'available_credit': line.available_credit,
            },
        }

    def check_sufficiency(self, caller: Caller, ref: SenderRef, pin, amount=None) -> dict:
        """Consulta saldo/crédito disponible de una fuente propia, sin mutar nada."""
        pin = validate_pin_format(pin)
        wanted = parse_amount(amount) if amount is not None else None
        if not isinstance(ref, (AccountRef, UpiRef)):
            raise ValidationError('Sender account or Credit UPI is required')
        with DBSession() as s:
            source = resolve_sender(s, ref)
            if source.user_id != caller.user_id:
                raise NotFound('Not Found')
            check_pin(source, pin)
            available = balance_of(source)
        return {
            'source': source.source_kind,
            'upi_id': source.upi_id,
            'amount': available,
            'sufficient': (available >= wanted) if wanted is not None else None,
        }

    # ------------------------------------------------------------------
    # Máquina de estados
    # ------------------------------------------------------------------
    def _validate(self, attempt: TransferAttempt, receiver_types):
        request = attempt.request
        attempt.amount = parse_amount(request.amount)
        if not isinstance(request.sender, (AccountRef, UpiRef)):
            raise ValidationError('Sender account or Credit UPI is required')
        if isinstance(request.sender, UpiRef) and not request.sender.upi_id:
            raise ValidationError('Sender account or Credit UPI is required')
        if not isinstance(request.receiver, receiver_types):
            raise ValidationError('Receiver account or UPI ID is required')
        if isinstance(request.receiver, UpiRef) and not request.receiver.upi_id:
            raise ValidationError('Receiver account or UPI ID is required')
        if isinstance(request.receiver, PhoneRef) and not request.receiver.phone:
            raise ValidationError('Receiver account or UPI ID is required')
        validate_pin_format(request.pin)
        if request.description is not None and len(request.description) > MAX_DESCRIPTION:
            raise ValidationError(f"The description may not be greater than {MAX_DESCRIPTION} characters.")
        attempt.advance(TransferState.VALIDATED)

    def _execute(self, attempt: TransferAttempt, resolve_receiver, check_receiver) -> dict:
        request, caller, amount = attempt.request, attempt.caller, attempt.amount
        context = {}
        try:
            with DBSession() as s:
                attempt.bind_receiver(resolve_receiver(s, request.receiver))
                attempt.advance(TransferState.RECEIVER_RESOLVED)

                attempt.bind_sender(resolve_sender(s, request.sender))
                ensure_distinct(attempt.sender, attempt.receiver)
                authorize(attempt.sender, caller, request.pin)
                attempt.advance(TransferState.SENDER_AUTHORIZED)

                if not sufficient(attempt.sender, amount):
                    raise InsufficientFunds('Insufficient balance')
                if check_receiver:
                    check_receiver(s, attempt)
                attempt.advance(TransferState.SUFFICIENCY_CHECKED)

                context = self._describe(s, attempt)
                apply_transfer(s, attempt.sender, attempt.receiver, amount)
                attempt.advance(TransferState.APPLIED)
        except PaymentError as e:
            if not attempt.applied:
                attempt.error = e.message
                logger.warning("Transfer %s rejected: %s", attempt.tx_id, e.message)
                self._finish(attempt, STATUS_FAILED)
                raise
            logger.error("Transfer %s raised after commit: %s", attempt.tx_id, e.message)
        except Exception as e:
            if not attempt.applied:
                attempt.error = str(e)
                logger.exception("Transfer %s failed unexpectedly", attempt.tx_id)
                self._finish(attempt, STATUS_FAILED)
                raise InternalError() from e
            logger.exception("Transfer %s raised after commit", attempt.tx_id)

        # A partir de aquí el movimiento está confirmado y no puede fallar.
        self._finish(attempt, STATUS_COMPLETED)
        self._notify(attempt, context)
        attempt.advance(TransferState.COMPLETED)
        logger.info("Transfer %s completed: %s", attempt.tx_id, json.dumps(attempt.to_dict()))
        context.setdefault('timestamp', datetime.now(timezone.utc))
        return context

    # _finish: Único punto de escritura del log para un intento.
    def _finish(self, attempt: TransferAttempt, status: str):
        recorded = self.writer.record(attempt.record_payload(), status)
        if recorded:
            attempt.recorded_id = recorded
            attempt.tx_id = recorded
        if status == STATUS_FAILED:
            attempt.advance(TransferState.FAILED)
        else:
            attempt.advance(TransferState.RECORDED)

    def _notify(self, attempt: TransferAttempt, context: dict):
        if self.notifier is None or not context.get('receiver_user_id'):
            return
        try:
            self.notifier.dispatch(
                context['receiver_user_id'],
                'Money Received',
                f"You received ₹{attempt.amount} from {context.get('sender_name') or 'a UPI user'}",
                {'screen': 'TransactionSuccessScreen', 'transaction_id': attempt.tx_id},
            )
            attempt.advance(TransferState.NOTIFIED)
        except Exception as e:
            logger.error("Notification dispatch failed for %s: %s", attempt.tx_id, e)

    # ------------------------------------------------------------------
    # Pasos específicos de cada variante
    # ------------------------------------------------------------------
    @staticmethod
    def _resolve_account_receiver(session: Session, ref):
        return resolve_receiver_account(session, ref)

    @staticmethod
    def _resolve_line_receiver(session: Session, ref):
        return resolve_receiver_line(session, ref)

    @staticmethod
    def _check_line_receiver(session: Session, attempt: TransferAttempt):
        """Techo de crédito del receptor y restricción de mismo banco."""
        line = attempt.receiver
        if not has_headroom(line, attempt.amount):
            raise CreditLimitExceeded()
        sender = attempt.sender
        if isinstance(sender, BankCreditLine):
            # Se compara el banco emisor (bank_id de las cuentas ancla), no la
            # cuenta: dos usuarios del mismo banco pueden pagarse entre líneas.
            sender_account = session.get(BankAccount, sender.bank_account_id)
            receiver_account = session.get(BankAccount, line.bank_account_id)
            if not sender_account or not receiver_account or sender_account.bank_id != receiver_account.bank_id:
                raise Unauthorized('Transaction not allowed for this bank')

    @staticmethod
    def _describe(session: Session, attempt: TransferAttempt) -> dict:
        """Datos para recibo y notificación, leídos antes de confirmar."""
        sender_user = session.get(User, attempt.caller.user_id)
        receiver_user = session.get(User, attempt.receiver.user_id)
        context = {
            'timestamp': datetime.now(timezone.utc),
            'sender_name': sender_user.name if sender_user else None,
            'receiver_user_id': attempt.receiver.user_id,
            'receiver_name': receiver_user.name if receiver_user else None,
        }
        if isinstance(attempt.receiver, BankAccount):
            number = attempt.receiver.account_number or ''
            context['receiver_last4'] = number[-4:]
        return context
