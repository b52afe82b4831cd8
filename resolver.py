"""Resolución de fuentes de fondos.

Las referencias de emisor/receptor llegan como una unión etiquetada
(AccountRef | UpiRef | PhoneRef) y se normalizan aquí a la fila concreta
antes de cualquier lógica de negocio.
"""

from dataclasses import dataclass
from typing import Union

from sqlmodel import Session, select

from errors import InvalidReceiver, NotFound
from models import BankAccount, BankCreditLine, NetworkCreditLine, User


@dataclass(frozen=True)
class AccountRef:
    account_id: int


@dataclass(frozen=True)
class UpiRef:
    upi_id: str


@dataclass(frozen=True)
class PhoneRef:
    phone: str


@dataclass(frozen=True)
class CreditLineRef:
    line_id: int


SenderRef = Union[AccountRef, UpiRef]
ReceiverRef = Union[AccountRef, UpiRef, PhoneRef]
FundingSource = Union[BankAccount, BankCreditLine, NetworkCreditLine]


# resolve_receiver_account: Devuelve la cuenta bancaria que recibe el dinero.
def resolve_receiver_account(session: Session, ref: ReceiverRef) -> BankAccount:
    if isinstance(ref, PhoneRef):
        user = session.exec(select(User).where(User.phone == ref.phone)).first()
        if not user:
            raise NotFound('Receiver not found')
        account = session.exec(
            select(BankAccount).where(BankAccount.user_id == user.id, BankAccount.is_primary == True)  # noqa: E712
        ).first()
    elif isinstance(ref, AccountRef):
        account = session.get(BankAccount, ref.account_id)
    elif isinstance(ref, UpiRef):
        account = session.exec(select(BankAccount).where(BankAccount.upi_id == ref.upi_id)).first()
    else:
        raise TypeError(f"Unsupported receiver reference: {ref!r}")
    if not account:
        raise NotFound('Receiver bank account not found')
    return account

# resolve_credit_line: Busca primero en líneas bancarias y luego en las de red.
def resolve_credit_line(session: Session, upi_id: str) -> FundingSource:
    line = session.exec(select(BankCreditLine).where(BankCreditLine.upi_id == upi_id)).first()
    if not line:
        line = session.exec(select(NetworkCreditLine).where(NetworkCreditLine.upi_id == upi_id)).first()
    if not line:
        raise NotFound('Credit UPI not found')
    return line

def resolve_sender(session: Session, ref: SenderRef) -> FundingSource:
    """AccountRef apunta a una cuenta bancaria; UpiRef a una línea de crédito."""
    if isinstance(ref, AccountRef):
        account = session.get(BankAccount, ref.account_id)
        if not account:
            raise NotFound('Sender bank account not found')
        return account
    if isinstance(ref, UpiRef):
        return resolve_credit_line(session, ref.upi_id)
    raise TypeError(f"Unsupported sender reference: {ref!r}")

def resolve_receiver_line(session: Session, ref: CreditLineRef) -> BankCreditLine:
    line = session.get(BankCreditLine, ref.line_id)
    if not line:
        raise NotFound('Bank Not found')
    return line

# same_source: Dos fuentes son la misma si coinciden tipo e id.
def same_source(a: FundingSource, b: FundingSource) -> bool:
    return type(a) is type(b) and a.id == b.id

def ensure_distinct(sender: FundingSource, receiver: FundingSource):
    if same_source(sender, receiver):
        raise InvalidReceiver('Invalid receiver account')
