"""
Fixtures compartidas: base SQLite temporaria, fábricas de usuarios y fuentes
de fondos, y un notificador falso que registra los envíos.

El entorno se fija antes de importar los módulos de la aplicación porque
config/database leen la configuración al importarse.
"""

import itertools
import os
import tempfile
from decimal import Decimal

import pytest
from cryptography.fernet import Fernet

_tmp_dir = tempfile.mkdtemp(prefix='upi-ledger-tests-')
os.environ['UPI_DB_URL'] = f"sqlite:///{os.path.join(_tmp_dir, 'test.db')}"
os.environ['PIN_HASH_ROUNDS'] = '4'
os.environ['FIELD_ENCRYPTION_KEY'] = Fernet.generate_key().decode()
os.environ['NOTIFICATION_URL'] = ''
os.environ['JWT_SECRET'] = 'test-secret'

from sqlmodel import SQLModel, select  # noqa: E402

from database import DBSession, engine, init_db  # noqa: E402
from models import BankAccount, BankCreditLine, NetworkCreditLine, UpiAddress, User  # noqa: E402
from security import Caller, fingerprint, hash_pin  # noqa: E402
from transfer import TransferOrchestrator  # noqa: E402

_counter = itertools.count(1)


class FakeNotifier:
    """Registra las notificaciones despachadas en lugar de enviarlas."""
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def dispatch(self, user_id, title, message, data=None):
        if self.fail:
            raise RuntimeError("push gateway down")
        self.sent.append({'user_id': user_id, 'title': title, 'message': message, 'data': data})

    def shutdown(self):
        pass


@pytest.fixture(autouse=True)
def fresh_db():
    init_db()
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    yield


@pytest.fixture
def make_user():
    def factory(name='User', phone=None):
        n = next(_counter)
        with DBSession() as s:
            user = User(phone=phone or f"+9190000{n:05d}", name=name)
            s.add(user)
            s.commit()
            s.refresh(user)
            return user
    return factory


def _register(s, user_id, upi_id, kind):
    s.add(UpiAddress(address=upi_id, user_id=user_id, kind=kind))


@pytest.fixture
def make_account():
    def factory(user, balance='0.00', pin='1234', bank_id=1, primary=None):
        n = next(_counter)
        number = f"{100000000 + n}"
        with DBSession() as s:
            if primary is None:
                primary = s.exec(select(BankAccount).where(BankAccount.user_id == user.id)).first() is None
            upi_id = f"acct{n}@oksbi"
            account = BankAccount(
                user_id=user.id, bank_id=bank_id, upi_id=upi_id, account_holder_name=user.name,
                account_number=number, account_fingerprint=fingerprint(number), account_type='saving',
                balance=Decimal(balance), pin_hash=hash_pin(pin) if pin else None,
                pin_length=len(pin) if pin else None, is_primary=bool(primary),
            )
            s.add(account)
            _register(s, user.id, upi_id, BankAccount.source_kind)
            s.commit()
            s.refresh(account)
            return account
    return factory


@pytest.fixture
def make_bank_line():
    def factory(user, account, limit='50000.00', available=None, pin='4321'):
        n = next(_counter)
        upi_id = f"line{n}@okaxis"
        with DBSession() as s:
            line = BankCreditLine(
                user_id=user.id, bank_account_id=account.id, upi_id=upi_id,
                credit_limit=Decimal(limit), available_credit=Decimal(available if available is not None else limit),
                pin_hash=hash_pin(pin) if pin else None, pin_length=len(pin) if pin else None,
            )
            s.add(line)
            _register(s, user.id, upi_id, BankCreditLine.source_kind)
            s.commit()
            s.refresh(line)
            return line
    return factory


@pytest.fixture
def make_network_line():
    def factory(user, limit='35000.00', available=None, pin='5678'):
        n = next(_counter)
        upi_id = f"npci{n}@okicici"
        with DBSession() as s:
            line = NetworkCreditLine(
                user_id=user.id, upi_id=upi_id, credit_limit=Decimal(limit),
                available_credit=Decimal(available if available is not None else limit),
                pin_hash=hash_pin(pin) if pin else None, pin_length=len(pin) if pin else None,
            )
            s.add(line)
            _register(s, user.id, upi_id, NetworkCreditLine.source_kind)
            s.commit()
            s.refresh(line)
            return line
    return factory


@pytest.fixture
def caller_for():
    def factory(user):
        return Caller(user_id=user.id, phone=user.phone)
    return factory


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def orchestrator(notifier):
    return TransferOrchestrator(notifier=notifier)


@pytest.fixture
def fetch():
    """Relee una fila desde una sesión nueva (estado confirmado)."""
    def factory(model, pk):
        with DBSession() as s:
            return s.get(model, pk)
    return factory
