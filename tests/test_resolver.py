"""Tests de resolución de emisor/receptor a partir de referencias etiquetadas."""

import pytest

from database import DBSession
from errors import InvalidReceiver, NotFound
from models import BankAccount, BankCreditLine, NetworkCreditLine
from resolver import (AccountRef, CreditLineRef, PhoneRef, UpiRef, ensure_distinct, resolve_receiver_account,
                      resolve_receiver_line, resolve_sender)


class TestReceiverResolution:

    def test_phone_resolves_to_primary_account(self, make_user, make_account):
        bob = make_user(phone='+919811111111')
        primary = make_account(bob)
        make_account(bob, primary=False)
        with DBSession() as s:
            account = resolve_receiver_account(s, PhoneRef('+919811111111'))
        assert account.id == primary.id

    def test_phone_without_primary_account_is_not_found(self, make_user, make_account):
        bob = make_user(phone='+919822222222')
        make_account(bob, primary=False)
        with DBSession() as s:
            with pytest.raises(NotFound):
                resolve_receiver_account(s, PhoneRef('+919822222222'))

    def test_unknown_phone_is_not_found(self):
        with DBSession() as s:
            with pytest.raises(NotFound):
                resolve_receiver_account(s, PhoneRef('+910000000000'))

    def test_account_id_and_upi(self, make_user, make_account):
        account = make_account(make_user())
        with DBSession() as s:
            assert resolve_receiver_account(s, AccountRef(account.id)).id == account.id
            assert resolve_receiver_account(s, UpiRef(account.upi_id)).id == account.id

    def test_credit_line_upi_is_not_a_receiving_account(self, make_user, make_account, make_bank_line):
        user = make_user()
        line = make_bank_line(user, make_account(user))
        with DBSession() as s:
            with pytest.raises(NotFound):
                resolve_receiver_account(s, UpiRef(line.upi_id))

    def test_receiver_line_by_id(self, make_user, make_account, make_bank_line):
        user = make_user()
        line = make_bank_line(user, make_account(user))
        with DBSession() as s:
            assert isinstance(resolve_receiver_line(s, CreditLineRef(line.id)), BankCreditLine)
            with pytest.raises(NotFound):
                resolve_receiver_line(s, CreditLineRef(line.id + 100))


class TestSenderResolution:

    def test_account_ref_is_bank_account(self, make_user, make_account):
        account = make_account(make_user())
        with DBSession() as s:
            assert isinstance(resolve_sender(s, AccountRef(account.id)), BankAccount)

    def test_missing_account_is_not_found(self):
        with DBSession() as s:
            with pytest.raises(NotFound):
                resolve_sender(s, AccountRef(999))

    def test_upi_ref_checks_bank_lines_then_network_lines(self, make_user, make_account, make_bank_line,
                                                          make_network_line):
        user = make_user()
        bank_line = make_bank_line(user, make_account(user))
        network_line = make_network_line(user)
        with DBSession() as s:
            assert isinstance(resolve_sender(s, UpiRef(bank_line.upi_id)), BankCreditLine)
            assert isinstance(resolve_sender(s, UpiRef(network_line.upi_id)), NetworkCreditLine)
            with pytest.raises(NotFound):
                resolve_sender(s, UpiRef('nobody@oksbi'))

    def test_bank_account_upi_is_not_a_credit_sender(self, make_user, make_account):
        account = make_account(make_user())
        with DBSession() as s:
            with pytest.raises(NotFound):
                resolve_sender(s, UpiRef(account.upi_id))


class TestDistinctSources:

    def test_same_account_rejected(self, make_user, make_account):
        account = make_account(make_user())
        with pytest.raises(InvalidReceiver):
            ensure_distinct(account, account)

    def test_two_owned_accounts_allowed(self, make_user, make_account):
        user = make_user()
        ensure_distinct(make_account(user), make_account(user, primary=False))

    def test_same_id_different_kind_allowed(self, make_user, make_account, make_network_line):
        user = make_user()
        account = make_account(user)
        line = make_network_line(user)
        line.id = account.id
        ensure_distinct(account, line)
