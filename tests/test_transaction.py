"""Tests del log de transacciones: escritura tolerante a fallas e historial."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlmodel import select

import transaction
from database import DBSession
from errors import NotFound, ValidationError
from models import Transaction, utcnow
from transaction import TransactionService, mask_account_number


def insert(tx_id, status='completed', amount='100.00', created_at=None, **refs):
    with DBSession() as s:
        row = Transaction(transaction_id=tx_id, status=status, amount=Decimal(amount),
                          created_at=created_at or datetime.now(timezone.utc), **refs)
        s.add(row)
        s.commit()


def test_mask_account_number():
    assert mask_account_number('123456789012') == 'XXXX XXXX 9012'
    assert mask_account_number(None) is None


def test_default_timestamps_are_timezone_aware():
    assert utcnow().tzinfo is timezone.utc
    row = Transaction(transaction_id='TXNTZ', amount=Decimal('1'), from_account_id=1, to_account_id=2)
    assert row.created_at.utcoffset() == timedelta(0)


class TestRecord:

    def test_generates_id_when_missing(self):
        tx_id = TransactionService.record({'from_account_id': 1, 'to_upi_id': 'bob1@oksbi', 'amount': Decimal('5')})
        assert tx_id.startswith('TXN') and len(tx_id) == 21
        row = TransactionService.get_transaction(tx_id)
        assert row.status == 'completed'
        assert row.to_upi_id == 'bob1@oksbi'

    def test_keeps_only_first_reference_per_side(self):
        tx_id = TransactionService.record({
            'transaction_id': 'TXN1', 'from_account_id': 1, 'from_upi_id': 'a@oksbi',
            'to_account_id': 2, 'to_bank_id': 3, 'amount': Decimal('5'),
        }, 'failed')
        row = TransactionService.get_transaction(tx_id)
        assert (row.from_account_id, row.from_upi_id) == (1, None)
        assert (row.to_account_id, row.to_bank_id) == (2, None)
        assert row.status == 'failed'

    def test_phone_only_receiver(self, make_user):
        bob = make_user('Bob', phone='+919812345678')
        tx_id = TransactionService.record({'from_account_id': 1, 'to_phone': bob.phone, 'amount': Decimal('5')},
                                          'failed')
        row = TransactionService.get_transaction(tx_id)
        assert (row.to_phone, row.to_account_id) == ('+919812345678', None)
        with DBSession() as s:
            assert transaction._receiver_party(s, row) == {'id': bob.id, 'name': 'Bob', 'phone': bob.phone}

    def test_id_collision_retries_with_new_id(self, monkeypatch):
        insert('TXNTAKEN', from_account_id=1, to_account_id=2)
        monkeypatch.setattr(TransactionService, 'generate_transaction_id', staticmethod(lambda: 'TXNFRESH'))
        tx_id = TransactionService.record({'transaction_id': 'TXNTAKEN', 'from_account_id': 3,
                                           'to_account_id': 4, 'amount': Decimal('1')})
        assert tx_id == 'TXNFRESH'
        assert TransactionService.get_transaction('TXNFRESH').from_account_id == 3

    def test_gives_up_after_repeated_collisions(self, monkeypatch):
        insert('TXNTAKEN', from_account_id=1, to_account_id=2)
        monkeypatch.setattr(TransactionService, 'generate_transaction_id', staticmethod(lambda: 'TXNTAKEN'))
        assert TransactionService.record({'from_account_id': 3, 'to_account_id': 4, 'amount': Decimal('1')}) is None

    @pytest.mark.parametrize('payload, status', [
        ({'to_account_id': 2, 'amount': Decimal('1')}, 'completed'),
        ({'from_account_id': 1, 'amount': Decimal('1')}, 'completed'),
        ({'from_account_id': 1, 'to_account_id': 2, 'amount': Decimal('1')}, 'refunded'),
    ])
    def test_invalid_payload_is_rejected_without_raising(self, payload, status):
        assert TransactionService.record(payload, status) is None
        with DBSession() as s:
            assert s.exec(select(Transaction)).all() == []

    def test_storage_failure_is_swallowed(self, monkeypatch):
        def broken_session():
            raise RuntimeError('connection refused')
        monkeypatch.setattr(transaction, 'DBSession', broken_session)
        assert TransactionService.record({'from_account_id': 1, 'to_account_id': 2, 'amount': Decimal('1')}) is None


class TestHistory:

    @pytest.fixture
    def parties(self, make_user, make_account, make_network_line):
        alice, bob = make_user('Alice'), make_user('Bob')
        a1 = make_account(alice)
        a2 = make_account(alice, primary=False)
        b = make_account(bob)
        line = make_network_line(alice)
        return alice, bob, a1, a2, b, line

    def test_modes_and_counterparties(self, parties):
        alice, bob, a1, a2, b, line = parties
        insert('TXNSEND', from_account_id=a1.id, to_account_id=b.id, amount='10.00')
        insert('TXNRECV', from_account_id=b.id, to_upi_id=a1.upi_id, amount='20.00')

        alice_view = TransactionService.list_for_user(alice.id)
        modes = {row['transaction_id']: row['mode'] for row in alice_view['data']}
        assert modes == {'TXNSEND': 'debit', 'TXNRECV': 'credit'}
        sent = next(r for r in alice_view['data'] if r['transaction_id'] == 'TXNSEND')
        assert sent['counterparty']['name'] == 'Bob'
        assert sent['counterparty']['account'] == mask_account_number(b.account_number)
        assert sent['month'] == datetime.now(timezone.utc).strftime('%B %Y')

        bob_view = TransactionService.list_for_user(bob.id)
        assert {r['transaction_id']: r['mode'] for r in bob_view['data']} == {'TXNSEND': 'credit', 'TXNRECV': 'debit'}

    def test_credit_line_upi_counts_as_own(self, parties):
        alice, bob, a1, a2, b, line = parties
        insert('TXNLINE', from_upi_id=line.upi_id, to_account_id=b.id)
        [row] = TransactionService.list_for_user(alice.id)['data']
        assert row['mode'] == 'debit'

    def test_filters(self, parties):
        alice, bob, a1, a2, b, line = parties
        old = datetime.now(timezone.utc) - timedelta(days=10)
        insert('TXNOLD', from_account_id=a1.id, to_account_id=b.id, amount='500.00', created_at=old)
        insert('TXNBIG', from_account_id=a1.id, to_account_id=b.id, amount='12000.00')
        insert('TXNFAIL', status='failed', from_account_id=a1.id, to_account_id=b.id, amount='50.00')
        insert('TXNSELF', from_account_id=a1.id, to_account_id=a2.id, amount='70.00')
        insert('TXNIN', from_account_id=b.id, to_account_id=a1.id, amount='80.00')

        def ids(**filters):
            return {r['transaction_id'] for r in TransactionService.list_for_user(alice.id, **filters)['data']}

        assert ids(status='failed') == {'TXNFAIL'}
        assert ids(date_range='7d') == {'TXNBIG', 'TXNFAIL', 'TXNSELF', 'TXNIN'}
        assert ids(date_range='14d') == {'TXNOLD', 'TXNBIG', 'TXNFAIL', 'TXNSELF', 'TXNIN'}
        assert ids(amount_range='10000_15000') == {'TXNBIG'}
        assert ids(amount_range='upto_1000') == {'TXNOLD', 'TXNFAIL', 'TXNSELF', 'TXNIN'}
        assert ids(payment_type='self_transfer') == {'TXNSELF'}
        assert ids(payment_type='receive_money') == {'TXNIN'}
        assert ids(payment_type='send_money') == {'TXNOLD', 'TXNBIG', 'TXNFAIL'}

    @pytest.mark.parametrize('filters', [{'status': 'lost'}, {'date_range': '2y'}, {'amount_range': 'huge'},
                                         {'payment_type': 'gift'}])
    def test_unknown_filter_value(self, parties, filters):
        with pytest.raises(ValidationError):
            TransactionService.list_for_user(parties[0].id, **filters)

    def test_pagination_newest_first(self, parties):
        alice, bob, a1, a2, b, line = parties
        start = datetime.now(timezone.utc) - timedelta(hours=1)
        for i in range(25):
            insert(f"TXN{i:03d}", from_account_id=a1.id, to_account_id=b.id, created_at=start + timedelta(minutes=i))

        first = TransactionService.list_for_user(alice.id)
        assert (first['total'], first['per_page'], first['last_page']) == (25, 20, 2)
        assert first['data'][0]['transaction_id'] == 'TXN024'
        assert len(first['data']) == 20
        second = TransactionService.list_for_user(alice.id, page=2)
        assert [r['transaction_id'] for r in second['data']] == [f"TXN{i:03d}" for i in range(4, -1, -1)]

    def test_other_users_rows_are_not_listed(self, parties, make_user):
        alice, bob, a1, a2, b, line = parties
        insert('TXNBOB', from_account_id=b.id, to_upi_id='someone@okaxis')
        stranger = make_user()
        assert TransactionService.list_for_user(alice.id)['data'] == []
        assert TransactionService.list_for_user(stranger.id)['total'] == 0


class TestDetail:

    def test_roles(self, make_user, make_account):
        alice, bob, eve = make_user('Alice'), make_user('Bob'), make_user('Eve')
        a, b = make_account(alice), make_account(bob)
        insert('TXNDETAIL', from_account_id=a.id, to_account_id=b.id, amount='42.00')

        as_sender = TransactionService.get_for_user('TXNDETAIL', alice.id)
        assert as_sender['auth_role'] == 'sender'
        assert as_sender['amount'] == Decimal('42.00')
        assert as_sender['receiver']['name'] == 'Bob'
        assert TransactionService.get_for_user('TXNDETAIL', bob.id)['auth_role'] == 'receiver'
        with pytest.raises(NotFound) as exc:
            TransactionService.get_for_user('TXNDETAIL', eve.id)
        assert exc.value.message == 'Invalid transaction'

    def test_unknown_id(self, make_user):
        with pytest.raises(NotFound):
            TransactionService.get_for_user('TXNNOPE', make_user().id)


class TestRecentRecipients:

    def test_distinct_recipients_newest_first(self, make_user, make_account):
        alice, bob, carol = make_user('Alice'), make_user('Bob'), make_user('Carol')
        a, a2 = make_account(alice), make_account(alice, primary=False)
        b, c = make_account(bob), make_account(carol)
        start = datetime.now(timezone.utc) - timedelta(hours=1)
        insert('TXN1', from_account_id=a.id, to_account_id=b.id, created_at=start)
        insert('TXN2', from_account_id=a.id, to_upi_id=c.upi_id, created_at=start + timedelta(minutes=1))
        insert('TXN3', from_account_id=a.id, to_account_id=b.id, created_at=start + timedelta(minutes=2))
        insert('TXN4', from_account_id=a.id, to_account_id=a2.id, created_at=start + timedelta(minutes=3))
        insert('TXN5', status='failed', from_account_id=a.id, to_account_id=c.id,
               created_at=start + timedelta(minutes=4))

        recipients = TransactionService.recent_recipients(alice.id)
        assert [r['name'] for r in recipients] == ['Bob', 'Carol']
        assert recipients[0]['phone'] == bob.phone
