"""Tests for the HTML scraping fallback"""

from datetime import date

import pytest

from conftest import FakeSession
from shb_page import (
    ACCOUNT_LINK_SELECTOR,
    DATE_FROM_INPUTS,
    DATE_TO_INPUTS,
    SEARCH_BUTTON,
    TRANSACTION_STRATEGIES,
    PageScrapeFallback,
    PageSnapshot,
    accounts_from_embedded_json,
    accounts_from_links,
    normalize_date,
    run_strategies,
    transactions_from_embedded_json,
    transactions_from_list_items,
    transactions_from_tables,
)

STATEMENT_TABLE = """
<table class="layout"><tr><td>menu</td></tr></table>
<table class="transactions">
  <tr><th>Saldo</th><th>Belopp</th><th>Text</th><th>Datum</th></tr>
  <tr><td>10 000,00</td><td class="amount negative">1 200,00</td><td>ICA NARA</td><td>2024-01-05</td></tr>
  <tr><td>11 200,00</td><td>-50,50</td><td>Prel SL</td><td>06/01/2024</td></tr>
  <tr><td>9 000,00</td><td style="color: red">300,00</td><td>SYSTEMBOLAGET</td><td>2024-01-07</td></tr>
  <tr><td>kort</td><td>rad</td></tr>
</table>
"""

LIST_ITEMS = """
<ul>
  <li class="transaction-item">
    <span class="date">2024-02-01</span><span class="description">Swish Anna</span>
    <span class="amount">-120,00 kr</span>
  </li>
  <li class="transaction-item">
    <span class="description">no date</span><span class="amount">1,00</span>
  </li>
</ul>
"""

EMBEDDED_SCRIPT = """
<script>var x = 1;</script>
<script>window.__STATE__ = {"menu": {"x": 1}}; window.__TX__ = {"transactions": [
  {"date": "2024-03-01", "amount": -99.9, "text": "Spotify", "id": "sp-1"},
  {"transactionDate": "2024-03-02", "amount": "12", "description": "Retur"}
]};</script>
"""


def snap(html, page_globals=None):
    return PageSnapshot(html=html, globals=page_globals or {})


@pytest.mark.parametrize(
    "text, expected",
    [
        ("2024-01-05", date(2024, 1, 5)),
        ("05/01/2024", date(2024, 1, 5)),
        ("Bokfört 05.01.2024", date(2024, 1, 5)),
        ("2024/1/5", date(2024, 1, 5)),
        ("2024-02-30", None),
        ("05/01/24", None),
        ("", None),
        (None, None),
    ],
)
def test_normalize_date(text, expected):
    assert normalize_date(text) == expected


def test_table_columns_inferred_from_headers():
    snapshot = snap(STATEMENT_TABLE)
    transactions = transactions_from_tables(snapshot.soup(), snapshot)

    assert [(t.date, t.amount, t.payee_name) for t in transactions] == [
        (date(2024, 1, 5), -120000, "ICA NARA"),
        (date(2024, 1, 6), -5050, "Prel SL"),
        (date(2024, 1, 7), -30000, "SYSTEMBOLAGET"),
    ]
    assert transactions[0].imported_id == "2024-01-05-ICA NARA-1 200,00"


def test_table_without_headers_uses_default_columns():
    snapshot = snap("<table><tr><td>2024-01-05</td><td>Hyra</td><td>-8 000,00</td></tr>"
                    "<tr><td>2024-01-06</td><td>Lön</td><td>25 000,00</td></tr></table>")

    transactions = transactions_from_tables(snapshot.soup(), snapshot)

    assert [t.amount for t in transactions] == [-800000, 2500000]


def test_list_items():
    snapshot = snap(LIST_ITEMS)
    transactions = transactions_from_list_items(snapshot.soup(), snapshot)

    assert len(transactions) == 1
    assert transactions[0].payee_name == "Swish Anna"
    assert transactions[0].amount == -12000


def test_embedded_script_data():
    snapshot = snap(EMBEDDED_SCRIPT)
    transactions = transactions_from_embedded_json(snapshot.soup(), snapshot)

    assert [t.imported_id for t in transactions][0] == "sp-1"
    assert transactions[0].amount == -9990
    assert transactions[1].payee_name == "Retur"
    assert transactions[1].imported_id.startswith("2024-03-02-")


def test_data_attribute_list():
    html = """<div data-transactions='[{"date": "2024-04-01", "amount": 10, "payee": "Bank"}]'></div>"""
    snapshot = snap(html)

    transactions = transactions_from_embedded_json(snapshot.soup(), snapshot)

    assert [(t.payee_name, t.amount) for t in transactions] == [("Bank", 1000)]


def test_window_globals():
    snapshot = snap("<html></html>", {"appData": {"items": [{"bookingDate": "2024-05-01", "amount": 1}]},
                                      "accountData": None})

    transactions = transactions_from_embedded_json(snapshot.soup(), snapshot)

    assert transactions[0].date == date(2024, 5, 1)


def test_strategy_order_prefers_tables():
    snapshot = snap(STATEMENT_TABLE + LIST_ITEMS)

    result = run_strategies(TRANSACTION_STRATEGIES, snapshot)

    assert result.name == "transaction table"
    assert len(result.items) == 3


def test_no_strategy_finds_anything():
    result = run_strategies(TRANSACTION_STRATEGIES, snap("<p>Inga transaktioner</p>"))

    assert result.name == "none"
    assert not result.found


def test_account_links():
    html = """
    <a href="/accounts_and_cards/account_transactions?account=840716451~INL%C3%85~N">Lönekonto</a>
    <a href="/accounts_and_cards/account_transactions?account=840716451~INL%C3%85~N">duplicate</a>
    <a href="/accounts_and_cards/account_transactions?account=123">Spar</a>
    <a href="/other">Other</a>
    """
    snapshot = snap(html)

    accounts = accounts_from_links(snapshot.soup(), snapshot)

    assert [(a.account_number, a.display_name, a.ledger_system_code) for a in accounts] == [
        ("840716451", "Lönekonto", "INLÅ"),
        ("123", "Spar", "INLÅ"),
    ]


def test_accounts_from_embedded_json(accounts_payload):
    snapshot = snap("<html></html>", {"appData": accounts_payload})

    accounts = accounts_from_embedded_json(snapshot.soup(), snapshot)

    assert [a.account_number for a in accounts] == ["840716451", "123456789"]


def test_extract_accounts_opens_accounts_page():
    link_html = '<a href="/account_transactions?account=555~INLÅ~N">Buffert</a>'
    session = FakeSession(url="https://secure.handelsbanken.se/se/private/sv/overview")

    def accounts_page_loaded():
        session.present.add(ACCOUNT_LINK_SELECTOR)
        session.html = link_html

    session.schedule(2.0, accounts_page_loaded)

    accounts = PageScrapeFallback(session).extract_accounts()

    assert "toandfrommyaccounts" in session.navigations[0]
    assert [a.account_number for a in accounts] == ["555"]


def test_extract_transactions_sets_dates_and_filters_range():
    session = FakeSession(
        url="https://secure.handelsbanken.se/bb/seip/servlet/ipko?appName=ipko&appAction=ShowAccountTransactions",
        present={DATE_FROM_INPUTS[1], DATE_TO_INPUTS[1], SEARCH_BUTTON},
        html=STATEMENT_TABLE,
    )

    transactions = PageScrapeFallback(session).extract_transactions(date(2024, 1, 6), date(2024, 1, 31))

    assert session.navigations == []
    assert session.fills == {DATE_FROM_INPUTS[1]: "2024-01-06", DATE_TO_INPUTS[1]: "2024-01-31"}
    assert session.clicks == [SEARCH_BUTTON]
    assert [t.payee_name for t in transactions] == ["Prel SL", "SYSTEMBOLAGET"]


def test_extract_transactions_without_form_reads_current_view():
    session = FakeSession(url="https://secure.handelsbanken.se/x", html=LIST_ITEMS)
    session.window_data = {"appData": None}

    transactions = PageScrapeFallback(session).extract_transactions(date(2024, 1, 1), date(2024, 12, 31))

    assert len(session.navigations) == 1
    assert session.fills == {}
    assert [t.payee_name for t in transactions] == ["Swish Anna"]
