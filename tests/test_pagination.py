import pytest

from lending_ledger.pagination import clamp_page


@pytest.mark.parametrize(
    "page,limit,expected",
    [
        (None, None, (1, 20)),
        (-1, 10, (1, 10)),
        (0, 0, (1, 1)),
        (3, 150, (3, 100)),
        ("2", "25", (2, 25)),
    ],
)
def test_clamp_page(page, limit, expected):
    assert clamp_page(page, limit) == expected


def test_clamp_page_custom_bounds():
    assert clamp_page(1, None, default_limit=5, max_limit=8) == (1, 5)
    assert clamp_page(1, 9, default_limit=5, max_limit=8) == (1, 8)


def test_paginate_past_the_end(flow):
    for _ in range(3):
        flow.create_offer()
    page = flow.offers.list_offers(page=5, limit=2)
    assert page.items == []
    assert page.pagination.total == 3
    assert page.pagination.total_pages == 2
    assert not page.pagination.has_next
    assert page.pagination.has_prev


def test_paginate_empty(flow):
    page = flow.offers.list_offers()
    assert page.items == []
    assert page.pagination.total == 0
    assert page.pagination.total_pages == 0
    assert not page.pagination.has_next
