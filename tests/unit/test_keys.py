"""Tests for receipt_reconciler.keys."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from receipt_reconciler.keys import canonical_key, normalize_merchant, receipt_key
from receipt_reconciler.models import ReceiptDraft


class TestCanonicalKey:
    """Tests for canonical_key()."""

    def test_format(self) -> None:
        key = canonical_key("Costco", date(2024, 3, 1), Decimal("54.2"))
        assert key == "costco-2024-03-01-54.20"

    def test_deterministic(self) -> None:
        args = ("Trader Joe's", date(2024, 1, 1), Decimal("20.00"))
        assert canonical_key(*args) == canonical_key(*args)

    def test_case_punctuation_and_suffix_insensitive(self) -> None:
        a = canonical_key("Trader Joe's Inc", "2024-01-01", 20.00)
        b = canonical_key("TRADER JOES", "2024-01-01", 20.001)
        assert a == b

    def test_store_number_ignored(self) -> None:
        a = canonical_key("Trader Joe's #123", "2024-01-01", Decimal("20.00"))
        b = canonical_key("TRADER JOES", "2024-01-01", Decimal("20.00"))
        assert a == b

    def test_differing_totals_do_not_collide(self) -> None:
        a = canonical_key("Trader Joe's Inc", "2024-01-01", 20.00)
        b = canonical_key("TRADER JOES", "2024-01-01", 20.01)
        assert a != b

    def test_float_noise_rounds_to_cents(self) -> None:
        assert canonical_key("Shop", "2024-01-01", 19.9999999) == canonical_key(
            "Shop", "2024-01-01", Decimal("20.00")
        )

    def test_half_cent_rounds_up(self) -> None:
        key = canonical_key("Shop", "2024-01-01", Decimal("1.005"))
        assert key is not None
        assert key.endswith("-1.01")

    def test_integer_total(self) -> None:
        assert canonical_key("Shop", "2024-01-01", 7) == "shop-2024-01-01-7.00"

    def test_date_string_trimmed(self) -> None:
        assert canonical_key("Shop", " 2024-01-01 ", 1) == canonical_key(
            "Shop", date(2024, 1, 1), 1
        )

    @pytest.mark.parametrize(
        ("merchant", "day", "total"),
        [
            (None, "2024-01-01", 1),
            ("", "2024-01-01", 1),
            ("Shop", None, 1),
            ("Shop", "   ", 1),
            ("Shop", "2024-01-01", None),
            ("Shop", "2024-01-01", "12.00"),
            ("Shop", "2024-01-01", True),
            ("Shop", "2024-01-01", float("nan")),
        ],
    )
    def test_undefined_when_input_unusable(
        self, merchant: str | None, day: str | None, total: object
    ) -> None:
        assert canonical_key(merchant, day, total) is None

    def test_undefined_when_merchant_is_only_suffixes(self) -> None:
        assert canonical_key("Grocery Store", "2024-01-01", 1) is None


class TestNormalizeMerchant:
    """Tests for normalize_merchant()."""

    def test_strips_suffix_words(self) -> None:
        assert normalize_merchant("Costco Wholesale") == "costco"
        assert normalize_merchant("Acme Corp.") == "acme"
        assert normalize_merchant("Fresh Market LLC") == "fresh"

    def test_keeps_suffix_inside_words(self) -> None:
        assert normalize_merchant("Costco") == "costco"
        assert normalize_merchant("Incredible Foods") == "incrediblefoods"

    def test_empty(self) -> None:
        assert normalize_merchant(None) == ""
        assert normalize_merchant("   ") == ""


class TestReceiptKey:
    """Tests for receipt_key()."""

    def test_draft(self) -> None:
        draft = ReceiptDraft(
            merchant_name="Costco",
            transaction_date=date(2024, 3, 1),
            total=Decimal("54.20"),
        )
        assert receipt_key(draft) == "costco-2024-03-01-54.20"

    def test_missing_date_has_no_key(self) -> None:
        draft = ReceiptDraft(merchant_name="Costco", total=Decimal("54.20"))
        assert receipt_key(draft) is None
