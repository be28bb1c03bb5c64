from __future__ import annotations

from datetime import UTC, datetime

import pytest

from src.core.domain import TITLE_PLACEHOLDER
from src.ingestion.source_connector import ExtractedFields
from src.processing.data_cleaner import (
    clean_amount,
    clean_coordinates,
    clean_datetime,
    clean_email,
    clean_fields,
    clean_phone,
    clean_text,
    clean_title,
    clean_url,
)

pytestmark = pytest.mark.unit

NOW = datetime(2026, 4, 1, tzinfo=UTC)


def _issues(cleaned, field_name: str) -> list[str]:
    return [warning.issue for warning in cleaned.warnings if warning.field == field_name]


def test_clean_text_strips_markup_scripts_and_whitespace() -> None:
    text, issues = clean_text(
        "<p>Live&nbsp;<b>Jazz</b></p><script>alert(1)</script>\n\n tonight",
        max_length=100,
    )

    assert text == "Live Jazz tonight"
    assert issues == ["markup_removed"]


def test_clean_text_truncates_on_word_boundary() -> None:
    text, issues = clean_text("word " * 30, max_length=32)

    assert text is not None
    assert len(text) <= 32
    assert not text.endswith(" ")
    assert issues == ["truncated"]


def test_missing_title_becomes_placeholder() -> None:
    title, issues, defaulted = clean_title("   <br/> ")

    assert title == TITLE_PLACEHOLDER
    assert "missing" in issues
    assert defaulted is True


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("HTTPS://Example.COM/Path?q=1#frag", "https://example.com/Path?q=1"),
        ("//cdn.example.com/a.jpg", "https://cdn.example.com/a.jpg"),
        ("www.example.com", "https://www.example.com"),
        ("javascript:alert(1)", None),
        ("ftp://files.example.com/x", None),
        ("not a url", None),
    ],
)
def test_clean_url(value: str, expected: str | None) -> None:
    assert clean_url(value)[0] == expected


def test_clean_email_and_phone() -> None:
    assert clean_email("mailto:Info@Venue.COM") == ("info@venue.com", [])
    assert clean_email("nobody@") == (None, ["invalid_email"])
    assert clean_phone("+1 (512) 555-0100") == ("+15125550100", [])
    assert clean_phone("555") == (None, ["invalid_phone"])


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (25, (25.0, [])),
        ("1,250.50", (1250.5, [])),
        ("-5", (None, ["negative_price"])),
        ("abc", (None, ["invalid_amount"])),
        (1_000_000, (None, ["price_out_of_range"])),
        (True, (None, [])),
    ],
)
def test_clean_amount(value: object, expected: tuple[float | None, list[str]]) -> None:
    assert clean_amount(value) == expected


def test_clean_coordinates_drops_both_on_bad_input() -> None:
    assert clean_coordinates("30.26", "-97.74") == (30.26, -97.74, [])
    assert clean_coordinates("95", "10") == (None, None, ["coordinates_out_of_range"])
    assert clean_coordinates(0, 0) == (None, None, ["null_island"])
    assert clean_coordinates("x", "1") == (None, None, ["invalid_coordinates"])
    assert clean_coordinates(None, "") == (None, None, [])


def test_clean_datetime_formats() -> None:
    naive, date_only, issues = clean_datetime("2026-05-01T20:00:00")
    assert naive == datetime(2026, 5, 1, 20, 0)
    assert (date_only, issues) == (False, [])

    assert clean_datetime("2026-05-01")[1] is True
    assert clean_datetime(1777665600000)[0] == datetime.fromtimestamp(1777665600, tz=UTC)
    assert clean_datetime("May 1, 2026 8:00 PM")[0] == datetime(2026, 5, 1, 20, 0)
    assert clean_datetime("sometime soon") == (None, False, ["unparseable_date"])


def test_clean_fields_never_raises_and_collects_warnings() -> None:
    cleaned = clean_fields(
        ExtractedFields(
            title=None,
            start="not a date",
            timezone="Mars/Olympus",
            latitude="abc",
            longitude="1",
            price_min="-3",
            currency="dollars",
            images=["https://img.test/a.jpg", "https://img.test/a.jpg", "bad"],
            url="ftp://x",
            categories=["Music", "music", ""],
        ),
        now=NOW,
    )

    assert cleaned.title == TITLE_PLACEHOLDER
    assert "title" in cleaned.defaulted
    assert _issues(cleaned, "start") == ["unparseable_date", "missing"]
    assert _issues(cleaned, "timezone") == ["unknown_timezone"]
    assert _issues(cleaned, "coordinates") == ["invalid_coordinates"]
    assert _issues(cleaned, "price") == ["negative_price"]
    assert _issues(cleaned, "currency") == ["invalid_currency"]
    assert _issues(cleaned, "media") == ["invalid_url"]
    assert cleaned.images == ["https://img.test/a.jpg"]
    assert cleaned.categories == ["Music"]
    assert cleaned.url is None


def test_clean_fields_flags_stale_start_and_inverted_schedule() -> None:
    cleaned = clean_fields(
        ExtractedFields(
            title="Old Show",
            start="2025-01-01T20:00:00Z",
            end="2024-12-31T20:00:00Z",
        ),
        now=NOW,
    )

    assert _issues(cleaned, "start") == ["stale"]
    assert _issues(cleaned, "end") == ["end_before_start"]
