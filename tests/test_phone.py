"""Tests for voice_gateway.services.phone."""

import pytest

from voice_gateway.services.phone import (
    display_phone,
    fallback_formats,
    last_ten_digits,
    mask_phone,
    normalize_phone,
    to_e164,
)


class TestNormalizePhone:
    """Equivalent spellings of a US number normalize to the same ten digits."""

    @pytest.mark.parametrize("raw", [
        "+12677210098",
        "12677210098",
        "2677210098",
        "(267) 721-0098",
        "267-721-0098",
        "+1 (267) 721-0098",
    ])
    def test_us_spellings_collapse(self, raw):
        assert normalize_phone(raw) == "2677210098"

    def test_empty_is_none(self):
        assert normalize_phone("") is None
        assert normalize_phone(None) is None
        assert normalize_phone("no digits") is None

    def test_non_us_length_kept(self):
        assert normalize_phone("+44 20 7946 0958") == "442079460958"


class TestFormats:
    def test_e164(self):
        assert to_e164("(267) 721-0098") == "+12677210098"
        assert to_e164(None) is None

    def test_last_ten_digits(self):
        assert last_ten_digits("+12677210098") == "2677210098"

    def test_display_for_speech(self):
        assert display_phone("+12677210098") == "267 721 0098"

    def test_display_passthrough_for_other_lengths(self):
        assert display_phone("12345") == "12345"

    def test_mask_keeps_first_five(self):
        assert mask_phone("+12677210098") == "+1267***"
        assert mask_phone(None) == "unknown"


class TestFallbackFormats:
    def test_ten_digit_variants(self):
        formats = fallback_formats("2677210098")
        assert "+12677210098" in formats
        assert "12677210098" in formats
        assert "(267) 721-0098" in formats
        assert "267-721-0098" in formats

    def test_excludes_primary(self):
        formats = fallback_formats("+12677210098")
        assert "+12677210098" not in formats
        assert "2677210098" in formats

    def test_no_duplicates(self):
        formats = fallback_formats("12677210098")
        assert len(formats) == len(set(formats))

    def test_unknown_length_has_no_fallbacks(self):
        assert fallback_formats("12345") == []
