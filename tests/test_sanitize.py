"""Tests for the sanitization boundary.

Covers:
- Operator stripping on nested objects and arrays
- Markup neutralization with secret passthrough
- Format validators and masking helpers
"""

import re

import pytest

from gatehouse.service.errors import ValidationError
from gatehouse.service.sanitize import (
    MAX_DEPTH,
    escape_html,
    escape_regex,
    is_clean,
    is_valid_email,
    is_valid_phone,
    is_valid_url,
    mask_email,
    mask_ip,
    mask_phone,
    normalize_whitespace,
    sanitize_filename,
    sanitize_input,
    sanitize_integer,
    sanitize_object,
    sanitize_pagination,
    sanitize_search_input,
    sanitize_string,
    sanitize_url,
    strip_dangerous_markup,
    strip_html_tags,
)


class TestSanitizeObject:
    def test_operator_only_object_disappears_with_its_key(self):
        assert sanitize_object({"a": 1, "b": {"$gt": 5}}) == {"a": 1}

    def test_operator_keys_removed_but_siblings_kept(self):
        result = sanitize_object({"filter": {"$where": "1", "name": "x"}})
        assert result == {"filter": {"name": "x"}}

    def test_arrays_are_cleaned_element_wise(self):
        result = sanitize_object({"tags": ["a", {"$ne": None}, "$gt", "b"]})
        assert result == {"tags": ["a", "b"]}

    def test_nested_dicts_in_arrays(self):
        result = sanitize_object([{"x": 1, "$or": []}, {"y": {"z": 2}}])
        assert result == [{"x": 1}, {"y": {"z": 2}}]

    def test_null_bytes_removed_from_strings(self):
        assert sanitize_object({"name": "ab\x00c"}) == {"name": "abc"}

    def test_empty_object_stays_empty(self):
        assert sanitize_object({}) == {}

    def test_top_level_operator_object_becomes_empty(self):
        assert sanitize_object({"$gt": 1}) == {}

    def test_scalars_pass_through(self):
        assert sanitize_object(5) == 5
        assert sanitize_object("plain") == "plain"

    def test_depth_limit_raises_validation_error(self):
        payload = {}
        cursor = payload
        for _ in range(MAX_DEPTH + 2):
            cursor["n"] = {}
            cursor = cursor["n"]
        with pytest.raises(ValidationError):
            sanitize_object(payload)

    def test_cleaned_output_is_clean(self):
        raw = {"a": {"$gt": 1, "b": [{"$in": [1]}, {"c": 1}]}}
        assert not is_clean(raw)
        assert is_clean(sanitize_object(raw))


class TestSanitizeInput:
    def test_markup_is_stripped_from_regular_fields(self):
        result = sanitize_input({"bio": "hi<script>alert(1)</script> there"})
        assert result == {"bio": "hi there"}

    def test_secret_fields_pass_verbatim(self):
        password = "P<a>ss-word:javascript:1"
        result = sanitize_input({"password": password, "email": "a@b.co"})
        assert result["password"] == password

    def test_operators_removed_even_from_secret_fields(self):
        result = sanitize_input({"password": {"$ne": ""}, "email": "a@b.co"})
        assert "password" not in result

    def test_nested_script_tags_do_not_reassemble(self):
        result = sanitize_input({"bio": "<scr<script></script>ipt>alert(1)</script>"})
        assert "<script" not in result["bio"].lower()
        assert result == {"bio": ""}


class TestMarkupHelpers:
    def test_strip_dangerous_markup(self):
        text = '<img src="x" onerror="alert(1)"><a href="javascript:evil()">x</a>'
        cleaned = strip_dangerous_markup(text)
        assert "onerror" not in cleaned
        assert "javascript:" not in cleaned

    def test_data_images_survive(self):
        assert "data:image/png" in strip_dangerous_markup("data:image/png;base64,AAA")
        assert "data:" not in strip_dangerous_markup("data:text/html,<b>")

    def test_escape_html(self):
        assert escape_html("<a href='/x'>&") == "&lt;a href=&#x27;&#x2F;x&#x27;&gt;&amp;"

    def test_sanitize_string_escapes_and_trims(self):
        assert sanitize_string("  <b>hi</b> ") == "&lt;b&gt;hi&lt;&#x2F;b&gt;"
        assert sanitize_string(None) == ""

    def test_strip_html_tags(self):
        assert strip_html_tags("<p>Hello <em>world</em></p><script>x()</script>") == "Hello world"

    def test_nested_markup_is_stripped_to_a_fixed_point(self):
        nested = "<scr<script></script>ipt>alert(1)</script>"
        assert strip_dangerous_markup(nested) == ""
        assert strip_html_tags(nested) == "alert(1)"

    def test_normalize_whitespace(self):
        assert normalize_whitespace("  a \n\t b  ") == "a b"


class TestValidators:
    @pytest.mark.parametrize(
        "email,expected",
        [
            ("user@example.com", True),
            ("first.last+tag@sub.example.org", True),
            ("no-at-sign", False),
            ("user@localhost", False),
            ("a" * 250 + "@x.com", False),
        ],
    )
    def test_is_valid_email(self, email, expected):
        assert is_valid_email(email) is expected

    @pytest.mark.parametrize(
        "phone,expected",
        [
            ("(555) 123-4567", True),
            ("+1 555 123 4567", True),
            ("555-1234", False),
            ("555-123-456a", False),
        ],
    )
    def test_is_valid_phone(self, phone, expected):
        assert is_valid_phone(phone) is expected

    def test_urls(self):
        assert is_valid_url("https://example.com/path?q=1")
        assert not is_valid_url("javascript:alert(1)")
        assert not is_valid_url("ftp://example.com")
        assert sanitize_url("  https://example.com ") == "https://example.com"
        assert sanitize_url("http://exa mple.com") is None


class TestFormatHelpers:
    def test_sanitize_filename_blocks_traversal(self):
        assert sanitize_filename("../../etc/passwd") == "etcpasswd"
        assert sanitize_filename("...") == "."
        assert sanitize_filename("") == "file"

    def test_sanitize_search_input(self):
        assert sanitize_search_input(" {$where: 1} <x> ") == "where: 1 x"
        assert len(sanitize_search_input("a" * 500)) == 200

    def test_escape_regex_matches_literally(self):
        assert escape_regex("a.b*c") == r"a\.b\*c"
        pattern = escape_regex("(1+1)?[x]")
        assert re.fullmatch(pattern, "(1+1)?[x]")
        assert not re.fullmatch(pattern, "11x")

    def test_sanitize_integer_bounds(self):
        assert sanitize_integer("42") == 42
        assert sanitize_integer("4.2") is None
        assert sanitize_integer(True) is None
        assert sanitize_integer(5, minimum=10) is None
        assert sanitize_integer(50, maximum=10) is None

    def test_sanitize_pagination_clamps(self):
        assert sanitize_pagination(None, None) == (1, 20)
        assert sanitize_pagination("0", "1000") == (1, 100)
        assert sanitize_pagination(3, -5) == (3, 1)


class TestMasking:
    def test_mask_email(self):
        assert mask_email("alice@example.com") == "a***@example.com"
        assert mask_email("broken") == "***"

    def test_mask_phone(self):
        assert mask_phone("(555) 123-4567") == "***-***-4567"
        assert mask_phone("12") == "***"

    def test_mask_ip(self):
        assert mask_ip("203.0.113.45") == "203.0.113.xxx"
        assert mask_ip("2001:db8::1") == "2001:0db8:0000:0000::xxxx"
        assert mask_ip("not-an-ip") == "invalid"
        assert mask_ip(None) is None
