"""Unit tests for utility functions."""

import os
import stat

import pytest
from webmail_proxy.lib.utils import (
    base_subject,
    email_domain,
    ensure_secure_directory,
    ensure_secure_file,
    parse_bool,
    safe_int,
    strip_html,
    validate_email_address,
)


class TestValidateEmailAddress:
    """Test validate_email_address function."""

    def test_valid_addresses(self):
        """Test common valid address formats."""
        assert validate_email_address("user@example.com")
        assert validate_email_address("first.last+tag@mail.example.co.uk")

    def test_invalid_addresses(self):
        """Test malformed addresses are rejected."""
        assert not validate_email_address("")
        assert not validate_email_address("no-at-sign")
        assert not validate_email_address("user@")
        assert not validate_email_address("user@localhost")
        assert not validate_email_address(None)

    def test_surrounding_whitespace_is_ignored(self):
        """Test leading/trailing whitespace does not invalidate an address."""
        assert validate_email_address("  user@example.com ")


class TestEmailDomain:
    """Test email_domain function."""

    def test_domain_is_lowercased(self):
        assert email_domain("User@Example.COM") == "example.com"

    def test_missing_domain(self):
        assert email_domain("nobody") == ""


class TestBaseSubject:
    """Test base_subject function."""

    @pytest.mark.parametrize(
        "subject,expected",
        [
            ("Status", "Status"),
            ("Re: Status", "Status"),
            ("RE: re: Status", "Status"),
            ("Fwd: Re: FW: Status", "Status"),
            ("  re :  Status  ", "Status"),
            ("", ""),
            (None, ""),
        ],
    )
    def test_prefixes_are_stripped(self, subject, expected):
        """Test repeated reply/forward markers are removed."""
        assert base_subject(subject) == expected

    def test_prefix_inside_subject_is_kept(self):
        """Test only leading markers are stripped."""
        assert base_subject("Report re: Q3") == "Report re: Q3"


class TestStripHtml:
    """Test strip_html function."""

    def test_tags_removed_and_entities_decoded(self):
        assert strip_html("<p>Fish &amp; chips</p>") == "Fish & chips"

    def test_line_breaks_preserved(self):
        assert strip_html("one<br>two<br/>three") == "one\ntwo\nthree"

    def test_script_and_style_dropped(self):
        markup = "<style>p{color:red}</style><p>Hi</p><script>alert(1)</script>"
        assert strip_html(markup) == "Hi"

    def test_empty(self):
        assert strip_html(None) == ""


class TestSafeInt:
    """Test safe_int function."""

    def test_valid_values(self):
        assert safe_int("42") == 42
        assert safe_int(7) == 7

    def test_invalid_values_use_default(self):
        assert safe_int("abc") == 0
        assert safe_int(None, default=5) == 5


class TestParseBool:
    """Test parse_bool function."""

    @pytest.mark.parametrize("value", ["true", "TRUE", "1", "yes", "on", True])
    def test_truthy(self, value):
        assert parse_bool(value) is True

    @pytest.mark.parametrize("value", ["false", "0", "no", "", "maybe", False])
    def test_falsy(self, value):
        assert parse_bool(value) is False

    def test_none_returns_default(self):
        assert parse_bool(None, default=True) is True


class TestSecurePermissions:
    """Test ensure_secure_file / ensure_secure_directory."""

    def test_directory_created_owner_only(self, tmp_path):
        """
        Validates: data directory is created with 0o700

        Expected outcome:
        - Nested directory exists
        - Group and others have no access
        """
        target = tmp_path / "a" / "b"
        ensure_secure_directory(target)

        assert target.is_dir()
        assert stat.S_IMODE(os.stat(target).st_mode) & (stat.S_IRWXG | stat.S_IRWXO) == 0

    def test_insecure_file_is_fixed(self, tmp_path):
        """
        Validates: world-readable database file is tightened

        Expected outcome:
        - Mode becomes 0o600
        """
        target = tmp_path / "db.sqlite"
        target.write_text("")
        os.chmod(target, 0o644)

        ensure_secure_file(target)

        assert stat.S_IMODE(os.stat(target).st_mode) == 0o600

    def test_missing_file_is_created(self, tmp_path):
        target = tmp_path / "new.db"
        ensure_secure_file(target)
        assert target.exists()
