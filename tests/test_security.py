"""Tests for security utilities."""
import pytest
from vpn_store import security


class TestSecurity:
    """Test security validation and sanitization."""

    def test_sanitize_string_normal(self):
        """Test string sanitization with normal input."""
        assert security.sanitize_string("Hello World") == "Hello World"

    def test_sanitize_string_with_nulls(self):
        """Test string sanitization removes null bytes."""
        assert security.sanitize_string("Hello\x00World") == "HelloWorld"

    def test_sanitize_string_max_length(self):
        """Test string sanitization respects max length."""
        assert len(security.sanitize_string("A" * 1000, max_length=100)) == 100

    def test_sanitize_non_string(self):
        """Test non-string input becomes empty."""
        assert security.sanitize_string(None) == ""

    @pytest.mark.parametrize("name", ["abc", "user_01", "A" * 20])
    def test_valid_usernames(self, name):
        """Test accepted account names."""
        assert security.validate_account_username(name) is True

    @pytest.mark.parametrize("name", ["ab", "A" * 21, "bad-name", "space name", ""])
    def test_invalid_usernames(self, name):
        """Test rejected account names."""
        assert security.validate_account_username(name) is False

    def test_password_rules(self):
        """Test passwords need six alphanumerics."""
        assert security.validate_account_password("abc123") is True
        assert security.validate_account_password("abc12") is False
        assert security.validate_account_password("abc_123") is False

    def test_validate_domain(self):
        """Test domain validation."""
        assert security.validate_domain("sg1.example.com") is True
        assert security.validate_domain("-bad.example.com") is False
        assert security.validate_domain("") is False

    def test_validate_user_id(self):
        """Test numeric user ids parse."""
        assert security.validate_user_id(" 12345 ") == (True, 12345)
        assert security.validate_user_id("12a") == (False, None)

    def test_parse_level_change(self):
        """Test the id and level pair format."""
        assert security.parse_level_change("123 GOLD") == (True, 123, "gold")
        assert security.parse_level_change("123 diamond") == (False, None, None)
        assert security.parse_level_change("123") == (False, None, None)

    def test_validate_int_and_price(self):
        """Test numeric field validation."""
        assert security.validate_int("5") == (True, 5)
        assert security.validate_int("-1") == (False, None)
        assert security.validate_price("1500.5") == (True, 1500.5)
        assert security.validate_price("0") == (False, None)

    def test_secure_filename_strips_path(self):
        """Test path parts and leading dots are removed."""
        assert security.secure_filename("../../etc/passwd") == "passwd"
        assert security.secure_filename(".hidden.db") == "hidden.db"
        assert security.secure_filename("back up$.db") == "backup.db"
        assert security.secure_filename("") == "unknown"

    def test_secure_filename_length(self):
        """Test long names are shortened but keep the extension."""
        result = security.secure_filename("a" * 300 + ".db")
        assert len(result) == security.MAX_FILENAME_LENGTH
        assert result.endswith(".db")
