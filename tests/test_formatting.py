"""Tests for message formatting helpers."""
from vpn_store import formatting


class TestFormatting:
    """Test text helpers."""

    def test_escape_markdown(self):
        """Test MarkdownV2 special characters are escaped."""
        assert formatting.escape_markdown("a_b.c!") == "a\\_b\\.c\\!"
        assert formatting.escape_markdown("(x)") == "\\(x\\)"

    def test_format_currency(self):
        """Test thousands are separated with dots."""
        assert formatting.format_currency(1234567) == "Rp 1.234.567"
        assert formatting.format_currency(0) == "Rp 0"
        assert formatting.format_currency(None) == "Rp 0"

    def test_flag_by_name(self):
        """Test country and city names map to flags."""
        assert formatting.flag_emoji("Singapore") == "🇸🇬"
        assert formatting.flag_emoji("Jakarta Pusat") == "🇮🇩"

    def test_flag_by_code(self):
        """Test short country codes map when they are whole tokens."""
        assert formatting.flag_emoji("Server SG") == "🇸🇬"
        assert formatting.flag_emoji("JP-2") == "🇯🇵"

    def test_flag_default(self):
        """Test unknown locations fall back to the globe."""
        assert formatting.flag_emoji("Atlantis") == "🌐"
        assert formatting.flag_emoji(None) == "🌐"

    def test_server_button_label(self):
        """Test server buttons show flag, name and price."""
        label = formatting.server_button_label({"nama_server": "SG 1", "harga": 1000, "lokasi": "Singapore"})
        assert label == "🇸🇬 SG 1 (Rp 1.000/Hari)"

    def test_invoice_text(self):
        """Test the group invoice escapes user supplied values."""
        text = formatting.invoice_text(
            buyer={"username": "john_doe", "user_id": 5},
            action="create",
            protocol="vmess",
            username="alice",
            server_name="SG.1",
            days=7,
            total=7000,
            commission=700,
        )
        assert "@john\\_doe" in text
        assert "SG\\.1" in text
        assert "Komisi" in text

    def test_account_details_text(self):
        """Test account details list the extra fields."""
        text = formatting.account_details_text(
            protocol="vless",
            action="renew",
            username="alice",
            server_name="SG",
            days=30,
            total=30000,
            expires_at="2030-01-01",
            details={"host": "sg.example.com", "empty": ""},
        )
        assert "PERPANJANGAN" in text
        assert "sg\\.example\\.com" in text
        assert "empty" not in text
