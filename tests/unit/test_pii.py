"""
Unit tests for cos_engine.pii — outbound PII scrubbing.
"""
import pytest

from cos_engine.pii import luhn_check, scrub_pii_from_messages, scrub_pii_from_text


class TestScrubText:
    @pytest.mark.parametrize("text,placeholder", [
        ("write to jane.doe@example.org", "[EMAIL]"),
        ("call +1 415 555 0199 tomorrow", "[PHONE]"),
        ("card 4111111111111111", "[CREDIT_CARD]"),
        ("server at 8.8.8.8", "[IP_ADDR]"),
        ("ssn 123-45-6789", "[SSN]"),
    ])
    def test_replaced(self, text, placeholder):
        assert placeholder in scrub_pii_from_text(text)

    def test_private_ip_kept(self):
        assert scrub_pii_from_text("ping 192.168.1.20") == "ping 192.168.1.20"

    def test_dates_are_not_phones(self):
        assert "[PHONE]" not in scrub_pii_from_text("due 20260106")

    def test_non_string_untouched(self):
        assert scrub_pii_from_text(None) is None


def test_luhn():
    assert luhn_check("4111111111111111")
    assert not luhn_check("4111111111111112")


class TestScrubMessages:
    def test_tool_messages_exempt(self):
        messages = [
            {"role": "tool", "tool_call_id": "c", "content": "owner: jane@example.org"},
            {"role": "user", "content": [{"type": "text", "text": "jane@example.org"}]},
        ]
        out = scrub_pii_from_messages(messages)
        assert out[0] is messages[0]
        assert out[1]["content"][0]["text"] == "[EMAIL]"
        assert messages[1]["content"][0]["text"] == "jane@example.org"


class TestIdempotence:
    @pytest.mark.parametrize("text", [
        "write to jane.doe@example.org",
        "call +1 415 555 0199 tomorrow",
        "card 4111111111111111",
        "ssn 123-45-6789",
        "jane@example.org, +1 415 555 0199, 4111111111111111, 123-45-6789",
        "nothing sensitive here",
    ])
    def test_second_pass_is_a_no_op(self, text):
        once = scrub_pii_from_text(text)
        assert scrub_pii_from_text(once) == once

    def test_placeholders_survive(self):
        assert scrub_pii_from_text("[EMAIL] [PHONE] [SSN] [CREDIT_CARD]") == "[EMAIL] [PHONE] [SSN] [CREDIT_CARD]"
