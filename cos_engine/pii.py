"""
PII scrubbing for outbound LLM payloads.

Emails, phone numbers, SSNs, card numbers (Luhn-validated), IBANs, Medicare
and TFN numbers and public IPv4 addresses are replaced with placeholders.
Tool-result messages are exempt: they carry identifiers the model must echo
verbatim in follow-up tool calls.
"""
import re
from dataclasses import dataclass
from typing import Any, Callable


def luhn_check(digits: str) -> bool:
    """Validate a card-number candidate with the Luhn checksum."""
    cleaned = re.sub(r"[\s\-]", "", digits)
    if not re.fullmatch(r"\d{13,19}", cleaned):
        return False
    total = 0
    alternate = False
    for ch in reversed(cleaned):
        n = int(ch)
        if alternate:
            n *= 2
            if n > 9:
                n -= 9
        total += n
        alternate = not alternate
    return total % 10 == 0


def is_likely_phone_number(match: str) -> bool:
    """Reject date-, timestamp- and ID-shaped digit runs."""
    stripped = re.sub(r"[\s.\-()]", "", match)
    if re.fullmatch(r"\d{8,9}", stripped) and not re.search(r"[+(]", match):
        return False
    if re.fullmatch(r"\d{4}[01]\d[0-3]\d", stripped):
        return False
    if re.fullmatch(r"\d{2,4}[\s.\-]\d{1,2}[\s.\-]\d{2,4}", match.strip()):
        return False
    return True


@dataclass(frozen=True)
class PiiPattern:
    regex: re.Pattern
    replacement: str
    min_length: int = 0
    validator: Callable[[str], bool] | None = None


PII_SCRUB_PATTERNS: tuple[PiiPattern, ...] = (
    PiiPattern(re.compile(r"\b[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}\b"), "[EMAIL]"),
    PiiPattern(
        re.compile(r"(?<![A-Za-z0-9])(?:\+?[1-9]\d{0,2}[\s.\-]?)?(?:\(?\d{2,4}\)?[\s.\-]?)?\d{3,4}[\s.\-]?\d{3,4}(?![A-Za-z0-9])"),
        "[PHONE]", min_length=7, validator=is_likely_phone_number,
    ),
    PiiPattern(re.compile(r"\b\d{3}[\s\-]\d{2}[\s\-]\d{4}\b"), "[SSN]"),
    PiiPattern(re.compile(r"\b(?:\d[\s\-]?){13,19}\b"), "[CREDIT_CARD]", validator=luhn_check),
    PiiPattern(re.compile(r"\b[A-Z]{2}\d{2}\s?[A-Z0-9]{4}\s?(?:[A-Z0-9]{4}\s?){1,7}[A-Z0-9]{1,4}\b"), "[IBAN]"),
    PiiPattern(re.compile(r"\b[2-6]\d{3}\s?\d{5}\s?\d{1,2}\b"), "[MEDICARE]"),
    PiiPattern(re.compile(r"\b\d{3}\s?\d{3}\s?\d{2,3}\b"), "[TFN]", min_length=8),
    PiiPattern(
        re.compile(
            r"\b(?!127\.0\.0\.1|0\.0\.0\.0|192\.168\.\d{1,3}\.\d{1,3}|10\.\d{1,3}\.\d{1,3}\.\d{1,3})"
            r"(?:25[0-5]|2[0-4]\d|[01]?\d\d?)\.(?:25[0-5]|2[0-4]\d|[01]?\d\d?)\."
            r"(?:25[0-5]|2[0-4]\d|[01]?\d\d?)\.(?:25[0-5]|2[0-4]\d|[01]?\d\d?)\b"
        ),
        "[IP_ADDR]",
    ),
)


def scrub_pii_from_text(text: Any) -> Any:
    if not text or not isinstance(text, str):
        return text
    result = text
    for pattern in PII_SCRUB_PATTERNS:
        def _replace(m: re.Match, p: PiiPattern = pattern) -> str:
            match = m.group(0)
            if p.min_length and len(re.sub(r"[\s\-]", "", match)) < p.min_length:
                return match
            if p.validator is not None and not p.validator(match):
                return match
            return p.replacement
        result = pattern.regex.sub(_replace, result)
    return result


def scrub_pii_from_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Return a scrubbed copy of ``messages``; ``role == "tool"`` entries pass through untouched."""
    out: list[dict[str, Any]] = []
    for msg in messages:
        if not msg or msg.get("role") == "tool":
            out.append(msg)
            continue
        scrubbed = dict(msg)
        content = scrubbed.get("content")
        if isinstance(content, str):
            scrubbed["content"] = scrub_pii_from_text(content)
        elif isinstance(content, list):
            blocks = []
            for block in content:
                if not isinstance(block, dict) or block.get("type") == "tool_result":
                    blocks.append(block)
                    continue
                b = dict(block)
                if isinstance(b.get("text"), str):
                    b["text"] = scrub_pii_from_text(b["text"])
                if isinstance(b.get("content"), str):
                    b["content"] = scrub_pii_from_text(b["content"])
                blocks.append(b)
            scrubbed["content"] = blocks
        out.append(scrubbed)
    return out
