import pytest

from chatlog_anonymizer.pii_guard import contains_pii, find_spans, safe_preview, scrub


@pytest.mark.parametrize("text, label", [
    ("mail john.smith@example.com now", "EMAIL"),
    ("card 4111 1111 1111 1111 ok", "CREDIT_CARD"),
    ("ssn 123-45-6789", "SSN"),
    ("call +1-555-123-4567", "PHONE"),
    ("from 192.168.1.20", "IP_ADDRESS"),
])
def test_detects(text, label):
    assert [l for l, _ in find_spans(text)] == [label]
    assert contains_pii(text)


def test_clean_text():
    assert not contains_pii("Target responded with HTTP 500")
    assert find_spans("") == []


def test_scrub_replaces_every_match():
    text = "a@b.io wrote to c@d.io"
    assert scrub(text) == "<EMAIL> wrote to <EMAIL>"


def test_overlaps_resolved_once():
    spans = find_spans("ssn 123-45-6789")
    assert len(spans) == 1


def test_safe_preview_compacts_and_truncates():
    text = "error:\n\n   " + "word " * 100
    preview = safe_preview(text, 50)
    assert len(preview) == 50
    assert "\n" not in preview
    assert "  " not in preview


def test_safe_preview_scrubs_before_truncating():
    preview = safe_preview("contact john.smith@example.com", 20)
    assert "john" not in preview
    assert preview == "contact <EMAIL>"
