from job_assistant.redaction import REDACTION_MARKER, TRUNCATION_MARKER, contains_sensitive, redact, sanitize, truncate


def test_sensitive_params_are_replaced_whole():
    value, redacted = redact({"username": "sam", "password": "abc123"})

    assert redacted is True
    assert value == REDACTION_MARKER


def test_keyword_match_is_case_insensitive_and_looks_at_values():
    assert contains_sensitive({"note": "my API_KEY is here"})
    assert contains_sensitive("Bearer Token xyz")
    assert not contains_sensitive({"keywords": "software engineer", "location": "Austin"})


def test_clean_values_pass_through():
    params = {"keywords": "data engineer"}
    assert redact(params) == (params, False)
    assert redact(None) == (None, False)


def test_oversized_values_are_truncated_with_marker():
    big = {"html": "x" * 20_000}

    value, truncated = truncate(big, max_bytes=10_240, keep_chars=5_000)

    assert truncated is True
    assert value.endswith(TRUNCATION_MARKER)
    assert len(value) == 5_000 + len(TRUNCATION_MARKER)


def test_multibyte_text_is_truncated_to_the_byte_limit():
    text = "界" * 5_000

    value, truncated = truncate(text, max_bytes=10_240, keep_chars=5_000)

    assert truncated is True
    assert len(value.encode("utf-8")) <= 10_240
    assert value == "界" * 3_408 + TRUNCATION_MARKER


def test_small_values_are_not_truncated():
    assert truncate({"ok": True}, max_bytes=10_240, keep_chars=5_000) == ({"ok": True}, False)


def test_sanitize_prefers_redaction_over_truncation():
    value, redacted, truncated = sanitize({"secret": "y" * 20_000}, max_bytes=100, keep_chars=10)

    assert (value, redacted, truncated) == (REDACTION_MARKER, True, False)
