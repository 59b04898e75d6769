"""Unit tests for text corruption heuristics."""

from acap.core.acquisition.corruption import (
    analyze_repetition,
    decode_html,
    fix_mojibake,
    is_corrupted_text,
    sanitize_content,
)

PROSE = (
    "The council met on Tuesday to discuss the transit budget. Members asked questions "
    "about the timeline and the cost of the new stations. "
)


def test_empty_text_is_corrupted():
    assert is_corrupted_text("") is True


def test_plain_prose_is_not_corrupted():
    assert is_corrupted_text(PROSE * 3) is False


def test_accented_prose_is_not_corrupted():
    text = "Le café de la gare a rouvert après les travaux. Les habitués étaient ravis. " * 3
    assert is_corrupted_text(text) is False


def test_heavily_accented_prose_is_not_corrupted():
    vietnamese = (
        "Hội đồng thành phố đã thông qua ngân sách giao thông mới vào thứ Ba. "
        "Người dân hy vọng thời gian đi lại sẽ ngắn hơn trong năm tới. "
    )
    czech = "Městská rada schválila nový rozpočet na dopravu. Kritici žádají nezávislý audit. "
    assert is_corrupted_text(vietnamese * 3) is False
    assert is_corrupted_text(czech * 3) is False


def test_brackets_followed_by_invisible_run_is_not_corrupted():
    text = PROSE + "Related [] " + "\u200b " * 40 + " " + PROSE
    assert is_corrupted_text(text) is False


def test_separator_lines_are_not_corrupted():
    text = PROSE + "\n" + "-" * 60 + "\n" + PROSE + "\n" + "=" * 40 + "\n" + PROSE
    assert is_corrupted_text(text) is False


def test_zero_padding_is_not_corrupted():
    text = PROSE + " Reference 0000000000000000 filed. " + PROSE
    assert is_corrupted_text(text) is False


def test_long_repeated_garbage_is_corrupted():
    text = "Intro text before the damage. " + "#$%&" * 40 + " trailing words"
    assert is_corrupted_text(text) is True


def test_replacement_characters_are_corrupted():
    assert is_corrupted_text(PROSE + "\ufffd\ufffd\ufffd" + PROSE) is True


def test_control_characters_are_corrupted():
    assert is_corrupted_text(PROSE + "\x01" + PROSE) is True


def test_mostly_non_ascii_is_corrupted():
    assert is_corrupted_text("一二三" * 50) is True


def test_repetition_ignores_invisible_formatting():
    analysis = analyze_repetition("text " + "\u200b" * 80 + " more")
    assert analysis.patterns == []
    assert analysis.score == 0.0


def test_sanitize_content_strips_control_and_collapses_whitespace():
    assert sanitize_content("  a\x00b \n\n c\ufffd\ufffd ") == "ab c"


def test_sanitize_content_empty():
    assert sanitize_content("") == ""


def test_fix_mojibake_repairs_double_decoded_text():
    assert fix_mojibake("cafÃ© â€™") == "café ’"


def test_fix_mojibake_leaves_clean_text():
    assert fix_mojibake("café") == "café"


def test_decode_html_uses_header_charset():
    body = "café".encode("latin-1")
    assert decode_html(body, "text/html; charset=iso-8859-1") == "café"


def test_decode_html_uses_meta_charset():
    body = '<meta charset="windows-1252"><p>café</p>'.encode("cp1252")
    assert "café" in decode_html(body)
