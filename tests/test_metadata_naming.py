from __future__ import annotations

from metadata.naming import MAX_STEM_LENGTH, default_extension, default_stem, sanitize_filename


def test_sanitize_filename_strips_unsafe_chars_and_trailing_dot_space() -> None:
    assert sanitize_filename('  My<>:"/\\|?*Video.  ', "mp4") == "MyVideo.mp4"


def test_sanitize_filename_collapses_whitespace_and_control_chars() -> None:
    assert sanitize_filename("Line   one \x07 two\n", "m4a") == "Line one two.m4a"


def test_sanitize_filename_truncates_long_titles() -> None:
    name = sanitize_filename("x" * 300, "mp4")
    assert name == "x" * MAX_STEM_LENGTH + ".mp4"


def test_sanitize_filename_falls_back_to_platform_default() -> None:
    assert sanitize_filename("", "mp4", "youtube") == "video.mp4"
    assert sanitize_filename("???", "mp3", "tiktok") == "tiktok.mp3"
    assert sanitize_filename(None, "mp4", "instagram") == "instagram.mp4"
    assert sanitize_filename("...", "mp4") == "video.mp4"


def test_sanitize_filename_instagram_drops_hashtags_only_for_instagram() -> None:
    assert sanitize_filename("Sunset #travel #beach", "mp4", "instagram") == "Sunset travel beach.mp4"
    assert sanitize_filename("Track #1", "mp4", "youtube") == "Track #1.mp4"


def test_sanitize_filename_keeps_unicode_and_cleans_extension() -> None:
    assert sanitize_filename("Café déjà vu", "mp4") == "Café déjà vu.mp4"
    assert sanitize_filename("clip", "../mp4") == "clip.mp4"
    assert sanitize_filename("clip", "") == "clip.mp4"


def test_sanitize_filename_stringifies_non_string_titles() -> None:
    assert sanitize_filename(12345, "mp4") == "12345.mp4"


def test_default_extension_and_stem() -> None:
    assert default_extension("youtube", "audio") == "m4a"
    assert default_extension("tiktok", "audio") == "mp3"
    assert default_extension("tiktok", "nowatermark") == "mp4"
    assert default_extension("instagram", None) == "mp4"
    assert default_stem("tiktok") == "tiktok"
    assert default_stem(None) == "video"
