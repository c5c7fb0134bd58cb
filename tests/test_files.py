import os

import pytest

from qobuz.files import MAX_NAME_LENGTH, build_filename, build_folder_path, sanitize_filename
from qobuz.metadata import TrackMetadata

META = TrackMetadata(
    title="What/Is: Love?", artist="A & B", album_artist="A", album="Best Of...",
    year="1993", track_number=7,
)


@pytest.mark.parametrize("raw, expected", [
    ('AC/DC: "Live"', "ACDC Live"),
    ("  lots   of\tspace  ", "lots of space"),
    ("...dots...", "dots"),
    ("", "Unknown"),
    (None, "Unknown"),
    ("<>:|?*", "Unknown"),
    ("tab\x00null", "tabnull"),
])
def test_sanitize_filename(raw, expected):
    assert sanitize_filename(raw) == expected


def test_sanitize_caps_length():
    assert len(sanitize_filename("x" * 500)) == MAX_NAME_LENGTH


def test_folder_path_default_template():
    assert build_folder_path("{artist}/{album}", META, "FLAC 24-bit/96kHz") == os.path.join("A", "Best Of")


def test_folder_path_placeholders():
    path = build_folder_path("{album_artist}/{year} - {album} [{quality}]", META, "FLAC 24-bit/96kHz")
    assert path == os.path.join("A", "1993 - Best Of [FLAC 24-bit-96kHz]")


def test_folder_path_missing_year():
    meta = TrackMetadata(album="X", artist="Y")
    assert build_folder_path("{year}/{album}", meta, "MP3 320") == os.path.join("Unknown", "X")


def test_filename_zero_pads_track_number():
    assert build_filename("{track_number}. {title}", META, "flac") == "07. WhatIs Love.flac"


def test_filename_aliases():
    assert build_filename("{trackNumber} - {artist} - {title}", META, "mp3") == "07 - A & B - WhatIs Love.mp3"


def test_sanitize_turns_newlines_into_spaces():
    assert sanitize_filename("line one\nline two\r\n") == "line one line two"


def test_placeholders_inside_values_are_not_expanded():
    meta = TrackMetadata(title="Live {album} {year}", artist="A", album="X", year="2001", track_number=1)
    assert build_filename("{track_number}. {title}", meta, "flac") == "01. Live {album} {year}.flac"
    assert build_folder_path("{title}/{album}", meta, "MP3 320") == os.path.join("Live {album} {year}", "X")
