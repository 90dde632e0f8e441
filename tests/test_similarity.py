import pytest

from pipeline.similarity import (
    calculate_modification_degree,
    levenshtein_distance,
    normalize,
)


@pytest.mark.parametrize("text", ["", "a", "Hallo Welt", "<g id=\"1\">x</g>"])
def test_identical_strings_have_zero_degree(text):
    assert calculate_modification_degree(text, text) == 0


def test_empty_against_text_is_full_modification():
    assert calculate_modification_degree("", "x") == 1
    assert calculate_modification_degree("abc", "") == 1


def test_degree_is_levenshtein_ratio():
    assert levenshtein_distance("kitten", "sitting") == 3
    assert calculate_modification_degree("kitten", "sitting") == pytest.approx(3 / 7)


def test_degree_is_symmetric():
    a, b = "Open the file", "Open the files"
    assert calculate_modification_degree(a, b) == calculate_modification_degree(b, a)
    assert calculate_modification_degree(a, b) == pytest.approx(1 / 14)


def test_normalize_drops_markup_and_whitespace():
    assert normalize("  Click <ph id=\"1\"/> {1}  HERE ") == "click here"
