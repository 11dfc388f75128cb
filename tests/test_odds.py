import pytest

from paddock_utils import clean_text, names_match, parse_odds_to_decimal


@pytest.mark.parametrize("text,expected", [
    ("3.7", 3.7),
    ("5/2", 3.5),
    (" 11 / 4 ", 3.75),
    ("EXC 4.8", 4.8),
    ("about 7/2 this morning", 4.5),
    ("2", 2.0),
])
def test_parse_odds_to_decimal(text, expected):
    assert parse_odds_to_decimal(text) == pytest.approx(expected)


@pytest.mark.parametrize("text", [None, "", "   ", "evens", "1.0", "0.5", "1/0", "3/0", "SP 0/1"])
def test_parse_odds_rejects_unusable_values(text):
    assert parse_odds_to_decimal(text) is None


def test_fraction_is_never_read_as_its_numerator():
    assert parse_odds_to_decimal("5/2") != 5.0
    assert parse_odds_to_decimal("price 5/2") == pytest.approx(3.5)


def test_parsed_odds_always_exceed_stake():
    samples = ["1.01", "1/100", "100/1", "EXC 1.5", "1", "0", "SBK 1/1"]
    for text in samples:
        value = parse_odds_to_decimal(text)
        assert value is None or value > 1.0


def test_clean_text_collapses_nbsp_and_runs():
    assert clean_text("  Thunder\xa0  Bolt \n") == "Thunder Bolt"
    assert clean_text(None) == ""


def test_names_match_ignores_case_and_spacing():
    assert names_match("Thunder Bolt", "thunder   bolt")
    assert not names_match("Thunder Bolt", "Thunderbolt")
    assert not names_match("", "")
