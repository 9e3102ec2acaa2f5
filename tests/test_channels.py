import pytest

from core.channels import Channel, intuitive_key


def test_intuitive_order_compares_digit_runs_numerically():
    names = ["U238", "Pb208", "Hg202", "Pb206", "U235", "Pb204", "Mass10", "Mass9"]
    ordered = sorted(names, key=intuitive_key)
    assert ordered == ["Hg202", "Mass9", "Mass10", "Pb204", "Pb206", "Pb208", "U235", "U238"]


def test_prefix_sorts_before_longer_name():
    assert Channel("Pb") < Channel("Pb204")


def test_channel_equality_and_hash_by_name():
    a, b = Channel("Pb206"), Channel("Pb206")
    assert a == b
    assert len({a, b}) == 1
    assert str(a) == "Pb206"
    assert sorted([Channel("U238"), Channel("Pb204")])[0].name == "Pb204"


def test_empty_channel_name_rejected():
    with pytest.raises(ValueError):
        Channel("")
