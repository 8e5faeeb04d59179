from rollups.grouping import bucket_id, group_id, nested_groupings
from rollups.schemas import KeyPair, WindowKind

def _attrs(**kw):
    return [KeyPair(key=k, value=v) for k, v in kw.items()]

def test_group_id_joins_values_in_definition_order():
    attrs = _attrs(city="NYC", country="US")
    assert group_id("country|city", attrs) == "us|nyc"
    assert group_id("city|country", attrs) == "nyc|us"

def test_group_id_is_case_insensitive_in_keys_and_values():
    assert group_id("Country", [KeyPair(key="COUNTRY", value="Us")]) == "us"
    assert group_id("country", [KeyPair(key="country", value="US")]) == group_id("COUNTRY", [KeyPair(key="Country", value="us")])

def test_group_id_missing_key_resolves_to_null():
    assert group_id("country|city", _attrs(country="US")) == "us|null"
    assert group_id("device", []) == "null"

def test_group_id_first_matching_attribute_wins():
    attrs = [KeyPair(key="country", value="US"), KeyPair(key="Country", value="NG")]
    assert group_id("country", attrs) == "us"

def test_group_id_does_not_escape_delimiter():
    # known collision: different attribute sets, same id
    a = group_id("a|b", _attrs(a="x|y", b="z"))
    b = group_id("a|b", _attrs(a="x", b="y|z"))
    assert a == b == "x|y|z"

def test_nested_groupings_reference_example():
    all_groups = ["a", "a|b", "a|c", "a|b|c", "b|c", "a|b|c|d", "a|b|c|d|e"]
    assert nested_groupings("a|b|c|d", all_groups) == ["a", "a|b", "a|b|c"]

def test_nested_groupings_excludes_self_and_keeps_configured_order():
    all_groups = ["a|b", "x", "a", "a|b|c"]
    out = nested_groupings("a|b|c", all_groups)
    assert out == ["a|b", "a"]
    assert "a|b|c" not in out

def test_nested_groupings_is_a_string_prefix_test():
    # "countr" is not a configured key of "country|city" but is a literal prefix
    assert nested_groupings("country|city", ["countr", "country", "city"]) == ["countr", "country"]
    assert nested_groupings("a", ["a", "a|b"]) == []

def test_bucket_id_format():
    assert bucket_id(WindowKind.DAY, 1770422400, "us|nyc") == "day|1770422400|us|nyc"
    assert bucket_id(WindowKind.ALLTIME, -1, "us") == "alltime|-1|us"
