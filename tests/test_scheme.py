"""
Tests for stage1_pois.scheme: filter grammar, null semantics and first-match
precedence of the classification scheme.
"""

import pandas as pd
import pytest

from stage1_pois.scheme import (
    ClassificationScheme,
    Compare,
    Membership,
    Not,
    Or,
    SchemeError,
    parse_filter,
)

from conftest import PROJECT_ROOT, SCHEME_ROWS, scheme_table


def _frame(records):
    return pd.DataFrame(records).astype("string")


class TestFilterGrammar:
    def test_equality(self):
        assert parse_filter("amenity == 'cafe'") == Compare("amenity", "==", "cafe")

    def test_double_quotes(self):
        assert parse_filter('amenity != "cafe"') == Compare("amenity", "!=", "cafe")

    @pytest.mark.parametrize("expression", [
        "shop %in% c('bakery', 'pastry')",
        "shop in ('bakery', 'pastry')",
        "shop in ['bakery', 'pastry']",
    ])
    def test_membership_forms(self, expression):
        assert parse_filter(expression) == Membership("shop", frozenset({"bakery", "pastry"}))

    def test_membership_single_value(self):
        assert parse_filter("shop %in% 'bakery'") == Membership("shop", frozenset({"bakery"}))

    def test_not_in(self):
        assert parse_filter("shop not in c('bakery')") == Not(Membership("shop", frozenset({"bakery"})))

    def test_and_binds_tighter_than_or(self):
        predicate = parse_filter("x == '1' | y == '2' & z == '3'")
        assert isinstance(predicate, Or)
        assert predicate.evaluate({"x": "1"}) is True
        assert predicate.evaluate({"x": "0", "y": "2", "z": "3"}) is True
        assert predicate.evaluate({"x": "0", "y": "2", "z": "0"}) is False

    def test_parentheses(self):
        predicate = parse_filter("(x == '1' | y == '2') & z == '3'")
        assert predicate.evaluate({"x": "1", "z": "0"}) is False
        assert predicate.evaluate({"x": "1", "z": "3"}) is True

    def test_word_operators(self):
        predicate = parse_filter("not a == '1' and (b == '2' or b == '3')")
        assert predicate.evaluate({"a": "0", "b": "3"}) is True
        assert predicate.evaluate({"a": "1", "b": "3"}) is False

    def test_colon_keys_are_normalized(self):
        predicate = parse_filter("addr:street == 'Damrak'")
        assert predicate.keys() == frozenset({"addr_street"})
        assert predicate.evaluate({"addr_street": "Damrak"}) is True

    @pytest.mark.parametrize("expression", [
        "",
        "amenity ==",
        "amenity == cafe",
        "(amenity == 'cafe'",
        "amenity == 'cafe')",
        "Amenity == 'cafe'",
        "amenity 'cafe'",
        "amenity %in% c('a' 'b')",
        "amenity == 'cafe' & ",
        "amenity ~ 'cafe'",
    ])
    def test_malformed_expressions(self, expression):
        with pytest.raises(SchemeError):
            parse_filter(expression)


class TestNullSemantics:
    def test_comparison_with_missing_is_unknown(self):
        assert parse_filter("shop == 'bakery'").evaluate({}) is None
        assert parse_filter("shop != 'bakery'").evaluate({}) is None

    def test_negation_keeps_unknown(self):
        assert parse_filter("!(shop == 'bakery')").evaluate({"shop": None}) is None

    def test_membership_of_missing_is_false(self):
        assert parse_filter("shop %in% c('bakery')").evaluate({}) is False
        assert parse_filter("shop not in c('bakery')").evaluate({}) is True

    def test_is_na(self):
        predicate = parse_filter("!is.na(name)")
        assert predicate.evaluate({"name": "Albert Heijn"}) is True
        assert predicate.evaluate({"name": None}) is False
        assert parse_filter("is_null(name)").evaluate({}) is True

    def test_kleene_logic(self):
        assert parse_filter("shop == 'x' | amenity == 'cafe'").evaluate({"amenity": "cafe"}) is True
        assert parse_filter("shop == 'x' & amenity == 'cafe'").evaluate({"amenity": "bar"}) is False
        assert parse_filter("shop == 'x' & amenity == 'cafe'").evaluate({"amenity": "cafe"}) is None

    def test_unknown_never_matches(self, scheme):
        # access is missing: "access != 'private'" is unknown, so the park does not match
        assert scheme.classify_record({"leisure": "park"}) is None
        assert scheme.classify_record({"leisure": "park", "access": "yes"}) == "Park"


class TestClassificationScheme:
    def test_inactive_rules_are_skipped(self, scheme):
        assert len(scheme) == 6
        assert "Vending" not in scheme.hierarchy
        assert scheme.classify_record({"amenity": "vending_machine"}) is None

    def test_hierarchy_lookup(self, scheme):
        assert scheme.lookup("Bakery") == ("Other Food Stores", "Food")
        with pytest.raises(KeyError):
            scheme.lookup("Casino")

    def test_class_c_labels_in_rule_order(self, scheme):
        assert scheme.class_c_labels == ["Food", "Health", "Recreation"]

    def test_attribute_keys(self, scheme):
        assert set(scheme.filter_keys) == {"shop", "amenity", "healthcare", "leisure", "access"}
        assert {"name", "operator", "brand", "origin"} <= set(scheme.attribute_keys)

    def test_osm_keys_keep_colons(self):
        rows = SCHEME_ROWS[:1] + [("TRUE", "Clinic", "Care", "Health", "healthcare:speciality == 'general'")]
        scheme = ClassificationScheme.from_frame(scheme_table(rows))
        assert "healthcare:speciality" in scheme.osm_keys
        assert "healthcare_speciality" in scheme.attribute_keys
        assert scheme.classify_record({"healthcare:speciality": "general"}) == "Clinic"

    def test_precedence_cafe_before_bakery(self, scheme):
        record = {"amenity": "cafe", "shop": "bakery"}
        assert scheme.classify_record(record) == "Cafe"

        rows = [row for row in SCHEME_ROWS if row[1] != "Cafe"]
        bakery_index = [row[1] for row in rows].index("Bakery")
        rows.insert(bakery_index + 1, next(row for row in SCHEME_ROWS if row[1] == "Cafe"))
        reordered = ClassificationScheme.from_frame(scheme_table(rows))
        assert reordered.classify_record(record) == "Bakery"

    def test_frame_matches_record_classification(self, scheme):
        records = [
            {"amenity": "cafe", "shop": "bakery"},
            {"shop": "bakery"},
            {"shop": "supermarket", "name": "Jumbo"},
            {"healthcare": "pharmacy"},
            {"leisure": "park"},
            {"leisure": "park", "access": "private"},
            {"leisure": "park", "access": "yes"},
            {"amenity": "bench"},
            {},
        ]
        df = _frame(records).reindex(columns=["amenity", "shop", "name", "healthcare", "leisure", "access"])
        labels = scheme.classify_frame(df)
        expected = [scheme.classify_record(record) for record in records]
        assert labels.tolist() == expected
        assert expected[:4] == ["Cafe", "Bakery", "Supermarket", "Pharmacy"]

    def test_classification_is_idempotent(self, scheme):
        df = _frame([{"amenity": "cafe"}, {"shop": "greengrocer"}, {"amenity": "bench"}])
        first = scheme.classify_frame(df)
        second = scheme.classify_frame(df)
        pd.testing.assert_series_equal(first, second)

    def test_missing_columns_are_null(self, scheme):
        df = pd.DataFrame({"amenity": ["pharmacy", "cafe"]}).astype("string")
        assert scheme.classify_frame(df).tolist() == ["Pharmacy", "Cafe"]


class TestSchemeErrors:
    def test_malformed_rule_names_rule(self):
        rows = SCHEME_ROWS[:2] + [("TRUE", "Broken", "X", "Y", "amenity = 'cafe'")]
        with pytest.raises(SchemeError, match="Broken"):
            ClassificationScheme.from_frame(scheme_table(rows))

    def test_malformed_inactive_rule_is_ignored(self):
        rows = SCHEME_ROWS[:2] + [("FALSE", "Broken", "X", "Y", "amenity = 'cafe'")]
        assert len(ClassificationScheme.from_frame(scheme_table(rows))) == 2

    def test_missing_columns(self):
        with pytest.raises(SchemeError, match="missing columns"):
            ClassificationScheme.from_frame(scheme_table().drop(columns=["Class_B"]))

    def test_no_active_rules(self):
        rows = [("FALSE",) + row[1:] for row in SCHEME_ROWS]
        with pytest.raises(SchemeError, match="no active rules"):
            ClassificationScheme.from_frame(scheme_table(rows))

    def test_empty_class_label(self):
        rows = [("TRUE", "Cafe", "", "Food", "amenity == 'cafe'")]
        with pytest.raises(SchemeError):
            ClassificationScheme.from_frame(scheme_table(rows))

    def test_conflicting_hierarchy(self):
        rows = [
            ("TRUE", "Cafe", "Eating Out", "Food", "amenity == 'cafe'"),
            ("TRUE", "Cafe", "Drinks", "Food", "amenity == 'coffee_shop'"),
        ]
        with pytest.raises(SchemeError, match="maps to both"):
            ClassificationScheme.from_frame(scheme_table(rows))

    def test_missing_csv(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ClassificationScheme.from_csv(tmp_path / "missing.csv")

    def test_csv_roundtrip(self, tmp_path):
        path = tmp_path / "scheme.csv"
        scheme_table().to_csv(path, index=False)
        scheme = ClassificationScheme.from_csv(path)
        assert [rule.class_a for rule in scheme.rules] == [row[1] for row in SCHEME_ROWS if row[0] == "TRUE"]


class TestDefaultScheme:
    """The rule table shipped in configs/."""

    @pytest.fixture
    def default_scheme(self):
        return ClassificationScheme.from_csv(PROJECT_ROOT / "configs" / "classification_scheme.csv")

    @pytest.mark.parametrize("attributes, expected", [
        ({"leisure": "park"}, "Park"),
        ({"leisure": "park", "access": "yes"}, "Park"),
        ({"leisure": "park", "access": "private"}, None),
        ({"amenity": "hospital"}, "Hospital"),
        ({"amenity": "hospital", "healthcare": "hospital"}, "Hospital"),
        ({"amenity": "hospital", "healthcare": "clinic"}, None),
        ({"amenity": "vending_machine"}, None),
    ])
    def test_untagged_qualifiers(self, default_scheme, attributes, expected):
        assert default_scheme.classify_record(attributes) == expected

    def test_frame_agrees_with_records(self, default_scheme):
        records = [{"leisure": "park"}, {"amenity": "hospital"}, {"leisure": "park", "access": "private"}]
        df = _frame(records).reindex(columns=default_scheme.filter_keys)
        assert default_scheme.classify_frame(df).tolist() == ["Park", "Hospital", None]
