import pytest

from cellops.schemas.quality import CCARule
from cellops.services import cca
from cellops.services.errors import ValidationError


def test_viability_below_rule_minimum_fails():
    result = cca.evaluate([{"parameter": "viability_percent", "min": 80}], {"viability_percent": 75})
    assert result.passed is False
    assert result.message == "Viability 75% < 80%"
    assert [c.parameter for c in result.checks] == ["viability_percent"]
    assert result.checks[0].min == 80


def test_default_viability_floor_applies_without_rules():
    failed = cca.evaluate([], {"viability_percent": 79})
    assert failed.passed is False
    assert failed.message == "Viability 79% < 80%"

    passed = cca.evaluate([], {"viability_percent": 92.5})
    assert passed.passed is True
    assert passed.message == cca.ALL_CHECKS_PASSED

    custom = cca.evaluate([], {"viability_percent": 79}, default_min_viability=70)
    assert custom.passed is True


def test_concentration_only_checked_when_bounded():
    unbounded = cca.evaluate([], {"cell_concentration": 0.1})
    assert unbounded.passed is True
    assert unbounded.checks == []

    bounded = cca.evaluate(
        [{"parameter": "cell_concentration", "min": 1}],
        {"viability_percent": 70, "cell_concentration": 0.5},
    )
    assert bounded.passed is False
    assert bounded.message == "Viability 70% < 80%; Concentration 0.5 < 1"


def test_maximum_bound_reports_above_maximum():
    result = cca.evaluate(
        [{"parameter": "volume_ml", "max": 10}, {"parameter": "viability_percent", "min": 80}],
        {"volume_ml": 12, "viability_percent": 95},
    )
    assert result.passed is False
    assert result.message == "volume_ml 12 > 10"
    # viability first, then rule order
    assert [c.parameter for c in result.checks] == ["viability_percent", "volume_ml"]


def test_unrecorded_parameters_are_skipped():
    result = cca.evaluate([{"parameter": "cell_concentration", "min": 1}], {})
    assert result.passed is True
    assert result.checks == []
    assert result.message == cca.ALL_CHECKS_PASSED


def test_evaluation_is_pure():
    rules = [{"parameter": "viability_percent", "min": 85}, {"parameter": "cell_concentration", "min": 2}]
    params = {"viability_percent": 84, "cell_concentration": 3}
    first = cca.evaluate(rules, params).results_payload()
    second = cca.evaluate(rules, params).results_payload()
    assert first == second
    assert params == {"viability_percent": 84, "cell_concentration": 3}


def test_legacy_flat_blob_is_normalised():
    rules = cca.normalize_rules({"min_viability": 85, "min_concentration": 1, "max_volume": 20})
    by_param = {rule.parameter: rule for rule in rules}
    assert by_param["viability_percent"].min == 85
    assert by_param["cell_concentration"].min == 1
    assert by_param["volume_ml"].max == 20

    result = cca.evaluate({"min_viability": 85}, {"viability_percent": 82})
    assert result.message == "Viability 82% < 85%"


def test_mapping_form_and_expected_values():
    rules = cca.normalize_rules(
        {"viability": {"min": 90, "severity": "critical"}, "morphology": "spindle"}
    )
    by_param = {rule.parameter: rule for rule in rules}
    assert by_param["viability_percent"].severity.value == "critical"
    assert by_param["morphology"].expected == "spindle"


def test_typed_rules_pass_through():
    rule = CCARule(parameter="viability_percent", min=70)
    assert cca.normalize_rules([rule]) == [rule]
    assert cca.normalize_rules(None) == []


def test_inconsistent_rule_is_rejected():
    with pytest.raises(ValidationError):
        cca.normalize_rules([{"parameter": "viability_percent", "min": 90, "max": 80}])
    with pytest.raises(ValidationError):
        cca.normalize_rules("min_viability=80")
