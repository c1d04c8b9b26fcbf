"""Critical Control Attribute evaluation for executed steps."""

from __future__ import annotations

from typing import Any, Mapping

from pydantic import ValidationError as PydanticValidationError

from ..schemas.quality import CCACheck, CCAEvaluation, CCARule
from .errors import ValidationError

# purpose: pure verdicts over recorded step parameters; no clock, ids or session access
# status: active
# depends_on: backend.cellops.schemas.quality

VIABILITY = "viability_percent"
CONCENTRATION = "cell_concentration"

ALL_CHECKS_PASSED = "all checks passed"

# legacy blob keys (min_viability, max_concentration, ...) -> parameter names
_LEGACY_ALIASES = {
    "viability": VIABILITY,
    "concentration": CONCENTRATION,
    "volume": "volume_ml",
}

_LABELS = {
    VIABILITY: "Viability",
    CONCENTRATION: "Concentration",
}


def _legacy_parameter(name: str) -> str:
    return _LEGACY_ALIASES.get(name, name)


def normalize_rules(raw: Any) -> list[CCARule]:
    """Coerce stored rule sets into typed rules.

    Accepts the typed list form, a ``{parameter: {min, expected, severity}}``
    mapping, and the flat legacy form (``{"min_viability": 80}``).
    """

    if not raw:
        return []
    try:
        if isinstance(raw, list):
            return [rule if isinstance(rule, CCARule) else CCARule.model_validate(rule) for rule in raw]
        if not isinstance(raw, Mapping):
            raise ValidationError(f"CCA rule set must be a list or mapping, got {type(raw).__name__}")

        merged: dict[str, dict[str, Any]] = {}
        for key, value in raw.items():
            if isinstance(value, Mapping):
                merged.setdefault(_legacy_parameter(key), {}).update(value)
            elif key.startswith("min_") or key.startswith("max_"):
                bound, name = key[:3], key[4:]
                merged.setdefault(_legacy_parameter(name), {})[bound] = value
            else:
                merged.setdefault(key, {})["expected"] = value
        return [CCARule.model_validate({**fields, "parameter": name}) for name, fields in merged.items()]
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid CCA rule set: {exc}") from exc


def _fmt(value: float) -> str:
    return f"{value:g}"


def _numeric(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _check(
    parameter: str,
    value: float,
    rule: CCARule | None,
    minimum: float | None,
) -> tuple[CCACheck, list[str]]:
    maximum = rule.max if rule else None
    failures: list[str] = []
    label = _LABELS.get(parameter, parameter)
    unit = "%" if parameter == VIABILITY else ""
    if minimum is not None and value < minimum:
        failures.append(f"{label} {_fmt(value)}{unit} < {_fmt(minimum)}{unit}")
    if maximum is not None and value > maximum:
        failures.append(f"{label} {_fmt(value)}{unit} > {_fmt(maximum)}{unit}")
    check = CCACheck(
        parameter=parameter,
        passed=not failures,
        value=value,
        min=minimum,
        max=maximum,
        expected=rule.expected if rule else None,
        severity=rule.severity if rule else None,
    )
    return check, failures


def evaluate(
    rules: Any,
    recorded_parameters: Mapping[str, Any],
    *,
    default_min_viability: float = 80.0,
) -> CCAEvaluation:
    """Compare recorded parameters against a rule set.

    Viability is checked whenever it was recorded, against the rule minimum or
    ``default_min_viability``. Concentration and every other parameter are only
    checked when the rule set bounds them. Parameters that were not recorded are
    skipped. Check order is viability, concentration, then rule order.
    """

    typed = normalize_rules(rules)
    by_parameter = {rule.parameter: rule for rule in typed}

    checks: list[CCACheck] = []
    messages: list[str] = []

    viability = _numeric(recorded_parameters.get(VIABILITY))
    if viability is not None:
        rule = by_parameter.get(VIABILITY)
        minimum = rule.min if rule and rule.min is not None else default_min_viability
        check, failures = _check(VIABILITY, viability, rule, minimum)
        checks.append(check)
        messages.extend(failures)

    ordered = list(dict.fromkeys([VIABILITY, CONCENTRATION] + [rule.parameter for rule in typed]))
    for parameter in ordered[1:]:
        rule = by_parameter.get(parameter)
        if rule is None or (rule.min is None and rule.max is None):
            continue
        value = _numeric(recorded_parameters.get(parameter))
        if value is None:
            continue
        check, failures = _check(parameter, value, rule, rule.min)
        checks.append(check)
        messages.extend(failures)

    passed = all(check.passed for check in checks)
    return CCAEvaluation(
        passed=passed,
        message="; ".join(messages) or ALL_CHECKS_PASSED,
        checks=checks,
    )
