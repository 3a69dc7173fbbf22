"""
Step Validation
===============
Pure checks: is everything a step needs filled in?
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from app.core.errors import InvalidStep
from app.core.partnership_states import BOOLEAN_FIELDS, get_step_config


@dataclass(frozen=True)
class StepValidation:
    valid: bool
    missing: list = field(default_factory=list)


def _field_value(workflow: Any, name: str) -> Any:
    if isinstance(workflow, Mapping):
        return workflow.get(name)
    return getattr(workflow, name, None)


def is_missing(name: str, value: Any) -> bool:
    if name in BOOLEAN_FIELDS:
        # False is an explicit "not signed", so only True satisfies the step
        return value is not True
    return value is None or value == ""


def validate_step(
    workflow: Any,
    step: int,
    required_fields: Optional[Iterable[str]] = None,
) -> StepValidation:
    """
    Check the required fields of ``step`` against a workflow snapshot.

    ``workflow`` may be an ORM row or a plain mapping. ``required_fields``
    overrides the step table (the portal asks for less than an admin).
    """
    if required_fields is None:
        config = get_step_config(step)
        if config is None:
            raise InvalidStep(f"Invalid step: {step}")
        required_fields = config.required_fields

    missing = []
    for name in required_fields:
        if is_missing(name, _field_value(workflow, name)) and name not in missing:
            missing.append(name)

    return StepValidation(valid=not missing, missing=missing)
