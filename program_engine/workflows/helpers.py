"""
Workflow Helper Functions for the Program Engine.

Utility functions for stage submission validation, stage routing,
decision inference and simple value templating.
"""

import logging
import math
import re
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from ..models import FormField, ProgramType, Stage

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
TEMPLATE_PATTERN = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")

PROGRAM_TYPES = [t.value for t in ProgramType]
DECISION_VALUES = ("accept", "decline")


def is_present(value: Any) -> bool:
    """A submitted value counts as present unless it is None or an empty string."""
    return value is not None and value != ""


def is_valid_email(email: Any) -> bool:
    return isinstance(email, str) and bool(EMAIL_PATTERN.match(email))


def is_valid_slug(slug: Any) -> bool:
    """
    Check a program slug.

    Args:
        slug: Candidate slug

    Returns:
        True for 2-50 characters of lowercase alphanumerics joined by single hyphens
    """
    return isinstance(slug, str) and 2 <= len(slug) <= 50 and bool(SLUG_PATTERN.match(slug))


def generate_slug(name: str) -> str:
    """
    Generate a slug from a display name.

    Args:
        name: Program name

    Returns:
        Lowercase hyphenated slug, truncated to 50 characters
    """
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug[:50].rstrip("-")


def validate_program_fields(slug: Optional[str] = None, program_type: Optional[str] = None) -> List[str]:
    """
    Validate program slug and type.

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []
    if slug is not None and not is_valid_slug(slug):
        errors.append(
            "Slug must be 2-50 characters of lowercase letters, numbers and single hyphens"
        )
    if program_type is not None and program_type not in PROGRAM_TYPES:
        errors.append(f"Invalid program type: {program_type}")
    return errors


def validate_form_config(config: Optional[Dict[str, Any]]) -> List[str]:
    """
    Validate the ``form_config`` field list of a stage or template config.

    Returns:
        List of validation error messages (empty if valid)
    """
    fields = (config or {}).get("form_config")
    if fields is None:
        return []
    if not isinstance(fields, list):
        return ["form_config must be a list of fields"]

    errors = []
    for index, field in enumerate(fields):
        if not isinstance(field, dict):
            errors.append(f"form_config[{index}] must be an object")
            continue
        try:
            FormField(**field)
        except PydanticValidationError as e:
            for error in e.errors():
                location = ".".join(str(part) for part in error["loc"])
                errors.append(f"form_config[{index}].{location}: {error['msg']}")
    return errors


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False


def validate_stage_submission(data: Dict[str, Any], stage: Stage) -> List[str]:
    """
    Validate submitted data against a stage's form configuration.

    Every field is checked and every failure is collected.

    Args:
        data: Submitted field values keyed by field id
        stage: The stage being submitted

    Returns:
        List of validation error messages (empty if valid)
    """
    if not isinstance(data, dict):
        return ["Invalid submission data format."]

    errors = []

    for field in stage.form_config:
        label = field.label or field.id
        value = data.get(field.id)
        present = is_present(value)

        if field.required and not present:
            errors.append(f"Field '{label}' is required.")
            continue

        if not present:
            continue

        if field.type == "email" and not is_valid_email(value):
            errors.append(f"Field '{label}' must be a valid email.")
        elif field.type == "number" and not _is_number(value):
            errors.append(f"Field '{label}' must be a number.")
        elif field.type in ("select", "decision") and field.options and value not in field.options:
            errors.append(f"Field '{label}' must be one of: {', '.join(field.options)}.")

    # Block-based stages list their required inputs directly
    if stage.block_ids:
        for field_id in stage.config.get("required_fields") or []:
            if not is_present(data.get(field_id)):
                errors.append(f"Field '{field_id}' is required.")

    return errors


def infer_decision(data: Dict[str, Any], stage: Optional[Stage] = None) -> Optional[str]:
    """
    Work out the accept/decline decision carried by a submission.

    A form field of type "decision" is authoritative. Without one, the
    submitted values are scanned for the literals "accept" then "decline".

    Args:
        data: Submitted field values
        stage: Stage the data was submitted for

    Returns:
        The decision value, or None
    """
    if stage is not None:
        for field in stage.form_config:
            if field.type == "decision":
                value = data.get(field.id)
                return value if is_present(value) else None

    values = list(data.values())
    for decision in DECISION_VALUES:
        if decision in values:
            return decision
    return None


def stage_matches(stage: Stage, stage_id: Optional[str]) -> bool:
    """True if stage_id names the stage by id or by its original id."""
    if not stage_id:
        return False
    return stage.id == stage_id or stage.original_stage_id == stage_id


def order_pipeline(pipeline: List[Stage], snapshot: Optional[List[str]] = None) -> List[Stage]:
    """
    Order stages by a process's stage-flow snapshot.

    Stages missing from the snapshot keep their relative order at the end.
    """
    if not snapshot:
        return list(pipeline)
    positions = {stage_id: index for index, stage_id in enumerate(snapshot)}
    return sorted(pipeline, key=lambda s: positions.get(s.id, len(snapshot)))


def evaluate_condition(condition: Optional[Dict[str, Any]], data: Dict[str, Any]) -> bool:
    """
    Evaluate a single routing condition ``{field, op, value}``.

    Supported ops: eq, neq, gt, lt, contains, exists. Unknown ops compare
    for equality.
    """
    if not condition:
        return True

    value = data.get(condition.get("field"))
    expected = condition.get("value")
    op = condition.get("op", "eq")

    if op == "neq":
        return value != expected
    if op in ("gt", "lt"):
        try:
            return value > expected if op == "gt" else value < expected
        except TypeError:
            return False
    if op == "contains":
        return isinstance(value, list) and expected in value
    if op == "exists":
        return value is not None
    return value == expected


def calculate_next_stage(
    current_stage_id: str,
    pipeline: List[Stage],
    data: Optional[Dict[str, Any]] = None,
    snapshot: Optional[List[str]] = None,
) -> Optional[str]:
    """
    Determine the stage that follows the current one.

    Routing rules in the current stage's config
    (``{"condition": {...}, "target_stage_id": ...}``) are honoured only
    when they point forward in the pipeline; otherwise the next stage in
    order is used.

    Args:
        current_stage_id: ID (or original ID) of the current stage
        pipeline: Ordered, non-deleted stages of the program
        data: Submitted data used by routing conditions
        snapshot: Stage order captured when the process was created

    Returns:
        The next stage ID, or None if the current stage is the last one
    """
    ordered = order_pipeline(pipeline, snapshot)
    data = data or {}

    current_index = next(
        (i for i, stage in enumerate(ordered) if stage_matches(stage, current_stage_id)), None
    )
    if current_index is None:
        return None

    for rule in ordered[current_index].config.get("routing_rules") or []:
        if not evaluate_condition(rule.get("condition"), data):
            continue
        for index, stage in enumerate(ordered):
            if index > current_index and stage_matches(stage, rule.get("target_stage_id")):
                return stage.id
        logger.warning(
            f"Ignoring routing rule to {rule.get('target_stage_id')}: not a later stage"
        )

    if current_index + 1 < len(ordered):
        return ordered[current_index + 1].id
    return None


def resolve_value(template: Any, data: Dict[str, Any]) -> Any:
    """
    Resolve ``{{key}}`` placeholders against data.

    A string that is exactly one placeholder resolves to the raw value
    (keeping its type); placeholders embedded in longer strings are
    substituted as text. Dotted keys walk nested dicts. Unresolved
    placeholders become None or an empty string.
    """
    if not isinstance(template, str):
        return template

    def lookup(path: str) -> Any:
        value: Any = data
        for part in path.split("."):
            if not isinstance(value, dict):
                return None
            value = value.get(part)
        return value

    whole = TEMPLATE_PATTERN.fullmatch(template.strip())
    if whole:
        return lookup(whole.group(1))

    def substitute(match):
        value = lookup(match.group(1))
        return "" if value is None else str(value)

    return TEMPLATE_PATTERN.sub(substitute, template)


def resolve_values(mapping: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
    """Resolve every value of a mapping with resolve_value."""
    return {key: resolve_value(value, data) for key, value in (mapping or {}).items()}
