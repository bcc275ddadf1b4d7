"""
Block configuration models.

Each registered block type has a pydantic model describing its config.
Unknown keys are rejected so that typos surface at save time.
"""

import logging
from typing import Dict, List, Literal, Optional, Type, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

INTERNAL_BLOCK_TYPES = ("review_rubric", "decision_gate", "auto_score")
ACCESS_GATE_TYPE = "access_gate"


class BlockConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")


class LabelledBlockConfig(BlockConfig):
    label: Optional[str] = None
    required: Optional[bool] = None


# Content blocks

class ContentBlockConfig(LabelledBlockConfig):
    html: Optional[str] = None
    markdown: Optional[str] = None


# Input blocks

class FieldValidationRules(BlockConfig):
    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None


class FormInputConfig(LabelledBlockConfig):
    type: Literal["text", "email", "tel", "number", "select", "textarea", "date"]
    placeholder: Optional[str] = None
    options: Optional[List[str]] = None
    validation: Optional[FieldValidationRules] = None


class RichTextInputConfig(LabelledBlockConfig):
    placeholder: Optional[str] = None
    min_words: Optional[int] = None
    max_words: Optional[int] = None
    enable_formatting: Optional[bool] = None


class FileUploadConfig(LabelledBlockConfig):
    accept: Optional[str] = None
    max_size_mb: Optional[float] = None


class LinkInputConfig(LabelledBlockConfig):
    placeholder: Optional[str] = None
    url_pattern: Optional[str] = None
    allowed_domains: Optional[List[str]] = None


class VideoResponseConfig(LabelledBlockConfig):
    max_duration: Optional[int] = Field(None, description="Seconds")
    prompt: Optional[str] = None


class CalendarBookingConfig(LabelledBlockConfig):
    instructions: Optional[str] = None
    duration: Optional[int] = Field(None, description="Minutes")


class EventRSVPConfig(LabelledBlockConfig):
    event_name: Optional[str] = None
    event_date: Optional[str] = None
    location: Optional[str] = None
    max_attendees: Optional[int] = None


class QuizQuestion(BlockConfig):
    text: str
    options: List[str]
    correct_answer: Optional[str] = None


class QuizConfig(LabelledBlockConfig):
    questions: List[QuizQuestion]
    shuffle_questions: Optional[bool] = None
    shuffle_options: Optional[bool] = None


class CodingTestCase(BlockConfig):
    input: str
    expected_output: str


class CodingTestConfig(LabelledBlockConfig):
    problem_title: Optional[str] = None
    problem_description: Optional[str] = None
    language: Optional[str] = None
    starter_code: Optional[str] = None
    test_cases: Optional[List[CodingTestCase]] = None


class ChecklistItem(BlockConfig):
    id: str
    text: str
    required: Optional[bool] = None


class ChecklistConfig(LabelledBlockConfig):
    items: List[ChecklistItem]
    require_all: Optional[bool] = None


class DecisionResponseConfig(LabelledBlockConfig):
    accept_text: Optional[str] = None
    decline_text: Optional[str] = None
    deadline: Optional[str] = None


# Action blocks

class SignatureConfig(LabelledBlockConfig):
    document_url: Optional[str] = None
    agreement_text: Optional[str] = None


class PaymentConfig(LabelledBlockConfig):
    amount: Optional[float] = None
    currency: Optional[str] = None
    description: Optional[str] = None


# Internal blocks

class RubricCriterion(BlockConfig):
    id: str
    label: str
    max_score: float
    description: Optional[str] = None


class ReviewRubricConfig(BlockConfig):
    criteria: List[RubricCriterion]
    show_to_applicant: Optional[bool] = None


class DecisionGateConfig(BlockConfig):
    internal_notes: Optional[str] = None
    auto_advance: Optional[bool] = None


class ScoringRule(BlockConfig):
    block_id: str
    weight: float
    method: Literal["exact_match", "contains", "regex", "numeric_range"]
    value: Optional[Union[str, float]] = None


class AutoScoreConfig(BlockConfig):
    rules: List[ScoringRule]
    passing_score: Optional[float] = None


class AccessGateConfig(BlockConfig):
    passcode: Optional[str] = None
    message: Optional[str] = None


BLOCK_CONFIG_MODELS: Dict[str, Type[BlockConfig]] = {
    "content": ContentBlockConfig,
    "form_input": FormInputConfig,
    "rich_text_input": RichTextInputConfig,
    "file_upload": FileUploadConfig,
    "link_input": LinkInputConfig,
    "video_response": VideoResponseConfig,
    "calendar_booking": CalendarBookingConfig,
    "event_rsvp": EventRSVPConfig,
    "quiz": QuizConfig,
    "coding_test": CodingTestConfig,
    "checklist": ChecklistConfig,
    "decision_response": DecisionResponseConfig,
    "signature": SignatureConfig,
    "payment": PaymentConfig,
    "review_rubric": ReviewRubricConfig,
    "decision_gate": DecisionGateConfig,
    "auto_score": AutoScoreConfig,
    "access_gate": AccessGateConfig,
}


def has_block_model(block_type: str) -> bool:
    return block_type in BLOCK_CONFIG_MODELS


def validate_block_config(block_type: str, config: object) -> List[str]:
    """
    Validate a block config against its registered model.

    Args:
        block_type: Block type name
        config: Config to validate

    Returns:
        List of validation error messages (empty if valid). Unregistered
        types only produce a logged warning.
    """
    if config is None or not isinstance(config, dict):
        return [f"Block config for '{block_type}' must be an object"]

    model = BLOCK_CONFIG_MODELS.get(block_type)
    if model is None:
        logger.warning(f"No config model registered for block type '{block_type}', accepting as-is")
        return []

    try:
        model.model_validate(config)
    except pydantic.ValidationError as e:
        return [
            f"{block_type}.{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in e.errors()
        ]
    return []
