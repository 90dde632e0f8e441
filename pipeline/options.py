"""
Option structs validated once at the pipeline boundary.

Payloads coming from the job queue use camelCase keys; Python callers may use
the snake_case field names.
"""
from typing import Any, Dict, Literal, Optional

import pydantic
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .errors import ValidationError


class _Options(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class JobOptions(_Options):
    source_language: Optional[str] = None
    target_language: Optional[str] = None
    domain: Optional[str] = None
    retranslate_tm: bool = Field(default=False, alias="retranslateTM")
    ai_model: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    auto_review: bool = False


class JobRequest(_Options):
    type: Literal["file", "project"]
    project_id: str = Field(min_length=1)
    file_id: Optional[str] = None
    ai_config_id: str = Field(min_length=1)
    prompt_template_id: str = Field(min_length=1)
    options: JobOptions = Field(default_factory=JobOptions)

    @model_validator(mode="after")
    def _file_jobs_need_file_id(self):
        if self.type == "file" and not self.file_id:
            raise ValueError("fileId is required for file jobs")
        return self


class ResolveOptions(_Options):
    source_language: Optional[str] = None
    target_language: Optional[str] = None
    domain: Optional[str] = None
    retranslate_tm: bool = Field(default=False, alias="retranslateTM")
    ai_model: str = "gpt-3.5-turbo"
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)


class ReviewOptions(_Options):
    ai_model: str = "gpt-3.5-turbo"
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    prompt_template_id: Optional[str] = None
    custom_prompt: Optional[str] = None
    # Neighbouring segments on each side passed as context to the reviewer
    context_window: int = Field(default=0, ge=0, le=10)


def parse_options(model: type, payload: Optional[Dict[str, Any]]):
    """Validates a raw dict into ``model``; pydantic errors become ValidationError."""
    try:
        return model.model_validate(payload or {})
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid {model.__name__}: {e.error_count()} error(s)",
                              {"errors": e.errors(include_url=False)}) from e
